"""Read-side access to user accounts for the messaging core."""

import logging
from datetime import timedelta

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.auth.models.user import User
from app.auth.schemas.user import UserSummary
from app.core.constants import (
    PRESENCE_WINDOW_SECONDS,
    USER_SEARCH_LIMIT,
    USER_SEARCH_MIN_LENGTH,
)
from app.core.datetime_utils import utcnow
from app.core.exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def is_present(user: User) -> bool:
    """True when the user flagged online and was seen within the presence window."""
    if not user.is_online or user.last_seen_at is None:
        return False
    return utcnow() - user.last_seen_at <= timedelta(seconds=PRESENCE_WINDOW_SECONDS)


def build_user_summary(user: User) -> UserSummary:
    return UserSummary(
        id=user.id,
        username=user.username,
        display_name=user.display_name,
        avatar_url=user.avatar_url,
        is_online=is_present(user),
        last_seen_at=user.last_seen_at,
    )


class UserService:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get_active_user(self, user_id: str) -> User:
        user = (
            self.db.query(User)
            .filter(User.id == user_id, User.is_active == True)  # noqa: E712
            .first()
        )
        if not user:
            raise NotFoundError("User not found", resource="user")
        return user

    def search_users(
        self, query: str, exclude_id: str | None = None, limit: int = USER_SEARCH_LIMIT
    ) -> list[UserSummary]:
        """Case-insensitive match on username or display name, ordered by username."""
        query = query.strip()
        if len(query) < USER_SEARCH_MIN_LENGTH:
            raise ValidationError(
                f"Query must be at least {USER_SEARCH_MIN_LENGTH} characters", field="q"
            )

        pattern = f"%{_escape_like(query)}%"
        users_query = self.db.query(User).filter(
            User.is_active == True,  # noqa: E712
            or_(
                User.username.ilike(pattern, escape="\\"),
                User.display_name.ilike(pattern, escape="\\"),
            ),
        )
        if exclude_id:
            users_query = users_query.filter(User.id != exclude_id)

        users = users_query.order_by(User.username.asc()).limit(limit).all()
        return [build_user_summary(u) for u in users]
