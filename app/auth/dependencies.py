import logging
from typing import Annotated, cast

import structlog
from fastapi import Cookie, Depends, Header
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.auth.models.user import User
from app.core import security
from app.core.datetime_utils import utcnow
from app.core.exceptions import ForbiddenError, UnauthorizedError
from app.db.session import get_db

logger = logging.getLogger(__name__)


async def get_access_token(
    access_token: Annotated[str | None, Cookie()] = None,
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    """Extract the access token from the cookie, falling back to a Bearer header"""
    if access_token:
        return access_token
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    raise UnauthorizedError("Missing credentials")


async def get_validated_token_payload(
    token: str,
    expected_type: str = "access",
) -> dict:
    """Decode and validate JWT token"""
    payload = security.decode_token(token)

    if payload is None:
        raise UnauthorizedError("Could not validate credentials")

    if payload.get("type") != expected_type:
        raise UnauthorizedError(f"Invalid token type, expected {expected_type}")

    return payload


async def get_current_user(
    access_token: str = Depends(get_access_token),
    db: Session = Depends(get_db),
) -> User:
    """Get current authenticated user from access token and refresh presence"""
    payload = await get_validated_token_payload(access_token, expected_type="access")

    user_id: str | None = payload.get("sub")
    if user_id is None:
        raise UnauthorizedError("Could not validate credentials")

    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise UnauthorizedError("User not found")

    if not user.is_active:
        raise ForbiddenError("Account is inactive")

    structlog.contextvars.bind_contextvars(user_id=user.id)

    try:
        user.is_online = True
        user.last_seen_at = utcnow()
        db.commit()
    except SQLAlchemyError:
        logger.exception("Failed to record presence for user %s", user.id)
        db.rollback()

    return cast(User, user)
