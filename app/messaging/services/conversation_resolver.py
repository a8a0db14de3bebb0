"""Find-or-create for conversations.

1:1 conversations carry ``direct_key``, the sorted pair of member ids, under a
unique constraint. Two requests racing to create the same pair both insert;
the database rejects the loser, which then reads the winner's row. This holds
across processes without any application-level lock.
"""

import logging

from sqlalchemy.orm import Session

from app.auth.services.user_service import UserService
from app.core.constants import GROUP_MAX_MEMBERS
from app.core.datetime_utils import utcnow
from app.core.exceptions import ConflictError, ValidationError
from app.core.ids import new_id
from app.db.errors import translate_store_errors
from app.messaging.models.conversation import Conversation, direct_key_for
from app.messaging.models.conversation_participant import ConversationParticipant
from app.messaging.repositories import ConversationRepository

logger = logging.getLogger(__name__)


class ConversationResolver:
    def __init__(self, db: Session) -> None:
        self.db = db
        self.conversations = ConversationRepository(db)
        self.users = UserService(db)

    def resolve_direct_conversation(self, user_a: str, user_b: str) -> tuple[Conversation, bool]:
        """Return the 1:1 conversation between two users, creating it if needed.

        Returns:
            (conversation, created) where created is False when an existing
            conversation was found, including one created concurrently.

        Raises:
            ValidationError: both ids are the same user.
            NotFoundError: either user is missing or inactive.
        """
        if user_a == user_b:
            raise ValidationError("Cannot start a conversation with yourself", field="user_id")

        self.users.get_active_user(user_a)
        self.users.get_active_user(user_b)

        direct_key = direct_key_for(user_a, user_b)
        existing = self.conversations.find_by_direct_key(direct_key)
        if existing is not None:
            return existing, False

        try:
            return self._create_direct(direct_key, user_a, user_b), True
        except ConflictError:
            logger.info("Lost creation race for direct conversation %s, reading winner", direct_key)
            existing = self.conversations.find_by_direct_key(direct_key)
            if existing is None:
                raise
            return existing, False

    def create_group_conversation(
        self, creator_id: str, member_ids: list[str], name: str | None = None
    ) -> Conversation:
        """Create a group; the creator is always a member and its admin."""
        ordered_ids = list(dict.fromkeys([creator_id, *member_ids]))
        if len(ordered_ids) < 2:
            raise ValidationError("A group needs at least two members", field="member_ids")
        if len(ordered_ids) > GROUP_MAX_MEMBERS:
            raise ValidationError(
                f"A group can have at most {GROUP_MAX_MEMBERS} members", field="member_ids"
            )
        for user_id in ordered_ids:
            self.users.get_active_user(user_id)

        now = utcnow()
        conversation = Conversation(
            id=new_id(),
            is_group=True,
            name=(name or "").strip() or None,
            direct_key=None,
            created_at=now,
            updated_at=now,
        )
        conversation.participants = [
            ConversationParticipant(user_id=user_id, is_admin=user_id == creator_id, joined_at=now)
            for user_id in ordered_ids
        ]
        self.conversations.add(conversation)

        with translate_store_errors(self.db, "create_group_conversation"):
            self.db.commit()
        self.db.refresh(conversation)

        logger.info("Created group conversation %s with %d members", conversation.id, len(ordered_ids))
        return conversation

    def _create_direct(self, direct_key: str, user_a: str, user_b: str) -> Conversation:
        now = utcnow()
        conversation = Conversation(
            id=new_id(),
            is_group=False,
            direct_key=direct_key,
            created_at=now,
            updated_at=now,
        )
        conversation.participants = [
            ConversationParticipant(user_id=user_a, joined_at=now),
            ConversationParticipant(user_id=user_b, joined_at=now),
        ]
        self.conversations.add(conversation)

        with translate_store_errors(self.db, "resolve_direct_conversation"):
            self.db.commit()
        self.db.refresh(conversation)

        logger.info("Created direct conversation %s for %s", conversation.id, direct_key)
        return conversation
