"""Lookups shared by the messaging services."""

from collections import defaultdict
from typing import cast

from sqlalchemy.orm import Session, joinedload

from app.core.exceptions import NotFoundError
from app.core.repository import BaseRepository
from app.messaging.models.conversation import Conversation
from app.messaging.models.conversation_participant import ConversationParticipant
from app.messaging.models.message import Message


class ConversationRepository(BaseRepository[Conversation]):
    def __init__(self, db: Session) -> None:
        super().__init__(db, Conversation)

    def get_or_404(self, conversation_id: str) -> Conversation:
        conversation = self.get_by_id(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found", resource="conversation")
        return conversation

    def find_by_direct_key(self, direct_key: str) -> Conversation | None:
        conversation = (
            self.db.query(Conversation).filter(Conversation.direct_key == direct_key).first()
        )
        return cast(Conversation | None, conversation)

    def get_participant(self, conversation_id: str, user_id: str) -> ConversationParticipant | None:
        participant = (
            self.db.query(ConversationParticipant)
            .filter(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id == user_id,
            )
            .first()
        )
        return cast(ConversationParticipant | None, participant)

    def require_member(self, conversation_id: str, user_id: str) -> ConversationParticipant:
        """Return the membership row or raise NotFoundError.

        Non-members get the same error as a missing conversation so
        conversation ids cannot be guessed at.
        """
        participant = self.get_participant(conversation_id, user_id)
        if participant is None:
            raise NotFoundError("Conversation not found", resource="conversation")
        return participant

    def list_participants(
        self, conversation_ids: list[str]
    ) -> dict[str, list[ConversationParticipant]]:
        if not conversation_ids:
            return {}
        rows = (
            self.db.query(ConversationParticipant)
            .options(joinedload(ConversationParticipant.user))
            .filter(ConversationParticipant.conversation_id.in_(conversation_ids))
            .order_by(ConversationParticipant.joined_at.asc(), ConversationParticipant.id.asc())
            .all()
        )
        grouped: dict[str, list[ConversationParticipant]] = defaultdict(list)
        for row in rows:
            grouped[row.conversation_id].append(row)
        return grouped


class MessageRepository(BaseRepository[Message]):
    def __init__(self, db: Session) -> None:
        super().__init__(db, Message)

    def find_by_client_key(
        self, conversation_id: str, sender_id: str, client_key: str
    ) -> Message | None:
        message = (
            self.db.query(Message)
            .filter(
                Message.conversation_id == conversation_id,
                Message.sender_id == sender_id,
                Message.client_key == client_key,
            )
            .first()
        )
        return cast(Message | None, message)

    def last_message(self, conversation_id: str) -> Message | None:
        message = (
            self.db.query(Message)
            .filter(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .first()
        )
        return cast(Message | None, message)
