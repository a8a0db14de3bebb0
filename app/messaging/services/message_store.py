"""Durable storage of conversations, memberships and messages.

Messages in a conversation are totally ordered by ``(created_at, id)``. Ids
are monotonic ULIDs, so the tie-break stays stable when two messages share a
timestamp. Pagination is keyset-based on that pair, which keeps cursors valid
while new messages are being inserted.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from app.auth.models.user import User
from app.core.constants import CONVERSATION_MESSAGES_PAGE_SIZE, MESSAGE_MAX_LENGTH
from app.core.datetime_utils import utcnow
from app.core.exceptions import ConflictError, ValidationError
from app.core.ids import new_id
from app.db.errors import translate_store_errors
from app.messaging.cursor import decode_cursor, encode_cursor
from app.messaging.models.conversation import Conversation
from app.messaging.models.conversation_participant import ConversationParticipant
from app.messaging.models.message import Message
from app.messaging.repositories import ConversationRepository, MessageRepository
from app.messaging.services.read_receipt_service import ReadReceiptTracker

logger = logging.getLogger(__name__)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass
class MessagePageResult:
    messages: list[Message]
    next_cursor: str | None
    has_more: bool = False
    earlier_cursor: str | None = None
    has_earlier: bool = False


@dataclass
class ConversationEntry:
    conversation: Conversation
    participants: list[ConversationParticipant] = field(default_factory=list)
    last_message: Message | None = None
    unread_count: int = 0


def message_cursor(message: Message) -> str:
    return encode_cursor((message.created_at, message.id))


class MessageStore:
    def __init__(self, db: Session) -> None:
        self.db = db
        self.conversations = ConversationRepository(db)
        self.messages = MessageRepository(db)
        self.receipts = ReadReceiptTracker(db)

    def create_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str | None,
        image_url: str | None = None,
        client_key: str | None = None,
    ) -> Message:
        message, _ = self.create_or_get_message(
            conversation_id, sender_id, content, image_url=image_url, client_key=client_key
        )
        return message

    def create_or_get_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str | None,
        image_url: str | None = None,
        client_key: str | None = None,
    ) -> tuple[Message, bool]:
        """Persist a message and bump the conversation's updated_at in one transaction.

        A repeated client_key from the same sender in the same conversation
        returns the message stored the first time instead of a new one.
        The flag is False in that case.

        Raises:
            ValidationError: no text and no image.
            NotFoundError: conversation missing or sender not a member.
        """
        text = (content or "").strip()
        image_url = (image_url or "").strip() or None
        if not text and not image_url:
            raise ValidationError("Message needs text or an image", field="content")

        self.conversations.get_or_404(conversation_id)
        self.conversations.require_member(conversation_id, sender_id)

        if client_key:
            existing = self.messages.find_by_client_key(conversation_id, sender_id, client_key)
            if existing is not None:
                logger.info("Duplicate send for client key %s, returning %s", client_key, existing.id)
                return existing, False

        created_at = utcnow()
        message = Message(
            id=new_id(),
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=text[:MESSAGE_MAX_LENGTH],
            image_url=image_url,
            client_key=client_key,
            created_at=created_at,
        )
        self.messages.add(message)

        try:
            with translate_store_errors(self.db, "create_message"):
                self.db.flush()
                # Never move updated_at backwards when a concurrent send won
                self.db.query(Conversation).filter(
                    Conversation.id == conversation_id,
                    Conversation.updated_at < created_at,
                ).update({Conversation.updated_at: created_at}, synchronize_session=False)
                self.db.commit()
        except ConflictError:
            if client_key:
                existing = self.messages.find_by_client_key(conversation_id, sender_id, client_key)
                if existing is not None:
                    return existing, False
            raise

        self.db.refresh(message)
        return message, True

    def list_messages(
        self,
        conversation_id: str,
        cursor: str | None = None,
        limit: int = CONVERSATION_MESSAGES_PAGE_SIZE,
    ) -> MessagePageResult:
        """Messages strictly after cursor, ascending by (created_at, id).

        next_cursor points at the last returned message; with an empty page it
        echoes the input cursor so pollers can keep asking for newer messages.
        """
        self.conversations.get_or_404(conversation_id)

        query = self.db.query(Message).filter(Message.conversation_id == conversation_id)
        if cursor:
            after_at, after_id = decode_cursor(cursor)
            query = query.filter(
                or_(
                    Message.created_at > after_at,
                    and_(Message.created_at == after_at, Message.id > after_id),
                )
            )

        rows = (
            query.order_by(Message.created_at.asc(), Message.id.asc()).limit(limit + 1).all()
        )
        has_more = len(rows) > limit
        rows = rows[:limit]

        return MessagePageResult(
            messages=rows,
            next_cursor=message_cursor(rows[-1]) if rows else cursor,
            has_more=has_more,
            earlier_cursor=message_cursor(rows[0]) if rows else None,
            has_earlier=bool(cursor),
        )

    def list_messages_before(
        self,
        conversation_id: str,
        before: str | None = None,
        limit: int = CONVERSATION_MESSAGES_PAGE_SIZE,
    ) -> MessagePageResult:
        """The newest `limit` messages strictly before `before` (or overall), ascending."""
        self.conversations.get_or_404(conversation_id)

        query = self.db.query(Message).filter(Message.conversation_id == conversation_id)
        if before:
            before_at, before_id = decode_cursor(before)
            query = query.filter(
                or_(
                    Message.created_at < before_at,
                    and_(Message.created_at == before_at, Message.id < before_id),
                )
            )

        rows = (
            query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit + 1).all()
        )
        has_earlier = len(rows) > limit
        rows = list(reversed(rows[:limit]))

        if rows:
            next_cursor = message_cursor(rows[-1])
        else:
            next_cursor = before
        return MessagePageResult(
            messages=rows,
            next_cursor=next_cursor,
            has_more=bool(before),
            earlier_cursor=message_cursor(rows[0]) if rows else None,
            has_earlier=has_earlier,
        )

    def list_conversations_for_user(
        self,
        user_id: str,
        search: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[list[ConversationEntry], int]:
        """Conversations of a member, most recently active first.

        Returns the requested slice and the total number of matches.
        """
        member_of = (
            select(ConversationParticipant.conversation_id)
            .where(ConversationParticipant.user_id == user_id)
            .scalar_subquery()
        )
        query = self.db.query(Conversation).filter(Conversation.id.in_(member_of))

        if search and search.strip():
            pattern = f"%{_escape_like(search.strip())}%"
            other_member_match = (
                select(ConversationParticipant.conversation_id)
                .join(User, User.id == ConversationParticipant.user_id)
                .where(
                    ConversationParticipant.user_id != user_id,
                    or_(
                        User.username.ilike(pattern, escape="\\"),
                        User.display_name.ilike(pattern, escape="\\"),
                    ),
                )
                .scalar_subquery()
            )
            query = query.filter(
                or_(
                    Conversation.id.in_(other_member_match),
                    Conversation.name.ilike(pattern, escape="\\"),
                )
            )

        total = query.count()
        query = query.order_by(Conversation.updated_at.desc(), Conversation.id.desc())
        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)
        conversations = query.all()

        conversation_ids = [c.id for c in conversations]
        participants = self.conversations.list_participants(conversation_ids)
        unread = self.receipts.get_unread_counts(user_id, conversation_ids)

        entries = [
            ConversationEntry(
                conversation=conversation,
                participants=participants.get(conversation.id, []),
                last_message=self.messages.last_message(conversation.id),
                unread_count=unread.get(conversation.id, 0),
            )
            for conversation in conversations
        ]
        return entries, total
