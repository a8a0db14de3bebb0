"""Read receipts and unread counts.

Unread state is never cached: every count is computed from ``messages`` and
``message_reads`` at query time, so it is correct under any interleaving of
message writes and receipt writes.

Unread count of conversation C for user U::

    count(messages in C sent by someone other than U with no receipt from U)

and 0 when U is not a member of C.
"""

import logging
from collections import defaultdict

from sqlalchemy import DateTime, String, and_, exists, func, literal, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.datetime_utils import utcnow
from app.db.errors import translate_store_errors
from app.messaging.cursor import decode_cursor
from app.messaging.models.conversation_participant import ConversationParticipant
from app.messaging.models.message import Message
from app.messaging.models.message_read import MessageRead
from app.messaging.repositories import ConversationRepository

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class ReadReceiptTracker:
    def __init__(self, db: Session) -> None:
        self.db = db
        self.conversations = ConversationRepository(db)

    def mark_conversation_read(
        self, conversation_id: str, user_id: str, up_to: str | None = None
    ) -> int:
        """Insert a receipt for every message from others the user has not read yet.

        Receipts are written with insert-if-absent semantics: a receipt that
        already exists (including one written concurrently by another request)
        is skipped, never duplicated. Messages committed after the statement
        runs stay unread. Returns the number of receipts actually inserted, so
        a second call with no new messages returns 0.

        With up_to (a message cursor) only messages at or before that
        (created_at, id) position are marked, so a client can acknowledge
        exactly what it has displayed.

        Raises:
            NotFoundError: conversation missing or user not a member.
            TransientStoreError: storage failure; nothing is written.
        """
        self.conversations.require_member(conversation_id, user_id)

        read_at = utcnow()
        unread = select(
            Message.id,
            literal(user_id, type_=String()),
            literal(read_at, type_=DateTime()),
        ).where(
            Message.conversation_id == conversation_id,
            Message.sender_id != user_id,
            ~self._has_receipt(user_id),
            *self._up_to_filter(up_to),
        )

        dialect = self.db.get_bind().dialect.name
        insert_fn = _UPSERT_INSERTS.get(dialect)
        if insert_fn is None:
            return self._mark_row_by_row(conversation_id, user_id, up_to)

        stmt = (
            insert_fn(MessageRead)
            .from_select(["message_id", "user_id", "read_at"], unread)
            .on_conflict_do_nothing(index_elements=["message_id", "user_id"])
        )
        with translate_store_errors(self.db, "mark_conversation_read"):
            result = self.db.execute(stmt)
            self.db.commit()

        marked = max(result.rowcount or 0, 0)
        if marked:
            logger.info(
                "Marked %d messages read in conversation %s for user %s",
                marked,
                conversation_id,
                user_id,
            )
        return marked

    def get_unread_count(self, conversation_id: str, user_id: str) -> int:
        return self.get_unread_counts(user_id, [conversation_id]).get(conversation_id, 0)

    def get_unread_counts(
        self, user_id: str, conversation_ids: list[str] | None = None
    ) -> dict[str, int]:
        """Unread counts for many conversations in one grouped query.

        With conversation_ids=None every conversation the user belongs to that
        has unread messages is returned; otherwise each requested id is present
        in the result, with 0 for conversations without unread messages.
        """
        if conversation_ids is not None and not conversation_ids:
            return {}

        query = self._unread_query(user_id, func.count(Message.id), Message.conversation_id)
        if conversation_ids is not None:
            query = query.filter(Message.conversation_id.in_(conversation_ids))
        rows = query.group_by(Message.conversation_id).all()

        counts = {conversation_id: int(count) for count, conversation_id in rows}
        if conversation_ids is None:
            return counts
        return {conversation_id: counts.get(conversation_id, 0) for conversation_id in conversation_ids}

    def get_total_unread_count(self, user_id: str) -> int:
        total = self._unread_query(user_id, func.count(Message.id)).scalar()
        return int(total or 0)

    def get_readers(self, message_ids: list[str]) -> dict[str, list[str]]:
        """User ids holding a receipt, per message."""
        if not message_ids:
            return {}
        rows = (
            self.db.query(MessageRead.message_id, MessageRead.user_id)
            .filter(MessageRead.message_id.in_(message_ids))
            .order_by(MessageRead.read_at.asc(), MessageRead.user_id.asc())
            .all()
        )
        readers: dict[str, list[str]] = defaultdict(list)
        for message_id, reader_id in rows:
            readers[message_id].append(reader_id)
        return readers

    def _unread_query(self, user_id: str, *columns):  # type: ignore[no-untyped-def]
        return (
            self.db.query(*columns)
            .select_from(Message)
            .join(
                ConversationParticipant,
                and_(
                    ConversationParticipant.conversation_id == Message.conversation_id,
                    ConversationParticipant.user_id == user_id,
                ),
            )
            .filter(
                Message.sender_id != user_id,
                ~self._has_receipt(user_id),
            )
        )

    @staticmethod
    def _has_receipt(user_id: str):  # type: ignore[no-untyped-def]
        return exists().where(
            MessageRead.message_id == Message.id,
            MessageRead.user_id == user_id,
        )

    @staticmethod
    def _up_to_filter(up_to: str | None) -> list:
        if not up_to:
            return []
        up_to_at, up_to_id = decode_cursor(up_to)
        return [
            or_(
                Message.created_at < up_to_at,
                and_(Message.created_at == up_to_at, Message.id <= up_to_id),
            )
        ]

    def _mark_row_by_row(
        self, conversation_id: str, user_id: str, up_to: str | None = None
    ) -> int:
        """Fallback for dialects without ON CONFLICT: one savepoint per receipt."""
        message_ids = [
            message_id
            for (message_id,) in self.db.query(Message.id)
            .filter(
                Message.conversation_id == conversation_id,
                Message.sender_id != user_id,
                ~self._has_receipt(user_id),
                *self._up_to_filter(up_to),
            )
            .all()
        ]
        marked = 0
        read_at = utcnow()
        with translate_store_errors(self.db, "mark_conversation_read"):
            for message_id in message_ids:
                try:
                    with self.db.begin_nested():
                        self.db.add(
                            MessageRead(message_id=message_id, user_id=user_id, read_at=read_at)
                        )
                    marked += 1
                except IntegrityError:
                    logger.debug("Receipt for message %s already present", message_id)
            self.db.commit()
        return marked
