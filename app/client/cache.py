"""Client-side state for conversations the user has open or listed.

Entries are keyed by conversation id. The confirmed messages of an entry are
kept sorted by ``(created_at, id)`` and deduplicated by id; optimistic local
messages live beside them keyed by their client key until the server echoes
that key back.

Invalidation:
- mark-read sets the entry's unread count to 0
- a new message from someone else makes the unread count unknown
- any new message marks the conversation list stale
- navigating away drops the entry
"""

from bisect import insort
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum

from app.messaging.cursor import decode_cursor, encode_cursor
from app.messaging.schemas.conversation import ConversationSummary
from app.messaging.schemas.message import MessagePage, MessageResponse


class LocalMessageStatus(str, Enum):
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True)
class LocalMessage:
    client_key: str
    conversation_id: str
    content: str
    image_url: str | None = None
    status: LocalMessageStatus = LocalMessageStatus.PENDING


def _order_key(message: MessageResponse) -> tuple[datetime, str]:
    return (message.created_at, message.id)


@dataclass
class CachedConversation:
    conversation_id: str
    messages: list[MessageResponse] = field(default_factory=list)
    local: dict[str, LocalMessage] = field(default_factory=dict)
    cursor: str | None = None
    earlier_cursor: str | None = None
    has_earlier: bool = False
    unread_count: int | None = None
    loaded: bool = False
    _ids: set[str] = field(default_factory=set, repr=False)

    def add_confirmed(self, message: MessageResponse) -> bool:
        """Insert a server message in order; returns False if already present."""
        if message.client_key:
            self.local.pop(message.client_key, None)
        if message.id in self._ids:
            return False
        self._ids.add(message.id)
        insort(self.messages, message, key=_order_key)
        return True

    def poll_cursor(self, overlap: float = 0) -> str | None:
        """Cursor to poll from, moved back by overlap seconds.

        A message whose transaction commits late can carry a created_at just
        behind the newest one already seen. Polling with an overlap picks it
        up; messages seen before are dropped by id.
        """
        if not self.cursor or overlap <= 0:
            return self.cursor
        created_at, message_id = decode_cursor(self.cursor)
        return encode_cursor((created_at - timedelta(seconds=overlap), message_id))

    def advance_cursor(self, cursor: str | None) -> None:
        if not cursor:
            return
        if self.cursor is None or decode_cursor(cursor) > decode_cursor(self.cursor):
            self.cursor = cursor


class ConversationCache:
    def __init__(self) -> None:
        self._entries: dict[str, CachedConversation] = {}
        self.summaries: list[ConversationSummary] = []
        self.list_stale = True

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._entries

    def get(self, conversation_id: str) -> CachedConversation | None:
        return self._entries.get(conversation_id)

    def ensure(self, conversation_id: str) -> CachedConversation:
        entry = self._entries.get(conversation_id)
        if entry is None:
            entry = CachedConversation(conversation_id=conversation_id)
            self._entries[conversation_id] = entry
        return entry

    def apply_page(self, conversation_id: str, page: MessagePage) -> list[MessageResponse]:
        """Merge a forward page into the entry and advance its cursor.

        The cursor only moves forward; an overlapping page never rewinds it.

        Returns the messages that were not cached before.
        """
        entry = self.ensure(conversation_id)
        added = [m for m in page.messages if entry.add_confirmed(m)]
        entry.advance_cursor(page.next_cursor)
        if not entry.loaded:
            entry.earlier_cursor = page.earlier_cursor
            entry.has_earlier = page.has_earlier
            entry.loaded = True
        return added

    def confirm_sent(self, message: MessageResponse) -> bool:
        """Record the server's copy of a message this client sent.

        The cursor is left alone: messages from others may sit between the
        last poll and this one and still have to be fetched.
        """
        entry = self._entries.get(message.conversation_id)
        if entry is None:
            return False
        added = entry.add_confirmed(message)
        self.list_stale = True
        return added

    def add_local(self, message: LocalMessage) -> None:
        self.ensure(message.conversation_id).local[message.client_key] = message

    def get_local(self, conversation_id: str, client_key: str) -> LocalMessage | None:
        entry = self._entries.get(conversation_id)
        return entry.local.get(client_key) if entry else None

    def set_local_status(
        self, conversation_id: str, client_key: str, status: LocalMessageStatus
    ) -> LocalMessage | None:
        entry = self._entries.get(conversation_id)
        if entry is None or client_key not in entry.local:
            return None
        updated = replace(entry.local[client_key], status=status)
        entry.local[client_key] = updated
        return updated

    def on_mark_read(self, conversation_id: str) -> None:
        entry = self._entries.get(conversation_id)
        if entry is not None:
            entry.unread_count = 0
        for index, summary in enumerate(self.summaries):
            if summary.id == conversation_id and summary.unread_count:
                self.summaries[index] = summary.model_copy(update={"unread_count": 0})

    def on_new_message(self, conversation_id: str, from_self: bool = False) -> None:
        entry = self._entries.get(conversation_id)
        if entry is not None and not from_self:
            entry.unread_count = None
        self.list_stale = True

    def on_navigate_away(self, conversation_id: str) -> None:
        self._entries.pop(conversation_id, None)

    def set_summaries(self, summaries: list[ConversationSummary]) -> None:
        self.summaries = list(summaries)
        self.list_stale = False
