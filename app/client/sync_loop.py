"""Polling sync for the conversation the user currently has open.

One conversation is active at a time. While it is open a timer task polls
for messages after the last seen cursor; closing it (or opening another one)
suspends the loop. Every response is checked against the active conversation
id and the open generation before it touches state, so a slow response for a
conversation the user already left is dropped.

Observers get an immutable ``ConversationSnapshot`` after each change.
``snapshots()`` exposes the same stream as an async iterator so a push
transport can drive the same consumers.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from app.client.api import MessagingClient
from app.client.badge import NotificationAggregator
from app.client.cache import ConversationCache, LocalMessage, LocalMessageStatus
from app.core.config import settings
from app.core.exceptions import AppError, TransientStoreError, ValidationError
from app.messaging.schemas.message import MessageResponse

logger = logging.getLogger(__name__)

T = TypeVar("T")

SnapshotObserver = Callable[["ConversationSnapshot"], None]


class SyncState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    SUSPENDED = "suspended"


@dataclass(frozen=True)
class ConversationSnapshot:
    conversation_id: str | None
    state: SyncState
    messages: tuple[MessageResponse, ...] = ()
    pending: tuple[LocalMessage, ...] = ()
    unread_count: int | None = None
    has_earlier: bool = False
    reconnecting: bool = False


class SyncLoop:
    def __init__(
        self,
        client: MessagingClient,
        current_user_id: str,
        cache: ConversationCache | None = None,
        aggregator: NotificationAggregator | None = None,
        poll_interval: float | None = None,
        poll_timeout: float | None = None,
        reconnecting_threshold: int | None = None,
        poll_overlap: float | None = None,
    ) -> None:
        self.client = client
        self.current_user_id = current_user_id
        self.cache = cache or ConversationCache()
        self.aggregator = aggregator
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.SYNC_POLL_INTERVAL_SECONDS
        )
        self.poll_timeout = (
            poll_timeout if poll_timeout is not None else settings.SYNC_POLL_TIMEOUT_SECONDS
        )
        self.reconnecting_threshold = (
            reconnecting_threshold
            if reconnecting_threshold is not None
            else settings.SYNC_RECONNECTING_THRESHOLD
        )
        self.poll_overlap = (
            poll_overlap if poll_overlap is not None else settings.SYNC_POLL_OVERLAP_SECONDS
        )

        self._active: str | None = None
        self._generation = 0
        self._state = SyncState.SUSPENDED
        # Generation whose load or poll is outstanding
        self._in_flight: int | None = None
        self._timer: asyncio.Task[None] | None = None
        self._failures = 0
        self._reconnecting = False
        self._observers: list[SnapshotObserver] = []

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def active_conversation_id(self) -> str | None:
        return self._active

    @property
    def reconnecting(self) -> bool:
        return self._reconnecting

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def add_observer(self, observer: SnapshotObserver) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: SnapshotObserver) -> None:
        with suppress(ValueError):
            self._observers.remove(observer)

    async def snapshots(self) -> AsyncIterator[ConversationSnapshot]:
        queue: asyncio.Queue[ConversationSnapshot] = asyncio.Queue()
        self.add_observer(queue.put_nowait)
        try:
            while True:
                yield await queue.get()
        finally:
            self.remove_observer(queue.put_nowait)

    def snapshot(self) -> ConversationSnapshot:
        entry = self.cache.get(self._active) if self._active else None
        if entry is None:
            return ConversationSnapshot(
                conversation_id=self._active,
                state=self._state,
                reconnecting=self._reconnecting,
            )
        return ConversationSnapshot(
            conversation_id=entry.conversation_id,
            state=self._state,
            messages=tuple(entry.messages),
            pending=tuple(entry.local.values()),
            unread_count=entry.unread_count,
            has_earlier=entry.has_earlier,
            reconnecting=self._reconnecting,
        )

    async def open(self, conversation_id: str) -> ConversationSnapshot:
        """Make a conversation active: mark it read, load its latest page, start polling.

        Transient failures during the first load are retried by the poll timer.

        Raises:
            NotFoundError: the conversation does not exist or the user is not a member.
        """
        if self._active == conversation_id and self._state != SyncState.SUSPENDED:
            return self.snapshot()
        if self._active is not None:
            await self.close()

        self._generation += 1
        generation = self._generation
        self._active = conversation_id
        self._state = SyncState.IDLE
        self._failures = 0
        self.cache.ensure(conversation_id)

        self._in_flight = generation
        try:
            await self._load_initial(conversation_id, generation)
            self._record_success()
        except (TransientStoreError, asyncio.TimeoutError):
            self._record_failure()
        except AppError:
            await self.close()
            raise
        finally:
            self._release(generation)

        if self._is_current(conversation_id, generation):
            self._timer = asyncio.create_task(self._run(generation))
        self._notify()
        return self.snapshot()

    async def close(self) -> None:
        """Leave the active conversation and stop polling."""
        conversation_id = self._active
        self._suspend()
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
            with suppress(asyncio.CancelledError):
                await timer
        if conversation_id is not None:
            self.cache.on_navigate_away(conversation_id)
        self._notify()

    async def poll(self) -> bool:
        """Fetch messages after the cursor once; skipped while another poll is in flight.

        Returns True when a response was applied.
        """
        conversation_id = self._active
        if conversation_id is None or self._in_flight == self._generation:
            return False

        generation = self._generation
        self._in_flight = generation
        self._state = SyncState.POLLING
        try:
            entry = self.cache.ensure(conversation_id)
            if not entry.loaded:
                await self._load_initial(conversation_id, generation)
            else:
                cursor = entry.poll_cursor(self.poll_overlap)
                added = await self._fetch_new(conversation_id, generation, cursor)
                if added is None:
                    logger.debug("Dropping stale poll response for %s", conversation_id)
                    return False
                if any(m.sender_id != self.current_user_id for m in added):
                    self.cache.on_new_message(conversation_id)
                    await self._mark_read(conversation_id, generation)
                elif added:
                    self.cache.on_new_message(conversation_id, from_self=True)
            if not self._is_current(conversation_id, generation):
                return False
            self._record_success()
            return True
        except (TransientStoreError, asyncio.TimeoutError) as e:
            if self._is_current(conversation_id, generation):
                logger.warning("Poll failed for %s: %r", conversation_id, e)
                self._record_failure()
            return False
        except AppError:
            if self._is_current(conversation_id, generation):
                logger.warning("Conversation %s is no longer available", conversation_id)
                self._suspend()
            raise
        finally:
            self._release(generation)
            if self._is_current(conversation_id, generation):
                self._state = SyncState.IDLE
            self._notify()

    async def send_message(self, content: str, image_url: str | None = None) -> MessageResponse | None:
        """Show the message immediately, then deliver it.

        Returns the server's message, or None when delivery failed transiently
        and the local copy was marked FAILED for a later retry.
        """
        conversation_id = self._require_active()
        if not content.strip() and not image_url:
            raise ValidationError("Message needs text or an image", field="content")

        local = LocalMessage(
            client_key=uuid.uuid4().hex,
            conversation_id=conversation_id,
            content=content,
            image_url=image_url,
        )
        self.cache.add_local(local)
        self._notify()
        return await self._deliver(local)

    async def retry_message(self, client_key: str) -> MessageResponse | None:
        """Resend a FAILED local message with its original client key."""
        conversation_id = self._require_active()
        local = self.cache.get_local(conversation_id, client_key)
        if local is None or local.status != LocalMessageStatus.FAILED:
            raise ValidationError("No failed message with this key", field="client_key")

        self.cache.set_local_status(conversation_id, client_key, LocalMessageStatus.PENDING)
        self._notify()
        return await self._deliver(local)

    async def handle_event(self, event: dict[str, Any]) -> None:
        """Apply a pushed server event by pulling the state it announces."""
        conversation_id = event.get("conversation_id")
        if event.get("type") == "message_created" and conversation_id == self._active:
            await self.poll()
        elif self.aggregator is not None:
            self.cache.list_stale = True
            self.aggregator.request_refresh()

    async def _run(self, generation: int) -> None:
        while self._generation == generation:
            await asyncio.sleep(self.poll_interval)
            if self._generation != generation:
                break
            try:
                await self.poll()
            except AppError:
                break

    async def _fetch_new(
        self, conversation_id: str, generation: int, cursor: str | None
    ) -> list[MessageResponse] | None:
        """Page forward from cursor until caught up; None if the conversation changed."""
        added: list[MessageResponse] = []
        while True:
            page = await self._call(self.client.list_messages(conversation_id, cursor=cursor))
            if not self._is_current(conversation_id, generation):
                return None
            added.extend(self.cache.apply_page(conversation_id, page))
            if not page.has_more or not page.next_cursor:
                return added
            cursor = page.next_cursor

    async def _load_initial(self, conversation_id: str, generation: int) -> None:
        detail = await self._call(self.client.open_conversation(conversation_id))
        if not self._is_current(conversation_id, generation):
            return
        self.cache.apply_page(conversation_id, detail.page)
        self.cache.on_mark_read(conversation_id)
        if detail.marked_read and self.aggregator is not None:
            self.aggregator.request_refresh()

    async def _mark_read(self, conversation_id: str, generation: int) -> None:
        entry = self.cache.ensure(conversation_id)
        marked = await self._call(self.client.mark_read(conversation_id, up_to=entry.cursor))
        if not self._is_current(conversation_id, generation):
            return
        self.cache.on_mark_read(conversation_id)
        if marked and self.aggregator is not None:
            self.aggregator.request_refresh()

    async def _deliver(self, local: LocalMessage) -> MessageResponse | None:
        try:
            message = await self._call(
                self.client.send_message(
                    local.conversation_id,
                    local.content,
                    image_url=local.image_url,
                    client_key=local.client_key,
                )
            )
        except (TransientStoreError, asyncio.TimeoutError):
            logger.warning("Send failed for client key %s", local.client_key)
            self.cache.set_local_status(
                local.conversation_id, local.client_key, LocalMessageStatus.FAILED
            )
            self._notify()
            return None
        except AppError:
            self.cache.set_local_status(
                local.conversation_id, local.client_key, LocalMessageStatus.FAILED
            )
            self._notify()
            raise

        self.cache.confirm_sent(message)
        self._notify()
        return message

    async def _call(self, request: Awaitable[T]) -> T:
        return await asyncio.wait_for(request, timeout=self.poll_timeout)

    def _is_current(self, conversation_id: str, generation: int) -> bool:
        return self._active == conversation_id and self._generation == generation

    def _require_active(self) -> str:
        if self._active is None:
            raise ValidationError("No conversation is open", field="conversation_id")
        return self._active

    def _release(self, generation: int) -> None:
        if self._in_flight == generation:
            self._in_flight = None

    def _suspend(self) -> None:
        self._generation += 1
        self._active = None
        self._state = SyncState.SUSPENDED

    def _record_success(self) -> None:
        self._failures = 0
        if self._reconnecting:
            logger.info("Sync recovered")
        self._reconnecting = False

    def _record_failure(self) -> None:
        self._failures += 1
        if self._failures >= self.reconnecting_threshold and not self._reconnecting:
            logger.warning("Sync failing %d times in a row, reconnecting", self._failures)
            self._reconnecting = True

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for observer in list(self._observers):
            observer(snapshot)
