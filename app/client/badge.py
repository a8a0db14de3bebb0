"""Total unread badge across all conversations.

The badge is always the server's total recomputed from scratch, never a
running sum of deltas, so missed or duplicated notifications cannot make it
drift.
"""

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from typing import Protocol

from app.core.config import settings
from app.core.exceptions import AppError, TransientStoreError

logger = logging.getLogger(__name__)

BadgeListener = Callable[[int], None]


class UnreadCountSource(Protocol):
    async def get_total_unread_count(self) -> int: ...


class NotificationAggregator:
    def __init__(
        self,
        client: UnreadCountSource,
        refresh_interval: float | None = None,
        request_timeout: float | None = None,
    ) -> None:
        self.client = client
        self.refresh_interval = (
            refresh_interval
            if refresh_interval is not None
            else settings.BADGE_REFRESH_INTERVAL_SECONDS
        )
        self.request_timeout = (
            request_timeout if request_timeout is not None else settings.SYNC_POLL_TIMEOUT_SECONDS
        )
        self.badge = 0
        self.failed_refreshes = 0
        self._listeners: list[BadgeListener] = []
        self._refresh_task: asyncio.Task[int] | None = None
        self._rerun = False
        self._periodic: asyncio.Task[None] | None = None

    def add_listener(self, listener: BadgeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: BadgeListener) -> None:
        with suppress(ValueError):
            self._listeners.remove(listener)

    def request_refresh(self) -> "asyncio.Task[int]":
        """Schedule a refresh.

        While one is in flight, further requests fold into a single re-run
        after it completes.
        """
        if self._refresh_task is not None and not self._refresh_task.done():
            self._rerun = True
            return self._refresh_task
        self._refresh_task = asyncio.create_task(self._refresh_until_settled())
        return self._refresh_task

    async def refresh(self) -> int:
        return await self.request_refresh()

    def start(self) -> None:
        if self._periodic is None or self._periodic.done():
            self._periodic = asyncio.create_task(self._run())

    async def stop(self) -> None:
        tasks = [t for t in (self._periodic, self._refresh_task) if t is not None]
        self._periodic = None
        self._refresh_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task

    async def _run(self) -> None:
        while True:
            try:
                await self.refresh()
            except AppError as e:
                # e.g. an expired session; keep the badge and try again next interval
                self.failed_refreshes += 1
                logger.error("Unread badge refresh rejected: %s", e.message)
            await asyncio.sleep(self.refresh_interval)

    async def _refresh_until_settled(self) -> int:
        while True:
            self._rerun = False
            await self._refresh_once()
            if not self._rerun:
                return self.badge

    async def _refresh_once(self) -> None:
        try:
            total = await asyncio.wait_for(
                self.client.get_total_unread_count(), timeout=self.request_timeout
            )
        except (TransientStoreError, asyncio.TimeoutError):
            self.failed_refreshes += 1
            logger.warning("Unread badge refresh failed, keeping %d", self.badge)
            return

        self.failed_refreshes = 0
        if total != self.badge:
            self.badge = total
            for listener in list(self._listeners):
                listener(total)
