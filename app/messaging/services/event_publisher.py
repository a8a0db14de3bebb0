"""Per-user change notifications over Redis pub/sub.

Services queue events while handling a request; the route flushes them as a
background task once the transaction has committed. Delivery is best effort:
subscribers that miss an event still converge through polling.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from redis.exceptions import RedisError

from app.core import redis as redis_module

logger = logging.getLogger(__name__)

MESSAGE_CREATED = "message_created"
CONVERSATION_READ = "conversation_read"
CONVERSATION_CREATED = "conversation_created"


@dataclass
class EventPublisher:
    pending: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    def queue(self, user_id: str, event_type: str, **payload: Any) -> None:
        self.pending.append((user_id, {"type": event_type, **payload}))

    async def flush(self) -> int:
        """Publish queued events; returns how many were handed to Redis."""
        events, self.pending = self.pending, []
        if redis_module.redis_client is None:
            return 0

        published = 0
        for user_id, event in events:
            try:
                await redis_module.publish_user_event(user_id, event)
                published += 1
            except RedisError:
                logger.warning("Failed to publish %s event for user %s", event["type"], user_id)
        return published
