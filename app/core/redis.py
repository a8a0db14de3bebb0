import json
from collections.abc import AsyncIterator
from typing import Any

from redis.asyncio import Redis

# Global Redis client instance
redis_client: Redis | None = None

USER_EVENTS_CHANNEL_PREFIX = "dm:events:"


async def get_redis() -> Redis:
    """
    Get the Redis client instance.

    Returns:
        Redis client instance

    Raises:
        RuntimeError: If Redis client is not initialized
    """
    if redis_client is None:
        raise RuntimeError("Redis client is not initialized")
    return redis_client


def user_events_channel(user_id: str) -> str:
    return f"{USER_EVENTS_CHANNEL_PREFIX}{user_id}"


async def publish_user_event(user_id: str, event: dict[str, Any]) -> int:
    """
    Publish a JSON event on a user's pub/sub channel.

    Args:
        user_id: Recipient user id
        event: JSON-serialisable payload

    Returns:
        Number of subscribers that received the event

    Example:
        await publish_user_event("01J...", {"type": "message_created", ...})
    """
    if redis_client is None:
        raise RuntimeError("Redis client is not initialized")
    receivers: int = await redis_client.publish(user_events_channel(user_id), json.dumps(event))
    return receivers


async def listen_user_events(
    user_id: str, idle_timeout: float = 15.0
) -> AsyncIterator[dict[str, Any] | None]:
    """
    Subscribe to a user's channel and yield decoded events until the consumer stops.

    Yields None whenever idle_timeout seconds pass without an event so callers
    can emit keep-alives or check for disconnects. The subscription is torn
    down when the consumer stops iterating.
    """
    if redis_client is None:
        raise RuntimeError("Redis client is not initialized")
    channel = user_events_channel(user_id)
    pubsub = redis_client.pubsub()
    await pubsub.subscribe(channel)
    try:
        while True:
            raw = await pubsub.get_message(ignore_subscribe_messages=True, timeout=idle_timeout)
            if raw is None:
                yield None
                continue
            data = raw.get("data")
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            yield json.loads(data)
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
