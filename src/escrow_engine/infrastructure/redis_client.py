"""Redis client and the notification queue dispatcher.

Notifications are pushed as JSON onto a Redis list that the out-of-scope
delivery workers consume. When Redis is not reachable at startup the app
falls back to LoggingNotificationDispatcher, which writes each event to the
structured log instead.

Usage:
    from escrow_engine.infrastructure.redis_client import init_redis, get_redis

    redis = await init_redis()
    dispatcher = RedisNotificationDispatcher(redis, settings.notification_queue_key)
"""

from __future__ import annotations

import json
from datetime import UTC, datetime

import redis.asyncio as aioredis

from escrow_engine.config import get_settings
from escrow_engine.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    _redis_client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    # Verify connectivity
    await _redis_client.ping()
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Notification dispatchers ---


def _envelope(recipient: str, notification_type: str, payload: dict) -> dict:
    return {
        "recipient": recipient,
        "type": notification_type,
        "payload": payload,
        "enqueued_at": datetime.now(UTC).isoformat(),
    }


class RedisNotificationDispatcher:
    """Enqueue notifications with RPUSH onto a Redis list."""

    def __init__(self, client: aioredis.Redis, queue_key: str) -> None:
        self._client = client
        self._queue_key = queue_key

    async def enqueue(self, recipient: str, notification_type: str, payload: dict) -> None:
        message = json.dumps(_envelope(recipient, notification_type, payload), default=str)
        await self._client.rpush(self._queue_key, message)
        logger.debug(
            "notification.enqueued",
            recipient=recipient,
            type=notification_type,
            queue=self._queue_key,
        )


class LoggingNotificationDispatcher:
    """Write notifications to the log. Used when Redis is unavailable."""

    async def enqueue(self, recipient: str, notification_type: str, payload: dict) -> None:
        logger.info(
            "notification.logged",
            recipient=recipient,
            type=notification_type,
            escrow_id=payload.get("escrow_id"),
            title=payload.get("title"),
        )
