"""Redis client and the durable failed-notification retry list."""

import json
from typing import Optional

import redis.asyncio as redis
import structlog

from task_scheduler.config import get_settings
from task_scheduler.models.notification import FailedNotification

logger = structlog.get_logger(__name__)

# Global Redis client
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get or create the Redis client.

    Returns:
        Redis client or None if connection fails
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    settings = get_settings()

    try:
        _redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        # Test connection
        await _redis_client.ping()
        logger.info("redis_connected", host=settings.redis_url.split("@")[-1])
        return _redis_client
    except Exception as e:
        logger.warning("redis_connection_failed", error=str(e))
        _redis_client = None
        return None


async def close_redis() -> None:
    """Close the Redis connection."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.close()
        _redis_client = None
        logger.info("redis_connection_closed")


async def redis_health_check() -> bool:
    """Check Redis connectivity.

    Returns:
        True if Redis answers PING, False otherwise
    """
    client = await get_redis()
    if client is None:
        return False

    try:
        return bool(await client.ping())
    except Exception as e:
        logger.error("redis_health_check_failed", error=str(e))
        return False


class RetryQueue:
    """Failed-notification payloads awaiting another delivery attempt.

    Entries are JSON strings in a Redis list. Removal is by exact value, so
    callers must pass back the raw string they read.
    """

    def __init__(self, key: Optional[str] = None):
        self.key = key or get_settings().retry_queue_key

    async def _client(self) -> redis.Redis:
        client = await get_redis()
        if client is None:
            raise ConnectionError("Redis is not available")
        return client

    @staticmethod
    def serialize(entry: FailedNotification) -> str:
        return entry.model_dump_json()

    @staticmethod
    def parse(raw: str) -> FailedNotification:
        """Parse a raw list entry.

        Raises:
            ValueError: If the entry is not a valid failed-notification payload
        """
        return FailedNotification.model_validate(json.loads(raw))

    async def push(self, entry: FailedNotification) -> int:
        """Append an entry to the tail of the list. Returns the new length."""
        client = await self._client()
        length = await client.rpush(self.key, self.serialize(entry))
        logger.info(
            "retry_entry_queued",
            queue=self.key,
            retry_count=entry.retry_count,
            user_id=str(entry.data.user_id),
            type=entry.data.type.value,
        )
        return length

    async def entries(self) -> list[str]:
        """Snapshot of every raw entry currently in the list."""
        client = await self._client()
        return await client.lrange(self.key, 0, -1)

    async def remove(self, raw: str) -> int:
        """Remove one occurrence of a raw entry. Returns the number removed."""
        client = await self._client()
        return await client.lrem(self.key, 1, raw)

    async def length(self) -> int:
        client = await self._client()
        return await client.llen(self.key)
