from __future__ import annotations

import logging
from typing import Any, List, Sequence

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import get_settings

logger = logging.getLogger(__name__)


class RedisCrudService:
    """Async key and list operations against a Redis instance."""

    def __init__(self, url: str) -> None:
        """Create a Redis client for the given URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._client: Redis[Any] | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(
            self._url,
            decode_responses=True,
        )
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    @property
    def client(self) -> Redis[Any] | None:
        """Return the underlying Redis client, or None if not connected."""
        return self._client

    async def delete(self, key: str) -> bool:
        """Delete key. Returns True if key was deleted or did not exist."""
        if self._client is None:
            return False
        try:
            await self._client.delete(key)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis delete %s failed: %s", key, e)
            return False

    async def append(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        """Push value to the tail of the list at key, refreshing its TTL. Returns True on success."""
        if self._client is None:
            return False
        try:
            await self._client.rpush(key, value)
            if ttl_seconds is not None and ttl_seconds > 0:
                await self._client.expire(key, ttl_seconds)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis rpush %s failed: %s", key, e)
            return False

    async def get_list(self, key: str) -> List[str]:
        """Return every element of the list at key (empty if missing or on error)."""
        if self._client is None:
            return []
        try:
            values = await self._client.lrange(key, 0, -1)
            return [str(v) for v in values]
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis lrange %s failed: %s", key, e)
            return []

    async def replace_list(
        self,
        key: str,
        values: Sequence[str],
        ttl_seconds: int | None = None,
    ) -> bool:
        """Atomically replace the list at key with values. Returns True on success."""
        if self._client is None:
            return False
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                if values:
                    pipe.rpush(key, *values)
                    if ttl_seconds is not None and ttl_seconds > 0:
                        pipe.expire(key, ttl_seconds)
                await pipe.execute()
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis replace %s failed: %s", key, e)
            return False


def get_redis_crud_service() -> RedisCrudService | None:
    """Return a Redis CRUD service if redis_url is configured, else None."""
    settings = get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisCrudService(settings.redis_url.strip())
