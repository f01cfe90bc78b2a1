from typing import Optional

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from src.storage.base import StorageError

logger = structlog.get_logger()


class RedisJobStore:
    """Job store backed by Redis lists and string keys.

    Items are pushed on the left and popped from the right (LPUSH/BRPOP), so
    each list behaves as a FIFO queue. Cache entries use SET with PX.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379/1", client: Optional[redis.Redis] = None):
        """Initialize Redis store.

        Args:
            redis_url: Redis connection URL
            client: Pre-built client, used instead of connecting to redis_url
        """
        self.redis_url = redis_url
        self._client = client
        logger.info("redis_job_store_initialized", redis_url=redis_url, source="storage")

    @property
    def client(self) -> redis.Redis:
        """Get or create Redis client (lazy initialization)."""
        if self._client is None:
            self._client = redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    async def initialize(self) -> None:
        try:
            await self.client.ping()
        except RedisError as e:
            raise StorageError(f"redis not available at {self.redis_url}: {e}") from e

        logger.info("redis_connection_verified", source="storage")

    async def push(self, key: str, value: str) -> None:
        try:
            await self.client.lpush(key, value)
        except RedisError as e:
            raise StorageError(f"failed to push to '{key}': {e}") from e

    async def pop(self, key: str, timeout: float) -> Optional[str]:
        try:
            # BRPOP treats 0 as "block forever"
            if timeout <= 0:
                return _decode(await self.client.rpop(key))

            result = await self.client.brpop([key], timeout=timeout)
        except RedisError as e:
            raise StorageError(f"failed to pop from '{key}': {e}") from e

        if result is None:
            return None
        if len(result) < 2:
            raise StorageError(f"invalid result from Redis: expected 2 elements, got {len(result)}")
        return _decode(result[1])

    async def length(self, key: str) -> int:
        try:
            return int(await self.client.llen(key))
        except RedisError as e:
            raise StorageError(f"failed to read length of '{key}': {e}") from e

    async def get(self, key: str) -> Optional[str]:
        try:
            return _decode(await self.client.get(key))
        except RedisError as e:
            raise StorageError(f"failed to get '{key}': {e}") from e

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        try:
            if ttl:
                await self.client.set(key, value, px=int(ttl * 1000))
            else:
                await self.client.set(key, value)
        except RedisError as e:
            raise StorageError(f"failed to set '{key}': {e}") from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _decode(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value
