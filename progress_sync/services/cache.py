"""Read-through cache for course progress reads.

The course progress endpoint asks the cache first; on a miss it reads
the store and populates the cache with a TTL.  A committed bulk batch
deletes the cached entry of every course it touched, so a learner
reads their own writes immediately.  The TTL bounds staleness if an
invalidation is ever skipped.
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

from redis.exceptions import RedisError

from progress_sync.core.metrics import CACHE_OPERATIONS
from progress_sync.db.redis import redis_pool

logger = logging.getLogger(__name__)

PROGRESS_TTL_SECONDS = 300


def course_key(user_id: str, course_id: str) -> str:
    return f"progress:{user_id}:course:{course_id}"


@runtime_checkable
class CacheService(Protocol):
    async def get(self, key: str) -> str | None:
        """Fetch a cached value.  Returns None on cache miss."""
        ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...


class InMemoryCacheService:
    """In-memory cache for testing, without TTL enforcement.

    The autouse fixture in conftest.py clears the store between tests.
    """

    def __init__(self) -> None:
        self._store: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        value = self._store.get(key)
        CACHE_OPERATIONS.labels(operation="hit" if value is not None else "miss").inc()
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._store[key] = value

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)
        CACHE_OPERATIONS.labels(operation="invalidate").inc()

    def clear(self) -> None:
        self._store.clear()


class RedisCacheService:
    """Redis-backed cache shared across all API instances.

    A cache outage degrades to uncached reads: errors are logged and
    reported as misses, never raised.
    """

    _PREFIX = "cache:"

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    async def get(self, key: str) -> str | None:
        try:
            value = await self._redis.get(f"{self._PREFIX}{key}")
        except RedisError:
            logger.warning("Cache read failed key=%s", key, exc_info=True)
            CACHE_OPERATIONS.labels(operation="error").inc()
            return None
        CACHE_OPERATIONS.labels(operation="hit" if value is not None else "miss").inc()
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._redis.setex(f"{self._PREFIX}{key}", ttl_seconds, value)
        except RedisError:
            logger.warning("Cache write failed key=%s", key, exc_info=True)
            CACHE_OPERATIONS.labels(operation="error").inc()

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(f"{self._PREFIX}{key}")
        except RedisError:
            logger.warning("Cache delete failed key=%s", key, exc_info=True)
            CACHE_OPERATIONS.labels(operation="error").inc()
            return
        CACHE_OPERATIONS.labels(operation="invalidate").inc()


if redis_pool is not None:
    cache_service: CacheService = RedisCacheService(redis_pool)
else:
    cache_service = InMemoryCacheService()
