"""Redis connection management.

Mirrors engine.py: when REDIS_URL is configured we create a connection
pool; when it is None (local dev, tests) every consumer falls back to
its in-memory implementation and no Redis server is needed.

Redis backs the shared pieces of the ingestion path: the sliding-window
rate limiter (sorted sets), the read-through progress cache and the
notification task queue.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis

from progress_sync.core.config import SETTINGS

logger = logging.getLogger(__name__)

# Upper bound for health-style probes against Redis
PING_TIMEOUT_SECONDS = 2.0

if SETTINGS.redis_url:
    redis_pool: aioredis.Redis | None = aioredis.from_url(  # type: ignore[type-arg]
        SETTINGS.redis_url,
        decode_responses=True,
        max_connections=20,
        socket_timeout=5,
        socket_connect_timeout=2,
    )
else:
    redis_pool = None


async def ping_redis() -> str:
    """Return "ok", "degraded" or "not_configured" for the Redis pool."""
    if redis_pool is None:
        return "not_configured"
    try:
        await asyncio.wait_for(redis_pool.ping(), timeout=PING_TIMEOUT_SECONDS)  # type: ignore[arg-type]
    except (aioredis.RedisError, OSError, asyncio.TimeoutError):
        logger.warning("Redis ping failed", exc_info=True)
        return "degraded"
    return "ok"


@asynccontextmanager
async def lifespan_redis():
    """Startup/shutdown hook for Redis.

    A failed startup ping is logged and the app keeps starting; the rate
    limiter and cache answer from their in-process fallbacks meanwhile.
    """
    if redis_pool is None:
        logger.info("No REDIS_URL configured, Redis features use in-memory fallbacks")
        yield
        return

    status = await ping_redis()
    if status == "ok":
        logger.info("Redis connected: %s", SETTINGS.redis_url)
    else:
        logger.error("Redis unreachable on startup, continuing with fallbacks")

    yield

    await redis_pool.aclose()
    logger.info("Redis connection pool closed")
