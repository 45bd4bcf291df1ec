"""Sliding-window rate limiting for the ingestion endpoint.

PRIMARY: REDIS SORTED SET
--------------------------
Each (route, identity) pair owns one sorted set whose members are
admission tokens scored by their timestamp.  A check runs, inside one
MULTI/EXEC pipeline:

  1. ZREMRANGEBYSCORE key 0 (now - window)   drop expired admissions
  2. ZADD key {token: now}                   record this request
  3. ZCARD key                               count what is left
  4. EXPIRE key 2*window                     bound idle storage

The request is admitted iff the count is <= limit.  All four commands
are Redis primitives executed as one transaction, so concurrent API
workers never race on a read-modify-write in Python.

FALLBACK: IN-PROCESS FIXED WINDOW
----------------------------------
When Redis is not configured, or a command fails, the same key is
answered from a per-process dict of (window_start, count): the window
resets once window_start is older than now - window, otherwise the count
increments.  This is coarser than the sliding window and is not shared
between API instances (N instances admit up to N x limit), but it keeps
limiting in place while Redis is down.  Stale entries are pruned with a
small probability on each check.

Limiter infrastructure failures are never raised to the caller.
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from redis.exceptions import RedisError

from progress_sync.core.metrics import RATE_LIMIT_FALLBACKS

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    """The outcome of a rate limit check.

    success:   True if the request may proceed.
    limit:     Maximum admissions per window.
    remaining: Admissions left in the current window (0 when rejected).
    reset_at:  Epoch seconds after which a retry can be admitted.
    """

    success: bool
    limit: int
    remaining: int
    reset_at: float

    def retry_after(self, now: float | None = None) -> float:
        now = time.time() if now is None else now
        return max(0.0, self.reset_at - now)


@dataclass(frozen=True, slots=True)
class RateLimitConfig:
    """limit admissions per window_seconds, per (route, identity)."""

    limit: int = 60
    window_seconds: int = 60


@runtime_checkable
class RateLimiter(Protocol):
    async def check(self, key: str, config: RateLimitConfig) -> RateLimitResult: ...
    async def reset(self, key: str) -> None: ...


class InMemoryFixedWindowLimiter:
    """Per-process fixed-window counter used when Redis is unavailable."""

    def __init__(
        self,
        *,
        clock: Clock = time.time,
        prune_probability: float = 0.01,
        rng: random.Random | None = None,
    ) -> None:
        # key -> (window_start, count)
        self._windows: dict[str, tuple[float, int]] = {}
        self._clock = clock
        self._prune_probability = prune_probability
        self._rng = rng or random.Random()

    async def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        now = self._clock()
        window = config.window_seconds

        entry = self._windows.get(key)
        if entry is None or entry[0] < now - window:
            start, count = now, 1
        else:
            start, count = entry[0], entry[1] + 1
        self._windows[key] = (start, count)

        if self._rng.random() < self._prune_probability:
            self._prune(now, window)

        return RateLimitResult(
            success=count <= config.limit,
            limit=config.limit,
            remaining=max(0, config.limit - count),
            reset_at=start + window,
        )

    async def reset(self, key: str) -> None:
        self._windows.pop(key, None)

    def clear(self) -> None:
        self._windows.clear()

    def _prune(self, now: float, window: int) -> None:
        stale = [k for k, (start, _) in self._windows.items() if start < now - window]
        for k in stale:
            del self._windows[k]
        if stale:
            logger.debug("Pruned %d stale rate-limit windows", len(stale))


class RedisSlidingWindowLimiter:
    """Sorted-set sliding window shared by every API instance."""

    _PREFIX = "ratelimit:"

    def __init__(self, redis_client, *, clock: Clock = time.time) -> None:
        self._redis = redis_client
        self._clock = clock

    async def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        now = self._clock()
        window = config.window_seconds
        redis_key = f"{self._PREFIX}{key}"
        # Unique member so two requests in the same instant both count
        token = f"{now:.6f}:{uuid.uuid4().hex}"

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(redis_key, 0, now - window)
            pipe.zadd(redis_key, {token: now})
            pipe.zcard(redis_key)
            pipe.zrange(redis_key, 0, 0, withscores=True)
            pipe.expire(redis_key, 2 * window)
            _, _, count, oldest, _ = await pipe.execute()

        count = int(count)
        oldest_score = float(oldest[0][1]) if oldest else now
        return RateLimitResult(
            success=count <= config.limit,
            limit=config.limit,
            remaining=max(0, config.limit - count),
            reset_at=oldest_score + window,
        )

    async def reset(self, key: str) -> None:
        await self._redis.delete(f"{self._PREFIX}{key}")


class FallbackRateLimiter:
    """Redis sliding window with a transparent in-process fallback.

    ``primary`` is None when Redis is not configured; every check then
    goes straight to the fallback.
    """

    def __init__(
        self,
        primary: RateLimiter | None,
        fallback: InMemoryFixedWindowLimiter | None = None,
    ) -> None:
        self._primary = primary
        self._fallback = fallback or InMemoryFixedWindowLimiter()

    @property
    def fallback(self) -> InMemoryFixedWindowLimiter:
        return self._fallback

    async def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        if self._primary is not None:
            try:
                return await self._primary.check(key, config)
            except (RedisError, OSError):
                RATE_LIMIT_FALLBACKS.inc()
                logger.warning(
                    "Rate limiter store unavailable, using in-process fallback key=%s",
                    key,
                    exc_info=True,
                    extra={"rate_limit_key": key},
                )
        return await self._fallback.check(key, config)

    async def reset(self, key: str) -> None:
        if self._primary is not None:
            try:
                await self._primary.reset(key)
            except (RedisError, OSError):
                logger.warning("Could not reset Redis rate-limit key=%s", key)
        await self._fallback.reset(key)


def build_key(route: str, identity: str) -> str:
    return f"{route}:{identity}"
