"""Rate limiting dependency for FastAPI routes.

A dependency rather than middleware: only routes that declare it are
limited, each with its own config.  /health and /metrics never are.

RATE LIMIT KEYS
----------------
``{route}:{identity}`` where identity is the most specific one available:
  1. Bearer token present -> ``user:{sub}``
  2. Otherwise            -> ``ip:{client_ip}``

The token is peeked at without signature verification; require_user does
the real check.  A forged ``sub`` only gets its own bucket.

RESPONSE HEADERS
-----------------
X-RateLimit-Limit / -Remaining / -Reset are set on every limited
response, not only on 429s, so clients can self-throttle.  On rejection
Retry-After is added and the body detail is
``{"error": "rate_limited", "remaining": 0, "reset_at": <epoch s>}``.
"""

from __future__ import annotations

import logging
import math
import time

import jwt as pyjwt
from fastapi import HTTPException, Request, Response, status

from progress_sync.core.metrics import RATE_LIMIT_HITS
from progress_sync.db.redis import redis_pool
from progress_sync.services.rate_limiter import (
    FallbackRateLimiter,
    RateLimitConfig,
    RateLimitResult,
    RedisSlidingWindowLimiter,
    build_key,
)

logger = logging.getLogger(__name__)

_rate_limiter = FallbackRateLimiter(
    RedisSlidingWindowLimiter(redis_pool) if redis_pool is not None else None
)


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(math.ceil(result.reset_at)),
    }


def require_rate_limit(route: str, config: RateLimitConfig):
    """Dependency factory: enforce ``config`` on a route.

    Usage::

        @router.post("/bulk", dependencies=[Depends(require_rate_limit("bulk", cfg))])
    """

    async def _check(request: Request, response: Response) -> None:
        key = build_key(route, _identity(request))
        result = await _rate_limiter.check(key, config)
        headers = rate_limit_headers(result)

        # Handlers that return their own Response read them from here
        request.state.rate_limit_headers = headers

        if not result.success:
            RATE_LIMIT_HITS.labels(route=route).inc()
            logger.warning(
                "Rate limit exceeded key=%s", key, extra={"rate_limit_key": key}
            )
            retry_after = max(1, math.ceil(result.retry_after(time.time())))
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "error": "rate_limited",
                    "remaining": 0,
                    "reset_at": result.reset_at,
                },
                headers={**headers, "X-RateLimit-Remaining": "0", "Retry-After": str(retry_after)},
            )

        response.headers.update(headers)

    return _check


def _identity(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        try:
            claims = pyjwt.decode(auth_header[7:], options={"verify_signature": False})
        except pyjwt.InvalidTokenError:
            claims = {}
        sub = claims.get("sub")
        if sub:
            return f"user:{sub}"

    client_ip = request.client.host if request.client else "unknown"
    return f"ip:{client_ip}"
