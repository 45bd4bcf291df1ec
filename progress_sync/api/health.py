"""Health, readiness and metrics endpoints.

  /health (liveness):  "Is this process alive?"  Always 200; the
                       ``status`` field reports ok/degraded and
                       ``checks`` has one entry per dependency.
  /ready (readiness):  "Can this instance take traffic?"  503 when the
                       database is configured but unreachable.  Redis is
                       not critical: the limiter and cache fall back to
                       in-process implementations.

Every dependency probe is bounded by a timeout so a hung backend shows
up as "degraded" instead of a hung health check.
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from progress_sync.db import engine as db_engine
from progress_sync.db.redis import PING_TIMEOUT_SECONDS, ping_redis

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def ping_database() -> str:
    """Return "ok", "degraded" or "not_configured" for the database."""
    if db_engine.engine is None:
        return "not_configured"

    async def _select_one() -> None:
        async with db_engine.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    try:
        await asyncio.wait_for(_select_one(), timeout=PING_TIMEOUT_SECONDS)
    except (SQLAlchemyError, OSError, asyncio.TimeoutError):
        logger.warning("Database ping failed", exc_info=True)
        return "degraded"
    return "ok"


@router.get("/health")
async def health() -> dict:
    """Liveness probe plus dependency status.

    Returns 200 even when degraded.  A 503 here would get the container
    restarted, which is too aggressive for a partial outage.
    """
    redis_status, database_status = await asyncio.gather(ping_redis(), ping_database())
    checks = {"redis": redis_status, "database": database_status}
    overall = "degraded" if "degraded" in checks.values() else "ok"
    return {"status": overall, "checks": checks}


@router.get("/ready")
async def ready() -> Response:
    """Readiness probe: 503 while the durable store is unreachable."""
    if await ping_database() == "degraded":
        return Response(status_code=503)
    return Response(status_code=200)


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus text exposition format; restrict to the scraper in production."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
