"""Background worker process.

RUN:  python -m progress_sync.worker

Same image as the API, different command:
  api:    uvicorn progress_sync.main:app --host 0.0.0.0 --port 8000
  worker: python -m progress_sync.worker

The loop polls every registered queue round-robin, dispatches each task
to its handler and logs the outcome.  A failing task is logged and
dropped; the loop keeps going.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from redis.exceptions import RedisError

from progress_sync.core.config import SETTINGS
from progress_sync.core.logging import setup_logging
from progress_sync.db.redis import redis_pool
from progress_sync.services.task_queue import NOTIFICATIONS_QUEUE, task_queue

TaskHandler = Callable[[dict], Coroutine[Any, Any, None]]

logger = logging.getLogger("worker")

HANDLERS: dict[str, TaskHandler] = {}


def register_handler(queue: str):
    """Decorator: register a coroutine as the handler for a queue."""

    def decorator(func):
        HANDLERS[queue] = func
        return func

    return decorator


def notification_channel(user_id: str) -> str:
    return f"notifications:{user_id}"


@register_handler(NOTIFICATIONS_QUEUE)
async def handle_notification(payload: dict) -> None:
    """Deliver a milestone or streak notification to the learner.

    Published on the learner's Redis channel, where connected clients
    subscribe.  Without Redis the notification is only logged.
    """
    user_id = payload["user_id"]
    logger.info(
        "Delivering %s notification user=%s entity=%s threshold=%s",
        payload.get("kind"),
        user_id,
        payload.get("entity_id"),
        payload.get("threshold"),
        extra={"user_id": user_id},
    )
    if redis_pool is None:
        return
    try:
        await redis_pool.publish(notification_channel(user_id), json.dumps(payload))
    except RedisError:
        logger.warning("Notification publish failed user=%s", user_id, exc_info=True)
        raise


async def run_once(queue_name: str, timeout: int = 1) -> bool:
    """Process at most one task from ``queue_name``; True if one ran."""
    task = await task_queue.dequeue(queue_name, timeout=timeout)
    if task is None:
        return False

    handler = HANDLERS[queue_name]
    try:
        await handler(task.payload)
        logger.info("Task %s on [%s] completed", task.id, queue_name)
    except Exception:
        logger.exception("Task %s on [%s] failed", task.id, queue_name)
    return True


async def run_worker() -> None:
    """Poll all registered queues and dispatch tasks to handlers."""
    queues = list(HANDLERS.keys())
    logger.info("Worker started, listening on queues: %s", queues)

    while True:
        for queue_name in queues:
            await run_once(queue_name)


if __name__ == "__main__":
    setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
    asyncio.run(run_worker())
