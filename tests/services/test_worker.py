"""Task queue and worker tests.

Redis is not configured under test, so ``task_queue`` is the in-memory
implementation and the notification handler only logs.
"""

from __future__ import annotations

import asyncio
import logging

import pytest

from progress_sync import worker
from progress_sync.services.task_queue import (
    NOTIFICATIONS_QUEUE,
    InMemoryTaskQueue,
    TaskQueue,
    task_queue,
)

_PAYLOAD = {
    "kind": "milestone",
    "user_id": "learner-1",
    "entity_id": "course-1",
    "threshold": 50,
    "title": "Halfway Point!",
}


def test_in_memory_queue_is_fifo() -> None:
    queue = InMemoryTaskQueue()
    assert isinstance(queue, TaskQueue)

    async def _run() -> list[int]:
        for n in range(3):
            await queue.enqueue("q", {"n": n})
        assert await queue.queue_length("q") == 3
        return [(await queue.dequeue("q")).payload["n"] for _ in range(3)]

    assert asyncio.run(_run()) == [0, 1, 2]
    assert asyncio.run(queue.dequeue("q")) is None


def test_run_once_returns_false_on_empty_queue() -> None:
    assert asyncio.run(worker.run_once(NOTIFICATIONS_QUEUE)) is False


def test_run_once_delivers_notification(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="worker")
    asyncio.run(task_queue.enqueue(NOTIFICATIONS_QUEUE, _PAYLOAD))

    assert asyncio.run(worker.run_once(NOTIFICATIONS_QUEUE)) is True

    assert asyncio.run(task_queue.queue_length(NOTIFICATIONS_QUEUE)) == 0
    messages = [r.getMessage() for r in caplog.records]
    assert any("Delivering milestone notification user=learner-1" in m for m in messages)
    assert any(m.endswith("completed") for m in messages)


def test_failing_handler_is_logged_and_loop_continues(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    async def _boom(payload: dict) -> None:
        raise RuntimeError("push gateway down")

    monkeypatch.setitem(worker.HANDLERS, NOTIFICATIONS_QUEUE, _boom)
    asyncio.run(task_queue.enqueue(NOTIFICATIONS_QUEUE, _PAYLOAD))

    assert asyncio.run(worker.run_once(NOTIFICATIONS_QUEUE)) is True
    assert any("failed" in r.getMessage() for r in caplog.records if r.levelno >= logging.ERROR)


def test_notifications_queue_has_a_handler() -> None:
    assert NOTIFICATIONS_QUEUE in worker.HANDLERS
    assert worker.notification_channel("learner-1") == "notifications:learner-1"
