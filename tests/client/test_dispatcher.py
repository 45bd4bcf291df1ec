"""SyncDispatcher tests against an httpx.MockTransport.

Every test drives the dispatcher inside its own ``asyncio.run`` and
uses a fake clock, so backoff and rate-limit waits are checked by
reading ``next_attempt_at`` rather than by sleeping.
"""

from __future__ import annotations

import asyncio
import json

import httpx

from progress_sync.client.connectivity import ConnectivityObserver
from progress_sync.client.dispatcher import (
    BackoffPolicy,
    FlushOutcome,
    SyncDispatcher,
    SyncStatus,
)
from progress_sync.models import events

USER = "learner-1"


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"success": True, "notifications": []})


def _dispatcher(handler, *, clock: FakeClock | None = None, **kwargs) -> SyncDispatcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://api.test")
    return SyncDispatcher(client, "test-token", clock=clock or FakeClock(), **kwargs)


def _video(chapter: str, fraction: float, timestamp: int = 1_000):
    return events.video_watched(USER, chapter, "course-1", fraction, 1.0, 10.0, timestamp=timestamp)


def test_backoff_delays_double_up_to_cap() -> None:
    policy = BackoffPolicy()
    assert [policy.delay(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]


def test_successful_flush_sends_one_batch_and_clears_queue() -> None:
    requests: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return _ok(request)

    async def _run() -> None:
        dispatcher = _dispatcher(_record)
        dispatcher.stage(_video("ch-1", 0.2, 2_000))
        dispatcher.stage(events.chapter_completed(USER, "ch-0", "course-1", timestamp=3_000))

        assert await dispatcher.flush() is FlushOutcome.SENT
        assert dispatcher.pending == []
        assert dispatcher.status is SyncStatus.ONLINE

    asyncio.run(_run())

    assert len(requests) == 1
    request = requests[0]
    assert request.url.path == "/v1/progress/bulk"
    assert request.headers["Authorization"] == "Bearer test-token"
    body = json.loads(request.content)
    # Higher priority first (chapter completion), one batch id for all
    assert [u["type"] for u in body["updates"]] == ["CHAPTER_COMPLETED", "VIDEO_WATCHED"]
    batch_ids = {u["batch_id"] for u in body["updates"]}
    assert batch_ids == {request.headers["X-Request-ID"]}


def test_newer_event_for_same_key_replaces_older() -> None:
    async def _run() -> None:
        dispatcher = _dispatcher(_ok)
        dispatcher.stage(_video("ch-1", 0.2))
        dispatcher.stage(_video("ch-1", 0.4))
        assert [e.metadata.progress for e in dispatcher.pending] == [0.4]

    asyncio.run(_run())


def test_event_replaced_during_send_stays_pending() -> None:
    async def _run() -> None:
        dispatcher: SyncDispatcher

        def _stage_newer(request: httpx.Request) -> httpx.Response:
            dispatcher.stage(_video("ch-1", 0.9, 5_000))
            return _ok(request)

        dispatcher = _dispatcher(_stage_newer)
        dispatcher.stage(_video("ch-1", 0.5))

        assert await dispatcher.flush() is FlushOutcome.SENT
        assert [e.metadata.progress for e in dispatcher.pending] == [0.9]

    asyncio.run(_run())


def test_server_errors_back_off_then_fail() -> None:
    clock = FakeClock()

    async def _run() -> None:
        dispatcher = _dispatcher(lambda r: httpx.Response(503), clock=clock)
        dispatcher.stage(_video("ch-1", 0.5))

        outcomes = []
        for expected_delay in (1.0, 2.0, 4.0, 8.0):
            outcomes.append(await dispatcher.flush())
            assert dispatcher.next_attempt_at == clock.now + expected_delay
            # Waiting out the backoff: a flush now is skipped
            assert await dispatcher.flush() is FlushOutcome.SKIPPED
            clock.now += expected_delay

        outcomes.append(await dispatcher.flush())

        assert outcomes == [FlushOutcome.RETRY] * 4 + [FlushOutcome.FAILED]
        assert dispatcher.status is SyncStatus.FAILED
        assert dispatcher.failed_retries == 5
        assert len(dispatcher.pending) == 1
        assert await dispatcher.flush(force=True) is FlushOutcome.SKIPPED

    asyncio.run(_run())


def test_retry_failed_resets_and_sends() -> None:
    responses = iter([503] * 5 + [200])

    def _handler(request: httpx.Request) -> httpx.Response:
        code = next(responses)
        return _ok(request) if code == 200 else httpx.Response(code)

    async def _run() -> None:
        dispatcher = _dispatcher(_handler, backoff=BackoffPolicy(base_seconds=0.0))
        dispatcher.stage(_video("ch-1", 0.5))
        for _ in range(5):
            await dispatcher.flush()
        assert dispatcher.status is SyncStatus.FAILED

        assert await dispatcher.retry_failed() is FlushOutcome.SENT
        assert dispatcher.status is SyncStatus.ONLINE
        assert dispatcher.failed_retries == 0
        assert dispatcher.pending == []

    asyncio.run(_run())


def test_network_error_schedules_retry() -> None:
    def _refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def _run() -> None:
        dispatcher = _dispatcher(_refuse)
        dispatcher.stage(_video("ch-1", 0.5))
        assert await dispatcher.flush() is FlushOutcome.RETRY
        assert len(dispatcher.pending) == 1

    asyncio.run(_run())


def test_rate_limited_waits_for_reset_hint() -> None:
    clock = FakeClock(1_000.0)

    def _limited(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            headers={"X-RateLimit-Reset": "1045", "Retry-After": "45"},
            json={"detail": {"error": "rate_limited"}},
        )

    async def _run() -> None:
        dispatcher = _dispatcher(_limited, clock=clock)
        dispatcher.stage(_video("ch-1", 0.5))

        assert await dispatcher.flush() is FlushOutcome.RATE_LIMITED
        assert dispatcher.next_attempt_at == 1_045.0
        assert len(dispatcher.pending) == 1
        assert dispatcher.failed_retries == 0
        assert await dispatcher.flush() is FlushOutcome.SKIPPED

    asyncio.run(_run())


def test_retry_after_used_without_reset_header() -> None:
    clock = FakeClock(1_000.0)

    async def _run() -> None:
        dispatcher = _dispatcher(lambda r: httpx.Response(429, headers={"Retry-After": "7"}), clock=clock)
        dispatcher.stage(_video("ch-1", 0.5))
        await dispatcher.flush()
        assert dispatcher.next_attempt_at == 1_007.0

    asyncio.run(_run())


def test_rejected_batch_is_dropped() -> None:
    async def _run() -> None:
        dispatcher = _dispatcher(lambda r: httpx.Response(400, json={"detail": "bad batch"}))
        dispatcher.stage(_video("ch-1", 0.5))

        assert await dispatcher.flush() is FlushOutcome.DROPPED
        assert dispatcher.pending == []
        assert dispatcher.status is SyncStatus.ONLINE

    asyncio.run(_run())


def test_offline_flush_is_skipped_until_reconnect() -> None:
    calls: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return _ok(request)

    async def _run() -> None:
        observer = ConnectivityObserver(online=False)
        dispatcher = _dispatcher(_record, connectivity=observer)
        statuses: list[SyncStatus] = []
        dispatcher.subscribe_status(statuses.append)
        dispatcher.stage(_video("ch-1", 0.5))

        assert dispatcher.status is SyncStatus.OFFLINE
        assert await dispatcher.flush() is FlushOutcome.SKIPPED

        observer.set_online(True)
        assert dispatcher._wake.is_set()
        assert await dispatcher.flush() is FlushOutcome.SENT
        assert statuses == [SyncStatus.ONLINE, SyncStatus.SYNCING, SyncStatus.ONLINE]

    asyncio.run(_run())
    assert len(calls) == 1


def test_empty_queue_sends_nothing() -> None:
    async def _run() -> None:
        dispatcher = _dispatcher(_ok)
        assert await dispatcher.flush() is FlushOutcome.EMPTY

    asyncio.run(_run())


def test_queue_is_bounded_and_threshold_requests_flush() -> None:
    async def _run() -> None:
        dispatcher = _dispatcher(_ok, max_pending=3, flush_threshold=3)
        for i in range(4):
            dispatcher.stage(_video(f"ch-{i}", 0.1, timestamp=1_000 + i))

        assert [e.entity_id for e in dispatcher.pending] == ["ch-1", "ch-2", "ch-3"]
        assert dispatcher._wake.is_set()

    asyncio.run(_run())


def test_notifications_are_delivered() -> None:
    delivered: list[list[dict]] = []
    notification = {"kind": "milestone", "threshold": 25, "title": "Quarter Way There!"}

    def _with_notification(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": True, "notifications": [notification]})

    async def _run() -> None:
        dispatcher = _dispatcher(_with_notification, on_notifications=delivered.append)
        dispatcher.stage(events.chapter_completed(USER, "ch-1", "course-1", total_chapters=4))
        await dispatcher.flush()

    asyncio.run(_run())
    assert delivered == [[notification]]


def test_new_flush_supersedes_in_flight_send() -> None:
    async def _run() -> None:
        gate = asyncio.Event()
        bodies: list[dict] = []

        async def _slow_first(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            if len(bodies) == 1:
                await gate.wait()
            return _ok(request)

        dispatcher = _dispatcher(_slow_first)
        dispatcher.stage(_video("ch-1", 0.3))
        first = asyncio.create_task(dispatcher.flush())
        await asyncio.sleep(0)
        while not bodies:
            await asyncio.sleep(0)

        dispatcher.stage(_video("ch-2", 0.6))
        second = await dispatcher.flush()

        assert second is FlushOutcome.SENT
        assert await first is FlushOutcome.SUPERSEDED
        # The cancelled batch's event travelled again in the newer one
        assert {u["entity_id"] for u in bodies[1]["updates"]} == {"ch-1", "ch-2"}
        assert dispatcher.pending == []

    asyncio.run(_run())


def test_token_provider_is_called_per_send() -> None:
    tokens = iter(["t1", "t2"])
    seen: list[str] = []

    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["Authorization"])
        return _ok(request)

    async def _run() -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(_record), base_url="http://api.test")
        dispatcher = SyncDispatcher(client, lambda: next(tokens), clock=FakeClock())
        for fraction in (0.1, 0.2):
            dispatcher.stage(_video("ch-1", fraction))
            await dispatcher.flush()

    asyncio.run(_run())
    assert seen == ["Bearer t1", "Bearer t2"]


def test_stop_writes_trailing_positions_and_flushes() -> None:
    from progress_sync.client.collector import LocalCollector
    from progress_sync.client.local_store import InMemoryLocalStore

    bodies: list[dict] = []

    def _record(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return _ok(request)

    async def _run() -> None:
        dispatcher = _dispatcher(_record)
        collector = LocalCollector(USER, dispatcher, InMemoryLocalStore(), clock=lambda: 0.0)
        dispatcher.attach_collector(collector)
        dispatcher.start()

        collector.record_progress("course-1", "ch-1", 0.1)
        collector.record_progress("course-1", "ch-1", 0.7)

        assert await dispatcher.stop() is FlushOutcome.SENT

    asyncio.run(_run())
    progress = [u["metadata"]["progress"] for body in bodies for u in body["updates"]]
    assert progress[-1] == 0.7


def test_stop_does_not_send_before_rate_limit_reset() -> None:
    clock = FakeClock(1_000.0)
    requests: list[httpx.Request] = []

    def _limited(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(429, headers={"X-RateLimit-Reset": "1060"})

    async def _run() -> None:
        dispatcher = _dispatcher(_limited, clock=clock)
        dispatcher.stage(_video("ch-1", 0.5))
        assert await dispatcher.flush() is FlushOutcome.RATE_LIMITED

        clock.now = 1_030.0
        assert await dispatcher.flush(force=True) is FlushOutcome.SKIPPED
        assert await dispatcher.stop() is FlushOutcome.SKIPPED
        assert len(dispatcher.pending) == 1

    asyncio.run(_run())
    assert len(requests) == 1


def test_forced_flush_skips_backoff_wait() -> None:
    clock = FakeClock(1_000.0)
    statuses = iter([503, 200])

    async def _run() -> None:
        dispatcher = _dispatcher(lambda r: httpx.Response(next(statuses), json={}), clock=clock)
        dispatcher.stage(_video("ch-1", 0.5))
        assert await dispatcher.flush() is FlushOutcome.RETRY
        assert await dispatcher.flush() is FlushOutcome.SKIPPED

        assert await dispatcher.flush(force=True) is FlushOutcome.SENT
        assert dispatcher.next_attempt_at == 0.0

    asyncio.run(_run())
