"""Client-side batching, transmission and retry of progress events.

PENDING QUEUE
--------------
Staged events are keyed by their collapse key (``debounce_key``), so a
newer event for the same (type, entity, user) replaces the older one
before it is ever sent.  The queue is bounded: past ``max_pending`` the
oldest event is dropped.

FLUSH
------
A flush snapshots the pending events into one batch (priority desc, then
timestamp), stamps a fresh ``batch_id`` and POSTs ``{"updates": [...]}``
to the bulk endpoint.  The response decides what happens next:

  2xx            remove exactly the sent events; a key whose event was
                 replaced while the request was in flight stays pending
  network / 5xx  keep everything, retry after min(base * 2^(n-1), cap);
                 after ``max_retries`` attempts the status is FAILED
                 until ``retry_failed()``
  429            keep everything, wait for the X-RateLimit-Reset hint;
                 not even a forced flush sends before then
  400 / 422      drop the batch; it cannot succeed on replay

Starting a flush while a send is in flight cancels that send.  Its
events were never removed, so they travel in the new batch.

STATUS
-------
ONLINE / OFFLINE follow the ConnectivityObserver, SYNCING is shown while
a request is in flight and FAILED once retries are exhausted.  Offline
flushes are skipped; coming back online requests a flush.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx

from progress_sync.client.connectivity import ConnectivityObserver
from progress_sync.models.events import ProgressEvent

if TYPE_CHECKING:
    from progress_sync.client.collector import LocalCollector

logger = logging.getLogger(__name__)

BULK_ENDPOINT = "/v1/progress/bulk"


class SyncStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    SYNCING = "syncing"
    FAILED = "failed"


class FlushOutcome(str, Enum):
    SENT = "sent"
    EMPTY = "empty"
    SKIPPED = "skipped"  # offline, failed, or waiting out a backoff
    RETRY = "retry"
    RATE_LIMITED = "rate_limited"
    DROPPED = "dropped"
    FAILED = "failed"
    SUPERSEDED = "superseded"


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    base_seconds: float = 1.0
    cap_seconds: float = 30.0
    max_retries: int = 5

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self.base_seconds * 2 ** (attempt - 1), self.cap_seconds)


StatusCallback = Callable[[SyncStatus], None]
NotificationCallback = Callable[[list[dict[str, Any]]], None]


class SyncDispatcher:
    def __init__(
        self,
        client: httpx.AsyncClient,
        token: str | Callable[[], str],
        *,
        connectivity: ConnectivityObserver | None = None,
        endpoint: str = BULK_ENDPOINT,
        timeout: float = 10.0,
        flush_interval: float = 15.0,
        backoff: BackoffPolicy = BackoffPolicy(),
        max_pending: int = 100,
        flush_threshold: int = 25,
        on_notifications: NotificationCallback | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._token = token
        self._connectivity = connectivity or ConnectivityObserver()
        self._endpoint = endpoint
        self._timeout = timeout
        self._flush_interval = flush_interval
        self._backoff = backoff
        self._max_pending = max_pending
        self._flush_threshold = flush_threshold
        self._on_notifications = on_notifications
        self._clock = clock

        self._pending: dict[str, ProgressEvent] = {}
        self._attempts = 0
        self._retry_at = 0.0
        self._rate_limited_until = 0.0
        self._failed = False
        self._inflight: asyncio.Task | None = None
        self._collector: LocalCollector | None = None

        self._status = SyncStatus.ONLINE if self._connectivity.online else SyncStatus.OFFLINE
        self._status_subscribers: list[StatusCallback] = []
        self._wake = asyncio.Event()
        self._runner: asyncio.Task | None = None
        self._unsubscribe_connectivity = self._connectivity.subscribe(self._on_connectivity)

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    @property
    def pending(self) -> list[ProgressEvent]:
        return list(self._pending.values())

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def failed_retries(self) -> int:
        return self._attempts if self._failed else 0

    @property
    def next_attempt_at(self) -> float:
        """Earliest time a send may go out: the later of backoff and rate-limit waits."""
        return max(self._retry_at, self._rate_limited_until)

    def attach_collector(self, collector: LocalCollector) -> None:
        self._collector = collector

    def stage(self, event: ProgressEvent) -> None:
        key = event.collapse_key
        self._pending.pop(key, None)
        self._pending[key] = event
        while len(self._pending) > self._max_pending:
            oldest = min(self._pending, key=lambda k: self._pending[k].timestamp)
            dropped = self._pending.pop(oldest)
            logger.warning("Pending queue full, dropping oldest event type=%s", dropped.type)
        if len(self._pending) >= self._flush_threshold:
            self.request_flush()

    def request_flush(self) -> None:
        self._wake.set()

    def subscribe_status(self, callback: StatusCallback) -> Callable[[], None]:
        self._status_subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._status_subscribers:
                self._status_subscribers.remove(callback)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------

    async def flush(self, *, force: bool = False) -> FlushOutcome:
        """Send the pending events as one batch.

        ``force`` ignores a backoff wait.  It never overrides a rate-limit
        reset, the offline state or the failed state.
        """
        if not self._connectivity.online:
            return FlushOutcome.SKIPPED
        if self._failed:
            return FlushOutcome.SKIPPED
        now = self._clock()
        if now < self._rate_limited_until:
            return FlushOutcome.SKIPPED
        if not force and now < self._retry_at:
            return FlushOutcome.SKIPPED

        if self._inflight is not None and not self._inflight.done():
            logger.debug("Cancelling in-flight send for a newer flush")
            self._inflight.cancel()

        if not self._pending:
            return FlushOutcome.EMPTY

        batch_id = str(uuid.uuid4())
        sent = sorted(self._pending.values(), key=lambda e: (-e.priority, e.timestamp))
        batch = [e.model_copy(update={"batch_id": batch_id}) for e in sent]

        task = asyncio.ensure_future(self._send(batch, batch_id))
        self._inflight = task
        self._set_status(SyncStatus.SYNCING)
        try:
            response = await task
        except asyncio.CancelledError:
            if task.cancelled() and self._inflight is not task:
                return FlushOutcome.SUPERSEDED
            raise
        except httpx.RequestError as exc:
            logger.warning(
                "Progress sync network error batch=%s: %s",
                batch_id,
                exc,
                extra={"batch_id": batch_id, "event_count": len(batch)},
            )
            return self._schedule_retry()
        finally:
            if self._inflight is task:
                self._inflight = None

        return self._handle_response(response, sent, batch_id)

    async def _send(self, batch: list[ProgressEvent], batch_id: str) -> httpx.Response:
        token = self._token() if callable(self._token) else self._token
        return await self._client.post(
            self._endpoint,
            json={"updates": [e.model_dump(mode="json") for e in batch]},
            headers={"Authorization": f"Bearer {token}", "X-Request-ID": batch_id},
            timeout=self._timeout,
        )

    def _handle_response(
        self, response: httpx.Response, sent: list[ProgressEvent], batch_id: str
    ) -> FlushOutcome:
        extra = {"batch_id": batch_id, "event_count": len(sent)}
        code = response.status_code

        if 200 <= code < 300:
            self._remove_sent(sent)
            self._attempts = 0
            self._retry_at = 0.0
            self._rate_limited_until = 0.0
            self._restore_status()
            logger.info("Progress batch synced batch=%s events=%d", batch_id, len(sent), extra=extra)
            self._deliver_notifications(response)
            return FlushOutcome.SENT

        if code == 429:
            self._rate_limited_until = self._rate_limit_reset(response)
            self._restore_status()
            logger.warning(
                "Progress sync rate limited batch=%s retry_at=%.0f",
                batch_id,
                self._rate_limited_until,
                extra=extra,
            )
            return FlushOutcome.RATE_LIMITED

        if code in (400, 422):
            self._remove_sent(sent)
            self._restore_status()
            logger.error(
                "Progress batch rejected batch=%s status=%d body=%s",
                batch_id,
                code,
                response.text[:200],
                extra=extra,
            )
            return FlushOutcome.DROPPED

        logger.warning("Progress sync failed batch=%s status=%d", batch_id, code, extra=extra)
        return self._schedule_retry()

    def _remove_sent(self, sent: list[ProgressEvent]) -> None:
        for event in sent:
            key = event.collapse_key
            current = self._pending.get(key)
            if current is not None and current.id == event.id:
                del self._pending[key]

    def _schedule_retry(self) -> FlushOutcome:
        self._attempts += 1
        if self._attempts >= self._backoff.max_retries:
            self._failed = True
            self._set_status(SyncStatus.FAILED)
            logger.error("Progress sync failed after %d retries", self._attempts)
            return FlushOutcome.FAILED
        delay = self._backoff.delay(self._attempts)
        self._retry_at = self._clock() + delay
        self._restore_status()
        logger.info("Progress sync retry %d in %.1fs", self._attempts, delay)
        return FlushOutcome.RETRY

    def _rate_limit_reset(self, response: httpx.Response) -> float:
        now = self._clock()
        reset = response.headers.get("X-RateLimit-Reset")
        if reset is not None:
            with contextlib.suppress(ValueError):
                return max(float(reset), now)
        retry_after = response.headers.get("Retry-After")
        if retry_after is not None:
            with contextlib.suppress(ValueError):
                return now + float(retry_after)
        return now + self._backoff.base_seconds

    def _deliver_notifications(self, response: httpx.Response) -> None:
        if self._on_notifications is None:
            return
        try:
            notifications = response.json().get("notifications") or []
        except ValueError:
            return
        if notifications:
            self._on_notifications(notifications)

    async def retry_failed(self) -> FlushOutcome:
        """Manual retry after FAILED: reset the attempt counter and flush."""
        self._failed = False
        self._attempts = 0
        self._retry_at = 0.0
        self._restore_status()
        return await self.flush()

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task:
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self.run())
        return self._runner

    async def run(self) -> None:
        """Flush every ``flush_interval`` seconds, or sooner when asked."""
        while True:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._next_wait())
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            if self._collector is not None:
                self._collector.flush_due()
            await self.flush()

    async def stop(self) -> FlushOutcome:
        """Stop the loop, write trailing positions and send one last batch."""
        if self._runner is not None:
            self._runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._runner
            self._runner = None
        if self._collector is not None:
            self._collector.close()
        outcome = await self.flush(force=True)
        self._unsubscribe_connectivity()
        return outcome

    def _next_wait(self) -> float:
        wait = self._flush_interval
        if self.next_attempt_at:
            wait = min(wait, max(0.0, self.next_attempt_at - self._clock()))
        return wait

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _on_connectivity(self, online: bool) -> None:
        self._restore_status()
        if online:
            self.request_flush()

    def _restore_status(self) -> None:
        if self._failed:
            self._set_status(SyncStatus.FAILED)
        elif not self._connectivity.online:
            self._set_status(SyncStatus.OFFLINE)
        else:
            self._set_status(SyncStatus.ONLINE)

    def _set_status(self, status: SyncStatus) -> None:
        if status == self._status:
            return
        self._status = status
        for callback in list(self._status_subscribers):
            try:
                callback(status)
            except Exception:
                logger.exception("Status subscriber failed")
