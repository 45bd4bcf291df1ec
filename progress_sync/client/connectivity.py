"""Online/offline tracking for the sync client.

ConnectivityObserver is plain state plus subscribers; it knows nothing
about networking.  HttpConnectivityProbe feeds it by calling the API's
/health endpoint: any HTTP response means the network path works
(online), a transport error or timeout means offline.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

ConnectivityCallback = Callable[[bool], None]

PROBE_TIMEOUT_SECONDS = 5.0


class ConnectivityObserver:
    def __init__(self, *, online: bool = True) -> None:
        self._online = online
        self._subscribers: list[ConnectivityCallback] = []

    @property
    def online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        """Record the current state; subscribers hear only about changes."""
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for callback in list(self._subscribers):
            try:
                callback(online)
            except Exception:
                logger.exception("Connectivity subscriber failed")

    def subscribe(self, callback: ConnectivityCallback) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe


@dataclass(slots=True)
class ProbeResult:
    online: bool
    status_code: int | None = None
    error: str | None = None
    latency_ms: float | None = None


class HttpConnectivityProbe:
    def __init__(
        self,
        client: httpx.AsyncClient,
        observer: ConnectivityObserver,
        *,
        path: str = "/health",
        timeout: float = PROBE_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self._observer = observer
        self._path = path
        self._timeout = min(timeout, PROBE_TIMEOUT_SECONDS)

    async def check(self) -> ProbeResult:
        start = time.perf_counter()
        try:
            response = await self._client.get(self._path, timeout=self._timeout)
        except httpx.RequestError as exc:
            result = ProbeResult(
                online=False,
                error=str(exc) or type(exc).__name__,
                latency_ms=(time.perf_counter() - start) * 1000.0,
            )
        else:
            result = ProbeResult(
                online=True,
                status_code=response.status_code,
                latency_ms=(time.perf_counter() - start) * 1000.0,
            )
        self._observer.set_online(result.online)
        return result

    async def watch(self, interval: float = 30.0) -> None:
        """Probe every ``interval`` seconds until cancelled."""
        while True:
            await self.check()
            await asyncio.sleep(interval)
