"""Bounded, expiring key/value persistence for the sync client.

The collector saves playback positions here so a learner resumes where
they left off after a restart.  Every entry carries an expiry (30 days
by default) and is evicted lazily when read past it.

Writes never raise.  ``set`` reports a StoreResult instead:

  OK              the value is stored
  QUOTA_EXCEEDED  the store is full (entry cap or byte budget)
  UNAVAILABLE     the backing medium failed (disk error, read-only fs)

and the caller decides whether to carry on memory-only.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30 * 24 * 60 * 60
DEFAULT_MAX_BYTES = 5 * 1024 * 1024


class StoreResult(str, Enum):
    OK = "ok"
    QUOTA_EXCEEDED = "quota_exceeded"
    UNAVAILABLE = "unavailable"


@runtime_checkable
class LocalStore(Protocol):
    def get(self, key: str) -> dict[str, Any] | None:
        """Return the stored value, or None when missing or expired."""
        ...

    def set(self, key: str, value: dict[str, Any]) -> StoreResult: ...

    def delete(self, key: str) -> None: ...


class InMemoryLocalStore:
    """Dict-backed store; the quota is a maximum number of live entries."""

    def __init__(
        self,
        *,
        max_entries: int = 500,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._entries: dict[str, tuple[float, dict[str, Any]]] = {}
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._clock = clock

    def get(self, key: str) -> dict[str, Any] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: dict[str, Any]) -> StoreResult:
        now = self._clock()
        if key not in self._entries and len(self._entries) >= self._max_entries:
            self._evict_expired(now)
            if len(self._entries) >= self._max_entries:
                return StoreResult.QUOTA_EXCEEDED
        self._entries[key] = (now + self._ttl, dict(value))
        return StoreResult.OK

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)

    def _evict_expired(self, now: float) -> None:
        for k in [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]:
            del self._entries[k]


class JsonFileLocalStore:
    """One JSON document on disk holding every entry.

    The file is read once, on first access, and rewritten atomically
    (temp file + rename) on every change.  A write that would push the
    document past ``max_bytes`` is refused with QUOTA_EXCEEDED after
    expired entries have been dropped.  A corrupt file is logged and
    treated as empty.
    """

    def __init__(
        self,
        path: str | os.PathLike[str],
        *,
        max_bytes: int = DEFAULT_MAX_BYTES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._path = Path(path)
        self._max_bytes = max_bytes
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, dict[str, Any]] | None = None

    def get(self, key: str) -> dict[str, Any] | None:
        try:
            entries = self._load()
        except OSError:
            logger.warning("Local store unreadable path=%s", self._path, exc_info=True)
            return None
        entry = entries.get(key)
        if entry is None:
            return None
        if entry["expires_at"] <= self._clock():
            del entries[key]
            self._try_save(entries)
            return None
        return entry["value"]

    def set(self, key: str, value: dict[str, Any]) -> StoreResult:
        try:
            entries = dict(self._load())
        except OSError:
            logger.warning("Local store unreadable path=%s", self._path, exc_info=True)
            return StoreResult.UNAVAILABLE

        now = self._clock()
        entries[key] = {"expires_at": now + self._ttl, "value": value}
        payload = self._encode(entries)
        if len(payload) > self._max_bytes:
            entries = {k: e for k, e in entries.items() if e["expires_at"] > now}
            payload = self._encode(entries)
            if len(payload) > self._max_bytes:
                return StoreResult.QUOTA_EXCEEDED

        try:
            self._write(payload)
        except OSError:
            logger.warning("Local store write failed path=%s", self._path, exc_info=True)
            return StoreResult.UNAVAILABLE
        self._entries = entries
        return StoreResult.OK

    def delete(self, key: str) -> None:
        try:
            entries = self._load()
        except OSError:
            return
        if entries.pop(key, None) is not None:
            self._try_save(entries)

    def _load(self) -> dict[str, dict[str, Any]]:
        if self._entries is None:
            try:
                raw = self._path.read_text(encoding="utf-8")
            except FileNotFoundError:
                self._entries = {}
            else:
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Discarding corrupt local store path=%s", self._path)
                    data = {}
                self._entries = data if isinstance(data, dict) else {}
        return self._entries

    @staticmethod
    def _encode(entries: dict[str, dict[str, Any]]) -> bytes:
        return json.dumps(entries, separators=(",", ":")).encode("utf-8")

    def _write(self, payload: bytes) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=".progress-", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(payload)
            os.replace(tmp, self._path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _try_save(self, entries: dict[str, dict[str, Any]]) -> None:
        try:
            self._write(self._encode(entries))
        except OSError:
            logger.warning("Local store write failed path=%s", self._path, exc_info=True)
