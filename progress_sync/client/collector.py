"""Local capture of playback progress and chapter completion.

``record_progress`` is called from the player on every time update, so it
only touches memory: the live value is readable immediately through
``live_progress``.  A persisted write (saved position + a staged
VIDEO_WATCHED event) happens at most once per ``throttle_interval`` per
entity, and only when the fraction moved by at least ``min_delta``
since the last write.  Values held back by the throttle are written by
``flush_due`` once their interval has passed, and by ``close`` on exit.

Completion is never throttled: ``record_completion`` stages a
CHAPTER_COMPLETED event and asks the dispatcher for an immediate flush.

If the local store refuses a write (quota, I/O error) the collector logs
once and continues memory-only; events are still staged for sync.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Protocol

from progress_sync.client.local_store import LocalStore, StoreResult
from progress_sync.models import events
from progress_sync.models.events import ProgressEvent

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    def stage(self, event: ProgressEvent) -> None: ...
    def request_flush(self) -> None: ...


@dataclass(frozen=True, slots=True)
class SavedPosition:
    course_id: str
    chapter_id: str
    fraction: float
    played_seconds: float
    duration: float
    saved_at: float


@dataclass(slots=True)
class _Tracked:
    course_id: str
    chapter_id: str
    fraction: float = 0.0
    played_seconds: float = 0.0
    duration: float = 0.0
    persisted_fraction: float | None = None
    persisted_at: float | None = None
    unthrottled: bool = False


def position_key(user_id: str, course_id: str, chapter_id: str) -> str:
    return f"position:{user_id}:{course_id}:{chapter_id}"


class LocalCollector:
    def __init__(
        self,
        user_id: str,
        sink: EventSink,
        store: LocalStore,
        *,
        throttle_interval: float = 10.0,
        min_delta: float = 0.02,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._user_id = user_id
        self._sink = sink
        self._store = store
        self._throttle_interval = throttle_interval
        self._min_delta = min_delta
        self._clock = clock
        self._wall_clock = wall_clock
        self._tracked: dict[tuple[str, str], _Tracked] = {}
        self._positions: dict[str, SavedPosition] = {}
        self._degraded = False
        self.writes = 0

    @property
    def degraded(self) -> bool:
        """True once the local store failed and positions live in memory only."""
        return self._degraded

    def live_progress(self, course_id: str, chapter_id: str) -> float | None:
        tracked = self._tracked.get((course_id, chapter_id))
        return None if tracked is None else tracked.fraction

    def record_progress(
        self,
        course_id: str,
        chapter_id: str,
        fraction: float,
        *,
        played_seconds: float = 0.0,
        duration: float = 0.0,
    ) -> None:
        tracked = self._tracked.get((course_id, chapter_id))
        if tracked is None:
            tracked = _Tracked(course_id=course_id, chapter_id=chapter_id)
            self._tracked[(course_id, chapter_id)] = tracked

        tracked.fraction = min(1.0, max(0.0, fraction))
        tracked.played_seconds = played_seconds
        tracked.duration = duration

        if tracked.unthrottled:
            if tracked.persisted_fraction != tracked.fraction:
                self._persist(tracked)
        elif self._is_due(tracked, self._clock()):
            self._persist(tracked)

    def record_completion(
        self,
        course_id: str,
        chapter_id: str,
        *,
        time_spent: int = 0,
        total_chapters: int | None = None,
    ) -> None:
        tracked = self._tracked.get((course_id, chapter_id))
        if tracked is None:
            tracked = _Tracked(course_id=course_id, chapter_id=chapter_id, fraction=1.0)
            self._tracked[(course_id, chapter_id)] = tracked
        tracked.unthrottled = True

        self._sink.stage(
            events.chapter_completed(
                self._user_id,
                chapter_id,
                course_id,
                time_spent=time_spent,
                total_chapters=total_chapters,
            )
        )
        if tracked.persisted_fraction != tracked.fraction:
            self._persist(tracked)
        self._sink.request_flush()

    def flush_due(self, now: float | None = None) -> int:
        """Write trailing values whose throttle interval has elapsed."""
        now = self._clock() if now is None else now
        written = 0
        for tracked in self._tracked.values():
            if tracked.persisted_fraction != tracked.fraction and self._is_due(tracked, now):
                self._persist(tracked)
                written += 1
        return written

    def close(self) -> int:
        """Flush-on-exit: one unthrottled write per entity with an unsaved value."""
        written = 0
        for tracked in self._tracked.values():
            if tracked.persisted_fraction != tracked.fraction:
                self._persist(tracked)
                written += 1
        return written

    def saved_position(self, course_id: str, chapter_id: str) -> SavedPosition | None:
        key = position_key(self._user_id, course_id, chapter_id)
        position = self._positions.get(key)
        if position is not None:
            return position
        if self._degraded:
            return None
        stored = self._store.get(key)
        return SavedPosition(**stored) if stored is not None else None

    def _is_due(self, tracked: _Tracked, now: float) -> bool:
        if tracked.persisted_at is None:
            return True
        if now - tracked.persisted_at < self._throttle_interval:
            return False
        return abs(tracked.fraction - (tracked.persisted_fraction or 0.0)) >= self._min_delta

    def _persist(self, tracked: _Tracked) -> None:
        position = SavedPosition(
            course_id=tracked.course_id,
            chapter_id=tracked.chapter_id,
            fraction=tracked.fraction,
            played_seconds=tracked.played_seconds,
            duration=tracked.duration,
            saved_at=self._wall_clock(),
        )
        key = position_key(self._user_id, tracked.course_id, tracked.chapter_id)
        self._positions[key] = position

        if not self._degraded:
            result = self._store.set(key, asdict(position))
            if result is not StoreResult.OK:
                self._degraded = True
                logger.warning(
                    "Local progress store unavailable (%s), continuing memory-only",
                    result.value,
                )

        self._sink.stage(
            events.video_watched(
                self._user_id,
                tracked.chapter_id,
                tracked.course_id,
                tracked.fraction,
                tracked.played_seconds,
                tracked.duration,
            )
        )
        tracked.persisted_fraction = tracked.fraction
        tracked.persisted_at = self._clock()
        self.writes += 1
