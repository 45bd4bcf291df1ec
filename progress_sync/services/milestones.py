"""Milestone notifications with at-most-once-per-session delivery.

Thresholds are checked in ascending order against the completed/total
ratio of an entity.  A threshold fires when the ratio reaches it and no
record exists yet for (user, entity, threshold) in the notification
store.  The record is claimed before the notification is built, so a
second evaluation racing the first cannot fire it again.

Dedup state lives in an injectable NotificationStore owned by a
SessionContext.  The in-memory store is not persisted: a new process
(or a new client session) may celebrate an already-crossed threshold
once more.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from progress_sync.core.metrics import MILESTONE_NOTIFICATIONS

THRESHOLDS: tuple[int, ...] = (25, 50, 75, 100)

_MILESTONE_COPY: dict[int, tuple[str, str]] = {
    25: ("Quarter Way There!", "You've completed 25% of the course. Excellent progress!"),
    50: ("Halfway Point!", "You're 50% through the course. You're doing amazing!"),
    75: ("Almost There!", "You're 75% through the course. The finish line is in sight!"),
    100: ("Course Completed!", "Congratulations! You've successfully completed this course."),
}


@dataclass(frozen=True, slots=True)
class Notification:
    kind: str  # milestone|streak
    user_id: str
    entity_id: str
    threshold: int
    title: str
    message: str
    notified_at: float

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "user_id": self.user_id,
            "entity_id": self.entity_id,
            "threshold": self.threshold,
            "title": self.title,
            "message": self.message,
            "notified_at": self.notified_at,
        }


@dataclass(frozen=True, slots=True)
class MilestoneRecord:
    entity_id: str
    marker: str
    notified_at: float


@runtime_checkable
class NotificationStore(Protocol):
    def claim(self, user_id: str, entity_id: str, marker: str, notified_at: float) -> bool:
        """Record (user, entity, marker); False if it was already recorded."""
        ...

    def records(self, user_id: str, entity_id: str) -> list[MilestoneRecord]: ...

    def reset(self) -> None: ...


class InMemoryNotificationStore:
    def __init__(self) -> None:
        self._records: dict[tuple[str, str, str], float] = {}
        self._lock = threading.Lock()

    def claim(self, user_id: str, entity_id: str, marker: str, notified_at: float) -> bool:
        key = (user_id, entity_id, marker)
        with self._lock:
            if key in self._records:
                return False
            self._records[key] = notified_at
            return True

    def records(self, user_id: str, entity_id: str) -> list[MilestoneRecord]:
        with self._lock:
            return [
                MilestoneRecord(entity_id=e, marker=m, notified_at=t)
                for (u, e, m), t in self._records.items()
                if u == user_id and e == entity_id
            ]

    def reset(self) -> None:
        with self._lock:
            self._records.clear()


class MilestoneEvaluator:
    def __init__(
        self,
        store: NotificationStore,
        *,
        thresholds: tuple[int, ...] = THRESHOLDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._thresholds = tuple(sorted(thresholds))
        self._clock = clock

    def evaluate(
        self, user_id: str, entity_id: str, completed: int, total: int
    ) -> list[Notification]:
        """Evaluate a completed/total chapter count."""
        if total <= 0:
            return []
        # Integer comparison avoids float error at exact thresholds (3/4 == 75)
        crossed = [t for t in self._thresholds if completed * 100 >= t * total]
        return self._fire(user_id, entity_id, crossed)

    def evaluate_percent(
        self, user_id: str, entity_id: str, percent: float
    ) -> list[Notification]:
        crossed = [t for t in self._thresholds if percent >= t]
        return self._fire(user_id, entity_id, crossed)

    def _fire(self, user_id: str, entity_id: str, crossed: list[int]) -> list[Notification]:
        fired: list[Notification] = []
        for threshold in crossed:
            now = self._clock()
            if not self._store.claim(user_id, entity_id, f"milestone:{threshold}", now):
                continue
            title, message = _MILESTONE_COPY.get(
                threshold, (f"{threshold}% Complete!", f"You've completed {threshold}% of the course.")
            )
            fired.append(
                Notification(
                    kind="milestone",
                    user_id=user_id,
                    entity_id=entity_id,
                    threshold=threshold,
                    title=title,
                    message=message,
                    notified_at=now,
                )
            )
            MILESTONE_NOTIFICATIONS.labels(kind="milestone").inc()
        return fired


class SessionContext:
    """Owns the notification dedup state for one session.

    The server keeps one per process (see api/progress.py); a client
    creates one per learner session.  Tests build a fresh context or
    call ``reset()``.
    """

    def __init__(
        self,
        store: NotificationStore | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        # Local import: streaks.py imports Notification from this module
        from progress_sync.services.streaks import StreakNotifier

        self.store: NotificationStore = store or InMemoryNotificationStore()
        self.milestones = MilestoneEvaluator(self.store, clock=clock)
        self.streaks = StreakNotifier(self.store, clock=clock)

    def reset(self) -> None:
        self.store.reset()
