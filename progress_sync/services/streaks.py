"""Daily quiz-completion streaks.

Completing any quiz on a calendar day (UTC) counts for that day:

  - same day as the last activity   -> unchanged
  - the day after the last activity -> streak + 1
  - any later day                   -> streak restarts at 1
  - an earlier day (late replay)    -> unchanged

``longest_streak`` only grows.  Reaching one of STREAK_MILESTONES emits a
notification once per session through the shared NotificationStore.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta

from progress_sync.core.metrics import MILESTONE_NOTIFICATIONS
from progress_sync.models.progress import UserStreak
from progress_sync.services.milestones import Notification, NotificationStore

STREAK_MILESTONES: tuple[int, ...] = (3, 7, 14, 30, 60, 100)

_STREAK_ENTITY = "streak"


def activity_day(timestamp_ms: int) -> date:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC).date()


def start_streak(user_id: str, day: date) -> UserStreak:
    return UserStreak(
        user_id=user_id,
        current_streak=1,
        longest_streak=1,
        last_activity_date=day.isoformat(),
    )


def advance_streak(streak: UserStreak, day: date) -> UserStreak:
    if streak.last_activity_date is None:
        current = 1
    else:
        last = date.fromisoformat(streak.last_activity_date)
        if day <= last:
            return streak
        current = streak.current_streak + 1 if day - last == timedelta(days=1) else 1

    return UserStreak(
        user_id=streak.user_id,
        current_streak=current,
        longest_streak=max(current, streak.longest_streak),
        last_activity_date=day.isoformat(),
    )


class StreakNotifier:
    def __init__(
        self,
        store: NotificationStore,
        *,
        milestones: tuple[int, ...] = STREAK_MILESTONES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._milestones = milestones
        self._clock = clock

    def evaluate(self, streak: UserStreak) -> list[Notification]:
        fired: list[Notification] = []
        for days in self._milestones:
            if streak.current_streak < days:
                break
            now = self._clock()
            if not self._store.claim(streak.user_id, _STREAK_ENTITY, f"streak:{days}", now):
                continue
            fired.append(
                Notification(
                    kind="streak",
                    user_id=streak.user_id,
                    entity_id=_STREAK_ENTITY,
                    threshold=days,
                    title=f"{days}-Day Streak!",
                    message=f"You've completed a quiz {days} days in a row. Keep it going!",
                    notified_at=now,
                )
            )
            MILESTONE_NOTIFICATIONS.labels(kind="streak").inc()
        return fired
