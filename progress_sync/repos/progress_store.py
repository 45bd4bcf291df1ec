from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Protocol, TypeVar

from progress_sync.models.progress import (
    CourseProgress,
    CourseProgressKey,
    QuizAttempt,
    UserStreak,
)

T = TypeVar("T")

CreateProgress = Callable[[], CourseProgress]
UpdateProgress = Callable[[CourseProgress], CourseProgress]
CreateStreak = Callable[[], UserStreak]
UpdateStreak = Callable[[UserStreak], UserStreak]


class ProgressStore(Protocol):
    """Transactional store the ingestion service writes through.

    Mutations are only meaningful inside ``run_atomic``: the callback
    receives a store bound to one transaction, and either all of its
    writes land or none do.
    """

    async def run_atomic(self, fn: Callable[[ProgressStore], Awaitable[T]]) -> T: ...

    async def upsert_course_progress(
        self, key: CourseProgressKey, create: CreateProgress, update: UpdateProgress
    ) -> CourseProgress: ...

    async def insert_quiz_attempt(self, attempt: QuizAttempt) -> bool: ...

    async def upsert_streak(
        self, user_id: str, create: CreateStreak, update: UpdateStreak
    ) -> UserStreak: ...

    async def mark_applied(self, user_id: str, event_id: str, applied_at: int) -> bool: ...

    async def get_course_progress(self, key: CourseProgressKey) -> CourseProgress | None: ...

    async def list_quiz_attempts(self, user_id: str, quiz_id: str) -> list[QuizAttempt]: ...

    async def get_streak(self, user_id: str) -> UserStreak | None: ...


class InMemoryProgressStore:
    """Dict-backed store for dev and tests.

    ``run_atomic`` serializes transactions on a lock and restores a
    snapshot of every table when the callback raises.  Stored values are
    frozen dataclasses, so a shallow copy of each dict is a full snapshot.
    """

    def __init__(self) -> None:
        self._progress: dict[CourseProgressKey, CourseProgress] = {}
        self._attempts: dict[tuple[str, str], QuizAttempt] = {}
        self._streaks: dict[str, UserStreak] = {}
        self._applied: dict[tuple[str, str], int] = {}
        self._lock = asyncio.Lock()

    async def run_atomic(self, fn: Callable[[ProgressStore], Awaitable[T]]) -> T:
        async with self._lock:
            snapshot = (
                dict(self._progress),
                dict(self._attempts),
                dict(self._streaks),
                dict(self._applied),
            )
            try:
                return await fn(self)
            except BaseException:
                self._progress, self._attempts, self._streaks, self._applied = snapshot
                raise

    async def upsert_course_progress(
        self, key: CourseProgressKey, create: CreateProgress, update: UpdateProgress
    ) -> CourseProgress:
        existing = self._progress.get(key)
        result = create() if existing is None else update(existing)
        self._progress[key] = result
        return result

    async def insert_quiz_attempt(self, attempt: QuizAttempt) -> bool:
        key = (attempt.user_id, attempt.id)
        if key in self._attempts:
            return False
        self._attempts[key] = attempt
        return True

    async def upsert_streak(
        self, user_id: str, create: CreateStreak, update: UpdateStreak
    ) -> UserStreak:
        existing = self._streaks.get(user_id)
        result = create() if existing is None else update(existing)
        self._streaks[user_id] = result
        return result

    async def mark_applied(self, user_id: str, event_id: str, applied_at: int) -> bool:
        key = (user_id, event_id)
        if key in self._applied:
            return False
        self._applied[key] = applied_at
        return True

    async def get_course_progress(self, key: CourseProgressKey) -> CourseProgress | None:
        return self._progress.get(key)

    async def list_quiz_attempts(self, user_id: str, quiz_id: str) -> list[QuizAttempt]:
        attempts = [
            a for a in self._attempts.values()
            if a.user_id == user_id and a.quiz_id == quiz_id
        ]
        return sorted(attempts, key=lambda a: a.created_at)

    async def get_streak(self, user_id: str) -> UserStreak | None:
        return self._streaks.get(user_id)

    def clear(self) -> None:
        self._progress.clear()
        self._attempts.clear()
        self._streaks.clear()
        self._applied.clear()
