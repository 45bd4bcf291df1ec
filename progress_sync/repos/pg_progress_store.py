"""PostgreSQL implementation of ProgressStore.

Concurrent batches for the same (user, course) serialize on the
course_progress row: the upsert takes ``SELECT ... FOR UPDATE`` and
falls back to ``INSERT ... ON CONFLICT DO NOTHING`` followed by a locked
re-read when the row does not exist yet.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from progress_sync.db.tables import (
    AppliedEventRow,
    CourseProgressRow,
    QuizAttemptRow,
    UserStreakRow,
)
from progress_sync.models.progress import (
    CourseProgress,
    CourseProgressKey,
    QuizAttempt,
    UserStreak,
)
from progress_sync.repos.progress_store import (
    CreateProgress,
    CreateStreak,
    ProgressStore,
    UpdateProgress,
    UpdateStreak,
)

T = TypeVar("T")


class PgProgressStore:
    """Satisfies the ProgressStore Protocol using PostgreSQL via SQLAlchemy.

    An instance is either unbound (holds only the session factory) or
    bound to the session of one open transaction.  ``run_atomic`` on an
    unbound store opens the transaction and hands a bound store to the
    callback.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        session: AsyncSession | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._session = session

    async def run_atomic(self, fn: Callable[[ProgressStore], Awaitable[T]]) -> T:
        if self._session is not None:
            return await fn(self)
        async with self._session_factory() as session:
            async with session.begin():
                return await fn(PgProgressStore(self._session_factory, session))

    @asynccontextmanager
    async def _scope(self) -> AsyncIterator[AsyncSession]:
        if self._session is not None:
            yield self._session
            return
        async with self._session_factory() as session:
            yield session

    # --- writes ---

    async def upsert_course_progress(
        self, key: CourseProgressKey, create: CreateProgress, update: UpdateProgress
    ) -> CourseProgress:
        session = self._require_session()
        row = await _locked_progress_row(session, key)
        if row is None:
            created = create()
            stmt = (
                pg_insert(CourseProgressRow)
                .values(**_progress_values(created))
                .on_conflict_do_nothing(index_elements=["user_id", "course_id"])
            )
            result = await session.execute(stmt)
            if result.rowcount == 1:
                return created
            # Lost the insert race; the winner's row is now visible
            row = await _locked_progress_row(session, key)
            if row is None:
                raise RuntimeError(f"course_progress row vanished for {key}")

        updated = update(_row_to_progress(row))
        for column, value in _progress_values(updated).items():
            setattr(row, column, value)
        await session.flush()
        return updated

    async def insert_quiz_attempt(self, attempt: QuizAttempt) -> bool:
        session = self._require_session()
        stmt = (
            pg_insert(QuizAttemptRow)
            .values(
                id=attempt.id,
                user_id=attempt.user_id,
                quiz_id=attempt.quiz_id,
                score=attempt.score,
                max_score=attempt.max_score,
                accuracy=attempt.accuracy,
                time_spent=attempt.time_spent,
                created_at=attempt.created_at,
                answers=list(attempt.answers),
            )
            .on_conflict_do_nothing(index_elements=["user_id", "id"])
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def upsert_streak(
        self, user_id: str, create: CreateStreak, update: UpdateStreak
    ) -> UserStreak:
        session = self._require_session()
        row = await session.get(UserStreakRow, user_id, with_for_update=True)
        if row is None:
            streak = create()
            session.add(
                UserStreakRow(
                    user_id=streak.user_id,
                    current_streak=streak.current_streak,
                    longest_streak=streak.longest_streak,
                    last_activity_date=streak.last_activity_date,
                )
            )
            await session.flush()
            return streak

        streak = update(_row_to_streak(row))
        row.current_streak = streak.current_streak
        row.longest_streak = streak.longest_streak
        row.last_activity_date = streak.last_activity_date
        await session.flush()
        return streak

    async def mark_applied(self, user_id: str, event_id: str, applied_at: int) -> bool:
        session = self._require_session()
        stmt = (
            pg_insert(AppliedEventRow)
            .values(user_id=user_id, event_id=event_id, applied_at=applied_at)
            .on_conflict_do_nothing(index_elements=["user_id", "event_id"])
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    # --- reads ---

    async def get_course_progress(self, key: CourseProgressKey) -> CourseProgress | None:
        async with self._scope() as session:
            row = await session.get(CourseProgressRow, (key.user_id, key.course_id))
            return None if row is None else _row_to_progress(row)

    async def list_quiz_attempts(self, user_id: str, quiz_id: str) -> list[QuizAttempt]:
        stmt = (
            select(QuizAttemptRow)
            .where(QuizAttemptRow.user_id == user_id, QuizAttemptRow.quiz_id == quiz_id)
            .order_by(QuizAttemptRow.created_at)
        )
        async with self._scope() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_attempt(r) for r in rows]

    async def get_streak(self, user_id: str) -> UserStreak | None:
        async with self._scope() as session:
            row = await session.get(UserStreakRow, user_id)
            return None if row is None else _row_to_streak(row)

    def _require_session(self) -> AsyncSession:
        if self._session is None:
            raise RuntimeError("writes must run inside run_atomic()")
        return self._session


async def _locked_progress_row(
    session: AsyncSession, key: CourseProgressKey
) -> CourseProgressRow | None:
    return await session.get(
        CourseProgressRow,
        (key.user_id, key.course_id),
        with_for_update=True,
        populate_existing=True,
    )


def _progress_values(p: CourseProgress) -> dict:
    return {
        "user_id": p.user_id,
        "course_id": p.course_id,
        "current_chapter_id": p.current_chapter_id,
        "completed_chapters": sorted(p.completed_chapters),
        "chapter_progress": dict(p.chapter_progress),
        "last_positions": dict(p.last_positions),
        "progress": p.progress,
        "last_accessed_at": p.last_accessed_at,
        "is_completed": p.is_completed,
        "time_spent": p.time_spent,
        "interaction_count": p.interaction_count,
    }


def _row_to_progress(row: CourseProgressRow) -> CourseProgress:
    return CourseProgress(
        user_id=row.user_id,
        course_id=row.course_id,
        current_chapter_id=row.current_chapter_id,
        completed_chapters=frozenset(row.completed_chapters or ()),
        chapter_progress=dict(row.chapter_progress or {}),
        last_positions=dict(row.last_positions or {}),
        progress=row.progress,
        last_accessed_at=row.last_accessed_at,
        is_completed=row.is_completed,
        time_spent=row.time_spent,
        interaction_count=row.interaction_count,
    )


def _row_to_attempt(row: QuizAttemptRow) -> QuizAttempt:
    return QuizAttempt(
        id=row.id,
        user_id=row.user_id,
        quiz_id=row.quiz_id,
        score=row.score,
        max_score=row.max_score,
        accuracy=row.accuracy,
        time_spent=row.time_spent,
        created_at=row.created_at,
        answers=tuple(row.answers or ()),
    )


def _row_to_streak(row: UserStreakRow) -> UserStreak:
    return UserStreak(
        user_id=row.user_id,
        current_streak=row.current_streak,
        longest_streak=row.longest_streak,
        last_activity_date=row.last_activity_date,
    )
