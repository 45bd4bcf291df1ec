"""SQLAlchemy table definitions.

These map to the frozen dataclass aggregates in progress_sync/models/.
PgProgressStore converts between rows and domain objects.

Identifiers (users, courses, chapters, quizzes, events) are opaque
strings minted elsewhere, so they are stored as String rather than UUID.
"""

from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Boolean,
    Float,
    Index,
    Integer,
    String,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from progress_sync.db.engine import Base


class CourseProgressRow(Base):
    """One row per (user, course); the upsert's unique key."""

    __tablename__ = "course_progress"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    course_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    current_chapter_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    completed_chapters: Mapped[list[str]] = mapped_column(
        ARRAY(String), nullable=False, default=list
    )
    chapter_progress: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    last_positions: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    progress: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    last_accessed_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    time_spent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    interaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class QuizAttemptRow(Base):
    """Append-only; (user_id, id) is the originating QUIZ_COMPLETED event."""

    __tablename__ = "quiz_attempts"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    quiz_id: Mapped[str] = mapped_column(String(128), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    max_score: Mapped[float] = mapped_column(Float, nullable=False)
    accuracy: Mapped[float] = mapped_column(Float, nullable=False)
    time_spent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    answers: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)

    __table_args__ = (Index("ix_quiz_attempts_user_quiz", "user_id", "quiz_id"),)


class UserStreakRow(Base):
    __tablename__ = "user_streaks"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_activity_date: Mapped[str | None] = mapped_column(String(10), nullable=True)


class AppliedEventRow(Base):
    """Ledger of (user, event id) pairs already applied; replays are skipped."""

    __tablename__ = "applied_events"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    event_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    applied_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
