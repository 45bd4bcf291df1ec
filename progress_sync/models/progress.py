from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class CourseProgressKey:
    user_id: str
    course_id: str


@dataclass(frozen=True, slots=True)
class CourseProgress:
    """Durable per-(user, course) aggregate built from applied events.

    ``progress`` only ever grows, ``completed_chapters`` only ever gains
    members and ``is_completed`` never flips back to False.  Timestamps
    are epoch milliseconds from the originating events.
    """

    user_id: str
    course_id: str
    current_chapter_id: str | None = None
    completed_chapters: frozenset[str] = frozenset()
    chapter_progress: dict[str, float] = field(default_factory=dict)
    last_positions: dict[str, float] = field(default_factory=dict)
    progress: float = 0.0  # percent, 0-100
    last_accessed_at: int = 0
    is_completed: bool = False
    time_spent: int = 0  # seconds
    interaction_count: int = 0

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "course_id": self.course_id,
            "current_chapter_id": self.current_chapter_id,
            "completed_chapters": sorted(self.completed_chapters),
            "chapter_progress": dict(self.chapter_progress),
            "last_positions": dict(self.last_positions),
            "progress": self.progress,
            "last_accessed_at": self.last_accessed_at,
            "is_completed": self.is_completed,
            "time_spent": self.time_spent,
            "interaction_count": self.interaction_count,
        }


@dataclass(frozen=True, slots=True)
class QuizAttempt:
    """One quiz submission.  Append-only: never updated after insert.

    ``id`` is the id of the QUIZ_COMPLETED event that produced it, which
    is what makes a replayed submission from the same user collapse onto
    the same row.
    """

    id: str
    user_id: str
    quiz_id: str
    score: float
    max_score: float
    accuracy: float  # percent correct
    time_spent: int
    created_at: int
    answers: tuple[dict, ...] = ()


@dataclass(frozen=True, slots=True)
class UserStreak:
    """Daily quiz-completion streak for one user."""

    user_id: str
    current_streak: int = 0
    longest_streak: int = 0
    last_activity_date: str | None = None  # ISO date (YYYY-MM-DD, UTC)
