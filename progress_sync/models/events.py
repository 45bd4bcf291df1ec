"""Progress event vocabulary shared by the client and the ingestion API.

Every event carries the same envelope (id, user_id, entity_id, timestamp,
batch/priority/debounce hints) and a ``metadata`` payload whose shape is
fixed by ``type``.  ``ProgressEvent`` is a pydantic discriminated union on
``type``, so a parsed event always has the right payload class and
handlers never guess at keys.

Timestamps are client wall-clock epoch milliseconds.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Annotated, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    COURSE_STARTED = "COURSE_STARTED"
    COURSE_PROGRESS_UPDATED = "COURSE_PROGRESS_UPDATED"
    QUIZ_STARTED = "QUIZ_STARTED"
    QUESTION_ANSWERED = "QUESTION_ANSWERED"
    QUIZ_COMPLETED = "QUIZ_COMPLETED"
    COURSE_COMPLETED = "COURSE_COMPLETED"
    VIDEO_WATCHED = "VIDEO_WATCHED"
    CHAPTER_COMPLETED = "CHAPTER_COMPLETED"


EntityType = Literal["course", "chapter", "quiz", "question", "video"]


# ---------------------------------------------------------------------------
# Payloads (one per event kind)
# ---------------------------------------------------------------------------


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class CourseStartedMeta(_Payload):
    course_slug: str = ""
    course_title: str = ""


class CourseProgressMeta(_Payload):
    progress: float = Field(ge=0, le=100)  # percent
    completed_chapters: list[str] = Field(default_factory=list)
    current_chapter_id: str | None = None
    time_spent: int = Field(default=0, ge=0)  # seconds
    total_chapters: int | None = Field(default=None, gt=0)


class QuizStartedMeta(_Payload):
    quiz_type: str
    quiz_slug: str = ""
    total_questions: int = Field(ge=0)


class QuestionAnsweredMeta(_Payload):
    quiz_id: str
    question_index: int = Field(ge=0)
    selected_option_id: str | None = None
    user_answer: str = ""
    is_correct: bool
    time_spent: int = Field(default=0, ge=0)


class AnswerSummary(_Payload):
    question_id: str
    is_correct: bool
    time_spent: int = Field(default=0, ge=0)


class QuizCompletedMeta(_Payload):
    score: float = Field(ge=0)
    max_score: float = Field(gt=0)
    percentage: float = Field(ge=0, le=100)
    time_spent: int = Field(default=0, ge=0)
    answers: list[AnswerSummary] = Field(default_factory=list)


class CourseCompletedMeta(_Payload):
    total_time_spent: int = Field(default=0, ge=0)
    completion_date: str | None = None
    final_score: float | None = None


class VideoWatchedMeta(_Payload):
    course_id: str
    progress: float = Field(ge=0, le=1)  # fraction of the video played
    played_seconds: float = Field(ge=0)
    duration: float = Field(ge=0)


class ChapterCompletedMeta(_Payload):
    course_id: str
    time_spent: int = Field(default=0, ge=0)
    completed_at: str | None = None
    total_chapters: int | None = Field(default=None, gt=0)
    chapter_progress: dict[str, float] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, max_length=128)
    user_id: str = Field(min_length=1)
    entity_id: str = Field(min_length=1)
    timestamp: int = Field(ge=0)
    batch_id: str | None = None
    priority: int = 0
    debounce_key: str | None = None

    @property
    def collapse_key(self) -> str:
        """Events sharing this key collapse to the most recent one."""
        return self.debounce_key or default_debounce_key(
            self.type, self.entity_id, self.user_id  # type: ignore[attr-defined]
        )


class CourseStartedEvent(_EventBase):
    type: Literal["COURSE_STARTED"] = "COURSE_STARTED"
    entity_type: Literal["course"] = "course"
    metadata: CourseStartedMeta


class CourseProgressUpdatedEvent(_EventBase):
    type: Literal["COURSE_PROGRESS_UPDATED"] = "COURSE_PROGRESS_UPDATED"
    entity_type: Literal["course"] = "course"
    metadata: CourseProgressMeta


class QuizStartedEvent(_EventBase):
    type: Literal["QUIZ_STARTED"] = "QUIZ_STARTED"
    entity_type: Literal["quiz"] = "quiz"
    metadata: QuizStartedMeta


class QuestionAnsweredEvent(_EventBase):
    type: Literal["QUESTION_ANSWERED"] = "QUESTION_ANSWERED"
    entity_type: Literal["question"] = "question"
    metadata: QuestionAnsweredMeta


class QuizCompletedEvent(_EventBase):
    type: Literal["QUIZ_COMPLETED"] = "QUIZ_COMPLETED"
    entity_type: Literal["quiz"] = "quiz"
    metadata: QuizCompletedMeta


class CourseCompletedEvent(_EventBase):
    type: Literal["COURSE_COMPLETED"] = "COURSE_COMPLETED"
    entity_type: Literal["course"] = "course"
    metadata: CourseCompletedMeta


class VideoWatchedEvent(_EventBase):
    type: Literal["VIDEO_WATCHED"] = "VIDEO_WATCHED"
    entity_type: Literal["chapter", "video"] = "chapter"
    metadata: VideoWatchedMeta


class ChapterCompletedEvent(_EventBase):
    type: Literal["CHAPTER_COMPLETED"] = "CHAPTER_COMPLETED"
    entity_type: Literal["chapter"] = "chapter"
    metadata: ChapterCompletedMeta


ProgressEvent = Annotated[
    Union[
        CourseStartedEvent,
        CourseProgressUpdatedEvent,
        QuizStartedEvent,
        QuestionAnsweredEvent,
        QuizCompletedEvent,
        CourseCompletedEvent,
        VideoWatchedEvent,
        ChapterCompletedEvent,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Construction helpers (client side)
# ---------------------------------------------------------------------------


def now_ms() -> int:
    return int(time.time() * 1000)


def new_event_id() -> str:
    return str(uuid4())


def default_debounce_key(type_: str, entity_id: str, user_id: str) -> str:
    return f"{type_}-{entity_id}-{user_id}"


def _envelope(type_: EventType, user_id: str, entity_id: str, timestamp: int | None) -> dict:
    return {
        "id": new_event_id(),
        "user_id": user_id,
        "entity_id": entity_id,
        "timestamp": now_ms() if timestamp is None else timestamp,
        "priority": 1 if type_ is EventType.CHAPTER_COMPLETED else 0,
        "debounce_key": default_debounce_key(type_.value, entity_id, user_id),
    }


def course_started(
    user_id: str, course_id: str, course_slug: str = "", course_title: str = "",
    *, timestamp: int | None = None,
) -> CourseStartedEvent:
    return CourseStartedEvent(
        **_envelope(EventType.COURSE_STARTED, user_id, course_id, timestamp),
        metadata=CourseStartedMeta(course_slug=course_slug, course_title=course_title),
    )


def course_progress_updated(
    user_id: str,
    course_id: str,
    progress: float,
    completed_chapters: list[str],
    current_chapter_id: str | None = None,
    time_spent: int = 0,
    total_chapters: int | None = None,
    *,
    timestamp: int | None = None,
) -> CourseProgressUpdatedEvent:
    return CourseProgressUpdatedEvent(
        **_envelope(EventType.COURSE_PROGRESS_UPDATED, user_id, course_id, timestamp),
        metadata=CourseProgressMeta(
            progress=progress,
            completed_chapters=completed_chapters,
            current_chapter_id=current_chapter_id,
            time_spent=time_spent,
            total_chapters=total_chapters,
        ),
    )


def quiz_started(
    user_id: str, quiz_id: str, quiz_type: str, quiz_slug: str, total_questions: int,
    *, timestamp: int | None = None,
) -> QuizStartedEvent:
    return QuizStartedEvent(
        **_envelope(EventType.QUIZ_STARTED, user_id, quiz_id, timestamp),
        metadata=QuizStartedMeta(
            quiz_type=quiz_type, quiz_slug=quiz_slug, total_questions=total_questions
        ),
    )


def question_answered(
    user_id: str,
    question_id: str,
    quiz_id: str,
    question_index: int,
    user_answer: str,
    is_correct: bool,
    time_spent: int = 0,
    selected_option_id: str | None = None,
    *,
    timestamp: int | None = None,
) -> QuestionAnsweredEvent:
    return QuestionAnsweredEvent(
        **_envelope(EventType.QUESTION_ANSWERED, user_id, question_id, timestamp),
        metadata=QuestionAnsweredMeta(
            quiz_id=quiz_id,
            question_index=question_index,
            selected_option_id=selected_option_id,
            user_answer=user_answer,
            is_correct=is_correct,
            time_spent=time_spent,
        ),
    )


def quiz_completed(
    user_id: str,
    quiz_id: str,
    score: float,
    max_score: float,
    percentage: float,
    time_spent: int = 0,
    answers: list[AnswerSummary] | None = None,
    *,
    timestamp: int | None = None,
) -> QuizCompletedEvent:
    return QuizCompletedEvent(
        **_envelope(EventType.QUIZ_COMPLETED, user_id, quiz_id, timestamp),
        metadata=QuizCompletedMeta(
            score=score,
            max_score=max_score,
            percentage=percentage,
            time_spent=time_spent,
            answers=answers or [],
        ),
    )


def course_completed(
    user_id: str, course_id: str, total_time_spent: int = 0,
    final_score: float | None = None, *, timestamp: int | None = None,
) -> CourseCompletedEvent:
    envelope = _envelope(EventType.COURSE_COMPLETED, user_id, course_id, timestamp)
    return CourseCompletedEvent(
        **envelope,
        metadata=CourseCompletedMeta(
            total_time_spent=total_time_spent,
            completion_date=_iso(envelope["timestamp"]),
            final_score=final_score,
        ),
    )


def video_watched(
    user_id: str,
    chapter_id: str,
    course_id: str,
    progress: float,
    played_seconds: float,
    duration: float,
    *,
    timestamp: int | None = None,
) -> VideoWatchedEvent:
    return VideoWatchedEvent(
        **_envelope(EventType.VIDEO_WATCHED, user_id, chapter_id, timestamp),
        metadata=VideoWatchedMeta(
            course_id=course_id,
            progress=progress,
            played_seconds=played_seconds,
            duration=duration,
        ),
    )


def chapter_completed(
    user_id: str,
    chapter_id: str,
    course_id: str,
    time_spent: int = 0,
    total_chapters: int | None = None,
    chapter_progress: dict[str, float] | None = None,
    *,
    timestamp: int | None = None,
) -> ChapterCompletedEvent:
    envelope = _envelope(EventType.CHAPTER_COMPLETED, user_id, chapter_id, timestamp)
    return ChapterCompletedEvent(
        **envelope,
        metadata=ChapterCompletedMeta(
            course_id=course_id,
            time_spent=time_spent,
            completed_at=_iso(envelope["timestamp"]),
            total_chapters=total_chapters,
            chapter_progress=chapter_progress or {},
        ),
    )


def _iso(timestamp_ms: int) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(timestamp_ms / 1000))
