"""Bulk ingestion: apply a batch of progress events atomically.

A batch is partitioned by merge group and each group is applied by the
handlers registered for its event kinds:

  progress  VIDEO_WATCHED, COURSE_PROGRESS_UPDATED, COURSE_STARTED,
            COURSE_COMPLETED -> upsert the (user, course) aggregate;
            VIDEO_WATCHED moves only its chapter's entry and position
  quiz      QUIZ_COMPLETED   -> insert a new attempt row (+ streak)
  chapter   CHAPTER_COMPLETED -> union the chapter into the aggregate

Every group runs inside one ``store.run_atomic`` call, so a failure in
any of them rolls back the whole batch.

Re-applying a batch is safe.  Aggregate fields merge monotonically
(``max`` for progress and timestamps, set union for chapters, sticky
completion), attempts are keyed by their event id, and the applied-event
ledger skips ids that were already applied, which covers the additive
counters (interaction_count, per-chapter time).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace

from progress_sync.core.metrics import BATCH_SIZE, PROGRESS_BATCHES, PROGRESS_EVENTS
from progress_sync.models.events import (
    ChapterCompletedEvent,
    CourseCompletedEvent,
    CourseProgressUpdatedEvent,
    CourseStartedEvent,
    EventType,
    ProgressEvent,
    QuizCompletedEvent,
    VideoWatchedEvent,
)
from progress_sync.models.progress import (
    CourseProgress,
    CourseProgressKey,
    QuizAttempt,
    UserStreak,
)
from progress_sync.repos.progress_store import ProgressStore
from progress_sync.services.streaks import activity_day, advance_streak, start_streak

logger = logging.getLogger(__name__)


class MalformedBatchError(ValueError):
    """The batch can never succeed on replay (wrong owner, bad shape)."""


class IngestionError(RuntimeError):
    """The transaction failed; nothing from the batch was committed."""


@dataclass(slots=True)
class _BatchState:
    applied: int = 0
    skipped: int = 0
    attempts_created: int = 0
    courses: dict[CourseProgressKey, CourseProgress] = field(default_factory=dict)
    course_totals: dict[str, int] = field(default_factory=dict)
    streak: UserStreak | None = None


@dataclass(frozen=True, slots=True)
class IngestionResult:
    applied: int
    skipped: int
    attempts_created: int
    courses: tuple[CourseProgress, ...]
    # course_id -> total chapter count, when a batch event reported it
    course_totals: dict[str, int]
    streak: UserStreak | None


MergeHandler = Callable[[ProgressStore, ProgressEvent, _BatchState], Awaitable[None]]

GROUP_ORDER: tuple[str, ...] = ("progress", "quiz", "chapter")

_HANDLERS: dict[str, tuple[str, MergeHandler]] = {}


def register_merge(group: str, *event_types: EventType):
    """Decorator: register a merge handler for one or more event kinds."""

    def decorator(func: MergeHandler) -> MergeHandler:
        for event_type in event_types:
            _HANDLERS[event_type.value] = (group, func)
        return func

    return decorator


def partition(events: Sequence[ProgressEvent]) -> tuple[dict[str, list[ProgressEvent]], list[ProgressEvent]]:
    """Split a batch into merge groups; returns (groups, unhandled)."""
    groups: dict[str, list[ProgressEvent]] = {}
    unhandled: list[ProgressEvent] = []
    for event in events:
        entry = _HANDLERS.get(event.type)
        if entry is None:
            unhandled.append(event)
            continue
        groups.setdefault(entry[0], []).append(event)
    for members in groups.values():
        members.sort(key=lambda e: (e.timestamp, -e.priority))
    return groups, unhandled


class BulkIngestionService:
    def __init__(
        self,
        store: ProgressStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._clock = clock

    async def ingest(self, user_id: str, events: Sequence[ProgressEvent]) -> IngestionResult:
        foreign = [e.id for e in events if e.user_id != user_id]
        if foreign:
            PROGRESS_BATCHES.labels(outcome="malformed").inc()
            raise MalformedBatchError(
                f"{len(foreign)} event(s) belong to a different user"
            )

        BATCH_SIZE.observe(len(events))
        groups, unhandled = partition(events)
        batch_id = events[0].batch_id if events else None

        async def _apply(tx: ProgressStore) -> _BatchState:
            state = _BatchState()
            applied_at = int(self._clock() * 1000)
            for group in GROUP_ORDER:
                for event in groups.get(group, []):
                    if not await tx.mark_applied(user_id, event.id, applied_at):
                        state.skipped += 1
                        PROGRESS_EVENTS.labels(type=event.type, result="skipped").inc()
                        continue
                    _, handler = _HANDLERS[event.type]
                    await handler(tx, event, state)
                    state.applied += 1
                    PROGRESS_EVENTS.labels(type=event.type, result="applied").inc()
            return state

        try:
            state = await self._store.run_atomic(_apply)
        except Exception as exc:
            PROGRESS_BATCHES.labels(outcome="failed").inc()
            logger.exception(
                "Progress batch rolled back user=%s events=%d",
                user_id,
                len(events),
                extra={"user_id": user_id, "batch_id": batch_id, "event_count": len(events)},
            )
            raise IngestionError("progress batch could not be committed") from exc

        for event in unhandled:
            PROGRESS_EVENTS.labels(type=event.type, result="skipped").inc()
        state.skipped += len(unhandled)

        PROGRESS_BATCHES.labels(outcome="committed").inc()
        logger.info(
            "Progress batch committed user=%s applied=%d skipped=%d",
            user_id,
            state.applied,
            state.skipped,
            extra={"user_id": user_id, "batch_id": batch_id, "event_count": len(events)},
        )
        return IngestionResult(
            applied=state.applied,
            skipped=state.skipped,
            attempts_created=state.attempts_created,
            courses=tuple(state.courses.values()),
            course_totals=dict(state.course_totals),
            streak=state.streak,
        )


# ---------------------------------------------------------------------------
# Merge rules
# ---------------------------------------------------------------------------


def _clamp_percent(value: float) -> float:
    return max(0.0, min(100.0, round(value, 2)))


def _ratio_percent(completed: int, total: int | None) -> float:
    if not total:
        return 0.0
    return _clamp_percent(min(completed, total) * 100 / total)


def _merge_progress(
    current: CourseProgress,
    *,
    timestamp: int,
    progress: float = 0.0,
    chapter_id: str | None = None,
    completed: frozenset[str] = frozenset(),
    chapter_progress: dict[str, float] | None = None,
    position: tuple[str, float] | None = None,
    time_spent_total: int | None = None,
    time_spent_delta: int = 0,
    total_chapters: int | None = None,
    completed_course: bool = False,
    interaction: bool = True,
) -> CourseProgress:
    """Fold one event into an aggregate without ever moving it backwards."""
    is_newer = timestamp >= current.last_accessed_at

    completed_chapters = current.completed_chapters | completed
    merged_chapters = dict(current.chapter_progress)
    for key, value in (chapter_progress or {}).items():
        merged_chapters[key] = max(merged_chapters.get(key, 0.0), _clamp_percent(value))

    positions = dict(current.last_positions)
    if position is not None and (is_newer or position[0] not in positions):
        positions[position[0]] = position[1]

    new_progress = max(
        current.progress,
        _clamp_percent(progress),
        _ratio_percent(len(completed_chapters), total_chapters),
        100.0 if completed_course else 0.0,
    )
    time_spent = current.time_spent + time_spent_delta
    if time_spent_total is not None:
        time_spent = max(time_spent, time_spent_total)

    return replace(
        current,
        current_chapter_id=chapter_id if chapter_id and is_newer else current.current_chapter_id,
        completed_chapters=completed_chapters,
        chapter_progress=merged_chapters,
        last_positions=positions,
        progress=new_progress,
        last_accessed_at=max(current.last_accessed_at, timestamp),
        is_completed=current.is_completed or completed_course or new_progress >= 100.0,
        time_spent=time_spent,
        interaction_count=current.interaction_count + (1 if interaction else 0),
    )


async def _upsert(
    tx: ProgressStore,
    state: _BatchState,
    user_id: str,
    course_id: str,
    merge: Callable[[CourseProgress], CourseProgress],
    total_chapters: int | None = None,
) -> None:
    key = CourseProgressKey(user_id, course_id)
    blank = CourseProgress(user_id=user_id, course_id=course_id)

    # A new aggregate is the event folded into an empty one
    state.courses[key] = await tx.upsert_course_progress(key, lambda: merge(blank), merge)
    if total_chapters:
        state.course_totals[course_id] = total_chapters


@register_merge("progress", EventType.VIDEO_WATCHED)
async def _merge_video_watched(
    tx: ProgressStore, event: VideoWatchedEvent, state: _BatchState
) -> None:
    # A chapter's playback only feeds its own entry, never course progress
    meta = event.metadata
    percent = meta.progress * 100
    await _upsert(
        tx,
        state,
        event.user_id,
        meta.course_id,
        lambda p: _merge_progress(
            p,
            timestamp=event.timestamp,
            chapter_id=event.entity_id,
            chapter_progress={event.entity_id: percent},
            position=(event.entity_id, meta.played_seconds),
        ),
    )


@register_merge("progress", EventType.COURSE_PROGRESS_UPDATED)
async def _merge_course_progress(
    tx: ProgressStore, event: CourseProgressUpdatedEvent, state: _BatchState
) -> None:
    meta = event.metadata
    await _upsert(
        tx,
        state,
        event.user_id,
        event.entity_id,
        lambda p: _merge_progress(
            p,
            timestamp=event.timestamp,
            progress=meta.progress,
            chapter_id=meta.current_chapter_id,
            completed=frozenset(meta.completed_chapters),
            time_spent_total=meta.time_spent,
            total_chapters=meta.total_chapters,
        ),
        total_chapters=meta.total_chapters,
    )


@register_merge("progress", EventType.COURSE_STARTED)
async def _merge_course_started(
    tx: ProgressStore, event: CourseStartedEvent, state: _BatchState
) -> None:
    await _upsert(
        tx,
        state,
        event.user_id,
        event.entity_id,
        lambda p: _merge_progress(p, timestamp=event.timestamp),
    )


@register_merge("progress", EventType.COURSE_COMPLETED)
async def _merge_course_completed(
    tx: ProgressStore, event: CourseCompletedEvent, state: _BatchState
) -> None:
    await _upsert(
        tx,
        state,
        event.user_id,
        event.entity_id,
        lambda p: _merge_progress(
            p,
            timestamp=event.timestamp,
            time_spent_total=event.metadata.total_time_spent,
            completed_course=True,
        ),
    )


@register_merge("quiz", EventType.QUIZ_COMPLETED)
async def _insert_quiz_attempt(
    tx: ProgressStore, event: QuizCompletedEvent, state: _BatchState
) -> None:
    meta = event.metadata
    if meta.answers:
        correct = sum(1 for a in meta.answers if a.is_correct)
        accuracy = round(correct * 100 / len(meta.answers), 2)
    else:
        accuracy = meta.percentage

    attempt = QuizAttempt(
        id=event.id,
        user_id=event.user_id,
        quiz_id=event.entity_id,
        score=meta.score,
        max_score=meta.max_score,
        accuracy=accuracy,
        time_spent=meta.time_spent,
        created_at=event.timestamp,
        answers=tuple(a.model_dump() for a in meta.answers),
    )
    if not await tx.insert_quiz_attempt(attempt):
        return
    state.attempts_created += 1

    day = activity_day(event.timestamp)
    state.streak = await tx.upsert_streak(
        event.user_id,
        lambda: start_streak(event.user_id, day),
        lambda s: advance_streak(s, day),
    )


@register_merge("chapter", EventType.CHAPTER_COMPLETED)
async def _merge_chapter_completed(
    tx: ProgressStore, event: ChapterCompletedEvent, state: _BatchState
) -> None:
    meta = event.metadata
    sub_progress = dict(meta.chapter_progress)
    sub_progress[event.entity_id] = 100.0
    await _upsert(
        tx,
        state,
        event.user_id,
        meta.course_id,
        lambda p: _merge_progress(
            p,
            timestamp=event.timestamp,
            chapter_id=event.entity_id,
            completed=frozenset({event.entity_id}),
            chapter_progress=sub_progress,
            time_spent_delta=meta.time_spent,
            total_chapters=meta.total_chapters,
            interaction=False,
        ),
        total_chapters=meta.total_chapters,
    )
