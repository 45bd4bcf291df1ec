"""Progress sync endpoints.

POST /v1/progress/bulk
  -> rate limit (sliding window per user)
  -> authenticate, reject events owned by another user (400)
  -> apply the whole batch in one transaction (500 on rollback)
  -> invalidate cached course reads for touched courses
  -> evaluate milestones/streaks, enqueue notifications
  -> 200 {success, applied, skipped, notifications}

GET /v1/progress/courses/{course_id}
  -> read-through cache (check cache -> miss -> query store -> populate)

GET /v1/progress/quizzes/{quiz_id}/attempts
GET /v1/progress/streak
"""

from __future__ import annotations

import json
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from redis.exceptions import RedisError

from progress_sync.api.dependencies import require_user
from progress_sync.api.ratelimit import require_rate_limit
from progress_sync.core.config import SETTINGS
from progress_sync.db.engine import async_session_factory
from progress_sync.models.events import ProgressEvent
from progress_sync.models.principal import Principal
from progress_sync.models.progress import CourseProgressKey, UserStreak
from progress_sync.repos.pg_progress_store import PgProgressStore
from progress_sync.repos.progress_store import InMemoryProgressStore, ProgressStore
from progress_sync.services.cache import PROGRESS_TTL_SECONDS, cache_service, course_key
from progress_sync.services.ingestion import (
    BulkIngestionService,
    IngestionError,
    IngestionResult,
    MalformedBatchError,
)
from progress_sync.services.milestones import Notification, SessionContext
from progress_sync.services.rate_limiter import RateLimitConfig
from progress_sync.services.task_queue import NOTIFICATIONS_QUEUE, task_queue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/progress", tags=["progress"])

BULK_RATE_LIMIT = RateLimitConfig(
    limit=SETTINGS.rate_limit_bulk_limit,
    window_seconds=SETTINGS.rate_limit_bulk_window,
)

# ---------------------------------------------------------------------------
# Process-wide singletons, exposed through overridable dependencies
# ---------------------------------------------------------------------------

if async_session_factory is not None:
    _store: ProgressStore = PgProgressStore(async_session_factory)
else:
    _store = InMemoryProgressStore()

_session_context = SessionContext()


def get_progress_store() -> ProgressStore:
    return _store


def get_session_context() -> SessionContext:
    return _session_context


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class BulkProgressRequest(BaseModel):
    updates: list[ProgressEvent] = Field(max_length=SETTINGS.max_batch_size)


class NotificationOut(BaseModel):
    kind: str
    user_id: str
    entity_id: str
    threshold: int
    title: str
    message: str
    notified_at: float


class BulkProgressResponse(BaseModel):
    success: bool
    applied: int
    skipped: int
    notifications: list[NotificationOut]


class CourseProgressOut(BaseModel):
    user_id: str
    course_id: str
    current_chapter_id: str | None
    completed_chapters: list[str]
    chapter_progress: dict[str, float]
    last_positions: dict[str, float]
    progress: float
    last_accessed_at: int
    is_completed: bool
    time_spent: int
    interaction_count: int


class QuizAttemptOut(BaseModel):
    id: str
    quiz_id: str
    score: float
    max_score: float
    accuracy: float
    time_spent: int
    created_at: int


class StreakOut(BaseModel):
    user_id: str
    current_streak: int
    longest_streak: int
    last_activity_date: str | None


# ---------------------------------------------------------------------------
# POST /v1/progress/bulk
# ---------------------------------------------------------------------------


@router.post(
    "/bulk",
    response_model=BulkProgressResponse,
    dependencies=[Depends(require_rate_limit("progress_bulk", BULK_RATE_LIMIT))],
)
async def bulk_update(
    body: BulkProgressRequest,
    request: Request,
    principal: Annotated[Principal, Depends(require_user)],
    store: Annotated[ProgressStore, Depends(get_progress_store)],
    session: Annotated[SessionContext, Depends(get_session_context)],
) -> BulkProgressResponse | JSONResponse:
    service = BulkIngestionService(store)
    try:
        result = await service.ingest(principal.user_id, body.updates)
    except MalformedBatchError as e:
        logger.warning("Malformed batch rejected user=%s: %s", principal.user_id, e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from None
    except IngestionError as e:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": str(e)},
            headers=getattr(request.state, "rate_limit_headers", None),
        )

    for course in result.courses:
        await cache_service.delete(course_key(principal.user_id, course.course_id))

    notifications = _evaluate_notifications(session, result)
    await _enqueue_notifications(notifications)

    return BulkProgressResponse(
        success=True,
        applied=result.applied,
        skipped=result.skipped,
        notifications=[NotificationOut(**n.to_dict()) for n in notifications],
    )


def _evaluate_notifications(session: SessionContext, result: IngestionResult) -> list[Notification]:
    fired: list[Notification] = []
    for course in result.courses:
        total = result.course_totals.get(course.course_id)
        if total:
            fired += session.milestones.evaluate(
                course.user_id, course.course_id, len(course.completed_chapters), total
            )
        else:
            fired += session.milestones.evaluate_percent(
                course.user_id, course.course_id, course.progress
            )
    if result.streak is not None:
        fired += session.streaks.evaluate(result.streak)
    return fired


async def _enqueue_notifications(notifications: list[Notification]) -> None:
    # The batch is already committed; a queue outage only loses the toast
    for notification in notifications:
        try:
            await task_queue.enqueue(NOTIFICATIONS_QUEUE, notification.to_dict())
        except RedisError:
            logger.warning(
                "Could not enqueue notification user=%s threshold=%d",
                notification.user_id,
                notification.threshold,
                exc_info=True,
            )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/courses/{course_id}", response_model=CourseProgressOut)
async def get_course_progress(
    course_id: str,
    principal: Annotated[Principal, Depends(require_user)],
    store: Annotated[ProgressStore, Depends(get_progress_store)],
) -> CourseProgressOut:
    """Return the learner's aggregate for one course (read-through cached)."""
    cache_key = course_key(principal.user_id, course_id)

    cached = await cache_service.get(cache_key)
    if cached is not None:
        return CourseProgressOut(**json.loads(cached))

    progress = await store.get_course_progress(CourseProgressKey(principal.user_id, course_id))
    if progress is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No progress for course")

    data = progress.to_dict()
    await cache_service.set(cache_key, json.dumps(data), PROGRESS_TTL_SECONDS)
    return CourseProgressOut(**data)


@router.get("/quizzes/{quiz_id}/attempts", response_model=list[QuizAttemptOut])
async def list_quiz_attempts(
    quiz_id: str,
    principal: Annotated[Principal, Depends(require_user)],
    store: Annotated[ProgressStore, Depends(get_progress_store)],
) -> list[QuizAttemptOut]:
    attempts = await store.list_quiz_attempts(principal.user_id, quiz_id)
    return [
        QuizAttemptOut(
            id=a.id,
            quiz_id=a.quiz_id,
            score=a.score,
            max_score=a.max_score,
            accuracy=a.accuracy,
            time_spent=a.time_spent,
            created_at=a.created_at,
        )
        for a in attempts
    ]


@router.get("/streak", response_model=StreakOut)
async def get_streak(
    principal: Annotated[Principal, Depends(require_user)],
    store: Annotated[ProgressStore, Depends(get_progress_store)],
) -> StreakOut:
    streak = await store.get_streak(principal.user_id) or UserStreak(user_id=principal.user_id)
    return StreakOut(
        user_id=streak.user_id,
        current_streak=streak.current_streak,
        longest_streak=streak.longest_streak,
        last_activity_date=streak.last_activity_date,
    )
