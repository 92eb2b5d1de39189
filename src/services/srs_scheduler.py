"""Spaced-repetition scheduling over a fixed interval ladder."""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, TypeVar

from services.errors import ValidationError
from services.models import CourseOutline, ReviewItem, StudyPart, StudySession
from services.outline_store import iter_parts

# Days from the review moment, indexed by stage. Stage 0 means "not yet started".
SRS_INTERVALS_DAYS = [0, 1, 3, 7, 14, 30, 90, 180]
MAX_STAGE = len(SRS_INTERVALS_DAYS) - 1
FIRST_STAGE = 1

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def next_stage(current_stage: int, success: bool) -> int:
    """
    Promote or demote a review stage.

    Success moves one rung up, capped at the 180-day stage. Failure halves the
    stage (floor) but never drops below 1, so a scheduled part stays scheduled.
    """
    if not 0 <= current_stage <= MAX_STAGE:
        raise ValidationError(f"SRS stage must be 0..{MAX_STAGE}, got {current_stage}.")
    if success:
        return min(current_stage + 1, MAX_STAGE)
    return max(FIRST_STAGE, current_stage // 2)


def due_date_for(stage: int, now: Optional[datetime] = None) -> datetime:
    return (now or utc_now()) + timedelta(days=SRS_INTERVALS_DAYS[stage])


def schedule_first_review(part: StudyPart, now: Optional[datetime] = None) -> StudyPart:
    """Enter a completed part into the review track; parts already in it are returned as-is."""
    if not part.completed:
        raise ValidationError(f"Part {part.path} must be completed before it can be scheduled.")
    if part.srs_stage >= FIRST_STAGE:
        return part
    return dataclasses.replace(part, srs_stage=FIRST_STAGE, review_due_at=due_date_for(FIRST_STAGE, now))


def schedule_review(part: StudyPart, success: bool, now: Optional[datetime] = None) -> StudyPart:
    """Apply a recall outcome to a scheduled part and return the rescheduled copy."""
    if not part.completed:
        raise ValidationError(f"Part {part.path} has not entered the review track.")
    stage = next_stage(part.srs_stage, success)
    return dataclasses.replace(part, srs_stage=stage, review_due_at=due_date_for(stage, now))


def _due_at(item: Any) -> Optional[datetime]:
    if isinstance(item, dict):
        return item.get("review_due_at")
    return getattr(item, "review_due_at", None)


def select_due(items: Iterable[T], now: Optional[datetime] = None) -> list[T]:
    """Items whose review_due_at <= now, oldest-due first; unscheduled items are skipped."""
    moment = now or utc_now()
    due = [item for item in items if _due_at(item) is not None and _due_at(item) <= moment]
    due.sort(key=_due_at)
    return due


def flatten_review_items(session: StudySession, outline: Optional[CourseOutline] = None) -> list[ReviewItem]:
    """Completed, scheduled parts of one session as review-queue items."""
    source = outline or session.outline
    if source is None:
        return []
    return [
        ReviewItem(
            session_id=session.id,
            session_title=session.title,
            path=part.path,
            title=part.title,
            summary=part.summary,
            srs_stage=part.srs_stage,
            review_due_at=part.review_due_at,
        )
        for part in iter_parts(source)
        if part.completed and part.srs_stage >= FIRST_STAGE
    ]
