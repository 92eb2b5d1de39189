"""Progress Tracker: sequential advancement, confidence recording and session state."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, Optional

from services import session_store
from services.difficulty_monitor import DifficultyMonitor
from services.errors import NotFoundError, PersistenceError, ValidationError
from services.models import CourseOutline, EducationalMode, PartPath, SessionState, StudyPart, StudySession
from services.outline_store import count_completed, count_parts, first_path, get_part, replace_part
from services.srs_scheduler import schedule_first_review, schedule_review, utc_now

LOGGER = logging.getLogger(__name__)


def find_next_part(path: PartPath, outline: CourseOutline) -> Optional[PartPath]:
    """
    Depth-first successor of *path* in lexicographic order.

    Next part in the same subtopic, else the first part of the next non-empty
    subtopic, else the first part of the next topic that has one, else None.
    """
    get_part(outline, path)
    topic_idx, subtopic_idx, part_idx = path
    topics = outline.topics
    if part_idx + 1 < len(topics[topic_idx].subtopics[subtopic_idx].parts):
        return PartPath(topic_idx, subtopic_idx, part_idx + 1)
    for s in range(subtopic_idx + 1, len(topics[topic_idx].subtopics)):
        if topics[topic_idx].subtopics[s].parts:
            return PartPath(topic_idx, s, 0)
    for t in range(topic_idx + 1, len(topics)):
        for s, subtopic in enumerate(topics[t].subtopics):
            if subtopic.parts:
                return PartPath(t, s, 0)
    return None


def validate_confidence(confidence: Any) -> int:
    try:
        value = int(confidence)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Confidence must be an integer 1..5, got {confidence!r}.") from e
    if isinstance(confidence, bool) or not 1 <= value <= 5 or value != confidence:
        raise ValidationError(f"Confidence must be an integer 1..5, got {confidence!r}.")
    return value


def complete_part(
    outline: CourseOutline,
    path: PartPath,
    confidence: int,
    now: Optional[datetime] = None,
) -> tuple[CourseOutline, Optional[PartPath]]:
    """
    Mark the part at *path* complete with *confidence*.

    Only the first completion enters the part into the review track
    (stage 1, due tomorrow); a re-rating overwrites the confidence and keeps
    whatever schedule later reviews produced. The input outline is not modified.

    Returns:
        (new outline, next path or None at the end of the course).
    """
    rating = validate_confidence(confidence)
    part = get_part(outline, path)
    if part.completed:
        updated = dataclasses.replace(part, confidence=rating)
    else:
        updated = schedule_first_review(dataclasses.replace(part, completed=True, confidence=rating), now)
    new_outline = replace_part(outline, path, updated)
    return new_outline, find_next_part(path, new_outline)


def progress_percent(outline: Optional[CourseOutline]) -> float:
    """Share of completed parts in percent; 0 for an empty outline."""
    if outline is None:
        return 0.0
    total = count_parts(outline)
    if total == 0:
        return 0.0
    return 100.0 * count_completed(outline) / total


def part_from_row(row: dict[str, Any]) -> StudyPart:
    """Rebuild a StudyPart from a session_parts row."""
    completed = bool(row.get("completed"))
    confidence = row.get("confidence")
    return StudyPart(
        title=str(row.get("title") or ""),
        summary=str(row.get("summary") or ""),
        topic_idx=int(row["topic_idx"]),
        subtopic_idx=int(row["subtopic_idx"]),
        part_idx=int(row["part_idx"]),
        completed=completed,
        confidence=int(confidence) if completed and confidence is not None else None,
        srs_stage=int(row.get("srs_stage") or 0) if completed else 0,
        review_due_at=row.get("review_due_at") if completed else None,
    )


def record_review(part_id: int, success: bool, store: Any = session_store, now: Optional[datetime] = None) -> dict[str, Any]:
    """Apply a recall outcome to a persisted part and return its updated row."""
    row = store.get_part_row(part_id)
    if row is None:
        raise NotFoundError(f"Part {part_id} not found.")
    reviewed = schedule_review(part_from_row(row), bool(success), now)
    store.update_part_after_review(part_id, reviewed.srs_stage, reviewed.review_due_at)
    LOGGER.info("review.record(partId=%s,success=%s,stage=%s)", part_id, success, reviewed.srs_stage)
    return {**row, "srs_stage": reviewed.srs_stage, "review_due_at": reviewed.review_due_at}


class ProgressTracker:
    """Owns one loaded study session: its outline, active path and confidence history."""

    def __init__(
        self,
        session: StudySession,
        store: Any = session_store,
        monitor: Optional[DifficultyMonitor] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session = session
        self.store = store
        self.monitor = monitor or DifficultyMonitor()
        self.clock = clock
        self.suggestion: Optional[EducationalMode] = None
        self.active_path: Optional[PartPath] = first_path(session.outline) if session.outline else None
        if session.outline is not None and session.state == SessionState.ONBOARDING:
            session.state = SessionState.STUDYING

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def outline(self) -> CourseOutline:
        if self.session.outline is None:
            raise ValidationError("Session has no study plan yet.")
        return self.session.outline

    def progress(self) -> float:
        return progress_percent(self.session.outline)

    def current_part(self) -> Optional[StudyPart]:
        if self.active_path is None or self.session.outline is None:
            return None
        return get_part(self.session.outline, self.active_path)

    def select_path(self, path: PartPath) -> StudyPart:
        part = get_part(self.outline, path)
        if path != self.active_path:
            self.active_path = path
            self.suggestion = None
        return part

    def dismiss_suggestion(self) -> None:
        self.suggestion = None

    def submit_confidence(self, rating: int, path: Optional[PartPath] = None) -> dict[str, Any]:
        """
        Complete the active (or given) part with a confidence rating.

        Persists the part first; in-memory outline, path, state and history
        only change once the store accepted the write.
        """
        if self.session.state == SessionState.ONBOARDING:
            raise ValidationError("Session is still onboarding.")
        target = path if path is not None else self.active_path
        if target is None:
            raise ValidationError("No part selected.")
        new_outline, next_path = complete_part(self.outline, target, rating, self.clock())
        updated = get_part(new_outline, target)
        try:
            self.store.update_part_status(self.session.id, updated)
        except PersistenceError:
            LOGGER.warning("progress.complete rolled back (session=%s,path=%s)", self.session.id, target)
            raise
        progress = progress_percent(new_outline)
        try:
            self.store.update_session_progress(self.session.id, progress)
        except PersistenceError:
            # Progress is recomputed from part rows on every load.
            LOGGER.warning("progress.update failed (session=%s)", self.session.id)

        self.session.outline = new_outline
        self.session.progress = progress
        self.suggestion = self.monitor.observe(target, updated.confidence or rating)
        if next_path is None:
            self.session.state = SessionState.COMPLETED
            self.active_path = target
        else:
            self.active_path = next_path
        LOGGER.info(
            "progress.complete(session=%s,path=%s,confidence=%s,next=%s,state=%s)",
            self.session.id,
            tuple(target),
            rating,
            tuple(next_path) if next_path else None,
            self.session.state.value,
        )
        return {
            "path": target,
            "nextPath": next_path,
            "state": self.session.state,
            "suggestion": self.suggestion,
            "progress": progress,
            "part": updated,
        }

    def apply_review(self, path: PartPath, srs_stage: int, review_due_at: Optional[datetime]) -> None:
        """Mirror a persisted review outcome into the loaded outline."""
        part = get_part(self.outline, path)
        self.session.outline = replace_part(
            self.outline, path, dataclasses.replace(part, srs_stage=srs_stage, review_due_at=review_due_at)
        )

    def rename(self, title: str) -> None:
        clean = (title or "").strip()
        if not clean:
            raise ValidationError("Session title is required.")
        old_title = self.session.title
        old_outline = self.session.outline
        if clean == old_title:
            return
        self.session.title = clean
        if old_outline is not None:
            self.session.outline = dataclasses.replace(old_outline, course_title=clean)
        try:
            self.store.update_session_title(self.session.id, clean)
        except PersistenceError:
            self.session.title = old_title
            self.session.outline = old_outline
            raise

    def change_subject(self, subject: str) -> None:
        clean = (subject or "").strip() or None
        old_subject = self.session.subject
        old_outline = self.session.outline
        self.session.subject = clean
        if old_outline is not None:
            self.session.outline = dataclasses.replace(old_outline, subject=clean)
        try:
            self.store.update_session_subject(self.session.id, clean or "")
        except PersistenceError:
            self.session.subject = old_subject
            self.session.outline = old_outline
            raise
