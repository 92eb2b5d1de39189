"""Session Assembler: start, reload and extend study sessions.

The clean skeleton stored on the session is the source of truth for the
outline's shape; progress lives in one row per part and is joined back on the
(topic, subtopic, part) index triple when a session is loaded.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import Any, Optional

from services import session_store
from services.errors import EmptyFragmentError, MergeError, NotFoundError, PersistenceError, ValidationError
from services.models import (
    CourseOutline,
    PersonalizationSettings,
    SessionState,
    StudyPart,
    StudySession,
)
from services.outline_store import (
    append_topics,
    build_topics,
    count_completed,
    count_parts,
    create_outline,
    iter_parts,
    to_skeleton,
)
from utils.metrics import log_metric

LOGGER = logging.getLogger(__name__)

PartKey = tuple[int, int, int]


def _fragment_topics(fragment: Any) -> list[Any]:
    if isinstance(fragment, dict):
        raw_topics = fragment.get("topics")
    else:
        raw_topics = fragment
    if raw_topics is None:
        raise MergeError("New material has no topics list.")
    if not isinstance(raw_topics, list):
        raise MergeError("New material topics must be a list.")
    return raw_topics


def merge_new_material(session: StudySession, fragment: Any, store: Any = session_store) -> StudySession:
    """
    Append the topics of *fragment* to the session's outline.

    Existing parts keep their indices and progress; new topics are numbered
    from the current topic count. The skeleton and the new part rows are
    persisted together before the returned session sees the change.

    Raises:
        EmptyFragmentError: If the fragment contributes no topics.
        MergeError: If the fragment is malformed or the session has no outline.
        PersistenceError: If the store rejected the write.
    """
    if session.outline is None:
        raise MergeError("Session has no study plan to extend.")
    raw_topics = _fragment_topics(fragment)
    if not raw_topics:
        raise EmptyFragmentError("New material contained no topics.")

    start = time.perf_counter()
    offset = len(session.outline.topics)
    try:
        new_topics = build_topics(raw_topics, offset)
        merged = append_topics(
            dataclasses.replace(session.outline, topics=list(session.outline.topics)),
            new_topics,
            offset,
        )
    except ValidationError as e:
        raise MergeError(f"New material is malformed: {e}") from e

    added = store.merge_course_outline(session.id, to_skeleton(merged), new_topics)
    elapsed = time.perf_counter() - start
    log_metric("merge", elapsed, session_id=session.id, topics_added=len(new_topics), parts_added=added)
    LOGGER.info("session.merge(session=%s,offset=%s,topics=%s,parts=%s)", session.id, offset, len(new_topics), added)

    state = session.state
    if state == SessionState.COMPLETED and added:
        state = SessionState.STUDYING
    return dataclasses.replace(
        session,
        outline=merged,
        state=state,
        progress=_progress(merged),
    )


def _progress(outline: CourseOutline) -> float:
    total = count_parts(outline)
    return 100.0 * count_completed(outline) / total if total else 0.0


def _with_progress(part: StudyPart, row: Optional[dict[str, Any]]) -> StudyPart:
    if row is None or not row.get("completed") or row.get("confidence") is None:
        return part
    stage = int(row.get("srs_stage") or 0)
    return dataclasses.replace(
        part,
        completed=True,
        confidence=int(row["confidence"]),
        srs_stage=stage,
        review_due_at=row.get("review_due_at") if stage > 0 else None,
    )


def reconcile_outline(
    skeleton: Any,
    part_rows: list[dict[str, Any]],
    title: Optional[str] = None,
    subject: Optional[str] = None,
) -> CourseOutline:
    """
    Join persisted progress rows onto a clean skeleton.

    Parts without a row (or with an incomplete one) come back untouched:
    not completed, no confidence, stage 0, no due date.
    """
    outline = create_outline(skeleton)
    rows: dict[PartKey, dict[str, Any]] = {
        (int(r["topic_idx"]), int(r["subtopic_idx"]), int(r["part_idx"])): r for r in part_rows
    }
    for topic in outline.topics:
        for subtopic in topic.subtopics:
            subtopic.parts = [_with_progress(p, rows.get(tuple(p.path))) for p in subtopic.parts]
    if title:
        outline.course_title = title
    if subject:
        outline.subject = subject
    return outline


def _state_for(outline: Optional[CourseOutline]) -> SessionState:
    if outline is None:
        return SessionState.ONBOARDING
    if count_parts(outline) > 0 and all(p.completed for p in iter_parts(outline)):
        return SessionState.COMPLETED
    return SessionState.STUDYING


def _session_from_record(record: dict[str, Any], outline: Optional[CourseOutline]) -> StudySession:
    return StudySession(
        id=record["id"],
        user_id=record["user_id"],
        title=record["title"],
        personalization=PersonalizationSettings.from_dict(record.get("personalization")),
        outline=outline,
        subject=record.get("subject"),
        state=_state_for(outline),
        progress=_progress(outline) if outline is not None else 0.0,
        archived=bool(record.get("is_archived")),
        created_at=record.get("created_at"),
    )


def load_session(session_id: str, store: Any = session_store) -> tuple[StudySession, list[dict[str, Any]]]:
    """Rebuild a session from the store; returns it with its persisted outputs."""
    record = store.get_session(session_id)
    if record is None:
        raise NotFoundError(f"Session {session_id} not found.")
    outline = None
    if record.get("outline"):
        outline = reconcile_outline(
            record["outline"],
            store.list_part_rows(session_id),
            title=record.get("title"),
            subject=record.get("subject"),
        )
    outputs = store.list_outputs(session_id)
    session = _session_from_record(record, outline)
    LOGGER.info(
        "session.load(session=%s,state=%s,outputs=%s)", session.id, session.state.value, len(outputs)
    )
    return session, outputs


def start_session(
    user_id: str,
    raw_outline: Any,
    personalization: Any = None,
    store: Any = session_store,
) -> StudySession:
    """Turn an analyzer outline into a persisted session that is ready to study."""
    outline = create_outline(raw_outline)
    settings = PersonalizationSettings.from_dict(personalization)
    record = store.find_or_create_onboarding_session(user_id)
    store.update_session_personalization(record["id"], settings.to_dict())
    try:
        store.save_course_outline(record["id"], outline)
    except PersistenceError:
        LOGGER.warning("session.start failed (session=%s)", record["id"])
        raise
    LOGGER.info("session.start(session=%s,user=%s,topics=%s)", record["id"], record["user_id"], len(outline.topics))
    return StudySession(
        id=record["id"],
        user_id=record["user_id"],
        title=outline.course_title,
        personalization=settings,
        outline=outline,
        subject=outline.subject,
        state=SessionState.STUDYING,
        progress=0.0,
        created_at=record.get("created_at"),
    )
