"""Outline Store: hierarchical course outline with per-part progress fields.

Outlines are plain dataclasses (see services.models). This module converts the
analyzer's raw topic tree into a progress-bearing outline, extends it with new
topics, addresses parts by path, and produces the clean skeleton that is
persisted as the durable source of truth.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterator
from typing import Any

from services.errors import OutOfRangeError, ValidationError
from services.models import CourseOutline, PartPath, StudyPart, Subtopic, Topic


def _clean_text(value: Any) -> str:
    return str(value or "").strip()


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _build_topics(raw_topics: list[Any], index_offset: int) -> list[Topic]:
    topics: list[Topic] = []
    for local_idx, raw_topic in enumerate(raw_topics):
        if not isinstance(raw_topic, dict):
            raise ValidationError(f"Topic #{local_idx} is not an object.")
        topic_idx = local_idx + index_offset
        subtopics: list[Subtopic] = []
        for subtopic_idx, raw_sub in enumerate(_as_list(raw_topic.get("subtopics"))):
            if not isinstance(raw_sub, dict):
                raise ValidationError(f"Subtopic #{subtopic_idx} of topic #{local_idx} is not an object.")
            parts: list[StudyPart] = []
            for part_idx, raw_part in enumerate(_as_list(raw_sub.get("parts"))):
                if not isinstance(raw_part, dict):
                    raise ValidationError(
                        f"Part #{part_idx} of subtopic #{subtopic_idx} of topic #{local_idx} is not an object."
                    )
                parts.append(
                    StudyPart(
                        title=_clean_text(raw_part.get("title")),
                        summary=_clean_text(raw_part.get("summary")),
                        topic_idx=topic_idx,
                        subtopic_idx=subtopic_idx,
                        part_idx=part_idx,
                    )
                )
            subtopics.append(
                Subtopic(
                    title=_clean_text(raw_sub.get("title")),
                    summary=_clean_text(raw_sub.get("summary")),
                    parts=parts,
                )
            )
        topics.append(
            Topic(
                title=_clean_text(raw_topic.get("title")),
                summary=_clean_text(raw_topic.get("summary")),
                subtopics=subtopics,
            )
        )
    return topics


def create_outline(raw: Any) -> CourseOutline:
    """
    Convert an analyzer topic tree into a progress-bearing outline.

    Args:
        raw: Dict with "course_title", optional "subject" and a non-empty "topics" list.

    Returns:
        CourseOutline whose parts are all incomplete and unscheduled.

    Raises:
        ValidationError: If raw is not a dict or "topics" is absent or empty.
    """
    if not isinstance(raw, dict):
        raise ValidationError("Outline must be an object.")
    raw_topics = raw.get("topics")
    if not isinstance(raw_topics, list) or not raw_topics:
        raise ValidationError("Outline has no topics.")
    subject = _clean_text(raw.get("subject")) or None
    return CourseOutline(
        course_title=_clean_text(raw.get("course_title")) or "Untitled Course",
        topics=_build_topics(raw_topics, 0),
        subject=subject,
    )


def build_topics(raw_topics: Any, index_offset: int) -> list[Topic]:
    """Build progress-bearing topics numbered from *index_offset*."""
    if not isinstance(raw_topics, list):
        raise ValidationError("Topics must be a list.")
    return _build_topics(raw_topics, index_offset)


def append_topics(outline: CourseOutline, new_topics: list[Topic], index_offset: int) -> CourseOutline:
    """
    Extend outline.topics in place with topics built for *index_offset*.

    Existing topics are never renumbered, so the offset must equal the current
    topic count and every new part must carry topic_idx = position + offset.
    """
    if index_offset != len(outline.topics):
        raise ValidationError(
            f"index_offset {index_offset} does not match current topic count {len(outline.topics)}."
        )
    for local_idx, topic in enumerate(new_topics):
        expected = local_idx + index_offset
        for subtopic_idx, subtopic in enumerate(topic.subtopics):
            for part_idx, part in enumerate(subtopic.parts):
                if part.path != PartPath(expected, subtopic_idx, part_idx):
                    raise ValidationError(
                        f"Part {part.path} of new topic #{local_idx} should be at "
                        f"{PartPath(expected, subtopic_idx, part_idx)}."
                    )
    outline.topics.extend(new_topics)
    return outline


def get_part(outline: CourseOutline, path: PartPath) -> StudyPart:
    """Return the part at *path*; raises OutOfRangeError instead of clamping."""
    topic_idx, subtopic_idx, part_idx = path
    if not 0 <= topic_idx < len(outline.topics):
        raise OutOfRangeError(f"Topic index {topic_idx} out of range for {path}.")
    subtopics = outline.topics[topic_idx].subtopics
    if not 0 <= subtopic_idx < len(subtopics):
        raise OutOfRangeError(f"Subtopic index {subtopic_idx} out of range for {path}.")
    parts = subtopics[subtopic_idx].parts
    if not 0 <= part_idx < len(parts):
        raise OutOfRangeError(f"Part index {part_idx} out of range for {path}.")
    return parts[part_idx]


def replace_part(outline: CourseOutline, path: PartPath, part: StudyPart) -> CourseOutline:
    """Return a new outline with *part* at *path*; untouched branches are shared."""
    get_part(outline, path)
    if part.path != path:
        raise ValidationError(f"Part addressed {part.path} cannot be stored at {path}.")
    topic = outline.topics[path.topic]
    subtopic = topic.subtopics[path.subtopic]
    new_parts = list(subtopic.parts)
    new_parts[path.part] = part
    new_subtopics = list(topic.subtopics)
    new_subtopics[path.subtopic] = dataclasses.replace(subtopic, parts=new_parts)
    new_topics = list(outline.topics)
    new_topics[path.topic] = dataclasses.replace(topic, subtopics=new_subtopics)
    return dataclasses.replace(outline, topics=new_topics)


def iter_parts(outline: CourseOutline) -> Iterator[StudyPart]:
    for topic in outline.topics:
        for subtopic in topic.subtopics:
            yield from subtopic.parts


def iter_paths(outline: CourseOutline) -> Iterator[PartPath]:
    """Yield every part path in lexicographic order."""
    for topic_idx, topic in enumerate(outline.topics):
        for subtopic_idx, subtopic in enumerate(topic.subtopics):
            for part_idx in range(len(subtopic.parts)):
                yield PartPath(topic_idx, subtopic_idx, part_idx)


def first_path(outline: CourseOutline) -> PartPath | None:
    return next(iter_paths(outline), None)


def count_parts(outline: CourseOutline) -> int:
    return sum(1 for _ in iter_parts(outline))


def count_completed(outline: CourseOutline) -> int:
    return sum(1 for p in iter_parts(outline) if p.completed)


def check_indices(outline: CourseOutline) -> None:
    """Raise ValidationError if any stored index triple differs from its tree position."""
    for path in iter_paths(outline):
        part = get_part(outline, path)
        if part.path != path:
            raise ValidationError(f"Part stored as {part.path} sits at {path}.")


def to_skeleton(outline: CourseOutline) -> dict[str, Any]:
    """Clean outline (titles and summaries only) persisted as the source of truth."""
    skeleton: dict[str, Any] = {
        "course_title": outline.course_title,
        "topics": [
            {
                "title": topic.title,
                "summary": topic.summary,
                "subtopics": [
                    {
                        "title": subtopic.title,
                        "summary": subtopic.summary,
                        "parts": [{"title": p.title, "summary": p.summary} for p in subtopic.parts],
                    }
                    for subtopic in topic.subtopics
                ],
            }
            for topic in outline.topics
        ],
    }
    if outline.subject:
        skeleton["subject"] = outline.subject
    return skeleton


def to_progress_dict(outline: CourseOutline) -> dict[str, Any]:
    """Outline with progress fields, shaped for the API."""
    out = to_skeleton(outline)
    for topic_raw, topic in zip(out["topics"], outline.topics):
        for sub_raw, subtopic in zip(topic_raw["subtopics"], topic.subtopics):
            for part_raw, part in zip(sub_raw["parts"], subtopic.parts):
                part_raw.update(
                    {
                        "completed": part.completed,
                        "confidence": part.confidence,
                        "srs_stage": part.srs_stage,
                        "review_due_at": part.review_due_at.isoformat() if part.review_due_at else None,
                    }
                )
    return out
