"""Data classes for the study-session domain model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, NamedTuple, Optional

import config


class PartPath(NamedTuple):
    """Zero-based (topic, subtopic, part) address of one study part.

    Tuple equality and ordering give value comparison and the lexicographic
    order that defines the "next part".
    """

    topic: int
    subtopic: int
    part: int

    def to_dict(self) -> dict[str, int]:
        return {"topic": self.topic, "subtopic": self.subtopic, "part": self.part}

    @classmethod
    def from_value(cls, raw: Any) -> "PartPath":
        """Build a path from a dict, list or tuple; raises ValueError when malformed."""
        if isinstance(raw, dict):
            values = [raw.get("topic"), raw.get("subtopic"), raw.get("part")]
        elif isinstance(raw, (list, tuple)) and len(raw) == 3:
            values = list(raw)
        else:
            raise ValueError(f"Not a part path: {raw!r}")
        try:
            return cls(*(int(v) for v in values))
        except (TypeError, ValueError) as e:
            raise ValueError(f"Not a part path: {raw!r}") from e


class EducationalMode(str, Enum):
    SIMPLIFY = "Simplify"
    EXAMPLE = "Example"
    SUMMARY = "Summary"
    DIAGRAM = "Diagram"
    FLASHCARDS = "Flashcards"
    QUIZ = "Quiz"
    EXPLAIN = "Explain"

    @classmethod
    def parse(cls, raw: Any) -> "EducationalMode":
        if isinstance(raw, cls):
            return raw
        text = str(raw or "").strip().lower()
        for mode in cls:
            if mode.value.lower() == text:
                return mode
        raise ValueError(f"Unknown mode: {raw!r}")


TEXT_MODES = frozenset({EducationalMode.SIMPLIFY, EducationalMode.EXAMPLE, EducationalMode.SUMMARY, EducationalMode.EXPLAIN})
JSON_MODES = frozenset({EducationalMode.DIAGRAM, EducationalMode.QUIZ, EducationalMode.FLASHCARDS})
CACHEABLE_MODES = frozenset(set(EducationalMode) - {EducationalMode.EXPLAIN})


class SessionState(str, Enum):
    ONBOARDING = "onboarding"
    STUDYING = "studying"
    COMPLETED = "completed"


@dataclass(frozen=True)
class StudyPart:
    title: str
    summary: str
    topic_idx: int
    subtopic_idx: int
    part_idx: int
    completed: bool = False
    confidence: Optional[int] = None
    srs_stage: int = 0
    review_due_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if (self.confidence is not None) != bool(self.completed):
            raise ValueError("confidence must be set exactly when the part is completed")
        if self.confidence is not None and not 1 <= self.confidence <= 5:
            raise ValueError(f"confidence must be 1..5, got {self.confidence}")
        if self.srs_stage < 0:
            raise ValueError("srs_stage must be >= 0")
        if self.srs_stage > 0 and not self.completed:
            raise ValueError("only completed parts can enter the review track")

    @property
    def path(self) -> PartPath:
        return PartPath(self.topic_idx, self.subtopic_idx, self.part_idx)


@dataclass
class Subtopic:
    title: str
    summary: str
    parts: list[StudyPart] = field(default_factory=list)


@dataclass
class Topic:
    title: str
    summary: str
    subtopics: list[Subtopic] = field(default_factory=list)


@dataclass
class CourseOutline:
    course_title: str
    topics: list[Topic] = field(default_factory=list)
    subject: Optional[str] = None


@dataclass
class PersonalizationSettings:
    language: str = "English"
    level: str = "Beginner"
    tone: str = "Friendly"
    goal: str = "Deep Understanding"
    teacher_name: Optional[str] = None
    duration: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Any) -> "PersonalizationSettings":
        src = dict(config.DEFAULT_PERSONALIZATION)
        if isinstance(raw, dict):
            src.update({k: v for k, v in raw.items() if v not in (None, "")})
        level = str(src.get("level") or "Beginner")
        if level not in config.VALID_LEVELS:
            level = "Beginner"
        return cls(
            language=str(src.get("language") or "English"),
            level=level,
            tone=str(src.get("tone") or "Friendly"),
            goal=str(src.get("goal") or "Deep Understanding"),
            teacher_name=src.get("teacher_name"),
            duration=src.get("duration"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "language": self.language,
            "level": self.level,
            "tone": self.tone,
            "goal": self.goal,
        }
        if self.teacher_name:
            out["teacher_name"] = self.teacher_name
        if self.duration:
            out["duration"] = self.duration
        return out


@dataclass
class StudySession:
    id: str
    user_id: str
    title: str
    personalization: PersonalizationSettings = field(default_factory=PersonalizationSettings)
    outline: Optional[CourseOutline] = None
    subject: Optional[str] = None
    state: SessionState = SessionState.ONBOARDING
    progress: float = 0.0
    archived: bool = False
    created_at: Optional[str] = None


@dataclass
class ReviewItem:
    session_id: str
    session_title: str
    path: PartPath
    title: str
    summary: str
    srs_stage: int
    review_due_at: Optional[datetime]
    part_id: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "partId": self.part_id,
            "sessionId": self.session_id,
            "sessionTitle": self.session_title,
            "path": self.path.to_dict(),
            "title": self.title,
            "summary": self.summary,
            "srsStage": self.srs_stage,
            "reviewDueAt": self.review_due_at.isoformat() if self.review_due_at else None,
        }
