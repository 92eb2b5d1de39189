"""Tests for progress_tracker: advancement, confidence, state and rollback."""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

import pytest

from services.difficulty_monitor import DifficultyMonitor
from services.errors import NotFoundError, OutOfRangeError, PersistenceError, ValidationError
from services.models import EducationalMode, PartPath, SessionState, StudySession
from services.outline_store import count_parts, create_outline, get_part, iter_paths
from services.progress_tracker import (
    ProgressTracker,
    complete_part,
    find_next_part,
    progress_percent,
    record_review,
    validate_confidence,
)

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

TWO_PARTS = {
    "course_title": "Tiny",
    "topics": [
        {
            "title": "T",
            "summary": "",
            "subtopics": [
                {"title": "S", "summary": "", "parts": [{"title": "P0", "summary": ""}, {"title": "P1", "summary": ""}]}
            ],
        }
    ],
}


class FakeStore:
    """In-memory stand-in for services.session_store."""

    def __init__(self, fail_parts: bool = False, fail_progress: bool = False, fail_title: bool = False) -> None:
        self.fail_parts = fail_parts
        self.fail_progress = fail_progress
        self.fail_title = fail_title
        self.part_writes: list = []
        self.progress_writes: list = []
        self.titles: list = []
        self.subjects: list = []
        self.rows: dict = {}
        self.review_writes: list = []

    def update_part_status(self, session_id, part):
        if self.fail_parts:
            raise PersistenceError("disk full")
        self.part_writes.append((session_id, part))

    def update_session_progress(self, session_id, progress):
        if self.fail_progress:
            raise PersistenceError("locked")
        self.progress_writes.append((session_id, progress))

    def update_session_title(self, session_id, title):
        if self.fail_title:
            raise PersistenceError("locked")
        self.titles.append(title)

    def update_session_subject(self, session_id, subject):
        self.subjects.append(subject)

    def get_part_row(self, part_id):
        return self.rows.get(part_id)

    def update_part_after_review(self, part_id, srs_stage, review_due_at):
        self.review_writes.append((part_id, srs_stage, review_due_at))


def _session(raw=None, session_id: str = "s1") -> StudySession:
    outline = create_outline(raw or TWO_PARTS)
    return StudySession(id=session_id, user_id="u", title=outline.course_title, outline=outline)


def _tracker(raw=None, store=None, seed: int = 0) -> ProgressTracker:
    return ProgressTracker(
        _session(raw),
        store=store or FakeStore(),
        monitor=DifficultyMonitor(random.Random(seed)),
        clock=lambda: NOW,
    )


# ──────────────────────────────────────────────────────────────
# Pure helpers
# ──────────────────────────────────────────────────────────────

class TestFindNextPart:
    def test_visits_every_path_once_in_order(self, sample_outline):
        outline = create_outline(sample_outline)
        visited = [PartPath(0, 0, 0)]
        while (nxt := find_next_part(visited[-1], outline)) is not None:
            visited.append(nxt)
        assert visited == list(iter_paths(outline))

    def test_skips_empty_subtopics(self):
        raw = {
            "topics": [
                {"title": "A", "subtopics": [{"title": "A1", "parts": [{"title": "p"}]}, {"title": "A2", "parts": []}]},
                {"title": "B", "subtopics": [{"title": "B1", "parts": []}, {"title": "B2", "parts": [{"title": "q"}]}]},
            ]
        }
        outline = create_outline(raw)
        assert find_next_part(PartPath(0, 0, 0), outline) == PartPath(1, 1, 0)
        assert find_next_part(PartPath(1, 1, 0), outline) is None

    def test_invalid_path_raises(self, sample_outline):
        with pytest.raises(OutOfRangeError):
            find_next_part(PartPath(0, 5, 0), create_outline(sample_outline))


class TestValidateConfidence:
    @pytest.mark.parametrize("value", [1, 3, 5])
    def test_accepts_one_to_five(self, value):
        assert validate_confidence(value) == value

    @pytest.mark.parametrize("value", [0, 6, -1, True, "3", 2.5, None])
    def test_rejects_everything_else(self, value):
        with pytest.raises(ValidationError):
            validate_confidence(value)


class TestCompletePart:
    def test_first_completion_schedules_review(self):
        outline = create_outline(TWO_PARTS)
        new_outline, nxt = complete_part(outline, PartPath(0, 0, 0), 4, NOW)
        part = get_part(new_outline, PartPath(0, 0, 0))
        assert (part.completed, part.confidence, part.srs_stage) == (True, 4, 1)
        assert part.review_due_at == NOW + timedelta(days=1)
        assert nxt == PartPath(0, 0, 1)
        assert get_part(outline, PartPath(0, 0, 0)).completed is False

    def test_rerating_keeps_schedule(self):
        outline, _ = complete_part(create_outline(TWO_PARTS), PartPath(0, 0, 0), 4, NOW)
        rerated, _ = complete_part(outline, PartPath(0, 0, 0), 1, NOW + timedelta(days=10))
        before = get_part(outline, PartPath(0, 0, 0))
        after = get_part(rerated, PartPath(0, 0, 0))
        assert after.confidence == 1
        assert (after.srs_stage, after.review_due_at) == (before.srs_stage, before.review_due_at)

    def test_progress_monotone_and_reaches_hundred(self, sample_outline):
        outline = create_outline(sample_outline)
        seen = [progress_percent(outline)]
        for path in list(iter_paths(outline)):
            outline, _ = complete_part(outline, path, 3, NOW)
            seen.append(progress_percent(outline))
        assert seen == sorted(seen)
        assert seen[0] == 0.0
        assert seen[-1] == 100.0
        assert all(p < 100.0 for p in seen[:-1])
        assert count_parts(outline) == 4

    def test_progress_of_missing_outline(self):
        assert progress_percent(None) == 0.0


# ──────────────────────────────────────────────────────────────
# ProgressTracker
# ──────────────────────────────────────────────────────────────

class TestProgressTracker:
    def test_two_part_course_to_completion(self):
        store = FakeStore()
        tracker = _tracker(store=store)
        assert tracker.state == SessionState.STUDYING
        assert tracker.active_path == PartPath(0, 0, 0)

        first = tracker.submit_confidence(4)
        assert first["nextPath"] == PartPath(0, 0, 1)
        assert tracker.state == SessionState.STUDYING
        assert tracker.active_path == PartPath(0, 0, 1)

        second = tracker.submit_confidence(2)
        assert second["nextPath"] is None
        assert tracker.state == SessionState.COMPLETED
        part = get_part(tracker.outline, PartPath(0, 0, 1))
        assert part.srs_stage == 1
        assert part.review_due_at == NOW + timedelta(days=1)
        assert tracker.progress() == 100.0
        assert [p for _, p in store.progress_writes] == [50.0, 100.0]
        assert len(store.part_writes) == 2

    def test_two_low_ratings_suggest_alternate_mode(self):
        tracker = _tracker()
        path = PartPath(0, 0, 0)
        assert tracker.submit_confidence(2, path)["suggestion"] is None
        suggestion = tracker.submit_confidence(2, path)["suggestion"]
        assert suggestion in {EducationalMode.SIMPLIFY, EducationalMode.EXAMPLE, EducationalMode.DIAGRAM}
        assert tracker.suggestion == suggestion

        assert tracker.submit_confidence(4, path)["suggestion"] is None
        assert tracker.monitor.streak(path) == 0

    def test_select_path_clears_suggestion(self):
        tracker = _tracker()
        tracker.submit_confidence(1, PartPath(0, 0, 0))
        tracker.submit_confidence(1, PartPath(0, 0, 0))
        assert tracker.suggestion is not None
        assert tracker.active_path == PartPath(0, 0, 1)
        tracker.select_path(PartPath(0, 0, 1))
        assert tracker.suggestion is not None
        tracker.select_path(PartPath(0, 0, 0))
        assert tracker.suggestion is None
        assert tracker.current_part().title == "P0"

    def test_select_invalid_path_raises(self):
        tracker = _tracker()
        with pytest.raises(OutOfRangeError):
            tracker.select_path(PartPath(3, 0, 0))
        assert tracker.active_path == PartPath(0, 0, 0)

    def test_failed_persist_leaves_state_untouched(self):
        store = FakeStore(fail_parts=True)
        tracker = _tracker(store=store)
        outline_before = tracker.outline

        with pytest.raises(PersistenceError):
            tracker.submit_confidence(1)

        assert tracker.outline is outline_before
        assert get_part(tracker.outline, PartPath(0, 0, 0)).completed is False
        assert tracker.active_path == PartPath(0, 0, 0)
        assert tracker.monitor.streak(PartPath(0, 0, 0)) == 0
        assert tracker.progress() == 0.0

    def test_failed_progress_write_still_commits(self):
        tracker = _tracker(store=FakeStore(fail_progress=True))
        result = tracker.submit_confidence(5)
        assert result["progress"] == 50.0
        assert get_part(tracker.outline, PartPath(0, 0, 0)).completed is True

    def test_invalid_rating_rejected_before_store(self):
        store = FakeStore()
        tracker = _tracker(store=store)
        with pytest.raises(ValidationError):
            tracker.submit_confidence(7)
        assert store.part_writes == []

    def test_onboarding_session_cannot_complete(self):
        session = StudySession(id="s0", user_id="u", title="New")
        tracker = ProgressTracker(session, store=FakeStore())
        assert tracker.state == SessionState.ONBOARDING
        assert tracker.current_part() is None
        with pytest.raises(ValidationError):
            tracker.submit_confidence(3)

    def test_rename_reverts_on_failure(self):
        tracker = _tracker(store=FakeStore(fail_title=True))
        with pytest.raises(PersistenceError):
            tracker.rename("Renamed")
        assert tracker.session.title == "Tiny"
        assert tracker.outline.course_title == "Tiny"

    def test_rename_and_subject(self):
        store = FakeStore()
        tracker = _tracker(store=store)
        tracker.rename("  Micro  ")
        tracker.change_subject("Economics")
        assert tracker.session.title == "Micro"
        assert tracker.outline.course_title == "Micro"
        assert tracker.outline.subject == "Economics"
        assert store.titles == ["Micro"]
        assert store.subjects == ["Economics"]

    def test_rename_requires_title(self):
        with pytest.raises(ValidationError):
            _tracker().rename("   ")


# ──────────────────────────────────────────────────────────────
# record_review
# ──────────────────────────────────────────────────────────────

class TestRecordReview:
    def _row(self, stage: int) -> dict:
        return {
            "id": 11,
            "session_id": "s1",
            "topic_idx": 0,
            "subtopic_idx": 0,
            "part_idx": 1,
            "title": "P1",
            "summary": "",
            "completed": True,
            "confidence": 2,
            "srs_stage": stage,
            "review_due_at": NOW,
        }

    def test_success_promotes(self):
        store = FakeStore()
        store.rows[11] = self._row(stage=2)
        row = record_review(11, True, store=store, now=NOW)
        assert row["srs_stage"] == 3
        assert row["review_due_at"] == NOW + timedelta(days=7)
        assert store.review_writes == [(11, 3, NOW + timedelta(days=7))]

    def test_failure_demotes(self):
        store = FakeStore()
        store.rows[11] = self._row(stage=6)
        assert record_review(11, False, store=store, now=NOW)["srs_stage"] == 3

    def test_missing_part_raises(self):
        with pytest.raises(NotFoundError):
            record_review(99, True, store=FakeStore(), now=NOW)
