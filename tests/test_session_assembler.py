"""Tests for session_assembler: start, reload and merge new material."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

import services.session_store as store
from services.errors import EmptyFragmentError, MergeError, NotFoundError, PersistenceError, ValidationError
from services.models import EducationalMode, PartPath, SessionState
from services.outline_store import get_part, iter_paths
from services.progress_tracker import ProgressTracker
from services.session_assembler import load_session, merge_new_material, reconcile_outline, start_session

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

NEW_TOPIC = {
    "title": "3. Trade",
    "summary": "International trade",
    "subtopics": [
        {
            "title": "3.1 Tariffs",
            "summary": "",
            "parts": [{"title": "Tariff basics", "summary": ""}, {"title": "Quotas", "summary": ""}],
        }
    ],
}


class FailingMergeStore:
    def merge_course_outline(self, session_id, skeleton, new_topics):
        raise PersistenceError("disk full")


# ──────────────────────────────────────────────────────────────
# reconcile_outline
# ──────────────────────────────────────────────────────────────

class TestReconcileOutline:
    def test_rows_joined_by_index_triple(self, sample_outline):
        rows = [
            {"topic_idx": 0, "subtopic_idx": 1, "part_idx": 0, "completed": True, "confidence": 2,
             "srs_stage": 3, "review_due_at": NOW},
            {"topic_idx": 1, "subtopic_idx": 0, "part_idx": 0, "completed": False, "confidence": None,
             "srs_stage": 0, "review_due_at": None},
        ]
        outline = reconcile_outline(sample_outline, rows)
        done = get_part(outline, PartPath(0, 1, 0))
        assert (done.completed, done.confidence, done.srs_stage, done.review_due_at) == (True, 2, 3, NOW)
        assert get_part(outline, PartPath(1, 0, 0)).completed is False

    def test_missing_rows_default_to_untouched(self, sample_outline):
        outline = reconcile_outline(sample_outline, [])
        for path in iter_paths(outline):
            part = get_part(outline, path)
            assert (part.completed, part.confidence, part.srs_stage, part.review_due_at) == (False, None, 0, None)

    def test_title_and_subject_override(self, sample_outline):
        outline = reconcile_outline(sample_outline, [], title="Renamed", subject="Macro")
        assert outline.course_title == "Renamed"
        assert outline.subject == "Macro"

    def test_empty_skeleton_raises(self):
        with pytest.raises(ValidationError):
            reconcile_outline({"course_title": "x", "topics": []}, [])


# ──────────────────────────────────────────────────────────────
# start_session / load_session
# ──────────────────────────────────────────────────────────────

class TestStartAndLoad:
    def test_start_session_persists_outline(self, tmp_db, sample_outline):
        session = start_session("u1", sample_outline, {"level": "Intermediate", "tone": "Academic"})
        assert session.state == SessionState.STUDYING
        assert session.title == "Intro to Economics"
        assert session.personalization.level == "Intermediate"
        assert len(store.list_part_rows(session.id)) == 4
        assert store.get_session(session.id)["personalization"]["tone"] == "Academic"

    def test_start_session_rejects_outline_without_topics(self, tmp_db):
        with pytest.raises(ValidationError):
            start_session("u1", {"course_title": "Empty", "topics": []})

    def test_load_restores_progress_and_outputs(self, tmp_db, sample_outline):
        session = start_session("u1", sample_outline)
        tracker = ProgressTracker(session)
        tracker.submit_confidence(2)
        store.upsert_output(session.id, PartPath(0, 0, 0), EducationalMode.SIMPLIFY, "simpler")

        loaded, outputs = load_session(session.id)

        first = get_part(loaded.outline, PartPath(0, 0, 0))
        assert first.completed and first.confidence == 2 and first.srs_stage == 1
        assert first.review_due_at is not None
        assert loaded.state == SessionState.STUDYING
        assert loaded.progress == 25.0
        assert outputs == [{"path": PartPath(0, 0, 0), "mode": EducationalMode.SIMPLIFY, "content": "simpler"}]

    def test_load_completed_session(self, tmp_db, sample_outline):
        session = start_session("u1", sample_outline)
        tracker = ProgressTracker(session)
        for _ in range(4):
            tracker.submit_confidence(5)
        assert tracker.state == SessionState.COMPLETED

        loaded, _ = load_session(session.id)
        assert loaded.state == SessionState.COMPLETED
        assert loaded.progress == 100.0

    def test_outline_without_parts_reloads_as_studying(self, tmp_db):
        session = start_session("u1", {"course_title": "Placeholder", "topics": [{"title": "TBD", "subtopics": []}]})
        assert session.state == SessionState.STUDYING

        loaded, _ = load_session(session.id)
        assert loaded.state == SessionState.STUDYING
        assert loaded.progress == 0.0

    def test_load_onboarding_session(self, tmp_db):
        record = store.find_or_create_onboarding_session("u1")
        loaded, outputs = load_session(record["id"])
        assert loaded.state == SessionState.ONBOARDING
        assert loaded.outline is None
        assert outputs == []

    def test_load_missing_session_raises(self, tmp_db):
        with pytest.raises(NotFoundError):
            load_session("missing")


# ──────────────────────────────────────────────────────────────
# merge_new_material
# ──────────────────────────────────────────────────────────────

class TestMergeNewMaterial:
    def test_new_topic_indexed_after_existing(self, tmp_db, sample_outline):
        session = start_session("u1", sample_outline)
        tracker = ProgressTracker(session)
        tracker.submit_confidence(3)

        merged = merge_new_material(tracker.session, {"topics": [NEW_TOPIC]})

        assert len(merged.outline.topics) == 3
        assert [p.topic_idx for p in merged.outline.topics[2].subtopics[0].parts] == [2, 2]
        assert get_part(merged.outline, PartPath(0, 0, 0)).completed is True
        assert get_part(merged.outline, PartPath(1, 0, 0)).topic_idx == 1
        assert merged.progress == pytest.approx(100 / 6)
        # The input session is left alone.
        assert len(tracker.session.outline.topics) == 2

        reloaded, _ = load_session(session.id)
        assert len(reloaded.outline.topics) == 3
        assert get_part(reloaded.outline, PartPath(2, 0, 1)).title == "Quotas"
        assert get_part(reloaded.outline, PartPath(0, 0, 0)).completed is True

    def test_plain_topic_list_accepted(self, tmp_db, sample_outline):
        session = start_session("u1", sample_outline)
        merged = merge_new_material(session, [NEW_TOPIC])
        assert len(merged.outline.topics) == 3

    def test_completed_session_reopens(self, tmp_db, sample_outline):
        session = start_session("u1", sample_outline)
        tracker = ProgressTracker(session)
        for _ in range(4):
            tracker.submit_confidence(4)
        merged = merge_new_material(tracker.session, {"topics": [NEW_TOPIC]})
        assert merged.state == SessionState.STUDYING

    def test_empty_fragment_is_noop_error(self, tmp_db, sample_outline):
        session = start_session("u1", sample_outline)
        with pytest.raises(EmptyFragmentError):
            merge_new_material(session, {"topics": []})
        assert len(load_session(session.id)[0].outline.topics) == 2

    def test_empty_fragment_is_merge_error(self):
        assert issubclass(EmptyFragmentError, MergeError)

    @pytest.mark.parametrize("fragment", [{"course_title": "no topics"}, {"topics": "x"}, {"topics": ["bad"]}, 42])
    def test_malformed_fragment_raises(self, tmp_db, sample_outline, fragment):
        session = start_session("u1", sample_outline)
        with pytest.raises(MergeError):
            merge_new_material(session, fragment)
        assert len(session.outline.topics) == 2

    def test_persistence_failure_leaves_session_unchanged(self, tmp_db, sample_outline):
        session = start_session("u1", sample_outline)
        with pytest.raises(PersistenceError):
            merge_new_material(session, {"topics": [NEW_TOPIC]}, store=FailingMergeStore())
        assert len(session.outline.topics) == 2

    def test_session_without_outline_cannot_merge(self, tmp_db):
        record = store.find_or_create_onboarding_session("u1")
        loaded, _ = load_session(record["id"])
        with pytest.raises(MergeError):
            merge_new_material(loaded, {"topics": [NEW_TOPIC]})

    def test_due_dates_survive_reload(self, tmp_db, sample_outline):
        session = start_session("u1", sample_outline)
        tracker = ProgressTracker(session, clock=lambda: NOW)
        tracker.submit_confidence(4)
        loaded, _ = load_session(session.id)
        assert get_part(loaded.outline, PartPath(0, 0, 0)).review_due_at == NOW + timedelta(days=1)
