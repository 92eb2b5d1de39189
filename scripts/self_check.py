"""Minimal stability self-check for migrations and study-session persistence."""

from __future__ import annotations

import sqlite3
import sys
import uuid
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from migrations.migrate import DB_PATH, latest_migration_version, migrate_to_latest
from services import session_store
from services.models import EducationalMode, PartPath
from services.progress_tracker import ProgressTracker
from services.session_assembler import load_session, merge_new_material, start_session

SELF_CHECK_OUTLINE = {
    "course_title": "Self Check Course",
    "subject": "Diagnostics",
    "topics": [
        {
            "title": "1. Basics",
            "summary": "Warm-up",
            "subtopics": [
                {
                    "title": "1.1 Start",
                    "summary": "First steps",
                    "parts": [
                        {"title": "Part A", "summary": "a"},
                        {"title": "Part B", "summary": "b"},
                    ],
                }
            ],
        }
    ],
}


def check_migrations_idempotent() -> None:
    first = migrate_to_latest()
    second = migrate_to_latest()
    latest = latest_migration_version()
    assert second == first, f"migrate_to_latest not idempotent: {first} vs {second}"
    assert second == latest, f"schema version not latest: {second} vs {latest}"

    conn = sqlite3.connect(DB_PATH)
    try:
        row = conn.execute("SELECT value FROM meta WHERE key='schema_version'").fetchone()
        assert row is not None, "meta.schema_version row missing"
        assert int(row[0]) == latest, f"DB schema_version != latest ({row[0]} vs {latest})"
    finally:
        conn.close()


def check_session_tables_and_crud() -> None:
    expected_tables = {"study_sessions", "session_parts", "session_outputs", "operation_metrics"}
    conn = sqlite3.connect(DB_PATH)
    try:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        tables = {str(r[0]) for r in rows}
        missing = expected_tables - tables
        assert not missing, f"missing session tables: {sorted(missing)}"
    finally:
        conn.close()

    user_id = f"selfcheck_{uuid.uuid4().hex[:8]}"
    session = start_session(user_id, SELF_CHECK_OUTLINE, {"level": "Advanced"})
    try:
        assert any(s["id"] == session.id for s in session_store.list_sessions(user_id)), "session create/list failed"

        tracker = ProgressTracker(session)
        result = tracker.submit_confidence(2)
        assert result["nextPath"] == PartPath(0, 0, 1), "next part not advanced"

        session_store.upsert_output(session.id, PartPath(0, 0, 0), EducationalMode.SUMMARY, "summary text")
        merged = merge_new_material(
            tracker.session,
            {"topics": [{"title": "2. More", "summary": "", "subtopics": [{"title": "2.1", "summary": "", "parts": [{"title": "C", "summary": "c"}]}]}]},
        )
        assert len(merged.outline.topics) == 2, "merge failed"

        reloaded, outputs = load_session(session.id)
        first = reloaded.outline.topics[0].subtopics[0].parts[0]
        assert first.completed and first.confidence == 2 and first.srs_stage == 1, "progress not reconciled"
        assert len(reloaded.outline.topics) == 2, "merged topics not persisted"
        assert len(outputs) == 1, "output upsert/list failed"
        assert session_store.get_weak_topics(session.id) == [{"title": "Part A", "confidence": 2}], "weak topics failed"
    finally:
        # Always clean up so repeated runs do not pollute the DB.
        session_store.delete_session(session.id)


def main() -> None:
    check_migrations_idempotent()
    check_session_tables_and_crud()
    print("self_check: OK")


if __name__ == "__main__":
    main()
