"""Shared pytest fixtures for the StudyGen test suite."""

from __future__ import annotations

import sqlite3
import sys
from pathlib import Path

import pytest

# Ensure src/ is on the path so all service imports resolve.
SRC_DIR = Path(__file__).resolve().parents[1] / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

MIGRATIONS_SQL_DIR = SRC_DIR / "migrations" / "sql"

SAMPLE_OUTLINE = {
    "course_title": "Intro to Economics",
    "subject": "Economics",
    "topics": [
        {
            "title": "1. Markets",
            "summary": "How markets work",
            "subtopics": [
                {
                    "title": "1.1 Demand",
                    "summary": "Demand basics",
                    "parts": [
                        {"title": "Demand curve", "summary": "Price vs quantity demanded"},
                        {"title": "Shifts in demand", "summary": "Income, tastes, substitutes"},
                    ],
                },
                {
                    "title": "1.2 Supply",
                    "summary": "Supply basics",
                    "parts": [{"title": "Supply curve", "summary": "Price vs quantity supplied"}],
                },
            ],
        },
        {
            "title": "2. Taxes",
            "summary": "Taxation",
            "subtopics": [
                {
                    "title": "2.1 VAT",
                    "summary": "Value added tax",
                    "parts": [{"title": "VAT base", "summary": "Payments for taxable transactions"}],
                }
            ],
        },
    ],
}


def _apply_migrations(db_path: str) -> None:
    """Run all SQL migration files in order against *db_path*."""
    conn = sqlite3.connect(db_path)
    try:
        sql_files = sorted(MIGRATIONS_SQL_DIR.glob("[0-9][0-9][0-9]_*.sql"))
        for sql_file in sql_files:
            sql = sql_file.read_text(encoding="utf-8")
            conn.executescript(sql)
        # Set schema_version to latest
        conn.execute(
            "INSERT INTO meta(key, value) VALUES('schema_version', ?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (str(len(sql_files)),),
        )
        conn.commit()
    finally:
        conn.close()


@pytest.fixture
def sample_outline() -> dict:
    import copy

    return copy.deepcopy(SAMPLE_OUTLINE)


@pytest.fixture
def tmp_db(tmp_path, monkeypatch):
    """Temporary SQLite DB with all migrations applied.

    Monkeypatches DB_PATH in all service modules so tests use an isolated DB.
    """
    db_file = str(tmp_path / "test_app.db")
    _apply_migrations(db_file)

    import migrations.migrate as migrate_mod
    import services.session_store as store_mod
    import utils.metrics as metrics_mod

    monkeypatch.setattr(migrate_mod, "DB_PATH", Path(db_file))
    monkeypatch.setattr(store_mod, "DB_PATH", Path(db_file))
    monkeypatch.setattr(metrics_mod, "DB_PATH", Path(db_file))

    # Patch _connect in each module to pick up the new DB_PATH value
    def _patched_connect_store():
        conn = sqlite3.connect(db_file)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _patched_connect_metrics():
        conn = sqlite3.connect(db_file)
        conn.row_factory = sqlite3.Row
        return conn

    monkeypatch.setattr(store_mod, "_connect", _patched_connect_store)
    monkeypatch.setattr(metrics_mod, "_connect", _patched_connect_metrics)

    return db_file
