"""Lightweight operation metrics logger backed by SQLite."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from migrations.migrate import DB_PATH as _DEFAULT_DB_PATH

LOGGER = logging.getLogger(__name__)

# Resolved at module load time; tests can monkeypatch this symbol.
DB_PATH: Path = _DEFAULT_DB_PATH


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _connect() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


def log_metric(operation: str, elapsed_s: float, session_id: str = "", **meta: Any) -> None:
    """Persist a single operation metric row.

    Never raises; a failed metric write must not interrupt a study flow.

    Args:
        operation: e.g. "outline", "merge", "aid.simplify", "aid.quiz", "briefing"
        elapsed_s: Wall-clock seconds the operation took.
        session_id: Optional study session identifier for filtering.
        **meta:  Arbitrary key-value pairs stored as JSON (e.g. topics_added=3).
    """
    try:
        meta_json = json.dumps(meta, ensure_ascii=False, default=str)
        with _connect() as conn:
            conn.execute(
                """
                INSERT INTO operation_metrics (operation, session_id, elapsed_s, meta_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (operation, session_id or "", round(elapsed_s, 3), meta_json, _now_iso()),
            )
    except Exception:  # noqa: BLE001
        LOGGER.debug("metric.dropped(operation=%s)", operation, exc_info=True)


def get_recent_metrics(limit: int = 50, session_id: str | None = None) -> list[dict[str, Any]]:
    """Return the most recent *limit* metric rows, newest first.

    Returns an empty list on any error (e.g. table not yet created).
    """
    try:
        where = "WHERE session_id = ?" if session_id else ""
        params: tuple[Any, ...] = (session_id, max(1, limit)) if session_id else (max(1, limit),)
        with _connect() as conn:
            rows = conn.execute(
                f"""
                SELECT id, operation, session_id, elapsed_s, meta_json, created_at
                FROM operation_metrics
                {where}
                ORDER BY id DESC
                LIMIT ?
                """,
                params,
            ).fetchall()
        out: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            try:
                item["meta"] = json.loads(item.pop("meta_json") or "{}")
            except json.JSONDecodeError:
                item["meta"] = {}
            out.append(item)
        return out
    except Exception:  # noqa: BLE001
        return []


def get_metrics_summary() -> dict[str, Any]:
    """Return per-operation averages and total counts.

    Returns empty dict on any error.
    """
    try:
        with _connect() as conn:
            rows = conn.execute(
                """
                SELECT
                    operation,
                    COUNT(*)          AS total,
                    AVG(elapsed_s)    AS avg_s,
                    MIN(elapsed_s)    AS min_s,
                    MAX(elapsed_s)    AS max_s,
                    MAX(created_at)   AS last_at
                FROM operation_metrics
                GROUP BY operation
                ORDER BY total DESC
                """
            ).fetchall()
        return {
            row["operation"]: {
                "total": row["total"],
                "avg_s": round(row["avg_s"], 2),
                "min_s": round(row["min_s"], 2),
                "max_s": round(row["max_s"], 2),
                "last_at": row["last_at"],
            }
            for row in rows
        }
    except Exception:  # noqa: BLE001
        return {}
