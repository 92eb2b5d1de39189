"""Study session persistence backed by SQLite.

Three logical records: the session (title, subject, personalization and the
clean outline skeleton), one progress row per part (unique on session and
index triple) and one generated output per (session, path, mode) with upsert
semantics. Every sqlite failure surfaces as PersistenceError.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

import config
from migrations.migrate import DB_PATH
from services.errors import NotFoundError, PersistenceError, ValidationError
from services.models import CourseOutline, EducationalMode, PartPath, ReviewItem, StudyPart, Topic
from services.outline_store import iter_parts, to_skeleton

MAX_TITLE_LEN = 200


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def _from_iso(raw: Any) -> Optional[datetime]:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _connect() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def _db() -> Iterator[sqlite3.Connection]:
    """Connection that commits on success and maps sqlite errors to PersistenceError."""
    try:
        conn = _connect()
    except sqlite3.Error as e:
        raise PersistenceError(f"Could not open the study database: {e}") from e
    try:
        with conn:
            yield conn
    except sqlite3.Error as e:
        raise PersistenceError(f"Study database error: {e}") from e
    finally:
        conn.close()


def _json_loads(raw: Any, default: Any) -> Any:
    if raw is None:
        return default
    text = str(raw).strip()
    if not text:
        return default
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return default


def _row_to_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    return {k: row[k] for k in row.keys()}


def _clean_title(title: str) -> str:
    clean = (title or "").strip()
    if not clean:
        raise ValidationError("Session title is required.")
    if len(clean) > MAX_TITLE_LEN:
        raise ValidationError(f"Session title must be <= {MAX_TITLE_LEN} characters.")
    return clean


def _session_from_row(row: sqlite3.Row | None) -> dict[str, Any] | None:
    item = _row_to_dict(row)
    if item is None:
        return None
    item["personalization"] = _json_loads(item.pop("personalization_json", None), {})
    item["outline"] = _json_loads(item.pop("outline_json", None), None)
    item["is_archived"] = bool(item.get("is_archived"))
    return item


def _part_from_row(row: sqlite3.Row) -> dict[str, Any]:
    item = _row_to_dict(row) or {}
    item["completed"] = bool(item.get("completed"))
    item["review_due_at"] = _from_iso(item.get("review_due_at"))
    return item


# ---------- Sessions ----------

_SESSION_COLUMNS = (
    "id, user_id, title, subject, personalization_json, outline_json, progress, is_archived, created_at, updated_at"
)


def create_session(
    user_id: str,
    title: str = config.ONBOARDING_SESSION_TITLE,
    personalization: Optional[dict[str, Any]] = None,
    subject: Optional[str] = None,
) -> dict[str, Any]:
    clean_user = (user_id or "").strip() or config.DEFAULT_USER_ID
    clean_title = _clean_title(title)
    session_id = str(uuid4())
    now = _now_iso()
    with _db() as conn:
        conn.execute(
            """
            INSERT INTO study_sessions(id, user_id, title, subject, personalization_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session_id,
                clean_user,
                clean_title,
                (subject or "").strip() or None,
                json.dumps(personalization or {}, ensure_ascii=False),
                now,
                now,
            ),
        )
    created = get_session(session_id)
    if created is None:
        raise PersistenceError("Failed to create session.")
    return created


def find_or_create_onboarding_session(user_id: str) -> dict[str, Any]:
    """Reuse the user's unfinished onboarding session, or start one."""
    clean_user = (user_id or "").strip() or config.DEFAULT_USER_ID
    with _db() as conn:
        row = conn.execute(
            f"""
            SELECT {_SESSION_COLUMNS}
            FROM study_sessions
            WHERE user_id=? AND title=? AND outline_json IS NULL
            ORDER BY created_at ASC
            LIMIT 1
            """,
            (clean_user, config.ONBOARDING_SESSION_TITLE),
        ).fetchone()
    existing = _session_from_row(row)
    if existing is not None:
        return existing
    return create_session(clean_user)


def get_session(session_id: str) -> dict[str, Any] | None:
    if not session_id:
        return None
    with _db() as conn:
        row = conn.execute(
            f"SELECT {_SESSION_COLUMNS} FROM study_sessions WHERE id=?",
            (session_id,),
        ).fetchone()
    return _session_from_row(row)


def list_sessions(user_id: str) -> list[dict[str, Any]]:
    """Visible sessions of a user, newest first; archived and onboarding ones are hidden."""
    clean_user = (user_id or "").strip() or config.DEFAULT_USER_ID
    with _db() as conn:
        rows = conn.execute(
            """
            SELECT id, title, subject, progress, created_at
            FROM study_sessions
            WHERE user_id=? AND is_archived=0 AND outline_json IS NOT NULL
            ORDER BY created_at DESC, id DESC
            """,
            (clean_user,),
        ).fetchall()
    return [_row_to_dict(r) or {} for r in rows]


def _update_session(session_id: str, column: str, value: Any) -> None:
    with _db() as conn:
        cur = conn.execute(
            f"UPDATE study_sessions SET {column}=?, updated_at=? WHERE id=?",
            (value, _now_iso(), session_id),
        )
        if cur.rowcount == 0:
            raise NotFoundError(f"Session {session_id} not found.")


def update_session_title(session_id: str, title: str) -> None:
    _update_session(session_id, "title", _clean_title(title))


def update_session_subject(session_id: str, subject: str) -> None:
    _update_session(session_id, "subject", (subject or "").strip() or None)


def update_session_personalization(session_id: str, personalization: dict[str, Any]) -> None:
    _update_session(session_id, "personalization_json", json.dumps(personalization or {}, ensure_ascii=False))


def update_session_progress(session_id: str, progress: float) -> None:
    _update_session(session_id, "progress", int(round(progress)))


def archive_session(session_id: str, is_archived: bool = True) -> None:
    _update_session(session_id, "is_archived", 1 if is_archived else 0)


def delete_session(session_id: str) -> None:
    with _db() as conn:
        cur = conn.execute("DELETE FROM study_sessions WHERE id=?", (session_id,))
        if cur.rowcount == 0:
            raise NotFoundError(f"Session {session_id} not found.")


# ---------- Outline & parts ----------

def _insert_part_rows(conn: sqlite3.Connection, session_id: str, parts: list[StudyPart], now: str) -> int:
    for part in parts:
        conn.execute(
            """
            INSERT INTO session_parts(
                session_id, topic_idx, subtopic_idx, part_idx, title, summary,
                completed, confidence, srs_stage, review_due_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session_id,
                part.topic_idx,
                part.subtopic_idx,
                part.part_idx,
                part.title,
                part.summary,
                int(part.completed),
                part.confidence,
                part.srs_stage,
                _to_iso(part.review_due_at),
                now,
            ),
        )
    return len(parts)


def save_course_outline(session_id: str, outline: CourseOutline) -> int:
    """Store a new outline: skeleton on the session, one progress row per part."""
    now = _now_iso()
    with _db() as conn:
        cur = conn.execute(
            "UPDATE study_sessions SET title=?, subject=?, outline_json=?, updated_at=? WHERE id=?",
            (
                _clean_title(outline.course_title),
                outline.subject,
                json.dumps(to_skeleton(outline), ensure_ascii=False),
                now,
                session_id,
            ),
        )
        if cur.rowcount == 0:
            raise NotFoundError(f"Session {session_id} not found.")
        return _insert_part_rows(conn, session_id, list(iter_parts(outline)), now)


def merge_course_outline(session_id: str, skeleton: dict[str, Any], new_topics: list[Topic]) -> int:
    """Replace the stored skeleton and add rows for *new_topics* in one transaction."""
    now = _now_iso()
    parts = [p for topic in new_topics for sub in topic.subtopics for p in sub.parts]
    with _db() as conn:
        cur = conn.execute(
            "UPDATE study_sessions SET outline_json=?, updated_at=? WHERE id=?",
            (json.dumps(skeleton, ensure_ascii=False), now, session_id),
        )
        if cur.rowcount == 0:
            raise NotFoundError(f"Session {session_id} not found.")
        return _insert_part_rows(conn, session_id, parts, now)


def update_part_status(session_id: str, part: StudyPart) -> None:
    with _db() as conn:
        cur = conn.execute(
            """
            UPDATE session_parts
            SET completed=?, confidence=?, srs_stage=?, review_due_at=?, updated_at=?
            WHERE session_id=? AND topic_idx=? AND subtopic_idx=? AND part_idx=?
            """,
            (
                int(part.completed),
                part.confidence,
                part.srs_stage,
                _to_iso(part.review_due_at),
                _now_iso(),
                session_id,
                part.topic_idx,
                part.subtopic_idx,
                part.part_idx,
            ),
        )
        if cur.rowcount == 0:
            raise NotFoundError(f"Part {part.path} of session {session_id} not found.")


def list_part_rows(session_id: str) -> list[dict[str, Any]]:
    with _db() as conn:
        rows = conn.execute(
            """
            SELECT id, session_id, topic_idx, subtopic_idx, part_idx, title, summary,
                   completed, confidence, srs_stage, review_due_at
            FROM session_parts
            WHERE session_id=?
            ORDER BY topic_idx ASC, subtopic_idx ASC, part_idx ASC
            """,
            (session_id,),
        ).fetchall()
    return [_part_from_row(r) for r in rows]


def get_part_row(part_id: int) -> dict[str, Any] | None:
    with _db() as conn:
        row = conn.execute(
            """
            SELECT id, session_id, topic_idx, subtopic_idx, part_idx, title, summary,
                   completed, confidence, srs_stage, review_due_at
            FROM session_parts
            WHERE id=?
            """,
            (int(part_id),),
        ).fetchone()
    return _part_from_row(row) if row is not None else None


def update_part_after_review(part_id: int, srs_stage: int, review_due_at: Optional[datetime]) -> None:
    with _db() as conn:
        cur = conn.execute(
            "UPDATE session_parts SET srs_stage=?, review_due_at=?, updated_at=? WHERE id=?",
            (int(srs_stage), _to_iso(review_due_at), _now_iso(), int(part_id)),
        )
        if cur.rowcount == 0:
            raise NotFoundError(f"Part {part_id} not found.")


def list_scheduled_parts(user_id: str) -> list[ReviewItem]:
    """Every part of the user's visible sessions that is in the review track."""
    clean_user = (user_id or "").strip() or config.DEFAULT_USER_ID
    with _db() as conn:
        rows = conn.execute(
            """
            SELECT p.id, p.session_id, p.topic_idx, p.subtopic_idx, p.part_idx, p.title, p.summary,
                   p.srs_stage, p.review_due_at, s.title AS session_title
            FROM session_parts p
            JOIN study_sessions s ON s.id=p.session_id
            WHERE s.user_id=? AND s.is_archived=0 AND p.completed=1 AND p.srs_stage>=1
                  AND p.review_due_at IS NOT NULL
            ORDER BY p.review_due_at ASC, p.id ASC
            """,
            (clean_user,),
        ).fetchall()
    return [
        ReviewItem(
            part_id=int(row["id"]),
            session_id=row["session_id"],
            session_title=row["session_title"] or "Unknown Session",
            path=PartPath(int(row["topic_idx"]), int(row["subtopic_idx"]), int(row["part_idx"])),
            title=row["title"],
            summary=row["summary"],
            srs_stage=int(row["srs_stage"]),
            review_due_at=_from_iso(row["review_due_at"]),
        )
        for row in rows
    ]


def get_weak_topics(session_id: str, limit: int = 3) -> list[dict[str, Any]]:
    """Completed parts rated below 3, lowest confidence first."""
    with _db() as conn:
        rows = conn.execute(
            """
            SELECT title, confidence
            FROM session_parts
            WHERE session_id=? AND completed=1 AND confidence < 3
            ORDER BY confidence ASC, topic_idx ASC, subtopic_idx ASC, part_idx ASC
            LIMIT ?
            """,
            (session_id, max(1, int(limit))),
        ).fetchall()
    return [_row_to_dict(r) or {} for r in rows]


# ---------- Generated outputs ----------

def upsert_output(session_id: str, path: PartPath, mode: EducationalMode, content: Any) -> None:
    now = _now_iso()
    with _db() as conn:
        conn.execute(
            """
            INSERT INTO session_outputs(
                session_id, topic_idx, subtopic_idx, part_idx, mode, content_json, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id, topic_idx, subtopic_idx, part_idx, mode)
            DO UPDATE SET content_json=excluded.content_json, updated_at=excluded.updated_at
            """,
            (
                session_id,
                path.topic,
                path.subtopic,
                path.part,
                EducationalMode.parse(mode).value,
                json.dumps(content, ensure_ascii=False),
                now,
                now,
            ),
        )


def list_outputs(session_id: str) -> list[dict[str, Any]]:
    """Stored outputs as {"path", "mode", "content"}; rows with unknown modes are skipped."""
    with _db() as conn:
        rows = conn.execute(
            """
            SELECT topic_idx, subtopic_idx, part_idx, mode, content_json
            FROM session_outputs
            WHERE session_id=?
            ORDER BY id ASC
            """,
            (session_id,),
        ).fetchall()
    out: list[dict[str, Any]] = []
    for row in rows:
        try:
            mode = EducationalMode.parse(row["mode"])
        except ValueError:
            continue
        out.append(
            {
                "path": PartPath(int(row["topic_idx"]), int(row["subtopic_idx"]), int(row["part_idx"])),
                "mode": mode,
                "content": _json_loads(row["content_json"], None),
            }
        )
    return out
