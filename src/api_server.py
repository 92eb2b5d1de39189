"""Minimal HTTP API server for study sessions, learning aids and reviews."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import threading
from datetime import datetime, timezone
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

import config
from migrations.migrate import migrate_to_latest
from services import session_store
from services.errors import (
    EmptyFragmentError,
    GenerationError,
    MergeError,
    NotFoundError,
    OutOfRangeError,
    PersistenceError,
    TutorError,
    ValidationError,
)
from services.learning_aid_cache import LearningAidCache
from services.llm_service import LLMProcessor
from services.models import EducationalMode, PartPath, PersonalizationSettings, SessionState, StudyPart
from services.outline_store import get_part, iter_paths, to_progress_dict
from services.progress_tracker import ProgressTracker, record_review
from services.session_assembler import load_session, merge_new_material, start_session
from services.srs_scheduler import select_due, utc_now
from services.study_aid_generator import StudyAidGenerator
from utils.metrics import get_metrics_summary, get_recent_metrics

LOGGER = logging.getLogger("studygen.api")


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _query_value(query: dict[str, list[str]], key: str, default: str = "") -> str:
    return str((query.get(key) or [default])[0])


def _parse_bool(value: Any, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y"}


def _parse_path(raw: Any) -> PartPath:
    try:
        return PartPath.from_value(raw)
    except ValueError as e:
        raise ValidationError(str(e)) from e


def _error_status(exc: TutorError) -> HTTPStatus:
    if isinstance(exc, (ValidationError, OutOfRangeError)):
        return HTTPStatus.BAD_REQUEST
    if isinstance(exc, NotFoundError):
        return HTTPStatus.NOT_FOUND
    if isinstance(exc, MergeError):
        return HTTPStatus.UNPROCESSABLE_ENTITY
    if isinstance(exc, GenerationError):
        return HTTPStatus.BAD_GATEWAY
    return HTTPStatus.INTERNAL_SERVER_ERROR


def _decode_documents(raw_docs: Any) -> list[tuple[str, bytes]]:
    """Request documents as (name, bytes): {"name", "text"} or {"name", "base64"}."""
    if not isinstance(raw_docs, list) or not raw_docs:
        raise ValidationError("documents must be a non-empty list.")
    out: list[tuple[str, bytes]] = []
    for i, doc in enumerate(raw_docs):
        if not isinstance(doc, dict):
            raise ValidationError(f"Document #{i} is not an object.")
        name = str(doc.get("name") or f"document-{i + 1}.txt")
        if doc.get("base64"):
            try:
                out.append((name, base64.b64decode(str(doc["base64"]), validate=True)))
            except (binascii.Error, ValueError) as e:
                raise ValidationError(f"Document {name} is not valid base64.") from e
        else:
            out.append((name, str(doc.get("text") or "").encode("utf-8")))
    return out


def _path_json(path: Optional[PartPath]) -> Optional[dict[str, int]]:
    return path.to_dict() if path is not None else None


def _part_json(part: Optional[StudyPart]) -> Optional[dict[str, Any]]:
    if part is None:
        return None
    return {
        "path": part.path.to_dict(),
        "title": part.title,
        "summary": part.summary,
        "completed": part.completed,
        "confidence": part.confidence,
        "srsStage": part.srs_stage,
        "reviewDueAt": part.review_due_at.isoformat() if part.review_due_at else None,
    }


class SessionRegistry:
    """Loaded sessions (one tracker each) plus the shared learning-aid cache."""

    def __init__(
        self,
        store: Any = session_store,
        cache: Optional[LearningAidCache] = None,
        generator: Optional[StudyAidGenerator] = None,
        llm: Optional[LLMProcessor] = None,
        api_key: Optional[str] = None,
    ) -> None:
        self.store = store
        self.cache = cache or LearningAidCache()
        self.llm = llm or LLMProcessor()
        self.generator = generator or StudyAidGenerator(self.llm)
        self.api_key = config.OPENAI_API_KEY if api_key is None else api_key
        self._lock = threading.Lock()
        self._trackers: dict[str, ProgressTracker] = {}
        self._session_locks: dict[str, threading.Lock] = {}

    # ---------- Loading ----------

    def _adopt(self, tracker: ProgressTracker) -> ProgressTracker:
        with self._lock:
            existing = self._trackers.get(tracker.session.id)
            if existing is not None:
                return existing
            self._trackers[tracker.session.id] = tracker
            self._session_locks[tracker.session.id] = threading.Lock()
            return tracker

    def tracker(self, session_id: str) -> ProgressTracker:
        with self._lock:
            loaded = self._trackers.get(session_id)
        if loaded is not None:
            return loaded
        session, outputs = load_session(session_id, self.store)
        if session.outline is not None:
            self.cache.prime(session.id, [(o["path"], o["mode"], o["content"]) for o in outputs])
        return self._adopt(ProgressTracker(session, store=self.store))

    def session_lock(self, session_id: str) -> threading.Lock:
        self.tracker(session_id)
        with self._lock:
            return self._session_locks[session_id]

    def forget(self, session_id: str) -> None:
        with self._lock:
            self._trackers.pop(session_id, None)
            self._session_locks.pop(session_id, None)
        self.cache.drop_session(session_id)

    # ---------- Views ----------

    def describe(self, tracker: ProgressTracker) -> dict[str, Any]:
        session = tracker.session
        return {
            "id": session.id,
            "userId": session.user_id,
            "title": session.title,
            "subject": session.subject,
            "state": session.state.value,
            "progress": round(tracker.progress(), 2),
            "archived": session.archived,
            "personalization": session.personalization.to_dict(),
            "activePath": _path_json(tracker.active_path),
            "currentPart": _part_json(tracker.current_part()),
            "suggestion": tracker.suggestion.value if tracker.suggestion else None,
            "outline": to_progress_dict(session.outline) if session.outline else None,
            "aids": self.cache.entries_for(session.id, tracker.active_path) if tracker.active_path else {},
        }

    # ---------- Operations ----------

    def start(self, body: dict[str, Any]) -> ProgressTracker:
        user_id = str(body.get("userId") or config.DEFAULT_USER_ID)
        raw_outline = body.get("outline")
        if raw_outline is None:
            raw_outline = self.llm.generate_course_outline(_decode_documents(body.get("documents")), self.api_key)
        session = start_session(user_id, raw_outline, body.get("personalization"), self.store)
        return self._adopt(ProgressTracker(session, store=self.store))

    def update_settings(self, session_id: str, body: dict[str, Any]) -> ProgressTracker:
        tracker = self.tracker(session_id)
        with self.session_lock(session_id):
            if "title" in body:
                tracker.rename(str(body.get("title") or ""))
            if "subject" in body:
                tracker.change_subject(str(body.get("subject") or ""))
            if isinstance(body.get("personalization"), dict):
                merged = {**tracker.session.personalization.to_dict(), **body["personalization"]}
                settings = PersonalizationSettings.from_dict(merged)
                self.store.update_session_personalization(session_id, settings.to_dict())
                tracker.session.personalization = settings
        return tracker

    def archive(self, session_id: str, archived: bool) -> ProgressTracker:
        tracker = self.tracker(session_id)
        self.store.archive_session(session_id, archived)
        tracker.session.archived = archived
        return tracker

    def delete(self, session_id: str) -> None:
        self.store.delete_session(session_id)
        self.forget(session_id)

    def merge(self, session_id: str, body: dict[str, Any]) -> tuple[ProgressTracker, int]:
        tracker = self.tracker(session_id)
        if "outline" in body:
            fragment = body["outline"]
        elif "topics" in body:
            fragment = {"topics": body["topics"]}
        else:
            fragment = self.llm.generate_course_outline(_decode_documents(body.get("documents")), self.api_key)
        with self.session_lock(session_id):
            was_completed = tracker.state == SessionState.COMPLETED
            offset = len(tracker.session.outline.topics) if tracker.session.outline else 0
            tracker.session = merge_new_material(tracker.session, fragment, self.store)
            added = len(tracker.session.outline.topics) - offset
            if was_completed and tracker.state == SessionState.STUDYING:
                # New topics may open with empty subtopics; jump to the first real part.
                tracker.active_path = next(p for p in iter_paths(tracker.outline) if p.topic >= offset)
                tracker.dismiss_suggestion()
        return tracker, added

    def learning_aid(self, session_id: str, body: dict[str, Any]) -> Any:
        tracker = self.tracker(session_id)
        try:
            mode = EducationalMode.parse(body.get("mode"))
        except ValueError as e:
            raise ValidationError(str(e)) from e
        path = _parse_path(body["path"]) if body.get("path") is not None else tracker.active_path
        if path is None:
            raise ValidationError("No part selected.")
        part = get_part(tracker.outline, path)
        subtopic = tracker.outline.topics[path.topic].subtopics[path.subtopic]
        selected_text = str(body.get("selectedText") or f"{part.title}\n{part.summary}")
        context = str(body.get("context") or f"{subtopic.title}: {subtopic.summary}\n{part.title}: {part.summary}")
        session = tracker.session

        def generate() -> Any:
            return self.generator.generate(
                mode,
                selected_text,
                context,
                session.personalization,
                session.subject,
                api_key=self.api_key,
                session_id=session.id,
            )

        if mode is EducationalMode.EXPLAIN:
            return generate()
        return self.cache.fetch_or_generate(
            session.id,
            path,
            mode,
            generate,
            persist=lambda content: self.store.upsert_output(session.id, path, mode, content),
            timeout=config.AID_WAIT_TIMEOUT_S,
        )

    def review_queue(self, user_id: str, now: Optional[datetime] = None) -> list[Any]:
        return select_due(self.store.list_scheduled_parts(user_id), now or utc_now())

    def review(self, part_id: int, success: bool) -> dict[str, Any]:
        row = record_review(part_id, success, store=self.store)
        with self._lock:
            tracker = self._trackers.get(row["session_id"])
            session_lock = self._session_locks.get(row["session_id"])
        if tracker is None or session_lock is None:
            return row
        path = PartPath(int(row["topic_idx"]), int(row["subtopic_idx"]), int(row["part_idx"]))
        with session_lock:
            if tracker.session.outline is not None:
                tracker.apply_review(path, row["srs_stage"], row["review_due_at"])
        return row

    def briefing(self, session_id: str, user_name: str) -> dict[str, Any]:
        self.tracker(session_id)
        weak = self.store.get_weak_topics(session_id, limit=3)
        message = self.llm.generate_daily_briefing(user_name, weak, self.api_key)
        return {"message": message, "weakTopics": [w["title"] for w in weak]}


class ApiHandler(BaseHTTPRequestHandler):
    server_version = f"StudyGenAPI/{config.APP_VERSION}"
    registry: SessionRegistry

    def _send_json(self, code: int, payload: Any) -> None:
        body = json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Methods", "GET,POST,DELETE,OPTIONS")
        self.send_header("Access-Control-Allow-Headers", "Content-Type")
        self.end_headers()
        self.wfile.write(body)

    def _read_json(self) -> dict[str, Any]:
        raw_len = self.headers.get("Content-Length")
        try:
            length = int(raw_len or "0")
        except ValueError:
            length = 0
        if length <= 0:
            return {}
        raw = self.rfile.read(length)
        try:
            parsed = json.loads(raw.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def _dispatch(self, method: str) -> None:
        parsed = urlparse(self.path)
        query = parse_qs(parsed.query)
        body = self._read_json() if method == "POST" else {}
        try:
            code, payload = self._route(method, parsed.path, query, body)
        except TutorError as e:
            code = _error_status(e)
            LOGGER.warning("request.failed(method=%s,path=%s,status=%s): %s", method, parsed.path, int(code), e)
            payload = {"error": str(e), "type": type(e).__name__}
        except Exception as e:  # noqa: BLE001
            LOGGER.exception("request.crashed(method=%s,path=%s)", method, parsed.path)
            code, payload = HTTPStatus.INTERNAL_SERVER_ERROR, {"error": f"internal error: {e!s}"}
        self._send_json(code, payload)

    def _route(
        self, method: str, path: str, query: dict[str, list[str]], body: dict[str, Any]
    ) -> tuple[int, Any]:
        registry = self.registry

        if method == "GET" and path == "/health":
            return HTTPStatus.OK, {"ok": True, "time": _now_iso(), "version": config.APP_VERSION}

        if method == "GET" and path == "/api/metrics":
            try:
                limit = int(_query_value(query, "limit", "50"))
            except ValueError as e:
                raise ValidationError("limit must be an integer.") from e
            session_id = _query_value(query, "sessionId") or None
            return HTTPStatus.OK, {
                "summary": get_metrics_summary(),
                "recent": get_recent_metrics(limit=limit, session_id=session_id),
            }

        if path == "/api/sessions":
            if method == "GET":
                rows = registry.store.list_sessions(_query_value(query, "userId", config.DEFAULT_USER_ID))
                return HTTPStatus.OK, {"items": rows, "count": len(rows)}
            if method == "POST":
                tracker = registry.start(body)
                LOGGER.info("sessions.create(session=%s)", tracker.session.id)
                return HTTPStatus.CREATED, registry.describe(tracker)

        if method == "GET" and path == "/api/review":
            items = registry.review_queue(_query_value(query, "userId", config.DEFAULT_USER_ID))
            return HTTPStatus.OK, {"items": [i.to_dict() for i in items], "count": len(items)}

        review_match = re.fullmatch(r"/api/review/(\d+)", path)
        if method == "POST" and review_match:
            row = registry.review(int(review_match.group(1)), _parse_bool(body.get("success"), default=False))
            return HTTPStatus.OK, {
                "partId": row["id"],
                "sessionId": row["session_id"],
                "srsStage": row["srs_stage"],
                "reviewDueAt": row["review_due_at"].isoformat() if row["review_due_at"] else None,
            }

        session_match = re.fullmatch(r"/api/sessions/([^/]+)", path)
        if session_match:
            session_id = session_match.group(1)
            if method == "GET":
                return HTTPStatus.OK, registry.describe(registry.tracker(session_id))
            if method == "DELETE":
                registry.delete(session_id)
                LOGGER.info("sessions.delete(session=%s)", session_id)
                return HTTPStatus.OK, {"ok": True, "id": session_id, "status": "deleted"}

        action_match = re.fullmatch(r"/api/sessions/([^/]+)/([a-z]+)", path)
        if action_match:
            session_id, action = action_match.groups()
            if method == "GET" and action == "briefing":
                user_name = _query_value(query, "userName", "there")
                return HTTPStatus.OK, registry.briefing(session_id, user_name)
            if method == "POST":
                return self._session_action(session_id, action, body)

        return HTTPStatus.NOT_FOUND, {"error": "not_found"}

    def _session_action(self, session_id: str, action: str, body: dict[str, Any]) -> tuple[int, Any]:
        registry = self.registry

        if action == "archive":
            tracker = registry.archive(session_id, _parse_bool(body.get("archived"), default=True))
            return HTTPStatus.OK, {"ok": True, "id": session_id, "archived": tracker.session.archived}

        if action == "settings":
            return HTTPStatus.OK, registry.describe(registry.update_settings(session_id, body))

        if action == "select":
            tracker = registry.tracker(session_id)
            with registry.session_lock(session_id):
                part = tracker.select_path(_parse_path(body.get("path")))
            return HTTPStatus.OK, {
                "part": _part_json(part),
                "aids": registry.cache.entries_for(session_id, part.path),
            }

        if action == "complete":
            tracker = registry.tracker(session_id)
            path = _parse_path(body["path"]) if body.get("path") is not None else None
            with registry.session_lock(session_id):
                result = tracker.submit_confidence(body.get("confidence"), path)
            return HTTPStatus.OK, {
                "path": _path_json(result["path"]),
                "nextPath": _path_json(result["nextPath"]),
                "state": result["state"].value,
                "suggestion": result["suggestion"].value if result["suggestion"] else None,
                "progress": round(result["progress"], 2),
                "part": _part_json(result["part"]),
            }

        if action == "materials":
            try:
                tracker, added = registry.merge(session_id, body)
            except EmptyFragmentError as e:
                LOGGER.info("sessions.merge skipped (session=%s): %s", session_id, e)
                return HTTPStatus.OK, {"merged": False, "topicsAdded": 0, "session": registry.describe(registry.tracker(session_id))}
            return HTTPStatus.OK, {"merged": True, "topicsAdded": added, "session": registry.describe(tracker)}

        if action == "aids":
            content = registry.learning_aid(session_id, body)
            return HTTPStatus.OK, {"mode": EducationalMode.parse(body.get("mode")).value, "content": content}

        return HTTPStatus.NOT_FOUND, {"error": "not_found"}

    def do_OPTIONS(self) -> None:  # noqa: N802
        self._send_json(HTTPStatus.NO_CONTENT, {})

    def do_GET(self) -> None:  # noqa: N802
        self._dispatch("GET")

    def do_POST(self) -> None:  # noqa: N802
        self._dispatch("POST")

    def do_DELETE(self) -> None:  # noqa: N802
        self._dispatch("DELETE")


def run_api_server(host: str = config.API_HOST, port: int = config.API_PORT) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    migrate_to_latest()
    ApiHandler.registry = SessionRegistry()
    server = ThreadingHTTPServer((host, port), ApiHandler)
    LOGGER.info("API server listening on http://%s:%s", host, port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()


if __name__ == "__main__":
    run_api_server()
