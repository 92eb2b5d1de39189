"""Learning-Aid Cache: generated content keyed by (session, path, mode).

Entries are append-only within a session's lifetime: once a key holds content
it is never regenerated. Concurrent requests for a key that is still being
generated wait on the single in-flight call instead of starting another one.
A cancelled generation never writes to the cache.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import CancelledError, Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Optional

from services.errors import GenerationCancelledError, GenerationError, ValidationError
from services.models import CACHEABLE_MODES, EducationalMode, PartPath

LOGGER = logging.getLogger(__name__)

CacheKey = tuple[str, PartPath, EducationalMode]


@dataclass
class _InFlight:
    future: Future = field(default_factory=Future)
    cancelled: bool = False


def _key(session_id: str, path: PartPath, mode: Any) -> CacheKey:
    if not session_id:
        raise ValidationError("session_id is required")
    try:
        normalized_mode = EducationalMode.parse(mode)
    except ValueError as e:
        raise ValidationError(str(e)) from e
    if normalized_mode not in CACHEABLE_MODES:
        raise ValidationError(f"Mode {normalized_mode.value} is not cached.")
    return (str(session_id), PartPath(*path), normalized_mode)


class LearningAidCache:
    """Thread-safe at-most-one-fetch-per-key cache of generated learning aids."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[CacheKey, Any] = {}
        self._in_flight: dict[CacheKey, _InFlight] = {}

    def get(self, session_id: str, path: PartPath, mode: Any) -> Optional[Any]:
        key = _key(session_id, path, mode)
        with self._lock:
            return self._entries.get(key)

    def contains(self, session_id: str, path: PartPath, mode: Any) -> bool:
        key = _key(session_id, path, mode)
        with self._lock:
            return key in self._entries

    def fetch_or_generate(
        self,
        session_id: str,
        path: PartPath,
        mode: Any,
        generator: Callable[[], Any],
        persist: Optional[Callable[[Any], None]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Return cached content for the key, generating it at most once.

        Args:
            generator: Zero-argument callable producing the content.
            persist: Optional callable run with the generated content before it
                is committed; if it raises, the entry stays unset.
            timeout: Seconds a coalesced caller waits for the in-flight call.

        Raises:
            GenerationCancelledError: If the in-flight generation was cancelled.
            GenerationError: If a coalesced caller timed out.
            Exception: Whatever generator or persist raised, for every waiter.
        """
        key = _key(session_id, path, mode)
        with self._lock:
            if key in self._entries:
                return self._entries[key]
            pending = self._in_flight.get(key)
            leader = pending is None
            if leader:
                pending = _InFlight()
                self._in_flight[key] = pending

        if not leader:
            LOGGER.info("aid.coalesced(session=%s,path=%s,mode=%s)", key[0], tuple(key[1]), key[2].value)
            return self._wait(pending, timeout)

        try:
            content = generator()
            # cancel() takes the same lock, so a cancelled result is never persisted.
            with self._lock:
                if pending.cancelled:
                    raise GenerationCancelledError(
                        f"Generation for {key[2].value} at {tuple(key[1])} was cancelled."
                    )
                if persist is not None:
                    persist(content)
                del self._in_flight[key]
                self._entries.setdefault(key, content)
                content = self._entries[key]
        except BaseException as e:
            with self._lock:
                if self._in_flight.get(key) is pending:
                    del self._in_flight[key]
            pending.future.set_exception(e)
            raise

        pending.future.set_result(content)
        return content

    def _wait(self, pending: _InFlight, timeout: Optional[float]) -> Any:
        try:
            return pending.future.result(timeout=timeout)
        except FutureTimeoutError as e:
            raise GenerationError("Timed out waiting for content generation.") from e
        except CancelledError as e:
            raise GenerationCancelledError("Content generation was cancelled.") from e

    def cancel(self, session_id: str, path: Optional[PartPath] = None, mode: Any = None) -> int:
        """
        Cancel in-flight generations for a session (optionally one path / mode).

        Returns the number of generations cancelled. Their results are discarded.
        """
        normalized_mode = EducationalMode.parse(mode) if mode is not None else None
        cancelled = 0
        with self._lock:
            for key in list(self._in_flight):
                sid, key_path, key_mode = key
                if sid != str(session_id):
                    continue
                if path is not None and key_path != PartPath(*path):
                    continue
                if normalized_mode is not None and key_mode != normalized_mode:
                    continue
                self._in_flight.pop(key).cancelled = True
                cancelled += 1
        if cancelled:
            LOGGER.info("aid.cancel(session=%s,count=%s)", session_id, cancelled)
        return cancelled

    def prime(self, session_id: str, entries: Iterable[tuple[PartPath, Any, Any]]) -> int:
        """Load persisted (path, mode, content) entries; existing keys are kept."""
        loaded = 0
        with self._lock:
            for path, mode, content in entries:
                key = _key(session_id, path, mode)
                if key not in self._entries:
                    self._entries[key] = content
                    loaded += 1
        return loaded

    def drop_session(self, session_id: str) -> None:
        """Forget every entry of a deleted session and cancel its generations."""
        self.cancel(session_id)
        with self._lock:
            for key in [k for k in self._entries if k[0] == str(session_id)]:
                del self._entries[key]

    def entries_for(self, session_id: str, path: Optional[PartPath] = None) -> dict[str, Any]:
        """Cached content of a session (optionally one path) keyed by mode name."""
        with self._lock:
            return {
                key[2].value: content
                for key, content in self._entries.items()
                if key[0] == str(session_id) and (path is None or key[1] == PartPath(*path))
            }
