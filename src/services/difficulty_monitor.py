"""Adaptive difficulty: suggest another learning aid after repeated low confidence."""

from __future__ import annotations

import random
from typing import Optional

from services.models import EducationalMode, PartPath

LOW_CONFIDENCE_THRESHOLD = 3   # ratings below this count as "struggling"
SUGGESTION_STREAK = 2          # consecutive low ratings before a suggestion
SUGGESTION_MODES = (EducationalMode.SIMPLIFY, EducationalMode.EXAMPLE, EducationalMode.DIAGRAM)

ConfidenceHistory = dict[PartPath, int]


def record_rating(history: ConfidenceHistory, path: PartPath, rating: int) -> ConfidenceHistory:
    """Return a new history with the low-confidence streak for *path* updated."""
    updated = dict(history)
    if rating < LOW_CONFIDENCE_THRESHOLD:
        updated[path] = updated.get(path, 0) + 1
    else:
        updated[path] = 0
    return updated


def suggestion_for(
    history: ConfidenceHistory,
    path: PartPath,
    rng: Optional[random.Random] = None,
) -> Optional[EducationalMode]:
    """Pick an alternate mode once the streak reaches SUGGESTION_STREAK, else None."""
    if history.get(path, 0) < SUGGESTION_STREAK:
        return None
    return (rng or random).choice(SUGGESTION_MODES)


class DifficultyMonitor:
    """Session-scoped confidence history with an injectable random source."""

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self.history: ConfidenceHistory = {}
        self._rng = rng or random.Random()

    def observe(self, path: PartPath, rating: int) -> Optional[EducationalMode]:
        self.history = record_rating(self.history, path, rating)
        return suggestion_for(self.history, path, self._rng)

    def streak(self, path: PartPath) -> int:
        return self.history.get(path, 0)
