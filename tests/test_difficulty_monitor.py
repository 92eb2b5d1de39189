"""Tests for difficulty_monitor: low-confidence streaks and suggestions."""

from __future__ import annotations

import random

from services.difficulty_monitor import (
    SUGGESTION_MODES,
    DifficultyMonitor,
    record_rating,
    suggestion_for,
)
from services.models import EducationalMode, PartPath

PATH = PartPath(0, 0, 0)
OTHER = PartPath(0, 0, 1)


class TestRecordRating:
    def test_low_rating_increments(self):
        history = record_rating({}, PATH, 2)
        history = record_rating(history, PATH, 1)
        assert history[PATH] == 2

    def test_rating_three_resets(self):
        history = record_rating({PATH: 4}, PATH, 3)
        assert history[PATH] == 0

    def test_input_history_not_mutated(self):
        history = {PATH: 1}
        record_rating(history, PATH, 2)
        assert history == {PATH: 1}

    def test_paths_tracked_independently(self):
        history = record_rating({}, PATH, 2)
        history = record_rating(history, OTHER, 5)
        assert history == {PATH: 1, OTHER: 0}

    def test_structured_key_equals_plain_tuple(self):
        history = record_rating({}, PartPath(1, 2, 3), 1)
        assert history[(1, 2, 3)] == 1


class TestSuggestionFor:
    def test_no_suggestion_below_streak(self):
        assert suggestion_for({PATH: 1}, PATH) is None
        assert suggestion_for({}, PATH) is None

    def test_suggestion_from_fixed_set(self):
        for seed in range(20):
            mode = suggestion_for({PATH: 2}, PATH, random.Random(seed))
            assert mode in SUGGESTION_MODES

    def test_seeded_rng_is_deterministic(self):
        a = suggestion_for({PATH: 3}, PATH, random.Random(42))
        b = suggestion_for({PATH: 3}, PATH, random.Random(42))
        assert a == b


class TestDifficultyMonitor:
    def test_two_low_ratings_then_recovery(self):
        monitor = DifficultyMonitor(rng=random.Random(7))

        assert monitor.observe(PATH, 2) is None
        suggestion = monitor.observe(PATH, 2)
        assert suggestion in {EducationalMode.SIMPLIFY, EducationalMode.EXAMPLE, EducationalMode.DIAGRAM}

        assert monitor.observe(PATH, 4) is None
        assert monitor.streak(PATH) == 0

    def test_histories_are_per_instance(self):
        first = DifficultyMonitor()
        second = DifficultyMonitor()
        first.observe(PATH, 1)
        assert first.streak(PATH) == 1
        assert second.streak(PATH) == 0
