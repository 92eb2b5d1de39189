"""Tests for utils/metrics: log_metric and get_metrics_summary."""

from __future__ import annotations

import sqlite3

import utils.metrics as metrics_mod


class TestLogMetric:
    def test_log_metric_does_not_raise(self, tmp_db):
        metrics_mod.log_metric("outline", 1.23, session_id="s-1", topics=4)

    def test_logged_metric_appears_in_summary(self, tmp_db):
        metrics_mod.log_metric("outline", 2.0, session_id="s-1")
        summary = metrics_mod.get_metrics_summary()
        assert "outline" in summary
        assert summary["outline"]["total"] == 1
        assert summary["outline"]["avg_s"] == 2.0

    def test_multiple_logs_aggregated(self, tmp_db):
        metrics_mod.log_metric("aid.quiz", 1.0)
        metrics_mod.log_metric("aid.quiz", 3.0)
        summary = metrics_mod.get_metrics_summary()
        assert summary["aid.quiz"]["total"] == 2
        assert summary["aid.quiz"]["avg_s"] == 2.0
        assert summary["aid.quiz"]["min_s"] == 1.0
        assert summary["aid.quiz"]["max_s"] == 3.0

    def test_different_operations_separated(self, tmp_db):
        metrics_mod.log_metric("outline", 1.5)
        metrics_mod.log_metric("merge", 3.0)
        summary = metrics_mod.get_metrics_summary()
        assert "outline" in summary
        assert "merge" in summary

    def test_get_recent_metrics_returns_newest_first(self, tmp_db):
        metrics_mod.log_metric("merge", 0.2, session_id="s-1")
        metrics_mod.log_metric("briefing", 0.5, session_id="s-1")
        recent = metrics_mod.get_recent_metrics(limit=10)
        assert [r["operation"] for r in recent] == ["briefing", "merge"]

    def test_get_recent_metrics_limit_respected(self, tmp_db):
        for i in range(10):
            metrics_mod.log_metric("aid.flashcards", float(i))
        recent = metrics_mod.get_recent_metrics(limit=5)
        assert len(recent) == 5

    def test_get_recent_metrics_filters_by_session(self, tmp_db):
        metrics_mod.log_metric("merge", 1.0, session_id="a")
        metrics_mod.log_metric("merge", 1.0, session_id="b")
        recent = metrics_mod.get_recent_metrics(session_id="a")
        assert len(recent) == 1
        assert recent[0]["session_id"] == "a"

    def test_meta_json_stored_and_retrieved(self, tmp_db):
        metrics_mod.log_metric("merge", 1.0, session_id="X", topics_added=7)
        recent = metrics_mod.get_recent_metrics(limit=1)
        assert recent[0]["meta"].get("topics_added") == 7

    def test_log_metric_silent_on_db_error(self, monkeypatch):
        def _broken():
            raise sqlite3.OperationalError("no db")

        monkeypatch.setattr(metrics_mod, "_connect", _broken)
        metrics_mod.log_metric("aid.quiz", 1.0)
        assert metrics_mod.get_recent_metrics() == []
        assert metrics_mod.get_metrics_summary() == {}

    def test_get_metrics_summary_empty_db_returns_empty(self, tmp_db):
        assert metrics_mod.get_metrics_summary() == {}
