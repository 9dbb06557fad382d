"""Tests for the tracker module."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from tidyup.core.tracker import Tracker
from tidyup.models import CleanResult
from tidyup.storage import save_history

pytestmark = pytest.mark.usefixtures("isolate_storage")


def _result(*deletions, dry_run=False, used_sudo=False):
    """Build a CleanResult from ``(category, size)`` pairs."""
    result = CleanResult(dry_run=dry_run, used_sudo=used_sudo)
    for i, (category, size) in enumerate(deletions):
        result.record_deleted(f"/tmp/f{i}", size, category)
    return result


class TestTracker:
    def test_session_tracking(self):
        tracker = Tracker()
        tracker.record(_result(("cache", 1024), ("cache", 1024)))
        tracker.record(_result(("logs", 2048)))

        assert tracker.session_bytes_freed == 1024 + 1024 + 2048
        assert tracker.session_files_removed == 3

    def test_dry_run_not_recorded(self, isolate_storage):
        tracker = Tracker()
        tracker.record(_result(("cache", 500), dry_run=True))
        tracker.save_session()

        assert tracker.session_bytes_freed == 0
        assert not isolate_storage.exists()

    def test_save_session(self, isolate_storage):
        tracker = Tracker()
        tracker.record(_result(("temp", 5000), ("temp", 0), used_sudo=True))
        tracker.save_session()

        history = json.loads(isolate_storage.read_text())
        assert len(history["sessions"]) == 1
        session = history["sessions"][0]
        assert session["used_sudo"] is True
        assert session["details"] == [{"category": "temp", "bytes_freed": 5000, "files_removed": 2}]

    def test_multiple_sessions(self, isolate_storage):
        t1 = Tracker()
        t1.record(_result(("cache", 100)))
        t1.save_session()

        t2 = Tracker()
        t2.record(_result(("logs", 200)))
        t2.save_session()

        history = json.loads(isolate_storage.read_text())
        assert len(history["sessions"]) == 2
        assert t2.get_stats("all")["lifetime_bytes_freed"] == 300

    def test_session_results_cleared_after_save(self, isolate_storage):
        tracker = Tracker()
        tracker.record(_result(("package_managers", 24_000)))
        tracker.save_session()

        # The D-Bus service keeps one tracker for its whole lifetime.
        tracker.record(_result(("cache", 1_000)))
        tracker.save_session()

        history = json.loads(isolate_storage.read_text())
        assert history["sessions"][0]["details"][0]["bytes_freed"] == 24_000
        assert history["sessions"][1]["details"][0]["bytes_freed"] == 1_000
        assert tracker.get_stats("all")["lifetime_bytes_freed"] == 25_000

    def test_empty_session_not_saved(self, isolate_storage):
        Tracker().save_session()
        assert not isolate_storage.exists()

    def test_last_clean_time(self):
        tracker = Tracker()
        assert tracker.get_last_clean_time() is None
        tracker.record(_result(("cache", 1)))
        tracker.save_session()
        stamp = tracker.get_last_clean_time()
        assert datetime.fromisoformat(stamp).tzinfo is not None


class TestTrackerStats:
    def test_per_category_aggregation(self):
        t1 = Tracker()
        t1.record(_result(("cache", 100), ("temp", 200)))
        t1.save_session()

        t2 = Tracker()
        t2.record(_result(("cache", 150), ("cache", 10)))
        t2.save_session()

        stats = t2.get_stats("all")
        assert stats["per_category"]["cache"] == {"bytes_freed": 260, "files_removed": 3}
        assert stats["per_category"]["temp"] == {"bytes_freed": 200, "files_removed": 1}
        assert stats["files_removed"] == 4
        assert stats["session_count"] == 2

    def test_period_filtering(self):
        old = (datetime.now(timezone.utc) - timedelta(days=10)).isoformat()
        ancient = (datetime.now(timezone.utc) - timedelta(days=100)).isoformat()
        save_history({
            "sessions": [
                {"timestamp": ancient, "used_sudo": False, "details": [{"category": "logs", "bytes_freed": 1, "files_removed": 1}]},
                {"timestamp": old, "used_sudo": False, "details": [{"category": "logs", "bytes_freed": 10, "files_removed": 1}]},
            ]
        })
        tracker = Tracker()
        tracker.record(_result(("cache", 100)))
        tracker.save_session()

        assert tracker.get_stats("today")["bytes_freed"] == 100
        assert tracker.get_stats("week")["bytes_freed"] == 100
        assert tracker.get_stats("month")["bytes_freed"] == 110
        assert tracker.get_stats("all")["bytes_freed"] == 111
        assert tracker.get_stats("today")["lifetime_bytes_freed"] == 111
