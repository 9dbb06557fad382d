"""Tests for progress publishing."""

from __future__ import annotations

import queue
import time

from tidyup.core.progress import (
    QUEUE_SIZE,
    CleanProgress,
    Phase,
    ProgressReporter,
    ScanProgress,
    format_clean_progress,
    format_scan_progress,
)


def _drain(q):
    items = []
    while True:
        try:
            items.append(q.get_nowait())
        except queue.Empty:
            return items


class TestProgressReporter:
    def test_delivers_updates(self):
        reporter = ProgressReporter()
        q = reporter.subscribe()
        reporter.update_scan(ScanProgress(Phase.SCANNING, category="cache", files_found=3))
        assert q.get_nowait().files_found == 3
        assert reporter.scan_progress.category == "cache"

    def test_slow_subscriber_drops_intermediate_updates(self):
        reporter = ProgressReporter()
        q = reporter.subscribe()
        for i in range(QUEUE_SIZE * 3):
            reporter.update_clean(CleanProgress(Phase.CLEANING, deleted_files=i))
        assert len(_drain(q)) == QUEUE_SIZE

    def test_terminal_update_always_delivered(self):
        reporter = ProgressReporter()
        q = reporter.subscribe()
        for i in range(QUEUE_SIZE * 2):
            reporter.update_clean(CleanProgress(Phase.CLEANING, deleted_files=i))
        reporter.update_clean(CleanProgress(Phase.COMPLETE, deleted_files=99))

        items = _drain(q)
        assert items[-1].phase is Phase.COMPLETE
        assert items[-1].deleted_files == 99

    def test_unsubscribe(self):
        reporter = ProgressReporter()
        q = reporter.subscribe()
        reporter.unsubscribe(q)
        reporter.update_scan(ScanProgress(Phase.SCANNING))
        assert q.empty()


class TestFormatting:
    def test_none(self):
        assert format_scan_progress(None) == "Initializing..."
        assert format_clean_progress(None) == "Preparing..."

    def test_scan_in_progress(self):
        text = format_scan_progress(ScanProgress(Phase.SCANNING, category="logs", files_found=12, total_size=2048))
        assert text.startswith("Scanning logs... Found 12 files (2.0 KB)")

    def test_clean_in_progress_with_sudo(self):
        p = CleanProgress(
            Phase.CLEANING, deleted_files=5, total_files=10, deleted_size=1024,
            using_sudo=True, start_time=time.monotonic() - 10,
        )
        text = format_clean_progress(p)
        assert "5/10 files (50%)" in text
        assert "[SUDO]" in text
        assert "ETA:" in text

    def test_clean_error(self):
        assert format_clean_progress(CleanProgress(Phase.ERROR, error="boom")) == "Cleanup error: boom"
