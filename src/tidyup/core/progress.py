"""Best-effort progress publishing for scans and cleanups.

Subscribers get a bounded queue.  Intermediate updates are dropped when
a subscriber falls behind, but terminal updates (complete / error) evict
older items so they are always delivered.
"""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum

from tidyup.utils import bytes_to_human, format_elapsed

QUEUE_SIZE = 10


class Phase(str, Enum):
    SCANNING = "scanning"
    CLEANING = "cleaning"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(slots=True)
class ScanProgress:
    phase: Phase
    category: str = ""
    current_path: str = ""
    files_found: int = 0
    total_size: int = 0
    categories_total: int = 0
    categories_done: int = 0
    start_time: float = field(default_factory=time.monotonic)
    error: str = ""


@dataclass(slots=True)
class CleanProgress:
    phase: Phase
    current_file: str = ""
    deleted_files: int = 0
    total_files: int = 0
    deleted_size: int = 0
    total_size: int = 0
    skipped_files: int = 0
    error_count: int = 0
    start_time: float = field(default_factory=time.monotonic)
    using_sudo: bool = False
    sudo_prompted: bool = False
    error: str = ""


Update = ScanProgress | CleanProgress


class ProgressReporter:
    """Fan-out of progress updates to any number of subscribers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[queue.Queue[Update]] = []
        self._scan: ScanProgress | None = None
        self._clean: CleanProgress | None = None

    def subscribe(self) -> queue.Queue[Update]:
        q: queue.Queue[Update] = queue.Queue(maxsize=QUEUE_SIZE)
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: queue.Queue[Update]) -> None:
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    @property
    def scan_progress(self) -> ScanProgress | None:
        return self._scan

    @property
    def clean_progress(self) -> CleanProgress | None:
        return self._clean

    def update_scan(self, update: ScanProgress) -> None:
        with self._lock:
            self._scan = update
        self._publish(update)

    def update_clean(self, update: CleanProgress) -> None:
        with self._lock:
            self._clean = update
        self._publish(update)

    def _publish(self, update: Update) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        terminal = update.phase in (Phase.COMPLETE, Phase.ERROR)
        for q in subscribers:
            if terminal:
                _force_put(q, update)
            else:
                try:
                    q.put_nowait(update)
                except queue.Full:
                    pass


def _force_put(q: queue.Queue[Update], update: Update) -> None:
    while True:
        try:
            q.put_nowait(update)
            return
        except queue.Full:
            try:
                q.get_nowait()
            except queue.Empty:
                pass


def format_scan_progress(p: ScanProgress | None) -> str:
    if p is None:
        return "Initializing..."
    elapsed = format_elapsed(time.monotonic() - p.start_time)
    match p.phase:
        case Phase.SCANNING:
            return f"Scanning {p.category}... Found {p.files_found} files ({bytes_to_human(p.total_size)}) [{elapsed}]"
        case Phase.COMPLETE:
            return f"Scan complete: {p.files_found} files ({bytes_to_human(p.total_size)}) in {elapsed}"
        case Phase.ERROR:
            return f"Scan error: {p.error}"
        case _:
            return "Scanning..."


def format_clean_progress(p: CleanProgress | None) -> str:
    if p is None:
        return "Preparing..."
    elapsed_s = time.monotonic() - p.start_time
    match p.phase:
        case Phase.CLEANING:
            percent = p.deleted_files * 100 // p.total_files if p.total_files else 0
            eta = ""
            if 0 < p.deleted_files < p.total_files:
                remaining = elapsed_s / p.deleted_files * (p.total_files - p.deleted_files)
                eta = f" ETA: {format_elapsed(remaining)}"
            sudo = " [SUDO]" if p.using_sudo else ""
            return (
                f"Cleaning... {p.deleted_files}/{p.total_files} files ({percent}%) - "
                f"{bytes_to_human(p.deleted_size)} freed{sudo}{eta}"
            )
        case Phase.COMPLETE:
            return (
                f"Cleanup complete: {p.deleted_files} files deleted "
                f"({bytes_to_human(p.deleted_size)}) in {format_elapsed(elapsed_s)}"
            )
        case Phase.ERROR:
            return f"Cleanup error: {p.error}"
        case _:
            return "Preparing cleanup..."
