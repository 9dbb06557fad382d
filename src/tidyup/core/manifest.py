"""Append-only audit record of deletions."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ManifestEntry:
    path: str
    size: int
    category: str
    deleted_at: datetime


class DeletionManifest:
    """Records every deletion the cleaner attempts, in order.

    Entries are added before the removal itself so the record reflects
    intent even when the removal is interrupted.  Nothing is ever removed
    from or rewritten in the manifest.
    """

    def __init__(self) -> None:
        self.created = datetime.now(timezone.utc)
        self._entries: list[ManifestEntry] = []
        self._total_size = 0
        self._lock = threading.Lock()

    def add(self, path: str, size: int, category: str, deleted_at: datetime | None = None) -> None:
        entry = ManifestEntry(path, size, category, deleted_at or datetime.now(timezone.utc))
        with self._lock:
            self._entries.append(entry)
            self._total_size += size

    @property
    def entries(self) -> tuple[ManifestEntry, ...]:
        with self._lock:
            return tuple(self._entries)

    @property
    def total_size(self) -> int:
        return self._total_size

    def __len__(self) -> int:
        return len(self._entries)

    def render(self) -> str:
        """Return the manifest as the human-readable export text."""
        entries = self.entries
        lines = [
            "Deletion Manifest",
            f"Created: {self.created.isoformat(timespec='seconds')}",
            f"Total Size: {sum(e.size for e in entries)} bytes",
            f"Total Files: {len(entries)}",
            "",
        ]
        for e in entries:
            lines.append(f"{e.path} | {e.size} bytes | {e.category} | {e.deleted_at.isoformat(timespec='seconds')}")
        return "\n".join(lines) + "\n"

    def save(self, path: Path | str) -> None:
        """Write the manifest to *path*.

        Raises:
            OSError: If the file cannot be written.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.render(), encoding="utf-8")
        log.info("Saved deletion manifest with %d entries to %s", len(self), path)
