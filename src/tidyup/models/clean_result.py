"""Cleaning result dataclass."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tidyup.core.errors import DeletionError


@dataclass(slots=True)
class CleanResult:
    """Result of a cleaning run.

    Every input candidate ends up either in ``deleted_files`` or in
    ``skipped_files`` (failures are skipped with a reason and also
    recorded in ``errors``).
    """

    deleted_files: list[str] = field(default_factory=list)
    deleted_size: int = 0
    skipped_files: list[str] = field(default_factory=list)
    skipped_reasons: dict[str, str] = field(default_factory=dict)
    errors: list[DeletionError] = field(default_factory=list)
    dry_run: bool = False
    used_sudo: bool = False
    sudo_succeeded: int = 0
    sudo_failed: int = 0
    per_category: dict[str, dict[str, int]] = field(default_factory=dict)

    def record_deleted(self, path: str, size: int, category: str = "") -> None:
        self.deleted_files.append(path)
        self.deleted_size += size
        totals = self.per_category.setdefault(category, {"bytes_freed": 0, "files_removed": 0})
        totals["bytes_freed"] += size
        totals["files_removed"] += 1

    def record_skipped(self, path: str, reason: str) -> None:
        self.skipped_files.append(path)
        self.skipped_reasons[path] = reason

    @property
    def processed(self) -> int:
        return len(self.deleted_files) + len(self.skipped_files)
