"""Tracks freed space across cleanup runs."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from tidyup.models import CleanResult
from tidyup.storage import load_history, save_history

log = logging.getLogger(__name__)

PERIODS = ("today", "week", "month", "all")


class Tracker:
    """Tracks and persists cleanup statistics.

    Dry runs are never recorded: nothing was freed.
    """

    def __init__(self) -> None:
        self._session_results: list[CleanResult] = []

    @property
    def session_bytes_freed(self) -> int:
        return sum(r.deleted_size for r in self._session_results)

    @property
    def session_files_removed(self) -> int:
        return sum(len(r.deleted_files) for r in self._session_results)

    def record(self, result: CleanResult) -> None:
        if result.dry_run:
            log.debug("Not recording dry run")
            return
        self._session_results.append(result)

    def get_last_clean_time(self) -> str | None:
        """Return ISO timestamp of the most recent cleanup, or None."""
        sessions = load_history().get("sessions", [])
        return sessions[-1]["timestamp"] if sessions else None

    def save_session(self) -> None:
        """Persist the current session to history."""
        if not self._session_results:
            return

        history = load_history()
        session_entry = self._build_session_entry()
        history.setdefault("sessions", []).append(session_entry)
        save_history(history)

        log.info(
            "Saved session: %d bytes freed across %d categories",
            _session_bytes(session_entry),
            len(session_entry["details"]),
        )
        self._session_results.clear()

    def get_stats(self, period: str = "all") -> dict[str, Any]:
        """Get aggregated statistics for a time period.

        Args:
            period: One of 'today', 'week', 'month', 'all'.
        """
        all_sessions = load_history().get("sessions", [])

        match period:
            case "today":
                cutoff = _start_of_today()
            case "week":
                cutoff = _start_of_today() - timedelta(days=7)
            case "month":
                cutoff = _start_of_today() - timedelta(days=30)
            case _:
                cutoff = None

        if cutoff is not None:
            sessions = [s for s in all_sessions if datetime.fromisoformat(s["timestamp"]) >= cutoff]
        else:
            sessions = all_sessions

        return {
            "period": period,
            "bytes_freed": sum(_session_bytes(s) for s in sessions),
            "files_removed": sum(_session_files(s) for s in sessions),
            "session_count": len(sessions),
            "lifetime_bytes_freed": sum(_session_bytes(s) for s in all_sessions),
            "per_category": self._aggregate_category_stats(sessions),
        }

    def _build_session_entry(self) -> dict[str, Any]:
        totals: dict[str, dict[str, int]] = {}
        used_sudo = False
        for result in self._session_results:
            used_sudo = used_sudo or result.used_sudo
            for category, counts in result.per_category.items():
                entry = totals.setdefault(category, {"bytes_freed": 0, "files_removed": 0})
                entry["bytes_freed"] += counts["bytes_freed"]
                entry["files_removed"] += counts["files_removed"]
        details = [{"category": category, **counts} for category, counts in sorted(totals.items())]
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "used_sudo": used_sudo,
            "details": details,
        }

    @staticmethod
    def _aggregate_category_stats(sessions: list[dict[str, Any]]) -> dict[str, dict[str, int]]:
        totals: dict[str, dict[str, int]] = {}
        for session in sessions:
            for detail in session.get("details", []):
                entry = totals.setdefault(detail["category"], {"bytes_freed": 0, "files_removed": 0})
                entry["bytes_freed"] += detail.get("bytes_freed", 0)
                entry["files_removed"] += detail.get("files_removed", 0)
        return totals


def _session_bytes(session: dict[str, Any]) -> int:
    return sum(d.get("bytes_freed", 0) for d in session.get("details", []))


def _session_files(session: dict[str, Any]) -> int:
    return sum(d.get("files_removed", 0) for d in session.get("details", []))


def _start_of_today() -> datetime:
    now = datetime.now(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)
