"""JSON file storage for cleanup history."""

from __future__ import annotations

import json
import logging
import os
from typing import Any

from tidyup.utils import xdg_data_home

log = logging.getLogger(__name__)

_DATA_DIR = xdg_data_home() / "tidyup"

HISTORY_FILE = _DATA_DIR / "history.json"

# Oldest sessions are dropped beyond this.
MAX_SESSIONS = 1000


def _empty() -> dict[str, Any]:
    return {"sessions": []}


def load_history() -> dict[str, Any]:
    """Load the history file, returning an empty structure if missing or corrupt."""
    if not HISTORY_FILE.exists():
        return _empty()
    try:
        with open(HISTORY_FILE, encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        log.exception("Failed to load history file: %s", HISTORY_FILE)
        return _empty()
    if not isinstance(data, dict) or not isinstance(data.get("sessions"), list):
        log.warning("Ignoring malformed history file: %s", HISTORY_FILE)
        return _empty()
    return data


def save_history(data: dict[str, Any]) -> None:
    """Write the history data to disk, replacing the old file atomically."""
    sessions = data.get("sessions", [])
    if len(sessions) > MAX_SESSIONS:
        data["sessions"] = sessions[-MAX_SESSIONS:]

    _DATA_DIR.mkdir(parents=True, exist_ok=True)
    tmp = HISTORY_FILE.with_suffix(".json.tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, HISTORY_FILE)
    except OSError:
        log.exception("Failed to save history file: %s", HISTORY_FILE)


def clear_history() -> None:
    try:
        HISTORY_FILE.unlink(missing_ok=True)
    except OSError:
        log.exception("Failed to remove history file: %s", HISTORY_FILE)
