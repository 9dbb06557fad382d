"""Shared test fixtures."""

from __future__ import annotations

import os
import time
from dataclasses import fields

import pytest

import tidyup.storage as storage
from tidyup.config import Config
from tidyup.platform import PlatformInfo

DAY = 86400


@pytest.fixture
def isolate_storage(tmp_path, monkeypatch):
    """Redirect storage to a temp directory."""
    data_dir = tmp_path / "tidyup_data"
    data_dir.mkdir()
    history_file = data_dir / "history.json"
    monkeypatch.setattr(storage, "HISTORY_FILE", history_file)
    monkeypatch.setattr(storage, "_DATA_DIR", data_dir)
    return history_file


@pytest.fixture
def make_file():
    """Create a file with *size* bytes, aged *age* seconds."""

    def _make(path, size=100, age=2 * DAY, content=None):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content if content is not None else b"x" * size)
        mtime = time.time() - age
        os.utime(path, (mtime, mtime))
        return path

    return _make


@pytest.fixture
def config():
    """Config with every category off; tests switch on what they need."""
    cfg = Config()
    for f in fields(cfg.categories):
        setattr(cfg.categories, f.name, False)
    cfg.exclude_patterns = []
    cfg.min_file_age = 0
    return cfg


@pytest.fixture
def home(tmp_path):
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def platform_info(home):
    return PlatformInfo(
        os="linux",
        home=str(home),
        username="tester",
        cache_dirs=(str(home / ".cache"),),
        temp_dirs=(str(home / "tmp"),),
        log_dirs=(str(home / "logs"),),
        downloads_dir=str(home / "Downloads"),
    )
