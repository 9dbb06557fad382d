"""Tests for the D-Bus service methods, called without a bus."""

from __future__ import annotations

import json

import pytest

from tidyup import dbus_service
from tidyup.dbus_service import TidyUpDBusService

pytestmark = pytest.mark.usefixtures("isolate_storage")


@pytest.fixture
def service(tmp_path, monkeypatch, config, platform_info):
    config.categories.cache = True
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "xdg-cache"))
    monkeypatch.setattr(dbus_service.config_mod, "load", lambda path=None: config)
    monkeypatch.setattr(dbus_service, "get_info", lambda: platform_info)
    return TidyUpDBusService()


class TestService:
    def test_clean_before_scan(self, service):
        assert "error" in json.loads(service.Clean([], False))
        assert "error" in json.loads(service.GetPermissionReport())

    def test_scan_then_clean(self, service, home, make_file, isolate_storage):
        a = make_file(home / ".cache" / "a.bin", size=100)
        b = make_file(home / ".cache" / "b.bin", size=50)

        scanned = json.loads(service.Scan([]))
        assert scanned["total_size"] == 150

        cleaned = json.loads(service.Clean([str(a)], False))
        assert cleaned["status"] == "cleaned"
        assert cleaned["deleted_size"] == 100
        assert not a.exists()
        assert b.exists()

        stats = json.loads(service.GetStats("all"))
        assert stats["bytes_freed"] == 100
        assert len(json.loads(service.GetHistory())["sessions"]) == 1

    def test_dry_run_clean(self, service, home, make_file, isolate_storage):
        a = make_file(home / ".cache" / "a.bin", size=100)
        service.Scan(["cache"])
        cleaned = json.loads(service.Clean([], True))
        assert cleaned["dry_run"] is True
        assert a.exists()
        assert not isolate_storage.exists()

    def test_unknown_category(self, service):
        assert "Unknown category" in json.loads(service.Scan(["nonsense"]))["error"]

    def test_permission_report(self, service, home, make_file):
        a = make_file(home / ".cache" / "a.bin", size=100)
        service.Scan([])
        report = json.loads(service.GetPermissionReport())
        assert report["normal"] == [str(a)]
