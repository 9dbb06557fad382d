"""Tests for the deletion engine."""

from __future__ import annotations

import errno
import os
from unittest.mock import patch

import pytest

from tidyup.core import cleaner as cleaner_mod
from tidyup.core.cleaner import RETRY_DELAYS, Cleaner, CleanerError
from tidyup.core.docker import DockerError
from tidyup.core.errors import ErrorReason
from tidyup.core.permissions import PermissionAnalyzer
from tidyup.core.privileges import SudoManager
from tidyup.core.progress import Phase, ProgressReporter
from tidyup.models import CandidateEntry, ScanResult

from test_privileges import PASSWORD, fake_sudo

HOUR = 3600
STRANGER = 54321


def _entry(path, category="cache", size=None, **kwargs):
    st = os.lstat(path) if os.path.lexists(path) else None
    if size is None:
        size = st.st_size if st else 0
    return CandidateEntry(str(path), size, st.st_mtime if st else 0.0, category, **kwargs)


def _scan(*entries):
    result = ScanResult()
    for e in entries:
        result.add(e)
    return result


def _no_sudo():
    manager = SudoManager(use_pkexec=False)
    manager.available = False
    return manager


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_cleaner(config, sleeps):
    def _make(**kwargs):
        kwargs.setdefault("analyzer", PermissionAnalyzer())
        kwargs.setdefault("sudo", _no_sudo())
        kwargs.setdefault("sleep", sleeps.append)
        return Cleaner(config, **kwargs)

    return _make


@pytest.fixture
def stranger_sudo():
    manager = SudoManager(lambda attempt: PASSWORD, use_pkexec=False)
    manager.available = True
    return manager


class TestAccounting:
    def test_every_candidate_recorded_once(self, make_cleaner, tmp_path, make_file):
        a = make_file(tmp_path / "a.bin", size=100)
        b = make_file(tmp_path / "b.bin", size=200)
        missing = CandidateEntry(str(tmp_path / "gone.bin"), 50, 0.0, "temp")

        result = make_cleaner().clean(_scan(_entry(a), _entry(b, category="logs"), missing))

        assert sorted(result.deleted_files) == sorted([str(a), str(b), missing.path])
        assert result.skipped_files == []
        assert result.deleted_size == 300
        assert result.processed == 3
        assert result.per_category == {
            "cache": {"bytes_freed": 100, "files_removed": 1},
            "logs": {"bytes_freed": 200, "files_removed": 1},
            "temp": {"bytes_freed": 0, "files_removed": 1},
        }
        assert not a.exists() and not b.exists()

    def test_directory_candidate_is_removed_recursively(self, make_cleaner, tmp_path, make_file):
        make_file(tmp_path / "build" / "out" / "lib.so", size=40)
        entry = CandidateEntry(str(tmp_path / "build"), 40, 0.0, "build_artifacts")

        result = make_cleaner().clean(_scan(entry))

        assert result.deleted_files == [entry.path]
        assert not (tmp_path / "build").exists()

    def test_dry_run_touches_nothing(self, config, make_cleaner, tmp_path, make_file):
        config.dry_run = True
        a = make_file(tmp_path / "a", size=100)
        b = make_file(tmp_path / "b", size=200)
        cleaner = make_cleaner()

        result = cleaner.clean(_scan(_entry(a), _entry(b)))

        assert result.dry_run
        assert result.deleted_size == 300
        assert len(result.deleted_files) == 2
        assert a.exists() and b.exists()
        assert len(cleaner.get_manifest()) == 0

    def test_clean_category(self, make_cleaner, tmp_path, make_file):
        a = make_file(tmp_path / "a")
        b = make_file(tmp_path / "b")
        result = make_cleaner().clean_category(_scan(_entry(a, "cache"), _entry(b, "temp")), "temp")
        assert result.deleted_files == [str(b)]
        assert a.exists()

    def test_manifest_records_deletions(self, make_cleaner, tmp_path, make_file):
        a = make_file(tmp_path / "a.bin", size=64)
        cleaner = make_cleaner()
        cleaner.clean(_scan(_entry(a)))

        out = tmp_path / "out" / "manifest.txt"
        cleaner.save_manifest(out)
        text = out.read_text()
        assert "Total Files: 1" in text
        assert f"{a} | 64 bytes | cache |" in text

    def test_progress_ends_complete(self, make_cleaner, tmp_path, make_file):
        reporter = ProgressReporter()
        q = reporter.subscribe()
        a = make_file(tmp_path / "a", size=10)

        make_cleaner(reporter=reporter).clean(_scan(_entry(a)))

        updates = []
        while not q.empty():
            updates.append(q.get_nowait())
        assert updates[0].phase is Phase.CLEANING
        assert updates[-1].phase is Phase.COMPLETE
        assert updates[-1].deleted_files == 1
        assert updates[-1].deleted_size == 10


class TestSafetyChecks:
    def test_swapped_for_symlink(self, make_cleaner, tmp_path, make_file):
        victim = make_file(tmp_path / "important.txt", size=10)
        candidate = make_file(tmp_path / "cache.bin", size=10)
        entry = _entry(candidate)
        candidate.unlink()
        os.symlink(victim, candidate)

        result = make_cleaner().clean(_scan(entry))

        assert result.skipped_reasons[str(candidate)] == "File changed to symlink (security check)"
        assert result.errors[0].reason is ErrorReason.INVALID_PATH
        assert victim.exists()
        assert os.path.islink(candidate)

    def test_too_new(self, config, make_cleaner, tmp_path, make_file):
        config.min_file_age = 24
        fresh = make_file(tmp_path / "fresh", age=HOUR)

        result = make_cleaner().clean(_scan(_entry(fresh)))

        assert result.skipped_reasons[str(fresh)] == "File too new (safety check)"
        assert fresh.exists()

    def test_size_changed_since_scan(self, make_cleaner, tmp_path, make_file):
        grown = make_file(tmp_path / "grown", size=1000)
        entry = _entry(grown, size=100)

        result = make_cleaner().clean(_scan(entry))

        assert result.skipped_reasons[str(grown)].startswith("File changed since scan: file size changed")
        assert grown.exists()

    def test_protected_location(self, config, make_cleaner, tmp_path, make_file):
        config.protected_paths = [str(tmp_path / "keep")]
        kept = make_file(tmp_path / "keep" / "a.bin")

        result = make_cleaner().clean(_scan(_entry(kept)))

        assert result.skipped_reasons[str(kept)] == "Safety check failed: refusing to delete critical system path"
        assert kept.exists()

    def test_fifo_is_skipped(self, make_cleaner, tmp_path):
        fifo = tmp_path / "pipe"
        os.mkfifo(fifo)

        result = make_cleaner().clean(_scan(CandidateEntry(str(fifo), 0, 0.0, "temp")))

        assert result.skipped_reasons[str(fifo)] == "Special file: named pipe (FIFO)"
        assert fifo.exists()


class TestRetry:
    def _flaky_remove(self, monkeypatch, code, failures):
        real_remove = os.remove
        calls = []

        def remove(path, *args, **kwargs):
            calls.append(path)
            if failures is None or len(calls) <= failures:
                raise OSError(code, os.strerror(code), path)
            real_remove(path, *args, **kwargs)

        monkeypatch.setattr(cleaner_mod.os, "remove", remove)
        return calls

    def test_busy_file_retried_until_removed(self, make_cleaner, sleeps, tmp_path, make_file, monkeypatch):
        f = make_file(tmp_path / "busy.bin")
        calls = self._flaky_remove(monkeypatch, errno.EBUSY, failures=2)

        cleaner = make_cleaner()
        result = cleaner.clean(_scan(_entry(f, size=100)))

        assert result.deleted_files == [str(f)]
        assert len(calls) == 3
        assert sleeps == list(RETRY_DELAYS[:2])
        assert len(cleaner.get_manifest()) == 1
        assert cleaner.get_manifest().total_size == 100

    def test_busy_file_gives_up_after_last_delay(self, make_cleaner, sleeps, tmp_path, make_file, monkeypatch):
        f = make_file(tmp_path / "busy.bin")
        calls = self._flaky_remove(monkeypatch, errno.EBUSY, failures=None)

        result = make_cleaner().clean(_scan(_entry(f)))

        assert len(calls) == len(RETRY_DELAYS) + 1
        assert sleeps == list(RETRY_DELAYS)
        assert result.skipped_reasons[str(f)].startswith("File is being used")
        assert [e.reason for e in result.errors] == [ErrorReason.FILE_IN_USE]

    def test_permission_error_is_not_retried(self, make_cleaner, sleeps, tmp_path, make_file, monkeypatch):
        f = make_file(tmp_path / "locked.bin")
        calls = self._flaky_remove(monkeypatch, errno.EACCES, failures=None)

        result = make_cleaner().clean(_scan(_entry(f)))

        assert len(calls) == 1
        assert sleeps == []
        assert result.errors[0].reason is ErrorReason.PERMISSION_DENIED
        assert str(f) in result.skipped_files


class TestAggregates:
    def test_purges_files_but_keeps_directory(self, make_cleaner, tmp_path, make_file):
        root = tmp_path / "cache"
        make_file(root / "a.bin", size=10)
        make_file(root / "sub" / "b.bin", size=20)
        make_file(root / ".git" / "HEAD", size=5)
        entry = CandidateEntry(str(root), 30, 0.0, "cache", file_count=2, is_aggregate=True)
        cleaner = make_cleaner()

        result = cleaner.clean(_scan(entry))

        assert result.deleted_files == [str(root)]
        assert result.deleted_size == 30
        assert root.is_dir()
        assert (root / ".git" / "HEAD").exists()
        assert not (root / "a.bin").exists()
        assert len(cleaner.get_manifest()) == 2

    def test_respects_age_floor(self, config, make_cleaner, tmp_path, make_file):
        config.min_file_age = 24
        root = tmp_path / "cache"
        fresh = make_file(root / "fresh.bin", age=HOUR)
        entry = CandidateEntry(str(root), 100, 0.0, "cache", file_count=1, is_aggregate=True)

        result = make_cleaner().clean(_scan(entry))

        assert result.skipped_reasons[str(root)] == "Nothing left to remove"
        assert fresh.exists()

    def test_respects_exclude_patterns(self, config, make_cleaner, tmp_path, make_file):
        config.exclude_patterns = ["*.keep"]
        root = tmp_path / "cache"
        kept = make_file(root / "a.keep", size=10)
        make_file(root / "b.bin", size=10)
        entry = CandidateEntry(str(root), 20, 0.0, "cache", file_count=2, is_aggregate=True)

        result = make_cleaner().clean(_scan(entry))

        assert result.deleted_size == 10
        assert kept.exists()

    def test_directory_swapped_for_symlink_is_not_followed(self, make_cleaner, tmp_path, make_file):
        root = tmp_path / "cache"
        make_file(root / "a.bin", size=10)
        entry = CandidateEntry(str(root), 10, 0.0, "cache", file_count=1, is_aggregate=True)
        precious = make_file(tmp_path / "victim" / "precious.doc", size=10)
        for child in root.iterdir():
            child.unlink()
        root.rmdir()
        os.symlink(tmp_path / "victim", root)
        cleaner = make_cleaner()

        result = cleaner.clean(_scan(entry))

        assert precious.exists()
        assert result.skipped_reasons[str(root)] == "File changed to symlink (security check)"
        assert [e.reason for e in result.errors] == [ErrorReason.INVALID_PATH]
        assert len(cleaner.get_manifest()) == 0

    def test_vanished_directory_counts_as_deleted(self, make_cleaner, tmp_path):
        entry = CandidateEntry(str(tmp_path / "gone"), 10, 0.0, "cache", file_count=1, is_aggregate=True)

        result = make_cleaner().clean(_scan(entry))

        assert result.deleted_files == [str(tmp_path / "gone")]
        assert result.deleted_size == 0


class TestSudo:
    def test_unavailable_sudo_skips(self, make_cleaner, tmp_path, make_file):
        f = make_file(tmp_path / "root-owned.bin")
        cleaner = make_cleaner(analyzer=PermissionAnalyzer(uid=STRANGER, groups=[STRANGER]))

        result = cleaner.clean(_scan(_entry(f)))

        assert result.skipped_reasons[str(f)] == "Requires elevated permissions"
        assert not result.used_sudo
        assert f.exists()

    def test_ask_sudo_off_skips(self, make_cleaner, stranger_sudo, tmp_path, make_file):
        f = make_file(tmp_path / "root-owned.bin")
        cleaner = make_cleaner(
            analyzer=PermissionAnalyzer(uid=STRANGER, groups=[STRANGER]), sudo=stranger_sudo, ask_sudo=False,
        )
        result = cleaner.clean(_scan(_entry(f)))
        assert result.skipped_reasons[str(f)] == "Requires elevated permissions"

    def test_elevated_deletion(self, make_cleaner, stranger_sudo, tmp_path, make_file):
        a = make_file(tmp_path / "a.bin", size=10)
        b = make_file(tmp_path / "b.bin", size=20)
        cleaner = make_cleaner(
            analyzer=PermissionAnalyzer(uid=STRANGER, groups=[STRANGER]), sudo=stranger_sudo, ask_sudo=True,
        )

        with patch("tidyup.core.privileges.subprocess.run", side_effect=fake_sudo()):
            result = cleaner.clean(_scan(_entry(a), _entry(b)))

        assert sorted(result.deleted_files) == [str(a), str(b)]
        assert result.deleted_size == 30
        assert result.used_sudo
        assert result.sudo_succeeded == 2
        assert not a.exists() and not b.exists()
        assert stranger_sudo.secret.is_cleared
        assert not stranger_sudo.authenticated

    def test_elevated_failure_is_reported(self, make_cleaner, stranger_sudo, tmp_path, make_file):
        a = make_file(tmp_path / "a.bin", size=10)
        cleaner = make_cleaner(
            analyzer=PermissionAnalyzer(uid=STRANGER, groups=[STRANGER]), sudo=stranger_sudo, ask_sudo=True,
        )

        with patch("tidyup.core.privileges.subprocess.run", side_effect=fake_sudo(refuse={str(a)})):
            result = cleaner.clean(_scan(_entry(a)))

        assert result.sudo_failed == 1
        assert str(a) in result.skipped_files
        assert "still exists" in str(result.errors[0])
        assert a.exists()

    def test_unstatable_path_is_skipped_without_prompting(
        self, make_cleaner, stranger_sudo, tmp_path, make_file, monkeypatch,
    ):
        f = make_file(tmp_path / "hidden.bin")
        entry = _entry(f)
        real_lstat = os.lstat

        def lstat(path, *args, **kwargs):
            if str(path) == str(f):
                raise PermissionError(errno.EACCES, "Permission denied", str(path))
            return real_lstat(path, *args, **kwargs)

        monkeypatch.setattr(os, "lstat", lstat)
        cleaner = make_cleaner(sudo=stranger_sudo, ask_sudo=True)

        with patch("tidyup.core.privileges.subprocess.run", side_effect=fake_sudo()) as run:
            result = cleaner.clean(_scan(entry))

        assert result.skipped_reasons[str(f)] == "Inaccessible: permission denied: Permission denied"
        assert not result.used_sudo
        run.assert_not_called()

    def test_declined_password(self, make_cleaner, tmp_path, make_file):
        f = make_file(tmp_path / "a.bin")
        sudo = SudoManager(lambda attempt: None, use_pkexec=False)
        sudo.available = True
        cleaner = make_cleaner(analyzer=PermissionAnalyzer(uid=STRANGER, groups=[STRANGER]), sudo=sudo, ask_sudo=True)

        with patch("tidyup.core.privileges.subprocess.run", side_effect=fake_sudo()):
            result = cleaner.clean(_scan(_entry(f)))

        assert result.skipped_reasons[str(f)] == "Requires elevated permissions (sudo declined)"
        assert f.exists()

    def test_crash_clears_credential_and_keeps_partial_result(
        self, make_cleaner, stranger_sudo, tmp_path, make_file, monkeypatch,
    ):
        f = make_file(tmp_path / "a.bin")
        missing = CandidateEntry(str(tmp_path / "gone"), 5, 0.0, "cache")
        reporter = ProgressReporter()
        cleaner = make_cleaner(
            analyzer=PermissionAnalyzer(uid=STRANGER, groups=[STRANGER]),
            sudo=stranger_sudo,
            ask_sudo=True,
            reporter=reporter,
        )

        def boom(paths):
            raise RuntimeError("helper crashed")

        monkeypatch.setattr(stranger_sudo, "delete_files", boom)
        with patch("tidyup.core.privileges.subprocess.run", side_effect=fake_sudo()):
            with pytest.raises(CleanerError, match="helper crashed") as exc_info:
                cleaner.clean(_scan(missing, _entry(f)))

        partial = exc_info.value.result
        assert partial.deleted_files == [missing.path]
        assert partial.used_sudo
        assert stranger_sudo.secret.is_cleared
        assert not stranger_sudo.authenticated
        assert reporter.clean_progress.phase is Phase.ERROR


class _FakeDocker:
    def __init__(self, refuse=()):
        self.removed = []
        self.refuse = set(refuse)

    def remove(self, entry):
        if entry.path in self.refuse:
            raise DockerError("conflict: image is in use")
        self.removed.append(entry.path)


class _NoDockerClient:
    @staticmethod
    def connect(home=None):
        return None


class TestDocker:
    def test_removes_through_api(self, make_cleaner):
        docker = _FakeDocker(refuse={"docker:image:bbb"})
        entries = [
            CandidateEntry("docker:image:aaa", 100, 0.0, "docker_images"),
            CandidateEntry("docker:image:bbb", 200, 0.0, "docker_images"),
        ]

        result = make_cleaner(docker=docker).clean(_scan(*entries))

        assert docker.removed == ["docker:image:aaa"]
        assert result.deleted_files == ["docker:image:aaa"]
        assert result.deleted_size == 100
        assert "image is in use" in result.skipped_reasons["docker:image:bbb"]
        assert result.errors[0].reason is ErrorReason.UNKNOWN

    def test_no_daemon(self, make_cleaner, monkeypatch):
        monkeypatch.setattr(cleaner_mod, "DockerClient", _NoDockerClient)
        entry = CandidateEntry("docker:volume:orphan", 10, 0.0, "docker_volumes")

        result = make_cleaner().clean(_scan(entry))

        assert result.skipped_reasons[entry.path] == "Docker daemon not available"

    def test_permission_report_ignores_docker(self, make_cleaner, tmp_path, make_file):
        f = make_file(tmp_path / "a.bin", size=10)
        scan = _scan(_entry(f), CandidateEntry("docker:image:aaa", 100, 0.0, "docker_images"))
        report = make_cleaner().get_permission_report(scan)
        assert report.normal == [str(f)]
        assert report.total_normal_size == 10
