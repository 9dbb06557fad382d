"""Tests for permission analysis and pre-deletion safety checks."""

from __future__ import annotations

import os
import stat

import pytest

from tidyup.core.permissions import (
    PermissionAnalyzer,
    get_file_inode,
    is_safe_to_delete,
    is_special_file,
    verify_deletion_safe,
)

# An identity that owns nothing in the test's temp directory.
STRANGER = 54321


@pytest.fixture
def me():
    return PermissionAnalyzer()


@pytest.fixture
def stranger():
    return PermissionAnalyzer(uid=STRANGER, groups=[STRANGER])


class TestSpecialFiles:
    def test_regular_file(self, tmp_path):
        f = tmp_path / "plain.txt"
        f.write_text("x")
        assert is_special_file(str(f)) == ""

    def test_fifo(self, tmp_path):
        fifo = tmp_path / "pipe"
        os.mkfifo(fifo)
        assert is_special_file(str(fifo)) == "named pipe (FIFO)"

    def test_setuid_file(self, tmp_path):
        f = tmp_path / "tool"
        f.write_text("#!/bin/sh\n")
        f.chmod(0o4755)
        assert is_special_file(str(f)) == "setuid file"

    def test_setgid_directory_is_not_special(self, tmp_path):
        d = tmp_path / "shared"
        d.mkdir()
        d.chmod(0o2775)
        assert is_special_file(str(d)) == ""

    def test_symlink_to_fifo(self, tmp_path):
        fifo = tmp_path / "pipe"
        os.mkfifo(fifo)
        link = tmp_path / "link"
        os.symlink("pipe", link)
        assert is_special_file(str(link)) == "symlink to named pipe (FIFO)"

    def test_dangling_symlink(self, tmp_path):
        link = tmp_path / "dangling"
        os.symlink(tmp_path / "nowhere", link)
        assert is_special_file(str(link)) == ""


class TestIsSafeToDelete:
    def test_regular_file(self, tmp_path):
        f = tmp_path / "a"
        f.write_text("x")
        assert is_safe_to_delete(str(f)) is None

    def test_missing(self, tmp_path):
        assert is_safe_to_delete(str(tmp_path / "missing")) == "file does not exist"

    def test_special(self, tmp_path):
        fifo = tmp_path / "pipe"
        os.mkfifo(fifo)
        assert "special file" in is_safe_to_delete(str(fifo))


class TestVerifyDeletionSafe:
    def test_unchanged(self, tmp_path):
        f = tmp_path / "a"
        f.write_bytes(b"x" * 100)
        assert verify_deletion_safe(str(f), os.lstat(f).st_ino, 100) is None

    def test_small_size_drift_is_tolerated(self, tmp_path):
        f = tmp_path / "a"
        f.write_bytes(b"x" * 105)
        assert verify_deletion_safe(str(f), 0, 100) is None

    def test_size_changed(self, tmp_path):
        f = tmp_path / "a"
        f.write_bytes(b"x" * 300)
        assert "size changed" in verify_deletion_safe(str(f), 0, 100)

    def test_inode_changed(self, tmp_path):
        f = tmp_path / "a"
        f.write_bytes(b"x")
        assert "inode changed" in verify_deletion_safe(str(f), os.lstat(f).st_ino + 1)

    def test_inode_of_symlink_is_the_link(self, tmp_path):
        target = tmp_path / "target"
        target.write_text("x")
        link = tmp_path / "link"
        os.symlink(target, link)
        assert get_file_inode(str(link)) == os.lstat(link).st_ino
        assert get_file_inode(str(link)) != get_file_inode(str(target))

    def test_vanished_is_fine(self, tmp_path):
        assert verify_deletion_safe(str(tmp_path / "gone"), 1, 1) is None


class TestAnalyzer:
    def test_own_file(self, tmp_path, me):
        f = tmp_path / "mine"
        f.write_text("x")
        verdict = me.analyze(str(f))
        assert verdict.exists and verdict.can_delete
        assert not verdict.requires_sudo

    def test_missing(self, tmp_path, me):
        verdict = me.analyze(str(tmp_path / "missing"))
        assert not verdict.exists
        assert verdict.reason == "file does not exist"

    def test_stranger_needs_sudo(self, tmp_path, stranger):
        tmp_path.chmod(0o755)
        f = tmp_path / "mine"
        f.write_text("x")
        verdict = stranger.analyze(str(f))
        assert verdict.requires_sudo
        assert not verdict.can_delete

    def test_world_writable_parent(self, tmp_path, stranger):
        d = tmp_path / "open"
        d.mkdir()
        d.chmod(0o777)
        f = d / "mine"
        f.write_text("x")
        assert stranger.analyze(str(f)).can_delete

    def test_sticky_parent_only_owner_may_delete(self, tmp_path, stranger):
        d = tmp_path / "shared"
        d.mkdir()
        d.chmod(0o777 | stat.S_ISVTX)
        f = d / "mine"
        f.write_text("x")
        verdict = stranger.analyze(str(f))
        assert verdict.requires_sudo
        assert "sticky" in verdict.reason

    def test_root_can_delete_but_special_checked_first(self, tmp_path):
        root = PermissionAnalyzer(uid=0, groups=[0])
        f = tmp_path / "a"
        f.write_text("x")
        fifo = tmp_path / "pipe"
        os.mkfifo(fifo)
        assert root.analyze(str(f)).can_delete
        verdict = root.analyze(str(fifo))
        assert verdict.is_special
        assert not verdict.can_delete

    def test_symlink_is_not_followed(self, tmp_path, me):
        target = tmp_path / "target"
        target.write_text("x")
        link = tmp_path / "link"
        os.symlink(target, link)
        verdict = me.analyze(str(link))
        assert verdict.is_symlink
        assert verdict.symlink_target == str(target)

    def test_unstatable_path_is_inaccessible(self, tmp_path, me, monkeypatch):
        f = tmp_path / "hidden"
        f.write_text("x")
        real_lstat = os.lstat

        def lstat(path, *args, **kwargs):
            if str(path) == str(f):
                raise PermissionError(13, "Permission denied", str(path))
            return real_lstat(path, *args, **kwargs)

        monkeypatch.setattr(os, "lstat", lstat)
        verdict = me.analyze(str(f))
        assert verdict.exists
        assert not verdict.requires_sudo and not verdict.can_delete

        report = me.analyze_permissions([str(f)], lambda p: 1)
        assert report.requires_sudo == []
        assert report.inaccessible == {str(f): "permission denied: Permission denied"}

    def test_requires_elevation(self, tmp_path, me, stranger):
        tmp_path.chmod(0o755)
        f = tmp_path / "mine"
        f.write_text("x")
        assert not me.requires_elevation(str(f))
        assert stranger.requires_elevation(str(f))
        assert not PermissionAnalyzer(uid=0, groups=[0]).requires_elevation(str(f))


class TestAnalyzePermissions:
    def test_partition_is_complete_and_disjoint(self, tmp_path, stranger):
        tmp_path.chmod(0o755)
        open_dir = tmp_path / "open"
        open_dir.mkdir()
        open_dir.chmod(0o777)
        normal = open_dir / "normal"
        normal.write_bytes(b"x" * 10)
        sudo = tmp_path / "sudo"
        sudo.write_bytes(b"x" * 20)
        fifo = tmp_path / "pipe"
        os.mkfifo(fifo)
        missing = tmp_path / "missing"

        paths = [str(normal), str(sudo), str(fifo), str(missing)]
        report = stranger.analyze_permissions(paths)

        assert report.normal == [str(normal)]
        assert report.requires_sudo == [str(sudo)]
        assert report.special == {str(fifo): "named pipe (FIFO)"}
        assert report.total_normal_size == 10
        assert report.total_sudo_size == 20
        # Vanished paths are dropped; everything else lands in one bucket.
        assert report.total_paths == 3
        buckets = [set(report.normal), set(report.requires_sudo), set(report.special), set(report.inaccessible)]
        assert sum(len(b) for b in buckets) == len(set().union(*buckets))

    def test_size_fn_is_used(self, tmp_path, me):
        f = tmp_path / "a"
        f.write_bytes(b"x")
        report = me.analyze_permissions([str(f)], size_fn=lambda p: 999)
        assert report.total_normal_size == 999
