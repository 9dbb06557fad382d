"""Permission analysis: who, if anyone, may delete a given path.

The model follows POSIX unlink semantics: deleting an entry needs write
permission on the parent directory, restricted further by the sticky
bit.  Access-control lists are not consulted.
"""

from __future__ import annotations

import logging
import os
import stat
from typing import Callable

from tidyup.models.permissions import PermissionReport, PermissionVerdict

log = logging.getLogger(__name__)

SizeFunc = Callable[[str], int]

# Relative size change tolerated between scan and delete.
SIZE_TOLERANCE = 0.1


def _special_kind(mode: int) -> str:
    """Return the special file kind for *mode*, or an empty string."""
    if stat.S_ISBLK(mode):
        return "block device"
    if stat.S_ISCHR(mode):
        return "character device"
    if stat.S_ISSOCK(mode):
        return "socket"
    if stat.S_ISFIFO(mode):
        return "named pipe (FIFO)"
    # Directories inherit setgid from shared parents, so only files count.
    if stat.S_ISREG(mode):
        if mode & stat.S_ISUID:
            return "setuid file"
        if mode & stat.S_ISGID:
            return "setgid file"
    return ""


def is_special_file(path: str) -> str:
    """Return the special kind of *path*, following at most one symlink.

    A dangling symlink is not special.  Returns an empty string for
    ordinary files and directories.

    Raises:
        OSError: If *path* itself cannot be stat'ed.
    """
    st = os.lstat(path)
    kind = _special_kind(st.st_mode)
    if kind or not stat.S_ISLNK(st.st_mode):
        return kind

    target = os.readlink(path)
    if not os.path.isabs(target):
        target = os.path.join(os.path.dirname(path), target)
    try:
        target_mode = os.lstat(target).st_mode
    except OSError:
        return ""
    if stat.S_ISBLK(target_mode) or stat.S_ISCHR(target_mode) or stat.S_ISSOCK(target_mode) or stat.S_ISFIFO(target_mode):
        return f"symlink to {_special_kind(target_mode)}"
    return ""


def is_safe_to_delete(path: str) -> str | None:
    """Return why *path* must not be deleted, or None if it looks safe.

    Directories are allowed; the cleaner removes them recursively.
    """
    try:
        kind = is_special_file(path)
    except FileNotFoundError:
        return "file does not exist"
    except OSError as e:
        return f"cannot inspect file: {e.strerror or e}"
    if kind:
        return f"refusing to delete special file: {kind}"
    if ".." in os.path.normpath(path).split(os.sep):
        return "path contains directory traversal"
    return None


def get_file_inode(path: str) -> int:
    """Return the inode number of *path* without following symlinks."""
    return os.lstat(path).st_ino


def verify_deletion_safe(path: str, expected_inode: int = 0, expected_size: int = 0) -> str | None:
    """Check that *path* is still the object that was analysed.

    Returns a reason when the inode changed, the size moved by more than
    10%, or the entry turned into a special file.  A vanished path is fine.
    """
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return None
    except OSError as e:
        return f"cannot verify file state: {e.strerror or e}"

    if expected_inode and st.st_ino != expected_inode:
        return f"file inode changed: expected {expected_inode}, got {st.st_ino} (possible race condition)"

    if expected_size > 0 and st.st_size != expected_size:
        if abs(st.st_size - expected_size) / expected_size > SIZE_TOLERANCE:
            return f"file size changed significantly: expected {expected_size}, got {st.st_size}"

    mode = st.st_mode
    if stat.S_ISBLK(mode) or stat.S_ISCHR(mode) or stat.S_ISSOCK(mode) or stat.S_ISFIFO(mode):
        return "file type changed to special file"
    return None


class PermissionAnalyzer:
    """Classifies paths by the current process identity.

    The identity (uid plus every group the process belongs to) is captured
    at construction.  Pass *uid* and *groups* to analyse on behalf of a
    different identity.
    """

    def __init__(self, uid: int | None = None, groups: list[int] | None = None) -> None:
        self.uid = os.geteuid() if uid is None else uid
        if groups is None:
            groups = [os.getegid(), *os.getgroups()]
        self.groups: list[int] = list(dict.fromkeys(groups))
        self.is_root = self.uid == 0

    def user_info(self) -> str:
        return f"uid={self.uid} groups={self.groups} root={self.is_root}"

    def analyze(self, path: str) -> PermissionVerdict:
        """Build a fresh verdict for *path* using a non-following stat."""
        verdict = PermissionVerdict(path=path)
        try:
            st = os.lstat(path)
        except (FileNotFoundError, NotADirectoryError):
            verdict.reason = "file does not exist"
            return verdict
        except PermissionError as e:
            # Unstatable paths are inaccessible, never sudo candidates.
            verdict.exists = True
            verdict.reason = f"permission denied: {e.strerror or e}"
            return verdict
        except OSError as e:
            verdict.exists = True
            verdict.reason = f"error accessing file: {e.strerror or e}"
            return verdict

        verdict.exists = True
        verdict.mode = st.st_mode
        verdict.uid = st.st_uid
        verdict.gid = st.st_gid
        verdict.is_dir = stat.S_ISDIR(st.st_mode)
        if stat.S_ISLNK(st.st_mode):
            verdict.is_symlink = True
            try:
                verdict.symlink_target = os.readlink(path)
            except OSError:
                log.debug("Cannot read symlink: %s", path)

        verdict.special_kind = _special_kind(st.st_mode)
        verdict.is_special = bool(verdict.special_kind)

        parent_writable, parent_reason = self._parent_writable(os.path.dirname(path), st.st_uid)
        verdict.parent_writable = parent_writable
        verdict.file_writable = self._has_write_bit(st.st_mode, st.st_uid, st.st_gid)

        if verdict.is_special:
            verdict.reason = f"special file type: {verdict.special_kind}"
        elif self.is_root:
            verdict.can_delete = True
            verdict.reason = "running as root"
        elif not parent_writable:
            verdict.requires_sudo = True
            verdict.reason = parent_reason
        else:
            verdict.can_delete = True
            verdict.reason = "user has delete permission"
        return verdict

    def _parent_writable(self, directory: str, file_uid: int) -> tuple[bool, str]:
        try:
            st = os.stat(directory)
        except OSError as e:
            return False, f"cannot access parent directory: {e.strerror or e}"
        if not stat.S_ISDIR(st.st_mode):
            return False, "parent path is not a directory"

        mode = st.st_mode
        sticky = bool(mode & stat.S_ISVTX)

        if st.st_uid == self.uid:
            if mode & stat.S_IWUSR:
                return True, ""
            return False, "owner does not have write permission on parent directory"

        if st.st_gid in self.groups:
            writable = bool(mode & stat.S_IWGRP)
        else:
            writable = bool(mode & stat.S_IWOTH)
        if not writable:
            return False, "no write permission on parent directory"
        # Sticky directories only let the file's owner unlink it.
        if sticky and file_uid != self.uid:
            return False, "directory has sticky bit set, only owner can delete"
        return True, ""

    def _has_write_bit(self, mode: int, uid: int, gid: int) -> bool:
        if uid == self.uid:
            return bool(mode & stat.S_IWUSR)
        if gid in self.groups:
            return bool(mode & stat.S_IWGRP)
        return bool(mode & stat.S_IWOTH)

    def can_delete(self, path: str) -> bool:
        verdict = self.analyze(path)
        return verdict.exists and not verdict.is_special and verdict.can_delete

    def requires_elevation(self, path: str) -> bool:
        if self.is_root:
            return False
        return self.analyze(path).requires_sudo

    def analyze_permissions(self, paths: list[str], size_fn: SizeFunc | None = None) -> PermissionReport:
        """Partition *paths* into normal, sudo, special and inaccessible buckets.

        Paths that no longer exist are dropped.  Each remaining path lands
        in exactly one bucket.
        """
        report = PermissionReport()
        for path in paths:
            verdict = self.analyze(path)
            report.details[path] = verdict
            if not verdict.exists:
                continue

            if verdict.is_special:
                report.special[path] = verdict.special_kind
                continue

            size = size_fn(path) if size_fn is not None else _lstat_size(path)
            if verdict.can_delete:
                report.normal.append(path)
                report.total_normal_size += size
            elif verdict.requires_sudo:
                report.requires_sudo.append(path)
                report.total_sudo_size += size
            else:
                report.inaccessible[path] = verdict.reason
        return report


def _lstat_size(path: str) -> int:
    try:
        return os.lstat(path).st_size
    except OSError:
        return 0
