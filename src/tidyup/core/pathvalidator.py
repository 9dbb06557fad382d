"""Structural safety checks for paths that are about to be deleted.

Every deletion path (direct, privileged or streamed) goes through
:meth:`PathValidator.validate` first.  The validator never touches the
filesystem beyond resolving symlinks.
"""

from __future__ import annotations

import fnmatch
import os
import re
import threading
import time
from collections import OrderedDict
from typing import Iterable

DEFAULT_PROTECTED_PATHS = (
    "/",
    "/bin",
    "/boot",
    "/dev",
    "/etc",
    "/lib",
    "/lib64",
    "/proc",
    "/root",
    "/sbin",
    "/sys",
    "/usr",
    "/var",
    "/System",
    "/Applications",
    "/Library/System",
)

# Characters that could break out of a shell-interpolated argument.
DANGEROUS_CHARS = (";", "&", "|", "$", "`", "(", ")", "<", ">", "\n", "\r")

_CACHE_SIZE = 10_000
_CACHE_TTL = 300.0


class PathValidationError(ValueError):
    """Raised when a path fails a safety check."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"{reason}: {path}")
        self.path = path
        self.reason = reason


def _clean(path: str) -> str:
    cleaned = os.path.normpath(path)
    # POSIX normpath keeps a leading "//"; collapse it like any other repeat.
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


class PathValidator:
    """Validates paths against structural rules and a protected-path deny-list."""

    def __init__(self, protected_paths: list[str] | tuple[str, ...] | None = None) -> None:
        self._protected: list[str] = list(protected_paths or DEFAULT_PROTECTED_PATHS)
        self._cache: OrderedDict[str, tuple[str | None, float]] = OrderedDict()
        self._cache_lock = threading.Lock()
        self.cache_hits = 0
        self.cache_misses = 0

    @property
    def protected_paths(self) -> list[str]:
        return list(self._protected)

    def validate(self, path: str) -> None:
        """Raise :class:`PathValidationError` unless *path* is safe to delete.

        Checks, in order: absolute path, symlink resolution, canonical
        form, shell metacharacters, protected locations.
        """
        reason = self.check(path)
        if reason is not None:
            raise PathValidationError(path, reason)

    def check(self, path: str) -> str | None:
        """Return the rejection reason for *path*, or None if it is safe."""
        if not os.path.isabs(path):
            return "path must be absolute"

        try:
            resolved = os.path.realpath(path, strict=True)
        except FileNotFoundError:
            resolved = path
        except OSError as e:
            return f"failed to resolve symlinks ({e.strerror or e})"

        if _clean(path) != path:
            return "path contains suspicious elements"

        clean = _clean(resolved)
        if any(c in clean for c in DANGEROUS_CHARS) or any(c in path for c in DANGEROUS_CHARS):
            return "path contains dangerous characters"

        return self._check_protected(clean)

    def _check_protected(self, clean: str) -> str | None:
        for protected in self._protected:
            if clean == protected:
                return "refusing to delete protected path"
            if protected != "/" and clean.startswith(protected + "/"):
                rel = clean[len(protected) + 1:]
                if "/" not in rel:
                    return "refusing to delete critical system path"
        return None

    def is_valid(self, path: str) -> bool:
        return self.check(path) is None

    def is_protected_path(self, path: str) -> bool:
        """Check whether *path* is a protected location or lies below one."""
        clean = _clean(path)
        for protected in self._protected:
            if clean == protected:
                return True
            if protected != "/" and clean.startswith(protected + "/"):
                return True
        return False

    def add_protected_path(self, path: str) -> None:
        clean = _clean(path)
        if clean not in self._protected:
            self._protected.append(clean)
        self.clear_cache()

    def check_cached(self, path: str) -> str | None:
        """Like :meth:`check` but memoized for a few minutes.

        Used by the scanners, which validate every file they visit.
        """
        key = _clean(path) if path else path
        now = time.monotonic()
        with self._cache_lock:
            hit = self._cache.get(key)
            if hit is not None and hit[1] > now:
                self._cache.move_to_end(key)
                self.cache_hits += 1
                return hit[0]
            self.cache_misses += 1

        reason = self.check(path)

        with self._cache_lock:
            self._cache[key] = (reason, now + _CACHE_TTL)
            self._cache.move_to_end(key)
            while len(self._cache) > _CACHE_SIZE:
                self._cache.popitem(last=False)
        return reason

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()


def validate_glob_pattern(pattern: str) -> None:
    """Raise :class:`PathValidationError` for traversal or malformed glob patterns."""
    if ".." in pattern:
        raise PathValidationError(pattern, "glob pattern contains directory traversal")
    try:
        re.compile(fnmatch.translate(pattern))
    except re.error as e:
        raise PathValidationError(pattern, f"invalid glob pattern ({e})") from e
    depth = 0
    for char in pattern:
        if char == "[":
            depth += 1
        elif char == "]" and depth:
            depth -= 1
    if depth:
        raise PathValidationError(pattern, "invalid glob pattern (unclosed '[')")


def build_validator(*extra_paths: Iterable[str]) -> PathValidator:
    """Validator protecting the defaults plus every path in *extra_paths*."""
    validator = PathValidator()
    for group in extra_paths:
        for path in group:
            validator.add_protected_path(path)
    return validator
