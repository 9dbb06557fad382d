"""Persistent mtime-keyed cache of directory scan aggregates.

The on-disk form is a pickle of plain builtins (dicts, lists, strings,
numbers).  Loading refuses any pickled class reference, and any
structural or version mismatch is treated as an empty cache.
"""

from __future__ import annotations

import hashlib
import io
import logging
import os
import pickle
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterator

from tidyup.utils import xdg_cache_home

log = logging.getLogger(__name__)

CACHE_VERSION = 1
MAX_CACHE_AGE = 3600.0


def default_cache_path() -> Path:
    return xdg_cache_home() / "tidyup" / "scan_cache.pickle"


def dir_checksum(path: str) -> str:
    """Quick fingerprint of a directory's own inode metadata."""
    try:
        st = os.stat(path)
    except OSError:
        return ""
    data = f"{path}:{int(st.st_mtime)}:{st.st_size}"
    return hashlib.md5(data.encode(), usedforsecurity=False).hexdigest()


@dataclass(slots=True)
class CachedDirInfo:
    path: str
    total_size: int
    file_count: int
    category: str
    scanned_at: float
    checksum: str = ""


@dataclass(slots=True)
class ScanCacheData:
    version: int = CACHE_VERSION
    last_scan: float = 0.0
    dir_mtimes: dict[str, float] = field(default_factory=dict)
    dir_results: dict[str, CachedDirInfo] = field(default_factory=dict)
    artifact_dirs: dict[str, list[str]] = field(default_factory=dict)


class _ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class _PlainUnpickler(pickle.Unpickler):
    def find_class(self, module: str, name: str) -> Any:
        raise pickle.UnpicklingError(f"refusing to load {module}.{name}")


def cache_key(directory: str, category: str) -> str:
    return f"{directory}:{category}"


class ScanCache:
    """Owned, injectable scan cache.

    Pass ``path=None`` for a purely in-memory cache.  Lookups take the
    shared lock; stores take the exclusive lock only around the dict
    update.
    """

    def __init__(self, path: Path | None = None, max_age: float = MAX_CACHE_AGE) -> None:
        self.path = path
        self.max_age = max_age
        self.data = ScanCacheData()
        self._lock = _ReadWriteLock()
        self.hits = 0
        self.misses = 0

    @classmethod
    def open(cls, path: Path | None = None) -> ScanCache:
        cache = cls(path or default_cache_path())
        cache.load()
        return cache

    def load(self) -> None:
        """Replace the in-memory data with the file contents, if usable."""
        self.data = ScanCacheData()
        if self.path is None or not self.path.exists():
            return
        try:
            raw = _PlainUnpickler(io.BytesIO(self.path.read_bytes())).load()
            data = _from_plain(raw)
        except (OSError, pickle.UnpicklingError, EOFError, KeyError, TypeError, ValueError, AttributeError) as e:
            log.warning("Ignoring unreadable scan cache %s: %s", self.path, e)
            return
        if data.version != CACHE_VERSION:
            log.info("Discarding scan cache with version %s", data.version)
            return
        if time.time() - data.last_scan >= self.max_age:
            log.debug("Discarding stale scan cache from %s", time.ctime(data.last_scan))
            return
        self.data = data

    def save(self) -> None:
        """Persist the cache, stamping ``last_scan``."""
        if self.path is None:
            return
        with self._lock.read():
            self.data.last_scan = time.time()
            payload = pickle.dumps(_to_plain(self.data), protocol=pickle.HIGHEST_PROTOCOL)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".tmp")
            tmp.write_bytes(payload)
            os.replace(tmp, self.path)
        except OSError as e:
            log.warning("Could not save scan cache to %s: %s", self.path, e)

    def clear(self) -> None:
        with self._lock.write():
            self.data = ScanCacheData()
        if self.path is not None:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass

    def lookup(self, key: str, mtime: float) -> CachedDirInfo | None:
        """Return the cached aggregate if the directory has not changed since."""
        with self._lock.read():
            cached_mtime = self.data.dir_mtimes.get(key)
            cached = self.data.dir_results.get(key)
        if cached is None or cached_mtime is None or mtime > cached_mtime:
            self.misses += 1
            return None
        if cached.checksum and cached.checksum != dir_checksum(cached.path):
            self.misses += 1
            return None
        self.hits += 1
        return cached

    def store(self, key: str, mtime: float, info: CachedDirInfo) -> None:
        with self._lock.write():
            self.data.dir_mtimes[key] = mtime
            self.data.dir_results[key] = info

    def lookup_artifacts(self, key: str, mtime: float) -> list[str] | None:
        with self._lock.read():
            cached_mtime = self.data.dir_mtimes.get(key)
            paths = self.data.artifact_dirs.get(key)
        if paths is None or cached_mtime is None or mtime > cached_mtime:
            self.misses += 1
            return None
        self.hits += 1
        return list(paths)

    def store_artifacts(self, key: str, mtime: float, paths: list[str]) -> None:
        with self._lock.write():
            self.data.dir_mtimes[key] = mtime
            self.data.artifact_dirs[key] = list(paths)


def _to_plain(data: ScanCacheData) -> dict[str, Any]:
    return {
        "version": data.version,
        "last_scan": data.last_scan,
        "dir_mtimes": dict(data.dir_mtimes),
        "dir_results": {k: asdict(v) for k, v in data.dir_results.items()},
        "artifact_dirs": {k: list(v) for k, v in data.artifact_dirs.items()},
    }


def _from_plain(raw: Any) -> ScanCacheData:
    if not isinstance(raw, dict):
        raise TypeError("scan cache root is not a mapping")
    return ScanCacheData(
        version=int(raw["version"]),
        last_scan=float(raw["last_scan"]),
        dir_mtimes={str(k): float(v) for k, v in raw["dir_mtimes"].items()},
        dir_results={str(k): CachedDirInfo(**v) for k, v in raw["dir_results"].items()},
        artifact_dirs={str(k): [str(p) for p in v] for k, v in raw.get("artifact_dirs", {}).items()},
    )
