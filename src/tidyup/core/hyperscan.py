"""Cache-accelerated scanner with developer-artifact and large/old file search.

Directories whose modification time has not advanced since the last
run are answered from the scan cache without walking them again.
External tools (``find``, ``mdfind``) are used where they are faster,
with a pure-Python walk as fallback.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Iterable

from tidyup.config import Config
from tidyup.core.scan_cache import CachedDirInfo, ScanCache, cache_key, dir_checksum
from tidyup.core.scanner import CategoryScan, Scanner, unique_roots
from tidyup.models import CandidateEntry, ScanResult
from tidyup.platform import PlatformInfo
from tidyup.utils import bytes_to_human, dir_info, parse_size

log = logging.getLogger(__name__)

FIND_TIMEOUT = 120
MDFIND_TIMEOUT = 60
MAX_ARTIFACT_DEPTH = 6

ARTIFACT_NAMES = {
    "node_modules": ("node_modules",),
    "virtual_envs": ("venv", ".venv", "virtualenv"),
    "build_artifacts": ("dist", "build", ".next", "__pycache__", "target", ".gradle", "out"),
}

# Hidden directories that still hold cache data worth counting.
_HIDDEN_KEEP = (".cache", ".npm")


def worker_count() -> int:
    """Four workers per CPU, clamped to 16..64."""
    return max(16, min(64, (os.cpu_count() or 1) * 4))


def skip_hidden_dir(name: str) -> bool:
    return name.startswith(".") and name not in _HIDDEN_KEEP


def artifact_category(name: str) -> str:
    for category, names in ARTIFACT_NAMES.items():
        if name in names:
            return category
    return ""


class HyperScanner(Scanner):
    """Scanner with a persistent mtime cache and extra developer categories."""

    def __init__(
        self,
        config: Config,
        platform_info: PlatformInfo,
        *,
        cache: ScanCache | None = None,
        **kwargs,
    ) -> None:
        kwargs.setdefault("workers", worker_count())
        super().__init__(config, platform_info, **kwargs)
        self.cache = cache if cache is not None else ScanCache.open()
        self._io = threading.BoundedSemaphore(self.workers)

    def category_scans(self) -> dict[str, CategoryScan]:
        scans = super().category_scans()
        scans.update(
            {
                "node_modules": lambda: self.scan_dev_artifacts("node_modules"),
                "virtual_envs": lambda: self.scan_dev_artifacts("virtual_envs"),
                "build_artifacts": lambda: self.scan_dev_artifacts("build_artifacts"),
                "large_files": self.scan_large_files,
                "old_files": self.scan_old_files,
            }
        )
        return scans

    def scan_all(self) -> ScanResult:
        result = super().scan_all()
        self.cache.save()
        log.debug("Scan cache: %d hits, %d misses", self.cache.hits, self.cache.misses)
        return result

    def scan_category(self, category: str) -> ScanResult:
        result = super().scan_category(category)
        self.cache.save()
        return result

    # ── cached directory walks ────────────────────────────────────────

    def cache_roots(self) -> list[str]:
        home = self.platform.home
        roots = [
            os.path.join(home, "Library", "Caches"),
            os.path.join(home, ".cache"),
            os.path.join(home, ".npm", "_cacache"),
            os.path.join(home, "go", "pkg", "mod", "cache"),
            *self.platform.cache_dirs,
            *self.platform.system_caches,
        ]
        return [r for r in unique_roots(roots) if os.path.isdir(r)]

    def scan_cache(self) -> ScanResult:
        return self.scan_dirs_with_cache(self.cache_roots(), "cache")

    def scan_dirs_with_cache(self, dirs: Iterable[str], category: str) -> ScanResult:
        """Scan each directory concurrently, reusing cached aggregates."""
        result = ScanResult(category=category)
        lock = threading.Lock()

        def _scan(directory: str) -> None:
            partial = self.scan_dir_cached(directory, category)
            with lock:
                result.merge_into(partial)

        dirs = list(dirs)
        if dirs:
            with ThreadPoolExecutor(max_workers=min(self.workers, len(dirs))) as executor:
                for future in [executor.submit(_scan, d) for d in dirs]:
                    future.result()
        result.category = category
        return result

    def scan_dir_cached(self, directory: str, category: str) -> ScanResult:
        """Walk *directory* unless the cache still vouches for it.

        A hit yields one aggregate entry standing for every file the
        cached walk found.
        """
        result = ScanResult(category=category)
        try:
            mtime = os.stat(directory).st_mtime
        except OSError as e:
            result.add_error(f"{directory}: {e.strerror or e}")
            return result

        key = cache_key(directory, category)
        cached = self.cache.lookup(key, mtime)
        if cached is not None:
            if cached.file_count:
                result.add(
                    CandidateEntry(
                        path=cached.path,
                        size=cached.total_size,
                        mod_time=mtime,
                        category=category,
                        reason=f"Cached: {cached.file_count} files",
                        file_count=cached.file_count,
                        is_aggregate=True,
                    )
                )
            return result

        with self._io:
            for path, st in self.iter_files(directory, result.errors, prune=skip_hidden_dir):
                if self.should_skip_file(path, st):
                    continue
                result.add(CandidateEntry(path, st.st_size, st.st_mtime, category, "Cache file"))

        self.cache.store(
            key,
            mtime,
            CachedDirInfo(
                path=directory,
                total_size=result.total_size,
                file_count=result.total_count,
                category=category,
                scanned_at=time.time(),
                checksum=dir_checksum(directory),
            ),
        )
        return result

    # ── developer artifacts ───────────────────────────────────────────

    def project_dirs(self) -> list[str]:
        dirs = (self._expand(d) for d in self.config.dev.project_dirs)
        return [d for d in unique_roots(dirs) if os.path.isdir(d)]

    def scan_dev_artifacts(self, category: str) -> ScanResult:
        """Find *category* artifact directories under the project roots."""
        if category not in ARTIFACT_NAMES:
            raise ValueError(f"Unknown artifact category: {category}")
        result = ScanResult(category=category)
        paths: list[str] = []
        for project in self.project_dirs():
            paths.extend(self._artifact_paths(project, category, result.errors))

        lock = threading.Lock()

        def _add(path: str) -> None:
            entry = self.artifact_entry(path, category)
            if entry is not None:
                with lock:
                    result.add(entry)

        if paths:
            with ThreadPoolExecutor(max_workers=min(self.workers, len(paths))) as executor:
                for future in [executor.submit(_add, p) for p in paths]:
                    future.result()
        return result

    def _artifact_paths(self, project: str, category: str, errors: list[str]) -> list[str]:
        try:
            mtime = os.stat(project).st_mtime
        except OSError as e:
            errors.append(f"{project}: {e.strerror or e}")
            return []
        key = f"devdir:{project}:{category}"
        cached = self.cache.lookup_artifacts(key, mtime)
        if cached is not None:
            return [p for p in cached if os.path.isdir(p)]

        paths = self._find_artifacts(project, category)
        if paths is None:
            log.debug("find unavailable, walking %s manually", project)
            paths = self._find_artifacts_manual(project, category)
        self.cache.store_artifacts(key, mtime, paths)
        return paths

    def _find_artifacts(self, project: str, category: str) -> list[str] | None:
        """Locate artifacts with ``find``; None when find cannot be run."""
        every = [n for names in ARTIFACT_NAMES.values() for n in names]
        wanted = ARTIFACT_NAMES[category]
        args = ["find", project, "-maxdepth", str(MAX_ARTIFACT_DEPTH), "-type", "d", "("]
        args += _name_terms(every)
        args += [")", "-prune", "("]
        args += _name_terms(wanted)
        args += [")", "-print"]
        try:
            with self._io:
                proc = subprocess.run(args, capture_output=True, text=True, timeout=FIND_TIMEOUT)
        except (OSError, subprocess.TimeoutExpired) as e:
            log.warning("find failed in %s: %s", project, e)
            return None
        if proc.returncode != 0:
            log.debug("find exited with %d in %s", proc.returncode, project)
        return [line for line in proc.stdout.splitlines() if line.strip()]

    def _find_artifacts_manual(self, project: str, category: str) -> list[str]:
        found: list[str] = []
        stack = [(project, 0)]
        while stack:
            current, depth = stack.pop()
            if depth >= MAX_ARTIFACT_DEPTH:
                continue
            try:
                with os.scandir(current) as it:
                    entries = [e for e in it if e.is_dir(follow_symlinks=False)]
            except OSError:
                log.debug("Cannot read directory: %s", current)
                continue
            for entry in sorted(entries, key=lambda e: e.name):
                kind = artifact_category(entry.name)
                if kind == category:
                    found.append(entry.path)
                elif kind or (entry.name.startswith(".") and entry.name not in (".venv", ".next")):
                    continue
                else:
                    stack.append((entry.path, depth + 1))
        return found

    def artifact_entry(self, path: str, category: str) -> CandidateEntry | None:
        """Size an artifact directory, from the cache when unchanged."""
        if self.is_excluded(path):
            return None
        try:
            mtime = os.stat(path).st_mtime
        except OSError:
            return None
        key = f"artifact:{path}"
        cached = self.cache.lookup(key, mtime)
        if cached is not None:
            return CandidateEntry(
                path=path,
                size=cached.total_size,
                mod_time=mtime,
                category=category,
                reason=f"Dev artifact: {cached.file_count} files (cached)",
                file_count=max(cached.file_count, 1),
            )
        with self._io:
            size, count = dir_info(path)
        self.cache.store(
            key,
            mtime,
            CachedDirInfo(path, size, count, category, time.time(), dir_checksum(path)),
        )
        return CandidateEntry(
            path=path,
            size=size,
            mod_time=mtime,
            category=category,
            reason=f"Dev artifact: {count} files",
            file_count=max(count, 1),
        )

    # ── large and old files ───────────────────────────────────────────

    def _size_bounds(self) -> tuple[int, int]:
        return parse_size(self.config.size_limits.min_file_size), parse_size(self.config.size_limits.max_file_size)

    def scan_large_files(self) -> ScanResult:
        result = ScanResult(category="large_files")
        min_size = parse_size(self.config.large_files.min_size)
        _, max_size = self._size_bounds()
        excludes = [self._expand(p) for p in self.config.large_files.exclude_paths]
        roots = [r for r in unique_roots(self._expand(p) for p in self.config.large_files.scan_paths) if os.path.isdir(r)]

        for root in roots:
            paths = _mdfind(root, f"kMDItemFSSize > {min_size}")
            if paths is None:
                candidates = self._walk_excluding(root, excludes, result.errors)
            else:
                candidates = _stat_paths(p for p in paths if not _under_any(p, excludes))
            for path, st in candidates:
                if not min_size <= st.st_size <= max_size or self.should_skip_file(path, st):
                    continue
                result.add(
                    CandidateEntry(path, st.st_size, st.st_mtime, "large_files", f"Large file ({bytes_to_human(st.st_size)})")
                )
        return result

    def scan_old_files(self) -> ScanResult:
        result = ScanResult(category="old_files")
        cutoff = datetime.now() - timedelta(days=self.config.old_files.min_age_days)
        min_size, max_size = self._size_bounds()
        excludes = [self._expand(p) for p in self.config.old_files.exclude_paths]
        roots = [r for r in unique_roots(self._expand(p) for p in self.config.old_files.scan_paths) if os.path.isdir(r)]

        for root in roots:
            paths = _mdfind(root, f"kMDItemLastUsedDate < $time.iso({cutoff:%Y-%m-%d})")
            if paths is None:
                candidates = (
                    (p, st)
                    for p, st in self._walk_excluding(root, excludes, result.errors)
                    if st.st_mtime < cutoff.timestamp()
                )
            else:
                candidates = _stat_paths(p for p in paths if not _under_any(p, excludes))
            for path, st in candidates:
                if not min_size <= st.st_size <= max_size or self.should_skip_file(path, st):
                    continue
                result.add(
                    CandidateEntry(
                        path, st.st_size, st.st_mtime, "old_files", f"Not used in {self.config.old_files.min_age_days} days"
                    )
                )
        return result

    def _walk_excluding(self, root: str, excludes: list[str], errors: list[str]):
        for path, st in self.iter_files(root, errors):
            if not _under_any(path, excludes):
                yield path, st


def _name_terms(names: Iterable[str]) -> list[str]:
    terms: list[str] = []
    for name in names:
        if terms:
            terms.append("-o")
        terms += ["-name", name]
    return terms


def _under_any(path: str, roots: list[str]) -> bool:
    return any(path == r or path.startswith(r.rstrip("/") + "/") for r in roots)


def _stat_paths(paths: Iterable[str]):
    for path in paths:
        try:
            st = os.lstat(path)
        except OSError:
            continue
        if stat.S_ISREG(st.st_mode):
            yield path, st


def _mdfind(root: str, query: str) -> list[str] | None:
    """Query the Spotlight index; None when it is unavailable or fails."""
    if shutil.which("mdfind") is None:
        return None
    try:
        proc = subprocess.run(
            ["mdfind", "-onlyin", root, query],
            capture_output=True,
            text=True,
            timeout=MDFIND_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        log.warning("mdfind failed, falling back to a manual walk: %s", e)
        return None
    if proc.returncode != 0:
        log.warning("mdfind exited with %d, falling back to a manual walk", proc.returncode)
        return None
    return [line.strip() for line in proc.stdout.splitlines() if line.strip()]
