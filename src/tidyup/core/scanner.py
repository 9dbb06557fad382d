"""Category scanners: find cleanup candidates on the filesystem."""

from __future__ import annotations

import fnmatch
import logging
import os
import stat
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, Iterator

from tidyup.config import Config
from tidyup.core.docker import DockerClient, DockerScanner
from tidyup.core.duplicates import FileStat, find_duplicates
from tidyup.core.pathvalidator import PathValidator, build_validator
from tidyup.core.progress import Phase, ProgressReporter, ScanProgress
from tidyup.models import CandidateEntry, ScanBatch, ScanResult
from tidyup.platform import PlatformInfo
from tidyup.utils import expand_path

log = logging.getLogger(__name__)

DAY = 86400
HOUR = 3600
DEFAULT_BATCH_SIZE = 10_000

LOG_SUFFIXES = (".log", ".log.gz", ".log.bz2", ".log.xz", ".log.1", ".log.2")

CATEGORY_ORDER = ("cache", "temp", "logs", "downloads", "package_managers", "duplicates", "docker")

_SYSTEM_PACKAGE_CACHES = {
    "linux": (
        "/var/cache/apt/archives",
        "/var/cache/yum",
        "/var/cache/dnf",
        "/var/cache/pacman/pkg",
        "/var/lib/snapd/cache",
    ),
    "darwin": ("/Library/Caches/Homebrew", "~/Library/Caches/Homebrew"),
}

_LANGUAGE_CACHES = (
    ("~/.npm", "npm_cache"),
    ("~/.yarn/cache", "yarn_cache"),
    ("~/.cache/yarn", "yarn_cache"),
    ("~/.pnpm-store", "pnpm_cache"),
    ("~/.cache/pip", "pip_cache"),
    ("~/Library/Caches/pip", "pip_cache"),
    ("~/.gem/cache", "gem_cache"),
    ("~/.cargo/registry/cache", "cargo_cache"),
    ("~/.cache/go-build", "go_cache"),
    ("~/Library/Caches/go-build", "go_cache"),
    ("~/.m2/repository", "maven_cache"),
    ("~/.gradle/caches", "gradle_cache"),
    ("~/.composer/cache", "composer_cache"),
    ("~/.cache/composer", "composer_cache"),
    ("~/Library/Caches/CocoaPods", "cocoapods_cache"),
)

CategoryScan = Callable[[], ScanResult]


def is_log_file(name: str) -> bool:
    """Match plain and rotated log file names (``app.log``, ``app.log.3.gz``)."""
    return name.endswith(LOG_SUFFIXES) or ".log." in name


def is_excluded(path: str, config: Config, validator: PathValidator) -> bool:
    if validator.check_cached(path) is not None:
        return True
    for pattern in config.exclude_patterns:
        if fnmatch.fnmatchcase(path, pattern) or pattern in path:
            return True
    for keep in config.whitelist_paths:
        if path == keep or path.startswith(keep.rstrip("/") + "/"):
            return True
    return False


def unique_roots(roots: Iterable[str]) -> list[str]:
    """Drop duplicate roots and roots nested inside another root."""
    out: list[str] = []
    for root in sorted({os.path.normpath(r) for r in roots if r}):
        if any(root == o or root.startswith(o.rstrip("/") + "/") for o in out):
            continue
        out.append(root)
    return out


class Scanner:
    """Walks the configured locations of every enabled category.

    Categories run concurrently on a thread pool; partial results are
    merged under one lock that is never held during a walk.
    """

    def __init__(
        self,
        config: Config,
        platform_info: PlatformInfo,
        *,
        validator: PathValidator | None = None,
        reporter: ProgressReporter | None = None,
        docker: DockerScanner | None = None,
        workers: int | None = None,
    ) -> None:
        self.config = config
        self.platform = platform_info
        self.validator = validator or build_validator(platform_info.protected_paths, config.protected_paths)
        self.reporter = reporter or ProgressReporter()
        self.docker = docker
        self.workers = workers or min(32, (os.cpu_count() or 1) * 2)

    # ── category table ────────────────────────────────────────────────

    def category_scans(self) -> dict[str, CategoryScan]:
        """Every category this scanner can run, enabled or not."""
        return {
            "cache": self.scan_cache,
            "temp": self.scan_temp,
            "logs": self.scan_logs,
            "downloads": self.scan_downloads,
            "package_managers": self.scan_package_managers,
            "duplicates": self.scan_duplicates,
            "docker": self.scan_docker,
        }

    def enabled_scans(self) -> list[tuple[str, CategoryScan]]:
        enabled = []
        for name, scan in self.category_scans().items():
            if name == "docker":
                on = self.config.categories.docker or self.config.docker.enabled
            else:
                on = getattr(self.config.categories, name, False)
            if on:
                enabled.append((name, scan))
        return enabled

    def _expand(self, path: str) -> str:
        return expand_path(path, self.platform.home)

    # ── orchestration ─────────────────────────────────────────────────

    def scan_all(self) -> ScanResult:
        """Scan every enabled category concurrently."""
        scans = self.enabled_scans()
        result = ScanResult()
        lock = threading.Lock()
        start = time.monotonic()
        done = 0

        self.reporter.update_scan(ScanProgress(Phase.SCANNING, categories_total=len(scans), start_time=start))

        def _scan_category(name: str, scan: CategoryScan) -> None:
            nonlocal done
            partial = self._run(name, scan)
            with lock:
                result.merge_into(partial)
                done += 1
                update = ScanProgress(
                    Phase.SCANNING,
                    category=name,
                    files_found=result.total_count,
                    total_size=result.total_size,
                    categories_total=len(scans),
                    categories_done=done,
                    start_time=start,
                )
            self.reporter.update_scan(update)

        if scans:
            with ThreadPoolExecutor(max_workers=min(self.workers, len(scans))) as executor:
                futures = [executor.submit(_scan_category, name, scan) for name, scan in scans]
                for future in futures:
                    future.result()

        result = drop_overlaps(result, [name for name, _ in scans])
        self.reporter.update_scan(
            ScanProgress(
                Phase.COMPLETE,
                files_found=result.total_count,
                total_size=result.total_size,
                categories_total=len(scans),
                categories_done=len(scans),
                start_time=start,
            )
        )
        return result

    def scan_category(self, category: str) -> ScanResult:
        """Run a single category scan regardless of whether it is enabled.

        Raises:
            ValueError: For an unknown category name.
        """
        scan = self.category_scans().get(category)
        if scan is None:
            raise ValueError(f"Unknown category: {category}")
        return self._run(category, scan)

    def _run(self, name: str, scan: CategoryScan) -> ScanResult:
        try:
            return scan()
        except Exception as e:
            log.exception("Category '%s' failed during scan", name)
            return ScanResult(category=name, errors=[f"{name}: scan failed: {e}"])

    # ── skip rules and walking ────────────────────────────────────────

    @property
    def min_file_age(self) -> float:
        return self.config.min_file_age * HOUR

    def is_excluded(self, path: str) -> bool:
        """Protected, matching an exclude pattern, or under a whitelisted path."""
        return is_excluded(path, self.config, self.validator)

    def should_skip_file(self, path: str, st: os.stat_result) -> bool:
        """Excluded, or modified more recently than the minimum file age."""
        return self.is_excluded(path) or time.time() - st.st_mtime < self.min_file_age

    def iter_files(
        self,
        directory: str,
        errors: list[str],
        prune: Callable[[str], bool] | None = None,
    ) -> Iterator[tuple[str, os.stat_result]]:
        """Yield ``(path, lstat)`` for every regular file below *directory*.

        Symlinks are never followed nor reported.  Unreadable directories
        and files vanishing mid-walk are appended to *errors*.
        """

        def _onerror(e: OSError) -> None:
            log.debug("Cannot scan %s: %s", e.filename, e.strerror)
            errors.append(f"{e.filename}: {e.strerror or e}")

        for root, dirs, files in os.walk(directory, onerror=_onerror):
            if prune is not None:
                dirs[:] = [d for d in dirs if not prune(d)]
            for name in files:
                path = os.path.join(root, name)
                try:
                    st = os.lstat(path)
                except FileNotFoundError:
                    errors.append(f"{path}: disappeared during scan")
                    continue
                except OSError as e:
                    errors.append(f"{path}: {e.strerror or e}")
                    continue
                if stat.S_ISREG(st.st_mode):
                    yield path, st

    def walk_directory(
        self,
        directory: str,
        category: str,
        age_threshold: float = 0.0,
        reason: str = "Matches cleanup criteria",
        match: Callable[[str], bool] | None = None,
    ) -> ScanResult:
        """Collect every file below *directory* that passes the skip rules.

        *age_threshold* (seconds) is applied on top of the minimum file
        age; *match* filters on the file name.
        """
        result = ScanResult(category=category)
        if not os.path.isdir(directory):
            return result
        now = time.time()
        for path, st in self.iter_files(directory, result.errors):
            if match is not None and not match(os.path.basename(path)):
                continue
            if self.should_skip_file(path, st):
                continue
            if age_threshold > 0 and now - st.st_mtime < age_threshold:
                continue
            result.add(CandidateEntry(path, st.st_size, st.st_mtime, category, reason))
        return result

    def _walk_many(self, roots: Iterable[tuple[str, str]], category: str, **kwargs) -> ScanResult:
        """Walk every root on its own worker; merge in root order."""
        result = ScanResult(category=category)
        roots = list(roots)
        if roots:
            with ThreadPoolExecutor(max_workers=min(self.workers, len(roots))) as executor:
                futures = [
                    executor.submit(self.walk_directory, root, sub_category, **kwargs)
                    for root, sub_category in roots
                ]
                for future in futures:
                    result.merge_into(future.result())
        result.category = category
        return result

    # ── categories ────────────────────────────────────────────────────

    def scan_cache(self) -> ScanResult:
        roots = unique_roots([*self.platform.cache_dirs, *self.platform.system_caches])
        return self._walk_many(((r, "cache") for r in roots), "cache", reason="Cache file")

    def scan_temp(self) -> ScanResult:
        return self._walk_many(
            ((r, "temp") for r in unique_roots(self.platform.temp_dirs)),
            "temp",
            age_threshold=self.config.age_thresholds.temp * DAY,
            reason="Old temporary file",
        )

    def scan_logs(self) -> ScanResult:
        return self._walk_many(
            ((r, "logs") for r in unique_roots(self.platform.log_dirs)),
            "logs",
            age_threshold=self.config.age_thresholds.logs * DAY,
            reason="Old log file",
            match=is_log_file,
        )

    def scan_downloads(self) -> ScanResult:
        if not self.platform.downloads_dir:
            return ScanResult(category="downloads")
        return self.walk_directory(
            self.platform.downloads_dir,
            "downloads",
            age_threshold=self.config.age_thresholds.downloads * DAY,
            reason="Old download",
        )

    def package_manager_roots(self) -> list[tuple[str, str]]:
        roots = [(self._expand(p), "system_package_cache") for p in _SYSTEM_PACKAGE_CACHES.get(self.platform.os, ())]
        roots += [(self._expand(p), category) for p, category in _LANGUAGE_CACHES]
        return [(p, c) for p, c in roots if os.path.isdir(p)]

    def scan_package_managers(self) -> ScanResult:
        return self._walk_many(self.package_manager_roots(), "package_managers", reason="Package manager cache")

    def scan_duplicates(self) -> ScanResult:
        """Flag content-identical files in the user's document directories."""
        result = ScanResult(category="duplicates")
        files: list[FileStat] = []
        for root in unique_roots(self._expand(p) for p in self.config.duplicates.scan_paths):
            if not os.path.isdir(root):
                continue
            for path, st in self.iter_files(root, result.errors):
                if not self.should_skip_file(path, st):
                    files.append(FileStat(path, st.st_size, st.st_mtime))
        entries, errors = find_duplicates(files, keep=self.config.duplicates.keep)
        for entry in entries:
            result.add(entry)
        result.errors.extend(errors)
        return result

    def scan_docker(self) -> ScanResult:
        if self.docker is not None:
            return self.docker.scan()
        client = DockerClient.connect(self.platform.home)
        if client is None:
            log.info("No Docker socket found, skipping docker category")
            return ScanResult(category="docker")
        with client:
            return DockerScanner(client, self.config.docker).scan()

    # ── streaming ─────────────────────────────────────────────────────

    def scan_all_streaming(
        self,
        cancel: threading.Event | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> Iterator[ScanBatch]:
        """Yield the candidates of every enabled category in batches.

        Categories are scanned one after another.  When *cancel* is set the
        stream ends with an error batch instead of being cut short.
        """
        scans = self.enabled_scans()
        start = time.monotonic()
        files_found = 0
        total_size = 0
        pending: list[ScanBatch] = []

        for done, (name, scan) in enumerate(scans):
            if cancel is not None and cancel.is_set():
                yield ScanBatch(category=name, error="scan cancelled", final=True)
                return
            self.reporter.update_scan(
                ScanProgress(
                    Phase.SCANNING,
                    category=name,
                    files_found=files_found,
                    total_size=total_size,
                    categories_total=len(scans),
                    categories_done=done,
                    start_time=start,
                )
            )
            result = self._run(name, scan)
            files_found += result.total_count
            total_size += result.total_size

            collector = BatchCollector(name, batch_size, pending.append)
            for entry in result.files:
                if cancel is not None and cancel.is_set():
                    collector.send_error("scan cancelled")
                    yield from _drain(pending)
                    return
                collector.add(entry)
                yield from _drain(pending)
            collector.finalize(result.errors)
            yield from _drain(pending)

        self.reporter.update_scan(
            ScanProgress(
                Phase.COMPLETE,
                files_found=files_found,
                total_size=total_size,
                categories_total=len(scans),
                categories_done=len(scans),
                start_time=start,
            )
        )


def _drain(pending: list[ScanBatch]) -> Iterator[ScanBatch]:
    while pending:
        yield pending.pop(0)


class BatchCollector:
    """Groups candidates into fixed-size batches handed to *emit*."""

    def __init__(self, category: str, batch_size: int, emit: Callable[[ScanBatch], None]) -> None:
        if batch_size <= 0:
            batch_size = DEFAULT_BATCH_SIZE
        self.category = category
        self.batch_size = batch_size
        self._emit = emit
        self._current: list[CandidateEntry] = []

    def add(self, entry: CandidateEntry) -> None:
        self._current.append(entry)
        if len(self._current) >= self.batch_size:
            self.flush()

    def flush(self) -> None:
        if not self._current:
            return
        self._emit(ScanBatch(files=self._current, category=self.category))
        self._current = []

    def finalize(self, errors: list[str] | None = None) -> None:
        """Emit whatever is left as the category's final batch (possibly empty)."""
        self._emit(ScanBatch(files=self._current, category=self.category, final=True, errors=list(errors or ())))
        self._current = []

    def send_error(self, message: str) -> None:
        """Abort the stream, discarding the partially filled batch."""
        self._current = []
        self._emit(ScanBatch(category=self.category, error=message, final=True))


def collect_all_batches(batches: Iterable[ScanBatch], cancel: threading.Event | None = None) -> ScanResult:
    """Fold a batch stream back into a single ScanResult."""
    result = ScanResult()
    for batch in batches:
        if cancel is not None and cancel.is_set():
            result.add_error("scan cancelled")
            return result
        if batch.error:
            result.add_error(batch.error)
            continue
        for entry in batch.files:
            result.add(entry)
        result.errors.extend(batch.errors)
    return result


def drop_overlaps(result: ScanResult, order: list[str]) -> ScanResult:
    """Keep one candidate per path, preferring the earliest category in *order*."""
    rank = {name: i for i, name in enumerate(order)}
    chosen: dict[str, CandidateEntry] = {}
    for entry in result.files:
        current = chosen.get(entry.path)
        if current is None or rank.get(entry.category, len(rank)) < rank.get(current.category, len(rank)):
            chosen[entry.path] = entry
    if len(chosen) == len(result.files):
        return result
    deduped = ScanResult(category=result.category, errors=list(result.errors))
    for entry in result.files:
        if chosen.get(entry.path) is entry:
            deduped.add(entry)
    return deduped
