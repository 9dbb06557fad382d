"""Deletion engine: turns a scan result into a clean result.

Candidates are partitioned by :class:`PermissionAnalyzer` and each
bucket is handled on its own: normal paths are removed directly with a
bounded retry, sudo paths go through :class:`SudoManager` in batches,
special and inaccessible paths are skipped.  Every candidate ends up
exactly once in the result's deleted or skipped list.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import time
from pathlib import Path
from typing import Callable

from tidyup.config import Config
from tidyup.core.docker import DockerClient, DockerError, DockerScanner
from tidyup.core.errors import DeletionError, ErrorReason, categorize_error
from tidyup.core.hyperscan import skip_hidden_dir
from tidyup.core.manifest import DeletionManifest
from tidyup.core.pathvalidator import PathValidator, build_validator
from tidyup.core.permissions import PermissionAnalyzer, is_safe_to_delete, verify_deletion_safe
from tidyup.core.privileges import PasswordProvider, PrivilegeError, SudoManager
from tidyup.core.progress import CleanProgress, Phase, ProgressReporter
from tidyup.core.scanner import HOUR, is_excluded
from tidyup.models import CandidateEntry, CleanResult, PermissionReport, ScanResult

log = logging.getLogger(__name__)

# Pauses between attempts at a busy file: three attempts in total.
RETRY_DELAYS = (0.1, 0.5)


class CleanerError(Exception):
    """A cleanup aborted part way through.

    ``result`` holds whatever was deleted or skipped before the failure.
    """

    def __init__(self, message: str, result: CleanResult) -> None:
        super().__init__(message)
        self.result = result


class _Skip(Exception):
    def __init__(self, reason: str, error: DeletionError | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.error = error


class Cleaner:
    """Deletes scan candidates and keeps an audit manifest of the run."""

    def __init__(
        self,
        config: Config,
        *,
        validator: PathValidator | None = None,
        analyzer: PermissionAnalyzer | None = None,
        sudo: SudoManager | None = None,
        password_provider: PasswordProvider | None = None,
        docker: DockerScanner | None = None,
        reporter: ProgressReporter | None = None,
        ask_sudo: bool | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.validator = validator or build_validator(config.protected_paths)
        self.analyzer = analyzer or PermissionAnalyzer()
        self.sudo = sudo or SudoManager(password_provider, self.validator, use_pkexec=config.sudo.use_pkexec)
        self.docker = docker
        self.reporter = reporter
        self.ask_sudo = config.sudo.ask if ask_sudo is None else ask_sudo
        self.manifest = DeletionManifest()
        self._sleep = sleep
        self._progress = CleanProgress(phase=Phase.CLEANING)

    # ── public API ────────────────────────────────────────────────────

    def clean(self, scan_result: ScanResult) -> CleanResult:
        """Delete every candidate of *scan_result*.

        The elevated credential, if one was obtained, is wiped before this
        returns, whether the run finished or not.

        Raises:
            CleanerError: On an unexpected failure; carries the partial result.
        """
        result = CleanResult(dry_run=self.config.dry_run)
        self._progress = CleanProgress(
            phase=Phase.CLEANING,
            total_files=len(scan_result.files),
            total_size=sum(e.size for e in scan_result.files),
        )
        self._report()
        try:
            if self.config.dry_run:
                for entry in scan_result.files:
                    result.record_deleted(entry.path, entry.size, entry.category)
                    log.info("[dry run] would delete %s (%d bytes)", entry.path, entry.size)
            else:
                self._clean(scan_result.files, result)
        except Exception as e:
            log.exception("Cleanup failed after %d of %d candidates", result.processed, len(scan_result.files))
            self._progress.phase = Phase.ERROR
            self._progress.error = str(e)
            self._report()
            raise CleanerError(f"cleanup failed: {e}", result) from e
        finally:
            if result.used_sudo or self.sudo.authenticated:
                self.sudo.clear()

        self._sync_progress(result)
        self._progress.phase = Phase.COMPLETE
        self._report()
        log.info(
            "Cleanup finished: %d deleted (%d bytes), %d skipped, %d errors",
            len(result.deleted_files), result.deleted_size, len(result.skipped_files), len(result.errors),
        )
        return result

    def clean_category(self, scan_result: ScanResult, category: str) -> CleanResult:
        return self.clean(scan_result.filter_category(category))

    def get_manifest(self) -> DeletionManifest:
        return self.manifest

    def save_manifest(self, path: Path | str) -> None:
        self.manifest.save(path)

    def get_permission_report(self, scan_result: ScanResult) -> PermissionReport:
        """Partition the filesystem candidates of *scan_result* without deleting anything."""
        sizes = {e.path: e.size for e in scan_result.files}
        paths = [e.path for e in scan_result.files if not e.is_docker]
        return self.analyzer.analyze_permissions(paths, sizes.get)

    # ── buckets ───────────────────────────────────────────────────────

    def _clean(self, entries: list[CandidateEntry], result: CleanResult) -> None:
        docker_entries = [e for e in entries if e.is_docker]
        aggregates = [e for e in entries if e.is_aggregate]
        plain = [e for e in entries if not e.is_docker and not e.is_aggregate]
        by_path = {e.path: e for e in plain}

        if docker_entries:
            self._clean_docker(docker_entries, result)

        for entry in aggregates:
            self._purge_aggregate(entry, result)

        report = self.analyzer.analyze_permissions([e.path for e in plain], lambda p: by_path[p].size)
        log.debug(
            "Permission report for %s: %d normal, %d sudo, %d special, %d inaccessible",
            self.analyzer.user_info(),
            len(report.normal), len(report.requires_sudo), len(report.special), len(report.inaccessible),
        )

        for entry in plain:
            if not report.details[entry.path].exists:
                # Already gone, nothing left to reclaim.
                result.record_deleted(entry.path, 0, entry.category)

        for path in report.normal:
            self._delete_with_retry(by_path[path], result)

        if report.requires_sudo:
            self._clean_sudo([by_path[p] for p in report.requires_sudo], result)

        for path, kind in report.special.items():
            result.record_skipped(path, f"Special file: {kind}")
        for path, reason in report.inaccessible.items():
            result.record_skipped(path, f"Inaccessible: {reason}")
        self._sync_progress(result)

    def _delete_with_retry(self, entry: CandidateEntry, result: CleanResult) -> None:
        self._progress.current_file = entry.path
        delays = iter(RETRY_DELAYS)
        logged = False
        while True:
            try:
                st = self._recheck(entry)
                if st is None:
                    freed = 0
                else:
                    self._safety_check(entry.path)
                    if not logged:
                        # One audit line per candidate, however many attempts it takes.
                        self.manifest.add(entry.path, entry.size, entry.category)
                        logged = True
                    freed = self._remove(entry, st)
            except _Skip as skip:
                result.record_skipped(entry.path, skip.reason)
                if skip.error is not None:
                    result.errors.append(skip.error)
                break
            except DeletionError as err:
                delay = next(delays, None) if err.retryable else None
                if delay is not None:
                    log.debug("Retrying %s in %.1fs: %s", entry.path, delay, err)
                    self._sleep(delay)
                    continue
                result.record_skipped(entry.path, err.user_message())
                result.errors.append(err)
                break
            else:
                result.record_deleted(entry.path, freed, entry.category)
                break
        self._sync_progress(result)

    def _remove(self, entry: CandidateEntry, st: os.stat_result) -> int:
        """Remove one re-checked candidate; return bytes freed."""
        path = entry.path
        try:
            if stat.S_ISDIR(st.st_mode):
                shutil.rmtree(path)
            else:
                os.remove(path)
        except FileNotFoundError:
            return 0
        except OSError as e:
            raise categorize_error(path, e) from e
        log.debug("Deleted %s", path)
        return entry.size

    def _recheck(self, entry: CandidateEntry) -> os.stat_result | None:
        """Re-stat *entry* right before removal; None when it is already gone."""
        path = entry.path
        try:
            st = os.lstat(path)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise categorize_error(path, e) from e

        if stat.S_ISLNK(st.st_mode):
            raise _Skip(
                "File changed to symlink (security check)",
                DeletionError(path, ErrorReason.INVALID_PATH, "path became a symlink after scan"),
            )
        if time.time() - st.st_mtime < self.config.min_file_age * HOUR:
            raise _Skip("File too new (safety check)")
        if stat.S_ISREG(st.st_mode) and entry.size > 0:
            if reason := verify_deletion_safe(path, 0, entry.size):
                raise _Skip(f"File changed since scan: {reason}")
        return st

    def _safety_check(self, path: str) -> None:
        if reason := self.validator.check(path) or is_safe_to_delete(path):
            raise _Skip(f"Safety check failed: {reason}", DeletionError(path, ErrorReason.INVALID_PATH, reason))

    def _check_aggregate_root(self, path: str) -> bool:
        """Make sure a cached directory is still a real directory before walking it.

        Returns False when the directory is already gone.
        """
        try:
            st = os.lstat(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise _Skip(f"Inaccessible: {e.strerror or e}", categorize_error(path, e)) from e
        if stat.S_ISLNK(st.st_mode) or not stat.S_ISDIR(st.st_mode):
            raise _Skip(
                "File changed to symlink (security check)",
                DeletionError(path, ErrorReason.INVALID_PATH, "cached directory is no longer a directory"),
            )
        self._safety_check(path)
        return True

    def _purge_aggregate(self, entry: CandidateEntry, result: CleanResult) -> None:
        """Remove the files below a cached directory, keeping the directory.

        The same filters as a full walk apply to every file, since the
        cache only vouched for the directory as a whole.
        """
        self._progress.current_file = entry.path
        try:
            if not self._check_aggregate_root(entry.path):
                result.record_deleted(entry.path, 0, entry.category)
                self._sync_progress(result)
                return
        except _Skip as skip:
            result.record_skipped(entry.path, skip.reason)
            if skip.error is not None:
                result.errors.append(skip.error)
            self._sync_progress(result)
            return

        min_age = self.config.min_file_age * HOUR
        freed = deleted = 0
        failures: list[DeletionError] = []

        for root, dirs, files in os.walk(entry.path):
            dirs[:] = [d for d in dirs if not skip_hidden_dir(d)]
            for name in files:
                path = os.path.join(root, name)
                try:
                    st = os.lstat(path)
                except OSError:
                    continue
                if not stat.S_ISREG(st.st_mode):
                    continue
                if is_excluded(path, self.config, self.validator) or time.time() - st.st_mtime < min_age:
                    continue
                if not self.analyzer.can_delete(path):
                    failures.append(DeletionError(path, ErrorReason.PERMISSION_DENIED, "no delete permission", needs_sudo=True))
                    continue
                self.manifest.add(path, st.st_size, entry.category)
                try:
                    os.remove(path)
                except FileNotFoundError:
                    continue
                except OSError as e:
                    failures.append(categorize_error(path, e))
                    continue
                freed += st.st_size
                deleted += 1

        result.errors.extend(failures)
        if deleted:
            result.record_deleted(entry.path, freed, entry.category)
            log.debug("Purged %d files (%d bytes) below %s", deleted, freed, entry.path)
        elif failures:
            result.record_skipped(entry.path, f"No files could be removed ({len(failures)} failed)")
        else:
            result.record_skipped(entry.path, "Nothing left to remove")
        self._sync_progress(result)

    def _clean_sudo(self, entries: list[CandidateEntry], result: CleanResult) -> None:
        if not self.ask_sudo or not self.sudo.available:
            for entry in entries:
                result.record_skipped(entry.path, "Requires elevated permissions")
            return

        self._progress.sudo_prompted = True
        self._report()
        try:
            self.sudo.prompt_for_password()
        except PrivilegeError as e:
            log.warning("Elevated deletion unavailable: %s", e)
            for entry in entries:
                result.record_skipped(entry.path, "Requires elevated permissions (sudo declined)")
            return

        result.used_sudo = True
        self._progress.using_sudo = True
        self.sudo.start_keep_alive()

        queued: dict[str, CandidateEntry] = {}
        for entry in entries:
            try:
                if self._recheck(entry) is None:
                    result.record_deleted(entry.path, 0, entry.category)
                    continue
                self._safety_check(entry.path)
            except _Skip as skip:
                result.record_skipped(entry.path, skip.reason)
                if skip.error is not None:
                    result.errors.append(skip.error)
                continue
            except DeletionError as err:
                result.record_skipped(entry.path, err.user_message())
                result.errors.append(err)
                continue
            self.manifest.add(entry.path, entry.size, entry.category)
            queued[entry.path] = entry

        succeeded, failed = self.sudo.delete_files(list(queued))
        for path in succeeded:
            result.record_deleted(path, queued[path].size, queued[path].category)
            result.sudo_succeeded += 1
        for path, message in failed.items():
            err = _sudo_error(path, message)
            result.record_skipped(path, err.user_message())
            result.errors.append(err)
            result.sudo_failed += 1
        self._sync_progress(result)

    def _clean_docker(self, entries: list[CandidateEntry], result: CleanResult) -> None:
        scanner = self.docker
        client: DockerClient | None = None
        if scanner is None:
            client = DockerClient.connect()
            if client is None:
                for entry in entries:
                    result.record_skipped(entry.path, "Docker daemon not available")
                return
            scanner = DockerScanner(client, self.config.docker)
        try:
            for entry in entries:
                self._progress.current_file = entry.path
                self.manifest.add(entry.path, entry.size, entry.category)
                try:
                    scanner.remove(entry)
                except DockerError as e:
                    err = DeletionError(entry.path, ErrorReason.UNKNOWN, e)
                    result.record_skipped(entry.path, err.user_message())
                    result.errors.append(err)
                else:
                    result.record_deleted(entry.path, entry.size, entry.category)
                self._sync_progress(result)
        finally:
            if client is not None:
                client.close()

    # ── progress ──────────────────────────────────────────────────────

    def _sync_progress(self, result: CleanResult) -> None:
        p = self._progress
        p.deleted_files = len(result.deleted_files)
        p.deleted_size = result.deleted_size
        p.skipped_files = len(result.skipped_files)
        p.error_count = len(result.errors)
        self._report()

    def _report(self) -> None:
        if self.reporter is None:
            return
        p = self._progress
        self.reporter.update_clean(CleanProgress(
            phase=p.phase,
            current_file=p.current_file,
            deleted_files=p.deleted_files,
            total_files=p.total_files,
            deleted_size=p.deleted_size,
            total_size=p.total_size,
            skipped_files=p.skipped_files,
            error_count=p.error_count,
            start_time=p.start_time,
            using_sudo=p.using_sudo,
            sudo_prompted=p.sudo_prompted,
            error=p.error,
        ))


def _sudo_error(path: str, message: str) -> DeletionError:
    lowered = message.lower()
    if "validation failed" in lowered or "protected" in lowered:
        return DeletionError(path, ErrorReason.INVALID_PATH, message)
    if "not authenticated" in lowered or "permission denied" in lowered:
        return DeletionError(path, ErrorReason.PERMISSION_DENIED, message, needs_sudo=True)
    if "busy" in lowered or "in use" in lowered:
        return DeletionError(path, ErrorReason.FILE_IN_USE, message, retryable=True)
    return DeletionError(path, ErrorReason.UNKNOWN, message)
