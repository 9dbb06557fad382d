"""D-Bus service for desktop front-ends.

D-Bus methods use PascalCase per D-Bus convention, and type signatures
like "as" and "(ss)" are D-Bus protocol types, not Python syntax.

The service never prompts for a password: candidates that need
elevated permissions are skipped unless the service itself runs as root.
"""

from __future__ import annotations

import asyncio
import json
import logging

from dbus_next.aio import MessageBus
from dbus_next.service import ServiceInterface, method, signal
from dbus_next import BusType

from tidyup import config as config_mod
from tidyup.config import ConfigError
from tidyup.core.cleaner import Cleaner, CleanerError
from tidyup.core.hyperscan import HyperScanner
from tidyup.core.privileges import is_root
from tidyup.core.progress import CleanProgress, ProgressReporter, ScanProgress
from tidyup.core.scanner import CATEGORY_ORDER, drop_overlaps
from tidyup.core.tracker import Tracker
from tidyup.models import ScanResult, merge_results
from tidyup.platform import get_info
from tidyup.storage import load_history

log = logging.getLogger(__name__)

_BUS_NAME = "io.github.tidyup"
_OBJECT_PATH = "/io/github/tidyup"
_INTERFACE = "io.github.tidyup.Manager"


class _SignalReporter(ProgressReporter):
    """Forwards progress updates as D-Bus signals on the service's loop."""

    def __init__(self, service: TidyUpDBusService, loop: asyncio.AbstractEventLoop | None) -> None:
        super().__init__()
        self._service = service
        self._loop = loop

    def _emit(self, fn, *args) -> None:
        if self._loop is None:
            fn(*args)
        else:
            self._loop.call_soon_threadsafe(fn, *args)

    def update_scan(self, update: ScanProgress) -> None:
        super().update_scan(update)
        self._emit(self._service.ScanProgress, update.phase.value, update.category, update.files_found, update.total_size)

    def update_clean(self, update: CleanProgress) -> None:
        super().update_clean(update)
        self._emit(
            self._service.CleanProgress,
            update.phase.value, update.deleted_files, update.total_files, update.deleted_size,
        )


# noinspection PyPep8Naming,DuplicatedCode
class TidyUpDBusService(ServiceInterface):
    """D-Bus service interface for TidyUp."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        super().__init__(_INTERFACE)
        self._reporter = _SignalReporter(self, loop)
        self._tracker = Tracker()
        self._last_scan: ScanResult | None = None

    def _scan(self, categories: list[str]) -> ScanResult:
        config = config_mod.load()
        scanner = HyperScanner(config, get_info(), reporter=self._reporter)
        if not categories:
            result = scanner.scan_all()
        else:
            result = drop_overlaps(
                merge_results(*(scanner.scan_category(c) for c in categories)),
                [*CATEGORY_ORDER, *scanner.category_scans()],
            )
        self._last_scan = result
        return result

    @method()
    def Scan(self, categories: "as") -> "s":  # type: ignore[override]
        """Scan the given categories (all enabled ones when empty), returning JSON."""
        try:
            result = self._scan(list(categories))
        except (ConfigError, ValueError) as e:
            return json.dumps({"error": str(e)})
        return json.dumps({
            "total_size": result.total_size,
            "total_count": result.total_count,
            "errors": result.errors,
            "files": [
                {"path": e.path, "size": e.size, "category": e.category, "reason": e.reason}
                for e in result.files
            ],
        })

    @method()
    def Clean(self, entry_paths: "as", dry_run: "b") -> "s":  # type: ignore[override]
        """Clean entries of the last scan (all of them when *entry_paths* is empty)."""
        if self._last_scan is None:
            return json.dumps({"error": "No scan results, call Scan first"})
        try:
            config = config_mod.load()
        except ConfigError as e:
            return json.dumps({"error": str(e)})
        config.dry_run = config.dry_run or dry_run

        wanted = set(entry_paths)
        scan_result = ScanResult()
        for entry in self._last_scan.files:
            if not wanted or entry.path in wanted:
                scan_result.add(entry)

        cleaner = Cleaner(config, reporter=self._reporter, ask_sudo=False)
        status = "cleaned"
        try:
            result = cleaner.clean(scan_result)
        except CleanerError as e:
            self.CleanError(str(e))
            result = e.result
            status = "failed"

        self._tracker.record(result)
        self._tracker.save_session()
        return json.dumps({
            "status": status,
            "dry_run": result.dry_run,
            "deleted_files": len(result.deleted_files),
            "deleted_size": result.deleted_size,
            "skipped": result.skipped_reasons,
            "errors": [e.user_message() for e in result.errors],
        })

    @method()
    def GetPermissionReport(self) -> "s":  # type: ignore[override]
        """Partition the last scan's candidates by who may delete them."""
        if self._last_scan is None:
            return json.dumps({"error": "No scan results, call Scan first"})
        report = Cleaner(config_mod.Config(), ask_sudo=False).get_permission_report(self._last_scan)
        return json.dumps({
            "normal": report.normal,
            "requires_sudo": report.requires_sudo,
            "special": report.special,
            "inaccessible": report.inaccessible,
            "total_normal_size": report.total_normal_size,
            "total_sudo_size": report.total_sudo_size,
        })

    @method()
    def GetStats(self, period: "s") -> "s":  # type: ignore[override]
        """Get statistics for a time period."""
        return json.dumps(self._tracker.get_stats(period))

    @method()
    def GetHistory(self) -> "s":  # type: ignore[override]
        """Get full cleanup history."""
        return json.dumps(load_history())

    @signal()
    def ScanProgress(self, phase: str, category: str, files_found: int, total_size: int) -> "(ssut)":  # type: ignore[override]
        return [phase, category, files_found, total_size]

    @signal()
    def CleanProgress(self, phase: str, deleted: int, total: int, deleted_size: int) -> "(suut)":  # type: ignore[override]
        return [phase, deleted, total, deleted_size]

    @signal()
    def CleanError(self, message: str) -> "s":  # type: ignore[override]
        return message


async def run_service() -> None:
    """Start the D-Bus service."""
    bus = await MessageBus(bus_type=BusType.SESSION).connect()
    service = TidyUpDBusService(asyncio.get_running_loop())
    bus.export(_OBJECT_PATH, service)
    await bus.request_name(_BUS_NAME)
    log.info("D-Bus service started on %s", _BUS_NAME)
    if is_root():
        log.warning("Running as root: candidates needing elevated permissions will be removed directly")
    await bus.wait_for_disconnect()


def start_service() -> None:
    """Entry point to start the D-Bus service."""
    asyncio.run(run_service())
