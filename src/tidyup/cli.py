"""CLI interface for TidyUp."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click

from tidyup import config as config_mod
from tidyup.config import Config, ConfigError
from tidyup.core.cleaner import Cleaner, CleanerError
from tidyup.core.errors import format_error_summary
from tidyup.core.hyperscan import ARTIFACT_NAMES, HyperScanner
from tidyup.core.scan_cache import ScanCache
from tidyup.core.scanner import CATEGORY_ORDER, DEFAULT_BATCH_SIZE, drop_overlaps
from tidyup.core.tracker import PERIODS, Tracker
from tidyup.models import CleanResult, ScanResult, merge_results
from tidyup.platform import UnsupportedPlatformError, get_info
from tidyup.storage import clear_history
from tidyup.utils import bytes_to_human

ALL_CATEGORIES = (*CATEGORY_ORDER, *ARTIFACT_NAMES, "large_files", "old_files")


def _setup_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def _load_config(ctx: click.Context) -> Config:
    try:
        return config_mod.load(ctx.obj.get("config_path"))
    except ConfigError as e:
        raise click.ClickException(str(e)) from e


def _build_scanner(config: Config, use_cache: bool = True) -> HyperScanner:
    try:
        info = get_info()
    except UnsupportedPlatformError as e:
        raise click.ClickException(str(e)) from e
    cache = ScanCache.open() if use_cache else ScanCache()
    return HyperScanner(config, info, cache=cache)


def _run_scan(scanner: HyperScanner, categories: tuple[str, ...]) -> ScanResult:
    if not categories:
        return scanner.scan_all()
    result = merge_results(*(scanner.scan_category(c) for c in categories))
    return drop_overlaps(result, list(ALL_CATEGORIES))


def _prompt_password(attempt: int) -> str | None:
    if attempt > 1:
        click.echo(click.style("Sorry, try again.", fg="yellow"), err=True)
    try:
        return click.prompt("[sudo] password", hide_input=True, err=True)
    except click.Abort:
        return None


def _print_categories(result: ScanResult) -> None:
    groups = result.group_by_category()
    for name, group in sorted(groups.items(), key=lambda x: x[1].total_size, reverse=True):
        click.echo(
            f"  {click.style('✓', fg='green')} {name:25s} — "
            f"{click.style(bytes_to_human(group.total_size), fg='green', bold=True)} ({group.total_count:,} files)"
        )


def _entry_dict(entry) -> dict:
    return {
        "path": entry.path,
        "size": entry.size,
        "category": entry.category,
        "reason": entry.reason,
        "mod_time": entry.mod_time,
        "file_count": entry.file_count,
    }


def _clean_dict(result: CleanResult) -> dict:
    return {
        "dry_run": result.dry_run,
        "deleted_files": len(result.deleted_files),
        "deleted_size": result.deleted_size,
        "skipped_files": len(result.skipped_files),
        "skipped": result.skipped_reasons,
        "errors": [str(e) for e in result.errors],
        "used_sudo": result.used_sudo,
        "sudo_succeeded": result.sudo_succeeded,
        "sudo_failed": result.sudo_failed,
    }


category_option = click.option(
    "--category", "-c", "categories", multiple=True,
    type=click.Choice(ALL_CATEGORIES), help="Only this category (repeatable)",
)


@click.group()
@click.option("-v", "--verbose", count=True, help="Increase verbosity (-v info, -vv debug)")
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Use this config file instead of the default one")
@click.pass_context
def main(ctx: click.Context, verbose: int, config_path: Path | None) -> None:
    """TidyUp — find and safely remove reclaimable files."""
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# ── scan ─────────────────────────────────────────────────────────────────

@main.command()
@category_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--stream", is_flag=True, help="Print candidates batch by batch as they are found")
@click.option("--batch-size", default=DEFAULT_BATCH_SIZE, show_default=True, help="Candidates per streamed batch")
@click.option("--no-cache", is_flag=True, help="Ignore and do not update the scan cache")
@click.pass_context
def scan(ctx: click.Context, categories: tuple[str, ...], as_json: bool, stream: bool,
         batch_size: int, no_cache: bool) -> None:
    """Scan for reclaimable files (preview only, never deletes)."""
    config = _load_config(ctx)
    scanner = _build_scanner(config, use_cache=not no_cache)

    if stream:
        if categories:
            raise click.UsageError("--stream scans every enabled category; drop --category")
        _stream(scanner, batch_size, as_json)
        return

    if not as_json:
        click.echo(f"\n{click.style('🔍', bold=True)} Scanning...\n")
    result = _run_scan(scanner, categories)

    if as_json:
        data = {
            "total_size": result.total_size,
            "total_count": result.total_count,
            "errors": result.errors,
            "files": [_entry_dict(e) for e in result.files],
        }
        click.echo(json.dumps(data, indent=2))
        return

    if not result.files:
        click.echo("Nothing to clean.")
    else:
        _print_categories(result)
    for error in result.errors:
        click.echo(f"  {click.style('✗', fg='red')} {error}")
    click.echo(f"\nTotal reclaimable: {click.style(bytes_to_human(result.total_size), fg='green', bold=True)}\n")


def _stream(scanner: HyperScanner, batch_size: int, as_json: bool) -> None:
    total = 0
    for batch in scanner.scan_all_streaming(batch_size=batch_size):
        if as_json:
            click.echo(json.dumps({
                "category": batch.category,
                "final": batch.final,
                "error": batch.error,
                "errors": batch.errors,
                "files": [_entry_dict(e) for e in batch.files],
            }))
            continue
        if batch.error:
            click.echo(f"  {click.style('✗', fg='red')} {batch.category}: {batch.error}")
            break
        total += batch.total_size
        if batch.files:
            click.echo(f"  {batch.category:25s} +{batch.batch_size:,} files ({bytes_to_human(batch.total_size)})")
        if batch.final:
            click.echo(f"  {click.style('✓', fg='green')} {batch.category} done")
    if not as_json:
        click.echo(f"\nTotal reclaimable: {click.style(bytes_to_human(total), fg='green', bold=True)}\n")


# ── clean ────────────────────────────────────────────────────────────────

@main.command()
@category_option
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.option("--dry-run", is_flag=True, help="Show what would be cleaned without doing it")
@click.option("--no-sudo", is_flag=True, help="Never ask for elevated permissions")
@click.option("--manifest", "manifest_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write the deletion manifest to this file")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def clean(ctx: click.Context, categories: tuple[str, ...], yes: bool, dry_run: bool, no_sudo: bool,
          manifest_path: Path | None, as_json: bool) -> None:
    """Scan and clean the selected categories."""
    config = _load_config(ctx)
    if dry_run:
        config.dry_run = True

    if not as_json:
        click.echo(f"\n{click.style('🔍', bold=True)} Scanning...\n")
    scan_result = _run_scan(_build_scanner(config), categories)

    if not scan_result.files:
        if as_json:
            click.echo(json.dumps({"status": "nothing_to_clean"}))
        else:
            click.echo("Nothing to clean.")
        return

    if not as_json:
        _print_categories(scan_result)
        click.echo(f"\nTotal: {click.style(bytes_to_human(scan_result.total_size), fg='green', bold=True)}\n")

    if not config.dry_run and not yes and not as_json:
        if not click.confirm("Delete these files?", default=False):
            click.echo("Aborted.")
            return

    cleaner = Cleaner(
        config,
        password_provider=_prompt_password,
        ask_sudo=config.sudo.ask and not no_sudo,
    )
    tracker = Tracker()
    failed = False
    try:
        result = cleaner.clean(scan_result)
    except CleanerError as e:
        result = e.result
        failed = True
        click.echo(click.style(f"Cleanup aborted: {e}", fg="red"), err=True)

    tracker.record(result)
    tracker.save_session()
    if manifest_path is not None and not config.dry_run:
        cleaner.save_manifest(manifest_path)

    if as_json:
        click.echo(json.dumps({"status": "failed" if failed else "cleaned", **_clean_dict(result)}, indent=2))
    else:
        _print_clean_result(result)
    if failed:
        sys.exit(1)


def _print_clean_result(result: CleanResult) -> None:
    verb = "Would free" if result.dry_run else "Freed"
    click.echo(
        f"{verb} {click.style(bytes_to_human(result.deleted_size), fg='green', bold=True)} "
        f"from {len(result.deleted_files):,} items"
    )
    if result.skipped_files:
        click.echo(f"  {click.style('!', fg='yellow')} {len(result.skipped_files):,} skipped")
    if result.used_sudo:
        click.echo(f"  elevated: {result.sudo_succeeded} deleted, {result.sudo_failed} failed")
    if result.errors:
        click.echo()
        click.echo(format_error_summary(result.errors))
    if result.dry_run:
        click.echo("(dry run — no files were deleted)")
    click.echo()


# ── permissions ──────────────────────────────────────────────────────────

@main.command()
@category_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def permissions(ctx: click.Context, categories: tuple[str, ...], as_json: bool) -> None:
    """Show who may delete the scan candidates."""
    config = _load_config(ctx)
    scan_result = _run_scan(_build_scanner(config), categories)
    report = Cleaner(config, ask_sudo=False).get_permission_report(scan_result)

    if as_json:
        click.echo(json.dumps({
            "normal": report.normal,
            "requires_sudo": report.requires_sudo,
            "special": report.special,
            "inaccessible": report.inaccessible,
            "total_normal_size": report.total_normal_size,
            "total_sudo_size": report.total_sudo_size,
        }, indent=2))
        return

    click.echo(f"\n  Deletable:          {len(report.normal):,} ({bytes_to_human(report.total_normal_size)})")
    click.echo(
        f"  Needs elevation:    {len(report.requires_sudo):,} "
        f"({click.style(bytes_to_human(report.total_sudo_size), fg='yellow')})"
    )
    click.echo(f"  Special files:      {len(report.special):,}")
    click.echo(f"  Inaccessible:       {len(report.inaccessible):,}")
    for path, reason in list(report.inaccessible.items())[:5]:
        click.echo(f"    {click.style(path, fg='bright_black')}: {reason}")
    click.echo()


# ── config ───────────────────────────────────────────────────────────────

@main.group("config")
def config_group() -> None:
    """Configuration file commands."""


@config_group.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Print the effective configuration as JSON."""
    click.echo(json.dumps(_load_config(ctx).to_dict(), indent=2))


@config_group.command("init")
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
@click.pass_context
def config_init(ctx: click.Context, force: bool) -> None:
    """Write the default configuration file."""
    path = ctx.obj.get("config_path") or config_mod.default_path()
    if path.exists() and not force:
        raise click.ClickException(f"{path} already exists (use --force to overwrite)")
    click.echo(f"Wrote {config_mod.save(Config(), path)}")


@config_group.command("path")
@click.pass_context
def config_path_cmd(ctx: click.Context) -> None:
    """Print where the configuration file lives."""
    click.echo(ctx.obj.get("config_path") or config_mod.default_path())


# ── cache ────────────────────────────────────────────────────────────────

@main.group()
def cache() -> None:
    """Scan cache commands."""


@cache.command("clear")
def cache_clear() -> None:
    """Forget every cached directory walk."""
    ScanCache.open().clear()
    click.echo("Scan cache cleared.")


# ── stats ────────────────────────────────────────────────────────────────

@main.command()
@click.option("--period", "-p", default="all", type=click.Choice(PERIODS))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--reset", is_flag=True, help="Delete the cleanup history")
def stats(period: str, as_json: bool, reset: bool) -> None:
    """Show space freed statistics."""
    if reset:
        clear_history()
        click.echo("History cleared.")
        return

    data = Tracker().get_stats(period)
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(f"\n{click.style('📊', bold=True)} Statistics ({period})\n")
    click.echo(f"  Bytes freed:    {click.style(bytes_to_human(data['bytes_freed']), fg='green', bold=True)}")
    click.echo(f"  Files removed:  {data['files_removed']:,}")
    click.echo(f"  Sessions:       {data['session_count']}")
    click.echo(f"  Lifetime total: {click.style(bytes_to_human(data['lifetime_bytes_freed']), fg='cyan', bold=True)}")

    if data["per_category"]:
        click.echo("\n  Per-category breakdown:")
        for name, cstats in sorted(data["per_category"].items(), key=lambda x: x[1]["bytes_freed"], reverse=True):
            click.echo(f"    {name:25s} {bytes_to_human(cstats['bytes_freed']):>10s}  ({cstats['files_removed']:,} files)")
    click.echo()


# ── service ──────────────────────────────────────────────────────────────

@main.group()
def service() -> None:
    """D-Bus service management."""


@service.command("start")
def service_start() -> None:
    """Start the D-Bus service in foreground."""
    from tidyup.dbus_service import start_service

    click.echo("Starting TidyUp D-Bus service...")
    start_service()
