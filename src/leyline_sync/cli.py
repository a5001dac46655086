"""CLI for leyline-sync."""

import json
import logging
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from .config import SyncConfig, load_config
from .core import SyncOptions, SyncReport
from .display import (
    display_cache_stats,
    display_diff,
    display_metrics,
    display_preview,
    display_status,
    display_sync_report,
)
from .errors import CacheUnavailableError, ConflictDetectedError, LeylineSyncError
from .fetchers import DirectoryFetcher, Fetcher, GitFetcher, normalize_categories
from .local_cache import CacheStore, EvictionPolicy
from .metrics import MetricsCollector
from .status import StatusReporter
from .syncer import FileSyncer

app = typer.Typer(help="""\
Sync a versioned corpus of development standards into a project,
reusing previously fetched content from a local content-addressed cache.""")

cache_app = typer.Typer(help="Inspect and maintain the local content cache")
app.add_typer(cache_app, name="cache")

console = Console()
err_console = Console(stderr=True)

PathArg = typer.Argument(Path("."), help="Project directory (default: current directory)")
CategoryOpt = typer.Option(None, "--category", "-c", help="Category to sync (repeatable; core is always included)")
VersionOpt = typer.Option(None, "--version", help="Corpus version (branch or tag) to sync")
SourceOpt = typer.Option(None, "--source", help="Use a local corpus docs directory instead of git")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """Configure logging for all commands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


# ============= Helpers =============

def _load_config(path: Path) -> SyncConfig:
    try:
        config = load_config(path)
    except LeylineSyncError as e:
        console.print(f"[red]✗[/red] {escape(str(e))}")
        raise typer.Exit(1)
    if config.structured_logging:
        logging.getLogger("leyline_sync.metrics").setLevel(logging.INFO)
    return config


@contextmanager
def _open_fetcher(config: SyncConfig, source: Optional[Path]) -> Iterator[Fetcher]:
    """Yield a fetcher for the configured corpus; git checkouts are removed afterwards."""
    if source is not None:
        yield DirectoryFetcher(source)
        return
    try:
        fetcher = GitFetcher(config.repository)
    except LeylineSyncError as e:
        console.print(f"[red]✗[/red] {escape(str(e))}")
        raise typer.Exit(1)
    with fetcher:
        yield fetcher


def _open_cache(config: SyncConfig, metrics: Optional[MetricsCollector] = None) -> Optional[CacheStore]:
    try:
        return CacheStore(config.cache_dir, policy=config.cache.policy(), metrics=metrics)
    except CacheUnavailableError as e:
        console.print(f"[yellow]⚠[/yellow] {escape(str(e))}; continuing without cache")
        return None


def _categories(config: SyncConfig, categories: Optional[List[str]]) -> List[str]:
    return list(categories) if categories else list(config.categories)


@contextmanager
def _cancel_on_interrupt() -> Iterator[threading.Event]:
    """Turn Ctrl-C into a cancel request honoured at file boundaries."""
    cancel = threading.Event()
    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return
    previous = signal.getsignal(signal.SIGINT)
    signal.signal(signal.SIGINT, lambda *_: cancel.set())
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


def _report_json(report: SyncReport) -> str:
    data = report.model_dump(mode="json")
    data.update({
        "written": report.written,
        "skipped": report.skipped,
        "failed": report.failed,
        "hit_ratio": report.hit_ratio,
        "counts": report.counts,
        "success": report.success,
    })
    return json.dumps(data, indent=2)


def _sync_with(
    config: SyncConfig,
    fetcher: Fetcher,
    categories: List[str],
    reference: Optional[str],
    force: bool,
    no_cache: bool,
    metrics: MetricsCollector,
) -> SyncReport:
    cache = None if no_cache else _open_cache(config, metrics)
    syncer = FileSyncer(
        fetcher,
        config.target_dir,
        cache=cache,
        metrics=metrics,
        cache_threshold=config.cache_threshold,
    )
    with _cancel_on_interrupt() as cancel:
        options = SyncOptions(
            reference=reference,
            force=force,
            max_workers=config.fetch_workers,
            fetch_timeout=config.fetch_timeout,
            cancel_event=cancel,
        )
        try:
            return syncer.sync(categories, options)
        except LeylineSyncError as e:
            console.print(f"[red]✗[/red] Sync failed: {escape(str(e))}")
            raise typer.Exit(1)


def _run_sync(
    config: SyncConfig,
    categories: List[str],
    version: Optional[str],
    source: Optional[Path],
    force: bool,
    no_cache: bool,
    metrics: MetricsCollector,
) -> SyncReport:
    with _open_fetcher(config, source) as fetcher:
        return _sync_with(config, fetcher, categories, version or config.reference, force, no_cache, metrics)


# ============= Commands =============

@app.command()
def sync(
    path: Path = PathArg,
    categories: Optional[List[str]] = CategoryOpt,
    version: Optional[str] = VersionOpt,
    source: Optional[Path] = SourceOpt,
    force: bool = typer.Option(False, "--force", help="Overwrite locally modified and conflicting files"),
    no_cache: bool = typer.Option(False, "--no-cache", help="Always fetch; don't read or write the cache"),
    stats: bool = typer.Option(False, "--stats", help="Show timing statistics and recommendations"),
    as_json: bool = typer.Option(False, "--json", help="Print the sync report as JSON"),
):
    """Sync corpus files into the project's docs directory.

    Locally modified files are kept; files changed on both sides are
    reported as conflicts and kept unless --force is given.

    Examples:
        leyline-sync sync                      # Sync configured categories
        leyline-sync sync -c python -c go      # Sync specific categories
        leyline-sync sync --force              # Take the remote version everywhere
    """
    config = _load_config(path)
    metrics = MetricsCollector(structured_logging=config.structured_logging)
    report = _run_sync(config, _categories(config, categories), version, source, force, no_cache, metrics)

    if as_json:
        typer.echo(_report_json(report))
    else:
        display_sync_report(report, console)
        if stats:
            console.print()
            display_metrics(metrics.summary(), metrics.remediation_guidance(), console)

    if not report.success:
        raise typer.Exit(1)


@app.command()
def status(
    path: Path = PathArg,
    categories: Optional[List[str]] = CategoryOpt,
    version: Optional[str] = VersionOpt,
    source: Optional[Path] = SourceOpt,
    show_all: bool = typer.Option(False, "--all", "-a", help="List unchanged files individually"),
    as_json: bool = typer.Option(False, "--json", help="Print the status report as JSON"),
):
    """Show which synced files changed locally, remotely, or both."""
    config = _load_config(path)
    with _open_fetcher(config, source) as fetcher:
        reporter = StatusReporter(fetcher, config.target_dir)
        try:
            report = reporter.status(_categories(config, categories), reference=version or config.reference)
        except LeylineSyncError as e:
            console.print(f"[red]✗[/red] {escape(str(e))}")
            raise typer.Exit(1)

    if as_json:
        data = report.model_dump(mode="json")
        data["summary"] = {s.value: count for s, count in report.summary.items()}
        typer.echo(json.dumps(data, indent=2))
    else:
        display_status(report, console, verbose=show_all)


@app.command()
def diff(
    path: Path = PathArg,
    categories: Optional[List[str]] = CategoryOpt,
    version: Optional[str] = VersionOpt,
    source: Optional[Path] = SourceOpt,
):
    """Show unified diffs for files the remote has changed.

    Remote content is fetched for comparison only; nothing is written.
    """
    config = _load_config(path)
    with _open_fetcher(config, source) as fetcher:
        reporter = StatusReporter(fetcher, config.target_dir)
        try:
            report = reporter.diff(_categories(config, categories), reference=version or config.reference)
        except LeylineSyncError as e:
            console.print(f"[red]✗[/red] {escape(str(e))}")
            raise typer.Exit(1)

    display_diff(report, console)
    if report.errors:
        raise typer.Exit(1)


@app.command()
def update(
    path: Path = PathArg,
    categories: Optional[List[str]] = CategoryOpt,
    version: Optional[str] = VersionOpt,
    source: Optional[Path] = SourceOpt,
    force: bool = typer.Option(False, "--force", help="Overwrite conflicting and locally modified files"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be written"),
):
    """Preview remote changes, then apply them.

    Conflicts abort the update unless --force is given.

    Examples:
        leyline-sync update --dry-run     # Preview only
        leyline-sync update --force       # Apply, overwriting conflicts
    """
    config = _load_config(path)
    wanted = _categories(config, categories)
    reference = version or config.reference

    # One fetcher (and one git checkout) serves both preview and apply
    with _open_fetcher(config, source) as fetcher:
        try:
            preview = StatusReporter(fetcher, config.target_dir).preview_update(
                wanted, force=force, reference=reference
            )
        except LeylineSyncError as e:
            console.print(f"[red]✗[/red] {escape(str(e))}")
            raise typer.Exit(1)

        display_preview(preview, console)

        if preview.has_blocking_conflicts:
            if dry_run:
                console.print("\n[dim]Dry run - no changes made[/dim]")
                return
            console.print(f"\n[red]✗[/red] Update aborted: {ConflictDetectedError(preview.conflicts)}")
            raise typer.Exit(1)

        if dry_run:
            console.print("\n[dim]Dry run - no changes made[/dim]")
            return

        if not preview.will_write:
            console.print("\n[green]✓[/green] Everything up to date")
            return

        console.print("\n[bold]Applying changes...[/bold]")
        metrics = MetricsCollector(structured_logging=config.structured_logging)
        report = _sync_with(config, fetcher, preview.categories, preview.reference, force, False, metrics)

    display_sync_report(report, console)
    if not report.success:
        raise typer.Exit(1)


@app.command(name="categories")
def list_categories(
    path: Path = PathArg,
    version: Optional[str] = VersionOpt,
    source: Optional[Path] = SourceOpt,
):
    """List the categories the corpus offers; configured ones are marked."""
    config = _load_config(path)
    with _open_fetcher(config, source) as fetcher:
        try:
            available = fetcher.available_categories(version or config.reference)
        except LeylineSyncError as e:
            console.print(f"[red]✗[/red] {escape(str(e))}")
            raise typer.Exit(1)

    configured = set(normalize_categories(config.categories))
    console.print(f"[bold]Available categories ({len(available)}):[/bold]")
    for name in available:
        mark = "[green]✓[/green]" if name in configured else " "
        console.print(f"  {mark} {name}")


# ============= Cache commands =============

def _require_cache(path: Path) -> CacheStore:
    config = _load_config(path)
    cache = _open_cache(config)
    if cache is None:
        raise typer.Exit(1)
    return cache


@cache_app.command(name="stats")
def cache_stats(
    path: Path = PathArg,
):
    """Show cache size, object count and health."""
    cache = _require_cache(path)
    display_cache_stats(cache.stats(), cache.health(), console)


@cache_app.command(name="evict")
def cache_evict(
    path: Path = PathArg,
    max_bytes: Optional[int] = typer.Option(None, "--max-bytes", help="Shrink the cache to this many bytes"),
    max_age_hours: Optional[float] = typer.Option(None, "--max-age-hours", help="Remove entries unused for this long"),
):
    """Evict cache entries beyond the configured (or given) bounds."""
    cache = _require_cache(path)
    policy = cache.policy
    if max_bytes is not None or max_age_hours is not None:
        policy = EvictionPolicy(
            max_bytes=max_bytes,
            max_age_seconds=max_age_hours * 3600 if max_age_hours is not None else None,
        )
    if not policy.enabled:
        console.print("[yellow]No eviction bounds configured[/yellow]")
        console.print("[dim]Set cache.max_bytes or cache.max_age_hours in .leyline, "
                      "or pass --max-bytes/--max-age-hours[/dim]")
        return
    removed = cache.evict(policy)
    console.print(f"[green]✓[/green] Evicted {removed} object(s)")


@cache_app.command(name="clear")
def cache_clear(
    path: Path = PathArg,
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask for confirmation"),
):
    """Remove every object from the cache."""
    cache = _require_cache(path)
    if not yes and not typer.confirm(f"Remove all cached objects in {cache.root}?"):
        raise typer.Abort()
    removed = cache.clear()
    console.print(f"[green]✓[/green] Removed {removed} object(s)")


if __name__ == "__main__":
    app()
