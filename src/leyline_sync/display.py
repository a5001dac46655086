"""Rich rendering of reports for the CLI."""

import time
from typing import List

from rich.console import Console
from rich.markup import escape
from rich.syntax import Syntax
from rich.table import Table

from .core import DiffReport, FileStatus, StatusReport, SyncOutcome, SyncReport, UpdatePreview
from .local_cache import CacheDirectoryStats
from .metrics import MetricsSummary, RemediationHint
from .status import group_by_status
from .utils import format_timestamp, humanize_age, humanize_size

STATUS_LABELS = {
    FileStatus.MISSING: ("Missing locally", "[blue]↓[/blue]"),
    FileStatus.REMOTE_UPDATED: ("Updated remotely", "[blue]↓[/blue]"),
    FileStatus.LOCALLY_MODIFIED: ("Modified locally", "[yellow]M[/yellow]"),
    FileStatus.CONFLICT: ("Conflicts", "[red]⚠[/red]"),
    FileStatus.UNCHANGED: ("Unchanged", "[green]✓[/green]"),
}

OUTCOME_STYLES = {
    SyncOutcome.CACHE_HIT: "[green]cache hit[/green]",
    SyncOutcome.CACHE_MISS_FETCHED: "[blue]fetched[/blue]",
    SyncOutcome.ALREADY_CURRENT: "[dim]current[/dim]",
    SyncOutcome.LOCALLY_MODIFIED_SKIPPED: "[yellow]kept local[/yellow]",
    SyncOutcome.CONFLICT_SKIPPED: "[red]conflict[/red]",
    SyncOutcome.FETCH_FAILED: "[red]failed[/red]",
}


def display_status(report: StatusReport, console: Console, verbose: bool = False) -> None:
    """Display grouped file status.

    Args:
        report: Status report to render
        console: Rich console for output
        verbose: If True, list unchanged files individually
    """
    console.print(f"\n[bold]Categories:[/bold] {', '.join(report.categories)}")
    if report.reference:
        console.print(f"[bold]Reference:[/bold] {report.reference}")
    if report.last_sync is not None:
        age = humanize_age(time.time() - report.last_sync)
        console.print(f"[dim]Last sync: {format_timestamp(report.last_sync)} ({age})[/dim]")
    else:
        console.print("[dim]Never synced[/dim]")
    if not report.remote_checked:
        console.print("[yellow]Remote unavailable: compared against last sync only[/yellow]")
    console.print()

    if not report.entries:
        console.print("[yellow]No files[/yellow]")
        return

    for status, paths in group_by_status(report):
        label, icon = STATUS_LABELS[status]
        if status == FileStatus.UNCHANGED and not verbose and len(paths) > 3:
            # Summarize unchanged files
            console.print(f"[green]✓[/green] {len(paths)} files unchanged")
            continue
        console.print(f"[bold]{label}:[/bold]")
        for path in paths:
            console.print(f"  {icon} {path}")
    console.print()

    if report.is_synced:
        console.print("[green]✓[/green] Everything up to date")
    else:
        console.print(report.summary_text())


def display_sync_report(report: SyncReport, console: Console, verbose: bool = False) -> None:
    """Display the result of a sync run."""
    if verbose and report.results:
        table = Table(title=f"Files ({len(report.results)})")
        table.add_column("File", style="cyan")
        table.add_column("Category")
        table.add_column("Outcome")
        for result in report.results:
            table.add_row(result.path, result.category, OUTCOME_STYLES[result.outcome])
        console.print(table)

    for error in report.errors:
        where = error.path or error.category or "sync"
        console.print(f"  [red]•[/red] {where}: {escape(error.message)}")

    if report.conflicts:
        console.print("\n[red]Conflicts (use --force to take the remote version):[/red]")
        for path in report.conflicts:
            console.print(f"  [red]⚠[/red] {path}")

    mark = "[green]✓[/green]" if report.success else "[red]✗[/red]"
    console.print(f"{mark} {report.summary()} [dim]({report.elapsed_seconds:.2f}s)[/dim]")
    if not report.cache_enabled:
        console.print("[dim]Cache disabled for this run[/dim]")


def display_diff(report: DiffReport, console: Console) -> None:
    for diff in report.diffs:
        label, icon = STATUS_LABELS[diff.status]
        console.print(f"{icon} [bold]{diff.path}[/bold] [dim]({label.lower()})[/dim]")
        if diff.binary:
            console.print("  [dim]Binary content differs[/dim]")
        elif diff.diff:
            console.print(Syntax(diff.diff, "diff", theme="ansi_dark", background_color="default"))
        console.print()
    for error in report.errors:
        console.print(f"[red]✗[/red] {error.path or error.category}: {escape(error.message)}")
    if not report.diffs and not report.errors:
        console.print("[green]✓[/green] No remote changes")


def display_preview(preview: UpdatePreview, console: Console) -> None:
    console.print("[bold]Analyzing changes...[/bold]")
    console.print(preview.summary())

    if preview.will_write:
        console.print("\n[yellow]Files from remote:[/yellow]")
        for descriptor in preview.will_write:
            size = f" ({humanize_size(descriptor.size)})" if descriptor.size is not None else ""
            console.print(f"  [blue]↓[/blue] {descriptor.relative_path}{size}")

    if preview.locally_modified and not preview.force:
        console.print("\n[yellow]Locally modified (kept):[/yellow]")
        for path in preview.locally_modified:
            console.print(f"  [yellow]M[/yellow] {path}")

    if preview.conflicts:
        title = "Conflicts (will be overwritten)" if preview.force else "Conflicts (use --force to overwrite)"
        console.print(f"\n[red]{title}:[/red]")
        for path in preview.conflicts:
            console.print(f"  [red]⚠[/red] {path}")


def display_cache_stats(stats: CacheDirectoryStats, issues: List[dict], console: Console) -> None:
    table = Table(title="Cache")
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    table.add_row("Directory", stats.path)
    table.add_row("Objects", str(stats.file_count))
    table.add_row("Size", humanize_size(stats.size))
    if stats.max_bytes is not None:
        table.add_row("Limit", humanize_size(stats.max_bytes))
        table.add_row("Utilization", f"{stats.utilization_percent}%")
    console.print(table)

    if issues:
        console.print("\n[bold]Issues requiring attention:[/bold]")
        for issue in issues:
            console.print(f"  [red]•[/red] {issue['type'].replace('_', ' ')}: {issue['path']}")
    else:
        console.print("[green]✓[/green] Cache healthy")


def display_metrics(summary: MetricsSummary, hints: List[RemediationHint], console: Console) -> None:
    """Display per-operation timings and remediation hints."""
    table = Table(title=f"Performance ({summary.total_operations} operations, "
                        f"{summary.success_rate:.1f}% successful)")
    table.add_column("Operation", style="cyan")
    table.add_column("Count", justify="right")
    table.add_column("Avg", justify="right")
    table.add_column("Max", justify="right")
    table.add_column("Success", justify="right")
    for name, stats in sorted(summary.per_operation_stats.items()):
        table.add_row(
            name,
            str(stats.count),
            f"{stats.avg_duration_seconds * 1000:.1f}ms",
            f"{stats.max_duration_seconds * 1000:.1f}ms",
            f"{stats.success_rate_percent:.0f}%",
        )
    console.print(table)

    if hints:
        severity_style = {"high": "red", "medium": "yellow", "low": "dim"}
        console.print("\n[bold]Recommendations:[/bold]")
        for hint in hints:
            style = severity_style[hint.severity]
            console.print(f"  [{style}]{hint.severity.upper()}[/{style}] {hint.recommendation} "
                          f"({hint.occurrences}x)")
            console.print(f"    [dim]{hint.action}[/dim]")
