"""
Rendering functions for bdp output.

This module handles all pretty-printing and table formatting for
``--format table``. Core functions return data, this module makes it
human-readable.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from rich import box
from rich.console import Console
from rich.table import Table

from .domain.operation import AuditSummary, OperationStatus, OperationSummary, VerifyStatus
from .domain.records import CacheEntry, FileLock
from .format_utils import format_size

console = Console()

_STATUS_STYLES = {
    OperationStatus.SUCCESS: "green",
    OperationStatus.SKIPPED: "dim",
    OperationStatus.FAILED: "red",
    OperationStatus.DEFERRED: "yellow",
    OperationStatus.DRY_RUN: "cyan",
    VerifyStatus.VERIFIED: "green",
    VerifyStatus.CORRUPTED: "red",
    VerifyStatus.MISSING: "yellow",
}


def _table(title: Optional[str]) -> Table:
    return Table(title=title, box=box.ROUNDED, show_header=True, header_style="bold magenta")


def _when(ts: Optional[float]) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).strftime('%Y-%m-%d %H:%M')


def render_table(headers: List[str], rows: List[List[Any]], title: Optional[str] = None) -> None:
    """Render a generic table with the given headers and rows."""
    if not rows:
        console.print("[yellow]No data to display.[/yellow]")
        return
    table = _table(title)
    for header in headers:
        table.add_column(header)
    for row in rows:
        table.add_row(*[str(val) for val in row])
    console.print(table)


def render_cache_entries(entries: List[CacheEntry]) -> None:
    if not entries:
        console.print("[yellow]Cache is empty.[/yellow]")
        return

    table = _table(f"Cached files ({len(entries)})")
    table.add_column("Spec", style="cyan")
    table.add_column("Kind")
    table.add_column("Size", justify="right")
    table.add_column("Cached")
    table.add_column("Last access")
    table.add_column("Verified")
    for entry in entries:
        table.add_row(
            entry.spec,
            entry.kind,
            format_size(entry.size_bytes),
            _when(entry.cached_at),
            _when(entry.last_accessed),
            _when(entry.last_verified),
        )
    console.print(table)


def render_stats(stats: Dict[str, Any]) -> None:
    table = _table("Cache statistics")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Root", str(stats['root']))
    table.add_row("Database", str(stats['database']))
    table.add_row("Shared", "yes" if stats['shared'] else "no")
    table.add_row("Entries", str(stats['entries']))
    table.add_row("Total size", format_size(stats['total_bytes']))
    for kind, row in sorted(stats.get('by_kind', {}).items()):
        table.add_row(f"  {kind}", f"{row['entry_count']} files, {format_size(row['total_bytes'])}")
    table.add_row("Active locks", str(stats['active_locks']))
    table.add_row("Expired locks", str(stats['expired_locks']))
    console.print(table)


def render_locks(locks: List[FileLock], now: float) -> None:
    if not locks:
        console.print("[green]No locks held.[/green]")
        return
    table = _table("Lease locks")
    table.add_column("Path", style="cyan")
    table.add_column("Holder")
    table.add_column("Operation")
    table.add_column("Expires in", justify="right")
    for lock in locks:
        remaining = lock.expires_at - now
        table.add_row(
            lock.resource_path,
            lock.locked_by,
            lock.operation or "",
            f"{remaining:.0f}s" if remaining > 0 else "[red]expired[/red]",
        )
    console.print(table)


def render_operation_summary(summary: OperationSummary, show_skipped: bool = False) -> None:
    """Per-file details (failures first) followed by the totals."""
    details = [d for d in summary.details if show_skipped or d.status != OperationStatus.SKIPPED]
    details.sort(key=lambda d: (d.status != OperationStatus.FAILED, d.status.value, d.spec))
    if details:
        table = _table(summary.operation.replace('_', ' ').capitalize())
        table.add_column("Spec", style="cyan")
        table.add_column("Status")
        table.add_column("Action")
        table.add_column("Detail")
        for detail in details:
            style = _STATUS_STYLES.get(detail.status, "")
            table.add_row(
                detail.spec,
                f"[{style}]{detail.status.value}[/{style}]" if style else detail.status.value,
                detail.action,
                detail.error or detail.message or "",
            )
        console.print(table)

    verb = "would free" if summary.dry_run else "bytes"
    console.print(
        f"[bold]{summary.successful}[/bold] ok, {summary.skipped} skipped, "
        f"[red]{summary.failed}[/red] failed, [yellow]{summary.deferred}[/yellow] deferred "
        f"({verb} {format_size(summary.bytes)})"
    )


def render_audit(summary: AuditSummary) -> None:
    problems = summary.problems
    if problems:
        table = _table("Integrity problems")
        table.add_column("Spec", style="cyan")
        table.add_column("Status")
        table.add_column("Path")
        for result in problems:
            style = _STATUS_STYLES[result.status]
            table.add_row(result.spec, f"[{style}]{result.status.value}[/{style}]", result.path)
        console.print(table)
    console.print(
        f"[green]{summary.verified} verified[/green], [red]{summary.corrupted} corrupted[/red], "
        f"[yellow]{summary.missing} missing[/yellow]"
    )
