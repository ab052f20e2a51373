# ABOUTME: Console rendering of sync results shared by the download and metadata commands.
# ABOUTME: Prints a one-line colour summary followed by any per-book failures.

from rich.console import Console
from rich.markup import escape

from calisync.core.sync import SyncResult, SyncStatus


def print_summary(console: Console, result: SyncResult) -> None:
    changed = sum(
        1
        for outcome in result.outcomes
        if outcome.updates and outcome.status in (SyncStatus.UPDATED, SyncStatus.FORMAT_ADDED)
    )
    parts = []
    if result.added:
        parts.append(f"[green]{result.added} added[/green]")
    if result.updated:
        parts.append(f"[cyan]{result.updated} updated[/cyan] ({changed} with metadata changes)")
    if result.failed:
        parts.append(f"[red]{result.failed} failed[/red]")
    console.print(", ".join(parts) if parts else "[dim]Nothing to do.[/dim]")

    if result.error_details:
        console.print(f"\n[yellow]{result.failed} book(s) could not be synced:[/yellow]")
        for path, message in result.error_details:
            console.print(f"  [dim]{escape(path.name)}:[/dim] {escape(message)}")
