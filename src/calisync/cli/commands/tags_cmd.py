# ABOUTME: The `calisync tags` command reporting tags whose case differs from the canonical form.
# ABOUTME: Read-only; prints the current and expected spelling of each tag.

import asyncio
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from calisync.calibre.db import CalibreDb
from calisync.calibre.parsers import CalibreOutputError
from calisync.calibre.records import Category
from calisync.cli.options import library_argument
from calisync.config import SyncSettings
from calisync.core.library import calibre_db
from calisync.core.maintenance import find_miscased_tags

console = Console()


async def _miscased(db: CalibreDb) -> list[tuple[Category, str]]:
    return [pair async for pair in find_miscased_tags(db)]


@click.command("tags")
@library_argument
@click.pass_obj
def tags(settings: SyncSettings, library: Path) -> None:
    """List tags in LIBRARY that are not in canonical case."""
    db = calibre_db(library, settings)
    try:
        miscased = asyncio.run(_miscased(db))
    except (CalibreOutputError, OSError) as exc:
        console.print(f"[red]Could not list tags: {exc}[/red]")
        raise SystemExit(1) from exc

    if not miscased:
        console.print("[green]All tags are in canonical case.[/green]")
        return

    table = Table(title="Tags to rename")
    table.add_column("Tag", style="yellow")
    table.add_column("Canonical", style="cyan")
    table.add_column("Books", style="dim", justify="right")
    for category, canonical in miscased:
        table.add_row(category.name, canonical, str(category.count))
    console.print(table)
    console.print(f"\n[bold]{len(miscased)}[/bold] tag(s) need renaming.")
