# ABOUTME: The `calisync categories` command listing calibre categories with book counts.
# ABOUTME: Optionally filtered to one category type such as tags or series.

import asyncio
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from calisync.calibre.db import CalibreDb
from calisync.calibre.parsers import CalibreOutputError
from calisync.calibre.records import Category, CategoryType
from calisync.cli.options import library_argument
from calisync.config import SyncSettings
from calisync.core.library import calibre_db

console = Console()


async def _categories(db: CalibreDb, category_type: CategoryType | None) -> list[Category]:
    return [category async for category in db.list_categories(category_type)]


@click.command("categories")
@library_argument
@click.option(
    "--type",
    "type_name",
    type=click.Choice([t.value for t in CategoryType], case_sensitive=False),
    default=None,
    help="Only show categories of this type.",
)
@click.pass_obj
def categories(settings: SyncSettings, library: Path, type_name: str | None) -> None:
    """List the categories of LIBRARY."""
    db = calibre_db(library, settings)
    category_type = CategoryType(type_name.lower()) if type_name else None
    try:
        rows = asyncio.run(_categories(db, category_type))
    except (CalibreOutputError, OSError) as exc:
        console.print(f"[red]Could not list categories: {exc}[/red]")
        raise SystemExit(1) from exc

    if not rows:
        console.print("[yellow]No categories found.[/yellow]")
        return

    table = Table()
    table.add_column("Type", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Books", justify="right")
    table.add_column("Rating", justify="right")
    for category in rows:
        rating = f"{category.rating:g}" if category.rating else ""
        table.add_row(category.category_type.value, category.name, str(category.count), rating)
    console.print(table)
