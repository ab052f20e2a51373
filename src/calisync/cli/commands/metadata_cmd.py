# ABOUTME: The `calisync metadata` command that re-applies EPUB metadata to existing books.
# ABOUTME: Reconciles every Standard Ebooks entry in the library against its stored EPUB.

import asyncio
import logging
from pathlib import Path

import click
from rich.console import Console

from calisync.calibre.parsers import CalibreOutputError
from calisync.calibre.records import CatalogEntry
from calisync.cli.options import library_argument
from calisync.cli.report import print_summary
from calisync.config import SyncSettings
from calisync.core.library import Library, open_library
from calisync.core.sync import SyncResult, refresh_many
from calisync.db.connection import LibraryNotFoundError
from calisync.formats.epub import EpubReadError, read_source_metadata
from calisync.metadata.types import SourceMetadata

logger = logging.getLogger(__name__)
console = Console()

PUBLISHER = "Standard Ebooks"
STORED_FORMAT = "EPUB"


async def _collect(lib: Library) -> list[tuple[CatalogEntry, SourceMetadata]]:
    pairs = []
    async for entry in lib.db.iter_entries_by_publisher(PUBLISHER):
        stored = entry.format_path(lib.path, STORED_FORMAT)
        if not stored.exists():
            logger.warning("%s has no stored %s", entry.name, STORED_FORMAT)
            continue
        try:
            pairs.append((entry, await asyncio.to_thread(read_source_metadata, stored)))
        except EpubReadError as exc:
            logger.error("%s", exc)
    return pairs


async def _refresh(library: Path, settings: SyncSettings) -> SyncResult:
    with open_library(library, settings) as lib:
        pairs = await _collect(lib)
        console.print(f"Checking [bold]{len(pairs)}[/bold] book(s)\n")
        return await refresh_many(lib.orchestrator, pairs, concurrency=settings.concurrency)


@click.command("metadata")
@library_argument
@click.pass_obj
def metadata(settings: SyncSettings, library: Path) -> None:
    """Re-apply stored EPUB metadata to every Standard Ebooks book in LIBRARY."""
    try:
        result = asyncio.run(_refresh(library, settings))
    except (LibraryNotFoundError, CalibreOutputError, OSError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise SystemExit(1) from exc

    print_summary(console, result)
    if result.failed:
        raise SystemExit(1)
