# ABOUTME: The `calisync download` command that syncs new Standard Ebooks releases into a library.
# ABOUTME: Reads the OPDS feed, downloads changed books, adds or updates them, and advances the sentinel.

import asyncio
from datetime import datetime, timezone
from pathlib import Path

import click
from rich.console import Console

from calisync.cli.options import library_argument
from calisync.cli.report import print_summary
from calisync.config import SyncSettings
from calisync.core.download import DownloadSettings, FeedSync
from calisync.core.library import open_library
from calisync.core.sync import SyncResult
from calisync.db.connection import LibraryNotFoundError
from calisync.feed.atom import DEFAULT_FEED_URL, FeedParseError, items_after, parse_feed
from calisync.feed.http import FeedClient, FeedFetchError
from calisync.feed.sentinel import EPOCH, Sentinel

console = Console()

DEFAULT_OUTPUT_DIR = Path("calisync-downloads")


def _parse_after(ctx: click.Context, param: click.Parameter, value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        when = datetime.fromisoformat(value)
    except ValueError as exc:
        raise click.BadParameter(f"not an ISO date: {value}") from exc
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when


async def _download(
    library: Path,
    settings: SyncSettings,
    output_dir: Path,
    since: datetime | None,
    feed_url: str,
    client: FeedClient,
) -> SyncResult | None:
    sentinel = Sentinel(library)
    if since is None:
        since = sentinel.read()

    feed = await client.get_text(feed_url)
    items = items_after(parse_feed(feed, feed_url), since)
    if not items:
        return None
    console.print(f"Found [bold]{len(items)}[/bold] book(s) updated since {since:%Y-%m-%d %H:%M}\n")

    with open_library(library, settings) as lib:
        feed_sync = FeedSync(
            lib.db,
            lib.orchestrator,
            client,
            DownloadSettings(output_dir, settings.tolerance, settings.concurrency),
            lib.store,
        )
        return await feed_sync.run(items, sentinel)


async def _run(
    library: Path,
    settings: SyncSettings,
    output_dir: Path,
    since: datetime | None,
    feed_url: str,
) -> SyncResult | None:
    async with FeedClient() as client:
        return await _download(library, settings, output_dir, since, feed_url, client)


@click.command("download")
@library_argument
@click.option(
    "-o",
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help=f"Folder for downloaded files (default: ./{DEFAULT_OUTPUT_DIR}).",
)
@click.option(
    "--resync",
    is_flag=True,
    default=False,
    help="Check every book in the feed, ignoring the last sync time.",
)
@click.option(
    "--after",
    callback=_parse_after,
    default=None,
    help="Only check books updated after this ISO date.",
)
@click.option(
    "--feed-url",
    envvar="CALISYNC_FEED_URL",
    default=DEFAULT_FEED_URL,
    help=f"OPDS feed to read (default: {DEFAULT_FEED_URL}).",
)
@click.pass_obj
def download(
    settings: SyncSettings,
    library: Path,
    output_dir: Path | None,
    resync: bool,
    after: datetime | None,
    feed_url: str,
) -> None:
    """Download new and updated books from the feed into LIBRARY."""
    output_dir = output_dir or DEFAULT_OUTPUT_DIR
    output_dir.mkdir(parents=True, exist_ok=True)
    since = EPOCH if resync else after

    try:
        result = asyncio.run(_run(library, settings, output_dir, since, feed_url))
    except (LibraryNotFoundError, FeedFetchError, FeedParseError, OSError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise SystemExit(1) from exc

    if result is None:
        console.print("[dim]Library is up to date.[/dim]")
        return
    print_summary(console, result)
    if result.failed:
        raise SystemExit(1)
