# ABOUTME: Feed-driven sync: downloads new or changed books and adds or updates them in calibre.
# ABOUTME: Items run concurrently; each finished item advances the library's sentinel.

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePosixPath

from calisync.calibre.db import CalibreDb
from calisync.core.sync import SyncOrchestrator, SyncOutcome, SyncResult, SyncStatus
from calisync.db.last_modified import LastModifiedStore, TimestampCorrectionError
from calisync.feed.atom import FeedItem, FeedLink
from calisync.feed.http import FeedClient, FeedFetchError
from calisync.feed.sentinel import Sentinel
from calisync.formats.epub import EpubReadError, read_source_metadata
from calisync.metadata.types import Identifier, SourceMetadata

logger = logging.getLogger(__name__)

FEED_IDENTIFIER_SCHEME = "url"


def download_name(file_name: str) -> str:
    """Collision-free local name for a download, keeping its extension."""
    suffix = PurePosixPath(file_name).suffix
    digest = hashlib.sha256(file_name.encode("utf-8")).hexdigest()[:16].upper()
    return digest + suffix


@dataclass
class DownloadSettings:
    """Knobs for a feed run."""

    output_dir: Path
    tolerance: timedelta = timedelta(minutes=180)
    concurrency: int = 4


class FeedSync:
    """Processes feed items against one calibre library.

    Args:
        db: The calibre library client.
        orchestrator: Adds or updates downloaded books.
        client: HTTP client for HEAD checks and downloads.
        settings: Output folder, tolerance and concurrency.
        store: Direct last_modified access, or None to skip corrections.
    """

    def __init__(
        self,
        db: CalibreDb,
        orchestrator: SyncOrchestrator,
        client: FeedClient,
        settings: DownloadSettings,
        store: LastModifiedStore | None = None,
    ) -> None:
        self._db = db
        self._orchestrator = orchestrator
        self._client = client
        self._settings = settings
        self._store = store

    async def run(self, items: list[FeedItem], sentinel: Sentinel) -> SyncResult:
        """Process items, oldest first, advancing the sentinel as each completes."""
        result = SyncResult()
        semaphore = asyncio.Semaphore(max(1, self._settings.concurrency))

        async def process(item: FeedItem) -> list[SyncOutcome]:
            async with semaphore:
                logger.info("Processing book %s for %s", item.display_name, item.updated)
                outcomes = await self.process_item(item)
                if all(outcome.ok for outcome in outcomes):
                    await sentinel.advance(item.updated)
                return outcomes

        for outcomes in await asyncio.gather(*(process(item) for item in items)):
            for outcome in outcomes:
                result.record(outcome)
        return result

    async def process_item(self, item: FeedItem) -> list[SyncOutcome]:
        """Sync every downloadable link of one feed item.

        Failures are logged and returned as failed outcomes; they never
        propagate to other items.
        """
        outcomes = []
        for link in item.links:
            try:
                outcome = await self._process_link(item, link)
            except Exception as exc:
                logger.error("%s - %s: %s", item.display_name, link.extension, exc)
                destination = self._settings.output_dir / download_name(link.file_name)
                outcome = _failure(item, link, destination, str(exc))
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    async def _process_link(self, item: FeedItem, link: FeedLink) -> SyncOutcome | None:
        extension = link.extension
        local_time = await self._stored_time(item, link)

        url = await self._client.should_download(link.url, local_time)
        if url is None:
            logger.debug("%s - %s is up to date", item.display_name, extension)
            return None

        destination = self._settings.output_dir / download_name(link.file_name)
        if not destination.exists():
            logger.info("Downloading book %s", link.file_name)
            try:
                await self._client.download(url, destination)
            except FeedFetchError as exc:
                logger.error("%s", exc)
                return _failure(item, link, destination, str(exc))

        try:
            source = await asyncio.to_thread(
                read_source_metadata, destination, parse_description=not link.is_kepub
            )
        except EpubReadError as exc:
            logger.error("%s", exc)
            return _failure(item, link, destination, str(exc))

        outcome = await self._orchestrator.add_or_update(source)
        if outcome.ok:
            logger.debug("Deleting %s - %s", source.display_name, extension)
            destination.unlink(missing_ok=True)
        return outcome

    async def _stored_time(self, item: FeedItem, link: FeedLink) -> datetime | None:
        """Modification time of calibre's copy of this format, if it has one.

        Also pulls the entry's last_modified forward for EPUBs, so books
        that need no download still get their timestamp corrected.
        """
        identifier = Identifier(FEED_IDENTIFIER_SCHEME, item.id)
        entry = await self._db.find_entry(identifier, link.extension)
        if entry is None:
            logger.info("%s - %s does not exist in calibre", item.display_name, link.extension)
            return None

        stored = entry.format_path(self._db.library_path, link.extension)
        if not stored.exists():
            logger.error("Failed to find %s - %s", item.display_name, link.extension)
            return None

        stored_time = datetime.fromtimestamp(stored.stat().st_mtime, tz=timezone.utc)
        if self._store is not None and not link.is_kepub:
            try:
                await self._store.correct(entry.id, entry.name, stored_time, self._settings.tolerance)
            except TimestampCorrectionError as exc:
                logger.error("Could not correct last modified for %s: %s", entry.name, exc)
        return stored_time


def _failure(item: FeedItem, link: FeedLink, path: Path, message: str) -> SyncOutcome:
    placeholder = SourceMetadata(
        title=item.title,
        path=path,
        last_write_time=item.updated,
        authors=item.authors,
        identifiers={FEED_IDENTIFIER_SCHEME: item.id},
    )
    return SyncOutcome(placeholder, SyncStatus.FAILED, error=f"{link.extension}: {message}")
