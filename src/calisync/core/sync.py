# ABOUTME: Add-or-update state machine that brings one book file into a calibre library.
# ABOUTME: Looks the book up, adds it or its format if needed, then reconciles fields and timestamps.

import asyncio
import logging
import tempfile
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path

from calisync.calibre.db import CalibreDb
from calisync.calibre.records import CatalogEntry
from calisync.core.files import replace_if_changed, touch_to
from calisync.db.last_modified import LastModifiedStore, TimestampCorrectionError
from calisync.formats.epub import EpubReadError, extract_cover
from calisync.metadata.reconciler import MetadataReconciler
from calisync.metadata.tags import sanitise_tags
from calisync.metadata.types import FieldUpdate, Identifier, SourceMetadata

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = timedelta(minutes=180)
DEFAULT_LANGUAGE = "eng"


class SyncStatus(Enum):
    """What happened to a book during a sync."""

    UPDATED = "updated"
    FORMAT_ADDED = "format_added"
    ADDED = "added"
    FAILED = "failed"


@dataclass
class SyncOutcome:
    """Result of syncing a single book file."""

    source: SourceMetadata
    status: SyncStatus
    entry_id: int | None = None
    updates: list[FieldUpdate] = field(default_factory=list)
    file_replaced: bool = False
    timestamp_corrected: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        """Whether the book is now in the library (a timestamp error still counts)."""
        return self.status is not SyncStatus.FAILED


@dataclass
class SyncResult:
    """Summary of a multi-book sync."""

    added: int = 0
    updated: int = 0
    failed: int = 0
    outcomes: list[SyncOutcome] = field(default_factory=list)
    error_details: list[tuple[Path, str]] = field(default_factory=list)

    def record(self, outcome: SyncOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.status is SyncStatus.FAILED:
            self.failed += 1
            self.error_details.append((outcome.source.path, outcome.error or "failed"))
        elif outcome.status is SyncStatus.ADDED:
            self.added += 1
        else:
            self.updated += 1


class SyncOrchestrator:
    """Keeps calibre entries in step with downloaded book files.

    Args:
        db: The calibre library client.
        reconciler: Computes field updates for an entry.
        store: Direct last_modified access; None skips timestamp correction
            (for example when talking to a content server).
        tolerance: How much newer a file must be before last_modified moves.
        language: Language passed to calibredb when adding new books.
    """

    def __init__(
        self,
        db: CalibreDb,
        reconciler: MetadataReconciler,
        store: LastModifiedStore | None = None,
        *,
        tolerance: timedelta = DEFAULT_TOLERANCE,
        language: str = DEFAULT_LANGUAGE,
    ) -> None:
        self._db = db
        self._reconciler = reconciler
        self._store = store
        self._tolerance = tolerance
        self._language = language

    async def add_or_update(self, source: SourceMetadata) -> SyncOutcome:
        """Add a book file to the library, or refresh the entry it belongs to.

        Raises:
            MissingIdentifierError: If the source has no identifier; nothing
                has been run at that point.
        """
        identifier = source.primary_identifier
        fmt = source.extension

        entry = await self._db.find_entry(identifier, fmt)
        if entry is not None:
            stored = entry.format_path(self._db.library_path, fmt)
            if not stored.exists():
                return self._failed(source, f"Stored file {stored} does not exist", entry.id)
            replaced = await asyncio.to_thread(replace_if_changed, source.path, stored, entry.name)
            outcome = await self._reconcile(entry, source, SyncStatus.UPDATED)
            outcome.file_replaced = replaced
            return outcome

        entry = await self._db.find_entry(identifier)
        if entry is not None:
            logger.info("Adding %s format to %s", fmt, entry.name)
            await self._db.add_format(entry.id, source.path, dont_replace=True)
            status = SyncStatus.FORMAT_ADDED
            entry_id: int | None = entry.id
        else:
            logger.info("Adding %s", source.display_name)
            entry_id = await self._add_book(source, identifier)
            status = SyncStatus.ADDED
            if entry_id is None:
                return self._failed(source, "calibredb did not report an added book id")

        refreshed = await self._db.get_entry(entry_id)
        if refreshed is None:
            return self._failed(source, f"Book {entry_id} not found after adding", entry_id)

        stored = refreshed.format_path(self._db.library_path, fmt)
        if stored.exists() and await asyncio.to_thread(touch_to, stored, source.last_write_time):
            logger.debug("Set modified time of %s", stored)

        return await self._reconcile(refreshed, source, status)

    async def update_entry(self, entry: CatalogEntry, source: SourceMetadata) -> SyncOutcome:
        """Reconcile an entry already known to match the source file."""
        return await self._reconcile(entry, source, SyncStatus.UPDATED)

    async def _reconcile(
        self, entry: CatalogEntry, source: SourceMetadata, status: SyncStatus
    ) -> SyncOutcome:
        updates = await self._reconciler.reconcile(entry.id, source)
        await self._db.set_metadata(entry.id, updates)
        outcome = SyncOutcome(source, status, entry.id, updates=updates)

        if self._store is not None:
            try:
                outcome.timestamp_corrected = await self._store.correct(
                    entry.id, entry.name, source.last_write_time, self._tolerance
                )
            except TimestampCorrectionError as exc:
                logger.error("Could not correct last modified for %s: %s", entry.name, exc)
                outcome.error = str(exc)
        return outcome

    async def _add_book(self, source: SourceMetadata, identifier: Identifier) -> int | None:
        tags = sanitise_tags(source.tags)
        identifiers = [Identifier(scheme, value) for scheme, value in source.identifiers.items()]

        cover_path: Path | None = None
        try:
            cover = await asyncio.to_thread(extract_cover, source.path)
        except EpubReadError as exc:
            logger.warning("Could not read cover from %s: %s", source.path, exc)
            cover = None
        if cover is not None:
            data, suffix = cover
            with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as handle:
                handle.write(data)
                cover_path = Path(handle.name)

        try:
            return await self._db.add(
                source.path,
                duplicates=True,
                tags=",".join(tags) if tags else None,
                identifiers=identifiers or [identifier],
                cover=cover_path,
                languages=self._language,
            )
        finally:
            if cover_path is not None:
                cover_path.unlink(missing_ok=True)

    @staticmethod
    def _failed(source: SourceMetadata, message: str, entry_id: int | None = None) -> SyncOutcome:
        logger.warning("%s: %s", source.display_name, message)
        return SyncOutcome(source, SyncStatus.FAILED, entry_id, error=message)


async def _run_bounded(
    jobs: Iterable[tuple[SourceMetadata, Callable[[], Awaitable[SyncOutcome]]]],
    concurrency: int,
) -> SyncResult:
    result = SyncResult()
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def run(source: SourceMetadata, job: Callable[[], Awaitable[SyncOutcome]]) -> SyncOutcome:
        async with semaphore:
            try:
                return await job()
            except Exception as exc:
                logger.error("Failed to sync %s: %s", source.display_name, exc)
                return SyncOutcome(source, SyncStatus.FAILED, error=str(exc))

    outcomes = await asyncio.gather(*(run(source, job) for source, job in jobs))
    for outcome in outcomes:
        result.record(outcome)
    return result


async def sync_many(
    orchestrator: SyncOrchestrator,
    sources: Iterable[SourceMetadata],
    *,
    concurrency: int = 4,
) -> SyncResult:
    """Add or update many books concurrently.

    A failure on one book is recorded in the result and does not stop the
    others.
    """
    return await _run_bounded(
        ((source, lambda s=source: orchestrator.add_or_update(s)) for source in sources),
        concurrency,
    )


async def refresh_many(
    orchestrator: SyncOrchestrator,
    pairs: Iterable[tuple[CatalogEntry, SourceMetadata]],
    *,
    concurrency: int = 4,
) -> SyncResult:
    """Reconcile many known entries against their stored files concurrently."""
    return await _run_bounded(
        (
            (source, lambda e=entry, s=source: orchestrator.update_entry(e, s))
            for entry, source in pairs
        ),
        concurrency,
    )
