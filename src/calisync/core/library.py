# ABOUTME: Wires the calibre client, reconciler, timestamp store and orchestrator for one library.
# ABOUTME: The store is only opened when calibredb works on the library files directly.

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from calisync.calibre.db import CalibreDb
from calisync.config import SyncSettings
from calisync.core.sync import SyncOrchestrator
from calisync.db.last_modified import LastModifiedStore
from calisync.metadata.reconciler import MetadataReconciler


@dataclass
class Library:
    """Everything a command needs to sync into one calibre library."""

    path: Path
    settings: SyncSettings
    db: CalibreDb
    reconciler: MetadataReconciler
    orchestrator: SyncOrchestrator
    store: LastModifiedStore | None = None


def calibre_db(library_path: Path, settings: SyncSettings) -> CalibreDb:
    """A calibredb client configured from the settings."""
    return CalibreDb(
        library_path,
        use_content_server=settings.use_content_server,
        server_url=settings.content_server_url,
        calibre_path=settings.calibre_path,
    )


@contextmanager
def open_library(library_path: Path, settings: SyncSettings) -> Iterator[Library]:
    """Build the sync stack for a library and close its database afterwards.

    Raises:
        LibraryNotFoundError: If direct access is configured and the folder
            has no metadata.db.
    """
    db = calibre_db(library_path, settings)
    reconciler = MetadataReconciler(
        db,
        forced_series=settings.forced_series,
        sets_column=settings.sets_column,
        subtitle_column=settings.subtitle_column,
        book_url_base=settings.book_url_base,
    )
    store = None if settings.use_content_server else LastModifiedStore.open(library_path)
    orchestrator = SyncOrchestrator(
        db,
        reconciler,
        store,
        tolerance=settings.tolerance,
        language=settings.language,
    )
    try:
        yield Library(library_path, settings, db, reconciler, orchestrator, store)
    finally:
        if store is not None:
            store.close()
