# ABOUTME: Public API for the direct metadata.db access layer.
# ABOUTME: Exports the connection helper and the last-modified correction store.

from calisync.db.connection import LibraryNotFoundError, open_metadata_db
from calisync.db.last_modified import LastModifiedStore, TimestampCorrectionError

__all__ = [
    "LastModifiedStore",
    "LibraryNotFoundError",
    "TimestampCorrectionError",
    "open_metadata_db",
]
