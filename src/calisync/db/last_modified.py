# ABOUTME: Writes a book's last_modified timestamp straight into metadata.db.
# ABOUTME: Suspends calibre's books_update_trg around the single UPDATE, under an asyncio lock.

import asyncio
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

from calisync.calibre.records import parse_timestamp
from calisync.db.connection import open_metadata_db

logger = logging.getLogger(__name__)

TRIGGER_NAME = "books_update_trg"

_SELECT_TRIGGER = "SELECT sql FROM sqlite_master WHERE type='trigger' AND name=?"
_SELECT_LAST_MODIFIED = "SELECT last_modified FROM books WHERE id = ?"
_UPDATE_LAST_MODIFIED = "UPDATE books SET last_modified = ? WHERE id = ?"
_DROP_TRIGGER = f"DROP TRIGGER IF EXISTS {TRIGGER_NAME}"


class TimestampCorrectionError(Exception):
    """Raised when a stored last_modified value cannot be read or parsed."""


def format_timestamp(value: datetime) -> str:
    """Render a timestamp the way calibre stores it."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f+00:00")


class LastModifiedStore:
    """Owns the sqlite connection used to correct last_modified values.

    Every access goes through one asyncio.Lock, so concurrent book syncs
    never interleave the drop/update/recreate sequence. The sqlite calls
    themselves run in a worker thread, one at a time.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = asyncio.Lock()
        row = conn.execute(_SELECT_TRIGGER, (TRIGGER_NAME,)).fetchone()
        self._trigger_sql: str | None = row[0] if row else None
        if self._trigger_sql is None:
            logger.debug("No %s trigger in this library", TRIGGER_NAME)

    @classmethod
    def open(cls, library_path: Path) -> "LastModifiedStore":
        return cls(open_metadata_db(library_path))

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "LastModifiedStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    async def read(self, entry_id: int) -> datetime:
        """Current last_modified of a book, as an aware UTC datetime.

        Raises:
            TimestampCorrectionError: If the book is missing or the value
                does not parse.
        """
        async with self._lock:
            return await asyncio.to_thread(self._read, entry_id)

    def _read(self, entry_id: int) -> datetime:
        row = self._conn.execute(_SELECT_LAST_MODIFIED, (entry_id,)).fetchone()
        if row is None or row[0] is None:
            raise TimestampCorrectionError(f"No last_modified stored for book {entry_id}")
        try:
            return parse_timestamp(str(row[0]))
        except ValueError as exc:
            raise TimestampCorrectionError(
                f"Unparseable last_modified {row[0]!r} for book {entry_id}"
            ) from exc

    async def correct(
        self,
        entry_id: int,
        name: str,
        file_time: datetime,
        tolerance: timedelta,
    ) -> bool:
        """Set a book's last_modified to its file's time.

        Fires when the two differ by more than ``tolerance`` in either
        direction, so the "now" stamped by calibredb on add or
        set_metadata is replaced by the release time.

        Returns:
            True if the stored value was rewritten.

        Raises:
            TimestampCorrectionError: If the stored value cannot be read.
        """
        async with self._lock:
            return await asyncio.to_thread(self._correct, entry_id, name, file_time, tolerance)

    def _correct(self, entry_id: int, name: str, file_time: datetime, tolerance: timedelta) -> bool:
        stored = self._read(entry_id)
        if abs(file_time - stored) <= tolerance:
            return False

        logger.info("Updating last modified time for %s from %s to %s", name, stored, file_time)
        # One transaction, so a failed UPDATE cannot leave the trigger dropped.
        self._conn.execute("BEGIN")
        try:
            if self._trigger_sql is not None:
                self._conn.execute(_DROP_TRIGGER)
            self._conn.execute(_UPDATE_LAST_MODIFIED, (format_timestamp(file_time), entry_id))
            if self._trigger_sql is not None:
                self._conn.execute(self._trigger_sql)
            self._conn.commit()
        except sqlite3.Error:
            self._conn.rollback()
            raise
        return True
