# ABOUTME: Direct SQLite access to a calibre library's metadata.db.
# ABOUTME: Used only for the last-modified correction that calibredb cannot perform.

import sqlite3
from pathlib import Path

METADATA_DB_NAME = "metadata.db"


class LibraryNotFoundError(Exception):
    """Raised when a directory does not contain a calibre library."""


def metadata_db_path(library_path: Path) -> Path:
    return library_path / METADATA_DB_NAME


def open_metadata_db(library_path: Path) -> sqlite3.Connection:
    """Open an existing calibre library database for reading and writing.

    Unlike calibredb, nothing here registers calibre's custom SQL functions,
    so statements that fire calibre's triggers must suspend them first.

    Args:
        library_path: The calibre library directory.

    Returns:
        A sqlite3.Connection with sqlite3.Row rows.

    Raises:
        LibraryNotFoundError: If the library has no metadata.db.
    """
    db_path = metadata_db_path(library_path)
    if not db_path.is_file():
        raise LibraryNotFoundError(f"No calibre library at {library_path}")

    # Used from worker threads; LastModifiedStore serialises access.
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn
