# ABOUTME: Validated records built from calibredb query output.
# ABOUTME: CatalogEntry mirrors a `list --for-machine` row, Category a `list_categories --csv` row.

import logging
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from calisync.calibre.parsers import CalibreOutputError

logger = logging.getLogger(__name__)

# Fields every entry query must request for CatalogEntry.from_record.
ENTRY_FIELDS = ("id", "title", "authors", "identifiers", "last_modified", "formats")

_REQUIRED_KEYS = ("id", "title", "authors", "last_modified")

_NAME_LENGTH = 31
_PATH_TITLE_LENGTH = 35

_INVALID_FILENAME_CHARS = frozenset('"<>|:*?\\/' + "".join(chr(i) for i in range(32)))

# Modifier letters calibre keeps as ASCII quotes rather than dropping.
_SMART_START_QUOTE = "ʻ"
_SMART_END_QUOTE = "ʼ"

# Characters NFKD leaves alone but that have an obvious ASCII spelling.
_ASCII_FOLDS = str.maketrans(
    {
        "‘": "'",
        "’": "'",
        "‚": "'",
        "‛": "'",
        "“": '"',
        "”": '"',
        "„": '"',
        "–": "-",
        "—": "-",
        "…": "...",
        "Æ": "AE",
        "æ": "ae",
        "Œ": "OE",
        "œ": "oe",
        "Ø": "O",
        "ø": "o",
        "ß": "ss",
        "Đ": "D",
        "đ": "d",
        "Ł": "L",
        "ł": "l",
        "Þ": "TH",
        "þ": "th",
    }
)


def sanitise(text: str) -> str:
    """Reduce text to the ASCII file-name form calibre uses on disk.

    Accents are folded away, separators become plain spaces, characters
    that are invalid in file names become ``_`` and anything still outside
    ASCII becomes ``__``. A trailing ``.`` is replaced with ``_``.
    """
    text = text.replace("�", "--").translate(_ASCII_FOLDS)
    out: list[str] = []
    for char in unicodedata.normalize("NFKD", text):
        category = unicodedata.category(char)
        if category == "Zs":
            out.append(" ")
        elif char == _SMART_START_QUOTE:
            out.append("`")
        elif char == _SMART_END_QUOTE:
            out.append("'")
        elif category == "Mn":
            continue
        elif ord(char) > 127:
            out.append("__")
        elif char in _INVALID_FILENAME_CHARS:
            out.append("_")
        else:
            out.append(char)

    if out and out[-1] == ".":
        out[-1] = "_"
    return "".join(out)


def _trim(text: str, length: int) -> str:
    return text[:length].rstrip() if len(text) > length else text


def parse_timestamp(value: str) -> datetime:
    """Parse a calibre timestamp into an aware UTC datetime.

    Naive values are taken to be UTC already.
    """
    parsed = datetime.fromisoformat(value.strip())
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def split_authors(authors: Any) -> tuple[str, ...]:
    """Normalize calibre's author field (``"A & B"`` or a list) to a tuple."""
    if isinstance(authors, str):
        parts = authors.split("&")
    else:
        parts = [str(author) for author in authors]
    return tuple(part.strip() for part in parts if part.strip())


@dataclass(frozen=True)
class CatalogEntry:
    """One book in the calibre catalog, as reported by calibredb.

    ``name`` and ``path`` follow calibre's own on-disk naming, so the stored
    file for a format lives at ``<library>/<path>/<name>.<ext>``.
    """

    id: int
    title: str
    name: str
    path: str
    authors: tuple[str, ...]
    last_modified: datetime
    identifiers: dict[str, str] = field(default_factory=dict)
    formats: tuple[str, ...] = ()

    @classmethod
    def from_record(cls, record: Any) -> "CatalogEntry":
        """Build an entry from one decoded ``calibredb list`` record.

        Raises:
            CalibreOutputError: If the record is not an object or lacks a
                required key, or a value has the wrong shape.
        """
        if not isinstance(record, dict):
            raise CalibreOutputError(f"Expected a book record, got {type(record).__name__}")
        missing = [key for key in _REQUIRED_KEYS if record.get(key) is None]
        if missing:
            raise CalibreOutputError(f"Book record is missing {', '.join(missing)}: {record!r}")

        try:
            entry_id = int(record["id"])
            last_modified = parse_timestamp(str(record["last_modified"]))
        except (TypeError, ValueError) as exc:
            raise CalibreOutputError(f"Malformed book record {record!r}: {exc}") from exc

        authors = split_authors(record["authors"])
        if not authors:
            raise CalibreOutputError(f"Book record {entry_id} has no authors")

        title = str(record["title"]).strip()
        sanitised_title = sanitise(title)
        sanitised_author = sanitise(authors[0])

        identifiers = record.get("identifiers") or {}
        if not isinstance(identifiers, dict):
            raise CalibreOutputError(f"Book record {entry_id} has malformed identifiers")

        return cls(
            id=entry_id,
            title=title,
            name=f"{_trim(sanitised_title, _NAME_LENGTH)} - {sanitised_author}",
            path=f"{sanitised_author}/{_trim(sanitised_title, _PATH_TITLE_LENGTH)} ({entry_id})",
            authors=authors,
            last_modified=last_modified,
            identifiers={str(k): str(v) for k, v in identifiers.items()},
            formats=tuple(str(f) for f in record.get("formats") or ()),
        )

    def format_path(self, library: Path, extension: str) -> Path:
        """Path of the stored file for a format.

        Args:
            library: The library root directory.
            extension: Format extension, with or without the leading dot.
        """
        suffix = "." + extension.lstrip(".").lower()
        for reported in self.formats:
            candidate = Path(reported)
            if candidate.is_absolute() and candidate.suffix.lower() == suffix:
                return candidate
        return library.joinpath(*self.path.split("/"), f"{self.name}{suffix}")

    def has_format(self, extension: str) -> bool:
        suffix = "." + extension.lstrip(".").lower()
        return any(Path(f).suffix.lower() == suffix for f in self.formats)


class CategoryType(Enum):
    """Kinds of category calibredb reports."""

    AUTHORS = "authors"
    BOOKSHELF = "bookshelf"
    FORMATS = "formats"
    IDENTIFIERS = "identifiers"
    LANGUAGES = "languages"
    PUBLISHER = "publisher"
    RATING = "rating"
    SERIES = "series"
    TAGS = "tags"
    SETS = "sets"

    @classmethod
    def from_text(cls, text: str) -> "CategoryType | None":
        """Map calibre's category key (``tags``, ``#sets``...) to a type."""
        key = text.strip().lstrip("#").lower()
        try:
            return cls(key)
        except ValueError:
            return None


@dataclass(frozen=True)
class Category:
    """One row of ``calibredb list_categories``."""

    category_type: CategoryType
    name: str
    count: int = 0
    rating: float = 0.0

    @classmethod
    def from_row(cls, row: tuple[str | None, ...]) -> "Category | None":
        """Build a category from a ``(category, tag_name, count, rating)`` row.

        Returns None for categories of a type this tool does not know.

        Raises:
            CalibreOutputError: If the row is short or its numbers do not parse.
        """
        if len(row) < 2 or row[0] is None or row[1] is None:
            raise CalibreOutputError(f"Malformed category row: {row!r}")
        category_type = CategoryType.from_text(row[0])
        if category_type is None:
            logger.debug("Skipping unknown category type %r", row[0])
            return None
        try:
            count = int(row[2]) if len(row) > 2 and row[2] else 0
            rating = float(row[3]) if len(row) > 3 and row[3] else 0.0
        except ValueError as exc:
            raise CalibreOutputError(f"Malformed category row {row!r}: {exc}") from exc
        return cls(category_type, row[1], count, rating)
