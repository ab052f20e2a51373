# ABOUTME: Reads the sync-relevant metadata out of an EPUB using ebooklib.
# ABOUTME: Understands EPUB3 refinements (title-type, collection-type, group-position) and covers.

import logging
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any

from ebooklib import ITEM_IMAGE, epub

from calisync.calibre.records import parse_timestamp
from calisync.metadata.types import Collection, CollectionType, SourceMetadata

logger = logging.getLogger(__name__)

_OPF_NS = epub.NAMESPACES["OPF"]

# Preferred cover file name inside Standard Ebooks packages.
_COVER_FILE_NAME = "cover.svg"

_IDENTIFIER_ID = "uid"
_LONG_DESCRIPTION_ID = "long-description"


class EpubReadError(Exception):
    """Raised when an EPUB file cannot be read or parsed."""


def _open(path: Path) -> epub.EpubBook:
    if not path.exists():
        raise EpubReadError(f"File not found: {path}")
    try:
        return epub.read_epub(str(path), options={"ignore_ncx": True})
    except Exception as exc:
        raise EpubReadError(f"Failed to read EPUB: {path}: {exc}") from exc


def _dc(book: epub.EpubBook, name: str) -> list[tuple[str, dict[str, Any]]]:
    """All Dublin Core entries for a name, with blank values dropped."""
    return [
        (str(value).strip(), attrs or {})
        for value, attrs in book.get_metadata("DC", name)
        if value and str(value).strip()
    ]


def _metas(book: epub.EpubBook) -> list[tuple[str, dict[str, Any]]]:
    """EPUB3 ``<meta property=...>`` elements.

    ebooklib 0.20 files them under ``"meta"``; 0.18 used a None key.
    """
    entries = [*book.get_metadata("OPF", "meta"), *book.get_metadata("OPF", None)]
    return [(str(value or "").strip(), attrs or {}) for value, attrs in entries]


def _refinement(metas: list[tuple[str, dict[str, Any]]], element_id: str, prop: str) -> str | None:
    target = f"#{element_id}"
    for value, attrs in metas:
        if attrs.get("refines") == target and attrs.get("property") == prop:
            return value
    return None


def _titles(book: epub.EpubBook, metas: list[tuple[str, dict[str, Any]]]) -> tuple[str | None, str | None]:
    title = subtitle = None
    for value, attrs in _dc(book, "title"):
        title_type = _refinement(metas, attrs["id"], "title-type") if "id" in attrs else None
        if title_type == "subtitle":
            subtitle = subtitle or value
        elif title is None or attrs.get("id") == "title":
            title = value
    return title, subtitle


def _identifiers(book: epub.EpubBook) -> dict[str, str]:
    """Identifiers keyed by scheme, the package's own uid first.

    The scheme comes from an ``opf:scheme`` attribute when present, otherwise
    from a ``scheme:value`` prefix in the text (``url:https://...``).
    """
    entries = sorted(_dc(book, "identifier"), key=lambda e: e[1].get("id") != _IDENTIFIER_ID)
    identifiers: dict[str, str] = {}
    for value, attrs in entries:
        scheme = attrs.get(f"{{{_OPF_NS}}}scheme") or attrs.get("opf:scheme") or attrs.get("scheme")
        if scheme:
            scheme, text = scheme.lower(), value
        else:
            scheme, sep, text = value.partition(":")
            if not sep or not scheme:
                logger.debug("Skipping identifier without a scheme: %s", value)
                continue
        identifiers.setdefault(scheme, text)
    return identifiers


def _long_description(metas: list[tuple[str, dict[str, Any]]]) -> str | None:
    for value, attrs in metas:
        if attrs.get("id") == _LONG_DESCRIPTION_ID and value:
            return "<div>" + value.replace("\t", "") + "</div>"
    return None


def _collections(metas: list[tuple[str, dict[str, Any]]]) -> tuple[Collection, ...]:
    collections = []
    for value, attrs in metas:
        if attrs.get("property") != "belongs-to-collection" or not value:
            continue
        element_id = attrs.get("id")
        collection_type = CollectionType.NONE
        position = 0
        if element_id:
            collection_type = CollectionType.from_text(
                _refinement(metas, element_id, "collection-type")
            )
            raw_position = _refinement(metas, element_id, "group-position")
            if raw_position:
                try:
                    position = int(raw_position)
                except ValueError:
                    logger.warning("Ignoring group-position %r for %s", raw_position, value)
        collections.append(Collection(value, collection_type, position))
    return tuple(collections)


def _published(book: epub.EpubBook) -> datetime | None:
    dates = _dc(book, "date")
    if not dates:
        return None
    text = dates[0][0]
    try:
        return parse_timestamp(text.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable dc:date %r", text)
        return None


def read_source_metadata(path: Path, *, parse_description: bool = True) -> SourceMetadata:
    """Extract the metadata calisync syncs into calibre from an EPUB.

    Args:
        path: Path to the EPUB file.
        parse_description: Read the descriptions too. KEPUB copies skip
            them so the EPUB stays the source of the description.

    Returns:
        SourceMetadata including the file's modification time (UTC).

    Raises:
        EpubReadError: If the file cannot be read or parsed.
    """
    book = _open(path)
    metas = _metas(book)

    title, subtitle = _titles(book, metas)
    description = _dc(book, "description") if parse_description else []

    return SourceMetadata(
        title=title or path.stem,
        subtitle=subtitle,
        path=path,
        last_write_time=datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc),
        authors=tuple(value for value, _ in _dc(book, "creator")),
        publishers=tuple(value for value, _ in _dc(book, "publisher")),
        tags=tuple(value for value, _ in _dc(book, "subject")),
        identifiers=_identifiers(book),
        description=description[0][0] if description else None,
        long_description=_long_description(metas) if parse_description else None,
        collections=_collections(metas),
        published=_published(book),
    )


def extract_cover(path: Path) -> tuple[bytes, str] | None:
    """Return the cover image bytes and file suffix, if the EPUB has one.

    Raises:
        EpubReadError: If the file cannot be read or parsed.
    """
    book = _open(path)
    images = list(book.get_items_of_type(ITEM_IMAGE))

    for item in images:
        if PurePosixPath(item.get_name()).name == _COVER_FILE_NAME:
            return item.get_content(), ".svg"

    cover_meta = book.get_metadata("OPF", "cover")
    if cover_meta:
        cover_item = book.get_item_with_id(cover_meta[0][1].get("content"))
        if cover_item is not None:
            return cover_item.get_content(), PurePosixPath(cover_item.get_name()).suffix

    for item in images:
        if "cover" in (item.get_id() or "").lower() or "cover" in item.get_name().lower():
            return item.get_content(), PurePosixPath(item.get_name()).suffix

    return None
