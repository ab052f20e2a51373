# ABOUTME: Field-by-field diff between a calibre entry and metadata read from its book file.
# ABOUTME: Produces the minimal FieldUpdate list; an unchanged book yields nothing.

import logging
from collections.abc import Sequence
from datetime import datetime

from calisync.calibre.db import CalibreDb, list_field_name
from calisync.calibre.parsers import CalibreOutputError
from calisync.calibre.records import parse_timestamp
from calisync.metadata.description import minify, rewrite_links
from calisync.metadata.tags import sanitise_list_item, sanitise_tags, tag_key
from calisync.metadata.types import CollectionType, FieldUpdate, Identifier, SourceMetadata

logger = logging.getLogger(__name__)

DEFAULT_BOOK_URL_BASE = "https://standardebooks.org"

_BASE_FIELDS = ("title", "comments", "tags", "series", "series_index", "pubdate")


class ReconcileError(Exception):
    """Raised when the current state of a catalog entry cannot be read."""


def series_updates(
    current_name: str | None,
    current_index: float,
    name: str | None,
    index: float,
) -> list[FieldUpdate]:
    """Updates needed to move a book from one series position to another.

    Nothing changes when the names match and either there is no series or
    the index already matches. A vanished series clears the name and zeroes
    the index. Otherwise only the parts that differ are written.
    """
    if current_name == name and (name is None or current_index == index):
        return []
    if name is None:
        logger.info("Clearing series")
        return [FieldUpdate("series", None), FieldUpdate("series_index", 0.0)]
    if current_name != name and current_index != index:
        logger.info("Updating series and index to %s:%s", name, index)
        return [FieldUpdate("series", name), FieldUpdate("series_index", index)]
    if current_name != name:
        logger.info("Updating series to %s", name)
        return [FieldUpdate("series", name)]
    logger.info("Updating series index to %s:%s", name, index)
    return [FieldUpdate("series_index", index)]


def split_collections(
    source: SourceMetadata, forced_series: Sequence[str] = ()
) -> tuple[str | None, float, list[str]]:
    """Pick the book's series and the sets it belongs to.

    The first series collection wins. A set listed in ``forced_series`` is
    treated as a series when the book has no real one. All remaining sets
    are returned sorted, with commas swapped for ";" as in tags.

    Returns:
        (series name or None, series position, sorted set names)
    """
    forced = set(forced_series)
    series = next((c for c in source.collections if c.type is CollectionType.SERIES), None)
    if series is None:
        series = next(
            (c for c in source.collections if c.type is CollectionType.SET and c.name in forced),
            None,
        )
    sets = sorted(
        sanitise_list_item(c.name)
        for c in source.collections
        if c.type is CollectionType.SET and c is not series
    )
    if series is None:
        return None, 0.0, sets
    return series.name, float(series.position), sets


def _text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text else None


def _set_names(value: object) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return sorted(part.strip() for part in value.split(",") if part.strip())
    return sorted(str(part) for part in value)


def _as_index(value: object) -> float:
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


class MetadataReconciler:
    """Computes the updates that bring a calibre entry in line with its book file.

    Args:
        db: The calibre library client used for reading state and resolving links.
        forced_series: Set names that count as series.
        sets_column: Custom column holding set names (e.g. ``#sets``), or None.
        subtitle_column: Custom column holding subtitles, or None.
        book_url_base: Site that description links point into.
    """

    def __init__(
        self,
        db: CalibreDb,
        *,
        forced_series: Sequence[str] = (),
        sets_column: str | None = None,
        subtitle_column: str | None = None,
        book_url_base: str = DEFAULT_BOOK_URL_BASE,
    ) -> None:
        self._db = db
        self._forced_series = tuple(forced_series)
        self._sets_column = sets_column
        self._subtitle_column = subtitle_column
        self._book_url_base = book_url_base

    def _fields(self) -> list[str]:
        fields = list(_BASE_FIELDS)
        for column in (self._sets_column, self._subtitle_column):
            if column:
                fields.append(list_field_name(column))
        return fields

    async def reconcile(self, entry_id: int, source: SourceMetadata) -> list[FieldUpdate]:
        """Diff one entry against its source metadata.

        Raises:
            MissingIdentifierError: If the source has no identifier.
            ReconcileError: If the entry cannot be read back from calibre.
        """
        identifier = source.primary_identifier
        logger.debug("Reconciling %s (%s) with book %d", source.display_name, identifier, entry_id)

        current = await self._db.fetch_fields(entry_id, self._fields())
        if current is None:
            raise ReconcileError(f"Book {entry_id} not found in calibre")

        updates: list[FieldUpdate] = []

        if _text(current.get("title")) != source.title:
            logger.info("Updating title to %s", source.title)
            updates.append(FieldUpdate("title", source.title))

        if self._subtitle_column:
            key = list_field_name(self._subtitle_column)
            if _text(current.get(key)) != source.subtitle:
                updates.append(FieldUpdate(self._subtitle_column, source.subtitle))

        description = await self._desired_description(source)
        if description is not None and minify(_text(current.get("comments"))) != description:
            logger.info("Updating description for %s", source.display_name)
            updates.append(FieldUpdate("comments", description))

        name, index, sets = split_collections(source, self._forced_series)
        updates.extend(
            series_updates(
                _text(current.get("series")),
                _as_index(current.get("series_index")),
                name,
                index,
            )
        )

        if self._sets_column:
            key = list_field_name(self._sets_column)
            if ", ".join(_set_names(current.get(key))) != ", ".join(sets):
                logger.info("Updating sets to %s", ", ".join(sets))
                updates.append(FieldUpdate(self._sets_column, sets))

        tags = sanitise_tags(source.tags)
        if tag_key(_set_names(current.get("tags"))) != tag_key(tags):
            logger.info("Updating tags for %s", source.display_name)
            updates.append(FieldUpdate("tags", tags))

        if source.published is not None and self._published(current.get("pubdate")) != source.published:
            updates.append(FieldUpdate("pubdate", source.published.isoformat()))

        return updates

    async def _desired_description(self, source: SourceMetadata) -> str | None:
        if source.long_description:
            markup = await rewrite_links(source.long_description, self._resolve_book, self._book_url_base)
            return minify(markup)
        return minify(source.description)

    async def _resolve_book(self, url: str) -> int | None:
        try:
            entry = await self._db.find_entry(Identifier("url", url))
        except CalibreOutputError as exc:
            logger.warning("Could not resolve %s: %s", url, exc)
            return None
        return entry.id if entry is not None else None

    @staticmethod
    def _published(value: object) -> datetime | None:
        text = _text(value)
        if text is None:
            return None
        try:
            return parse_timestamp(text)
        except ValueError:
            logger.warning("Unparseable publish date %r", text)
            return None
