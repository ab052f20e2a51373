# ABOUTME: Typed operations over the calibredb command-line tool.
# ABOUTME: list/list_categories/add/add_format/search/set_metadata plus entry lookups by id or identifier.

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from enum import Enum
from pathlib import Path
from typing import Any

from calisync.calibre.channel import (
    DEFAULT_CONTENT_SERVER_URL,
    DEFAULT_EXECUTABLE,
    ProcessChannel,
    library_location,
)
from calisync.calibre.parsers import CalibreOutputError, CsvRecordParser, JsonDocumentParser, strip_noise
from calisync.calibre.records import ENTRY_FIELDS, CatalogEntry, Category, CategoryType
from calisync.calibre.stream import RecordStream
from calisync.metadata.types import FieldUpdate, Identifier

logger = logging.getLogger(__name__)

DEFAULT_SORT_BY = "id"

_ADDED_PREFIX = "Added book ids:"


class AutoMerge(Enum):
    """calibredb ``--automerge`` policies; DEFAULT leaves the option off."""

    DEFAULT = None
    IGNORE = "ignore"
    OVERWRITE = "overwrite"
    NEW_RECORD = "new_record"


def id_search(entry_id: int) -> str:
    return f'id:"={entry_id}"'


def identifier_search(identifier: Identifier, fmt: str | None = None) -> str:
    """Search expression for an exact identifier, optionally with a format."""
    expression = f'identifier:"={identifier}"'
    if fmt:
        expression += f' and formats:"{fmt.upper()}"'
    return expression


def list_field_name(column: str) -> str:
    """Name of a column as ``list --fields`` expects it (``#sets`` -> ``*sets``)."""
    return "*" + column[1:] if column.startswith("#") else column


def format_field_value(value: Any) -> str:
    """Render a FieldUpdate value for ``set_metadata --field``.

    Lists are comma-joined; None clears the field.
    """
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ",".join(format_field_value(item) for item in value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class CalibreDb:
    """Async client for one calibre library.

    Every call starts a fresh calibredb process; nothing is cached, so
    lookups always reflect the library's current state.

    Args:
        library_path: The library directory (the one holding metadata.db).
        use_content_server: Talk to a running calibre content server instead
            of opening the library files directly.
        server_url: Base URL of the content server.
        calibre_path: Directory containing calibredb; PATH is used when None.
        channel: Pre-built channel, mainly for tests.
    """

    def __init__(
        self,
        library_path: Path,
        *,
        use_content_server: bool = False,
        server_url: str = DEFAULT_CONTENT_SERVER_URL,
        calibre_path: Path | None = None,
        channel: ProcessChannel | None = None,
    ) -> None:
        self.library_path = library_path
        if channel is None:
            executable = calibre_path / DEFAULT_EXECUTABLE if calibre_path else DEFAULT_EXECUTABLE
            location = library_location(
                library_path, use_content_server=use_content_server, server_url=server_url
            )
            channel = ProcessChannel(location, executable=executable)
        self.channel = channel

    def list(
        self,
        fields: Iterable[str] | None = None,
        *,
        sort_by: str = DEFAULT_SORT_BY,
        ascending: bool = False,
        search: str | None = None,
        line_width: int | None = None,
        separator: str | None = None,
        prefix: str | None = None,
        limit: int | None = None,
    ) -> RecordStream[Any]:
        """Stream the records of ``calibredb list --for-machine``.

        Must be called from a running event loop; the process starts
        immediately.
        """
        return RecordStream(
            self.channel,
            "list",
            self._list_args(fields, sort_by, ascending, search, line_width, separator, prefix, limit),
            JsonDocumentParser(),
        )

    async def list_document(
        self,
        fields: Iterable[str] | None = None,
        *,
        sort_by: str = DEFAULT_SORT_BY,
        ascending: bool = False,
        search: str | None = None,
    ) -> Any | None:
        """Run ``calibredb list`` and return the whole JSON document.

        Returns None when calibredb printed nothing.

        Raises:
            CalibreOutputError: If the output is not valid JSON.
        """
        parser = JsonDocumentParser()
        await self.channel.execute(
            "list",
            self._list_args(fields, sort_by, ascending, search, None, None, None, None),
            on_line=parser.feed,
        )
        return parser.document()

    @staticmethod
    def _list_args(
        fields: Iterable[str] | None,
        sort_by: str,
        ascending: bool,
        search: str | None,
        line_width: int | None,
        separator: str | None,
        prefix: str | None,
        limit: int | None,
    ) -> list[str]:
        args: list[str] = []
        field_list = ",".join(fields) if fields else ""
        if field_list:
            args.append(f"--fields={field_list}")
        if sort_by != DEFAULT_SORT_BY:
            args.append(f"--sort-by={sort_by}")
        if ascending:
            args.append("--ascending")
        if search is not None:
            args.append(f"--search={search}")
        if line_width is not None:
            args.append(f"--line-width={line_width}")
        if separator is not None:
            args.append(f"--separator={separator}")
        if prefix is not None:
            args.append(f"--prefix={prefix}")
        if limit is not None:
            args.append(f"--limit={limit}")
        args.append("--for-machine")
        return args

    async def list_categories(
        self, category_type: CategoryType | None = None
    ) -> AsyncIterator[Category]:
        """Stream categories from ``calibredb list_categories --csv``."""
        stream: RecordStream[tuple[str | None, ...]] = RecordStream(
            self.channel, "list_categories", ["--csv"], CsvRecordParser()
        )
        async for category in stream.map(Category.from_row):
            if category_type is None or category.category_type is category_type:
                yield category

    async def add(
        self,
        path: Path,
        *,
        duplicates: bool = False,
        automerge: AutoMerge = AutoMerge.DEFAULT,
        title: str | None = None,
        authors: str | None = None,
        isbn: str | None = None,
        identifiers: Iterable[Identifier] = (),
        tags: str | None = None,
        series: str | None = None,
        series_index: float | None = None,
        cover: Path | None = None,
        languages: str | None = None,
    ) -> int | None:
        """Add one book file and return its new id.

        Returns None if calibredb did not report an added id (for example
        when it refused a duplicate).
        """
        ids = await self._add(
            [path],
            duplicates=duplicates,
            automerge=automerge,
            title=title,
            authors=authors,
            isbn=isbn,
            identifiers=identifiers,
            tags=tags,
            series=series,
            series_index=series_index,
            cover=cover,
            languages=languages,
        )
        return ids[0] if ids else None

    async def add_empty(self) -> int | None:
        """Create a book record with no formats."""
        ids = await self._add([], empty=True)
        return ids[0] if ids else None

    async def _add(
        self,
        paths: Sequence[Path],
        *,
        duplicates: bool = False,
        automerge: AutoMerge = AutoMerge.DEFAULT,
        empty: bool = False,
        title: str | None = None,
        authors: str | None = None,
        isbn: str | None = None,
        identifiers: Iterable[Identifier] = (),
        tags: str | None = None,
        series: str | None = None,
        series_index: float | None = None,
        cover: Path | None = None,
        languages: str | None = None,
    ) -> list[int]:
        args: list[str] = []
        if duplicates:
            args.append("--duplicates")
        if automerge is not AutoMerge.DEFAULT:
            args.append(f"--automerge={automerge.value}")
        if empty:
            args.append("--empty")
        if title is not None:
            args.append(f"--title={title}")
        if authors is not None:
            args.append(f"--authors={authors}")
        if isbn is not None:
            args.append(f"--isbn={isbn}")
        args.extend(f"--identifier={identifier}" for identifier in identifiers)
        if tags is not None:
            args.append(f"--tags={tags}")
        if series is not None:
            args.append(f"--series={series}")
        if series_index is not None:
            args.append(f"--series_index={format_field_value(series_index)}")
        if cover is not None:
            args.append(f"--cover={cover}")
        if languages is not None:
            args.append(f"--languages={languages}")
        args.extend(str(path) for path in paths)

        ids: list[int] = []

        def collect(line: str) -> None:
            line = strip_noise(line).strip()
            if line.startswith(_ADDED_PREFIX):
                ids.extend(_parse_ids(line[len(_ADDED_PREFIX):]))
            elif line:
                logger.info("%s", line)

        await self.channel.execute("add", args, on_line=collect)
        return ids

    async def add_format(self, entry_id: int, path: Path, *, dont_replace: bool = False) -> int | None:
        """Attach a file as another format of an existing book."""
        args = ["--dont-replace"] if dont_replace else []
        args.extend([str(entry_id), str(path)])
        return await self.channel.execute("add_format", args)

    async def search(self, expression: str) -> list[int]:
        """Ids of books matching a calibre search expression."""
        ids: list[int] = []

        def collect(line: str) -> None:
            line = strip_noise(line).strip()
            if line:
                ids.extend(_parse_ids(line))

        await self.channel.execute("search", [expression], on_line=collect)
        return ids

    async def set_metadata(self, entry_id: int, updates: Sequence[FieldUpdate]) -> bool:
        """Apply field updates to a book in a single calibredb invocation.

        Returns False without running anything when there is nothing to set.
        """
        if not updates:
            return False
        args = [str(entry_id)]
        for update in updates:
            args.extend(["--field", f"{update.field}:{format_field_value(update.value)}"])
        await self.channel.execute("set_metadata", args)
        return True

    async def get_entry(self, entry_id: int) -> CatalogEntry | None:
        return await self._single_entry(id_search(entry_id))

    async def find_entry(self, identifier: Identifier, fmt: str | None = None) -> CatalogEntry | None:
        """Look a book up by exact identifier, optionally requiring a format."""
        return await self._single_entry(identifier_search(identifier, fmt))

    async def fetch_fields(self, entry_id: int, fields: Iterable[str]) -> dict[str, Any] | None:
        """Current values of the given fields for one book, or None if absent."""
        records = await self.list(["id", *fields], search=id_search(entry_id)).collect()
        if not records:
            return None
        record = records[0]
        if not isinstance(record, dict):
            raise CalibreOutputError(f"Expected a book record, got {record!r}")
        return record

    async def iter_entries_by_publisher(self, publisher: str) -> AsyncIterator[CatalogEntry]:
        """Stream every book from one publisher, oldest id first."""
        stream = self.list(
            [*ENTRY_FIELDS, "publisher"],
            ascending=True,
            search=f'publisher:"={publisher}"',
        )
        async for entry in stream.map(CatalogEntry.from_record):
            yield entry

    async def _single_entry(self, search: str) -> CatalogEntry | None:
        records = await self.list(ENTRY_FIELDS, search=search).collect()
        if not records:
            return None
        if len(records) > 1:
            raise CalibreOutputError(f"{len(records)} books match {search}")
        return CatalogEntry.from_record(records[0])


def _parse_ids(text: str) -> list[int]:
    try:
        return [int(part) for part in (p.strip() for p in text.split(",")) if part]
    except ValueError as exc:
        raise CalibreOutputError(f"Unexpected id list from calibredb: {text!r}") from exc
