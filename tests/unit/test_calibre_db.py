# ABOUTME: Unit tests for CalibreDb, the typed calibredb client.
# ABOUTME: Checks composed arguments and parsed results against a scripted calibredb.

import typing
from pathlib import Path

import pytest

from calisync.calibre.channel import ProcessChannel
from calisync.calibre.db import (
    AutoMerge,
    CalibreDb,
    format_field_value,
    identifier_search,
    list_field_name,
)
from calisync.calibre.parsers import CalibreOutputError
from calisync.calibre.records import CategoryType
from calisync.metadata.types import FieldUpdate, Identifier
from tests.fixtures.fake_calibredb import FakeCalibre

LIBRARY = Path("/books/Calibre Library")
EMMA_URL = "https://standardebooks.org/ebooks/jane-austen/emma"


def _db(fake: FakeCalibre) -> CalibreDb:
    return CalibreDb(LIBRARY, channel=ProcessChannel(str(LIBRARY), executable=fake.executable))


def _record(entry_id: int = 7, title: str = "Emma") -> dict:
    return {
        "id": entry_id,
        "title": title,
        "authors": "Jane Austen",
        "identifiers": {"url": EMMA_URL},
        "last_modified": "2024-01-01T00:00:00+00:00",
        "formats": [],
    }


class TestCalibreDbClass:
    """Tests for the CalibreDb class definition."""

    def test_list_method_does_not_shadow_annotations(self) -> None:
        """Return types after the list method still resolve to the builtin list."""
        assert typing.get_type_hints(CalibreDb.search)["return"] == list[int]
        assert typing.get_type_hints(CalibreDb._list_args)["return"] == list[str]
        assert callable(CalibreDb.list)


def _args(call: list[str]) -> list[str]:
    """Arguments after the subcommand and library location."""
    return call[3:]


class TestHelpers:
    """Tests for the argument helpers."""

    def test_list_field_name(self) -> None:
        """Custom columns use '*' in list --fields."""
        assert list_field_name("#sets") == "*sets"
        assert list_field_name("title") == "title"

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(None, ""), (["A", "B"], "A,B"), (2.0, "2"), (2.5, "2.5"), ("x", "x")],
    )
    def test_format_field_value(self, value: object, expected: str) -> None:
        """Values render the way set_metadata expects."""
        assert format_field_value(value) == expected

    def test_identifier_search(self) -> None:
        """Identifier searches are exact and may require a format."""
        identifier = Identifier("url", EMMA_URL)
        assert identifier_search(identifier) == f'identifier:"=url:{EMMA_URL}"'
        assert identifier_search(identifier, "kepub") == (
            f'identifier:"=url:{EMMA_URL}" and formats:"KEPUB"'
        )


class TestCalibreDb:
    """Tests for CalibreDb operations."""

    def test_content_server_location(self, fake_calibre: FakeCalibre) -> None:
        """The content server option changes --with-library."""
        db = CalibreDb(LIBRARY, use_content_server=True, calibre_path=fake_calibre.directory)
        assert db.channel.location == "http://localhost:8080/#Calibre_Library"
        assert db.channel.command("list").argv[0] == str(fake_calibre.executable)

    @pytest.mark.asyncio
    async def test_list_arguments(self, fake_calibre: FakeCalibre) -> None:
        """list passes fields, sorting, search and limit before --for-machine."""
        fake_calibre.respond_json("list", [_record()])
        db = _db(fake_calibre)
        records = await db.list(
            ["id", "title"], sort_by="title", ascending=True, search="title:Emma", limit=5
        ).collect()

        assert records == [_record()]
        assert _args(fake_calibre.calls[0]) == [
            "--fields=id,title",
            "--sort-by=title",
            "--ascending",
            "--search=title:Emma",
            "--limit=5",
            "--for-machine",
        ]

    @pytest.mark.asyncio
    async def test_set_metadata_single_invocation(self, fake_calibre: FakeCalibre) -> None:
        """All updates go to one set_metadata call."""
        db = _db(fake_calibre)
        updates = [
            FieldUpdate("title", "Emma"),
            FieldUpdate("tags", ["Fiction", "Romance"]),
            FieldUpdate("series", None),
            FieldUpdate("series_index", 2.0),
            FieldUpdate("#sets", ["Austen Novels"]),
        ]
        assert await db.set_metadata(7, updates) is True
        assert fake_calibre.calls == [
            [
                "set_metadata",
                "--with-library",
                str(LIBRARY),
                "7",
                "--field",
                "title:Emma",
                "--field",
                "tags:Fiction,Romance",
                "--field",
                "series:",
                "--field",
                "series_index:2",
                "--field",
                "#sets:Austen Novels",
            ]
        ]

    @pytest.mark.asyncio
    async def test_set_metadata_nothing_to_do(self, fake_calibre: FakeCalibre) -> None:
        """No updates means no process."""
        assert await _db(fake_calibre).set_metadata(7, []) is False
        assert fake_calibre.calls == []

    @pytest.mark.asyncio
    async def test_add_returns_new_id(self, fake_calibre: FakeCalibre, tmp_path: Path) -> None:
        """add parses the reported id and passes the options through."""
        fake_calibre.respond("add", "Integration status: False\nAdded book ids: 12\n")
        book = tmp_path / "emma.epub"
        entry_id = await _db(fake_calibre).add(
            book,
            duplicates=True,
            automerge=AutoMerge.IGNORE,
            identifiers=[Identifier("url", EMMA_URL)],
            tags="Fiction,Romance",
            series_index=1.0,
            languages="eng",
        )
        assert entry_id == 12
        assert _args(fake_calibre.calls[0]) == [
            "--duplicates",
            "--automerge=ignore",
            f"--identifier=url:{EMMA_URL}",
            "--tags=Fiction,Romance",
            "--series_index=1",
            "--languages=eng",
            str(book),
        ]

    @pytest.mark.asyncio
    async def test_add_without_reported_id(self, fake_calibre: FakeCalibre, tmp_path: Path) -> None:
        """A refused add returns None."""
        fake_calibre.respond("add", "The following books were not added as they already exist\n")
        assert await _db(fake_calibre).add(tmp_path / "emma.epub") is None

    @pytest.mark.asyncio
    async def test_add_empty(self, fake_calibre: FakeCalibre) -> None:
        """add_empty passes --empty and no files."""
        fake_calibre.respond("add", "Added book ids: 3\n")
        assert await _db(fake_calibre).add_empty() == 3
        assert _args(fake_calibre.calls[0]) == ["--empty"]

    @pytest.mark.asyncio
    async def test_add_format(self, fake_calibre: FakeCalibre, tmp_path: Path) -> None:
        """add_format passes the id then the file."""
        book = tmp_path / "emma.kepub"
        assert await _db(fake_calibre).add_format(7, book, dont_replace=True) == 0
        assert _args(fake_calibre.calls[0]) == ["--dont-replace", "7", str(book)]

    @pytest.mark.asyncio
    async def test_search(self, fake_calibre: FakeCalibre) -> None:
        """search returns the reported ids."""
        fake_calibre.respond("search", "3,5,8\n")
        assert await _db(fake_calibre).search("title:Emma") == [3, 5, 8]

    @pytest.mark.asyncio
    async def test_search_garbage_raises(self, fake_calibre: FakeCalibre) -> None:
        """Unexpected search output is an error."""
        fake_calibre.respond("search", "no ids here\n")
        with pytest.raises(CalibreOutputError):
            await _db(fake_calibre).search("title:Emma")

    @pytest.mark.asyncio
    async def test_find_entry(self, fake_calibre: FakeCalibre) -> None:
        """find_entry searches by exact identifier and format."""
        fake_calibre.respond_json("list", [_record()])
        entry = await _db(fake_calibre).find_entry(Identifier("url", EMMA_URL), "EPUB")
        assert entry is not None
        assert entry.id == 7
        assert entry.name == "Emma - Jane Austen"
        args = _args(fake_calibre.calls[0])
        assert args[0] == "--fields=id,title,authors,identifiers,last_modified,formats"
        assert args[1] == f'--search=identifier:"=url:{EMMA_URL}" and formats:"EPUB"'

    @pytest.mark.asyncio
    async def test_find_entry_missing(self, fake_calibre: FakeCalibre) -> None:
        """No match gives None."""
        fake_calibre.respond_json("list", [])
        assert await _db(fake_calibre).find_entry(Identifier("url", EMMA_URL)) is None

    @pytest.mark.asyncio
    async def test_find_entry_ambiguous(self, fake_calibre: FakeCalibre) -> None:
        """More than one match is an error."""
        fake_calibre.respond_json("list", [_record(7), _record(8)])
        with pytest.raises(CalibreOutputError, match="2 books match"):
            await _db(fake_calibre).find_entry(Identifier("url", EMMA_URL))

    @pytest.mark.asyncio
    async def test_get_entry(self, fake_calibre: FakeCalibre) -> None:
        """get_entry searches by id."""
        fake_calibre.respond_json("list", [_record()])
        entry = await _db(fake_calibre).get_entry(7)
        assert entry is not None and entry.title == "Emma"
        assert '--search=id:"=7"' in fake_calibre.calls[0]

    @pytest.mark.asyncio
    async def test_fetch_fields(self, fake_calibre: FakeCalibre) -> None:
        """fetch_fields returns the raw record for one book."""
        fake_calibre.respond_json("list", [{"id": 7, "title": "Emma", "*sets": ["Austen Novels"]}])
        fields = await _db(fake_calibre).fetch_fields(7, ["title", "*sets"])
        assert fields == {"id": 7, "title": "Emma", "*sets": ["Austen Novels"]}
        assert "--fields=id,title,*sets" in fake_calibre.calls[0]

    @pytest.mark.asyncio
    async def test_iter_entries_by_publisher(self, fake_calibre: FakeCalibre) -> None:
        """Every book from the publisher is streamed as an entry."""
        fake_calibre.respond_json("list", [_record(7), _record(9, "Persuasion")])
        db = _db(fake_calibre)
        titles = [entry.title async for entry in db.iter_entries_by_publisher("Standard Ebooks")]
        assert titles == ["Emma", "Persuasion"]
        assert '--search=publisher:"=Standard Ebooks"' in fake_calibre.calls[0]
        assert "--ascending" in fake_calibre.calls[0]

    @pytest.mark.asyncio
    async def test_list_categories_filters_type(self, fake_calibre: FakeCalibre) -> None:
        """list_categories keeps only the requested type and skips unknown ones."""
        fake_calibre.respond(
            "list_categories",
            "category,tag_name,count,rating\n"
            "tags,Fiction,3,0.0\n"
            "#genre,Gothic,1,0.0\n"
            "series,Barsetshire,6,0.0\n"
            "tags,\"Love, and\nLoss\",1,0.0\n",
        )
        db = _db(fake_calibre)
        names = [c.name async for c in db.list_categories(CategoryType.TAGS)]
        assert names == ["Fiction", "Love, and\nLoss"]
        assert _args(fake_calibre.calls[0]) == ["--csv"]
