# ABOUTME: Unit tests for the core sync data structures.
# ABOUTME: Covers identifier round trips, primary identifier selection, and display helpers.

from datetime import datetime, timezone
from pathlib import Path

import pytest

from calisync.metadata.types import (
    CollectionType,
    Identifier,
    MissingIdentifierError,
    SourceMetadata,
)

WHEN = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _source(**kwargs) -> SourceMetadata:
    defaults = {"title": "Emma", "path": Path("/tmp/emma.kepub"), "last_write_time": WHEN}
    defaults.update(kwargs)
    return SourceMetadata(**defaults)


class TestIdentifier:
    """Tests for Identifier."""

    def test_renders_scheme_and_value(self) -> None:
        """str() gives scheme:value."""
        assert str(Identifier("isbn", "9780141439587")) == "isbn:9780141439587"

    def test_round_trip_keeps_colons_in_value(self) -> None:
        """Parsing the rendered form restores a URL value intact."""
        identifier = Identifier("url", "https://standardebooks.org/ebooks/jane-austen/emma")
        assert Identifier.parse(str(identifier)) == identifier

    @pytest.mark.parametrize("text", ["no-scheme", ":value", "  :value"])
    def test_parse_rejects_missing_scheme(self, text: str) -> None:
        """Text without a scheme is rejected."""
        with pytest.raises(ValueError):
            Identifier.parse(text)


class TestSourceMetadata:
    """Tests for SourceMetadata helpers."""

    def test_primary_identifier_is_first(self) -> None:
        """The first identifier in insertion order is primary."""
        source = _source(identifiers={"url": "https://x/1", "isbn": "123"})
        assert source.primary_identifier == Identifier("url", "https://x/1")

    def test_missing_identifier_raises(self) -> None:
        """A book without identifiers fails fast with a ValueError subclass."""
        with pytest.raises(MissingIdentifierError):
            _source().primary_identifier
        assert issubclass(MissingIdentifierError, ValueError)

    def test_extension_is_upper_case_format(self) -> None:
        """The calibre format name comes from the file suffix."""
        assert _source().extension == "KEPUB"

    def test_display_name(self) -> None:
        """Authors are joined with an ampersand."""
        source = _source(authors=("Jane Austen", "Ann Other"))
        assert source.display_name == "Emma - Jane Austen & Ann Other"
        assert _source().display_name == "Emma"


class TestCollectionType:
    """Tests for CollectionType.from_text."""

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("series", CollectionType.SERIES),
            (" Set ", CollectionType.SET),
            (None, CollectionType.NONE),
            ("anthology", CollectionType.NONE),
        ],
    )
    def test_from_text(self, text: str | None, expected: CollectionType) -> None:
        """Known words map to their type; anything else is NONE."""
        assert CollectionType.from_text(text) is expected
