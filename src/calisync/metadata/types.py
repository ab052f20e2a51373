# ABOUTME: Core data structures shared by the sync engine.
# ABOUTME: SourceMetadata is what an EPUB says; Identifier and FieldUpdate talk to calibredb.

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path


class MissingIdentifierError(ValueError):
    """Raised when a book has no identifier to resolve it against the catalog."""


@dataclass(frozen=True)
class Identifier:
    """A calibre identifier, serialised as ``scheme:value``."""

    scheme: str
    value: object

    def __str__(self) -> str:
        return f"{self.scheme}:{self.value}"

    @classmethod
    def parse(cls, text: str) -> "Identifier":
        """Parse ``scheme:value`` text back into an Identifier.

        Raises:
            ValueError: If the text has no scheme separator or an empty scheme.
        """
        scheme, sep, value = text.partition(":")
        if not sep or not scheme.strip():
            raise ValueError(f"Not a scheme:value identifier: {text!r}")
        return cls(scheme.strip(), value)


class CollectionType(Enum):
    """How an EPUB collection groups books."""

    NONE = "none"
    SET = "set"
    SERIES = "series"

    @classmethod
    def from_text(cls, text: str | None) -> "CollectionType":
        if not text:
            return cls.NONE
        try:
            return cls(text.strip().lower())
        except ValueError:
            return cls.NONE


@dataclass(frozen=True)
class Collection:
    """A named series or set the book belongs to."""

    name: str
    type: CollectionType = CollectionType.NONE
    position: int = 0


@dataclass(frozen=True)
class SourceMetadata:
    """Metadata observed in a downloaded e-book file.

    This is the input to reconciliation: the catalog is brought in line with
    it, never the other way round. Instances are immutable once parsed.
    """

    title: str
    path: Path
    last_write_time: datetime
    subtitle: str | None = None
    authors: tuple[str, ...] = ()
    publishers: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    identifiers: dict[str, str] = field(default_factory=dict)
    description: str | None = None
    long_description: str | None = None
    collections: tuple[Collection, ...] = ()
    published: datetime | None = None

    @property
    def primary_identifier(self) -> Identifier:
        """The identifier used to resolve this book in the catalog.

        Raises:
            MissingIdentifierError: If the book carries no identifiers.
        """
        if not self.identifiers:
            raise MissingIdentifierError(f"{self.title!r} has no identifiers")
        scheme, value = next(iter(self.identifiers.items()))
        return Identifier(scheme, value)

    @property
    def extension(self) -> str:
        """Upper-case calibre format name for the file, e.g. ``EPUB``."""
        return self.path.suffix.lstrip(".").upper()

    @property
    def author(self) -> str:
        """Joined author string for display."""
        return " & ".join(self.authors)

    @property
    def display_name(self) -> str:
        return f"{self.title} - {self.author}" if self.authors else self.title


@dataclass(frozen=True)
class FieldUpdate:
    """One field change sent to ``calibredb set_metadata``."""

    field: str
    value: str | float | list[str] | None
