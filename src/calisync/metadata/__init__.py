# ABOUTME: Metadata package: what a book file says about itself, and how tags are cleaned.
# ABOUTME: Exports the SourceMetadata dataclass and related value types used throughout calisync.

from calisync.metadata.tags import sanitise_tags
from calisync.metadata.types import (
    Collection,
    CollectionType,
    FieldUpdate,
    Identifier,
    MissingIdentifierError,
    SourceMetadata,
)

__all__ = [
    "Collection",
    "CollectionType",
    "FieldUpdate",
    "Identifier",
    "MissingIdentifierError",
    "SourceMetadata",
    "sanitise_tags",
]
