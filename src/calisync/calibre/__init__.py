# ABOUTME: calibredb client package for calisync.
# ABOUTME: Re-exports the library client, its records, and the output parsing error.

from calisync.calibre.db import AutoMerge, CalibreDb
from calisync.calibre.parsers import CalibreOutputError
from calisync.calibre.records import CatalogEntry, Category, CategoryType

__all__ = [
    "AutoMerge",
    "CalibreDb",
    "CalibreOutputError",
    "CatalogEntry",
    "Category",
    "CategoryType",
]
