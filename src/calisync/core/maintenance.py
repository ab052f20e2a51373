# ABOUTME: Library housekeeping reports built on calibredb's category listing.
# ABOUTME: Finds tags whose stored spelling differs from the canonical case sanitising produces.

import logging
from collections.abc import AsyncIterator

from calisync.calibre.db import CalibreDb
from calisync.calibre.records import Category, CategoryType
from calisync.metadata.tags import canonical_case

logger = logging.getLogger(__name__)


async def find_miscased_tags(db: CalibreDb) -> AsyncIterator[tuple[Category, str]]:
    """Yield each tag category together with the spelling it should have.

    Only tags whose name changes under :func:`canonical_case` are yielded.
    """
    async for category in db.list_categories(CategoryType.TAGS):
        canonical = canonical_case(category.name)
        if canonical != category.name:
            logger.debug("Tag %r should be %r", category.name, canonical)
            yield category, canonical
