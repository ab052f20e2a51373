# ABOUTME: HTML handling for book descriptions: minifying and internal link rewriting.
# ABOUTME: Links to other catalog books become calibre://show-book references.

import logging
import re
from collections.abc import Awaitable, Callable
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup, Comment, NavigableString

logger = logging.getLogger(__name__)

CALIBRE_BOOK_LINK = "calibre://show-book/_/{id}"

_WHITESPACE_RE = re.compile(r"\s+")

# Sub-pages of a book (/ebooks/author/title/text/single-page) that are not part of its URL.
_BOOK_SUBPAGES = frozenset({"text", "downloads", "images"})

# Resolves a canonical book URL to a catalog id, or None if not in the library.
BookResolver = Callable[[str], Awaitable[int | None]]


def minify(html: str | None) -> str | None:
    """Normalize markup so formatting-only differences compare equal.

    Comments and indentation-only text are dropped and runs of whitespace
    collapse to a single space. Applying it twice changes nothing.
    """
    if html is None:
        return None
    soup = BeautifulSoup(html, "html.parser")
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()
    # Reparse so text split by a removed comment becomes one node again.
    soup = BeautifulSoup(str(soup), "html.parser")

    for text in soup.find_all(string=True):
        if not isinstance(text, NavigableString) or isinstance(text, Comment):
            continue
        if not text.strip() and "\n" in text:
            text.extract()
            continue
        collapsed = _WHITESPACE_RE.sub(" ", str(text))
        if collapsed != text:
            text.replace_with(collapsed)
    return str(soup).strip()


def _classify(path: str) -> tuple[str, str | None]:
    """Classify a site path as ("book", canonical path), "author", "collection" or "other"."""
    segments = [segment for segment in path.split("/") if segment]
    if len(segments) >= 3 and segments[0] == "ebooks":
        book = next(
            (segments[:i] for i in range(3, len(segments)) if segments[i] in _BOOK_SUBPAGES),
            segments,
        )
        return "book", "/" + "/".join(book)
    if len(segments) == 2 and segments[0] == "ebooks":
        return "author", None
    if segments and segments[0] == "collections":
        return "collection", None
    return "other", None


async def rewrite_links(html: str, resolve_book: BookResolver, base_url: str) -> str:
    """Point links to other books in the library at their calibre entries.

    Args:
        html: Description markup.
        resolve_book: Looks up a book's catalog id from its canonical URL.
        base_url: The site the description's links are relative to.

    Returns:
        The markup with every resolvable book link rewritten.
    """
    soup = BeautifulSoup(html, "html.parser")
    site = urlsplit(base_url)
    changed = False

    for anchor in soup.find_all("a", href=True):
        href = anchor["href"]
        target = urlsplit(urljoin(base_url.rstrip("/") + "/", href))
        if target.netloc != site.netloc or target.scheme not in ("http", "https"):
            logger.info("Unrecognized link %s", href)
            continue

        kind, path = _classify(target.path)
        if kind == "book" and path is not None:
            url = f"{site.scheme}://{site.netloc}{path}"
            entry_id = await resolve_book(url)
            if entry_id is None:
                logger.debug("Book link %s is not in the library", url)
                continue
            anchor["href"] = CALIBRE_BOOK_LINK.format(id=entry_id)
            changed = True
        elif kind in ("author", "collection"):
            logger.debug("Keeping %s link %s", kind, href)
        else:
            logger.info("Unrecognized link %s", href)

    return str(soup) if changed else html
