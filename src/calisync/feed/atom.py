# ABOUTME: Parses the Standard Ebooks OPDS Atom feed into FeedItem records.
# ABOUTME: Keeps only the download links calisync can sync (EPUB3/advanced EPUB and KEPUB).

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime
from pathlib import PurePosixPath
from urllib.parse import urljoin, urlsplit

from calisync.calibre.records import parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_FEED_URL = "https://standardebooks.org/opds/all"

ATOM_NS = "http://www.w3.org/2005/Atom"
NS = {"atom": ATOM_NS}

EPUB_MEDIA_TYPE = "application/epub+zip"
KEPUB_MEDIA_TYPE = "application/kepub+zip"


class FeedParseError(Exception):
    """Raised when the feed document is not valid Atom XML."""


def link_file_name(url: str) -> str:
    """Local file name for a download link.

    ``.kepub.epub`` downloads keep a ``.kepub`` extension and ``.epub3``
    downloads become ``.epub``, matching the calibre format they land in.
    """
    name = PurePosixPath(urlsplit(url).path).name
    lowered = name.lower()
    if lowered.endswith(".kepub.epub"):
        return name[: -len(".epub")]
    if lowered.endswith(".epub3"):
        return name[: -len(".epub3")] + ".epub"
    return name


@dataclass(frozen=True)
class FeedLink:
    """A downloadable file offered by a feed entry."""

    url: str
    media_type: str

    @property
    def file_name(self) -> str:
        return link_file_name(self.url)

    @property
    def extension(self) -> str:
        """Calibre format name, e.g. ``EPUB`` or ``KEPUB``."""
        return PurePosixPath(self.file_name).suffix.lstrip(".").upper()

    @property
    def is_kepub(self) -> bool:
        return self.media_type == KEPUB_MEDIA_TYPE


@dataclass(frozen=True)
class FeedItem:
    """One book entry in the feed."""

    id: str
    title: str
    authors: tuple[str, ...]
    updated: datetime
    links: tuple[FeedLink, ...] = ()

    @property
    def display_name(self) -> str:
        return f"{self.title} - {' & '.join(self.authors)}"


def is_syncable(media_type: str, url: str) -> bool:
    """Whether a link is one of the formats calisync downloads.

    For EPUB only the EPUB3 (``.epub3``) or ``_advanced`` builds qualify.
    """
    if media_type == KEPUB_MEDIA_TYPE:
        return True
    if media_type != EPUB_MEDIA_TYPE:
        return False
    path = PurePosixPath(urlsplit(url).path)
    return path.name.lower().endswith("epub3") or path.stem.lower().endswith("_advanced")


def _parse_entry(node: ET.Element, base_url: str) -> FeedItem | None:
    entry_id = (node.findtext("atom:id", default="", namespaces=NS) or "").strip()
    updated = node.findtext("atom:updated", default=None, namespaces=NS)
    if not entry_id or not updated:
        logger.warning("Skipping feed entry without id or updated time")
        return None
    try:
        updated_at = parse_timestamp(updated.strip().replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Skipping %s: unparseable updated time %r", entry_id, updated)
        return None

    names = (
        author.findtext("atom:name", default="", namespaces=NS) or ""
        for author in node.findall("atom:author", NS)
    )
    authors = tuple(name.strip() for name in names if name.strip())

    links = []
    for link in node.findall("atom:link", NS):
        href = link.get("href")
        media_type = link.get("type", "")
        if href and is_syncable(media_type, href):
            links.append(FeedLink(urljoin(base_url, href), media_type))

    return FeedItem(
        id=entry_id,
        title=(node.findtext("atom:title", default="", namespaces=NS) or "").strip(),
        authors=authors,
        updated=updated_at,
        links=tuple(links),
    )


def parse_feed(xml_payload: str, base_url: str = DEFAULT_FEED_URL) -> list[FeedItem]:
    """Parse an Atom document into feed items, oldest update first.

    Raises:
        FeedParseError: If the payload is not XML.
    """
    try:
        root = ET.fromstring(xml_payload)
    except ET.ParseError as exc:
        raise FeedParseError(f"Invalid feed XML: {exc}") from exc

    parsed = (_parse_entry(node, base_url) for node in root.findall("atom:entry", NS))
    items = [item for item in parsed if item is not None]
    return sorted(items, key=lambda item: item.updated)


def items_after(items: list[FeedItem], since: datetime) -> list[FeedItem]:
    """Items updated strictly after ``since``."""
    return [item for item in items if item.updated > since]
