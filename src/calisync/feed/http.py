# ABOUTME: Async HTTP client for the book feed and its downloads.
# ABOUTME: Provides rate limiting, retry with backoff, and injectable transport for testing.

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path, PurePosixPath
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import httpx

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

# A download is stale when the server's copy differs by more than this.
DOWNLOAD_TOLERANCE_SECONDS = 2.0


class FeedFetchError(Exception):
    """Raised when an HTTP request to the feed or a download fails."""


def _last_modified(response: httpx.Response) -> datetime | None:
    header = response.headers.get("last-modified")
    if not header:
        return None
    try:
        return parsedate_to_datetime(header).astimezone(timezone.utc)
    except (TypeError, ValueError):
        logger.debug("Unparseable Last-Modified %r from %s", header, response.url)
        return None


def shorter_download_url(url: str) -> str:
    """Drop the last ``_``-separated part of a download's file name.

    ``author_title_advanced.epub`` becomes ``author_title.epub``; names with
    two parts or fewer are returned unchanged.
    """
    parts = urlsplit(url)
    path = PurePosixPath(parts.path)
    stem, dot, extension = path.name.partition(".")
    pieces = stem.split("_")
    keep = max(len(pieces) - 1, 2)
    name = "_".join(pieces[:keep]) + dot + extension
    return urlunsplit(parts._replace(path=str(path.with_name(name))))


class FeedClient:
    """Async HTTP client with rate limiting and retry for feed requests.

    Wraps httpx.AsyncClient with configurable request intervals and retry
    logic for transient failures (429, 5xx).
    """

    def __init__(
        self,
        *,
        min_request_interval: float = 0.1,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        client_kwargs: dict[str, Any] = {
            "headers": {"User-Agent": "calisync/0.1.0"},
            "timeout": 60.0,
        }
        if transport is not None:
            client_kwargs["transport"] = transport
        self._client = httpx.AsyncClient(**client_kwargs)
        self._min_interval = min_request_interval
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._last_request_time: float = 0.0
        self._rate_lock = asyncio.Lock()

    async def __aenter__(self) -> "FeedClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request with rate limiting and retry.

        Returns:
            The final response; any status outside the retryable set is
            returned as is.

        Raises:
            FeedFetchError: On transport errors or exhausted retries.
        """
        attempts = 1 + self._max_retries
        response: httpx.Response | None = None
        for attempt in range(attempts):
            await self._rate_limit()
            try:
                response = await self._client.request(method, url, **kwargs)
            except httpx.HTTPError as exc:
                raise FeedFetchError(f"Request failed: {url}: {exc}") from exc

            if response.status_code not in _RETRYABLE_STATUS_CODES:
                return response

            if attempt < attempts - 1:
                delay = self._retry_delay * (2**attempt)
                logger.warning(
                    "HTTP %d from %s, retrying in %.1fs (attempt %d/%d)",
                    response.status_code,
                    url,
                    delay,
                    attempt + 1,
                    self._max_retries,
                )
                await asyncio.sleep(delay)

        status = response.status_code if response is not None else 0
        raise FeedFetchError(f"HTTP {status} from {url} after {attempts} attempts")

    async def get_text(self, url: str) -> str:
        """GET a document body as text.

        Raises:
            FeedFetchError: On any non-200 response or transport failure.
        """
        response = await self._request("GET", url, follow_redirects=True)
        if response.status_code != 200:
            raise FeedFetchError(f"HTTP {response.status_code} from {url}")
        return response.text

    async def last_modified(self, url: str) -> datetime | None:
        """The server's Last-Modified for a URL, from a HEAD request."""
        response = await self._request("HEAD", url)
        if not response.is_success:
            return None
        return _last_modified(response)

    async def should_download(self, url: str, local_time: datetime | None) -> str | None:
        """Decide whether a download is newer than the local copy.

        When the server gives no Last-Modified for the URL, shorter variants
        of the file name are tried (see :func:`shorter_download_url`).

        Returns:
            The URL to download from, or None if the local copy is current
            or the server's time is unknown.
        """
        remote = await self.last_modified(url)
        while remote is None:
            shorter = shorter_download_url(url)
            if shorter == url:
                break
            url = shorter
            remote = await self.last_modified(url)

        if remote is None:
            logger.debug("No Last-Modified for %s", url)
            return None
        if local_time is not None:
            drift = abs((remote - local_time).total_seconds())
            if drift <= DOWNLOAD_TOLERANCE_SECONDS:
                return None
        return url

    async def download(self, url: str, destination: Path, *, overwrite: bool = False) -> Path:
        """Stream a URL to a file, stamping its mtime from Last-Modified.

        Raises:
            FeedFetchError: On HTTP failure, or if the file exists and
                ``overwrite`` is False.
        """
        if destination.exists() and not overwrite:
            raise FeedFetchError(f"{destination} already exists")

        await self._rate_limit()
        try:
            async with self._client.stream("GET", url, follow_redirects=True) as response:
                if response.status_code != 200:
                    raise FeedFetchError(f"HTTP {response.status_code} from {url}")
                with open(destination, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)
                modified = _last_modified(response)
        except httpx.HTTPError as exc:
            destination.unlink(missing_ok=True)
            raise FeedFetchError(f"Download failed: {url}: {exc}") from exc

        if modified is not None:
            stamp = modified.timestamp()
            os.utime(destination, (stamp, stamp))
        return destination

    async def _rate_limit(self) -> None:
        """Sleep if needed to maintain minimum interval between requests."""
        if self._min_interval <= 0:
            return
        async with self._rate_lock:
            now = time.monotonic()
            elapsed = now - self._last_request_time
            if elapsed < self._min_interval and self._last_request_time > 0:
                await asyncio.sleep(self._min_interval - elapsed)
            self._last_request_time = time.monotonic()
