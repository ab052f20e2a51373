# ABOUTME: Runtime settings shared by the sync engine and the CLI.
# ABOUTME: A frozen dataclass with the library defaults; the CLI fills it from options and env vars.

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from calisync.calibre.channel import DEFAULT_CONTENT_SERVER_URL
from calisync.metadata.reconciler import DEFAULT_BOOK_URL_BASE


@dataclass(frozen=True)
class SyncSettings:
    """Settings for one calisync run.

    Attributes:
        max_time_offset: Minutes a book file must be newer than the entry's
            last_modified before the timestamp is pulled forward.
        use_content_server: Talk to a calibre content server instead of
            the library files.
        content_server_url: Base URL of the content server.
        calibre_path: Directory holding calibredb; PATH when None.
        forced_series: Set names that are always treated as series.
        sets_column: Custom column receiving set names, or None.
        subtitle_column: Custom column receiving subtitles, or None.
        book_url_base: Site whose book links are rewritten in descriptions.
        concurrency: Books processed at once.
        language: Language given to newly added books.
    """

    max_time_offset: int = 180
    use_content_server: bool = False
    content_server_url: str = DEFAULT_CONTENT_SERVER_URL
    calibre_path: Path | None = None
    forced_series: tuple[str, ...] = ()
    sets_column: str | None = None
    subtitle_column: str | None = None
    book_url_base: str = DEFAULT_BOOK_URL_BASE
    concurrency: int = 4
    language: str = "eng"

    @property
    def tolerance(self) -> timedelta:
        return timedelta(minutes=self.max_time_offset)
