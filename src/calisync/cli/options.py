# ABOUTME: Shared Click options and arguments for calisync commands.
# ABOUTME: Global sync options read CALISYNC_* environment variables and build SyncSettings.

from pathlib import Path

import click

from calisync.calibre.channel import DEFAULT_CONTENT_SERVER_URL
from calisync.config import SyncSettings

ENV_PREFIX = "CALISYNC"

library_argument = click.argument(
    "library",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
)


def _option(*names: str, env: str, **kwargs):
    return click.option(*names, envvar=f"{ENV_PREFIX}_{env}", show_envvar=True, **kwargs)


_SETTINGS_OPTIONS = [
    _option(
        "--use-content-server/--no-content-server",
        env="USE_CONTENT_SERVER",
        default=False,
        help="Talk to a running calibre content server instead of the library files.",
    ),
    _option(
        "--content-server-url",
        env="CONTENT_SERVER_URL",
        default=DEFAULT_CONTENT_SERVER_URL,
        help=f"Content server address (default: {DEFAULT_CONTENT_SERVER_URL}).",
    ),
    _option(
        "--calibre-path",
        env="CALIBRE_PATH",
        type=click.Path(file_okay=False, path_type=Path),
        default=None,
        help="Folder containing calibredb (default: found on PATH).",
    ),
    _option(
        "--max-time-offset",
        env="MAX_TIME_OFFSET",
        type=click.IntRange(min=0),
        default=180,
        help="Minutes a file must be newer before last_modified is corrected.",
    ),
    _option(
        "--forced-series",
        "forced_series_file",
        env="FORCED_SERIES",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        default=None,
        help="File listing set names to treat as series, one per line.",
    ),
    _option(
        "--sets-column",
        env="SETS_COLUMN",
        default=None,
        help="Custom column (e.g. #sets) that receives set names.",
    ),
    _option(
        "--subtitle-column",
        env="SUBTITLE_COLUMN",
        default=None,
        help="Custom column (e.g. #subtitle) that receives subtitles.",
    ),
    _option(
        "-j",
        "--concurrency",
        env="CONCURRENCY",
        type=click.IntRange(min=1),
        default=4,
        help="Books processed at the same time.",
    ),
]


def settings_options(func):
    """Attach every option that feeds SyncSettings."""
    for option in reversed(_SETTINGS_OPTIONS):
        func = option(func)
    return func


def read_forced_series(path: Path | None) -> tuple[str, ...]:
    """Series names from a file; blank lines are ignored."""
    if path is None:
        return ()
    lines = path.read_text(encoding="utf-8").splitlines()
    return tuple(line.strip() for line in lines if line.strip())


def _column(name: str | None) -> str | None:
    if not name:
        return None
    return name if name.startswith("#") else f"#{name}"


def build_settings(
    *,
    use_content_server: bool,
    content_server_url: str,
    calibre_path: Path | None,
    max_time_offset: int,
    forced_series_file: Path | None,
    sets_column: str | None,
    subtitle_column: str | None,
    concurrency: int,
) -> SyncSettings:
    return SyncSettings(
        max_time_offset=max_time_offset,
        use_content_server=use_content_server,
        content_server_url=content_server_url,
        calibre_path=calibre_path,
        forced_series=read_forced_series(forced_series_file),
        sets_column=_column(sets_column),
        subtitle_column=_column(subtitle_column),
        concurrency=concurrency,
    )
