# ABOUTME: Decides whether a downloaded book file differs from calibre's stored copy.
# ABOUTME: Compares modification time, size, then a SHA-256 of the contents; copies over on mismatch.

import functools
import hashlib
import logging
import os
import shutil
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

_READ_BLOCK = 1 << 20


def content_digest(path: Path) -> str:
    """Hex SHA-256 of a file's bytes."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for block in iter(functools.partial(handle.read, _READ_BLOCK), b""):
            digest.update(block)
    return digest.hexdigest()


def files_match(source: Path, destination: Path) -> bool:
    """Whether two files are the same by mtime, length, and content digest.

    Checks run cheapest first and stop at the first difference.
    """
    source_stat = source.stat()
    destination_stat = destination.stat()

    if source_stat.st_mtime_ns != destination_stat.st_mtime_ns:
        logger.debug("%s and %s have different modified dates", source, destination)
        return False

    if source_stat.st_size != destination_stat.st_size:
        logger.debug("%s and %s are different lengths", source, destination)
        return False

    if content_digest(source) != content_digest(destination):
        logger.debug("%s and %s hashes do not match", source, destination)
        return False

    return True


def replace_if_changed(source: Path, destination: Path, name: str) -> bool:
    """Copy ``source`` over ``destination`` unless they already match.

    Returns:
        True if the file was replaced.
    """
    if files_match(source, destination):
        return False
    logger.info("Replacing %s as files do not match", name)
    shutil.copy2(source, destination)
    return True


def touch_to(path: Path, when: datetime) -> bool:
    """Set a file's modification time, if it differs.

    Returns:
        True if the time was changed.
    """
    target = when.timestamp()
    stat = path.stat()
    if stat.st_mtime == target:
        return False
    os.utime(path, (stat.st_atime, target))
    return True
