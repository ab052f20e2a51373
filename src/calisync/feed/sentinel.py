# ABOUTME: The .sentinel checkpoint: a file whose mtime is the last processed feed time.
# ABOUTME: Created at the Unix epoch; advanced under a lock with retries on OS errors.

import asyncio
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

SENTINEL_NAME = ".sentinel"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

RETRY_COUNT = 30
RETRY_WAIT = 0.1


class Sentinel:
    """Resume point for incremental feed syncs, stored in the library folder."""

    def __init__(self, library_path: Path) -> None:
        self.path = library_path / SENTINEL_NAME
        self._lock = asyncio.Lock()

    def ensure(self) -> None:
        """Create the sentinel at the epoch if it does not exist yet."""
        if self.path.exists():
            return
        self.path.write_bytes(b"")
        stamp = EPOCH.timestamp()
        os.utime(self.path, (stamp, stamp))

    def read(self) -> datetime:
        """The last processed feed time."""
        self.ensure()
        return datetime.fromtimestamp(self.path.stat().st_mtime, tz=timezone.utc)

    async def advance(self, when: datetime) -> bool:
        """Move the checkpoint forward to ``when``; earlier times are ignored.

        Returns:
            True if the checkpoint moved.

        Raises:
            OSError: If the file still cannot be updated after all retries.
        """
        async with self._lock:
            if when <= self.read():
                return False
            stamp = when.timestamp()
            for attempt in range(1, RETRY_COUNT + 1):
                try:
                    os.utime(self.path, (stamp, stamp))
                    return True
                except OSError as exc:
                    if attempt == RETRY_COUNT:
                        raise
                    logger.debug("Sentinel update failed (%s), retrying", exc)
                    await asyncio.sleep(RETRY_WAIT)
            return False
