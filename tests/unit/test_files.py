# ABOUTME: Unit tests for file comparison and replacement.
# ABOUTME: Covers digests, the mtime/size/hash checks, copy-on-mismatch, and touching mtimes.

import hashlib
import os
from datetime import datetime, timezone
from pathlib import Path

from calisync.core.files import content_digest, files_match, replace_if_changed, touch_to

STAMP = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc).timestamp()


def _write(path: Path, data: bytes, stamp: float = STAMP) -> Path:
    path.write_bytes(data)
    os.utime(path, (stamp, stamp))
    return path


class TestContentDigest:
    """Tests for content_digest."""

    def test_matches_hashlib(self, tmp_path: Path) -> None:
        """The digest equals a one-shot SHA-256 for a file spanning several read blocks."""
        data = os.urandom(3 * 1024 * 1024 + 17)
        path = _write(tmp_path / "big.bin", data)
        assert content_digest(path) == hashlib.sha256(data).hexdigest()


class TestFilesMatch:
    """Tests for files_match."""

    def test_identical_files(self, tmp_path: Path) -> None:
        """Same time, size and content match."""
        a = _write(tmp_path / "a", b"same")
        b = _write(tmp_path / "b", b"same")
        assert files_match(a, b)

    def test_different_mtime(self, tmp_path: Path) -> None:
        """A different modification time is a mismatch."""
        a = _write(tmp_path / "a", b"same")
        b = _write(tmp_path / "b", b"same", STAMP + 10)
        assert not files_match(a, b)

    def test_different_size(self, tmp_path: Path) -> None:
        """A different length is a mismatch."""
        assert not files_match(_write(tmp_path / "a", b"short"), _write(tmp_path / "b", b"longer"))

    def test_same_size_different_content(self, tmp_path: Path) -> None:
        """Equal time and size but other bytes is a mismatch."""
        assert not files_match(_write(tmp_path / "a", b"abcd"), _write(tmp_path / "b", b"abce"))


class TestReplaceIfChanged:
    """Tests for replace_if_changed."""

    def test_replaces_on_mismatch(self, tmp_path: Path) -> None:
        """A changed source overwrites the destination, keeping its mtime."""
        source = _write(tmp_path / "new.epub", b"new", STAMP + 60)
        destination = _write(tmp_path / "old.epub", b"old")
        assert replace_if_changed(source, destination, "Emma") is True
        assert destination.read_bytes() == b"new"
        assert files_match(source, destination)

    def test_keeps_matching_file(self, tmp_path: Path) -> None:
        """Matching files are left alone."""
        source = _write(tmp_path / "new.epub", b"same")
        destination = _write(tmp_path / "old.epub", b"same")
        assert replace_if_changed(source, destination, "Emma") is False


class TestTouchTo:
    """Tests for touch_to."""

    def test_sets_time(self, tmp_path: Path) -> None:
        """The modification time moves to the given instant."""
        path = _write(tmp_path / "a", b"x")
        when = datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert touch_to(path, when) is True
        assert path.stat().st_mtime == when.timestamp()
        assert touch_to(path, when) is False
