# ABOUTME: Shared pytest fixtures for calisync tests.
# ABOUTME: Provides Standard Ebooks style EPUBs, a scripted calibredb, and a calibre metadata.db.

from pathlib import Path

import pytest

from tests.fixtures.fake_calibredb import FakeCalibre
from tests.fixtures.fake_library import FakeCalibreDb
from tests.fixtures.metadata_db import create_metadata_db
from tests.fixtures.se_books import BOOK_TIME, build_se_epub


@pytest.fixture
def se_epub(tmp_path: Path) -> Path:
    """A Standard Ebooks EPUB of The Moonstone, modified at BOOK_TIME."""
    return build_se_epub(
        tmp_path / "downloads" / "wilkie-collins_the-moonstone.epub",
        subtitle="A Romance",
        collections=(("Detective Classics", "set", None), ("The Collins Mysteries", "series", 2)),
        mtime=BOOK_TIME,
    )


@pytest.fixture
def corrupt_epub(tmp_path: Path) -> Path:
    """A file with an .epub name that is not a zip archive."""
    filepath = tmp_path / "corrupt.epub"
    filepath.write_text("this is not a valid epub file")
    return filepath


@pytest.fixture
def library_dir(tmp_path: Path) -> Path:
    """An empty calibre library folder with a minimal metadata.db."""
    root = tmp_path / "Calibre Library"
    root.mkdir()
    create_metadata_db(root)
    return root


@pytest.fixture
def fake_db(library_dir: Path) -> FakeCalibreDb:
    """An in-memory calibre library rooted at library_dir."""
    return FakeCalibreDb(library_dir)


@pytest.fixture
def fake_calibre(tmp_path: Path) -> FakeCalibre:
    """A scripted calibredb executable in its own folder."""
    return FakeCalibre(tmp_path / "calibre-bin")
