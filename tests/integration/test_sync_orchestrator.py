# ABOUTME: Integration tests for the add-or-update pipeline with real EPUB files.
# ABOUTME: Runs SyncOrchestrator against the in-memory library and a real metadata.db.

import os
import shutil
import threading
from datetime import timedelta
from pathlib import Path

import pytest

from calisync.core.sync import SyncOrchestrator, SyncStatus, sync_many
from calisync.db.last_modified import LastModifiedStore
from calisync.formats.epub import read_source_metadata
from calisync.metadata.reconciler import MetadataReconciler
from calisync.metadata.types import Identifier, MissingIdentifierError, SourceMetadata
from tests.fixtures.fake_library import FakeCalibreDb
from tests.fixtures.metadata_db import delete_book, insert_book
from tests.fixtures.se_books import BOOK_TIME, MOONSTONE_URL, build_se_epub


def _orchestrator(db: FakeCalibreDb, store: LastModifiedStore | None = None) -> SyncOrchestrator:
    return SyncOrchestrator(db, MetadataReconciler(db, sets_column="#sets"), store)


def _older_copy(tmp_path: Path) -> Path:
    return build_se_epub(
        tmp_path / "old" / "moonstone.epub",
        title="Moonstone",
        mtime=BOOK_TIME - timedelta(days=30),
    )


class TestAddNewBook:
    """Books the library has never seen are added whole."""

    @pytest.mark.asyncio
    async def test_adds_with_identifiers_tags_and_cover(self, se_epub: Path, fake_db: FakeCalibreDb) -> None:
        """The add call carries identifiers, sanitised tags, cover and language."""
        outcome = await _orchestrator(fake_db).add_or_update(read_source_metadata(se_epub))

        assert outcome.status is SyncStatus.ADDED
        added = fake_db.added[0]
        assert added["identifiers"] == [Identifier("url", MOONSTONE_URL)]
        assert added["tags"] == "Detective & Mystery Stories,India,Fiction"
        assert added["languages"] == "eng"
        assert added["duplicates"] is True
        assert added["cover"].suffix == ".svg"
        assert not added["cover"].exists()

    @pytest.mark.asyncio
    async def test_metadata_applied_after_add(self, se_epub: Path, fake_db: FakeCalibreDb) -> None:
        """Title, series and sets are reconciled straight after adding."""
        outcome = await _orchestrator(fake_db).add_or_update(read_source_metadata(se_epub))

        book = fake_db.books[outcome.entry_id]
        assert book["title"] == "The Moonstone"
        assert book["series"] == "The Collins Mysteries"
        assert book["series_index"] == 2.0
        assert book["*sets"] == ["Detective Classics"]

    @pytest.mark.asyncio
    async def test_stored_file_keeps_source_time(self, se_epub: Path, fake_db: FakeCalibreDb) -> None:
        """The stored copy's modification time matches the download."""
        outcome = await _orchestrator(fake_db).add_or_update(read_source_metadata(se_epub))

        stored = fake_db.entry(outcome.entry_id).format_path(fake_db.library_path, "EPUB")
        assert stored.stat().st_mtime == BOOK_TIME.timestamp()

    @pytest.mark.asyncio
    async def test_missing_identifier_raises(self, se_epub: Path, fake_db: FakeCalibreDb) -> None:
        """A book without identifiers is rejected before calibre is touched."""
        source = SourceMetadata(title="Anonymous", path=se_epub, last_write_time=BOOK_TIME)
        with pytest.raises(MissingIdentifierError):
            await _orchestrator(fake_db).add_or_update(source)
        assert fake_db.added == []


class TestAddFormat:
    """A known book receiving a format it does not have yet."""

    @pytest.mark.asyncio
    async def test_format_added_to_existing_entry(self, se_epub: Path, fake_db: FakeCalibreDb) -> None:
        """The file is attached to the matching entry instead of a new book."""
        entry_id = fake_db.create_book("The Moonstone", identifiers={"url": MOONSTONE_URL})

        outcome = await _orchestrator(fake_db).add_or_update(read_source_metadata(se_epub))

        assert outcome.status is SyncStatus.FORMAT_ADDED
        assert outcome.entry_id == entry_id
        assert fake_db.added == []
        assert fake_db.entry(entry_id).has_format("EPUB")


class TestUpdateExisting:
    """Books whose format is already stored."""

    @pytest.mark.asyncio
    async def test_changed_file_replaced(self, tmp_path: Path, se_epub: Path, fake_db: FakeCalibreDb) -> None:
        """A newer download overwrites the stored file and fixes the title."""
        entry_id = fake_db.create_book(
            "Moonstone", identifiers={"url": MOONSTONE_URL}, files=[_older_copy(tmp_path)]
        )

        outcome = await _orchestrator(fake_db).add_or_update(read_source_metadata(se_epub))

        assert outcome.status is SyncStatus.UPDATED
        assert outcome.file_replaced is True
        stored = fake_db.entry(entry_id).format_path(fake_db.library_path, "EPUB")
        assert stored.read_bytes() == se_epub.read_bytes()
        assert fake_db.books[entry_id]["title"] == "The Moonstone"

    @pytest.mark.asyncio
    async def test_identical_file_kept(self, se_epub: Path, fake_db: FakeCalibreDb) -> None:
        """An identical stored file is not copied again."""
        fake_db.create_book("The Moonstone", identifiers={"url": MOONSTONE_URL}, files=[se_epub])

        outcome = await _orchestrator(fake_db).add_or_update(read_source_metadata(se_epub))

        assert outcome.status is SyncStatus.UPDATED
        assert outcome.file_replaced is False

    @pytest.mark.asyncio
    async def test_missing_stored_file_fails(self, se_epub: Path, fake_db: FakeCalibreDb) -> None:
        """An entry whose file vanished from disk is reported as failed."""
        entry_id = fake_db.create_book("The Moonstone", identifiers={"url": MOONSTONE_URL}, files=[se_epub])
        fake_db.entry(entry_id).format_path(fake_db.library_path, "EPUB").unlink()

        outcome = await _orchestrator(fake_db).add_or_update(read_source_metadata(se_epub))

        assert outcome.status is SyncStatus.FAILED
        assert "does not exist" in outcome.error
        assert fake_db.set_metadata_calls == []


class TestTimestampCorrection:
    """last_modified correction through metadata.db."""

    @pytest.mark.asyncio
    async def test_old_entry_pulled_forward(
        self, se_epub: Path, fake_db: FakeCalibreDb, library_dir: Path
    ) -> None:
        """An entry a day older than its file gets the file's time."""
        entry_id = fake_db.create_book("The Moonstone", identifiers={"url": MOONSTONE_URL}, files=[se_epub])
        insert_book(library_dir, entry_id, BOOK_TIME - timedelta(days=1))

        with LastModifiedStore.open(library_dir) as store:
            outcome = await _orchestrator(fake_db, store).add_or_update(read_source_metadata(se_epub))
            assert await store.read(entry_id) == BOOK_TIME

        assert outcome.timestamp_corrected is True

    @pytest.mark.asyncio
    async def test_added_book_gets_file_time(
        self, se_epub: Path, fake_db: FakeCalibreDb, library_dir: Path
    ) -> None:
        """A new book stamped with the time of the add is set back to the file's time."""
        with LastModifiedStore.open(library_dir) as store:
            outcome = await _orchestrator(fake_db, store).add_or_update(read_source_metadata(se_epub))
            assert await store.read(outcome.entry_id) == BOOK_TIME

        assert outcome.status is SyncStatus.ADDED
        assert outcome.timestamp_corrected is True
        assert fake_db.set_metadata_calls

    @pytest.mark.asyncio
    async def test_attached_format_gets_file_time(
        self, se_epub: Path, fake_db: FakeCalibreDb, library_dir: Path
    ) -> None:
        """Attaching a format stamps the entry, which is then set to the file's time."""
        entry_id = fake_db.create_book("The Moonstone", identifiers={"url": MOONSTONE_URL})

        with LastModifiedStore.open(library_dir) as store:
            outcome = await _orchestrator(fake_db, store).add_or_update(read_source_metadata(se_epub))
            assert await store.read(entry_id) == BOOK_TIME

        assert outcome.status is SyncStatus.FORMAT_ADDED
        assert outcome.timestamp_corrected is True

    @pytest.mark.asyncio
    async def test_metadata_change_gets_file_time(
        self, tmp_path: Path, se_epub: Path, fake_db: FakeCalibreDb, library_dir: Path
    ) -> None:
        """Fields written during an update do not leave the entry at the time of the write."""
        entry_id = fake_db.create_book(
            "Moonstone", identifiers={"url": MOONSTONE_URL}, files=[_older_copy(tmp_path)]
        )

        with LastModifiedStore.open(library_dir) as store:
            outcome = await _orchestrator(fake_db, store).add_or_update(read_source_metadata(se_epub))
            assert await store.read(entry_id) == BOOK_TIME

        assert outcome.updates
        assert outcome.timestamp_corrected is True

    @pytest.mark.asyncio
    async def test_correction_error_keeps_book(
        self, se_epub: Path, fake_db: FakeCalibreDb, library_dir: Path
    ) -> None:
        """A book missing from metadata.db still counts as synced."""
        entry_id = fake_db.create_book("The Moonstone", identifiers={"url": MOONSTONE_URL}, files=[se_epub])
        delete_book(library_dir, entry_id)

        with LastModifiedStore.open(library_dir) as store:
            outcome = await _orchestrator(fake_db, store).add_or_update(read_source_metadata(se_epub))

        assert outcome.ok
        assert outcome.timestamp_corrected is False
        assert "No last_modified" in outcome.error


class TestFileWork:
    """File reads and copies during a sync."""

    @pytest.mark.asyncio
    async def test_runs_off_the_event_loop(
        self, se_epub: Path, fake_db: FakeCalibreDb, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Comparing and replacing the stored file happens in a worker thread."""
        fake_db.create_book("The Moonstone", identifiers={"url": MOONSTONE_URL}, files=[se_epub])
        threads: list[int] = []

        def record_thread(source: Path, stored: Path, name: str) -> bool:
            threads.append(threading.get_ident())
            return False

        monkeypatch.setattr("calisync.core.sync.replace_if_changed", record_thread)
        await _orchestrator(fake_db).add_or_update(read_source_metadata(se_epub))

        assert len(threads) == 1
        assert threads[0] != threading.get_ident()


class TestSyncMany:
    """Tests for sync_many."""

    @pytest.mark.asyncio
    async def test_failure_isolated(self, tmp_path: Path, se_epub: Path, fake_db: FakeCalibreDb) -> None:
        """One bad book is counted as failed while the others are added."""
        emma = build_se_epub(
            tmp_path / "downloads" / "jane-austen_emma.epub",
            title="Emma",
            authors=("Jane Austen",),
            url="https://standardebooks.org/ebooks/jane-austen/emma",
        )
        anonymous = tmp_path / "downloads" / "anonymous.epub"
        shutil.copy2(se_epub, anonymous)
        os.utime(anonymous, (BOOK_TIME.timestamp(), BOOK_TIME.timestamp()))
        sources = [
            read_source_metadata(se_epub),
            SourceMetadata(title="Anonymous", path=anonymous, last_write_time=BOOK_TIME),
            read_source_metadata(emma),
        ]

        result = await sync_many(_orchestrator(fake_db), sources, concurrency=2)

        assert result.added == 2
        assert result.failed == 1
        assert result.error_details[0][0] == anonymous
