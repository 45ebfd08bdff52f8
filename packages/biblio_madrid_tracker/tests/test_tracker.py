"""Tests for the per-account sync pipeline.

These are unit tests using a fake snapshot source and an in-memory store.
"""

import json
import logging
from datetime import date, datetime, timezone
from typing import Optional

import pytest

from biblio_madrid_client import LoanRecord, LoginError
from biblio_madrid_tracker import (
    BookTracker,
    FileRecordStore,
    JsonPublisher,
    LibraryAccount,
    RecordStoreError,
)


JAN_1 = datetime(2026, 1, 1, tzinfo=timezone.utc)
NOW = datetime(2026, 2, 20, tzinfo=timezone.utc)


class FakeSource:
    """Snapshot source returning a fixed list of loans."""

    def __init__(self, snapshot: list[LoanRecord], login_error: Optional[Exception] = None):
        self.snapshot = snapshot
        self.login_error = login_error
        self.logged_in_as: Optional[tuple] = None
        self.covers_dir = None
        self.closed = False

    async def login(self, username=None, password=None) -> bool:
        if self.login_error:
            raise self.login_error
        self.logged_in_as = (username, password)
        return True

    async def scrape_snapshot(self, covers_dir=None) -> list[LoanRecord]:
        self.covers_dir = covers_dir
        return list(self.snapshot)

    async def close(self) -> None:
        self.closed = True


class InMemoryStore:
    """Record store keeping histories in a dict."""

    def __init__(self, fail_load: bool = False, fail_save: bool = False):
        self.histories: dict[str, list[LoanRecord]] = {}
        self.fail_load = fail_load
        self.fail_save = fail_save
        self.saves: list[str] = []

    async def load(self, account_key: str) -> list[LoanRecord]:
        if self.fail_load:
            raise RecordStoreError("disk on fire")
        return list(self.histories.get(account_key, []))

    async def save(self, account_key: str, records: list[LoanRecord]) -> None:
        if self.fail_save:
            raise RecordStoreError("read-only")
        self.saves.append(account_key)
        self.histories[account_key] = list(records)


def make_tracker(store, sources: dict[str, FakeSource], **kwargs) -> BookTracker:
    return BookTracker(store, source_factory=lambda account: sources[account.account_key], **kwargs)


@pytest.fixture
def quijote():
    return LoanRecord(title="Don Quijote", author="Cervantes", due_date=date(2026, 2, 12), first_seen=JAN_1)


class TestLibraryAccount:
    """Tests for account keys."""

    def test_primary_account_key(self):
        assert LibraryAccount("card", "pin").account_key == "books"

    def test_labelled_account_key(self):
        assert LibraryAccount("card", "pin", label="kids").account_key == "books-kids"


class TestSyncAccount:
    """Tests for one account's pipeline."""

    @pytest.mark.asyncio
    async def test_merges_and_saves(self, quijote):
        store = InMemoryStore()
        store.histories["books"] = [quijote]
        source = FakeSource([
            LoanRecord(title="don quijote", due_date=date(2026, 2, 26), first_seen=NOW),
            LoanRecord(title="Nuevo", due_date=date(2026, 3, 1), first_seen=NOW),
        ])
        tracker = make_tracker(store, {"books": source})

        result = await tracker.sync_account(LibraryAccount("card", "pin"))

        assert result.scraped_count == 2
        assert [b.title for b in result.records] == ["Don Quijote", "Nuevo"]
        assert result.records[0].due_date == date(2026, 2, 26)
        assert result.records[0].author == "Cervantes"
        assert result.report.added == 1
        assert result.report.updated == 1
        assert store.histories["books"] == result.records
        assert source.logged_in_as == ("card", "pin")
        assert source.closed is True

    @pytest.mark.asyncio
    async def test_covers_dir_is_passed_to_source(self, tmp_path):
        source = FakeSource([])
        tracker = make_tracker(InMemoryStore(), {"books": source}, covers_dir=tmp_path)

        await tracker.sync_account(LibraryAccount("card", "pin"))

        assert source.covers_dir == tmp_path

    @pytest.mark.asyncio
    async def test_login_failure_saves_nothing(self, quijote):
        store = InMemoryStore()
        store.histories["books"] = [quijote]
        source = FakeSource([], login_error=LoginError("Login failed"))
        tracker = make_tracker(store, {"books": source})

        with pytest.raises(LoginError):
            await tracker.sync_account(LibraryAccount("card", "pin"))

        assert store.saves == []
        assert store.histories["books"] == [quijote]
        assert source.closed is True

    @pytest.mark.asyncio
    async def test_unreadable_history_starts_fresh(self, caplog):
        store = InMemoryStore(fail_load=True)
        source = FakeSource([LoanRecord(title="Nuevo", first_seen=NOW)])
        tracker = make_tracker(store, {"books": source})

        with caplog.at_level(logging.WARNING):
            result = await tracker.sync_account(LibraryAccount("card", "pin"))

        assert result.history_loaded is False
        assert [b.title for b in result.records] == ["Nuevo"]
        assert store.saves == ["books"]
        assert "starting fresh" in caplog.text

    @pytest.mark.asyncio
    @pytest.mark.parametrize("document", [
        [{"Title": "Viejo", "FirstSeen": 123}],
        [{"Title": "Viejo", "DueDate": 20260101, "FirstSeen": "2026-01-01T00:00:00Z"}],
        [{"Title": None, "FirstSeen": "2026-01-01T00:00:00Z"}],
    ])
    async def test_malformed_history_file_starts_fresh(self, tmp_path, caplog, document):
        (tmp_path / "books.json").write_text(json.dumps(document), encoding="utf-8")
        store = FileRecordStore(tmp_path)
        tracker = BookTracker(store, source_factory=lambda account: FakeSource([LoanRecord(title="Nuevo", first_seen=NOW)]))

        with caplog.at_level(logging.WARNING):
            result = await tracker.sync_account(LibraryAccount("card", "pin"))

        assert result.history_loaded is False
        assert [b.title for b in result.records] == ["Nuevo"]
        assert [b.title for b in await store.load("books")] == ["Nuevo"]
        assert "starting fresh" in caplog.text

    @pytest.mark.asyncio
    async def test_save_failure_propagates(self):
        tracker = make_tracker(InMemoryStore(fail_save=True), {"books": FakeSource([])})

        with pytest.raises(RecordStoreError):
            await tracker.sync_account(LibraryAccount("card", "pin"))

    @pytest.mark.asyncio
    async def test_publishes_merged_history(self, tmp_path, quijote):
        store = InMemoryStore()
        store.histories["books"] = [quijote]
        tracker = make_tracker(store, {"books": FakeSource([])}, publisher=JsonPublisher(tmp_path))

        result = await tracker.sync_account(LibraryAccount("card", "pin"))

        assert result.published_to == tmp_path / "books.json"
        data = json.loads(result.published_to.read_text(encoding="utf-8"))
        assert data == [{
            "Title": "Don Quijote",
            "Author": "Cervantes",
            "Coleccion": None,
            "ImageUrl": None,
            "DueDate": "2026-02-12",
            "FirstSeen": "2026-01-01T00:00:00+00:00",
        }]


class TestSyncAll:
    """Tests for running several accounts."""

    @pytest.mark.asyncio
    async def test_accounts_are_kept_separate(self):
        store = InMemoryStore()
        sources = {
            "books": FakeSource([LoanRecord(title="Para mí", first_seen=NOW)]),
            "books-kids": FakeSource([LoanRecord(title="La ovejita va al cole", first_seen=NOW)]),
        }
        tracker = make_tracker(store, sources)

        results = await tracker.sync_all([
            LibraryAccount("card1", "pin1"),
            LibraryAccount("card2", "pin2", label="kids"),
        ])

        assert [r.account_key for r in results] == ["books", "books-kids"]
        assert [b.title for b in store.histories["books"]] == ["Para mí"]
        assert [b.title for b in store.histories["books-kids"]] == ["La ovejita va al cole"]
        assert store.saves == ["books", "books-kids"]

    @pytest.mark.asyncio
    async def test_failure_stops_remaining_accounts(self):
        store = InMemoryStore()
        sources = {
            "books": FakeSource([], login_error=LoginError("Login failed")),
            "books-kids": FakeSource([LoanRecord(title="X", first_seen=NOW)]),
        }
        tracker = make_tracker(store, sources)

        with pytest.raises(LoginError):
            await tracker.sync_all([
                LibraryAccount("card1", "pin1"),
                LibraryAccount("card2", "pin2", label="kids"),
            ])

        assert store.saves == []
