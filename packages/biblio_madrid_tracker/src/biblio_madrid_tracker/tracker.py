"""Run the scrape, merge, save and publish steps for each library account."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Protocol

from biblio_madrid_client import LoanRecord, MadridLibraryClient

from biblio_madrid_tracker.publisher import JsonPublisher
from biblio_madrid_tracker.reconcile import ReconcileReport, reconcile_with_report
from biblio_madrid_tracker.store import RecordStore, RecordStoreError

logger = logging.getLogger(__name__)

PRIMARY_ACCOUNT_KEY = "books"


@dataclass
class LibraryAccount:
    """
    Represents credentials for a library account.

    Attributes:
        username: Reader card number
        password: Reader PIN
        label: Optional label to distinguish a secondary account (e.g. a family member)
    """
    username: str
    password: str
    label: Optional[str] = None

    @property
    def account_key(self) -> str:
        """Storage and publish name for this account's history."""
        if self.label:
            return f"{PRIMARY_ACCOUNT_KEY}-{self.label}"
        return PRIMARY_ACCOUNT_KEY


class SnapshotSource(Protocol):
    """Produces the currently borrowed books of one account."""

    async def login(self, username: Optional[str] = None, password: Optional[str] = None) -> bool:
        ...

    async def scrape_snapshot(self, covers_dir: Optional[Path] = None) -> list[LoanRecord]:
        ...

    async def close(self) -> None:
        ...


def default_source_factory(account: LibraryAccount) -> SnapshotSource:
    return MadridLibraryClient(account.username, account.password)


@dataclass
class SyncResult:
    """Outcome of one account's run."""

    account_key: str
    scraped_count: int
    records: list[LoanRecord] = field(default_factory=list)
    report: ReconcileReport = field(default_factory=ReconcileReport)
    history_loaded: bool = True
    published_to: Optional[Path] = None


class BookTracker:
    """
    Keeps each account's loan history up to date.

    For every account the tracker scrapes the portal, loads the stored
    history, merges the two, saves the result and optionally publishes it.
    Accounts are processed one after another.

    Example:
        >>> tracker = BookTracker(FileRecordStore("data"), JsonPublisher("web/data"))
        >>> results = await tracker.sync_all([LibraryAccount("card", "pin")])
        >>> print(results[0].report.summary())
    """

    def __init__(
        self,
        store: RecordStore,
        publisher: Optional[JsonPublisher] = None,
        covers_dir: Optional[Path] = None,
        source_factory: Callable[[LibraryAccount], SnapshotSource] = default_source_factory,
    ):
        """
        Initialize the tracker.

        Args:
            store: Where loan history is kept between runs.
            publisher: Writes the merged history for the display client, if given.
            covers_dir: Where cover images are downloaded, if given.
            source_factory: Builds the snapshot source for an account.
        """
        self.store = store
        self.publisher = publisher
        self.covers_dir = covers_dir
        self._source_factory = source_factory

    async def scrape(self, account: LibraryAccount) -> list[LoanRecord]:
        """
        Log in and scrape the account's current loans.

        Raises:
            LibraryClientError: If login or the loans page fails.
        """
        source = self._source_factory(account)
        try:
            await source.login(account.username, account.password)
            return await source.scrape_snapshot(self.covers_dir)
        finally:
            await source.close()

    async def load_history(self, account_key: str) -> tuple[list[LoanRecord], bool]:
        """
        Load stored history, falling back to an empty history on read errors.

        Returns:
            Tuple of (records, whether the stored history could be read).
        """
        try:
            return await self.store.load(account_key), True
        except RecordStoreError as e:
            logger.warning("Could not load history for %s, starting fresh: %s", account_key, e)
            return [], False

    async def sync_account(self, account: LibraryAccount) -> SyncResult:
        """
        Run scrape, merge, save and publish for one account.

        Raises:
            LibraryClientError: If scraping fails; nothing is saved.
            RecordStoreError: If saving fails.
        """
        account_key = account.account_key

        snapshot = await self.scrape(account)
        logger.info("Scraped %d books for %s", len(snapshot), account_key)

        existing, history_loaded = await self.load_history(account_key)

        records, report = reconcile_with_report(existing, snapshot)
        logger.info("Total unique books for %s: %d (%s)", account_key, len(records), report.summary())

        await self.store.save(account_key, records)

        published_to = None
        if self.publisher:
            published_to = self.publisher.publish(account_key, records)

        return SyncResult(
            account_key=account_key,
            scraped_count=len(snapshot),
            records=records,
            report=report,
            history_loaded=history_loaded,
            published_to=published_to,
        )

    async def sync_all(self, accounts: list[LibraryAccount]) -> list[SyncResult]:
        """
        Sync all accounts sequentially.

        The first failing account stops the run; its exception propagates.
        """
        results = []
        for account in accounts:
            results.append(await self.sync_account(account))
        return results
