"""Merge a freshly scraped loan snapshot into the persisted loan history."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Iterable

from biblio_madrid_client import LoanRecord

logger = logging.getLogger(__name__)

# Optional metadata that is only ever filled in, never overwritten
BACKFILL_FIELDS = ("author", "collection", "cover_ref")


@dataclass
class ReconcileReport:
    """What a merge did. Informational only."""

    added: int = 0
    updated: int = 0
    skipped_duplicates: list[str] = field(default_factory=list)
    backfills: list[tuple[str, str]] = field(default_factory=list)  # (title, field name)

    def summary(self) -> str:
        return (
            f"{self.added} new, {self.updated} updated, "
            f"{len(self.backfills)} fields backfilled, "
            f"{len(self.skipped_duplicates)} duplicates skipped"
        )


def _first_seen_key(record: LoanRecord) -> datetime:
    first_seen = record.first_seen
    if first_seen.tzinfo is None:
        return first_seen.replace(tzinfo=timezone.utc)
    return first_seen


def _merge_into(stored: LoanRecord, incoming: LoanRecord, report: ReconcileReport) -> LoanRecord:
    """Apply an observation of an already known book to its stored record."""
    changes = {"due_date": incoming.due_date}
    for name in BACKFILL_FIELDS:
        if getattr(stored, name) is None and getattr(incoming, name) is not None:
            changes[name] = getattr(incoming, name)
            report.backfills.append((stored.title, name))
    return replace(stored, **changes)


def reconcile_with_report(
    prior_records: Iterable[LoanRecord],
    new_snapshot: Iterable[LoanRecord],
) -> tuple[list[LoanRecord], ReconcileReport]:
    """
    Merge new_snapshot into prior_records and describe what changed.

    Books are matched by normalized title. For a known book the due date is
    always taken from the snapshot (even when it is empty), first_seen is kept,
    and author, collection and cover are only filled in where they were empty.
    Unknown books are added as they are. Nothing is ever removed.

    Inputs are not modified.

    Returns:
        Tuple of (records sorted by first_seen, ReconcileReport).
    """
    report = ReconcileReport()
    books: dict[str, LoanRecord] = {}

    for record in prior_records:
        key = record.title_key()
        if key in books:
            report.skipped_duplicates.append(record.title)
            logger.warning("Skipping duplicate stored entry for %r", record.title)
            continue
        books[key] = record

    for record in new_snapshot:
        key = record.title_key()
        if key in books:
            books[key] = _merge_into(books[key], record, report)
            report.updated += 1
        else:
            books[key] = record
            report.added += 1

    # sorted() is stable, ties keep insertion order
    merged = sorted(books.values(), key=_first_seen_key)
    return merged, report


def reconcile(
    prior_records: Iterable[LoanRecord],
    new_snapshot: Iterable[LoanRecord],
) -> list[LoanRecord]:
    """
    Merge new_snapshot into prior_records.

    See reconcile_with_report() for the merge rules. The report is only
    logged.
    """
    merged, report = reconcile_with_report(prior_records, new_snapshot)
    logger.info("Reconciled %d books: %s", len(merged), report.summary())
    for title, name in report.backfills:
        logger.debug("Backfilled %s for %r", name, title)
    return merged
