"""
Biblio Madrid Tracker - Keeps a history of books borrowed from the Madrid public libraries.

This package scrapes the current loans, merges them into the stored history
by title and publishes the result for a static web page.
"""

from biblio_madrid_tracker.publisher import JsonPublisher
from biblio_madrid_tracker.reconcile import ReconcileReport, reconcile, reconcile_with_report
from biblio_madrid_tracker.store import (
    BlobRecordStore,
    FileRecordStore,
    RecordStore,
    RecordStoreError,
    open_store,
)
from biblio_madrid_tracker.tracker import BookTracker, LibraryAccount, SyncResult

__all__ = [
    "BookTracker",
    "LibraryAccount",
    "SyncResult",
    "ReconcileReport",
    "reconcile",
    "reconcile_with_report",
    "BlobRecordStore",
    "FileRecordStore",
    "RecordStore",
    "RecordStoreError",
    "open_store",
    "JsonPublisher",
]
