"""Publish reconciled loan history for the display client."""

from __future__ import annotations

import logging
from pathlib import Path

from biblio_madrid_client import LoanRecord

from biblio_madrid_tracker.store import dumps_records

logger = logging.getLogger(__name__)


class JsonPublisher:
    """
    Writes ``<output_dir>/<account_key>.json`` in the stored record format.

    The display client fetches these files read-only, so they are plain
    UTF-8 JSON lists ordered by first_seen.
    """

    def __init__(self, output_dir: Path | str):
        self.output_dir = Path(output_dir)

    def publish(self, account_key: str, records: list[LoanRecord]) -> Path:
        """Write the records and return the published file path."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / f"{account_key}.json"
        path.write_text(dumps_records(records) + "\n", encoding="utf-8")
        logger.info("Published %d books to %s", len(records), path)
        return path
