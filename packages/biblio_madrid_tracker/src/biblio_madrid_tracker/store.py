"""Persistence of each account's loan history as a JSON document."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol
from urllib.parse import urlsplit, urlunsplit

import httpx

from biblio_madrid_client import LoanRecord

logger = logging.getLogger(__name__)


class RecordStoreError(Exception):
    """Raised when stored loan history cannot be read or written."""
    pass


# Fractional seconds beyond microseconds (e.g. .1234567 from .NET serializers)
_EXTRA_FRACTION = re.compile(r"(\.\d{6})\d+")


def _parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    text = _EXTRA_FRACTION.sub(r"\1", value.strip())
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_date(value: Optional[str]) -> Optional[date]:
    """Parse an ISO date, or the date part of an ISO timestamp."""
    if not value:
        return None
    return date.fromisoformat(value.strip()[:10])


def record_to_dict(record: LoanRecord) -> dict[str, Any]:
    """Convert a record to its stored JSON object."""
    return {
        "Title": record.title,
        "Author": record.author,
        "Coleccion": record.collection,
        "ImageUrl": record.cover_ref,
        "DueDate": record.due_date.isoformat() if record.due_date else None,
        "FirstSeen": record.first_seen.isoformat(),
    }


def _text_field(data: dict[str, Any], key: str, required: bool = False) -> Optional[str]:
    """Return a string field; absent optional fields are None."""
    value = data[key] if required else data.get(key)
    if value is None and not required:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string, got {type(value).__name__}")
    return value


def record_from_dict(data: dict[str, Any]) -> LoanRecord:
    """
    Build a record from a stored JSON object.

    Missing and null optional fields both mean absent.

    Raises:
        KeyError: If Title or FirstSeen is missing.
        ValueError: If a field has the wrong type, or a date or timestamp
            cannot be parsed.
    """
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return LoanRecord(
        title=_text_field(data, "Title", required=True),
        author=_text_field(data, "Author"),
        collection=_text_field(data, "Coleccion"),
        cover_ref=_text_field(data, "ImageUrl"),
        due_date=_parse_date(_text_field(data, "DueDate")),
        first_seen=_parse_timestamp(_text_field(data, "FirstSeen", required=True)),
    )


def dumps_records(records: list[LoanRecord]) -> str:
    """Serialize records to the stored JSON document."""
    return json.dumps(
        [record_to_dict(record) for record in records],
        ensure_ascii=False,
        indent=2,
    )


def loads_records(text: str) -> list[LoanRecord]:
    """
    Parse a stored JSON document.

    Raises:
        RecordStoreError: If the document is not a list of valid records.
    """
    try:
        data = json.loads(text)
        if data is None:
            return []
        if not isinstance(data, list):
            raise RecordStoreError(f"Expected a JSON list, got {type(data).__name__}")
        return [record_from_dict(item) for item in data]
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise RecordStoreError(f"Invalid loan history document: {e}") from e


class RecordStore(Protocol):
    """Where an account's loan history lives between runs."""

    async def load(self, account_key: str) -> list[LoanRecord]:
        """Return the stored history, or an empty list if there is none."""
        ...

    async def save(self, account_key: str, records: list[LoanRecord]) -> None:
        """Replace the stored history."""
        ...


class FileRecordStore:
    """
    Stores each account's history as ``<directory>/<account_key>.json``.

    Writes go through a temporary file and an atomic rename, so readers
    never see a half-written document.
    """

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)

    def path_for(self, account_key: str) -> Path:
        return self.directory / f"{account_key}.json"

    async def load(self, account_key: str) -> list[LoanRecord]:
        path = self.path_for(account_key)
        if not path.exists():
            logger.info("No existing %s found, starting fresh", path)
            return []

        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8-sig")
        except OSError as e:
            raise RecordStoreError(f"Could not read {path}: {e}") from e

        records = loads_records(text)
        logger.info("Loaded %d existing books from %s", len(records), path)
        return records

    def _write_atomic(self, path: Path, content: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    async def save(self, account_key: str, records: list[LoanRecord]) -> None:
        path = self.path_for(account_key)
        content = dumps_records(records)

        try:
            await asyncio.to_thread(self._write_atomic, path, content)
        except OSError as e:
            raise RecordStoreError(f"Could not write {path}: {e}") from e

        logger.info("Saved %d books to %s", len(records), path)


class BlobRecordStore:
    """
    Stores each account's history as a blob in an HTTP blob container.

    The container URL may carry a query string (e.g. an Azure Storage SAS
    token); blob names are appended to its path. A 404 on read means no
    history yet.

    Example:
        >>> store = BlobRecordStore("https://acct.blob.core.windows.net/books?sv=...&sig=...")
        >>> records = await store.load("books")   # GET .../books/books.json?sv=...
    """

    def __init__(
        self,
        container_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.container_url = container_url
        self._transport = transport

    def url_for(self, account_key: str) -> str:
        parts = urlsplit(self.container_url)
        path = f"{parts.path.rstrip('/')}/{account_key}.json"
        return urlunsplit((parts.scheme, parts.netloc, path, parts.query, ""))

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=30.0, transport=self._transport)

    def _display_url(self, account_key: str) -> str:
        # Never log the SAS token
        return self.url_for(account_key).split("?")[0]

    async def load(self, account_key: str) -> list[LoanRecord]:
        url = self.url_for(account_key)
        try:
            async with self._client() as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise RecordStoreError(f"Could not download {self._display_url(account_key)}: {e}") from e

        if response.status_code == 404:
            logger.info("No existing %s found, starting fresh", self._display_url(account_key))
            return []
        if response.is_error:
            raise RecordStoreError(
                f"Could not download {self._display_url(account_key)}: HTTP {response.status_code}"
            )

        records = loads_records(response.content.decode("utf-8-sig"))
        logger.info("Downloaded %d existing books from storage", len(records))
        return records

    async def save(self, account_key: str, records: list[LoanRecord]) -> None:
        url = self.url_for(account_key)
        try:
            async with self._client() as client:
                response = await client.put(
                    url,
                    content=dumps_records(records).encode("utf-8"),
                    headers={
                        "x-ms-blob-type": "BlockBlob",
                        "Content-Type": "application/json; charset=utf-8",
                    },
                )
        except httpx.HTTPError as e:
            raise RecordStoreError(f"Could not upload {self._display_url(account_key)}: {e}") from e

        if response.is_error:
            raise RecordStoreError(
                f"Could not upload {self._display_url(account_key)}: HTTP {response.status_code}"
            )
        logger.info("Uploaded %d books to %s", len(records), self._display_url(account_key))


def open_store(location: str) -> RecordStore:
    """Pick a store backend: http(s) URLs are blob containers, anything else a directory."""
    if location.startswith(("http://", "https://")):
        return BlobRecordStore(location)
    return FileRecordStore(location)
