"""Shared utilities for showing and exporting loan history as tables."""

from __future__ import annotations

import csv
import io
import sys
from datetime import date
from enum import Enum
from typing import Optional

from rich.console import Console
from tabulate import tabulate

from biblio_madrid_client import LoanRecord

BOOK_HEADERS = ["Title", "Author", "Due Date", "Days Remaining", "First Seen"]

# Display truncation constants
MAX_TITLE_LEN = 50
MAX_AUTHOR_LEN = 28


class OutputFormat(str, Enum):
    """Output format for export."""
    csv = "csv"
    markdown = "markdown"


console = Console(stderr=True)


def truncate(text: str, max_len: int) -> str:
    """Truncate text to max_len, adding '...' suffix if needed."""
    if len(text) > max_len:
        return text[:max_len - 3] + "..."
    return text


def book_rows(
    records: list[LoanRecord],
    today: Optional[date] = None,
    truncated: bool = False,
) -> list[list[str]]:
    """
    Build table rows for loan records.

    Args:
        records: Records in display order
        today: Reference date for days remaining (defaults to today)
        truncated: Shorten long titles and authors for console display
    """
    today = today or date.today()
    rows = []
    for record in records:
        title = record.title
        author = record.author or ""
        if truncated:
            title = truncate(title, MAX_TITLE_LEN)
            author = truncate(author, MAX_AUTHOR_LEN)

        due_date_str = str(record.due_date) if record.due_date else "N/A"
        days_str = str((record.due_date - today).days) if record.due_date else "N/A"

        rows.append([title, author, due_date_str, days_str, record.first_seen.date().isoformat()])
    return rows


def format_csv(headers: list[str], data: list[list[str]]) -> str:
    """
    Format data as CSV with UTF-8 BOM for Excel compatibility.

    Args:
        headers: Column headers
        data: Table data rows

    Returns:
        CSV formatted string with UTF-8 BOM
    """
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(headers)
    writer.writerows(data)
    # Prepend UTF-8 BOM for Excel compatibility
    return "\ufeff" + output.getvalue()


def format_markdown(headers: list[str], data: list[list[str]], title: str = "") -> str:
    """
    Format data as Markdown table.

    Args:
        headers: Column headers
        data: Table data rows
        title: Optional section title

    Returns:
        Markdown formatted string
    """
    result = ""
    if title:
        result += f"## {title}\n\n"
    result += tabulate(data, headers=headers, tablefmt="github")
    result += "\n"
    return result


def write_output(content: str, output_file: Optional[str], format_type: OutputFormat) -> None:
    """
    Write content to file or stdout.

    Args:
        content: The content to write
        output_file: Optional file path, if None writes to stdout
        format_type: The output format (csv or markdown)
    """
    if output_file:
        encoding = "utf-8-sig" if format_type == OutputFormat.csv else "utf-8"
        # utf-8-sig adds the BOM itself
        if format_type == OutputFormat.csv and content.startswith("\ufeff"):
            content = content[1:]
        with open(output_file, "w", encoding=encoding, newline="") as f:
            f.write(content)
        console.print(f"Exported to {output_file}")
    else:
        sys.stdout.buffer.write(content.encode("utf-8"))
        sys.stdout.buffer.flush()
