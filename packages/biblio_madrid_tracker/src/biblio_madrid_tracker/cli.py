"""Command-line interface for the Madrid library loan tracker."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import httpx
from tabulate import tabulate

from biblio_madrid_client import LibraryClientError, LoginError

from biblio_madrid_tracker.config import ENV_OVERRIDES, ConfigError, load_settings
from biblio_madrid_tracker.export_utils import (
    BOOK_HEADERS,
    OutputFormat,
    book_rows,
    format_csv,
    format_markdown,
    write_output,
)
from biblio_madrid_tracker.logging_setup import configure_logging
from biblio_madrid_tracker.publisher import JsonPublisher
from biblio_madrid_tracker.store import RecordStoreError, open_store
from biblio_madrid_tracker.tracker import BookTracker, SyncResult

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Track books borrowed from the Madrid public libraries",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Credentials from the environment, history kept in ./data
  export LIBRARY_USERNAME=your_card_number
  export LIBRARY_PASSWORD=your_pin
  biblio-madrid-sync

  # Publish for the web page and download covers next to it
  biblio-madrid-sync --publish-dir web/data --covers-dir web/data/covers

  # Keep history in a blob container (SAS URL)
  biblio-madrid-sync --storage "https://acct.blob.core.windows.net/books?sv=...&sig=..."

  # Export the merged history
  biblio-madrid-sync --output books.csv
  biblio-madrid-sync --output books.md --format markdown

  # Config file format (appsettings.json):
  # {
  #   "LibraryUsername": "card1", "LibraryPassword": "pin1",
  #   "SecondaryLibraryUsername": "card2", "SecondaryLibraryPassword": "pin2",
  #   "SecondaryLibraryLabel": "kids",
  #   "StorageLocation": "data", "PublishDirectory": "web/data"
  # }
""",
    )

    config_group = parser.add_argument_group("Account Configuration")
    config_group.add_argument(
        "--config",
        "-c",
        type=Path,
        help="Path to JSON config file (default: appsettings.json if present)",
    )
    config_group.add_argument(
        "--username",
        "-u",
        help="Reader card number. Uses LIBRARY_USERNAME env var if not provided.",
    )
    config_group.add_argument(
        "--password",
        "-p",
        help="Reader PIN. Uses LIBRARY_PASSWORD env var if not provided.",
    )

    storage_group = parser.add_argument_group("Storage Options")
    storage_group.add_argument(
        "--storage",
        "-s",
        help="History directory or blob container URL (default: data)",
    )
    storage_group.add_argument(
        "--publish-dir",
        help="Directory to publish the merged history for the web page",
    )
    storage_group.add_argument(
        "--covers-dir",
        help="Directory to download cover images into",
    )

    output_group = parser.add_argument_group("Output Options")
    output_group.add_argument(
        "--output",
        "-o",
        help="Export the merged history to file (supports CSV and Markdown)",
    )
    output_group.add_argument(
        "--format",
        "-f",
        choices=[f.value for f in OutputFormat],
        default=OutputFormat.csv.value,
        help="Output file format: csv (default) or markdown",
    )
    output_group.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show debug logging",
    )
    return parser


def print_result(result: SyncResult) -> None:
    """Print the summary and book table for one account."""
    print(f"## {result.account_key}")
    print()
    print(f"Scraped {result.scraped_count} books from website")
    print(f"Total unique books (by title): {len(result.records)} ({result.report.summary()})")
    if not result.history_loaded:
        print("Warning: stored history could not be read, started fresh", file=sys.stderr)
    if result.published_to:
        print(f"Published to {result.published_to}")
    print()

    if not result.records:
        print("No books tracked yet.")
    else:
        print(tabulate(book_rows(result.records, truncated=True), headers=BOOK_HEADERS, tablefmt="github"))
    print()


def export_results(results: list[SyncResult], output_file: str, format_type: OutputFormat) -> None:
    """Export every account's merged history to one file."""
    if format_type == OutputFormat.csv:
        headers = ["Account"] + BOOK_HEADERS
        rows = [
            [result.account_key] + row
            for result in results
            for row in book_rows(result.records)
        ]
        content = format_csv(headers, rows)
    else:
        content = "\n".join(
            format_markdown(BOOK_HEADERS, book_rows(result.records), title=result.account_key)
            for result in results
        )
    write_output(content, output_file, format_type)


def main() -> int:
    """Main entry point for the CLI."""
    return asyncio.run(async_main())


async def async_main(argv: list[str] | None = None) -> int:
    """Async main function for the CLI."""
    args = build_parser().parse_args(argv)
    configure_logging(verbose=args.verbose)

    try:
        settings = load_settings(
            config_path=args.config,
            overrides={
                "LibraryUsername": args.username,
                "LibraryPassword": args.password,
                "StorageLocation": args.storage,
                "PublishDirectory": args.publish_dir,
                "CoversDirectory": args.covers_dir,
            },
        )
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        print("Required: LibraryUsername, LibraryPassword", file=sys.stderr)
        print(
            "Set via appsettings.json, environment variables "
            f"({ENV_OVERRIDES['LibraryUsername']}, {ENV_OVERRIDES['LibraryPassword']}) "
            "or --username/--password",
            file=sys.stderr,
        )
        return 1

    tracker = BookTracker(
        store=open_store(settings.storage_location),
        publisher=JsonPublisher(settings.publish_dir) if settings.publish_dir else None,
        covers_dir=settings.covers_dir,
    )

    print(f"Syncing {len(settings.accounts)} account(s)...")
    print()

    results: list[SyncResult] = []
    for account in settings.accounts:
        try:
            results.append(await tracker.sync_account(account))
        except LoginError as e:
            print(f"Error: {account.account_key}: {e}", file=sys.stderr)
            return 1
        except (LibraryClientError, httpx.HTTPError) as e:
            print(f"Error: {account.account_key}: scraping failed: {e}", file=sys.stderr)
            return 1
        except RecordStoreError as e:
            print(f"Error: {account.account_key}: could not save history: {e}", file=sys.stderr)
            return 1
        print_result(results[-1])

    if args.output:
        export_results(results, args.output, OutputFormat(args.format))

    print("Sync complete!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
