"""Minimal CLI entry point for manual runs of the Mbox Ingestor."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from mbox_ingestor.config.settings import MboxIngestorSettings
from mbox_ingestor.core.models import SyncProgress, SyncSummary, ThreadStatus
from mbox_ingestor.core.parser import MboxParser
from mbox_ingestor.pipeline.ingestor import MboxIngestor


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def on_progress(progress: SyncProgress) -> None:
    """Print progress updates to stdout."""
    print(
        f"[{progress.current_unit_label or '-'}] "
        f"months={progress.months_done}/{progress.months_total} "
        f"running={progress.is_running}",
        end="\r",
        flush=True,
    )


def _print_summary(summary: SyncSummary) -> None:
    stats = summary.parse_stats
    print(
        f"\n\nComplete: units={summary.units_fetched}/{summary.units_total} "
        f"failed={summary.units_failed} parsed={summary.messages_parsed} "
        f"new={summary.messages_inserted}"
    )
    print(
        f"Skipped {stats.skipped} messages "
        f"(message-id: {stats.invalid_message_id}, from: {stats.invalid_from}, "
        f"date: {stats.invalid_date}); repaired ids: {stats.malformed_message_id}"
    )


def _add_listing_args(subparser: argparse.ArgumentParser) -> None:
    """Add --status and --limit flags to a subparser."""
    subparser.add_argument(
        "--status",
        "-s",
        choices=[status.value for status in ThreadStatus],
        default=None,
        help="Only show threads with this status",
    )
    subparser.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Maximum number of threads to show",
    )


def _validate_listing_args(args: argparse.Namespace) -> None:
    """Reject non-positive limits."""
    if getattr(args, "limit", 1) <= 0:
        print("Error: --limit must be positive", file=sys.stderr)
        sys.exit(1)


def _require_file(path: Path) -> None:
    if not path.is_file():
        print(f"Error: {path} is not a file", file=sys.stderr)
        sys.exit(1)


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Mbox Ingestor - Mirror a mailing-list archive into threaded storage"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # sync command
    subparsers.add_parser("sync", help="Download and ingest the archive month range")

    # ingest command
    ingest_parser = subparsers.add_parser("ingest", help="Ingest one local mbox file")
    ingest_parser.add_argument("file", type=Path, help="Path to an mbox archive unit")

    # parse command (no storage)
    parse_parser = subparsers.add_parser("parse", help="Parse an mbox file and print stats")
    parse_parser.add_argument("file", type=Path, help="Path to an mbox archive unit")

    # status command
    subparsers.add_parser("status", help="Show thread and message totals")

    # threads command
    threads_parser = subparsers.add_parser("threads", help="List recently active threads")
    _add_listing_args(threads_parser)

    # reset command
    subparsers.add_parser("reset", help="Delete all threads, messages and activity")

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "threads":
        _validate_listing_args(args)
    if args.command in ("ingest", "parse"):
        _require_file(args.file)

    settings = MboxIngestorSettings()
    setup_logging(settings.log_level)

    if args.command == "parse":
        mbox_parser = MboxParser(
            fallback_id_domain=settings.fallback_id_domain,
            min_valid_year=settings.min_valid_year,
        )
        try:
            result = mbox_parser.parse_file(args.file)
        except Exception as e:
            print(f"\nError: {e}", file=sys.stderr)
            sys.exit(1)
        print(f"\nParsed {len(result.messages)} messages: {result.stats}")
        for message in result.messages[:20]:
            flag = " [patch]" if message.has_patch else ""
            print(f"  {message.date:%Y-%m-%d %H:%M}  {message.author:30.30s}  {message.subject}{flag}")
        return

    ingestor = MboxIngestor(settings=settings, on_progress=on_progress)

    try:
        if args.command == "sync":
            _print_summary(ingestor.run_sync())

        elif args.command == "ingest":
            _print_summary(ingestor.ingest_file(args.file))

        elif args.command == "status":
            stats = ingestor.get_stats()
            print(f"\nThreads: {stats['total_threads']}  Messages: {stats['total_messages']}")
            print(f"Last sync: {stats['last_sync'] or 'never'}")
            print("\nThread counts by status:")
            for status, count in sorted(stats["by_status"].items()):
                print(f"  {status}: {count}")

        elif args.command == "threads":
            threads = ingestor.list_threads(status=args.status, limit=args.limit)
            print(f"\nFound {len(threads)} threads:\n")
            for thread in threads:
                last = f"{thread.last_message_at:%Y-%m-%d}" if thread.last_message_at else "-"
                print(
                    f"  {thread.status.value:12s} {last}  "
                    f"{thread.message_count:4d} msgs  {thread.subject}"
                )

        elif args.command == "reset":
            ingestor.reset()
            print("\nStore reset")

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        ingestor.close()


if __name__ == "__main__":
    main()
