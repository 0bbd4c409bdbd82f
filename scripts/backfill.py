#!/usr/bin/env python3
"""CLI script for running a chunked historical backfill.

The backfill range is split into fixed-size chunks merged with the ADD
strategy. Progress is checkpointed after every committed page, so an
invocation that runs out of time can be resumed by running the script again
(optionally with the --chunk-start it printed).
"""

import argparse
import sys

import structlog

from profilesync.models.records import RunStatus
from profilesync.sync.errors import FatalSyncError, SyncAlreadyRunningError
from profilesync.sync.models import BackfillReport
from profilesync.sync.sync_coordinator import SyncCoordinator
from profilesync.utils.config_loader import ConfigLoader, ConfigurationError
from profilesync.utils.logging_config import configure_logging

log = structlog.stdlib.get_logger()


def parse_arguments() -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="Backfill historical event counters into the profile store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Backfill the configured range (default 60 days in 15-day chunks)
  python scripts/backfill.py

  # Backfill 90 days in 10-day chunks
  python scripts/backfill.py --days 90 --chunk-days 10

  # Resume after a time-budget stop
  python scripts/backfill.py --chunk-start 15

  # Discard the checkpoint and start over
  python scripts/backfill.py --restart
        """,
    )

    parser.add_argument(
        "--source",
        "-s",
        type=str,
        help="Source to backfill",
        default="mixpanel_users",
    )
    parser.add_argument(
        "--days",
        type=int,
        help="Backfill range in days (overrides config file)",
        default=None,
    )
    parser.add_argument(
        "--chunk-days",
        type=int,
        help="Chunk size in days (overrides config file)",
        default=None,
    )
    parser.add_argument(
        "--chunk-start",
        type=int,
        help="Day offset to resume from; completed chunks are never re-processed",
        default=None,
    )
    parser.add_argument(
        "--restart",
        action="store_true",
        help="Discard the saved checkpoint and start from the oldest chunk",
        default=False,
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration YAML file (default: config/default.yaml)",
        default=None,
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
        default=False,
    )

    return parser.parse_args()


def print_report(report: BackfillReport) -> None:
    if report.done:
        print("\n✓ Backfill completed!")
    elif report.status == RunStatus.PARTIAL:
        print("\n⚠ Backfill paused (time budget reached)")
    else:
        print("\n✗ Backfill failed!")

    print(f"  Source: {report.source_id}")
    if report.run_id:
        print(f"  Run: {report.run_id}")
    print(f"  Chunks completed this run: {report.chunks_completed or 'none'}")
    print(f"  Total chunks: {report.chunks_total}")
    if report.chunks_declined:
        print(f"  Chunks declined: {report.chunks_declined}")
        print("  (their applied ids may be pruned; only a backfill into an empty profile store covers them)")
    print(f"  Events fetched: {report.stats.fetched}")
    print(f"  Profiles merged: {report.stats.merged}")
    print(f"  Skipped: {report.stats.skipped}")
    if report.next_chunk_start is not None:
        print(f"  Resume with: --chunk-start {report.next_chunk_start}")
    if report.error:
        print(f"  Error: {report.error}")


def main() -> int:
    """Main entry point for the backfill CLI.

    Returns:
        Exit code (0 when the backfill is complete, 2 when paused, 1 on failure)
    """
    args = parse_arguments()

    try:
        config = ConfigLoader().load_config(args.config)
    except ConfigurationError as e:
        print(f"\n✗ Configuration error: {e}")
        print("\nPlease check your configuration file and environment variables.")
        return 1

    logging_config = config.logging.model_dump()
    if args.verbose:
        logging_config["log_level"] = "DEBUG"
    configure_logging(**logging_config)

    log.info(
        "backfill_cli_started",
        source_id=args.source,
        days=args.days,
        chunk_days=args.chunk_days,
        chunk_start=args.chunk_start,
        restart=args.restart,
    )

    try:
        coordinator = SyncCoordinator.from_config(config)
        report = coordinator.run_backfill(
            args.source,
            chunk_start=args.chunk_start,
            days=args.days,
            chunk_days=args.chunk_days,
            restart=args.restart,
        )
    except SyncAlreadyRunningError as e:
        log.warning("backfill_skipped", reason=str(e))
        print(f"\n○ Skipped: {e}")
        return 3
    except FatalSyncError as e:
        log.error("backfill_aborted", error=str(e), error_type=type(e).__name__)
        print(f"\n✗ Backfill aborted: {e}")
        return 1
    except ValueError as e:
        print(f"\n✗ {e}")
        return 1
    except KeyboardInterrupt:
        log.info("backfill_interrupted_by_user")
        print("\n\nBackfill interrupted; the last committed page is checkpointed.")
        return 1

    print_report(report)
    if report.done:
        return 0
    return 2 if report.status == RunStatus.PARTIAL else 1


if __name__ == "__main__":
    sys.exit(main())
