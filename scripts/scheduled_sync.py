#!/usr/bin/env python3
"""
Scheduled synchronization script for profile-sync.

This script runs one sync invocation for a source:
- Fetches events since the watermark (or the cold-start window)
- Merges per-user counters and profile attributes into the profile store
- Refreshes engagement aggregates and records the run in the ledger

Designed to be run on a schedule (e.g., via cron, a serverless timer, or Airflow).
Passing --chunk-start resumes a chunked backfill instead.

Usage:
    python scripts/scheduled_sync.py [--source SOURCE_ID] [--full-sync]
                                     [--chunk-start DAYS] [--config CONFIG_PATH] [--json]

Exit codes:
    0: Run completed
    1: Run failed (including fatal provider errors)
    2: Run partially succeeded; invoke again to resume
    3: Skipped because another run for the source is in progress
"""

import argparse
import json
import sys
from datetime import datetime, timezone

import structlog

from profilesync.models.records import RunStatus
from profilesync.sync.sync_coordinator import SyncCoordinator
from profilesync.utils.config_loader import ConfigLoader
from profilesync.utils.logging_config import configure_logging

log = structlog.stdlib.get_logger()

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_PARTIAL = 2
EXIT_SKIPPED = 3


def perform_sync(
    config_path: str | None = None,
    source_id: str = "mixpanel_users",
    full_sync: bool = False,
    chunk_start: int | None = None,
) -> dict:
    """
    Perform one sync invocation.

    Args:
        config_path: Optional path to configuration file
        source_id: Configured source to sync
        full_sync: Reset the watermark and re-fetch the cold-start window
        chunk_start: Resume a chunked backfill from this day offset

    Returns:
        Dictionary with sync statistics
    """
    start_time = datetime.now(timezone.utc)

    try:
        config = ConfigLoader().load_config(config_path)
        configure_logging(**config.logging.model_dump())

        log.info(
            "scheduled_sync_started",
            source_id=source_id,
            sync_type="backfill" if chunk_start is not None else "full" if full_sync else "incremental",
        )

        coordinator = SyncCoordinator.from_config(config)
        result = coordinator.invoke(source_id, force_full_sync=full_sync, chunk_start=chunk_start)
    except Exception as e:
        duration = (datetime.now(timezone.utc) - start_time).total_seconds()
        log.error("scheduled_sync_failed", error=str(e), error_type=type(e).__name__)
        return {
            "success": False,
            "source_id": source_id,
            "status": RunStatus.FAILED.value,
            "error": str(e),
            "start_time": start_time.isoformat(),
            "duration_seconds": duration,
        }

    duration = (datetime.now(timezone.utc) - start_time).total_seconds()
    stats = {
        **result.model_dump(mode="json"),
        "start_time": start_time.isoformat(),
        "duration_seconds": duration,
    }
    log.info("scheduled_sync_finished", **stats)
    return stats


def exit_code(stats: dict) -> int:
    """Map an invocation summary to the process exit code."""
    if stats.get("skipped_reason"):
        return EXIT_SKIPPED
    if stats.get("success"):
        return EXIT_SUCCESS
    if stats.get("status") == RunStatus.PARTIAL.value:
        return EXIT_PARTIAL
    return EXIT_FAILED


def print_summary(stats: dict) -> None:
    print("\n" + "=" * 60)
    print("SYNCHRONIZATION SUMMARY")
    print("=" * 60)
    print(f"Source: {stats.get('source_id')}")

    if stats.get("skipped_reason"):
        print(f"Status: ○ SKIPPED ({stats['skipped_reason']})")
    elif stats.get("success"):
        print("Status: ✓ SUCCESS")
    elif stats.get("status") == RunStatus.PARTIAL.value:
        print("Status: ⚠ PARTIAL")
    else:
        print("Status: ✗ FAILED")

    if stats.get("run_id"):
        print(f"Run: {stats['run_id']}")
    run_stats = stats.get("stats") or {}
    if run_stats:
        print(f"Fetched: {run_stats.get('fetched', 0)}")
        print(f"Merged: {run_stats.get('merged', 0)}")
        print(f"Skipped: {run_stats.get('skipped', 0)}")
        print(f"Errors: {run_stats.get('errors', 0)}")
    if "watermark_advanced" in stats:
        print(f"Watermark Advanced: {stats['watermark_advanced']}")
    if stats.get("next_chunk_start") is not None:
        print(f"Resume With: --chunk-start {stats['next_chunk_start']}")
    for stage, error in (stats.get("stage_errors") or {}).items():
        print(f"Stage Error [{stage}]: {error}")
    if stats.get("error"):
        print(f"Error: {stats['error']}")
    print(f"Duration: {stats.get('duration_seconds', 0):.2f} seconds")
    print("=" * 60)


def main():
    """Main entry point for scheduled sync script."""
    parser = argparse.ArgumentParser(description="Scheduled profile synchronization")
    parser.add_argument(
        "--source",
        type=str,
        help="Source to synchronize",
        default="mixpanel_users",
    )
    parser.add_argument(
        "--full-sync",
        action="store_true",
        help="Reset the watermark and re-fetch the cold-start window",
    )
    parser.add_argument(
        "--chunk-start",
        type=int,
        help="Resume a chunked backfill from this day offset",
        default=None,
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration file",
        default=None,
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output the result in JSON format",
    )

    args = parser.parse_args()
    if args.full_sync and args.chunk_start is not None:
        parser.error("--full-sync and --chunk-start are mutually exclusive")

    stats = perform_sync(
        config_path=args.config,
        source_id=args.source,
        full_sync=args.full_sync,
        chunk_start=args.chunk_start,
    )

    if args.json:
        print(json.dumps(stats, indent=2))
    else:
        print_summary(stats)

    sys.exit(exit_code(stats))


if __name__ == "__main__":
    main()
