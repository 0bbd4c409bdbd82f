#!/usr/bin/env python3
"""
Flush the profile store.

Deletes every synced profile, the applied-event ledger and the derived
engagement summary in one transaction. Sync history, watermarks and backfill
checkpoints are left alone; follow a flush with a forced full resync:

    python scripts/flush_target.py --yes
    python scripts/scheduled_sync.py --full-sync

Re-running the flush on an empty store is a no-op.

Usage:
    python scripts/flush_target.py [--config CONFIG_PATH] --yes

Exit codes:
    0: Store flushed
    1: Flush failed or was not confirmed
"""

import argparse
import sys

import structlog

from profilesync.storage.database import Database
from profilesync.storage.target_store import SqlTargetStore
from profilesync.utils.config_loader import ConfigLoader
from profilesync.utils.logging_config import configure_logging

log = structlog.stdlib.get_logger()


def flush_target(config_path: str | None = None) -> dict[str, int]:
    """
    Empty the profile store.

    Args:
        config_path: Optional path to configuration file

    Returns:
        Rows deleted per table
    """
    config = ConfigLoader().load_config(config_path)
    configure_logging(**config.logging.model_dump())

    database = Database.from_config(config.storage, config.provider)
    try:
        database.create_all()
        store = SqlTargetStore(database)
        before = store.count()
        deleted = store.flush()
        log.info("flush_completed", profiles_before=before, deleted=deleted)
        return deleted
    finally:
        database.dispose()


def main():
    """Main entry point for flush script."""
    parser = argparse.ArgumentParser(description="Flush the synced profile store")
    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration file",
        default=None,
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Confirm that all synced profiles should be deleted",
    )

    args = parser.parse_args()

    if not args.yes:
        print("Refusing to flush without --yes: this deletes every synced profile.")
        sys.exit(1)

    try:
        deleted = flush_target(args.config)
    except Exception as e:
        log.error("flush_failed", error=str(e), error_type=type(e).__name__)
        print(f"✗ Flush failed: {e}")
        sys.exit(1)

    print("\n" + "=" * 60)
    print("FLUSH SUMMARY")
    print("=" * 60)
    for table, rows in deleted.items():
        print(f"{table}: {rows} rows deleted")
    print("=" * 60)
    print("Run scripts/scheduled_sync.py --full-sync to repopulate.")

    sys.exit(0)


if __name__ == "__main__":
    main()
