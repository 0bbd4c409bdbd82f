#!/usr/bin/env python3
"""
Health check script for profile-sync.

This script performs health checks on all system components:
- Configuration validation
- Profile store accessibility
- Mixpanel API connectivity
- Per-source sync freshness (last successful run and its age)

Can be used for monitoring, alerting, or pre-deployment validation.

Usage:
    python scripts/health_check.py [--config CONFIG_PATH] [--max-staleness-hours HOURS] [--json]

Exit codes:
    0: All checks passed
    1: One or more checks failed
"""

import argparse
import json
import sys
from datetime import datetime, timedelta, timezone

import structlog

from profilesync.ingestion.mixpanel_client import MixpanelClient
from profilesync.models.config import AppConfig
from profilesync.storage.database import Database
from profilesync.storage.target_store import SqlTargetStore
from profilesync.sync.run_ledger import SqlRunLedger, staleness
from profilesync.sync.watermark_store import SqlWatermarkStore
from profilesync.utils.config_loader import ConfigLoader

log = structlog.stdlib.get_logger()


class HealthChecker:
    """Performs health checks on system components."""

    def __init__(self, config_path: str | None = None, max_staleness: timedelta = timedelta(hours=6)):
        """
        Initialize health checker.

        Args:
            config_path: Optional path to configuration file
            max_staleness: Age of the last successful run after which a source warns
        """
        self.config_path = config_path
        self.max_staleness = max_staleness
        self.results: dict[str, dict] = {}
        self._config: AppConfig | None = None
        self._database: Database | None = None

    def check_configuration(self) -> bool:
        """
        Check if configuration is valid.

        Returns:
            True if configuration is valid, False otherwise
        """
        check_name = "configuration"
        log.info("checking_configuration")

        try:
            config_loader = ConfigLoader()
            config = config_loader.load_config(self.config_path)
            warnings = config_loader.validate_config(config)
            self._config = config

            self.results[check_name] = {
                "status": "warn" if warnings else "pass",
                "message": "Configuration loaded successfully",
                "details": {
                    "project_id": config.provider.project_id,
                    "sources": list(config.sources),
                    "tracked_events": len(config.provider.tracked_events),
                    "warnings": warnings,
                },
            }
            return True

        except Exception as e:
            self.results[check_name] = {
                "status": "fail",
                "message": f"Configuration error: {str(e)}",
                "details": {},
            }
            return False

    def check_database(self) -> bool:
        """
        Check that the profile store is reachable and its schema exists.

        Returns:
            True if the store is accessible, False otherwise
        """
        check_name = "database"
        log.info("checking_database")

        if self._config is None:
            self.results[check_name] = {
                "status": "skip",
                "message": "Skipped: configuration did not load",
                "details": {},
            }
            return False

        try:
            database = Database.from_config(self._config.storage, self._config.provider)
            database.create_all()
            profiles = SqlTargetStore(database).count()
            self._database = database

            self.results[check_name] = {
                "status": "pass",
                "message": "Profile store is accessible",
                "details": {
                    "dialect": database.dialect,
                    "profiles": profiles,
                },
            }
            return True

        except Exception as e:
            self.results[check_name] = {
                "status": "fail",
                "message": f"Database error: {str(e)}",
                "details": {},
            }
            return False

    def check_provider_connectivity(self) -> bool:
        """
        Check connectivity to the Mixpanel engage API.

        Returns:
            True if connection successful, False otherwise
        """
        check_name = "provider_connectivity"
        log.info("checking_provider_connectivity")

        if self._config is None:
            self.results[check_name] = {
                "status": "skip",
                "message": "Skipped: configuration did not load",
                "details": {},
            }
            return False

        try:
            client = MixpanelClient(self._config.provider, page_size=1)
            page = client.query("profiles", None)

            self.results[check_name] = {
                "status": "pass",
                "message": "Successfully connected to Mixpanel",
                "details": {
                    "project_id": self._config.provider.project_id,
                    "profiles_accessible": len(page.records) > 0,
                },
            }
            return True

        except Exception as e:
            self.results[check_name] = {
                "status": "fail",
                "message": f"Mixpanel connection failed: {str(e)}",
                "details": {},
            }
            return False

    def check_sync_freshness(self) -> bool:
        """
        Report, per source, the last successful run and its age.

        A source that never synced or whose last success is older than
        ``max_staleness`` warns; a source whose most recent run failed fails.

        Returns:
            True unless a source's latest run failed
        """
        check_name = "sync_freshness"
        log.info("checking_sync_freshness")

        if self._config is None or self._database is None:
            self.results[check_name] = {
                "status": "skip",
                "message": "Skipped: database is not accessible",
                "details": {},
            }
            return False

        ledger = SqlRunLedger(self._database)
        watermarks = SqlWatermarkStore(self._database)
        now = datetime.now(timezone.utc)
        details: dict[str, dict] = {}
        status = "pass"

        for source_id in self._config.sources:
            latest = ledger.latest_successful(source_id)
            age = staleness(latest, now)
            recent = ledger.recent(source_id, limit=1)
            running = ledger.in_progress(source_id)
            watermark = watermarks.get(source_id)

            last_status = recent[0].status.value if recent else None
            details[source_id] = {
                "last_success": latest.completed_at.isoformat() if latest and latest.completed_at else None,
                "staleness_hours": round(age.total_seconds() / 3600, 2) if age is not None else None,
                "last_run_status": last_status,
                "last_run_seconds": recent[0].duration_seconds if recent else None,
                "in_progress": running.run_id if running else None,
                "watermark": watermark.cursor.isoformat() if watermark else None,
            }

            if last_status == "failed":
                status = "fail"
            elif status == "pass" and (age is None or age > self.max_staleness):
                status = "warn"

        self.results[check_name] = {
            "status": status,
            "message": {
                "pass": "All sources are fresh",
                "warn": "One or more sources are stale or never synced",
                "fail": "One or more sources failed their latest run",
            }[status],
            "details": details,
        }
        return status != "fail"

    def run_all_checks(self) -> bool:
        """
        Run all health checks.

        Returns:
            True if all checks passed, False otherwise
        """
        checks = [
            self.check_configuration,
            self.check_database,
            self.check_provider_connectivity,
            self.check_sync_freshness,
        ]

        all_passed = True
        try:
            for check in checks:
                try:
                    result = check()
                    if not result:
                        all_passed = False
                except Exception as e:
                    log.error("check_failed_with_exception", check=check.__name__, error=str(e))
                    all_passed = False
        finally:
            if self._database is not None:
                self._database.dispose()

        return all_passed

    def get_summary(self) -> dict:
        """
        Get summary of all health check results.

        Returns:
            Dictionary with summary information
        """
        total_checks = len(self.results)
        passed = sum(1 for r in self.results.values() if r["status"] == "pass")
        failed = sum(1 for r in self.results.values() if r["status"] == "fail")
        warnings = sum(1 for r in self.results.values() if r["status"] == "warn")
        skipped = sum(1 for r in self.results.values() if r["status"] == "skip")

        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "overall_status": "healthy" if failed == 0 else "unhealthy",
            "total_checks": total_checks,
            "passed": passed,
            "failed": failed,
            "warnings": warnings,
            "skipped": skipped,
            "checks": self.results,
        }


def main():
    """Main entry point for health check script."""
    parser = argparse.ArgumentParser(description="Health check for profile-sync")
    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration file",
        default=None,
    )
    parser.add_argument(
        "--max-staleness-hours",
        type=float,
        help="Warn when a source's last successful run is older than this",
        default=6.0,
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output results in JSON format",
    )

    args = parser.parse_args()

    checker = HealthChecker(
        config_path=args.config, max_staleness=timedelta(hours=args.max_staleness_hours)
    )
    all_passed = checker.run_all_checks()
    summary = checker.get_summary()

    if args.json:
        print(json.dumps(summary, indent=2))
    else:
        print("\n" + "=" * 60)
        print("HEALTH CHECK SUMMARY")
        print("=" * 60)
        print(f"Timestamp: {summary['timestamp']}")
        print(f"Overall Status: {summary['overall_status'].upper()}")
        print(f"Total Checks: {summary['total_checks']}")
        print(f"Passed: {summary['passed']}")
        print(f"Failed: {summary['failed']}")
        print(f"Warnings: {summary['warnings']}")
        print(f"Skipped: {summary['skipped']}")
        print("\n" + "-" * 60)
        print("DETAILED RESULTS")
        print("-" * 60)

        for check_name, result in summary["checks"].items():
            status_symbol = {
                "pass": "✓",
                "fail": "✗",
                "warn": "⚠",
                "skip": "○",
            }.get(result["status"], "?")

            print(f"\n{status_symbol} {check_name.replace('_', ' ').title()}")
            print(f"  Status: {result['status'].upper()}")
            print(f"  Message: {result['message']}")

            if result["details"]:
                print("  Details:")
                for key, value in result["details"].items():
                    print(f"    - {key}: {value}")

        print("\n" + "=" * 60)

    sys.exit(0 if all_passed else 1)


if __name__ == "__main__":
    main()
