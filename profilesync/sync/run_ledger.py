"""Sync run ledger: run history and the single-run-per-source guard."""

import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from profilesync.models.records import RunStats, RunStatus, SyncRun, ensure_utc, utcnow
from profilesync.storage.database import Database
from profilesync.storage.target_store import to_db_time
from profilesync.sync.errors import RunStateError, SyncAlreadyRunningError

log = structlog.stdlib.get_logger()


class SyncRunLedger(ABC):
    """Record of every sync run.

    A source has at most one ``in_progress`` run. Terminal runs are never
    modified again.
    """

    @abstractmethod
    def create(self, source_id: str) -> str:
        """
        Start a run for ``source_id``.

        Returns:
            The new run_id

        Raises:
            SyncAlreadyRunningError: If the source already has a run in progress
        """

    @abstractmethod
    def get(self, run_id: str) -> SyncRun | None:
        """Return a run by id."""

    @abstractmethod
    def finish(
        self,
        run_id: str,
        status: RunStatus,
        stats: RunStats,
        error_detail: dict[str, Any] | None = None,
    ) -> SyncRun:
        """
        Move an in-progress run to a terminal status.

        Raises:
            RunStateError: If the run is unknown or already terminal
        """

    @abstractmethod
    def latest_successful(self, source_id: str) -> SyncRun | None:
        """Most recent completed run, for staleness reporting."""

    @abstractmethod
    def in_progress(self, source_id: str) -> SyncRun | None:
        """The source's running run, if any."""

    @abstractmethod
    def expire_stale(self, source_id: str, older_than: timedelta) -> list[str]:
        """Fail in-progress runs started more than ``older_than`` ago; returns their ids."""

    @abstractmethod
    def recent(self, source_id: str, limit: int = 10) -> list[SyncRun]:
        """Most recent runs first."""

    def complete(self, run_id: str, stats: RunStats) -> SyncRun:
        return self.finish(run_id, RunStatus.COMPLETED, stats)

    def fail(self, run_id: str, error: str | BaseException, stats: RunStats | None = None) -> SyncRun:
        detail = {"error": str(error)}
        if isinstance(error, BaseException):
            detail["type"] = type(error).__name__
        return self.finish(run_id, RunStatus.FAILED, stats or RunStats(errors=1), detail)

    def mark_partial(self, run_id: str, stats: RunStats, stage_errors: dict[str, Any]) -> SyncRun:
        return self.finish(run_id, RunStatus.PARTIAL, stats, {"stage_errors": stage_errors})

    @staticmethod
    def _new_run_id() -> str:
        return str(uuid.uuid4())


class InMemoryRunLedger(SyncRunLedger):
    """Process-local ledger."""

    def __init__(self, stale_after: timedelta | None = None) -> None:
        self._runs: dict[str, SyncRun] = {}
        self._lock = threading.Lock()
        self._stale_after = stale_after

    def create(self, source_id: str) -> str:
        if self._stale_after is not None:
            self.expire_stale(source_id, self._stale_after)
        with self._lock:
            running = self._running(source_id)
            if running is not None:
                log.warning("sync_already_running", source_id=source_id, run_id=running.run_id)
                raise SyncAlreadyRunningError(source_id, running.run_id)
            run = SyncRun(run_id=self._new_run_id(), source_id=source_id)
            self._runs[run.run_id] = run

        log.info("sync_run_created", source_id=source_id, run_id=run.run_id)
        return run.run_id

    def _running(self, source_id: str) -> SyncRun | None:
        for run in self._runs.values():
            if run.source_id == source_id and run.status == RunStatus.IN_PROGRESS:
                return run
        return None

    def get(self, run_id: str) -> SyncRun | None:
        with self._lock:
            return self._runs.get(run_id)

    def finish(
        self,
        run_id: str,
        status: RunStatus,
        stats: RunStats,
        error_detail: dict[str, Any] | None = None,
    ) -> SyncRun:
        if not status.is_terminal:
            raise RunStateError(f"cannot finish run {run_id} with status {status.value}")
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise RunStateError(f"unknown run {run_id}")
            if run.status.is_terminal:
                raise RunStateError(f"run {run_id} is already {run.status.value}")
            finished = run.model_copy(
                update={
                    "status": status,
                    "completed_at": utcnow(),
                    "stats": stats,
                    "error_detail": error_detail,
                }
            )
            self._runs[run_id] = finished

        log.info(
            "sync_run_finished",
            source_id=finished.source_id,
            run_id=run_id,
            status=status.value,
            **stats.model_dump(),
        )
        return finished

    def latest_successful(self, source_id: str) -> SyncRun | None:
        with self._lock:
            completed = [
                r
                for r in self._runs.values()
                if r.source_id == source_id and r.status == RunStatus.COMPLETED
            ]
        return max(completed, key=lambda r: r.completed_at, default=None)

    def in_progress(self, source_id: str) -> SyncRun | None:
        with self._lock:
            return self._running(source_id)

    def expire_stale(self, source_id: str, older_than: timedelta) -> list[str]:
        cutoff = utcnow() - older_than
        with self._lock:
            stale = [
                r.run_id
                for r in self._runs.values()
                if r.source_id == source_id
                and r.status == RunStatus.IN_PROGRESS
                and r.started_at < cutoff
            ]
        for run_id in stale:
            self.finish(run_id, RunStatus.FAILED, RunStats(errors=1), {"error": "run expired"})
            log.warning("stale_run_expired", source_id=source_id, run_id=run_id)
        return stale

    def recent(self, source_id: str, limit: int = 10) -> list[SyncRun]:
        with self._lock:
            runs = [r for r in self._runs.values() if r.source_id == source_id]
        return sorted(runs, key=lambda r: r.started_at, reverse=True)[:limit]


class SqlRunLedger(SyncRunLedger):
    """Ledger in the ``sync_runs`` table.

    The partial unique index on ``source_id`` for in-progress rows is what
    enforces mutual exclusion; two concurrent ``create`` calls cannot both
    insert.
    """

    def __init__(self, database: Database, stale_after: timedelta | None = None):
        self._db = database
        self._table = database.tables.sync_runs
        self._stale_after = stale_after

    def create(self, source_id: str) -> str:
        if self._stale_after is not None:
            self.expire_stale(source_id, self._stale_after)

        run_id = self._new_run_id()
        try:
            with self._db.session_factory.begin() as session:
                session.execute(
                    insert(self._table).values(
                        run_id=run_id,
                        source_id=source_id,
                        status=RunStatus.IN_PROGRESS.value,
                        started_at=to_db_time(utcnow()),
                        fetched=0,
                        merged=0,
                        skipped=0,
                        errors=0,
                    )
                )
        except IntegrityError as e:
            running = self.in_progress(source_id)
            log.warning(
                "sync_already_running",
                source_id=source_id,
                run_id=running.run_id if running else None,
            )
            raise SyncAlreadyRunningError(source_id, running.run_id if running else None) from e

        log.info("sync_run_created", source_id=source_id, run_id=run_id)
        return run_id

    def _to_run(self, row) -> SyncRun:
        return SyncRun(
            run_id=row["run_id"],
            source_id=row["source_id"],
            status=RunStatus(row["status"]),
            started_at=ensure_utc(row["started_at"]),
            completed_at=ensure_utc(row["completed_at"]) if row["completed_at"] else None,
            stats=RunStats(
                fetched=row["fetched"],
                merged=row["merged"],
                skipped=row["skipped"],
                errors=row["errors"],
            ),
            error_detail=row["error_detail"],
        )

    def get(self, run_id: str) -> SyncRun | None:
        with self._db.session_factory() as session:
            row = session.execute(
                select(self._table).where(self._table.c.run_id == run_id)
            ).mappings().first()
        return self._to_run(row) if row else None

    def finish(
        self,
        run_id: str,
        status: RunStatus,
        stats: RunStats,
        error_detail: dict[str, Any] | None = None,
    ) -> SyncRun:
        if not status.is_terminal:
            raise RunStateError(f"cannot finish run {run_id} with status {status.value}")

        with self._db.session_factory.begin() as session:
            result = session.execute(
                update(self._table)
                .where(self._table.c.run_id == run_id)
                .where(self._table.c.status == RunStatus.IN_PROGRESS.value)
                .values(
                    status=status.value,
                    completed_at=to_db_time(utcnow()),
                    error_detail=error_detail,
                    **stats.model_dump(),
                )
            )
            updated = result.rowcount == 1

        run = self.get(run_id)
        if not updated:
            if run is None:
                raise RunStateError(f"unknown run {run_id}")
            raise RunStateError(f"run {run_id} is already {run.status.value}")

        log.info(
            "sync_run_finished",
            source_id=run.source_id,
            run_id=run_id,
            status=status.value,
            **stats.model_dump(),
        )
        return run

    def latest_successful(self, source_id: str) -> SyncRun | None:
        with self._db.session_factory() as session:
            row = session.execute(
                select(self._table)
                .where(self._table.c.source_id == source_id)
                .where(self._table.c.status == RunStatus.COMPLETED.value)
                .order_by(self._table.c.completed_at.desc())
                .limit(1)
            ).mappings().first()
        return self._to_run(row) if row else None

    def in_progress(self, source_id: str) -> SyncRun | None:
        with self._db.session_factory() as session:
            row = session.execute(
                select(self._table)
                .where(self._table.c.source_id == source_id)
                .where(self._table.c.status == RunStatus.IN_PROGRESS.value)
            ).mappings().first()
        return self._to_run(row) if row else None

    def expire_stale(self, source_id: str, older_than: timedelta) -> list[str]:
        cutoff = to_db_time(utcnow() - older_than)
        with self._db.session_factory.begin() as session:
            stale = list(
                session.execute(
                    select(self._table.c.run_id)
                    .where(self._table.c.source_id == source_id)
                    .where(self._table.c.status == RunStatus.IN_PROGRESS.value)
                    .where(self._table.c.started_at < cutoff)
                ).scalars()
            )
            if stale:
                session.execute(
                    update(self._table)
                    .where(self._table.c.run_id.in_(stale))
                    .where(self._table.c.status == RunStatus.IN_PROGRESS.value)
                    .values(
                        status=RunStatus.FAILED.value,
                        completed_at=to_db_time(utcnow()),
                        errors=self._table.c.errors + 1,
                        error_detail={"error": "run expired"},
                    )
                )
        for run_id in stale:
            log.warning("stale_run_expired", source_id=source_id, run_id=run_id)
        return stale

    def recent(self, source_id: str, limit: int = 10) -> list[SyncRun]:
        with self._db.session_factory() as session:
            rows = session.execute(
                select(self._table)
                .where(self._table.c.source_id == source_id)
                .order_by(self._table.c.started_at.desc())
                .limit(limit)
            ).mappings().all()
        return [self._to_run(row) for row in rows]


def staleness(run: SyncRun | None, now: datetime | None = None) -> timedelta | None:
    """Age of the data a run produced; None when there was never a successful run."""
    if run is None or run.completed_at is None:
        return None
    return (now or utcnow()) - ensure_utc(run.completed_at)
