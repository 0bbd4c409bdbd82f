"""Watermark tracking for incremental synchronization."""

import threading
from abc import ABC, abstractmethod
from datetime import datetime

import structlog
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError

from profilesync.models.records import SyncWatermark, ensure_utc, utcnow
from profilesync.storage.database import Database
from profilesync.storage.target_store import to_db_time

log = structlog.stdlib.get_logger()


class WatermarkStore(ABC):
    """Last durably synced cursor per source.

    The cursor never moves backwards except through :meth:`reset`. An
    ``advance`` to a cursor at or before the current one is a no-op that
    returns False.
    """

    @abstractmethod
    def get(self, source_id: str) -> SyncWatermark | None:
        """Return the watermark for ``source_id``, or None if it was never set."""

    @abstractmethod
    def advance(self, source_id: str, new_cursor: datetime) -> bool:
        """Move the cursor forward; returns True only when it moved."""

    @abstractmethod
    def reset(self, source_id: str) -> None:
        """Forget the watermark so the next fetch is a cold start."""

    @staticmethod
    def _log_rejected(source_id: str, new_cursor: datetime, current: datetime | None) -> None:
        log.warning(
            "watermark_regression_rejected",
            source_id=source_id,
            attempted_cursor=new_cursor.isoformat(),
            current_cursor=current.isoformat() if current else None,
        )


class InMemoryWatermarkStore(WatermarkStore):
    """Process-local watermark store."""

    def __init__(self) -> None:
        self._watermarks: dict[str, SyncWatermark] = {}
        self._lock = threading.Lock()

    def get(self, source_id: str) -> SyncWatermark | None:
        with self._lock:
            return self._watermarks.get(source_id)

    def advance(self, source_id: str, new_cursor: datetime) -> bool:
        new_cursor = ensure_utc(new_cursor)
        with self._lock:
            current = self._watermarks.get(source_id)
            if current is not None and new_cursor <= current.cursor:
                self._log_rejected(source_id, new_cursor, current.cursor)
                return False
            self._watermarks[source_id] = SyncWatermark(source_id=source_id, cursor=new_cursor)

        log.info("watermark_advanced", source_id=source_id, cursor=new_cursor.isoformat())
        return True

    def reset(self, source_id: str) -> None:
        with self._lock:
            self._watermarks.pop(source_id, None)
        log.warning("watermark_reset", source_id=source_id)


class SqlWatermarkStore(WatermarkStore):
    """Watermark store in the ``sync_watermarks`` table.

    ``advance`` is a conditional UPDATE guarded by ``cursor < new_cursor``,
    so two concurrent callers cannot regress the cursor: the loser's update
    matches no row and reports False.
    """

    def __init__(self, database: Database):
        self._db = database
        self._table = database.tables.sync_watermarks

    def get(self, source_id: str) -> SyncWatermark | None:
        with self._db.session_factory() as session:
            row = session.execute(
                select(self._table).where(self._table.c.source_id == source_id)
            ).mappings().first()
        if row is None:
            return None
        return SyncWatermark(
            source_id=row["source_id"],
            cursor=ensure_utc(row["cursor"]),
            last_advanced_at=ensure_utc(row["last_advanced_at"]),
        )

    def advance(self, source_id: str, new_cursor: datetime) -> bool:
        new_cursor = ensure_utc(new_cursor)
        values = {"cursor": to_db_time(new_cursor), "last_advanced_at": to_db_time(utcnow())}

        if self._conditional_update(source_id, values):
            log.info("watermark_advanced", source_id=source_id, cursor=new_cursor.isoformat())
            return True

        try:
            with self._db.session_factory.begin() as session:
                session.execute(insert(self._table).values(source_id=source_id, **values))
        except IntegrityError:
            # the row exists, possibly inserted by a concurrent caller after the
            # update above; only the cursor comparison decides the outcome
            if not self._conditional_update(source_id, values):
                current = self.get(source_id)
                self._log_rejected(source_id, new_cursor, current.cursor if current else None)
                return False

        log.info("watermark_advanced", source_id=source_id, cursor=new_cursor.isoformat())
        return True

    def _conditional_update(self, source_id: str, values: dict) -> bool:
        with self._db.session_factory.begin() as session:
            result = session.execute(
                update(self._table)
                .where(self._table.c.source_id == source_id)
                .where(self._table.c.cursor < values["cursor"])
                .values(**values)
            )
            return result.rowcount == 1

    def reset(self, source_id: str) -> None:
        with self._db.session_factory.begin() as session:
            session.execute(delete(self._table).where(self._table.c.source_id == source_id))
        log.warning("watermark_reset", source_id=source_id)
