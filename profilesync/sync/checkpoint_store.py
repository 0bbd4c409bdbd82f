"""Durable resume positions for chunked backfills."""

import threading
from abc import ABC, abstractmethod

import structlog
from sqlalchemy import delete, insert, select, update

from profilesync.models.records import BackfillCheckpoint, ensure_utc, utcnow
from profilesync.storage.database import Database
from profilesync.storage.target_store import to_db_time

log = structlog.stdlib.get_logger()


class CheckpointStore(ABC):
    """Stores the last completed chunk and the in-chunk pagination token."""

    @abstractmethod
    def load(self, source_id: str, backfill_key: str) -> BackfillCheckpoint | None:
        """Return the checkpoint, or None for a backfill that never started."""

    @abstractmethod
    def save(self, checkpoint: BackfillCheckpoint) -> None:
        """Write the checkpoint, replacing any previous one."""

    @abstractmethod
    def clear(self, source_id: str, backfill_key: str) -> None:
        """Drop the checkpoint so the backfill can run again from the start."""


class InMemoryCheckpointStore(CheckpointStore):
    def __init__(self) -> None:
        self._checkpoints: dict[tuple[str, str], BackfillCheckpoint] = {}
        self._lock = threading.Lock()

    def load(self, source_id: str, backfill_key: str) -> BackfillCheckpoint | None:
        with self._lock:
            return self._checkpoints.get((source_id, backfill_key))

    def save(self, checkpoint: BackfillCheckpoint) -> None:
        with self._lock:
            self._checkpoints[(checkpoint.source_id, checkpoint.backfill_key)] = checkpoint.model_copy(
                update={"updated_at": utcnow()}
            )

    def clear(self, source_id: str, backfill_key: str) -> None:
        with self._lock:
            self._checkpoints.pop((source_id, backfill_key), None)


class SqlCheckpointStore(CheckpointStore):
    """Checkpoints in the ``backfill_checkpoints`` table."""

    def __init__(self, database: Database):
        self._db = database
        self._table = database.tables.backfill_checkpoints

    def _key(self, source_id: str, backfill_key: str):
        return (self._table.c.source_id == source_id) & (self._table.c.backfill_key == backfill_key)

    def load(self, source_id: str, backfill_key: str) -> BackfillCheckpoint | None:
        with self._db.session_factory() as session:
            row = session.execute(
                select(self._table).where(self._key(source_id, backfill_key))
            ).mappings().first()
        if row is None:
            return None
        return BackfillCheckpoint(
            source_id=row["source_id"],
            backfill_key=row["backfill_key"],
            range_end=ensure_utc(row["range_end"]),
            last_completed_chunk=row["last_completed_chunk"],
            active_chunk=row["active_chunk"],
            pagination_token=row["pagination_token"],
            updated_at=ensure_utc(row["updated_at"]),
        )

    def save(self, checkpoint: BackfillCheckpoint) -> None:
        values = {
            "range_end": to_db_time(checkpoint.range_end),
            "last_completed_chunk": checkpoint.last_completed_chunk,
            "active_chunk": checkpoint.active_chunk,
            "pagination_token": checkpoint.pagination_token,
            "updated_at": to_db_time(utcnow()),
        }
        with self._db.session_factory.begin() as session:
            result = session.execute(
                update(self._table)
                .where(self._key(checkpoint.source_id, checkpoint.backfill_key))
                .values(**values)
            )
            if result.rowcount == 0:
                session.execute(
                    insert(self._table).values(
                        source_id=checkpoint.source_id,
                        backfill_key=checkpoint.backfill_key,
                        **values,
                    )
                )
        log.debug(
            "backfill_checkpoint_saved",
            source_id=checkpoint.source_id,
            backfill_key=checkpoint.backfill_key,
            last_completed_chunk=checkpoint.last_completed_chunk,
            active_chunk=checkpoint.active_chunk,
        )

    def clear(self, source_id: str, backfill_key: str) -> None:
        with self._db.session_factory.begin() as session:
            session.execute(delete(self._table).where(self._key(source_id, backfill_key)))
        log.info("backfill_checkpoint_cleared", source_id=source_id, backfill_key=backfill_key)
