"""Profile store interface and its SQLAlchemy implementation."""

import json
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable, Iterator, NamedTuple, Sequence

import structlog
from sqlalchemy import case, delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, OperationalError

from profilesync.models.records import (
    MergeStrategy,
    NormalizedRecord,
    TargetRecord,
    ensure_utc,
    utcnow,
)
from profilesync.storage.database import Database
from profilesync.storage.tables import PROFILE_KEY
from profilesync.sync.errors import StorageTransientError

log = structlog.stdlib.get_logger()

# rows per statement when a key list is unbounded
KEY_CHUNK_SIZE = 500


class UpsertResult(NamedTuple):
    upserted: int
    skipped: int


def to_db_time(value: datetime | None) -> datetime | None:
    """Naive UTC, the form DateTime columns store."""
    if value is None:
        return None
    return ensure_utc(value).replace(tzinfo=None)


def to_column_text(value: Any) -> str | None:
    """Render an attribute value the way attribute columns store it."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _chunks(items: Sequence[Any], size: int = KEY_CHUNK_SIZE) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class TargetStore(ABC):
    """Set-based access to the profile table and its dependents.

    Every write method runs in a single transaction so concurrent readers never
    observe half of a batch.
    """

    @abstractmethod
    def bulk_upsert(self, records: Sequence[NormalizedRecord], strategy: MergeStrategy) -> UpsertResult:
        """Insert-or-update a batch keyed on ``distinct_id`` in one statement.

        The batch's dedup keys are recorded as applied in the same
        transaction. Under ADD, records whose dedup keys were already applied
        are skipped. This is a guard against batches replayed around the
        fetcher, which already drops applied ids: a record that is only partly
        applied is skipped whole, and its unapplied ids stay unrecorded so the
        next fetch over their window still counts them.

        Raises:
            ValueError: If the batch repeats a key
            StorageTransientError: If the commit failed in a retryable way
        """

    @abstractmethod
    def fetch_existing(self, keys: Iterable[str]) -> dict[str, TargetRecord]:
        """Return stored rows for ``keys``; missing keys are absent from the result."""

    @abstractmethod
    def applied_event_ids(self, event_ids: Iterable[str]) -> set[str]:
        """Return the subset of ``event_ids`` already applied."""

    @abstractmethod
    def prune_applied_events(self, before: datetime) -> int:
        """Forget applied event ids older than ``before``; returns rows removed."""

    @abstractmethod
    def refresh_aggregates(self) -> int:
        """Recompute derived aggregates; returns rows written."""

    @abstractmethod
    def flush(self) -> dict[str, int]:
        """Empty the profile table and every dependent table in one transaction."""

    @abstractmethod
    def count(self) -> int:
        """Number of stored profiles."""


class SqlTargetStore(TargetStore):
    """TargetStore backed by SQLAlchemy on PostgreSQL or SQLite."""

    def __init__(self, database: Database):
        self._db = database
        self._tables = database.tables
        self._insert = pg_insert if database.dialect == "postgresql" else sqlite_insert
        log.info(
            "target_store_initialized",
            dialect=database.dialect,
            counters=len(self._tables.counter_columns),
            attributes=len(self._tables.attribute_columns),
        )

    @contextmanager
    def _transaction(self, operation: str):
        try:
            with self._db.session_factory.begin() as session:
                yield session
        except OperationalError as e:
            log.warning("storage_transient_error", operation=operation, error=str(e))
            raise StorageTransientError(f"{operation} failed: {e}") from e
        except DBAPIError as e:
            if e.connection_invalidated:
                log.warning("storage_connection_invalidated", operation=operation, error=str(e))
                raise StorageTransientError(f"{operation} failed: {e}") from e
            raise

    def bulk_upsert(self, records: Sequence[NormalizedRecord], strategy: MergeStrategy) -> UpsertResult:
        if not records:
            return UpsertResult(0, 0)

        keys = [r.distinct_id for r in records]
        if len(set(keys)) != len(keys):
            raise ValueError("bulk upsert batch contains duplicate distinct_id values")

        profiles = self._tables.user_profiles
        applied = self._tables.applied_events
        now = to_db_time(utcnow())

        with self._transaction("bulk_upsert") as session:
            if strategy == MergeStrategy.ADD:
                records = self._drop_applied(session, records)
                if not records:
                    return UpsertResult(0, len(keys))

            rows = [self._to_row(record, now) for record in records]
            insert_stmt = self._insert(profiles).values(rows)
            excluded = insert_stmt.excluded

            set_map: dict[str, Any] = {"updated_at": excluded.updated_at}
            for column in self._tables.counter_columns:
                if strategy == MergeStrategy.ADD:
                    set_map[column] = func.coalesce(profiles.c[column], 0) + func.coalesce(
                        excluded[column], 0
                    )
                else:
                    set_map[column] = func.coalesce(excluded[column], profiles.c[column])
            for column in self._tables.attribute_columns:
                set_map[column] = func.coalesce(excluded[column], profiles.c[column])

            session.execute(
                insert_stmt.on_conflict_do_update(index_elements=[PROFILE_KEY], set_=set_map)
            )

            event_rows = [
                {
                    "event_id": key,
                    "distinct_id": record.distinct_id,
                    "event_time": to_db_time(record.observed_at),
                    "applied_at": now,
                }
                for record in records
                for key in dict.fromkeys(record.dedup_keys)
            ]
            for chunk in _chunks(event_rows):
                session.execute(
                    self._insert(applied).values(list(chunk)).on_conflict_do_nothing(
                        index_elements=["event_id"]
                    )
                )

        log.debug(
            "bulk_upsert_committed",
            strategy=strategy.value,
            rows=len(rows),
            applied_events=len(event_rows),
        )
        return UpsertResult(len(rows), len(keys) - len(rows))

    def _drop_applied(self, session, records: Sequence[NormalizedRecord]) -> list[NormalizedRecord]:
        all_keys = [key for record in records for key in record.dedup_keys]
        if not all_keys:
            return list(records)
        seen = self._applied_in(session, all_keys)
        if not seen:
            return list(records)

        kept = []
        for record in records:
            overlap = seen.intersection(record.dedup_keys)
            if not overlap:
                kept.append(record)
                continue
            if len(overlap) < len(set(record.dedup_keys)):
                log.warning(
                    "partially_applied_record_skipped",
                    distinct_id=record.distinct_id,
                    applied=len(overlap),
                    dedup_keys=len(record.dedup_keys),
                    unapplied_event_ids=sorted(set(record.dedup_keys) - overlap),
                )
        return kept

    def _applied_in(self, session, event_ids: Sequence[str]) -> set[str]:
        applied = self._tables.applied_events
        found: set[str] = set()
        unique = list(dict.fromkeys(event_ids))
        for chunk in _chunks(unique):
            result = session.execute(select(applied.c.event_id).where(applied.c.event_id.in_(chunk)))
            found.update(result.scalars())
        return found

    def _to_row(self, record: NormalizedRecord, now: datetime | None) -> dict[str, Any]:
        row: dict[str, Any] = {PROFILE_KEY: record.distinct_id, "updated_at": now}
        for column in self._tables.counter_columns:
            row[column] = record.counters.get(column)
        for column in self._tables.attribute_columns:
            row[column] = to_column_text(record.attributes.get(column))
        return row

    def fetch_existing(self, keys: Iterable[str]) -> dict[str, TargetRecord]:
        profiles = self._tables.user_profiles
        unique = list(dict.fromkeys(keys))
        existing: dict[str, TargetRecord] = {}

        with self._transaction("fetch_existing") as session:
            for chunk in _chunks(unique):
                result = session.execute(select(profiles).where(profiles.c[PROFILE_KEY].in_(chunk)))
                for row in result.mappings():
                    fields = {k: v for k, v in row.items() if k not in (PROFILE_KEY, "updated_at")}
                    updated_at = row["updated_at"]
                    existing[row[PROFILE_KEY]] = TargetRecord(
                        distinct_id=row[PROFILE_KEY],
                        fields=fields,
                        updated_at=ensure_utc(updated_at) if updated_at else None,
                    )
        return existing

    def applied_event_ids(self, event_ids: Iterable[str]) -> set[str]:
        ids = list(event_ids)
        if not ids:
            return set()
        with self._transaction("applied_event_ids") as session:
            return self._applied_in(session, ids)

    def prune_applied_events(self, before: datetime) -> int:
        applied = self._tables.applied_events
        with self._transaction("prune_applied_events") as session:
            result = session.execute(delete(applied).where(applied.c.event_time < to_db_time(before)))
            removed = result.rowcount or 0
        log.info("applied_events_pruned", before=before.isoformat(), removed=removed)
        return removed

    def refresh_aggregates(self) -> int:
        profiles = self._tables.user_profiles
        summary = self._tables.engagement_summary
        now = to_db_time(utcnow())

        with self._transaction("refresh_aggregates") as session:
            session.execute(delete(summary))
            rows = []
            for column in self._tables.counter_columns:
                col = profiles.c[column]
                total, users = session.execute(
                    select(
                        func.coalesce(func.sum(col), 0),
                        func.count(case((col > 0, 1))),
                    )
                ).one()
                rows.append(
                    {"metric": column, "total": int(total), "users": int(users), "refreshed_at": now}
                )
            if rows:
                session.execute(summary.insert(), rows)

        log.info("aggregates_refreshed", metrics=len(rows))
        return len(rows)

    def aggregates(self) -> dict[str, tuple[int, int]]:
        """Current engagement summary as ``metric -> (total, users)``."""
        summary = self._tables.engagement_summary
        with self._transaction("read_aggregates") as session:
            result = session.execute(select(summary.c.metric, summary.c.total, summary.c.users))
            return {metric: (total, users) for metric, total, users in result}

    def flush(self) -> dict[str, int]:
        deleted: dict[str, int] = {}
        with self._transaction("flush") as session:
            for table in self._tables.target_tables:
                result = session.execute(delete(table))
                deleted[table.name] = result.rowcount or 0
        log.info("target_flushed", deleted=deleted)
        return deleted

    def count(self) -> int:
        profiles = self._tables.user_profiles
        with self._transaction("count") as session:
            return session.execute(select(func.count()).select_from(profiles)).scalar_one()
