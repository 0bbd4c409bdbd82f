"""SQLAlchemy table definitions for profiles and sync state."""

from dataclasses import dataclass

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    text,
)

from profilesync.models.config import MixpanelConfig

PROFILE_KEY = "distinct_id"
RESERVED_COLUMNS = {PROFILE_KEY, "updated_at"}


@dataclass(frozen=True)
class SyncTables:
    """All tables of one database, sharing a MetaData."""

    metadata: MetaData
    user_profiles: Table
    applied_events: Table
    engagement_summary: Table
    sync_watermarks: Table
    sync_runs: Table
    backfill_checkpoints: Table
    counter_columns: tuple[str, ...]
    attribute_columns: tuple[str, ...]

    @property
    def target_tables(self) -> tuple[Table, ...]:
        """Tables emptied by a flush, dependents first."""
        return (self.engagement_summary, self.applied_events, self.user_profiles)


def build_tables(provider: MixpanelConfig) -> SyncTables:
    """
    Build table metadata with one profile column per configured counter and attribute.

    Args:
        provider: Provider configuration holding the column maps

    Returns:
        SyncTables bound to a fresh MetaData

    Raises:
        ValueError: If a configured column collides with a reserved column
    """
    counters = tuple(provider.counter_columns)
    attributes = tuple(provider.attribute_columns)
    clash = RESERVED_COLUMNS & (set(counters) | set(attributes))
    if clash:
        raise ValueError(f"profile columns collide with reserved names: {sorted(clash)}")

    metadata = MetaData()

    user_profiles = Table(
        "user_profiles",
        metadata,
        Column(PROFILE_KEY, String(255), primary_key=True),
        *[Column(name, BigInteger, nullable=True) for name in counters],
        *[Column(name, Text, nullable=True) for name in attributes],
        Column("updated_at", DateTime, nullable=False),
    )

    applied_events = Table(
        "applied_events",
        metadata,
        Column("event_id", String(255), primary_key=True),
        Column("distinct_id", String(255), nullable=False),
        Column("event_time", DateTime, nullable=True, index=True),
        Column("applied_at", DateTime, nullable=False),
    )

    engagement_summary = Table(
        "engagement_summary",
        metadata,
        Column("metric", String(100), primary_key=True),
        Column("total", BigInteger, nullable=False, default=0),
        Column("users", Integer, nullable=False, default=0),
        Column("refreshed_at", DateTime, nullable=False),
    )

    sync_watermarks = Table(
        "sync_watermarks",
        metadata,
        Column("source_id", String(100), primary_key=True),
        Column("cursor", DateTime, nullable=False),
        Column("last_advanced_at", DateTime, nullable=False),
    )

    sync_runs = Table(
        "sync_runs",
        metadata,
        Column("run_id", String(36), primary_key=True),
        Column("source_id", String(100), nullable=False, index=True),
        Column("status", String(20), nullable=False),
        Column("started_at", DateTime, nullable=False),
        Column("completed_at", DateTime, nullable=True),
        Column("fetched", Integer, nullable=False, default=0),
        Column("merged", Integer, nullable=False, default=0),
        Column("skipped", Integer, nullable=False, default=0),
        Column("errors", Integer, nullable=False, default=0),
        Column("error_detail", JSON(none_as_null=True), nullable=True),
    )
    # at most one in-flight run per source
    Index(
        "uq_sync_runs_in_progress",
        sync_runs.c.source_id,
        unique=True,
        sqlite_where=text("status = 'in_progress'"),
        postgresql_where=text("status = 'in_progress'"),
    )

    backfill_checkpoints = Table(
        "backfill_checkpoints",
        metadata,
        Column("source_id", String(100), primary_key=True),
        Column("backfill_key", String(100), primary_key=True),
        Column("range_end", DateTime, nullable=False),
        Column("last_completed_chunk", Integer, nullable=False, default=-1),
        Column("active_chunk", Integer, nullable=True),
        Column("pagination_token", String(255), nullable=True),
        Column("updated_at", DateTime, nullable=False),
    )

    return SyncTables(
        metadata=metadata,
        user_profiles=user_profiles,
        applied_events=applied_events,
        engagement_summary=engagement_summary,
        sync_watermarks=sync_watermarks,
        sync_runs=sync_runs,
        backfill_checkpoints=backfill_checkpoints,
        counter_columns=counters,
        attribute_columns=attributes,
    )
