"""Pydantic models for synced profiles, watermarks and sync runs."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MergeStrategy(str, Enum):
    """How incoming counter values combine with stored ones."""

    ADD = "add"
    REPLACE = "replace"


class RunStatus(str, Enum):
    """Lifecycle states of a sync run."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.IN_PROGRESS


class ChunkStatus(str, Enum):
    """States of one backfill chunk."""

    PENDING = "pending"
    FETCHING = "fetching"
    MERGING = "merging"
    DONE = "done"
    FAILED = "failed"
    DECLINED = "declined"


class NormalizedEvent(BaseModel):
    """A provider event reduced to the fields the sync engine needs."""

    event_id: str = Field(default=..., min_length=1, description="Stable per-event identifier")
    event_name: str = Field(default=..., description="Provider event name")
    distinct_id: str = Field(default=..., min_length=1, description="User natural key")
    timestamp: datetime = Field(default=..., description="Event time (UTC)")
    properties: dict[str, Any] = Field(default_factory=dict, description="Raw event properties")

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class NormalizedRecord(BaseModel):
    """One user's incoming values, ready for the merge engine.

    ``counters`` are deltas under ADD and totals under REPLACE. ``attributes``
    always overwrite; a ``None`` attribute means "not observed" and leaves the
    stored value alone. ``dedup_keys`` are the event ids the counters were
    derived from.
    """

    distinct_id: str = Field(default=..., min_length=1, description="Natural key")
    counters: dict[str, int] = Field(default_factory=dict, description="Counter values")
    attributes: dict[str, Any] = Field(default_factory=dict, description="Profile attributes")
    dedup_keys: list[str] = Field(default_factory=list, description="Contributing event ids")
    observed_at: datetime | None = Field(default=None, description="Latest source timestamp")

    @field_validator("observed_at")
    @classmethod
    def validate_observed_at(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None


class TargetRecord(BaseModel):
    """A stored profile row as read back from the target store."""

    distinct_id: str = Field(default=..., description="Natural key")
    fields: dict[str, Any] = Field(default_factory=dict, description="Counters and attributes")
    updated_at: datetime | None = Field(default=None, description="Last write time")


class SyncWatermark(BaseModel):
    """Last durably synced cursor for one source."""

    source_id: str = Field(default=..., min_length=1, description="Source identifier")
    cursor: datetime = Field(default=..., description="Synced-up-to timestamp (UTC)")
    last_advanced_at: datetime = Field(default_factory=utcnow, description="Time of last advance")

    @field_validator("cursor", "last_advanced_at")
    @classmethod
    def validate_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    model_config = {
        "json_schema_extra": {
            "example": {
                "source_id": "events",
                "cursor": "2024-01-15T14:30:00Z",
                "last_advanced_at": "2024-01-15T14:32:10Z",
            }
        }
    }


class RunStats(BaseModel):
    """Counts accumulated over one sync run."""

    fetched: int = Field(default=0, ge=0, description="Records received from the provider")
    merged: int = Field(default=0, ge=0, description="Rows upserted into the target")
    skipped: int = Field(default=0, ge=0, description="Rows skipped as unchanged or already applied")
    errors: int = Field(default=0, ge=0, description="Failed stages or batches")

    def __add__(self, other: "RunStats") -> "RunStats":
        return RunStats(
            fetched=self.fetched + other.fetched,
            merged=self.merged + other.merged,
            skipped=self.skipped + other.skipped,
            errors=self.errors + other.errors,
        )


class SyncRun(BaseModel):
    """One invocation's ledger record."""

    run_id: str = Field(default=..., description="Unique run identifier")
    source_id: str = Field(default=..., description="Source identifier")
    status: RunStatus = Field(default=RunStatus.IN_PROGRESS, description="Run status")
    started_at: datetime = Field(default_factory=utcnow, description="Run start (UTC)")
    completed_at: datetime | None = Field(default=None, description="Run end (UTC)")
    stats: RunStats = Field(default_factory=RunStats, description="Run counts")
    error_detail: dict[str, Any] | None = Field(default=None, description="Error or per-stage errors")

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at is None:
            return None
        return (ensure_utc(self.completed_at) - ensure_utc(self.started_at)).total_seconds()


class BackfillChunk(BaseModel):
    """A bounded sub-range of a historical backfill."""

    chunk_index: int = Field(default=..., ge=0, description="Zero-based chunk position")
    range_start: datetime = Field(default=..., description="Inclusive start (UTC)")
    range_end: datetime = Field(default=..., description="Exclusive end (UTC)")
    status: ChunkStatus = Field(default=ChunkStatus.PENDING, description="Chunk state")


class BackfillCheckpoint(BaseModel):
    """Durable resume position of a backfill.

    ``pagination_token`` belongs to ``active_chunk`` and marks the first page
    that has not been committed yet.
    """

    source_id: str = Field(default=..., description="Source identifier")
    backfill_key: str = Field(default=..., description="Identifies the backfill range")
    range_end: datetime = Field(default=..., description="Exclusive end the chunks are laid out from")
    last_completed_chunk: int = Field(default=-1, ge=-1, description="-1 when no chunk finished")
    active_chunk: int | None = Field(default=None, ge=0, description="Chunk in progress")
    pagination_token: str | None = Field(default=None, description="Resume token in active chunk")
    updated_at: datetime = Field(default_factory=utcnow, description="Last checkpoint write")

    @field_validator("range_end", "updated_at")
    @classmethod
    def validate_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)
