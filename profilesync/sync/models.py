"""Data models for synchronization operations."""

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from profilesync.models.records import NormalizedEvent, NormalizedRecord, RunStats, RunStatus


class FetchResult(BaseModel):
    """Everything one fetch call pulled from the provider."""

    records: list[NormalizedEvent | dict[str, Any]] = Field(
        default_factory=list, description="Normalized events or raw profile records"
    )
    next_cursor: datetime | None = Field(
        default=None, description="Cursor the watermark may advance to once merged"
    )
    exhausted: bool = Field(default=True, description="False when the time budget ran out first")
    pagination_token: str | None = Field(
        default=None, description="First page not fetched when exhausted is False"
    )
    pages: int = Field(default=0, ge=0, description="Pages fetched")
    duplicates_dropped: int = Field(default=0, ge=0, description="Events dropped as already seen")
    rate_limited: bool = Field(default=False, description="Provider throttled at least one page")


class MergeStats(BaseModel):
    """Result of merging one record list."""

    upserted: int = Field(default=0, ge=0, description="Rows written")
    failed: int = Field(default=0, ge=0, description="Rows in batches that failed")
    skipped: int = Field(default=0, ge=0, description="Rows already applied")
    batches: int = Field(default=0, ge=0, description="Set-based statements executed")

    def __add__(self, other: "MergeStats") -> "MergeStats":
        return MergeStats(
            upserted=self.upserted + other.upserted,
            failed=self.failed + other.failed,
            skipped=self.skipped + other.skipped,
            batches=self.batches + other.batches,
        )


class ChangeSet(BaseModel):
    """Split of a property batch into rows worth writing and rows to skip."""

    changed: list[NormalizedRecord] = Field(
        default_factory=list, description="Rows that are new or differ in at least one field"
    )
    unchanged: list[str] = Field(
        default_factory=list, description="Keys whose incoming values match the stored row"
    )

    @property
    def has_changes(self) -> bool:
        """Check if there are any rows to write."""
        return bool(self.changed)

    @property
    def total(self) -> int:
        return len(self.changed) + len(self.unchanged)

    @property
    def skip_ratio(self) -> float:
        """Fraction of the batch that needs no write."""
        return len(self.unchanged) / self.total if self.total else 0.0


class StageSuccess(BaseModel):
    """A pipeline stage that finished."""

    kind: Literal["success"] = "success"
    stage: str
    stats: RunStats = Field(default_factory=RunStats)
    next_cursor: datetime | None = None


class StageFailure(BaseModel):
    """A pipeline stage that did not finish."""

    kind: Literal["failure"] = "failure"
    stage: str
    error: str
    transient: bool = True
    rate_limited: bool = False
    stats: RunStats = Field(default_factory=RunStats)


StageOutcome = Annotated[Union[StageSuccess, StageFailure], Field(discriminator="kind")]


class Success(BaseModel):
    """Every stage succeeded."""

    kind: Literal["success"] = "success"
    stats: RunStats = Field(default_factory=RunStats)

    @property
    def run_status(self) -> RunStatus:
        return RunStatus.COMPLETED


class PartialSuccess(BaseModel):
    """At least one stage failed transiently."""

    kind: Literal["partial"] = "partial"
    stats: RunStats = Field(default_factory=RunStats)
    stage_errors: list[StageFailure] = Field(default_factory=list)
    succeeded: list[str] = Field(default_factory=list)

    @property
    def run_status(self) -> RunStatus:
        # nothing landed: the run failed even though the cause was transient
        return RunStatus.PARTIAL if self.succeeded else RunStatus.FAILED


class Fatal(BaseModel):
    """A stage hit an error that aborts the run."""

    kind: Literal["fatal"] = "fatal"
    stats: RunStats = Field(default_factory=RunStats)
    error: str
    stage: str | None = None

    @property
    def run_status(self) -> RunStatus:
        return RunStatus.FAILED


RunOutcome = Annotated[Union[Success, PartialSuccess, Fatal], Field(discriminator="kind")]


def fold_outcomes(outcomes: list[StageSuccess | StageFailure]) -> Success | PartialSuccess | Fatal:
    """Combine per-stage outcomes into one run-level outcome."""
    stats = RunStats()
    for outcome in outcomes:
        stats = stats + outcome.stats

    failures = [o for o in outcomes if isinstance(o, StageFailure)]
    stats = stats + RunStats(errors=len(failures))
    fatal = next((f for f in failures if not f.transient), None)
    if fatal is not None:
        return Fatal(stats=stats, error=fatal.error, stage=fatal.stage)
    if failures:
        return PartialSuccess(
            stats=stats,
            stage_errors=failures,
            succeeded=[o.stage for o in outcomes if isinstance(o, StageSuccess)],
        )
    return Success(stats=stats)


class InvocationResult(BaseModel):
    """What an external trigger gets back from one invocation."""

    success: bool = Field(default=..., description="True when the run completed without errors")
    source_id: str = Field(default=..., description="Source identifier")
    status: RunStatus | None = Field(default=None, description="Ledger status; None when skipped")
    run_id: str | None = Field(default=None, description="Ledger run identifier")
    stats: RunStats = Field(default_factory=RunStats, description="Run counts")
    stage_errors: dict[str, str] = Field(default_factory=dict, description="Stage -> error")
    skipped_reason: str | None = Field(default=None, description="Why no run was started")
    watermark_advanced: bool = Field(default=False, description="Watermark moved forward")
    next_chunk_start: int | None = Field(
        default=None, description="Day offset to resume a backfill from"
    )


class BackfillReport(BaseModel):
    """Outcome of one backfill invocation."""

    source_id: str
    run_id: str | None = Field(default=None, description="None when there was nothing to run")
    status: RunStatus
    chunks_total: int = Field(default=0, ge=0)
    chunks_completed: list[int] = Field(default_factory=list)
    chunks_declined: list[int] = Field(
        default_factory=list, description="Chunks not replayed because their applied ids may be pruned"
    )
    next_chunk_start: int | None = Field(
        default=None, description="Day offset of the first unfinished chunk; None when done"
    )
    stats: RunStats = Field(default_factory=RunStats)
    error: str | None = None

    @property
    def done(self) -> bool:
        return self.status == RunStatus.COMPLETED and self.next_chunk_start is None
