"""Synchronization coordinator: the invocation surface of the sync engine."""

from datetime import datetime, timedelta
from typing import Callable

import structlog

from profilesync.ingestion.event_processor import EventAggregator
from profilesync.ingestion.mixpanel_client import MixpanelClient
from profilesync.ingestion.provider import ProviderClient
from profilesync.models.config import AppConfig
from profilesync.models.records import MergeStrategy, RunStats, RunStatus, utcnow
from profilesync.storage.database import Database
from profilesync.storage.target_store import SqlTargetStore, TargetStore
from profilesync.sync.backfill import BackfillOrchestrator, dedup_retention_floor
from profilesync.sync.change_detector import ChangeDetector
from profilesync.sync.checkpoint_store import SqlCheckpointStore
from profilesync.sync.errors import (
    FatalSyncError,
    RateLimitedError,
    SyncAlreadyRunningError,
    TransientSyncError,
)
from profilesync.sync.fetcher import Deadline, IncrementalFetcher
from profilesync.sync.merge_engine import MergeEngine, MergeError
from profilesync.sync.models import (
    BackfillReport,
    Fatal,
    InvocationResult,
    PartialSuccess,
    StageFailure,
    StageSuccess,
    Success,
    fold_outcomes,
)
from profilesync.sync.run_ledger import SqlRunLedger, SyncRunLedger, staleness
from profilesync.sync.watermark_store import SqlWatermarkStore, WatermarkStore
from profilesync.utils.logging_config import bind_run_context, clear_run_context

log = structlog.stdlib.get_logger()

# applied event ids are kept this long past the overlap window
PRUNE_MARGIN = timedelta(days=1)


class SyncCoordinator:
    """Runs one source's pipeline stages under a ledger run.

    Stages run in the configured order and each yields a typed outcome. A
    transient failure (including rate limiting) does not stop later stages;
    the run ends ``partial``, or ``failed`` when nothing succeeded. A fatal
    failure stops the pipeline, fails the run and is re-raised. The watermark
    advances only after every stage succeeded, as the final step.
    """

    def __init__(
        self,
        config: AppConfig,
        fetcher: IncrementalFetcher,
        merge_engine: MergeEngine,
        target_store: TargetStore,
        watermark_store: WatermarkStore,
        ledger: SyncRunLedger,
        aggregator: EventAggregator,
        backfill: BackfillOrchestrator | None = None,
        change_detector: ChangeDetector | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._config = config
        self._fetcher = fetcher
        self._merge_engine = merge_engine
        self._store = target_store
        self._watermarks = watermark_store
        self._ledger = ledger
        self._aggregator = aggregator
        self._backfill = backfill
        self._change_detector = change_detector or ChangeDetector()
        self._clock = clock
        self._overlap = timedelta(hours=config.sync.overlap_hours)

        log.info("sync_coordinator_initialized", sources=list(config.sources))

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        database: Database | None = None,
        provider: ProviderClient | None = None,
    ) -> "SyncCoordinator":
        """
        Wire SQL-backed components for a configuration.

        Args:
            config: Application configuration
            database: Optional database (built from ``config.storage`` if None)
            provider: Optional provider client (MixpanelClient if None)
        """
        database = database or Database.from_config(config.storage, config.provider)
        database.create_all()
        provider = provider or MixpanelClient(config.provider)

        sync = config.sync
        store = SqlTargetStore(database)
        watermarks = SqlWatermarkStore(database)
        ledger = SqlRunLedger(database, stale_after=timedelta(minutes=sync.stale_run_minutes))
        fetcher = IncrementalFetcher(
            provider,
            target_store=store,
            retry_policy=sync.retry,
            cold_start_days=sync.cold_start_days,
        )
        merge_engine = MergeEngine(store, batch_size=config.storage.batch_size, retry_policy=sync.retry)
        aggregator = EventAggregator(config.provider.tracked_events, config.provider.profile_properties)
        backfill = BackfillOrchestrator(
            fetcher,
            merge_engine,
            ledger,
            SqlCheckpointStore(database),
            aggregator,
            sync,
            watermark_store=watermarks,
            target_store=store,
        )
        return cls(config, fetcher, merge_engine, store, watermarks, ledger, aggregator, backfill)

    def invoke(
        self,
        source_id: str,
        force_full_sync: bool = False,
        chunk_start: int | None = None,
    ) -> InvocationResult:
        """
        Run one sync invocation for a source.

        Args:
            source_id: Configured source identifier
            force_full_sync: Reset the watermark and re-fetch the cold-start window with REPLACE
            chunk_start: Resume a chunked backfill from this day offset instead

        Returns:
            InvocationResult; transient and partial outcomes are reported here

        Raises:
            ValueError: If the source is not configured
            FatalSyncError: On authentication or schema errors (the run is failed first)
        """
        if source_id not in self._config.sources:
            raise ValueError(f"unknown source: {source_id}")

        if chunk_start is not None:
            return self._invoke_backfill(source_id, chunk_start)

        try:
            run_id = self._ledger.create(source_id)
        except SyncAlreadyRunningError as e:
            return InvocationResult(
                success=False,
                source_id=source_id,
                run_id=e.run_id,
                skipped_reason="sync already in progress",
            )

        bind_run_context(source_id, run_id)
        try:
            return self._run(source_id, run_id, force_full_sync)
        finally:
            clear_run_context()

    def _run(self, source_id: str, run_id: str, force_full_sync: bool) -> InvocationResult:
        deadline = self._fetcher.deadline(self._config.sync.time_budget_seconds)
        stages = self._config.sources[source_id].stages
        log.info("sync_run_started", stages=stages, force_full_sync=force_full_sync)

        if force_full_sync:
            self._watermarks.reset(source_id)
        watermark = self._watermarks.get(source_id)
        since_cursor = watermark.cursor if watermark else None

        outcomes: list[StageSuccess | StageFailure] = []
        fatal_error: BaseException | None = None
        for stage in stages:
            stage_outcome, error = self._run_stage(stage, source_id, since_cursor, deadline)
            outcomes.append(stage_outcome)
            if error is not None:
                fatal_error = error
                break

        outcome = fold_outcomes(outcomes)
        stage_errors = {o.stage: o.error for o in outcomes if isinstance(o, StageFailure)}

        if isinstance(outcome, Fatal):
            self._ledger.fail(run_id, outcome.error, outcome.stats)
            log.error("sync_run_aborted", stage=outcome.stage, error=outcome.error)
            raise fatal_error if fatal_error is not None else FatalSyncError(outcome.error)

        advanced = False
        if isinstance(outcome, Success):
            advanced = self._advance_watermark(source_id, outcomes)
            self._ledger.complete(run_id, outcome.stats)
        elif isinstance(outcome, PartialSuccess):
            detail = {
                f.stage: {"error": f.error, "rate_limited": f.rate_limited} for f in outcome.stage_errors
            }
            self._ledger.finish(
                run_id,
                outcome.run_status,
                outcome.stats,
                {"stage_errors": detail},
            )

        log.info(
            "sync_run_finished",
            status=outcome.run_status.value,
            watermark_advanced=advanced,
            stage_errors=stage_errors,
            **outcome.stats.model_dump(),
        )
        return InvocationResult(
            success=isinstance(outcome, Success),
            source_id=source_id,
            status=outcome.run_status,
            run_id=run_id,
            stats=outcome.stats,
            stage_errors=stage_errors,
            watermark_advanced=advanced,
        )

    def _run_stage(
        self, stage: str, source_id: str, since_cursor: datetime | None, deadline: Deadline
    ) -> tuple[StageSuccess | StageFailure, BaseException | None]:
        """Run a stage and classify its failure; the second item is set only for fatal errors."""
        handlers = {
            "events": self._events_stage,
            "properties": self._properties_stage,
            "aggregates": self._aggregates_stage,
        }
        log.info("stage_started", stage=stage)
        try:
            outcome = handlers[stage](source_id, since_cursor, deadline)
        except RateLimitedError as e:
            log.warning("stage_rate_limited", stage=stage, error=str(e))
            return StageFailure(stage=stage, error=str(e), rate_limited=True), None
        except MergeError as e:
            log.error("stage_merge_failed", stage=stage, error=str(e))
            stats = RunStats(merged=e.stats.upserted, skipped=e.stats.skipped)
            return StageFailure(stage=stage, error=str(e), stats=stats), None
        except TransientSyncError as e:
            log.error("stage_failed_transient", stage=stage, error=str(e))
            return StageFailure(stage=stage, error=str(e)), None
        except Exception as e:
            # auth, schema and anything unclassified abort the run
            log.error("stage_failed_fatal", stage=stage, error=str(e), error_type=type(e).__name__)
            return StageFailure(stage=stage, error=str(e), transient=False), e

        if isinstance(outcome, StageFailure):
            log.warning("stage_incomplete", stage=stage, error=outcome.error)
        else:
            log.info("stage_completed", stage=stage, **outcome.stats.model_dump())
        return outcome, None

    def _events_stage(
        self, source_id: str, since_cursor: datetime | None, deadline: Deadline
    ) -> StageSuccess | StageFailure:
        cold_start = since_cursor is None
        fetch = self._fetcher.fetch(
            source_id,
            since_cursor=since_cursor,
            overlap=self._overlap,
            time_budget=deadline.remaining,
        )
        stats = RunStats(fetched=len(fetch.records), skipped=fetch.duplicates_dropped)

        if cold_start and not fetch.exhausted:
            # partial full-window totals would be wrong under REPLACE
            return StageFailure(
                stage="events",
                error="cold start window not fetched within the time budget; run a backfill",
                rate_limited=fetch.rate_limited,
                stats=stats,
            )

        records = self._aggregator.aggregate(fetch.records, complete_counters=cold_start)
        strategy = MergeStrategy.REPLACE if cold_start else MergeStrategy.ADD
        merge_stats = self._merge_engine.merge(records, strategy)
        stats = stats + RunStats(merged=merge_stats.upserted, skipped=merge_stats.skipped)

        if not fetch.exhausted:
            return StageFailure(
                stage="events",
                error=f"time budget exhausted; resume token {fetch.pagination_token}",
                rate_limited=fetch.rate_limited,
                stats=stats,
            )

        next_cursor = fetch.next_cursor
        if next_cursor is None:
            next_cursor = self._clock() - self._overlap
        return StageSuccess(stage="events", stats=stats, next_cursor=next_cursor)

    def _properties_stage(
        self, source_id: str, since_cursor: datetime | None, deadline: Deadline
    ) -> StageSuccess | StageFailure:
        fetch = self._fetcher.fetch(
            source_id,
            since_cursor=since_cursor,
            overlap=self._overlap,
            time_budget=deadline.remaining,
            time_range=self._fetcher.window_for(since_cursor, self._overlap),
            kind="profiles",
        )
        records = [
            record
            for record in (self._aggregator.profile_to_record(p) for p in fetch.records)
            if record is not None
        ]
        change_set = self._change_detector.filter_changed(records, self._store.fetch_existing)
        merge_stats = self._merge_engine.merge(change_set.changed, MergeStrategy.REPLACE)
        stats = RunStats(
            fetched=len(records),
            merged=merge_stats.upserted,
            skipped=len(change_set.unchanged) + merge_stats.skipped,
        )

        if not fetch.exhausted:
            return StageFailure(
                stage="properties",
                error=f"time budget exhausted; resume token {fetch.pagination_token}",
                rate_limited=fetch.rate_limited,
                stats=stats,
            )
        return StageSuccess(stage="properties", stats=stats)

    def _aggregates_stage(
        self, source_id: str, since_cursor: datetime | None, deadline: Deadline
    ) -> StageSuccess:
        self._store.refresh_aggregates()
        return StageSuccess(stage="aggregates")

    def _advance_watermark(self, source_id: str, outcomes: list[StageSuccess | StageFailure]) -> bool:
        events = next(
            (o for o in outcomes if isinstance(o, StageSuccess) and o.stage == "events"), None
        )
        if events is None or events.next_cursor is None:
            return False

        advanced = self._watermarks.advance(source_id, events.next_cursor)
        if advanced:
            # ids inside the backfill horizon are kept for later backfills
            cutoff = min(
                events.next_cursor - self._overlap - PRUNE_MARGIN,
                dedup_retention_floor(self._clock(), self._config.sync.backfill_days),
            )
            self._store.prune_applied_events(cutoff)
        return advanced

    def run_backfill(
        self,
        source_id: str,
        chunk_start: int | None = None,
        days: int | None = None,
        chunk_days: int | None = None,
        restart: bool = False,
    ) -> BackfillReport:
        """
        Run (or resume) the chunked historical backfill for a source.

        Raises:
            ValueError: If the source or the backfill is not configured
            SyncAlreadyRunningError: If the source has a run in progress
            FatalSyncError: On authentication or schema errors
        """
        if source_id not in self._config.sources:
            raise ValueError(f"unknown source: {source_id}")
        if self._backfill is None:
            raise ValueError("backfill is not configured for this coordinator")
        return self._backfill.run(
            source_id, chunk_start=chunk_start, days=days, chunk_days=chunk_days, restart=restart
        )

    def _invoke_backfill(self, source_id: str, chunk_start: int) -> InvocationResult:
        try:
            report = self.run_backfill(source_id, chunk_start=chunk_start)
        except SyncAlreadyRunningError as e:
            return InvocationResult(
                success=False,
                source_id=source_id,
                run_id=e.run_id,
                skipped_reason="sync already in progress",
            )
        return InvocationResult(
            success=report.status == RunStatus.COMPLETED,
            source_id=source_id,
            status=report.status,
            run_id=report.run_id,
            stats=report.stats,
            stage_errors={"backfill": report.error} if report.error else {},
            next_chunk_start=report.next_chunk_start,
        )

    def staleness(self, source_id: str) -> timedelta | None:
        """Time since the last successful run, or None if there never was one."""
        return staleness(self._ledger.latest_successful(source_id), self._clock())
