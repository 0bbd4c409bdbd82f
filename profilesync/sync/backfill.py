"""Chunked, resumable historical backfill."""

import math
import time
from datetime import datetime, timedelta
from typing import Callable

import structlog

from profilesync.ingestion.event_processor import EventAggregator
from profilesync.ingestion.provider import TimeRange
from profilesync.models.config import SyncConfig
from profilesync.models.records import (
    BackfillCheckpoint,
    BackfillChunk,
    ChunkStatus,
    MergeStrategy,
    RunStats,
    RunStatus,
    utcnow,
)
from profilesync.storage.target_store import TargetStore
from profilesync.sync.checkpoint_store import CheckpointStore
from profilesync.sync.errors import FatalSyncError, TransientSyncError
from profilesync.sync.fetcher import Deadline, IncrementalFetcher
from profilesync.sync.merge_engine import MergeEngine, MergeError
from profilesync.sync.models import BackfillReport
from profilesync.sync.run_ledger import SyncRunLedger
from profilesync.sync.watermark_store import WatermarkStore
from profilesync.utils.logging_config import bind_run_context, clear_run_context

log = structlog.stdlib.get_logger()

RETENTION_MARGIN = timedelta(days=1)


def dedup_retention_floor(now: datetime, backfill_days: int) -> datetime:
    """Oldest event time whose applied ids are guaranteed to still be stored.

    Pruning never removes ids at or after this instant, so a backfill whose
    chunks start at or after it can rely on applied ids to skip events an
    earlier sync already counted.
    """
    return now - timedelta(days=backfill_days) - RETENTION_MARGIN


def plan_chunks(range_end: datetime, days: int, chunk_days: int) -> list[BackfillChunk]:
    """Split ``days`` before ``range_end`` into chunks, oldest first."""
    if days < 1 or chunk_days < 1:
        raise ValueError("days and chunk_days must be positive")
    start = range_end - timedelta(days=days)
    chunks = []
    for index in range(math.ceil(days / chunk_days)):
        chunk_start = start + timedelta(days=index * chunk_days)
        chunk_end = min(chunk_start + timedelta(days=chunk_days), range_end)
        chunks.append(BackfillChunk(chunk_index=index, range_start=chunk_start, range_end=chunk_end))
    return chunks


class _ChunkProgress:
    """Mutable state carried across attempts of one chunk."""

    def __init__(self, checkpoint: BackfillCheckpoint):
        self.checkpoint = checkpoint
        self.stats = RunStats()


class BackfillOrchestrator:
    """Runs a historical range as fixed-size chunks merged with ADD.

    Progress is checkpointed after every committed page: the last completed
    chunk index plus the pagination token inside the active chunk. A later
    invocation resumes from that checkpoint and never re-processes a
    completed chunk. Events are deduplicated against already-applied ids, so a
    page replayed after a crash between merge and checkpoint is not counted
    twice.

    When a watermark store is given and the source has no watermark yet, a
    finished backfill seeds it at the range end so the next scheduled sync
    continues incrementally instead of repeating the cold start. When the
    source already has a watermark and the store holds profiles, earlier syncs
    may have pruned applied ids older than ``dedup_retention_floor``; chunks
    starting before that floor are declined so ADD never counts an event
    twice. After a flush nothing is declined.
    """

    def __init__(
        self,
        fetcher: IncrementalFetcher,
        merge_engine: MergeEngine,
        ledger: SyncRunLedger,
        checkpoints: CheckpointStore,
        aggregator: EventAggregator,
        config: SyncConfig,
        clock: Callable[[], datetime] = utcnow,
        watermark_store: WatermarkStore | None = None,
        target_store: TargetStore | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._fetcher = fetcher
        self._merge_engine = merge_engine
        self._ledger = ledger
        self._checkpoints = checkpoints
        self._aggregator = aggregator
        self._config = config
        self._clock = clock
        self._sleep = sleep
        self._watermarks = watermark_store
        self._target_store = target_store

    @staticmethod
    def backfill_key(days: int, chunk_days: int) -> str:
        return f"events:{days}d:{chunk_days}d"

    def _anchor(self) -> datetime:
        # chunk boundaries fall on UTC midnight so export days are never split
        return self._clock().replace(hour=0, minute=0, second=0, microsecond=0)

    def run(
        self,
        source_id: str,
        chunk_start: int | None = None,
        days: int | None = None,
        chunk_days: int | None = None,
        time_budget: float | None = None,
        restart: bool = False,
    ) -> BackfillReport:
        """
        Process chunks from the durable resume position until done or out of budget.

        Args:
            source_id: Source identifier
            chunk_start: Day offset into the range to resume from. Chunks at or
                before the last recorded completed chunk are never re-processed.
            days: Backfill range in days (defaults to configuration)
            chunk_days: Chunk size in days (defaults to configuration)
            time_budget: Seconds available (defaults to configuration)
            restart: Discard the checkpoint and start from the oldest chunk

        Returns:
            BackfillReport; ``next_chunk_start`` is set when chunks remain

        Raises:
            SyncAlreadyRunningError: If the source has a run in progress
            FatalSyncError: On authentication or schema errors
        """
        days = days or self._config.backfill_days
        chunk_days = chunk_days or self._config.backfill_chunk_days
        budget = time_budget if time_budget is not None else self._config.time_budget_seconds
        key = self.backfill_key(days, chunk_days)

        if restart:
            self._checkpoints.clear(source_id, key)

        checkpoint = self._checkpoints.load(source_id, key)
        if checkpoint is None:
            checkpoint = BackfillCheckpoint(source_id=source_id, backfill_key=key, range_end=self._anchor())
        chunks = plan_chunks(checkpoint.range_end, days, chunk_days)

        resume_index = checkpoint.last_completed_chunk + 1
        if chunk_start is not None:
            requested = chunk_start // chunk_days
            if requested < resume_index:
                log.info(
                    "backfill_completed_chunks_skipped",
                    source_id=source_id,
                    requested_chunk=requested,
                    resume_chunk=resume_index,
                )
            elif requested > resume_index:
                log.warning(
                    "backfill_chunk_start_ahead_of_checkpoint",
                    source_id=source_id,
                    requested_chunk=requested,
                    resume_chunk=resume_index,
                )

        if resume_index >= len(chunks):
            log.info("backfill_already_complete", source_id=source_id, backfill_key=key)
            return BackfillReport(
                source_id=source_id,
                status=RunStatus.COMPLETED,
                chunks_total=len(chunks),
            )

        run_id = self._ledger.create(source_id)
        bind_run_context(source_id, run_id, backfill_key=key)
        try:
            return self._process(source_id, run_id, chunks, checkpoint, chunk_days, budget)
        finally:
            clear_run_context()

    def _process(
        self,
        source_id: str,
        run_id: str,
        chunks: list[BackfillChunk],
        checkpoint: BackfillCheckpoint,
        chunk_days: int,
        budget: float,
    ) -> BackfillReport:
        resume_index = checkpoint.last_completed_chunk + 1
        deadline = self._fetcher.deadline(budget)
        declined = self._decline_unretained(source_id, chunks[resume_index:])
        if declined:
            checkpoint = checkpoint.model_copy(
                update={
                    "last_completed_chunk": declined[-1],
                    "active_chunk": None,
                    "pagination_token": None,
                }
            )
            self._checkpoints.save(checkpoint)
            resume_index = declined[-1] + 1
        progress = _ChunkProgress(checkpoint)
        completed: list[int] = []

        log.info(
            "backfill_started",
            range_end=checkpoint.range_end.isoformat(),
            chunks_total=len(chunks),
            resume_chunk=resume_index,
            resume_token=checkpoint.pagination_token,
        )

        for chunk in chunks[resume_index:]:
            if deadline.expired():
                break
            try:
                finished = self._run_chunk_with_retries(chunk, progress, deadline)
            except TransientSyncError as e:
                self._ledger.fail(run_id, e, progress.stats + RunStats(errors=1))
                return BackfillReport(
                    source_id=source_id,
                    run_id=run_id,
                    status=RunStatus.FAILED,
                    chunks_total=len(chunks),
                    chunks_completed=completed,
                    chunks_declined=declined,
                    next_chunk_start=chunk.chunk_index * chunk_days,
                    stats=progress.stats,
                    error=str(e),
                )
            except FatalSyncError as e:
                self._ledger.fail(run_id, e, progress.stats + RunStats(errors=1))
                raise

            if not finished:
                break

            chunk.status = ChunkStatus.DONE
            progress.checkpoint = progress.checkpoint.model_copy(
                update={
                    "last_completed_chunk": chunk.chunk_index,
                    "active_chunk": None,
                    "pagination_token": None,
                }
            )
            self._checkpoints.save(progress.checkpoint)
            completed.append(chunk.chunk_index)
            log.info("backfill_chunk_completed", chunk_index=chunk.chunk_index)

        next_index = progress.checkpoint.last_completed_chunk + 1
        if next_index >= len(chunks):
            self._ledger.complete(run_id, progress.stats)
            self._seed_watermark(source_id, progress.checkpoint.range_end)
            status = RunStatus.COMPLETED
            next_chunk_start = None
        else:
            next_chunk_start = next_index * chunk_days
            self._ledger.mark_partial(
                run_id,
                progress.stats,
                {"backfill": f"time budget exhausted; resume at chunk_start={next_chunk_start}"},
            )
            status = RunStatus.PARTIAL

        log.info(
            "backfill_invocation_finished",
            status=status.value,
            chunks_completed=completed,
            chunks_declined=declined,
            next_chunk_start=next_chunk_start,
            **progress.stats.model_dump(),
        )
        return BackfillReport(
            source_id=source_id,
            run_id=run_id,
            status=status,
            chunks_total=len(chunks),
            chunks_completed=completed,
            chunks_declined=declined,
            next_chunk_start=next_chunk_start,
            stats=progress.stats,
        )

    def _decline_unretained(self, source_id: str, chunks: list[BackfillChunk]) -> list[int]:
        """Indexes of leading chunks that start before the applied-id retention floor."""
        if self._watermarks is None or self._watermarks.get(source_id) is None:
            return []
        if self._target_store is not None and self._target_store.count() == 0:
            # flushed or never written: there is nothing to count twice
            return []
        floor = dedup_retention_floor(self._clock(), self._config.backfill_days)
        declined = []
        for chunk in chunks:
            if chunk.range_start >= floor:
                break
            chunk.status = ChunkStatus.DECLINED
            declined.append(chunk.chunk_index)
        if declined:
            log.warning(
                "backfill_chunks_outside_dedup_retention",
                source_id=source_id,
                declined_chunks=declined,
                retention_floor=floor.isoformat(),
                hint="only a backfill into an empty profile store covers these chunks",
            )
        return declined

    def _seed_watermark(self, source_id: str, range_end: datetime) -> None:
        if self._watermarks is None or self._watermarks.get(source_id) is not None:
            return
        self._watermarks.advance(source_id, range_end)
        log.info("watermark_seeded_from_backfill", source_id=source_id, cursor=range_end.isoformat())

    def _run_chunk_with_retries(
        self, chunk: BackfillChunk, progress: _ChunkProgress, deadline: Deadline
    ) -> bool:
        policy = self._config.retry
        attempts = self._config.max_chunk_attempts
        for attempt in range(attempts):
            try:
                return self._run_chunk(chunk, progress, deadline)
            except TransientSyncError as e:
                chunk.status = ChunkStatus.FAILED
                if isinstance(e, MergeError):
                    progress.stats = progress.stats + RunStats(merged=e.stats.upserted)
                if attempt == attempts - 1:
                    log.error(
                        "backfill_chunk_failed",
                        chunk_index=chunk.chunk_index,
                        attempts=attempts,
                        error=str(e),
                    )
                    raise
                delay = policy.delay_for(attempt)
                log.warning(
                    "backfill_chunk_retrying",
                    chunk_index=chunk.chunk_index,
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    delay_seconds=round(delay, 3),
                    error=str(e),
                )
                if delay >= deadline.remaining:
                    # no time left to retry in this invocation; resume later
                    return False
                self._sleep(delay)
        return False

    def _run_chunk(self, chunk: BackfillChunk, progress: _ChunkProgress, deadline: Deadline) -> bool:
        checkpoint = progress.checkpoint
        token = checkpoint.pagination_token if checkpoint.active_chunk == chunk.chunk_index else None
        if checkpoint.active_chunk != chunk.chunk_index:
            progress.checkpoint = checkpoint.model_copy(
                update={"active_chunk": chunk.chunk_index, "pagination_token": None}
            )
            self._checkpoints.save(progress.checkpoint)

        window = TimeRange(start=chunk.range_start, end=chunk.range_end)
        chunk.status = ChunkStatus.FETCHING
        log.info(
            "backfill_chunk_started",
            chunk_index=chunk.chunk_index,
            range_start=chunk.range_start.isoformat(),
            range_end=chunk.range_end.isoformat(),
            resume_token=token,
        )

        for _, page in self._fetcher.iter_pages("events", window, token, deadline):
            chunk.status = ChunkStatus.MERGING
            events, _ = self._fetcher.normalize(page.records)
            unique = self._fetcher.dedupe(events, drop_applied=True)
            records = self._aggregator.aggregate(unique)
            merge_stats = self._merge_engine.merge(records, MergeStrategy.ADD)

            progress.stats = progress.stats + RunStats(
                fetched=len(page.records),
                merged=merge_stats.upserted,
                skipped=merge_stats.skipped + len(events) - len(unique),
            )
            progress.checkpoint = progress.checkpoint.model_copy(
                update={"pagination_token": page.next_token}
            )
            self._checkpoints.save(progress.checkpoint)

            if page.next_token is None:
                return True
            chunk.status = ChunkStatus.FETCHING

        log.info(
            "backfill_chunk_paused",
            chunk_index=chunk.chunk_index,
            pagination_token=progress.checkpoint.pagination_token,
        )
        return False
