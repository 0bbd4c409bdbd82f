"""Batched set-based merge of normalized records into the profile store."""

from typing import Sequence

import structlog

from profilesync.models.records import MergeStrategy, NormalizedRecord
from profilesync.storage.target_store import TargetStore
from profilesync.sync.errors import StorageTransientError, TransientSyncError
from profilesync.sync.models import MergeStats
from profilesync.utils.retry import RetryPolicy, call_with_retry

log = structlog.stdlib.get_logger()


class MergeError(TransientSyncError):
    """A batch could not be committed after retries."""

    def __init__(self, message: str, stats: MergeStats):
        super().__init__(message)
        self.stats = stats


def collapse_duplicates(
    records: Sequence[NormalizedRecord], strategy: MergeStrategy
) -> list[NormalizedRecord]:
    """
    Reduce records sharing a distinct_id to one record per key.

    REPLACE keeps fetch order: later values win, and a later empty attribute
    does not erase an earlier observed one. ADD sums counters, which is
    order-independent, and unions dedup keys.
    """
    merged: dict[str, NormalizedRecord] = {}
    for record in records:
        current = merged.get(record.distinct_id)
        if current is None:
            merged[record.distinct_id] = record
            continue

        if strategy == MergeStrategy.ADD:
            counters = dict(current.counters)
            for column, delta in record.counters.items():
                counters[column] = counters.get(column, 0) + delta
        else:
            counters = {**current.counters, **record.counters}

        attributes = dict(current.attributes)
        attributes.update({k: v for k, v in record.attributes.items() if v is not None})
        observed = [t for t in (current.observed_at, record.observed_at) if t is not None]

        merged[record.distinct_id] = NormalizedRecord(
            distinct_id=record.distinct_id,
            counters=counters,
            attributes=attributes,
            dedup_keys=list(dict.fromkeys([*current.dedup_keys, *record.dedup_keys])),
            observed_at=max(observed) if observed else None,
        )
    return list(merged.values())


class MergeEngine:
    """Applies records to the target store one bounded batch at a time.

    Each batch is a single bulk upsert in its own transaction. A batch that
    keeps failing after retries stops the merge: later batches are not
    attempted so the caller can replay the whole list safely.
    """

    def __init__(self, store: TargetStore, batch_size: int = 250, retry_policy: RetryPolicy | None = None):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self._store = store
        self._batch_size = batch_size
        self._retry_policy = retry_policy or RetryPolicy()

    def merge(self, batch: Sequence[NormalizedRecord], strategy: MergeStrategy) -> MergeStats:
        """
        Merge records into the target store.

        Args:
            batch: Records to apply, in fetch order
            strategy: ADD accumulates counters; REPLACE overwrites them

        Returns:
            MergeStats with upserted and skipped counts

        Raises:
            MergeError: If a batch still fails after retries; ``stats`` holds
                what was committed before it
        """
        records = collapse_duplicates(batch, strategy)
        stats = MergeStats()
        if not records:
            return stats

        log.info(
            "merge_started",
            strategy=strategy.value,
            records=len(records),
            collapsed=len(batch) - len(records),
            batch_size=self._batch_size,
        )

        for start in range(0, len(records), self._batch_size):
            chunk = records[start : start + self._batch_size]
            try:
                result = call_with_retry(
                    self._retry_policy,
                    lambda: self._store.bulk_upsert(chunk, strategy),
                    retry_on=(StorageTransientError,),
                    operation="bulk_upsert",
                )
            except StorageTransientError as e:
                stats = stats + MergeStats(failed=len(records) - start)
                log.error(
                    "merge_batch_failed",
                    strategy=strategy.value,
                    batch_start=start,
                    failed=stats.failed,
                    error=str(e),
                )
                raise MergeError(f"batch at offset {start} failed: {e}", stats) from e

            stats = stats + MergeStats(upserted=result.upserted, skipped=result.skipped, batches=1)

        log.info(
            "merge_completed",
            strategy=strategy.value,
            upserted=stats.upserted,
            skipped=stats.skipped,
            batches=stats.batches,
        )
        return stats
