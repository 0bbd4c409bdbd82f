"""Tests for the SQL profile store: upserts, aggregates, pruning and flush."""

from datetime import timedelta

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from structlog.testing import capture_logs

from profilesync.models.records import MergeStrategy, NormalizedRecord, RunStats
from profilesync.storage.target_store import SqlTargetStore, to_column_text
from profilesync.sync.run_ledger import SqlRunLedger
from profilesync.sync.watermark_store import SqlWatermarkStore
from tests.fakes import make_database, utc

SOURCE = "mixpanel_users"


def _record(distinct_id: str, keys=(), when=None, **counters) -> NormalizedRecord:
    return NormalizedRecord(
        distinct_id=distinct_id,
        counters=counters,
        dedup_keys=list(keys),
        observed_at=when,
    )


class TestBulkUpsert:
    """Single-statement inserts and updates."""

    def test_duplicate_keys_in_one_batch_are_rejected(self, store):
        with pytest.raises(ValueError):
            store.bulk_upsert(
                [_record("u1", app_sessions=1), _record("u1", app_sessions=2)], MergeStrategy.ADD
            )

        assert store.count() == 0

    def test_dedup_keys_are_recorded_with_the_rows(self, store):
        store.bulk_upsert([_record("u1", ["e1", "e2"], app_sessions=2)], MergeStrategy.ADD)

        assert store.applied_event_ids(["e1", "e2", "e3"]) == {"e1", "e2"}

    def test_partially_applied_record_is_skipped_with_warning(self, store):
        store.bulk_upsert([_record("u1", ["e1"], app_sessions=1)], MergeStrategy.ADD)

        with capture_logs() as logs:
            result = store.bulk_upsert([_record("u1", ["e1", "e2"], app_sessions=2)], MergeStrategy.ADD)

        assert result.upserted == 0
        assert result.skipped == 1
        assert store.fetch_existing(["u1"])["u1"].fields["app_sessions"] == 1
        warning = next(e for e in logs if e["event"] == "partially_applied_record_skipped")
        assert warning["applied"] == 1
        assert warning["dedup_keys"] == 2
        assert warning["unapplied_event_ids"] == ["e2"]

    def test_unapplied_ids_of_skipped_record_are_counted_on_refetch(self, store):
        store.bulk_upsert([_record("u1", ["e1"], app_sessions=1)], MergeStrategy.ADD)
        store.bulk_upsert([_record("u1", ["e1", "e2"], app_sessions=2)], MergeStrategy.ADD)

        assert store.applied_event_ids(["e1", "e2"]) == {"e1"}

        # a fetch drops e1 as applied and delivers only e2
        result = store.bulk_upsert([_record("u1", ["e2"], app_sessions=1)], MergeStrategy.ADD)

        assert result.upserted == 1
        assert store.fetch_existing(["u1"])["u1"].fields["app_sessions"] == 2

    def test_fetch_existing_omits_missing_keys(self, store):
        store.bulk_upsert([_record("u1", app_sessions=3)], MergeStrategy.REPLACE)

        existing = store.fetch_existing(["u1", "u2", "u1"])

        assert list(existing) == ["u1"]
        assert existing["u1"].updated_at is not None
        assert "distinct_id" not in existing["u1"].fields

    def test_key_lists_larger_than_one_statement(self, store):
        records = [_record(f"u{i}", [f"e{i}"], app_sessions=1) for i in range(1200)]
        store.bulk_upsert(records, MergeStrategy.ADD)

        assert len(store.fetch_existing(f"u{i}" for i in range(1200))) == 1200
        assert len(store.applied_event_ids(f"e{i}" for i in range(1200))) == 1200


@pytest.mark.parametrize(
    "value,expected",
    [
        (None, None),
        ("50k", "50k"),
        (True, "true"),
        (False, "false"),
        (12, "12"),
        (2.5, "2.5"),
        ({"b": [1], "a": "x"}, '{"a": "x", "b": [1]}'),
        (["x", "y"], '["x", "y"]'),
    ],
)
def test_column_text_rendering(value, expected):
    assert to_column_text(value) == expected


class TestAggregates:
    """Derived engagement summary."""

    def test_refresh_computes_totals_and_active_users(self, store):
        store.bulk_upsert(
            [
                _record("u1", total_subscriptions=2, app_sessions=5),
                _record("u2", total_subscriptions=0, app_sessions=1),
                _record("u3", app_sessions=4),
            ],
            MergeStrategy.REPLACE,
        )

        rows = store.refresh_aggregates()

        aggregates = store.aggregates()
        assert rows == 3
        assert aggregates["total_subscriptions"] == (2, 1)
        assert aggregates["app_sessions"] == (10, 3)
        assert aggregates["paywall_views"] == (0, 0)

    def test_refresh_replaces_previous_summary(self, store):
        store.bulk_upsert([_record("u1", app_sessions=1)], MergeStrategy.REPLACE)
        store.refresh_aggregates()
        store.bulk_upsert([_record("u1", app_sessions=9)], MergeStrategy.REPLACE)

        store.refresh_aggregates()

        assert store.aggregates()["app_sessions"] == (9, 1)


class TestPrune:
    """Forgetting old applied event ids."""

    @given(ages=st.lists(st.integers(min_value=0, max_value=30), min_size=1, max_size=20))
    @settings(max_examples=30, deadline=None)
    def test_prune_removes_only_older_ids(self, ages: list[int]):
        """Property: exactly the ids with event time before the cutoff are removed."""
        store = SqlTargetStore(make_database())
        now = utc(2024, 3, 1)
        records = [
            _record(f"u{i}", [f"e{i}"], now - timedelta(days=age), app_sessions=1)
            for i, age in enumerate(ages)
        ]
        store.bulk_upsert(records, MergeStrategy.ADD)

        removed = store.prune_applied_events(now - timedelta(days=10))

        old = {f"e{i}" for i, age in enumerate(ages) if age > 10}
        assert removed == len(old)
        remaining = store.applied_event_ids(f"e{i}" for i in range(len(ages)))
        assert remaining == {f"e{i}" for i in range(len(ages))} - old


class TestFlush:
    """Emptying the profile store."""

    def test_flush_empties_store_and_aggregates(self, store):
        records = [_record(f"user-{i}", [f"evt-{i}"], app_sessions=1) for i in range(18_000)]
        for start in range(0, len(records), 1000):
            store.bulk_upsert(records[start : start + 1000], MergeStrategy.ADD)
        store.refresh_aggregates()
        assert store.count() == 18_000

        deleted = store.flush()

        assert deleted["user_profiles"] == 18_000
        assert deleted["applied_events"] == 18_000
        assert store.count() == 0
        assert store.aggregates() == {}
        assert store.applied_event_ids(["evt-1"]) == set()

    def test_flush_is_repeatable(self, store):
        store.bulk_upsert([_record("u1", app_sessions=1)], MergeStrategy.ADD)
        store.flush()

        deleted = store.flush()

        assert set(deleted.values()) == {0}
        assert store.count() == 0

    def test_flush_leaves_watermarks_and_history(self, store, database):
        watermarks = SqlWatermarkStore(database)
        ledger = SqlRunLedger(database)
        watermarks.advance(SOURCE, utc(2024, 3, 1))
        run_id = ledger.create(SOURCE)
        ledger.complete(run_id, RunStats(merged=1))
        store.bulk_upsert([_record("u1", app_sessions=1)], MergeStrategy.ADD)

        store.flush()

        assert watermarks.get(SOURCE).cursor == utc(2024, 3, 1)
        assert ledger.get(run_id) is not None

    def test_store_accepts_writes_after_flush(self, store):
        store.bulk_upsert([_record("u1", ["e1"], app_sessions=1)], MergeStrategy.ADD)
        store.flush()

        result = store.bulk_upsert([_record("u1", ["e1"], app_sessions=1)], MergeStrategy.ADD)

        assert result.upserted == 1
        assert store.fetch_existing(["u1"])["u1"].fields["app_sessions"] == 1
