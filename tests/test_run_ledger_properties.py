"""Tests for the sync run ledger.

Every test in the ``TestLedger`` class runs against both the in-memory and
the SQL ledger through the parametrized ``ledger`` fixture.
"""

import time
from datetime import timedelta

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from profilesync.models.records import RunStats, RunStatus
from profilesync.sync.errors import RunStateError, SyncAlreadyRunningError
from profilesync.sync.run_ledger import InMemoryRunLedger, SqlRunLedger, staleness
from tests.fakes import utc

SOURCE = "mixpanel_users"


class TestLedger:
    """Lifecycle and mutual exclusion."""

    def test_create_returns_in_progress_run(self, ledger):
        run_id = ledger.create(SOURCE)

        run = ledger.get(run_id)
        assert run.status == RunStatus.IN_PROGRESS
        assert run.completed_at is None
        assert ledger.in_progress(SOURCE).run_id == run_id

    def test_second_create_is_rejected_while_running(self, ledger):
        first = ledger.create(SOURCE)

        with pytest.raises(SyncAlreadyRunningError) as excinfo:
            ledger.create(SOURCE)

        assert excinfo.value.run_id == first
        assert excinfo.value.source_id == SOURCE

    def test_other_sources_are_not_blocked(self, ledger):
        ledger.create(SOURCE)

        assert ledger.create("other_source")

    def test_new_run_allowed_after_finish(self, ledger):
        first = ledger.create(SOURCE)
        ledger.complete(first, RunStats(fetched=3, merged=3))

        second = ledger.create(SOURCE)

        assert second != first
        assert ledger.in_progress(SOURCE).run_id == second

    def test_finish_records_stats_and_time(self, ledger):
        run_id = ledger.create(SOURCE)

        run = ledger.complete(run_id, RunStats(fetched=10, merged=7, skipped=3))

        assert run.status == RunStatus.COMPLETED
        assert run.stats == RunStats(fetched=10, merged=7, skipped=3)
        assert run.completed_at is not None
        assert run.completed_at >= run.started_at
        assert ledger.get(run_id) == run

    @pytest.mark.parametrize("terminal", [RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.PARTIAL])
    def test_terminal_runs_are_immutable(self, ledger, terminal):
        run_id = ledger.create(SOURCE)
        ledger.finish(run_id, terminal, RunStats())

        with pytest.raises(RunStateError):
            ledger.finish(run_id, RunStatus.COMPLETED, RunStats(merged=1))

        assert ledger.get(run_id).status == terminal

    def test_finish_requires_terminal_status(self, ledger):
        run_id = ledger.create(SOURCE)

        with pytest.raises(RunStateError):
            ledger.finish(run_id, RunStatus.IN_PROGRESS, RunStats())

    def test_unknown_run_cannot_be_finished(self, ledger):
        with pytest.raises(RunStateError):
            ledger.complete("no-such-run", RunStats())

    def test_fail_records_error_type(self, ledger):
        run_id = ledger.create(SOURCE)

        run = ledger.fail(run_id, ValueError("bad credentials"))

        assert run.status == RunStatus.FAILED
        assert run.error_detail == {"error": "bad credentials", "type": "ValueError"}
        assert run.stats.errors == 1

    def test_mark_partial_keeps_stage_errors(self, ledger):
        run_id = ledger.create(SOURCE)

        run = ledger.mark_partial(run_id, RunStats(merged=5, errors=1), {"properties": "rate limited"})

        assert run.status == RunStatus.PARTIAL
        assert run.error_detail == {"stage_errors": {"properties": "rate limited"}}

    def test_latest_successful_ignores_failed_runs(self, ledger):
        good = ledger.create(SOURCE)
        ledger.complete(good, RunStats(merged=1))
        bad = ledger.create(SOURCE)
        ledger.fail(bad, "provider down")

        assert ledger.latest_successful(SOURCE).run_id == good
        assert ledger.latest_successful("other_source") is None

    def test_expire_stale_fails_old_runs(self, ledger):
        run_id = ledger.create(SOURCE)
        time.sleep(0.01)

        expired = ledger.expire_stale(SOURCE, older_than=timedelta(0))

        assert expired == [run_id]
        assert ledger.get(run_id).status == RunStatus.FAILED
        assert ledger.get(run_id).error_detail == {"error": "run expired"}
        assert ledger.in_progress(SOURCE) is None

    def test_expire_stale_keeps_fresh_runs(self, ledger):
        run_id = ledger.create(SOURCE)

        assert ledger.expire_stale(SOURCE, older_than=timedelta(hours=1)) == []
        assert ledger.get(run_id).status == RunStatus.IN_PROGRESS

    def test_recent_is_newest_first(self, ledger):
        ids = []
        for _ in range(3):
            run_id = ledger.create(SOURCE)
            ledger.complete(run_id, RunStats())
            ids.append(run_id)
            time.sleep(0.002)

        assert [r.run_id for r in ledger.recent(SOURCE, limit=2)] == ids[::-1][:2]


@pytest.mark.parametrize("kind", ["memory", "sql"])
def test_stale_after_unblocks_abandoned_run(kind, database):
    """A crashed run older than ``stale_after`` no longer blocks new runs."""
    if kind == "memory":
        ledger = InMemoryRunLedger(stale_after=timedelta(0))
    else:
        ledger = SqlRunLedger(database, stale_after=timedelta(0))
    abandoned = ledger.create(SOURCE)
    time.sleep(0.01)

    fresh = ledger.create(SOURCE)

    assert fresh != abandoned
    assert ledger.get(abandoned).status == RunStatus.FAILED


def test_two_sql_ledgers_share_the_guard(database):
    """The unique index keeps two ledger instances on one table exclusive."""
    first, second = SqlRunLedger(database), SqlRunLedger(database)
    running = first.create(SOURCE)

    with pytest.raises(SyncAlreadyRunningError) as excinfo:
        second.create(SOURCE)

    assert excinfo.value.run_id == running


@given(outcomes=st.lists(st.sampled_from([RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.PARTIAL]), max_size=8))
@settings(max_examples=30, deadline=None)
def test_at_most_one_run_in_progress(outcomes: list[RunStatus]):
    """Property: across any sequence of runs, exactly one is ever in progress at a time."""
    ledger = InMemoryRunLedger()
    for status in outcomes:
        run_id = ledger.create(SOURCE)
        with pytest.raises(SyncAlreadyRunningError):
            ledger.create(SOURCE)
        ledger.finish(run_id, status, RunStats())
        assert ledger.in_progress(SOURCE) is None

    runs = ledger.recent(SOURCE, limit=len(outcomes) + 1)
    assert len(runs) == len(outcomes)
    assert all(r.status.is_terminal for r in runs)


def test_staleness_measures_age_of_last_success():
    ledger = InMemoryRunLedger()
    run_id = ledger.create(SOURCE)
    run = ledger.complete(run_id, RunStats())

    age = staleness(run, now=run.completed_at + timedelta(hours=2))

    assert age == timedelta(hours=2)
    assert staleness(None, now=utc(2024, 1, 1)) is None
