"""Property-based tests for the incremental fetcher.

**Property: complete pagination** - every event in the window is fetched once
**Property: budget-bounded fetch** - running out of budget yields a resume token
"""

import math
from datetime import timedelta

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from profilesync.ingestion.provider import TimeRange
from profilesync.sync.errors import AuthenticationError, ProviderUnavailableError, RateLimitedError
from profilesync.sync.fetcher import Deadline, IncrementalFetcher
from tests.fakes import NO_RETRY_DELAY, FakeClock, FakeMonotonic, FakeProvider, raw_event, utc

NOW = utc(2024, 3, 1, 12, 0, 0)
OVERLAP = timedelta(hours=2)
SOURCE = "mixpanel_users"


class AppliedIds:
    """Stands in for the target store's applied-event lookup."""

    def __init__(self, applied: set[str]):
        self.applied = applied

    def applied_event_ids(self, event_ids):
        return {e for e in event_ids if e in self.applied}


def _events(count: int, start=NOW - timedelta(days=1), step=timedelta(minutes=1)) -> list[dict]:
    return [
        raw_event("SubscriptionCreated", f"user-{i % 7}", start + i * step, insert_id=f"evt-{i}")
        for i in range(count)
    ]


def _fetcher(provider, applied: set[str] | None = None, monotonic=None, sleep=None) -> IncrementalFetcher:
    return IncrementalFetcher(
        provider,
        target_store=AppliedIds(applied or set()),
        retry_policy=NO_RETRY_DELAY,
        clock=FakeClock(NOW),
        monotonic=monotonic or FakeMonotonic(),
        sleep=sleep or (lambda seconds: None),
    )


class TestWindows:
    """Window selection from the cursor."""

    def test_cold_start_fetches_45_days(self):
        provider = FakeProvider()

        result = _fetcher(provider).fetch(SOURCE, since_cursor=None, overlap=OVERLAP, time_budget=60)

        ((window, token),) = provider.event_calls()
        assert window == TimeRange(start=NOW - timedelta(days=45), end=NOW)
        assert token is None
        assert result.exhausted
        assert result.next_cursor is None

    def test_incremental_window_starts_overlap_before_cursor(self):
        provider = FakeProvider()
        cursor = NOW - timedelta(hours=1)

        _fetcher(provider).fetch(SOURCE, since_cursor=cursor, overlap=OVERLAP, time_budget=60)

        ((window, _),) = provider.event_calls()
        assert window.start == cursor - OVERLAP
        assert window.end == NOW

    def test_window_never_starts_in_the_future(self):
        fetcher = _fetcher(FakeProvider())

        window = fetcher.window_for(NOW + timedelta(days=1), OVERLAP)

        assert window.start == window.end == NOW

    def test_late_event_inside_overlap_is_fetched(self):
        cursor = NOW - timedelta(hours=1)
        late = raw_event("$ae_session", "u1", cursor - timedelta(minutes=30), insert_id="late")
        provider = FakeProvider(events=[late])

        result = _fetcher(provider).fetch(SOURCE, since_cursor=cursor, overlap=OVERLAP, time_budget=60)

        assert [e.event_id for e in result.records] == ["late"]


class TestPagination:
    """Following continuation tokens."""

    @given(
        count=st.integers(min_value=0, max_value=120),
        page_size=st.integers(min_value=1, max_value=40),
    )
    @settings(max_examples=50, deadline=None)
    def test_all_pages_fetched_once(self, count: int, page_size: int):
        """Property: with enough budget every event is returned exactly once."""
        events = _events(count)
        provider = FakeProvider(events=events, page_size=page_size)

        result = _fetcher(provider).fetch(SOURCE, since_cursor=None, overlap=OVERLAP, time_budget=60)

        assert [e.event_id for e in result.records] == [f"evt-{i}" for i in range(count)]
        assert result.pages == max(1, math.ceil(count / page_size))
        assert result.exhausted
        assert result.pagination_token is None
        if count:
            assert result.next_cursor == NOW - timedelta(days=1) + (count - 1) * timedelta(minutes=1)

    def test_budget_exhaustion_returns_resume_token(self):
        monotonic = FakeMonotonic()
        provider = FakeProvider(events=_events(1000), page_size=100, monotonic=monotonic, request_cost=10)

        result = _fetcher(provider, monotonic=monotonic).fetch(
            SOURCE, since_cursor=None, overlap=OVERLAP, time_budget=25
        )

        # requests start at t=0, 10 and 20; the deadline is checked before each one
        assert result.pages == 3
        assert not result.exhausted
        assert result.pagination_token == "300"
        assert len(result.records) == 300

    def test_resume_token_skips_fetched_pages(self):
        provider = FakeProvider(events=_events(250), page_size=100)

        result = _fetcher(provider).fetch(
            SOURCE, since_cursor=None, overlap=OVERLAP, time_budget=60, pagination_token="200"
        )

        assert provider.event_calls()[0][1] == "200"
        assert [e.event_id for e in result.records] == [f"evt-{i}" for i in range(200, 250)]

    def test_rate_limited_page_is_flagged(self):
        provider = FakeProvider(events=_events(5))
        provider.rate_limited_tokens = {None}

        result = _fetcher(provider).fetch(SOURCE, since_cursor=None, overlap=OVERLAP, time_budget=60)

        assert result.rate_limited
        assert len(result.records) == 5

    def test_profiles_are_returned_raw(self):
        provider = FakeProvider(profiles=[{"distinct_id": "u1", "income": "50k"}])

        result = _fetcher(provider).fetch(
            SOURCE,
            since_cursor=None,
            overlap=OVERLAP,
            time_budget=60,
            time_range=TimeRange(start=NOW - timedelta(days=1), end=NOW),
            kind="profiles",
        )

        assert result.records == [{"distinct_id": "u1", "income": "50k"}]
        assert result.next_cursor is None


class TestRetries:
    """Transient errors retry, fatal errors propagate."""

    def test_transient_error_is_retried(self):
        sleeps = []
        provider = FakeProvider(events=_events(3))
        provider.errors = [ProviderUnavailableError("HTTP 503"), RateLimitedError("HTTP 429", retry_after=7)]

        result = _fetcher(provider, sleep=sleeps.append).fetch(
            SOURCE, since_cursor=None, overlap=OVERLAP, time_budget=60
        )

        assert len(result.records) == 3
        assert len(provider.calls) == 3
        assert sleeps == [0.0, 7.0]

    def test_transient_error_after_retries_propagates(self):
        provider = FakeProvider(events=_events(3))
        provider.errors = [ProviderUnavailableError("HTTP 503")] * NO_RETRY_DELAY.max_attempts

        with pytest.raises(ProviderUnavailableError):
            _fetcher(provider).fetch(SOURCE, since_cursor=None, overlap=OVERLAP, time_budget=60)

        assert len(provider.calls) == NO_RETRY_DELAY.max_attempts

    def test_fatal_error_is_not_retried(self):
        provider = FakeProvider(events=_events(3))
        provider.errors = [AuthenticationError("HTTP 401")]

        with pytest.raises(AuthenticationError):
            _fetcher(provider).fetch(SOURCE, since_cursor=None, overlap=OVERLAP, time_budget=60)

        assert len(provider.calls) == 1


class TestDeduplication:
    """Repeated and already-applied event ids."""

    def test_repeated_ids_are_dropped(self):
        event = raw_event("$ae_session", "u1", NOW - timedelta(hours=3), insert_id="dup")
        provider = FakeProvider(events=[event, event, dict(event)], page_size=1)

        result = _fetcher(provider).fetch(SOURCE, since_cursor=None, overlap=OVERLAP, time_budget=60)

        assert [e.event_id for e in result.records] == ["dup"]
        assert result.duplicates_dropped == 2

    def test_incremental_fetch_drops_applied_ids(self):
        provider = FakeProvider(events=_events(4, start=NOW - timedelta(hours=1)))

        result = _fetcher(provider, applied={"evt-0", "evt-2"}).fetch(
            SOURCE, since_cursor=NOW - timedelta(minutes=30), overlap=OVERLAP, time_budget=60
        )

        assert [e.event_id for e in result.records] == ["evt-1", "evt-3"]
        assert result.duplicates_dropped == 2

    def test_cold_start_keeps_applied_ids(self):
        provider = FakeProvider(events=_events(4))

        result = _fetcher(provider, applied={"evt-0", "evt-2"}).fetch(
            SOURCE, since_cursor=None, overlap=OVERLAP, time_budget=60
        )

        assert len(result.records) == 4


def test_deadline_counts_down_on_monotonic_clock():
    monotonic = FakeMonotonic()
    deadline = Deadline(30, monotonic)

    monotonic.advance(20)
    assert deadline.remaining == 10
    assert not deadline.expired()

    monotonic.advance(15)
    assert deadline.remaining == 0
    assert deadline.expired()
