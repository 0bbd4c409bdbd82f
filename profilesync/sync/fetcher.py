"""Incremental fetch of provider data since the last watermark."""

import time
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator

import structlog

from profilesync.ingestion.mixpanel_client import normalize_event
from profilesync.ingestion.provider import ProviderClient, ProviderPage, QueryKind, TimeRange
from profilesync.models.records import NormalizedEvent, utcnow
from profilesync.storage.target_store import TargetStore
from profilesync.sync.errors import TransientSyncError
from profilesync.sync.models import FetchResult
from profilesync.utils.retry import RetryPolicy, call_with_retry

log = structlog.stdlib.get_logger()


class Deadline:
    """Execution budget measured on a monotonic clock."""

    def __init__(self, budget_seconds: float, monotonic: Callable[[], float] = time.monotonic):
        self._monotonic = monotonic
        self._expires_at = monotonic() + budget_seconds

    @property
    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._monotonic())

    def expired(self) -> bool:
        return self.remaining <= 0.0


class IncrementalFetcher:
    """Pulls provider pages for a window derived from the watermark.

    Without a cursor the window is the fixed cold-start range. With one it
    starts ``overlap`` before the cursor so late events are picked up again;
    events already applied are dropped here, before any delta is built, so
    the overlap never double counts.
    """

    def __init__(
        self,
        provider: ProviderClient,
        target_store: TargetStore | None = None,
        retry_policy: RetryPolicy | None = None,
        cold_start_days: int = 45,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize fetcher.

        Args:
            provider: Upstream provider client
            target_store: Store consulted for already-applied event ids
            retry_policy: Backoff for retryable provider errors
            cold_start_days: Window fetched when no cursor exists
            clock: Wall clock returning aware UTC datetimes
            monotonic: Clock for the time budget
            sleep: Sleep function used between retries
        """
        self._provider = provider
        self._target_store = target_store
        self._retry_policy = retry_policy or RetryPolicy()
        self._cold_start = timedelta(days=cold_start_days)
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep

    def window_for(self, since_cursor: datetime | None, overlap: timedelta) -> TimeRange:
        """Time range an incremental fetch covers."""
        now = self._clock()
        if since_cursor is None:
            return TimeRange(start=now - self._cold_start, end=now)
        start = min(since_cursor - overlap, now)
        return TimeRange(start=start, end=now)

    def deadline(self, time_budget: float) -> Deadline:
        return Deadline(time_budget, self._monotonic)

    def fetch(
        self,
        source_id: str,
        since_cursor: datetime | None,
        overlap: timedelta,
        time_budget: float,
        pagination_token: str | None = None,
        time_range: TimeRange | None = None,
        kind: QueryKind = "events",
        drop_applied: bool | None = None,
    ) -> FetchResult:
        """
        Fetch every page of a window, or as many as the budget allows.

        Args:
            source_id: Source identifier, used for logging
            since_cursor: Last synced cursor; None selects the cold-start window
            overlap: Look-back applied to ``since_cursor``
            time_budget: Seconds available for fetching
            pagination_token: Resume token from an earlier, unfinished fetch
            time_range: Explicit window, overriding the cursor-derived one
            kind: ``events`` or ``profiles``
            drop_applied: Drop events whose ids were already applied. Defaults
                to True for incremental fetches and False for cold starts,
                whose full-window totals must count every event.

        Returns:
            FetchResult; ``exhausted`` is False when the budget ran out, with
            ``pagination_token`` naming the first page not fetched

        Raises:
            TransientSyncError: If a page still fails after retries
            FatalSyncError: On authentication or schema errors
        """
        window = time_range or self.window_for(since_cursor, overlap)
        if drop_applied is None:
            drop_applied = since_cursor is not None
        deadline = self.deadline(time_budget)

        log.info(
            "fetch_started",
            source_id=source_id,
            kind=kind,
            cold_start=since_cursor is None and time_range is None,
            window_start=window.start.isoformat(),
            window_end=window.end.isoformat(),
            resume_token=pagination_token,
        )

        raw: list[dict[str, Any]] = []
        pages = 0
        rate_limited = False
        next_token = pagination_token
        exhausted = False

        for _, page in self.iter_pages(kind, window, pagination_token, deadline):
            pages += 1
            raw.extend(page.records)
            rate_limited = rate_limited or page.rate_limited
            next_token = page.next_token
            if next_token is None:
                exhausted = True

        if not exhausted:
            log.warning(
                "fetch_budget_exhausted",
                source_id=source_id,
                kind=kind,
                pages=pages,
                pagination_token=next_token,
            )

        if kind != "events":
            return FetchResult(
                records=raw,
                exhausted=exhausted,
                pagination_token=None if exhausted else next_token,
                pages=pages,
                rate_limited=rate_limited,
            )

        events, next_cursor = self.normalize(raw)
        unique = self.dedupe(events, drop_applied=drop_applied)

        log.info(
            "fetch_completed",
            source_id=source_id,
            pages=pages,
            records=len(unique),
            duplicates_dropped=len(events) - len(unique),
            exhausted=exhausted,
            next_cursor=next_cursor.isoformat() if next_cursor else None,
        )
        return FetchResult(
            records=unique,
            next_cursor=next_cursor,
            exhausted=exhausted,
            pagination_token=None if exhausted else next_token,
            pages=pages,
            duplicates_dropped=len(events) - len(unique),
            rate_limited=rate_limited,
        )

    def iter_pages(
        self,
        kind: QueryKind,
        time_range: TimeRange | None,
        pagination_token: str | None,
        deadline: Deadline,
    ) -> Iterator[tuple[str | None, ProviderPage]]:
        """
        Yield ``(request_token, page)`` until the last page or the deadline.

        The deadline is checked before each request, never during one.
        """
        token = pagination_token
        while True:
            if deadline.expired():
                return
            request_token = token
            page = call_with_retry(
                self._retry_policy,
                lambda: self._provider.query(kind, time_range, request_token),
                retry_on=(TransientSyncError,),
                operation=f"provider_query_{kind}",
                sleep=self._sleep,
            )
            if page.rate_limited:
                log.warning("provider_page_rate_limited", kind=kind, token=request_token)
            yield request_token, page
            if page.next_token is None:
                return
            token = page.next_token

    def normalize(self, raw: list[dict[str, Any]]) -> tuple[list[NormalizedEvent], datetime | None]:
        """Normalize raw export lines; returns events and their latest timestamp."""
        events: list[NormalizedEvent] = []
        invalid = 0
        for record in raw:
            event = normalize_event(record)
            if event is None:
                invalid += 1
                continue
            events.append(event)
        if invalid:
            log.warning("events_without_user_or_time_dropped", dropped=invalid)
        next_cursor = max((e.timestamp for e in events), default=None)
        return events, next_cursor

    def dedupe(self, events: list[NormalizedEvent], drop_applied: bool = True) -> list[NormalizedEvent]:
        """Drop repeated event ids, and optionally ids the store already applied."""
        seen: set[str] = set()
        unique: list[NormalizedEvent] = []
        for event in events:
            if event.event_id in seen:
                continue
            seen.add(event.event_id)
            unique.append(event)

        if drop_applied and self._target_store is not None and unique:
            applied = self._target_store.applied_event_ids([e.event_id for e in unique])
            if applied:
                unique = [e for e in unique if e.event_id not in applied]
                log.info("already_applied_events_dropped", dropped=len(applied))
        return unique
