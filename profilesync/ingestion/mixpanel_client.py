"""Mixpanel client for the raw event export and engage APIs."""

import hashlib
import json
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

import requests
import structlog
from requests.exceptions import RequestException

from profilesync.ingestion.provider import ProviderPage, QueryKind, TimeRange
from profilesync.models.config import MixpanelConfig
from profilesync.models.records import NormalizedEvent
from profilesync.sync.errors import (
    SchemaMismatchError,
    classify_http_status,
    classify_request_exception,
)

log = structlog.stdlib.get_logger()

DISTINCT_ID_KEYS = ("distinct_id", "$distinct_id", "$user_id", "$identified_id")
DEVICE_ID_PREFIX = "$device:"


class MixpanelClient:
    """Thin wrapper around the Mixpanel HTTP APIs.

    One ``query`` call issues exactly one HTTP request. Retrying is left to the
    caller so that it can be bounded by the caller's time budget.
    """

    def __init__(
        self,
        config: MixpanelConfig,
        session: requests.Session | None = None,
        page_size: int = 1000,
    ):
        """
        Initialize Mixpanel client.

        Args:
            config: Provider configuration with service account credentials
            session: Optional pre-built session (tests inject a mock)
            page_size: Profiles requested per engage page
        """
        self._config = config
        self._session = session or requests.Session()
        self._session.auth = (config.service_username, config.service_secret)
        self._export_url = f"{str(config.export_base_url).rstrip('/')}/export"
        self._engage_url = f"{str(config.api_base_url).rstrip('/')}/engage"
        self._page_size = page_size
        log.info(
            "mixpanel_client_initialized",
            project_id=config.project_id,
            tracked_events=len(config.tracked_events),
        )

    def query(
        self,
        kind: QueryKind,
        time_range: TimeRange | None,
        pagination_token: str | None = None,
    ) -> ProviderPage:
        """
        Fetch one page of events or profiles.

        Args:
            kind: ``events`` (raw export, one UTC day per page) or ``profiles`` (engage)
            time_range: Range to export; required for events, optional
                ``$last_seen`` filter for profiles
            pagination_token: Token returned by the previous page

        Returns:
            ProviderPage with raw records and the next token

        Raises:
            RateLimitedError: Provider answered 429
            AuthenticationError: Credentials rejected
            TransientSyncError: Timeouts, connection failures and 5xx responses
            SchemaMismatchError: Unexpected response shape or other 4xx
        """
        if kind == "events":
            if time_range is None:
                raise ValueError("events query requires a time range")
            return self._query_events(time_range, pagination_token)
        if kind == "profiles":
            return self._query_profiles(time_range, pagination_token)
        raise ValueError(f"unknown query kind: {kind}")

    def _query_events(self, time_range: TimeRange, token: str | None) -> ProviderPage:
        day = date.fromisoformat(token) if token else time_range.start.date()
        params = {
            "project_id": self._config.project_id,
            "from_date": day.isoformat(),
            "to_date": day.isoformat(),
            "event": json.dumps(list(self._config.tracked_events)),
        }

        log.debug("fetching_export_day", day=day.isoformat())
        response = self._request("GET", self._export_url, params=params, headers={"Accept": "text/plain"})

        records: list[dict[str, Any]] = []
        skipped_lines = 0
        for line in response.text.splitlines():
            if not line.strip():
                continue
            try:
                raw = json.loads(line)
            except json.JSONDecodeError:
                skipped_lines += 1
                continue
            timestamp = _event_time(raw)
            if timestamp is None or not time_range.contains(timestamp):
                continue
            records.append(raw)

        if skipped_lines:
            log.warning("export_lines_skipped", day=day.isoformat(), skipped_lines=skipped_lines)

        next_day = day + timedelta(days=1)
        next_start = datetime.combine(next_day, time.min, tzinfo=timezone.utc)
        next_token = next_day.isoformat() if next_start < time_range.end else None

        log.info("export_day_fetched", day=day.isoformat(), events=len(records))
        return ProviderPage(records=records, next_token=next_token)

    def _query_profiles(self, time_range: TimeRange | None, token: str | None) -> ProviderPage:
        data: dict[str, Any] = {"page_size": self._page_size}
        if token:
            session_id, _, page = token.partition(":")
            data["session_id"] = session_id
            data["page"] = int(page)
        if time_range is not None:
            since = time_range.start.strftime("%Y-%m-%dT%H:%M:%S")
            data["where"] = f'properties["$last_seen"] >= "{since}"'

        response = self._request(
            "POST", self._engage_url, params={"project_id": self._config.project_id}, data=data
        )
        try:
            body = response.json()
            results = body["results"]
        except (ValueError, KeyError) as e:
            raise SchemaMismatchError(f"unexpected engage response: {e}") from e

        records = [_flatten_profile(item) for item in results]
        page = int(body.get("page", data.get("page", 0)))
        session_id = body.get("session_id")
        page_size = int(body.get("page_size", self._page_size))
        next_token = None
        if session_id and len(results) >= page_size:
            next_token = f"{session_id}:{page + 1}"

        log.info("engage_page_fetched", page=page, profiles=len(records))
        return ProviderPage(records=records, next_token=next_token)

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            response = self._session.request(
                method, url, timeout=self._config.request_timeout_seconds, **kwargs
            )
        except RequestException as e:
            raise classify_request_exception(e) from e

        retry_after = response.headers.get("Retry-After")
        error = classify_http_status(
            response.status_code,
            body=response.text,
            retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
        )
        if error is not None:
            log.warning("mixpanel_request_failed", url=url, status_code=response.status_code)
            raise error
        return response


def _event_time(raw: dict[str, Any]) -> datetime | None:
    value = raw.get("properties", {}).get("time")
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _flatten_profile(item: dict[str, Any]) -> dict[str, Any]:
    """Engage results nest properties under ``$properties``."""
    record = dict(item.get("$properties", {}))
    record["distinct_id"] = item.get("$distinct_id")
    return record


def resolve_distinct_id(properties: dict[str, Any]) -> str | None:
    """Return the first user identifier, ignoring device-only ids."""
    for key in DISTINCT_ID_KEYS:
        value = properties.get(key)
        if value in (None, ""):
            continue
        value = str(value)
        if value.startswith(DEVICE_ID_PREFIX):
            continue
        return value
    return None


def normalize_event(raw: dict[str, Any]) -> NormalizedEvent | None:
    """
    Reduce a raw export line to a NormalizedEvent.

    Args:
        raw: Decoded export line (``{"event": ..., "properties": {...}}``)

    Returns:
        NormalizedEvent, or None when the event has no user or no time
    """
    properties = raw.get("properties") or {}
    name = raw.get("event")
    distinct_id = resolve_distinct_id(properties)
    timestamp = _event_time(raw)
    if not name or distinct_id is None or timestamp is None:
        return None

    event_id = properties.get("$insert_id")
    if not event_id:
        fingerprint = f"{name}|{distinct_id}|{properties.get('time')}"
        event_id = "h:" + hashlib.sha1(fingerprint.encode("utf-8")).hexdigest()

    return NormalizedEvent(
        event_id=str(event_id),
        event_name=name,
        distinct_id=distinct_id,
        timestamp=timestamp,
        properties=properties,
    )
