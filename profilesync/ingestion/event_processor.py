"""Aggregation of normalized events into per-user delta records."""

from collections import OrderedDict
from typing import Any, Iterable

import structlog

from profilesync.models.records import NormalizedEvent, NormalizedRecord

log = structlog.stdlib.get_logger()


def is_empty(value: Any) -> bool:
    """None and blank strings count as "no value"."""
    return value is None or (isinstance(value, str) and value.strip() == "")


class EventAggregator:
    """Builds one NormalizedRecord per user from a stream of events.

    Each tracked event increments its counter column by one. Profile
    properties carried on events are kept as attributes, the most recent
    non-empty value winning. Untracked events still contribute attributes
    but are not recorded as dedup keys since they changed no counter.
    """

    def __init__(self, tracked_events: dict[str, str], profile_properties: dict[str, str]):
        """
        Initialize aggregator.

        Args:
            tracked_events: Event name -> counter column
            profile_properties: Provider property name -> attribute column
        """
        self._tracked_events = tracked_events
        self._profile_properties = profile_properties

    def aggregate(
        self, events: Iterable[NormalizedEvent], complete_counters: bool = False
    ) -> list[NormalizedRecord]:
        """
        Aggregate events into per-user records, ordered by first appearance.

        Args:
            events: Normalized events, typically already deduplicated
            complete_counters: Emit every counter column, zero when unseen. Full-window
                totals need this so REPLACE overwrites counters the window never hit.

        Returns:
            One NormalizedRecord per distinct_id
        """
        users: "OrderedDict[str, dict[str, Any]]" = OrderedDict()
        event_count = 0

        for event in events:
            event_count += 1
            user = users.setdefault(
                event.distinct_id,
                {
                    "counters": {},
                    "attributes": {},
                    "attribute_times": {},
                    "dedup_keys": [],
                    "observed_at": None,
                },
            )

            column = self._tracked_events.get(event.event_name)
            if column is not None:
                user["counters"][column] = user["counters"].get(column, 0) + 1
                user["dedup_keys"].append(event.event_id)

            for prop, attr_column in self._profile_properties.items():
                value = event.properties.get(prop)
                if is_empty(value):
                    continue
                seen_at = user["attribute_times"].get(attr_column)
                if seen_at is None or event.timestamp >= seen_at:
                    user["attributes"][attr_column] = value
                    user["attribute_times"][attr_column] = event.timestamp

            if user["observed_at"] is None or event.timestamp > user["observed_at"]:
                user["observed_at"] = event.timestamp

        zeros = dict.fromkeys(self._tracked_events.values(), 0) if complete_counters else {}
        records = [
            NormalizedRecord(
                distinct_id=distinct_id,
                counters={**zeros, **data["counters"]},
                attributes=data["attributes"],
                dedup_keys=data["dedup_keys"],
                observed_at=data["observed_at"],
            )
            for distinct_id, data in users.items()
        ]

        log.debug("events_aggregated", events=event_count, users=len(records))
        return records

    def profile_to_record(self, profile: dict[str, Any]) -> NormalizedRecord | None:
        """
        Convert a flattened engage profile into an attribute-only record.

        Args:
            profile: Profile properties including ``distinct_id``

        Returns:
            NormalizedRecord, or None when the profile has no distinct_id
        """
        distinct_id = profile.get("distinct_id")
        if is_empty(distinct_id):
            return None

        attributes = {
            column: profile.get(prop) for prop, column in self._profile_properties.items()
        }
        return NormalizedRecord(distinct_id=str(distinct_id), attributes=attributes)
