"""Change detection for skipping profile writes that would be no-ops."""

from typing import Any, Callable, Iterable, Sequence

import structlog

from profilesync.models.records import NormalizedRecord, TargetRecord
from profilesync.storage.target_store import to_column_text
from profilesync.sync.models import ChangeSet

log = structlog.stdlib.get_logger()

ExistingLookup = Callable[[Iterable[str]], dict[str, TargetRecord]]


def normalize_value(value: Any) -> Any:
    """
    Map a field value to a comparable form.

    None, empty and whitespace-only strings are all "no value". Numbers and
    numeric strings compare numerically, so ``5``, ``5.0`` and ``"5"`` are
    equal. Everything else compares as the text the store would hold.
    """
    text = to_column_text(value)
    if text is None:
        return None
    text = text.strip()
    if text == "":
        return None
    try:
        return float(text)
    except ValueError:
        return text


class ChangeDetector:
    """Splits a property batch into changed and unchanged rows."""

    def filter_changed(self, batch: Sequence[NormalizedRecord], existing_lookup: ExistingLookup) -> ChangeSet:
        """
        Keep only rows that are new or differ from the stored row.

        An incoming empty value cannot change a stored field (the merge keeps
        the stored value), so only non-empty incoming fields are compared. If
        the existing rows cannot be read the whole batch counts as changed.

        Args:
            batch: Incoming attribute records
            existing_lookup: Returns stored rows for a list of keys

        Returns:
            ChangeSet where ``len(changed) + len(unchanged) == len(batch)``
        """
        if not batch:
            return ChangeSet()

        try:
            existing = existing_lookup([record.distinct_id for record in batch])
        except Exception as e:
            log.warning("existing_lookup_failed_fail_open", batch_size=len(batch), error=str(e))
            return ChangeSet(changed=list(batch))

        changed: list[NormalizedRecord] = []
        unchanged: list[str] = []
        for record in batch:
            stored = existing.get(record.distinct_id)
            if stored is None or self.is_changed(record, stored):
                changed.append(record)
            else:
                unchanged.append(record.distinct_id)

        change_set = ChangeSet(changed=changed, unchanged=unchanged)
        log.info(
            "change_detection_completed",
            batch_size=len(batch),
            changed=len(changed),
            skipped=len(unchanged),
            skip_ratio=round(change_set.skip_ratio, 4),
        )
        return change_set

    def is_changed(self, record: NormalizedRecord, stored: TargetRecord) -> bool:
        """Check if any non-empty incoming field differs from the stored row."""
        incoming = {**record.counters, **record.attributes}
        for field, value in incoming.items():
            new = normalize_value(value)
            if new is None:
                continue
            if new != normalize_value(stored.fields.get(field)):
                log.debug("field_changed", distinct_id=record.distinct_id, field=field)
                return True
        return False
