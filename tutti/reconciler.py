from __future__ import annotations

from dataclasses import dataclass, field
from datetime import tzinfo
from typing import Any

from tutti.description import strip_generated_summary
from tutti.event_time import normalize_all_day, schedule_changed
from tutti.models import EPOCH, EventRecord, ExternalEvent, ensure_tz


REASON_EXTERNAL_NEWER = "external_newer"
REASON_WATERMARK_INITIALIZED = "watermark_initialized"
REASON_LEDGER_AUTHORITATIVE = "ledger_authoritative"
APPLY_FIELD_ORDER = ("title", "start", "end", "is_all_day", "location", "description")


@dataclass
class ReconcileOutcome:
    applied: bool
    reason: str
    updates: dict[str, Any] = field(default_factory=dict)
    changed_fields: list[str] = field(default_factory=list)


def _external_values(external: ExternalEvent, tz: tzinfo) -> dict[str, Any]:
    start, end = external.start, external.end
    if external.all_day and start is not None and end is not None:
        start, end = normalize_all_day(start, end, tz)
    return {
        "title": external.title,
        "start": start,
        "end": end,
        "is_all_day": external.all_day,
        "location": external.location,
        "description": strip_generated_summary(external.description),
    }


def resolve_conflict(record: EventRecord, external: ExternalEvent, tz: tzinfo) -> ReconcileOutcome:
    """Last-write-wins between the record's watermark and the calendar's modification time.

    Ties keep the ledger. The returned ``updates`` is ready for a single ledger write.
    """
    watermark = ensure_tz(record.last_synced_at) if record.last_synced_at else EPOCH
    last_modified = ensure_tz(external.last_modified)

    if last_modified > watermark:
        incoming = _external_values(external, tz)
        changed: list[str] = []
        if schedule_changed(
            current_start=record.start,
            current_end=record.end,
            current_all_day=record.is_all_day,
            new_start=incoming["start"],
            new_end=incoming["end"],
            new_all_day=incoming["is_all_day"],
            tz=tz,
        ):
            changed.extend(key for key in ("start", "end", "is_all_day") if getattr(record, key) != incoming[key])
        for key in ("title", "location", "description"):
            if (getattr(record, key) or "") != (incoming[key] or ""):
                changed.append(key)
        changed = [key for key in APPLY_FIELD_ORDER if key in changed]
        updates = {key: incoming[key] for key in changed}
        if {"start", "end", "is_all_day"} & set(changed):
            updates.update({key: incoming[key] for key in ("start", "end", "is_all_day")})
        updates["last_synced_at"] = last_modified
        return ReconcileOutcome(
            applied=True,
            reason=REASON_EXTERNAL_NEWER,
            updates=updates,
            changed_fields=changed,
        )

    if record.last_synced_at is None:
        return ReconcileOutcome(
            applied=False,
            reason=REASON_WATERMARK_INITIALIZED,
            updates={"last_synced_at": last_modified},
        )

    return ReconcileOutcome(applied=False, reason=REASON_LEDGER_AUTHORITATIVE)
