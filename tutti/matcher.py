from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Iterable

from tutti.event_time import schedule_changed, start_key
from tutti.models import EPOCH, EventRecord, ExternalEvent, ensure_tz

TIER_EXACT = "exact"
TIER_IDENTITY = "identity"
TIER_FULL_FIELDS = "full_fields"

IdentityKey = tuple[str, str, str]


@dataclass
class MatchResult:
    tier: str
    record: EventRecord
    stale_ref: bool = False


def _loose_text(value: str | None) -> str:
    text = unicodedata.normalize("NFKC", str(value or ""))
    return re.sub(r"\s+", " ", text).strip().casefold()


def identity_key(title: str, start: datetime | None, all_day: bool, location: str, tz: tzinfo) -> IdentityKey:
    return (str(title or "").strip(), start_key(start, all_day, tz), str(location or "").strip())


def _age(record: EventRecord) -> tuple[datetime, str]:
    return (ensure_tz(record.created_at) if record.created_at else EPOCH, record.id)


class EventMatcher:
    """Resolves an external event to a ledger record by reference, identity key, then full fields.

    ``live_external_ids`` is the set of ids the calendar is currently listing; a
    linked record whose reference is not in it is reported with ``stale_ref``.
    Archived records still own their reference, so an exact match may return
    one; only active records take part in the identity and full-field tiers.
    """

    def __init__(
        self,
        records: Iterable[EventRecord],
        tz: tzinfo,
        live_external_ids: Iterable[str] = (),
    ) -> None:
        self.tz = tz
        self.live_external_ids = set(live_external_ids)
        self._records: dict[str, EventRecord] = {}
        self._by_ref: dict[str, str] = {}
        self._by_identity: dict[IdentityKey, set[str]] = {}
        for record in records:
            self.replace(record)

    def _record_key(self, record: EventRecord) -> IdentityKey:
        return identity_key(record.title, record.start, record.is_all_day, record.location, self.tz)

    def _unindex(self, record_id: str) -> None:
        previous = self._records.pop(record_id, None)
        if previous is None:
            return
        if previous.external_ref and self._by_ref.get(previous.external_ref) == record_id:
            del self._by_ref[previous.external_ref]
        bucket = self._by_identity.get(self._record_key(previous))
        if bucket is not None:
            bucket.discard(record_id)

    def replace(self, record: EventRecord) -> None:
        self._unindex(record.id)
        if record.status == "deleted":
            return
        self._records[record.id] = record
        if record.external_ref:
            current = self._records.get(self._by_ref.get(record.external_ref, ""))
            # Oldest record keeps the reference slot when two records share one.
            if current is None or _age(record) < _age(current):
                self._by_ref[record.external_ref] = record.id
        if record.is_active:
            self._by_identity.setdefault(self._record_key(record), set()).add(record.id)

    def remove(self, record_id: str) -> None:
        self._unindex(record_id)

    def records(self) -> list[EventRecord]:
        return sorted((record for record in self._records.values() if record.is_active), key=_age)

    def by_external_ref(self, external_ref: str) -> EventRecord | None:
        return self._records.get(self._by_ref.get(external_ref, ""))

    def match(self, external: ExternalEvent) -> MatchResult | None:
        exact = self.by_external_ref(external.id)
        if exact is not None:
            return MatchResult(tier=TIER_EXACT, record=exact)

        key = identity_key(external.title, external.start, external.all_day, external.location, self.tz)
        candidates = sorted(
            (self._records[record_id] for record_id in self._by_identity.get(key, ())),
            key=_age,
        )
        for candidate in candidates:
            if not candidate.external_ref:
                return MatchResult(tier=TIER_IDENTITY, record=candidate)
        if candidates:
            linked = candidates[0]
            return MatchResult(
                tier=TIER_IDENTITY,
                record=linked,
                stale_ref=linked.external_ref not in self.live_external_ids,
            )

        title = _loose_text(external.title)
        location = _loose_text(external.location)
        for candidate in self.records():
            if candidate.external_ref:
                continue
            if _loose_text(candidate.title) != title or _loose_text(candidate.location) != location:
                continue
            if schedule_changed(
                current_start=candidate.start,
                current_end=candidate.end,
                current_all_day=candidate.is_all_day,
                new_start=external.start,
                new_end=external.end,
                new_all_day=external.all_day,
                tz=self.tz,
            ):
                continue
            return MatchResult(tier=TIER_FULL_FIELDS, record=candidate)
        return None
