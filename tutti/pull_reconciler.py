from __future__ import annotations

import logging
from datetime import datetime, tzinfo
from typing import Any

from tutti.caldav_client import CalDAVService
from tutti.description import strip_generated_summary
from tutti.event_time import normalize_all_day
from tutti.ledger import Ledger
from tutti.matcher import TIER_EXACT, EventMatcher, MatchResult
from tutti.models import EventRecord, ExternalEvent, SyncOutcome, WriteOptions
from tutti.push_sync import PushSync
from tutti.reconciler import resolve_conflict

logger = logging.getLogger(__name__)

BOOKKEEPING = WriteOptions(skip_external_sync=True)


class PullReconciler:
    """One pass of calendar → ledger reconciliation over a bounded window.

    External events are matched, attached, merged or imported; afterwards every
    ledger record in the window that lost its calendar counterpart gets one
    again through PushSync. Per-item failures are tallied, never raised.
    """

    def __init__(
        self,
        ledger: Ledger,
        calendar: CalDAVService,
        push_sync: PushSync,
        tz: tzinfo,
        run_id: int | None = None,
    ) -> None:
        self.ledger = ledger
        self.calendar = calendar
        self.push_sync = push_sync
        self.tz = tz
        self.run_id = run_id

    def _audit(self, event_id: str, action: str, details: dict[str, Any]) -> None:
        self.ledger.record_audit_event(event_id=event_id, action=action, details=details, run_id=self.run_id)

    def run(self, window_start: datetime, window_end: datetime, limit_to_window: bool = True) -> SyncOutcome:
        outcome = SyncOutcome()
        try:
            externals = self.calendar.list_events(window_start, window_end)
        except Exception as exc:
            logger.exception("listing calendar events failed")
            outcome.failure(f"list calendar events: {type(exc).__name__}: {exc}")
            return outcome

        window = (window_start, window_end) if limit_to_window else None
        matcher = EventMatcher(
            self.ledger.list_events("all", window),
            self.tz,
            live_external_ids=[external.id for external in externals],
        )
        for external in externals:
            try:
                stat = self._reconcile_one(matcher, external)
                outcome.success(stat)
            except Exception as exc:
                logger.exception("reconciling calendar event %s failed", external.id)
                outcome.failure(f"{external.id}: {type(exc).__name__}: {exc}")

        try:
            self._enforce_unique_refs(matcher, outcome)
        except Exception as exc:
            logger.exception("duplicate reference check failed")
            outcome.failure(f"duplicate reference check: {type(exc).__name__}: {exc}")

        self._revive(window_start, window_end, outcome)
        logger.info(
            "pull pass finished: %s succeeded, %s failed %s",
            outcome.succeeded,
            outcome.failed,
            outcome.stats,
        )
        return outcome

    def _reconcile_one(self, matcher: EventMatcher, external: ExternalEvent) -> str:
        match = matcher.match(external)
        if match is None:
            # The record may sit outside the loaded window while its calendar copy moved into it.
            linked = self.ledger.get_event_by_external_ref(external.id, include_inactive=True)
            if linked is not None:
                matcher.replace(linked)
                match = MatchResult(tier=TIER_EXACT, record=linked)
        if match is None:
            return self._import(matcher, external)

        record = match.record
        if match.tier == TIER_EXACT and not record.is_active:
            # Archived records keep their calendar copy as is.
            logger.debug("calendar event %s belongs to %s event %s", external.id, record.status, record.id)
            return "inactive"
        if match.tier == TIER_EXACT:
            return self._merge(matcher, record, external)
        if not record.external_ref:
            self._link(matcher, record, external)
            self._audit(record.id, "attach_external_event", {"external_id": external.id, "tier": match.tier})
            return "attached"
        if match.stale_ref:
            self._link(matcher, record, external)
            self._audit(
                record.id,
                "relink_external_event",
                {"external_id": external.id, "previous_ref": record.external_ref},
            )
            return "relinked"
        logger.warning(
            "calendar event %s duplicates event %s (linked to %s); not importing",
            external.id,
            record.id,
            record.external_ref,
        )
        self._audit(
            record.id,
            "duplicate_external_event",
            {"external_id": external.id, "linked_ref": record.external_ref, "title": external.title},
        )
        return "duplicates"

    def _refresh(self, matcher: EventMatcher, event_id: str) -> EventRecord | None:
        record = self.ledger.get_event(event_id)
        if record is not None:
            matcher.replace(record)
        else:
            matcher.remove(event_id)
        return record

    def _link(self, matcher: EventMatcher, record: EventRecord, external: ExternalEvent) -> None:
        self.ledger.update_event(
            record.id,
            {"external_ref": external.id, "last_synced_at": external.last_modified},
            BOOKKEEPING,
        )
        self._refresh(matcher, record.id)

    def _merge(self, matcher: EventMatcher, record: EventRecord, external: ExternalEvent) -> str:
        decision = resolve_conflict(record, external, self.tz)
        if not decision.updates:
            return "unchanged"
        self.ledger.update_event(record.id, decision.updates, BOOKKEEPING)
        self._refresh(matcher, record.id)
        if not decision.applied or not decision.changed_fields:
            return "unchanged"
        self._audit(
            record.id,
            "apply_external_change",
            {"external_id": external.id, "fields": decision.changed_fields},
        )
        logger.info("event %s updated from calendar: %s", record.id, ", ".join(decision.changed_fields))
        return "updated"

    def _import(self, matcher: EventMatcher, external: ExternalEvent) -> str:
        if external.start is None or external.end is None:
            raise ValueError("calendar event has no schedule")
        start, end = external.start, external.end
        if external.all_day:
            start, end = normalize_all_day(start, end, self.tz)
        event_id = self.ledger.create_event(
            {
                "title": external.title,
                "start": start,
                "end": end,
                "is_all_day": external.all_day,
                "location": external.location,
                "description": strip_generated_summary(external.description),
                "external_ref": external.id,
                "last_synced_at": external.last_modified,
            },
            BOOKKEEPING,
        )
        self._refresh(matcher, event_id)
        self._audit(event_id, "import_external_event", {"external_id": external.id, "title": external.title})
        logger.info("imported calendar event %s as %s", external.id, event_id)
        return "imported"

    def _enforce_unique_refs(self, matcher: EventMatcher, outcome: SyncOutcome) -> None:
        for external_ref, records in self.ledger.find_duplicate_external_refs().items():
            keeper, extras = records[0], records[1:]
            for record in extras:
                self.ledger.update_event(
                    record.id,
                    {"external_ref": None, "description_hash": None},
                    BOOKKEEPING,
                )
                self._refresh(matcher, record.id)
                self._audit(
                    record.id,
                    "unlink_duplicate_external_ref",
                    {"external_ref": external_ref, "kept_by": keeper.id},
                )
                logger.warning("event %s shared %s with %s; unlinked", record.id, external_ref, keeper.id)
                outcome.bump("unlinked")

    def _revive(self, window_start: datetime, window_end: datetime, outcome: SyncOutcome) -> None:
        try:
            live_ids = {external.id for external in self.calendar.list_events(window_start, window_end)}
        except Exception as exc:
            logger.exception("re-listing calendar events failed; skipping revival")
            outcome.failure(f"revival listing: {type(exc).__name__}: {exc}")
            return

        for record in self.ledger.list_events("active", (window_start, window_end)):
            if record.external_ref and record.external_ref in live_ids:
                continue
            if record.external_ref:
                result = self.push_sync.push(record, force_create=True)
                stat = "revived"
            else:
                result = self.push_sync.push(record)
                stat = "created"
            if result.ok:
                outcome.success(stat)
                if record.external_ref and result.external_ref != record.external_ref:
                    self._audit(
                        record.id,
                        "revive_external_event",
                        {"previous_ref": record.external_ref, "external_id": result.external_ref},
                    )
            else:
                outcome.failure(f"{record.id}: {result.error}")
