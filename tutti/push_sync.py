from __future__ import annotations

import logging
from datetime import datetime, tzinfo
from typing import Any, Callable

from tutti.caldav_client import CalDAVService
from tutti.description import DescriptionRenderer, RenderedDescription
from tutti.event_time import all_day_dates, schedule_changed
from tutti.ledger import Ledger
from tutti.models import EventRecord, ExternalEvent, PushResult, WriteOptions, ensure_tz, utc_now

logger = logging.getLogger(__name__)

ACTION_CREATED = "created"
ACTION_RECREATED = "recreated"
ACTION_UPDATED = "updated"
ACTION_SKIPPED = "skipped"
ACTION_FAILED = "failed"

BOOKKEEPING = WriteOptions(skip_external_sync=True)


class PushSync:
    """Writes one ledger record to the calendar, touching only what changed."""

    def __init__(
        self,
        ledger: Ledger,
        calendar: CalDAVService,
        renderer: DescriptionRenderer,
        tz: tzinfo,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.ledger = ledger
        self.calendar = calendar
        self.renderer = renderer
        self.tz = tz
        self.clock = clock

    def render_for(self, event: EventRecord) -> RenderedDescription:
        return self.renderer.render(
            description=event.description,
            responses=self.ledger.list_responses(event.id),
            directory=self.ledger.get_members(),
            event_id=event.id,
            now=self.clock(),
        )

    def push(self, event: EventRecord, force_create: bool = False) -> PushResult:
        try:
            return self._push(event, force_create)
        except Exception as exc:
            logger.exception("push failed for event %s", event.id)
            return PushResult(
                event_id=event.id,
                action=ACTION_FAILED,
                external_ref=event.external_ref,
                error=f"{type(exc).__name__}: {exc}",
            )

    def _push(self, event: EventRecord, force_create: bool) -> PushResult:
        if not event.is_active:
            logger.debug("not pushing %s event %s", event.status, event.id)
            return PushResult(event_id=event.id, action=ACTION_SKIPPED, external_ref=event.external_ref)

        rendered = self.render_for(event)
        existing: ExternalEvent | None = None
        if event.external_ref and not force_create:
            existing = self.calendar.get_event_by_id(event.external_ref)
        if existing is None:
            created = self._create(event, rendered)
            action = ACTION_RECREATED if event.external_ref else ACTION_CREATED
            return self._record(event, created, rendered, action)

        title_changed = (existing.title or "") != (event.title or "")
        location_changed = (existing.location or "") != (event.location or "")
        time_changed = schedule_changed(
            current_start=existing.start,
            current_end=existing.end,
            current_all_day=existing.all_day,
            new_start=event.start,
            new_end=event.end,
            new_all_day=event.is_all_day,
            tz=self.tz,
        )
        description_changed = rendered.digest != (event.description_hash or "")
        if not (title_changed or location_changed or time_changed or description_changed):
            logger.debug("event %s unchanged, skipping calendar write", event.id)
            return PushResult(event_id=event.id, action=ACTION_SKIPPED, external_ref=existing.id)

        if existing.all_day != event.is_all_day:
            # The calendar cannot switch an event between all-day and timed in place.
            self.calendar.delete_event(existing.id)
            created = self._create(event, rendered)
            return self._record(event, created, rendered, ACTION_RECREATED)

        partial: dict[str, Any] = {}
        if title_changed:
            partial["title"] = event.title
        if location_changed:
            partial["location"] = event.location
        if time_changed:
            partial.update(start=event.start, end=event.end, all_day=event.is_all_day)
        if description_changed:
            partial["description"] = rendered.text
        updated = self.calendar.update_fields(existing.id, partial)
        if updated is None:
            created = self._create(event, rendered)
            return self._record(event, created, rendered, ACTION_RECREATED)
        return self._record(event, updated, rendered, ACTION_UPDATED)

    def _create(self, event: EventRecord, rendered: RenderedDescription) -> ExternalEvent:
        if event.start is None or event.end is None:
            raise ValueError(f"event {event.id} has no schedule")
        if event.is_all_day:
            first_day, end_day = all_day_dates(event.start, event.end, self.tz)
            return self.calendar.create_all_day_event(
                event.title,
                first_day,
                end_day,
                location=event.location,
                description=rendered.text,
            )
        return self.calendar.create_event(
            event.title,
            event.start,
            event.end,
            location=event.location,
            description=rendered.text,
        )

    def _watermark(self, external: ExternalEvent) -> datetime:
        # Also used after description-only writes: a title or time edit made on the
        # calendar before that write is then older than the watermark and is not pulled.
        return max(ensure_tz(self.clock()), ensure_tz(external.last_modified))

    def _record(
        self,
        event: EventRecord,
        external: ExternalEvent,
        rendered: RenderedDescription,
        action: str,
    ) -> PushResult:
        self.ledger.update_event(
            event.id,
            {
                "external_ref": external.id,
                "description_hash": rendered.digest,
                "last_synced_at": self._watermark(external),
            },
            BOOKKEEPING,
        )
        logger.info("pushed event %s to calendar event %s (%s)", event.id, external.id, action)
        return PushResult(event_id=event.id, action=action, external_ref=external.id)

    def refresh_description(self, event_id: str) -> PushResult:
        """Re-render one event's description and write it only when its hash moved."""
        try:
            event = self.ledger.get_event(event_id)
            if event is None:
                return PushResult(event_id=event_id, action=ACTION_FAILED, error="event not found")
            if not event.is_active:
                return PushResult(event_id=event_id, action=ACTION_SKIPPED, external_ref=event.external_ref)
            if not event.external_ref:
                return self.push(event)

            rendered = self.render_for(event)
            if rendered.digest == (event.description_hash or ""):
                return PushResult(event_id=event_id, action=ACTION_SKIPPED, external_ref=event.external_ref)
            updated = self.calendar.update_fields(event.external_ref, {"description": rendered.text})
            if updated is None:
                logger.warning("calendar event %s for %s is gone, recreating", event.external_ref, event_id)
                return self.push(event, force_create=True)
            return self._record(event, updated, rendered, ACTION_UPDATED)
        except Exception as exc:
            logger.exception("description refresh failed for event %s", event_id)
            return PushResult(event_id=event_id, action=ACTION_FAILED, error=f"{type(exc).__name__}: {exc}")
