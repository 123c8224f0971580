from __future__ import annotations

import logging
import re
import uuid
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any

import caldav
from caldav.lib.error import NotFoundError
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from tutti.event_time import all_day_dates, local_midnight
from tutti.models import EPOCH, CalDAVConfig, CalendarInfo, ExternalEvent, ensure_tz, utc_now

logger = logging.getLogger(__name__)

PRODID = "-//Tutti//Attendance Calendar Sync//EN"
UPDATABLE_FIELDS = ("title", "start", "end", "all_day", "location", "description")


class CalendarServiceError(RuntimeError):
    pass


def _normalize_calendar_id(value: str) -> str:
    return str(value or "").strip().rstrip("/")


def _normalize_calendar_name(value: str) -> str:
    collapsed = re.sub(r"\s+", " ", str(value or "").strip())
    return collapsed.casefold()


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _decoded(vevent: ICEvent, name: str) -> Any:
    if vevent.get(name) is None:
        return None
    return vevent.decoded(name)


def _replace_property(vevent: ICEvent, name: str, value: Any) -> None:
    vevent.pop(name, None)
    if value is not None:
        vevent.add(name, value)


class CalDAVService:
    """Adapter over one shared CalDAV calendar, keyed by iCalendar UID."""

    def __init__(self, config: CalDAVConfig, tz: tzinfo = timezone.utc) -> None:
        self.config = config
        self.tz = tz
        self.calendar_id = _normalize_calendar_id(config.calendar_id)
        self._client: Any = None
        self._principal: Any = None
        self._calendar_cache: dict[str, Any] = {}

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.is_configured:
            raise CalendarServiceError("CalDAV config is incomplete.")
        self._client = caldav.DAVClient(
            url=self.config.base_url,
            username=self.config.username,
            password=self.config.password,
        )
        self._principal = self._client.principal()

    def list_calendars(self) -> list[CalendarInfo]:
        self._connect()
        self._calendar_cache = {}
        calendars: list[CalendarInfo] = []
        for calendar in self._principal.calendars():
            calendar_id = _normalize_calendar_id(str(calendar.url))
            name = getattr(calendar, "name", "") or calendar_id
            self._calendar_cache[calendar_id] = calendar
            calendars.append(CalendarInfo(calendar_id=calendar_id, name=name, url=str(calendar.url)))
        return calendars

    def _get_calendar(self) -> Any:
        self._connect()
        if not self.calendar_id:
            raise CalendarServiceError("No calendar selected; call ensure_calendar first.")
        if self.calendar_id in self._calendar_cache:
            return self._calendar_cache[self.calendar_id]
        self.list_calendars()
        if self.calendar_id not in self._calendar_cache:
            raise CalendarServiceError(f"Calendar not found: {self.calendar_id}")
        return self._calendar_cache[self.calendar_id]

    def ensure_calendar(self, calendar_id: str = "", name: str = "") -> CalendarInfo:
        """Select the shared calendar by id, then by name, creating it when absent."""
        calendars = self.list_calendars()
        wanted_id = _normalize_calendar_id(calendar_id or self.calendar_id)
        wanted_name = name or self.config.calendar_name
        selected: CalendarInfo | None = None
        if wanted_id:
            selected = next((info for info in calendars if info.calendar_id == wanted_id), None)
        if selected is None:
            name_norm = _normalize_calendar_name(wanted_name)
            same_name = sorted(
                (info for info in calendars if _normalize_calendar_name(info.name) == name_norm),
                key=lambda item: item.calendar_id,
            )
            if same_name:
                selected = same_name[0]
        if selected is None:
            calendar = self._principal.make_calendar(name=wanted_name)
            created_id = _normalize_calendar_id(str(calendar.url))
            self._calendar_cache[created_id] = calendar
            logger.info("created calendar %s (%s)", wanted_name, created_id)
            selected = CalendarInfo(calendar_id=created_id, name=wanted_name, url=str(calendar.url))
        self.calendar_id = selected.calendar_id
        return selected

    def _find_resource(self, external_id: str) -> Any:
        if not external_id:
            return None
        calendar = self._get_calendar()
        try:
            resource = calendar.event_by_uid(external_id)
        except NotFoundError:
            return None
        if isinstance(resource, list):
            resource = resource[0] if resource else None
        return resource

    def _parse_resource(self, resource: Any) -> ExternalEvent | None:
        raw_ical = _decode_raw_ical(resource.data)
        vevent = _first_vevent(ICalendar.from_ical(raw_ical))
        if vevent is None:
            logger.warning("calendar resource %s has no VEVENT", getattr(resource, "url", ""))
            return None
        uid = str(vevent.get("UID", "")).strip()
        if not uid:
            return None

        dtstart = _decoded(vevent, "DTSTART")
        dtend = _decoded(vevent, "DTEND")
        all_day = isinstance(dtstart, date) and not isinstance(dtstart, datetime)
        if all_day:
            start = local_midnight(dtstart, self.tz)
            end_day = dtend if isinstance(dtend, date) and not isinstance(dtend, datetime) else dtstart + timedelta(days=1)
            end = local_midnight(end_day, self.tz)
        else:
            start = ensure_tz(dtstart) if isinstance(dtstart, datetime) else None
            end = ensure_tz(dtend) if isinstance(dtend, datetime) else None
            if start is not None and end is None:
                end = start + timedelta(hours=1)

        last_modified = _decoded(vevent, "LAST-MODIFIED") or _decoded(vevent, "DTSTAMP")
        if not isinstance(last_modified, datetime):
            last_modified = EPOCH
        return ExternalEvent(
            id=uid,
            title=str(vevent.get("SUMMARY", "")).strip(),
            start=start,
            end=end,
            all_day=all_day,
            location=str(vevent.get("LOCATION", "")).strip(),
            description=str(vevent.get("DESCRIPTION", "")),
            last_modified=ensure_tz(last_modified),
            href=str(getattr(resource, "url", "") or ""),
        )

    def _set_schedule(self, vevent: ICEvent, start: datetime, end: datetime, all_day: bool) -> None:
        if all_day:
            first_day, end_day = all_day_dates(start, end, self.tz)
            _replace_property(vevent, "DTSTART", first_day)
            _replace_property(vevent, "DTEND", end_day)
        else:
            _replace_property(vevent, "DTSTART", ensure_tz(start).astimezone(timezone.utc))
            _replace_property(vevent, "DTEND", ensure_tz(end).astimezone(timezone.utc))

    def _build_ical(
        self,
        *,
        uid: str,
        title: str,
        start: datetime,
        end: datetime,
        all_day: bool,
        location: str,
        description: str,
    ) -> str:
        now = utc_now().replace(microsecond=0)
        calendar_obj = ICalendar()
        calendar_obj.add("PRODID", PRODID)
        calendar_obj.add("VERSION", "2.0")
        vevent = ICEvent()
        vevent.add("UID", uid)
        vevent.add("SUMMARY", title or "")
        vevent.add("DESCRIPTION", description or "")
        if location:
            vevent.add("LOCATION", location)
        self._set_schedule(vevent, start, end, all_day)
        vevent.add("DTSTAMP", now)
        vevent.add("LAST-MODIFIED", now)
        calendar_obj.add_component(vevent)
        return calendar_obj.to_ical().decode("utf-8")

    def _save_new(self, raw_ical: str) -> ExternalEvent:
        calendar = self._get_calendar()
        resource = calendar.save_event(raw_ical)
        created = self._parse_resource(resource)
        if created is None:
            raise CalendarServiceError("Calendar returned an unreadable event after create.")
        logger.info("created calendar event %s", created.id)
        return created

    def get_event_by_id(self, external_id: str) -> ExternalEvent | None:
        resource = self._find_resource(external_id)
        if resource is None:
            return None
        return self._parse_resource(resource)

    def list_events(self, start: datetime, end: datetime) -> list[ExternalEvent]:
        calendar = self._get_calendar()
        resources = calendar.search(start=start, end=end, event=True, expand=False)
        events: list[ExternalEvent] = []
        seen: set[str] = set()
        for resource in resources:
            event = self._parse_resource(resource)
            if event is None or event.id in seen:
                continue
            seen.add(event.id)
            events.append(event)
        return events

    def create_event(
        self,
        title: str,
        start: datetime,
        end: datetime,
        location: str = "",
        description: str = "",
    ) -> ExternalEvent:
        raw_ical = self._build_ical(
            uid=str(uuid.uuid4()),
            title=title,
            start=start,
            end=end,
            all_day=False,
            location=location,
            description=description,
        )
        return self._save_new(raw_ical)

    def create_all_day_event(
        self,
        title: str,
        start_date: date,
        end_date: date | None = None,
        location: str = "",
        description: str = "",
    ) -> ExternalEvent:
        """``end_date`` is exclusive; a missing one makes a single-day event."""
        end_date = end_date if end_date and end_date > start_date else start_date + timedelta(days=1)
        raw_ical = self._build_ical(
            uid=str(uuid.uuid4()),
            title=title,
            start=local_midnight(start_date, self.tz),
            end=local_midnight(end_date, self.tz),
            all_day=True,
            location=location,
            description=description,
        )
        return self._save_new(raw_ical)

    def update_fields(self, external_id: str, fields: dict[str, Any]) -> ExternalEvent | None:
        unknown = sorted(set(fields) - set(UPDATABLE_FIELDS))
        if unknown:
            raise CalendarServiceError(f"Unsupported calendar fields: {', '.join(unknown)}")
        resource = self._find_resource(external_id)
        if resource is None:
            return None
        calendar_obj = ICalendar.from_ical(_decode_raw_ical(resource.data))
        vevent = _first_vevent(calendar_obj)
        if vevent is None:
            return None

        if "title" in fields:
            _replace_property(vevent, "SUMMARY", fields["title"] or "")
        if "location" in fields:
            _replace_property(vevent, "LOCATION", fields["location"] or None)
        if "description" in fields:
            _replace_property(vevent, "DESCRIPTION", fields["description"] or "")
        if "start" in fields or "end" in fields:
            current = self._parse_resource(resource)
            start = fields.get("start") or (current.start if current else None)
            end = fields.get("end") or (current.end if current else None)
            all_day = bool(fields.get("all_day", current.all_day if current else False))
            if start is None or end is None:
                raise CalendarServiceError(f"Cannot reschedule {external_id} without start and end.")
            self._set_schedule(vevent, start, end, all_day)
        _replace_property(vevent, "LAST-MODIFIED", utc_now().replace(microsecond=0))

        resource.data = calendar_obj.to_ical().decode("utf-8")
        resource.save()
        logger.info("updated calendar event %s (%s)", external_id, ", ".join(sorted(fields)))
        return self._parse_resource(resource)

    def delete_event(self, external_id: str) -> bool:
        resource = self._find_resource(external_id)
        if resource is None:
            return False
        resource.delete()
        logger.info("deleted calendar event %s", external_id)
        return True
