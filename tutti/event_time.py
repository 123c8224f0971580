"""All-day/timed normalization shared by the ledger and both sync directions.

All-day spans are anchored to midnight in one configured zone; the ledger
stores them as the UTC instants of those midnights.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo

from tutti.models import ensure_tz


def resolve_zone(name: str | None) -> tzinfo:
    text = str(name or "").strip()
    if not text or text.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(text)


def local_date(value: datetime, tz: tzinfo) -> date:
    return ensure_tz(value).astimezone(tz).date()


def local_midnight(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz).astimezone(timezone.utc)


def _is_midnight(value: datetime) -> bool:
    return value.hour == 0 and value.minute == 0 and value.second == 0


def is_all_day_span(start: datetime, end: datetime, tz: tzinfo) -> bool:
    """Start at local 00:00:00, end at a later local midnight or 23:59 of the same day."""
    local_start = ensure_tz(start).astimezone(tz)
    local_end = ensure_tz(end).astimezone(tz)
    if not _is_midnight(local_start):
        return False
    if _is_midnight(local_end):
        return local_end > local_start
    same_day = local_start.date() == local_end.date()
    return same_day and local_end.hour == 23 and local_end.minute == 59


def normalize_all_day(start: datetime, end: datetime, tz: tzinfo) -> tuple[datetime, datetime]:
    start_day = local_date(start, tz)
    local_end = ensure_tz(end).astimezone(tz)
    end_day = local_end.date()
    if not _is_midnight(local_end):
        end_day = end_day + timedelta(days=1)
    if end_day <= start_day:
        end_day = start_day + timedelta(days=1)
    return local_midnight(start_day, tz), local_midnight(end_day, tz)


def all_day_dates(start: datetime, end: datetime, tz: tzinfo) -> tuple[date, date]:
    """Return (first day, exclusive end day) of a normalized all-day span."""
    normalized_start, normalized_end = normalize_all_day(start, end, tz)
    return local_date(normalized_start, tz), local_date(normalized_end, tz)


def start_key(start: datetime | None, all_day: bool, tz: tzinfo) -> str:
    if start is None:
        return ""
    if all_day:
        return local_date(start, tz).isoformat()
    return ensure_tz(start).astimezone(timezone.utc).isoformat()


def schedule_changed(
    *,
    current_start: datetime | None,
    current_end: datetime | None,
    current_all_day: bool,
    new_start: datetime | None,
    new_end: datetime | None,
    new_all_day: bool,
    tz: tzinfo,
) -> bool:
    if current_all_day != new_all_day:
        return True
    if current_start is None or current_end is None or new_start is None or new_end is None:
        return (current_start, current_end) != (new_start, new_end)
    if new_all_day:
        return all_day_dates(current_start, current_end, tz) != all_day_dates(new_start, new_end, tz)
    return ensure_tz(current_start) != ensure_tz(new_start) or ensure_tz(current_end) != ensure_tz(new_end)


def overlaps(
    start: datetime | None,
    end: datetime | None,
    window_start: datetime,
    window_end: datetime,
) -> bool:
    if start is None:
        return False
    end = end or start
    return ensure_tz(start) <= window_end and ensure_tz(end) >= window_start


def sync_window(now: datetime, past_days: int, future_days: int) -> tuple[datetime, datetime]:
    now_utc = ensure_tz(now).astimezone(timezone.utc)
    return now_utc - timedelta(days=max(0, past_days)), now_utc + timedelta(days=max(1, future_days))
