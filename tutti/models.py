from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any


EVENT_STATUSES = ("active", "archived", "deleted")
RESPONSE_STATUSES = ("attend", "tentative", "absent", "unset")
STATUS_SYMBOLS = {"attend": "○", "tentative": "△", "absent": "×", "unset": "-"}
SYMBOL_STATUSES = {symbol: status for status, symbol in STATUS_SYMBOLS.items()}
STATUS_LABELS = {"attend": "Attend", "tentative": "Tentative", "absent": "Absent", "unset": "Unset"}

DEFAULT_PART_ORDER = [
    "Fl",
    "Ob",
    "Fg",
    "Cl",
    "Sax",
    "Hr",
    "Tp",
    "Tb",
    "Euph",
    "Tuba",
    "Cb",
    "Perc",
]

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_tz(value).astimezone(timezone.utc).isoformat()


def normalize_response_status(value: str | None) -> str:
    text = str(value or "").strip()
    if text in SYMBOL_STATUSES:
        return SYMBOL_STATUSES[text]
    return text.lower()


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""
    calendar_id: str = ""
    calendar_name: str = "Tutti Events"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            calendar_id=str(data.get("calendar_id", "")).strip(),
            calendar_name=str(data.get("calendar_name", "Tutti Events")).strip() or "Tutti Events",
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.username)


@dataclass
class SyncConfig:
    timezone: str = "Asia/Tokyo"
    window_past_days: int = 30
    window_future_days: int = 365
    full_sync_interval_seconds: int = 3600
    diff_interval_seconds: int = 600
    diff_min_interval_seconds: int = 600

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            timezone=str(data.get("timezone", "Asia/Tokyo")).strip() or "Asia/Tokyo",
            window_past_days=max(0, int(data.get("window_past_days", 30))),
            window_future_days=max(1, int(data.get("window_future_days", 365))),
            full_sync_interval_seconds=max(300, int(data.get("full_sync_interval_seconds", 3600))),
            diff_interval_seconds=max(60, int(data.get("diff_interval_seconds", 600))),
            diff_min_interval_seconds=max(0, int(data.get("diff_min_interval_seconds", 600))),
        )


@dataclass
class DescriptionConfig:
    show_part_breakdown: bool = False
    part_order: list[str] = field(default_factory=lambda: list(DEFAULT_PART_ORDER))
    timestamp_format: str = "%Y-%m-%d %H:%M"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "DescriptionConfig":
        data = data or {}
        part_order = data.get("part_order", DEFAULT_PART_ORDER)
        cleaned = [str(x).strip() for x in part_order or [] if str(x).strip()]
        return cls(
            show_part_breakdown=bool(data.get("show_part_breakdown", False)),
            part_order=cleaned or list(DEFAULT_PART_ORDER),
            timestamp_format=str(data.get("timestamp_format", "%Y-%m-%d %H:%M")) or "%Y-%m-%d %H:%M",
        )


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    description: DescriptionConfig = field(default_factory=DescriptionConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            sync=SyncConfig.from_dict(data.get("sync")),
            description=DescriptionConfig.from_dict(data.get("description")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class WriteOptions:
    """Options carried by every ledger write.

    ``skip_external_sync`` stops the ledger from notifying its change listener,
    which is how the sync components write bookkeeping fields without pushing
    the same record back to the calendar.
    """

    skip_external_sync: bool = False


@dataclass
class CalendarInfo:
    calendar_id: str
    name: str
    url: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EventRecord:
    id: str
    title: str = ""
    start: datetime | None = None
    end: datetime | None = None
    is_all_day: bool = False
    location: str = ""
    description: str = ""
    external_ref: str | None = None
    description_hash: str | None = None
    status: str = "active"
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_synced_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("start", "end", "created_at", "updated_at", "last_synced_at"):
            payload[key] = serialize_datetime(getattr(self, key))
        return payload

    def clone(self) -> "EventRecord":
        return replace(self)

    def with_updates(self, **kwargs: Any) -> "EventRecord":
        copied = self.clone()
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass
class ExternalEvent:
    id: str
    title: str = ""
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    location: str = ""
    description: str = ""
    last_modified: datetime = EPOCH
    href: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("start", "end", "last_modified"):
            payload[key] = serialize_datetime(getattr(self, key))
        return payload


@dataclass
class ResponseRecord:
    event_id: str
    user_key: str
    status: str = "unset"
    user_name: str = ""
    comment: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def symbol(self) -> str:
        return STATUS_SYMBOLS.get(self.status, STATUS_SYMBOLS["unset"])


@dataclass
class Member:
    user_key: str
    part: str = ""
    name: str = ""
    display_name: str = ""


@dataclass
class Tally:
    attend: int = 0
    tentative: int = 0
    absent: int = 0
    unset: int = 0

    @property
    def total(self) -> int:
        return self.attend + self.tentative + self.absent + self.unset

    @classmethod
    def from_responses(cls, responses: list[ResponseRecord]) -> "Tally":
        tally = cls()
        for response in responses:
            status = response.status if response.status in RESPONSE_STATUSES else "unset"
            setattr(tally, status, getattr(tally, status) + 1)
        return tally

    def count(self, status: str) -> int:
        return int(getattr(self, status, 0))


@dataclass
class PushResult:
    event_id: str
    action: str
    external_ref: str | None = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.action != "failed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "action": self.action,
            "external_ref": self.external_ref,
            "error": self.error,
            "ok": self.ok,
        }


@dataclass
class SyncOutcome:
    succeeded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    stats: dict[str, int] = field(default_factory=dict)

    def success(self, stat: str | None = None) -> None:
        self.succeeded += 1
        if stat:
            self.bump(stat)

    def failure(self, message: str) -> None:
        self.failed += 1
        self.errors.append(message)

    def bump(self, stat: str, amount: int = 1) -> None:
        self.stats[stat] = self.stats.get(stat, 0) + amount

    def merge(self, other: "SyncOutcome") -> None:
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.errors.extend(other.errors)
        for key, value in other.stats.items():
            self.bump(key, value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": list(self.errors),
            "stats": dict(self.stats),
        }


@dataclass
class DiffSyncResult:
    ran: bool
    reason: str
    watermark: datetime | None = None
    event_ids: list[str] = field(default_factory=list)
    refreshed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ran": self.ran,
            "reason": self.reason,
            "watermark": serialize_datetime(self.watermark),
            "event_ids": list(self.event_ids),
            "refreshed": self.refreshed,
            "failed": self.failed,
            "errors": list(self.errors),
        }


def default_app_config() -> AppConfig:
    return AppConfig()
