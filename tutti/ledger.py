from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timezone, tzinfo
from pathlib import Path
from typing import Any, Callable

from tutti.event_time import is_all_day_span, normalize_all_day, overlaps
from tutti.models import (
    EVENT_STATUSES,
    RESPONSE_STATUSES,
    EventRecord,
    Member,
    ResponseRecord,
    WriteOptions,
    normalize_response_status,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 100
EVENT_FILTERS = ("active", "all", "upcoming", "past")
EVENT_COLUMNS = (
    "id",
    "title",
    "start_at",
    "end_at",
    "is_all_day",
    "location",
    "description",
    "external_ref",
    "description_hash",
    "status",
    "created_at",
    "updated_at",
    "last_synced_at",
)
UPDATABLE_FIELDS = {
    "title",
    "start",
    "end",
    "is_all_day",
    "location",
    "description",
    "external_ref",
    "description_hash",
    "status",
    "last_synced_at",
}


class LedgerValidationError(ValueError):
    pass


def _parse_field_datetime(field: str, value: Any) -> datetime | None:
    try:
        return parse_iso_datetime(value)
    except (TypeError, ValueError) as exc:
        raise LedgerValidationError(f"{field} is not a valid timestamp: {value!r}") from exc


def _row_to_event(row: sqlite3.Row) -> EventRecord:
    return EventRecord(
        id=str(row["id"]),
        title=str(row["title"] or ""),
        start=parse_iso_datetime(row["start_at"]),
        end=parse_iso_datetime(row["end_at"]),
        is_all_day=bool(row["is_all_day"]),
        location=str(row["location"] or ""),
        description=str(row["description"] or ""),
        external_ref=row["external_ref"] or None,
        description_hash=row["description_hash"] or None,
        status=str(row["status"] or "active"),
        created_at=parse_iso_datetime(row["created_at"]),
        updated_at=parse_iso_datetime(row["updated_at"]),
        last_synced_at=parse_iso_datetime(row["last_synced_at"]),
    )


def _row_to_response(row: sqlite3.Row) -> ResponseRecord:
    return ResponseRecord(
        event_id=str(row["event_id"]),
        user_key=str(row["user_key"]),
        status=str(row["status"] or "unset"),
        user_name=str(row["user_name"] or ""),
        comment=str(row["comment"] or ""),
        created_at=parse_iso_datetime(row["created_at"]),
        updated_at=parse_iso_datetime(row["updated_at"]),
    )


class Ledger:
    """sqlite-backed record store for events, responses, the member roster and run state."""

    def __init__(
        self,
        db_path: str,
        tz: tzinfo = timezone.utc,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.tz = tz
        self.clock = clock
        self.on_event_changed: Callable[[str], None] | None = None
        self.on_responses_changed: Callable[[str], None] | None = None
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS events (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            start_at TEXT NOT NULL,
            end_at TEXT NOT NULL,
            is_all_day INTEGER NOT NULL DEFAULT 0,
            location TEXT NOT NULL DEFAULT '',
            description TEXT NOT NULL DEFAULT '',
            external_ref TEXT,
            description_hash TEXT,
            status TEXT NOT NULL DEFAULT 'active',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            last_synced_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_events_external_ref ON events(external_ref);

        CREATE TABLE IF NOT EXISTS responses (
            event_id TEXT NOT NULL,
            user_key TEXT NOT NULL,
            user_name TEXT NOT NULL DEFAULT '',
            status TEXT NOT NULL,
            comment TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (event_id, user_key)
        );

        CREATE INDEX IF NOT EXISTS idx_responses_updated_at ON responses(updated_at);

        CREATE TABLE IF NOT EXISTS members (
            user_key TEXT PRIMARY KEY,
            part TEXT NOT NULL DEFAULT '',
            name TEXT NOT NULL DEFAULT '',
            display_name TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            succeeded INTEGER NOT NULL,
            failed INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            event_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def _now_text(self) -> str:
        return serialize_datetime(self.clock()) or ""

    def _notify(self, callback: Callable[[str], None] | None, event_id: str, options: WriteOptions) -> None:
        if options.skip_external_sync or callback is None:
            return
        try:
            callback(event_id)
        except Exception:
            # The ledger write stands even when the calendar side fails.
            logger.exception("change listener failed for event %s", event_id)

    # Events

    def _normalize_schedule(
        self,
        start: datetime | None,
        end: datetime | None,
        is_all_day: bool | None,
    ) -> tuple[datetime, datetime, bool]:
        if start is None or end is None:
            raise LedgerValidationError("start and end are required")
        if start >= end:
            raise LedgerValidationError("start must be earlier than end")
        if is_all_day is None:
            is_all_day = is_all_day_span(start, end, self.tz)
        if is_all_day:
            start, end = normalize_all_day(start, end, self.tz)
        return start, end, bool(is_all_day)

    @staticmethod
    def _validate_title(title: Any) -> str:
        text = str(title or "").strip()
        if not text:
            raise LedgerValidationError("title is required")
        if len(text) > MAX_TITLE_LENGTH:
            raise LedgerValidationError(f"title exceeds {MAX_TITLE_LENGTH} characters")
        return text

    def create_event(self, fields: dict[str, Any], options: WriteOptions | None = None) -> str:
        options = options or WriteOptions()
        title = self._validate_title(fields.get("title"))
        start = _parse_field_datetime("start", fields.get("start"))
        end = _parse_field_datetime("end", fields.get("end"))
        raw_all_day = fields.get("is_all_day")
        start, end, is_all_day = self._normalize_schedule(
            start, end, None if raw_all_day is None else bool(raw_all_day)
        )
        status = str(fields.get("status", "active") or "active")
        if status not in EVENT_STATUSES:
            raise LedgerValidationError(f"unknown event status: {status}")
        last_synced_at = _parse_field_datetime("last_synced_at", fields.get("last_synced_at"))

        event_id = str(fields.get("id") or uuid.uuid4())
        now_text = self._now_text()
        with self._lock:
            with self._connect() as conn:
                try:
                    conn.execute(
                        """
                        INSERT INTO events(
                            id, title, start_at, end_at, is_all_day, location, description, external_ref,
                            description_hash, status, created_at, updated_at, last_synced_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            event_id,
                            title,
                            serialize_datetime(start),
                            serialize_datetime(end),
                            int(is_all_day),
                            str(fields.get("location", "") or ""),
                            str(fields.get("description", "") or ""),
                            fields.get("external_ref") or None,
                            fields.get("description_hash") or None,
                            status,
                            now_text,
                            now_text,
                            serialize_datetime(last_synced_at),
                        ),
                    )
                except sqlite3.IntegrityError as exc:
                    raise LedgerValidationError(f"event id already exists: {event_id}") from exc
                conn.commit()
        logger.debug("created event %s (%s)", event_id, title)
        self._notify(self.on_event_changed, event_id, options)
        return event_id

    def get_event(self, event_id: str) -> EventRecord | None:
        if not event_id:
            return None
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {', '.join(EVENT_COLUMNS)} FROM events WHERE id = ?",
                    (str(event_id),),
                ).fetchone()
        return _row_to_event(row) if row else None

    def get_event_by_external_ref(self, external_ref: str, include_inactive: bool = False) -> EventRecord | None:
        """Oldest record holding ``external_ref``; archived ones only with ``include_inactive``."""
        if not external_ref:
            return None
        status_clause = "status != 'deleted'" if include_inactive else "status = 'active'"
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    SELECT {', '.join(EVENT_COLUMNS)}
                    FROM events
                    WHERE external_ref = ? AND {status_clause}
                    ORDER BY created_at, id
                    LIMIT 1
                    """,
                    (str(external_ref),),
                ).fetchone()
        return _row_to_event(row) if row else None

    def list_events(
        self,
        filter: str = "active",
        window: tuple[datetime, datetime] | None = None,
    ) -> list[EventRecord]:
        if filter not in EVENT_FILTERS:
            raise LedgerValidationError(f"unknown event filter: {filter}")
        with self._lock:
            with self._connect() as conn:
                if filter == "all":
                    rows = conn.execute(
                        f"SELECT {', '.join(EVENT_COLUMNS)} FROM events WHERE status != 'deleted' ORDER BY start_at, id"
                    ).fetchall()
                else:
                    rows = conn.execute(
                        f"SELECT {', '.join(EVENT_COLUMNS)} FROM events WHERE status = 'active' ORDER BY start_at, id"
                    ).fetchall()
        events = [_row_to_event(row) for row in rows]
        now = self.clock()
        if filter == "upcoming":
            events = [event for event in events if event.end is not None and event.end >= now]
        elif filter == "past":
            events = [event for event in events if event.end is not None and event.end < now]
        if window is not None:
            window_start, window_end = window
            events = [event for event in events if overlaps(event.start, event.end, window_start, window_end)]
        return events

    def update_event(
        self,
        event_id: str,
        fields: dict[str, Any],
        options: WriteOptions | None = None,
    ) -> bool:
        """Apply ``fields`` to one event in a single statement.

        Returns False when the event is missing or already deleted; raises
        LedgerValidationError for malformed input without writing anything.
        """
        options = options or WriteOptions()
        if not event_id:
            raise LedgerValidationError("event id is required")
        unknown = sorted(set(fields) - UPDATABLE_FIELDS)
        if unknown:
            raise LedgerValidationError(f"fields cannot be updated: {', '.join(unknown)}")
        current = self.get_event(event_id)
        if current is None or current.status == "deleted":
            return False

        values: dict[str, Any] = {}
        if "title" in fields:
            values["title"] = self._validate_title(fields["title"])
        if {"start", "end", "is_all_day"} & set(fields):
            start = _parse_field_datetime("start", fields["start"]) if "start" in fields else current.start
            end = _parse_field_datetime("end", fields["end"]) if "end" in fields else current.end
            is_all_day = bool(fields["is_all_day"]) if "is_all_day" in fields else current.is_all_day
            start, end, is_all_day = self._normalize_schedule(start, end, is_all_day)
            values["start_at"] = serialize_datetime(start)
            values["end_at"] = serialize_datetime(end)
            values["is_all_day"] = int(is_all_day)
        for key in ("location", "description"):
            if key in fields:
                values[key] = str(fields[key] or "")
        for key in ("external_ref", "description_hash"):
            if key in fields:
                values[key] = fields[key] or None
        if "status" in fields:
            status = str(fields["status"] or "")
            if status not in EVENT_STATUSES:
                raise LedgerValidationError(f"unknown event status: {status}")
            values["status"] = status
        if "last_synced_at" in fields:
            values["last_synced_at"] = serialize_datetime(
                _parse_field_datetime("last_synced_at", fields["last_synced_at"])
            )
        values["updated_at"] = self._now_text()

        assignments = ", ".join(f"{key} = ?" for key in values)
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"UPDATE events SET {assignments} WHERE id = ? AND status != 'deleted'",
                    (*values.values(), str(event_id)),
                )
                conn.commit()
                updated = cursor.rowcount > 0
        if updated:
            self._notify(self.on_event_changed, event_id, options)
        return updated

    def find_duplicate_external_refs(self) -> dict[str, list[EventRecord]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT {', '.join(EVENT_COLUMNS)}
                    FROM events
                    WHERE status != 'deleted' AND external_ref IN (
                        SELECT external_ref FROM events
                        WHERE status != 'deleted' AND external_ref IS NOT NULL AND external_ref != ''
                        GROUP BY external_ref
                        HAVING COUNT(*) > 1
                    )
                    ORDER BY created_at, id
                    """
                ).fetchall()
        duplicates: dict[str, list[EventRecord]] = {}
        for row in rows:
            event = _row_to_event(row)
            duplicates.setdefault(str(event.external_ref), []).append(event)
        return duplicates

    # Responses

    def upsert_response(
        self,
        event_id: str,
        user_key: str,
        status: str,
        comment: str = "",
        user_name: str = "",
        options: WriteOptions | None = None,
    ) -> ResponseRecord:
        options = options or WriteOptions()
        if not event_id or not str(user_key or "").strip():
            raise LedgerValidationError("event id and user key are required")
        normalized_status = normalize_response_status(status)
        if normalized_status not in RESPONSE_STATUSES:
            raise LedgerValidationError(f"unknown response status: {status}")
        event = self.get_event(event_id)
        if event is None or event.status == "deleted":
            raise LedgerValidationError(f"event not found: {event_id}")

        now_text = self._now_text()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO responses(event_id, user_key, user_name, status, comment, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(event_id, user_key) DO UPDATE SET
                        user_name = CASE WHEN excluded.user_name != '' THEN excluded.user_name ELSE responses.user_name END,
                        status = excluded.status,
                        comment = excluded.comment,
                        updated_at = excluded.updated_at
                    """,
                    (
                        str(event_id),
                        str(user_key).strip(),
                        str(user_name or ""),
                        normalized_status,
                        str(comment or ""),
                        now_text,
                        now_text,
                    ),
                )
                conn.commit()
                row = conn.execute(
                    """
                    SELECT event_id, user_key, user_name, status, comment, created_at, updated_at
                    FROM responses
                    WHERE event_id = ? AND user_key = ?
                    """,
                    (str(event_id), str(user_key).strip()),
                ).fetchone()
        self._notify(self.on_responses_changed, event_id, options)
        return _row_to_response(row)

    def list_responses(self, event_id: str | None = None) -> list[ResponseRecord]:
        with self._lock:
            with self._connect() as conn:
                if event_id is None:
                    rows = conn.execute(
                        """
                        SELECT event_id, user_key, user_name, status, comment, created_at, updated_at
                        FROM responses
                        ORDER BY event_id, created_at, user_key
                        """
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT event_id, user_key, user_name, status, comment, created_at, updated_at
                        FROM responses
                        WHERE event_id = ?
                        ORDER BY created_at, user_key
                        """,
                        (str(event_id),),
                    ).fetchall()
        return [_row_to_response(row) for row in rows]

    def list_responses_updated_since(self, since: datetime | None) -> list[ResponseRecord]:
        if since is None:
            return self.list_responses()
        return [
            response
            for response in self.list_responses()
            if response.updated_at is not None and response.updated_at > since
        ]

    # Members

    def upsert_member(self, member: Member) -> None:
        if not member.user_key.strip():
            raise LedgerValidationError("user key is required")
        now_text = self._now_text()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO members(user_key, part, name, display_name, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_key) DO UPDATE SET
                        part = excluded.part,
                        name = excluded.name,
                        display_name = excluded.display_name,
                        updated_at = excluded.updated_at
                    """,
                    (member.user_key.strip(), member.part, member.name, member.display_name, now_text, now_text),
                )
                conn.commit()

    def get_members(self) -> dict[str, Member]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT user_key, part, name, display_name FROM members ORDER BY user_key"
                ).fetchall()
        return {
            str(row["user_key"]): Member(
                user_key=str(row["user_key"]),
                part=str(row["part"] or ""),
                name=str(row["name"] or ""),
                display_name=str(row["display_name"] or ""),
            )
            for row in rows
        }

    # Key/value properties

    def set_config(self, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_meta(key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (str(key), str(value), self._now_text()),
                )
                conn.commit()

    def get_config(self, key: str, default: str | None = None) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT value
                    FROM app_meta
                    WHERE key = ?
                    """,
                    (str(key),),
                ).fetchone()
        if row is None:
            return default
        return str(row["value"])

    # Run bookkeeping

    def start_sync_run(self, *, trigger: str, message: str = "running") -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms, succeeded, failed)
                    VALUES (?, ?, 'running', ?, 0, 0, 0)
                    """,
                    (self._now_text(), trigger, message),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        succeeded: int,
        failed: int,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, succeeded = ?, failed = ?
                    WHERE id = ?
                    """,
                    (str(status), str(message), int(duration_ms), int(succeeded), int(failed), int(run_id)),
                )
                conn.commit()

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms, succeeded, failed
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        event_id: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, event_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (run_id, self._now_text(), event_id, action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if run_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, event_id, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, event_id, action, details_json
                        FROM audit_events
                        WHERE run_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (int(run_id), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
