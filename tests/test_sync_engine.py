import tempfile
import unittest
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from unittest import mock

from tutti.config_manager import ConfigManager
from tutti.event_time import local_midnight, overlaps, resolve_zone
from tutti.ledger import Ledger
from tutti.models import CalendarInfo, ExternalEvent, WriteOptions
from tutti.sync_engine import SyncEngine

QUIET = WriteOptions(skip_external_sync=True)
JST = resolve_zone("Asia/Tokyo")


class _FakeCalendar:
    def __init__(self, clock) -> None:
        self.clock = clock
        self.events: dict[str, ExternalEvent] = {}
        self.writes: list[tuple[Any, ...]] = []
        self._counter = 0

    def ensure_calendar(self, calendar_id: str = "", name: str = "") -> CalendarInfo:
        return CalendarInfo(calendar_id="https://dav.example.com/cal/tutti", name=name, url="https://dav.example.com/cal/tutti/")

    def _store(self, event: ExternalEvent) -> ExternalEvent:
        self.events[event.id] = event
        return replace(event)

    def get_event_by_id(self, external_id: str) -> ExternalEvent | None:
        event = self.events.get(external_id)
        return replace(event) if event else None

    def list_events(self, start: datetime, end: datetime) -> list[ExternalEvent]:
        return [replace(event) for event in self.events.values() if overlaps(event.start, event.end, start, end)]

    def create_event(self, title, start, end, location="", description="") -> ExternalEvent:
        self._counter += 1
        self.writes.append(("create", title))
        return self._store(
            ExternalEvent(
                id=f"ext-{self._counter}",
                title=title,
                start=start,
                end=end,
                location=location,
                description=description,
                last_modified=self.clock(),
            )
        )

    def create_all_day_event(self, title, start_date: date, end_date=None, location="", description="") -> ExternalEvent:
        self._counter += 1
        self.writes.append(("create_all_day", title))
        return self._store(
            ExternalEvent(
                id=f"ext-{self._counter}",
                title=title,
                start=local_midnight(start_date, JST),
                end=local_midnight(end_date or start_date + timedelta(days=1), JST),
                all_day=True,
                location=location,
                description=description,
                last_modified=self.clock(),
            )
        )

    def update_fields(self, external_id: str, fields: dict[str, Any]) -> ExternalEvent | None:
        self.writes.append(("update", external_id, tuple(sorted(fields))))
        event = self.events.get(external_id)
        if event is None:
            return None
        return self._store(replace(event, **fields, last_modified=self.clock()))

    def delete_event(self, external_id: str) -> bool:
        self.writes.append(("delete", external_id))
        return self.events.pop(external_id, None) is not None


class SyncEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.now = datetime(2026, 2, 20, 9, 0, tzinfo=timezone.utc)
        clock = lambda: self.now  # noqa: E731
        self.config_manager = ConfigManager(str(Path(self.temp_dir.name) / "config.yaml"))
        self.ledger = Ledger(str(Path(self.temp_dir.name) / "state.db"), tz=JST, clock=clock)
        self.engine = SyncEngine(self.config_manager, self.ledger, clock=clock)
        self.calendar = _FakeCalendar(clock)
        patcher = mock.patch("tutti.sync_engine.CalDAVService", return_value=self.calendar)
        self.service_cls = patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _configure(self) -> None:
        self.config_manager.update(
            {"caldav": {"base_url": "https://dav.example.com", "username": "band", "password": "secret"}}
        )

    def _create(self, options: WriteOptions = QUIET, **fields) -> str:
        values = {"title": "Practice", "start": "2026-03-01T05:00:00Z", "end": "2026-03-01T08:00:00Z"}
        values.update(fields)
        return self.ledger.create_event(values, options)

    def test_sync_all_without_settings_touches_nothing(self) -> None:
        self._create()

        outcome = self.engine.sync_all()

        self.assertEqual(outcome.failed, 1)
        self.assertIn("CalDAV config missing", outcome.errors[0])
        self.service_cls.assert_not_called()
        self.assertEqual(self.ledger.recent_sync_runs()[0]["status"], "skipped")

    def test_sync_all_pushes_imports_and_refreshes(self) -> None:
        self._configure()
        self._create(id="e1")
        human = ExternalEvent(
            id="human-1",
            title="Concert",
            start=datetime(2026, 3, 8, 5, 0, tzinfo=timezone.utc),
            end=datetime(2026, 3, 8, 8, 0, tzinfo=timezone.utc),
            description="Black dress",
            last_modified=self.now - timedelta(days=1),
        )
        self.calendar.events[human.id] = human

        outcome = self.engine.sync_all(trigger="scheduled")

        self.assertEqual(outcome.failed, 0)
        self.assertEqual(outcome.stats.get("imported"), 1)
        self.assertEqual(outcome.stats.get("created"), 1)
        self.assertEqual(outcome.stats.get("descriptions_refreshed"), 1)
        self.assertIsNotNone(self.ledger.get_event("e1").external_ref)
        self.assertIn("[Attendance]", self.calendar.events["human-1"].description)
        self.assertTrue(self.calendar.events["human-1"].description.startswith("Black dress"))
        self.assertEqual(
            self.config_manager.load().caldav.calendar_id,
            "https://dav.example.com/cal/tutti",
        )
        run = self.ledger.recent_sync_runs()[0]
        self.assertEqual((run["trigger"], run["status"]), ("scheduled", "success"))

    def test_all_day_import_follows_configured_timezone(self) -> None:
        self._configure()
        self.config_manager.update({"sync": {"timezone": "UTC"}})
        self.calendar.events["camp"] = ExternalEvent(
            id="camp",
            title="Camp",
            start=datetime(2026, 3, 10, 0, 0, tzinfo=timezone.utc),
            end=datetime(2026, 3, 11, 0, 0, tzinfo=timezone.utc),
            all_day=True,
            last_modified=self.now - timedelta(days=1),
        )

        self.engine.sync_all()

        imported = self.ledger.get_event_by_external_ref("camp")
        self.assertTrue(imported.is_all_day)
        self.assertEqual(imported.start, datetime(2026, 3, 10, 0, 0, tzinfo=timezone.utc))
        self.assertEqual(imported.end, datetime(2026, 3, 11, 0, 0, tzinfo=timezone.utc))
        self.assertEqual(self.ledger.tz, timezone.utc)

    def test_second_sync_all_is_quiet(self) -> None:
        self._configure()
        self._create(id="e1")
        self.engine.sync_all()
        writes = len(self.calendar.writes)
        self.now += timedelta(minutes=30)

        outcome = self.engine.sync_all()

        self.assertEqual(outcome.failed, 0)
        self.assertEqual(len(self.calendar.writes), writes)

    def test_user_writes_are_pushed_through_listener(self) -> None:
        self._configure()
        event_id = self._create(options=WriteOptions())

        self.assertEqual(self.calendar.writes, [("create", "Practice")])
        ref = self.ledger.get_event(event_id).external_ref

        self.ledger.update_event(event_id, {"location": "Hall B"})
        self.assertEqual(self.calendar.writes[-1], ("update", ref, ("location",)))

        self.ledger.upsert_response(event_id, "anon-Mio", "attend", comment="on time")
        self.assertEqual(self.calendar.writes[-1], ("update", ref, ("description",)))
        self.assertIn("○ Mio: on time", self.calendar.events[ref].description)

    def test_sync_one_event_reports_missing_event(self) -> None:
        self._configure()
        result = self.engine.sync_one_event("nope")
        self.assertFalse(result.ok)
        self.assertEqual(result.error, "event not found")

    def test_delete_event_soft_deletes_and_removes_calendar_copy(self) -> None:
        self._configure()
        event_id = self._create()
        ref = self.engine.sync_one_event(event_id).external_ref

        self.assertTrue(self.engine.delete_event(event_id))

        self.assertEqual(self.ledger.get_event(event_id).status, "deleted")
        self.assertNotIn(ref, self.calendar.events)
        self.assertFalse(self.engine.delete_event(event_id))

    def test_delete_event_tolerates_missing_calendar_copy(self) -> None:
        self._configure()
        event_id = self._create(external_ref="ext-vanished")

        self.assertTrue(self.engine.delete_event(event_id))
        audit = self.ledger.recent_audit_events()[0]
        self.assertEqual(audit["action"], "delete_event")
        self.assertFalse(audit["details"]["external_deleted"])

    def test_scheduled_diff_sync_guard_skips_calendar(self) -> None:
        self._configure()
        event_id = self._create()
        self.engine.sync_one_event(event_id)
        self.ledger.upsert_response(event_id, "anon-Mio", "absent", options=QUIET)
        constructed = self.service_cls.call_count

        first = self.engine.scheduled_diff_sync()
        self.now += timedelta(minutes=2)
        second = self.engine.scheduled_diff_sync()

        self.assertTrue(first.ran)
        self.assertEqual(first.refreshed, 1)
        self.assertFalse(second.ran)
        self.assertEqual(self.service_cls.call_count, constructed + 1)

    def test_scheduled_diff_sync_without_settings(self) -> None:
        self.assertEqual(self.engine.scheduled_diff_sync().reason, "not_configured")


if __name__ == "__main__":
    unittest.main()
