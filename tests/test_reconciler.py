import unittest
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from tutti.models import EPOCH, EventRecord, ExternalEvent
from tutti.reconciler import (
    REASON_EXTERNAL_NEWER,
    REASON_LEDGER_AUTHORITATIVE,
    REASON_WATERMARK_INITIALIZED,
    resolve_conflict,
)

JST = ZoneInfo("Asia/Tokyo")
T0 = datetime(2026, 2, 20, 9, 0, tzinfo=timezone.utc)
START = datetime(2026, 3, 1, 5, 0, tzinfo=timezone.utc)


def _record(last_synced_at=T0) -> EventRecord:
    return EventRecord(
        id="e1",
        title="Practice",
        start=START,
        end=START + timedelta(hours=3),
        location="Studio",
        description="Bring music",
        external_ref="ext-1",
        last_synced_at=last_synced_at,
    )


def _external(last_modified: datetime, **kwargs) -> ExternalEvent:
    values = {
        "title": "Practice",
        "start": START,
        "end": START + timedelta(hours=3),
        "location": "Studio",
        "description": "Bring music\n\n[Attendance]\n○ Attend: 3\n[/Attendance]",
    }
    values.update(kwargs)
    return ExternalEvent(id="ext-1", last_modified=last_modified, **values)


class ResolveConflictTests(unittest.TestCase):
    def test_newer_external_overwrites_changed_fields(self) -> None:
        t1 = T0 + timedelta(minutes=5)
        outcome = resolve_conflict(_record(), _external(t1, title="Practice (moved)"), JST)

        self.assertTrue(outcome.applied)
        self.assertEqual(outcome.reason, REASON_EXTERNAL_NEWER)
        self.assertEqual(outcome.changed_fields, ["title"])
        self.assertEqual(outcome.updates, {"title": "Practice (moved)", "last_synced_at": t1})

    def test_equal_timestamps_never_overwrite(self) -> None:
        outcome = resolve_conflict(_record(), _external(T0, title="Other"), JST)
        self.assertFalse(outcome.applied)
        self.assertEqual(outcome.reason, REASON_LEDGER_AUTHORITATIVE)
        self.assertEqual(outcome.updates, {})

    def test_older_external_is_ignored(self) -> None:
        outcome = resolve_conflict(_record(), _external(T0 - timedelta(hours=1), title="Other"), JST)
        self.assertFalse(outcome.applied)
        self.assertEqual(outcome.updates, {})

    def test_unset_watermark_is_initialized_without_overwrite(self) -> None:
        outcome = resolve_conflict(_record(last_synced_at=None), _external(EPOCH, title="Other"), JST)
        self.assertFalse(outcome.applied)
        self.assertEqual(outcome.reason, REASON_WATERMARK_INITIALIZED)
        self.assertEqual(outcome.updates, {"last_synced_at": EPOCH})

    def test_schedule_change_carries_the_whole_schedule(self) -> None:
        t1 = T0 + timedelta(minutes=1)
        moved = START + timedelta(days=1)
        outcome = resolve_conflict(
            _record(),
            _external(t1, start=moved, end=moved + timedelta(hours=3)),
            JST,
        )
        self.assertEqual(outcome.changed_fields, ["start", "end"])
        self.assertEqual(outcome.updates["start"], moved)
        self.assertEqual(outcome.updates["end"], moved + timedelta(hours=3))
        self.assertFalse(outcome.updates["is_all_day"])

    def test_machine_summary_is_not_copied_into_description(self) -> None:
        t1 = T0 + timedelta(minutes=1)
        outcome = resolve_conflict(
            _record(),
            _external(t1, description="New notes\n\n[Attendance]\n○ Attend: 1\n[/Attendance]"),
            JST,
        )
        self.assertEqual(outcome.updates["description"], "New notes")


if __name__ == "__main__":
    unittest.main()
