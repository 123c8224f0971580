import unittest
from datetime import datetime, timezone

from tutti.models import (
    DEFAULT_PART_ORDER,
    AppConfig,
    DescriptionConfig,
    ResponseRecord,
    SyncConfig,
    SyncOutcome,
    Tally,
    normalize_response_status,
    parse_iso_datetime,
)


class ModelsTests(unittest.TestCase):
    def test_sync_config_clamps_intervals(self) -> None:
        cfg = SyncConfig.from_dict(
            {
                "full_sync_interval_seconds": 10,
                "diff_interval_seconds": 5,
                "diff_min_interval_seconds": -3,
                "window_past_days": -1,
                "timezone": "",
            }
        )
        self.assertEqual(cfg.full_sync_interval_seconds, 300)
        self.assertEqual(cfg.diff_interval_seconds, 60)
        self.assertEqual(cfg.diff_min_interval_seconds, 0)
        self.assertEqual(cfg.window_past_days, 0)
        self.assertEqual(cfg.timezone, "Asia/Tokyo")

    def test_description_config_part_order_defaults(self) -> None:
        self.assertEqual(DescriptionConfig.from_dict({"part_order": ["", "  "]}).part_order, DEFAULT_PART_ORDER)
        self.assertEqual(DescriptionConfig.from_dict({"part_order": [" Vn ", "Va"]}).part_order, ["Vn", "Va"])

    def test_app_config_round_trip_keeps_defaults(self) -> None:
        cfg = AppConfig.from_dict({"caldav": {"base_url": " https://dav.example.com ", "username": "u"}})
        self.assertTrue(cfg.caldav.is_configured)
        self.assertEqual(cfg.caldav.base_url, "https://dav.example.com")
        self.assertEqual(cfg.caldav.calendar_name, "Tutti Events")
        self.assertFalse(AppConfig.from_dict({}).caldav.is_configured)

    def test_status_symbols_normalize(self) -> None:
        self.assertEqual(normalize_response_status("○"), "attend")
        self.assertEqual(normalize_response_status("△"), "tentative")
        self.assertEqual(normalize_response_status("×"), "absent")
        self.assertEqual(normalize_response_status("-"), "unset")
        self.assertEqual(normalize_response_status(" Attend "), "attend")

    def test_tally_counts_unknown_status_as_unset(self) -> None:
        tally = Tally.from_responses(
            [
                ResponseRecord(event_id="e", user_key="a", status="attend"),
                ResponseRecord(event_id="e", user_key="b", status="attend"),
                ResponseRecord(event_id="e", user_key="c", status="bogus"),
            ]
        )
        self.assertEqual((tally.attend, tally.unset, tally.total), (2, 1, 3))

    def test_parse_iso_datetime_accepts_z_suffix(self) -> None:
        self.assertEqual(
            parse_iso_datetime("2026-03-01T05:00:00Z"),
            datetime(2026, 3, 1, 5, 0, tzinfo=timezone.utc),
        )
        self.assertIsNone(parse_iso_datetime(""))
        with self.assertRaises(ValueError):
            parse_iso_datetime("soon")

    def test_sync_outcome_merge(self) -> None:
        outcome = SyncOutcome()
        outcome.success("imported")
        other = SyncOutcome()
        other.success("imported")
        other.failure("e9: timeout")
        outcome.merge(other)
        self.assertEqual(outcome.to_dict(), {
            "succeeded": 2,
            "failed": 1,
            "errors": ["e9: timeout"],
            "stats": {"imported": 2},
        })


if __name__ == "__main__":
    unittest.main()
