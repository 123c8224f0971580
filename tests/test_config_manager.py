import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from tutti.config_manager import ConfigManager
from tutti.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "caldav": {"base_url": "https://dav.example.com", "username": "u", "password": "p"},
                    "description": {"show_part_breakdown": True},
                }
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            self.assertTrue(config_path.exists())
            self.assertFalse(Path(str(config_path) + ".tmp").exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["caldav"]["base_url"], "https://dav.example.com")
            self.assertTrue(data["description"]["show_part_breakdown"])

    def test_update_keeps_password_for_blank_or_masked_values(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"caldav": {"username": "band", "password": "secret"}})

            manager.update({"caldav": {"password": "***"}})
            manager.update({"caldav": {"password": "", "calendar_name": "Rehearsals"}})

            config = manager.load()
            self.assertEqual(config.caldav.password, "secret")
            self.assertEqual(config.caldav.calendar_name, "Rehearsals")
            self.assertEqual(manager.masked()["caldav"]["password"], "***")

    def test_update_merges_nested_sections(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            config = manager.update({"sync": {"diff_interval_seconds": 120}})
            self.assertEqual(config.sync.diff_interval_seconds, 120)
            self.assertEqual(config.sync.timezone, "Asia/Tokyo")
            self.assertEqual(config.sync.window_future_days, 365)

    def test_update_drops_unknown_sections(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            manager.update({"ai": {"api_key": "x"}, "sync": {"window_past_days": 7}})

            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertNotIn("ai", data)
            self.assertEqual(data["sync"]["window_past_days"], 7)

    def test_environment_password_is_not_persisted(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            manager.update({"caldav": {"password": "from-file"}})

            with mock.patch.dict("os.environ", {"TUTTI_CALDAV_PASSWORD": "from-env"}):
                self.assertEqual(manager.load().caldav.password, "from-env")
                manager.update({"caldav": {"username": "band"}})

            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["caldav"]["password"], "from-file")
            self.assertEqual(data["caldav"]["username"], "band")

    def test_set_calendar_id_writes_only_on_change(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.set_calendar_id("https://dav.example.com/cal/tutti")
            self.assertEqual(manager.load().caldav.calendar_id, "https://dav.example.com/cal/tutti")

            with mock.patch.object(manager, "save") as save:
                manager.set_calendar_id("https://dav.example.com/cal/tutti")
            save.assert_not_called()


if __name__ == "__main__":
    unittest.main()
