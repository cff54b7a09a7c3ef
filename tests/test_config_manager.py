import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from calmirror.config_manager import ConfigManager
from calmirror.errors import ConfigurationError
from calmirror.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_missing_file_is_created_with_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path))
            self.assertTrue(config_path.exists())
            self.assertEqual(manager.load().sync.window_days, 31)

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "caldav": {"base_url": "https://dav.example.com", "username": "u", "password": "p"},
                    "mirror": {"destination_calendar_id": "dest", "source_calendar_ids": ["a", "b"]},
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
            self.assertFalse(config_path.with_suffix(".yaml.tmp").exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["caldav"]["base_url"], "https://dav.example.com")
            self.assertEqual(data["mirror"]["source_calendar_ids"], ["a", "b"])

    def test_update_merges_nested_sections(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"mirror": {"title_by_calendar": {"a": "Work"}, "default_title": "Blocked"}})
            updated = manager.update({"mirror": {"reset_hour": 5}})
            self.assertEqual(updated.mirror.title_by_calendar, {"a": "Work"})
            self.assertEqual(updated.mirror.default_title, "Blocked")
            self.assertEqual(updated.mirror.reset_hour, 5)

    def test_malformed_file_raises_configuration_error(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            for text in ("mirror: [unclosed\n", "- just\n- a list\n"):
                config_path.write_text(text, encoding="utf-8")
                with self.assertRaises(ConfigurationError):
                    manager.load()

    def test_empty_file_loads_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            config_path.write_text("", encoding="utf-8")
            self.assertEqual(ConfigManager(str(config_path)).load(), AppConfig())

    def test_masked_hides_password(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"caldav": {"password": "secret"}})
            self.assertEqual(manager.masked()["caldav"]["password"], "***")
            self.assertEqual(manager.load().caldav.password, "secret")


if __name__ == "__main__":
    unittest.main()
