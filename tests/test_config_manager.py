import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from lmssync.config_manager import ConfigManager
from lmssync.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_creates_default_config_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path))
            self.assertTrue(config_path.exists())
            self.assertEqual(manager.load().lms.timeout_seconds, 30)

    def test_update_deep_merges(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"lms": {"base_url": "https://lms.example.edu"}})
            config = manager.update({"lms": {"timeout_seconds": 5}})
            self.assertEqual(config.lms.base_url, "https://lms.example.edu")
            self.assertEqual(config.lms.timeout_seconds, 5)

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "lms": {"base_url": "https://lms.example.edu", "timeout_seconds": 12},
                    "sync": {"subject_color": "#FF0000"},
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
            self.assertEqual(data["lms"]["base_url"], "https://lms.example.edu")
            self.assertEqual(data["sync"]["subject_color"], "#FF0000")


if __name__ == "__main__":
    unittest.main()
