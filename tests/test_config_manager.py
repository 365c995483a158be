import errno
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from timeline_sync.config_manager import SECRET_ENV_VAR, ConfigManager
from timeline_sync.errors import AppError
from timeline_sync.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_creates_default_config_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path))
            self.assertTrue(config_path.exists())
            self.assertEqual(manager.load().sync.window_months_forward, 18)

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {"connector": {"base_url": "http://connector.internal:4001", "internal_secret": "s3cret"}}
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["connector"]["base_url"], "http://connector.internal:4001")
            self.assertEqual(data["connector"]["internal_secret"], "s3cret")
            self.assertFalse(config_path.with_suffix(".yaml.tmp").exists())

    def test_update_keeps_secret_when_masked_value_sent(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"connector": {"internal_secret": "s3cret"}})
            updated = manager.update({"connector": {"internal_secret": "***", "timeout_seconds": 30}})
            self.assertEqual(updated.connector.internal_secret, "s3cret")
            self.assertEqual(updated.connector.timeout_seconds, 30)
            self.assertEqual(manager.masked()["connector"]["internal_secret"], "***")

    def test_update_merges_nested_sections(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            updated = manager.update({"sync": {"org_unit_chunk_size": 10}})
            self.assertEqual(updated.sync.org_unit_chunk_size, 10)
            self.assertEqual(updated.sync.window_months_back, 3)

    def test_env_secret_overrides_file_without_being_saved(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            manager.update({"connector": {"internal_secret": "from-file"}})
            with mock.patch.dict(os.environ, {SECRET_ENV_VAR: "from-env"}):
                self.assertEqual(manager.load().connector.internal_secret, "from-env")
                manager.update({"sync": {"delete_batch_size": 100}})
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["connector"]["internal_secret"], "from-file")
            self.assertEqual(data["sync"]["delete_batch_size"], 100)

    def test_invalid_yaml_raises_config_invalid(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            config_path.write_text("connector: [unclosed\n", encoding="utf-8")
            manager = ConfigManager(str(config_path))
            with self.assertRaises(AppError) as ctx:
                manager.load()
            self.assertEqual(ctx.exception.code, "config_invalid")


if __name__ == "__main__":
    unittest.main()
