"""Tests for the configuration handler."""

import os
import tempfile
import unittest
from unittest.mock import patch

import yaml

from spexus.config import Config


class TestConfig(unittest.TestCase):
    """Test cases for Config."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = os.path.join(self.temp_dir.name, "config.yml")

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_defaults_when_file_missing(self):
        config = Config(self.config_path)
        self.assertEqual(config.get("mcp", "slow_threshold_ms"), 100)
        self.assertEqual(config.get("api", "port"), 8080)
        self.assertIsNone(config.get("missing"))
        self.assertEqual(config.get("mcp", "missing", "fallback"), "fallback")

    def test_file_values_merge_over_defaults(self):
        with open(self.config_path, "w", encoding="utf-8") as handle:
            yaml.safe_dump({"mcp": {"slow_threshold_ms": 250}, "extra": {"a": 1}}, handle)

        config = Config(self.config_path)
        self.assertEqual(config.get("mcp", "slow_threshold_ms"), 250)
        self.assertEqual(config.get("mcp", "resources_list_timeout"), 30)
        self.assertEqual(config.get("extra", "a"), 1)

    def test_invalid_yaml_falls_back_to_defaults(self):
        with open(self.config_path, "w", encoding="utf-8") as handle:
            handle.write("mcp: [unclosed")
        config = Config(self.config_path)
        self.assertEqual(config.get("mcp", "port"), 8765)

    def test_save_round_trip(self):
        config = Config(self.config_path)
        config.set("api", "port", 9000)
        self.assertTrue(config.save())
        self.assertEqual(Config(self.config_path).get("api", "port"), 9000)

    def test_defaults_are_not_shared_between_instances(self):
        first = Config(self.config_path)
        first.set("mcp", "port", 1)
        self.assertEqual(Config(self.config_path).get("mcp", "port"), 8765)

    def test_database_path_override(self):
        config = Config(self.config_path)
        with patch.dict(os.environ, {"SPEXUS_DB_PATH": "/tmp/override.sqlite"}):
            self.assertEqual(config.database_path(), "/tmp/override.sqlite")
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("SPEXUS_DB_PATH", None)
            self.assertTrue(config.database_path().endswith("database.sqlite"))


if __name__ == "__main__":
    unittest.main()
