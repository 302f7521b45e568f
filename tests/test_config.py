import os
import sys
import unittest
from unittest import mock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))

from pydantic import ValidationError

from productminer.config import DEFAULT_DB_FILE, Settings


class TestSettingsFromEnv(unittest.TestCase):
    @mock.patch.dict(os.environ, {}, clear=True)
    def test_defaults(self):
        settings = Settings.from_env()
        self.assertIsNone(settings.gemini_api_key)
        self.assertEqual(settings.db_file, DEFAULT_DB_FILE)
        self.assertEqual(settings.url_delay_s, 2.0)
        self.assertEqual(settings.fetch_max_attempts, 3)
        self.assertEqual(settings.model_max_attempts, 4)
        self.assertFalse(settings.has_scraping_proxy)
        self.assertFalse(settings.has_renderer)

    @mock.patch.dict(os.environ, {
        "GOOGLE_API_KEY": "g-key",
        "SCRAPING_API_KEY": "bee",
        "FCRAWL_API_KEY": "fc",
        "URL_DELAY_S": "0.5",
        "PRODUCTMINER_DB": "/tmp/pm.db",
    }, clear=True)
    def test_aliases_and_values(self):
        settings = Settings.from_env()
        self.assertEqual(settings.gemini_api_key, "g-key")
        self.assertEqual(settings.scrapingbee_api_key, "bee")
        self.assertEqual(settings.firecrawl_api_key, "fc")
        self.assertEqual(settings.url_delay_s, 0.5)
        self.assertEqual(settings.db_file, "/tmp/pm.db")

    @mock.patch.dict(os.environ, {"GEMINI_API_KEY": "env-key", "URL_DELAY_S": "soon"}, clear=True)
    def test_overrides_and_bad_numbers(self):
        settings = Settings.from_env(gemini_api_key=None, url_delay_s=0.0, db_file="cli.db")
        self.assertEqual(settings.gemini_api_key, "env-key")
        self.assertEqual(settings.url_delay_s, 0.0)
        self.assertEqual(settings.db_file, "cli.db")

    @mock.patch.dict(os.environ, {"BROWSE_AI_API_KEY": "b"}, clear=True)
    def test_robot_needs_key_and_robot_id(self):
        self.assertFalse(Settings.from_env().has_robot)
        self.assertTrue(Settings.from_env(browse_ai_robot_id="robot-1").has_robot)

    def test_fetch_attempts_are_bounded(self):
        with self.assertRaises(ValidationError):
            Settings(fetch_max_attempts=9)


if __name__ == "__main__":
    unittest.main()
