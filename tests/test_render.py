import os
import sys
import tempfile
import unittest
from types import SimpleNamespace
from unittest import mock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))

from productminer import database
from productminer.errors import FetchError
from productminer.render import FirecrawlRenderer


class TestFirecrawlRenderer(unittest.TestCase):
    def setUp(self):
        self._old_db = database.DB_FILE
        self.tmp = tempfile.TemporaryDirectory()
        database.configure(os.path.join(self.tmp.name, "test.db"))
        database.init_db()

    def tearDown(self):
        database.configure(self._old_db)
        self.tmp.cleanup()

    def test_returns_html_and_passes_timeout_in_ms(self):
        app = mock.Mock()
        app.scrape.return_value = SimpleNamespace(html="<html>rendered</html>", raw_html=None)
        renderer = FirecrawlRenderer("fc", timeout_s=30, app=app)
        self.assertEqual(renderer.render("https://a"), "<html>rendered</html>")
        app.scrape.assert_called_once_with("https://a", formats=["html"], timeout=30000)

    def test_dict_results(self):
        app = mock.Mock()
        app.scrape.return_value = {"rawHtml": "<html>raw</html>"}
        self.assertEqual(FirecrawlRenderer("fc", app=app).render("https://a"), "<html>raw</html>")

    def test_failures_become_fetch_errors(self):
        app = mock.Mock()
        app.scrape.side_effect = RuntimeError("402 Payment Required")
        with self.assertRaises(FetchError) as ctx:
            FirecrawlRenderer("fc", app=app).render("https://a")
        self.assertIn("402", str(ctx.exception))

        app.scrape.side_effect = None
        app.scrape.return_value = SimpleNamespace(html=None, raw_html=None)
        with self.assertRaises(FetchError):
            FirecrawlRenderer("fc", app=app).render("https://a")

    def test_requires_key(self):
        with self.assertRaises(ValueError):
            FirecrawlRenderer(None)


if __name__ == "__main__":
    unittest.main()
