import json
import os
import sys
import tempfile
import unittest
from unittest import mock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))

from typer.testing import CliRunner

from productminer import __version__, database
from productminer.main import app
from productminer.pipeline import ExtractionResult

runner = CliRunner()


class CliTestCase(unittest.TestCase):
    def setUp(self):
        self._old_db = database.DB_FILE
        self.tmp = tempfile.TemporaryDirectory()
        self.db = os.path.join(self.tmp.name, "test.db")

    def tearDown(self):
        database.configure(self._old_db)
        self.tmp.cleanup()


class TestCommands(CliTestCase):
    def test_version(self):
        result = runner.invoke(app, ["version"])
        self.assertEqual(result.exit_code, 0)
        self.assertIn(__version__, result.stdout)

    def test_progress_json_without_runs(self):
        result = runner.invoke(app, ["progress", "--json", "--db", self.db])
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(json.loads(result.stdout)["status"], "No active extraction")

    def test_cancel_without_runs_fails(self):
        result = runner.invoke(app, ["cancel", "--db", self.db])
        self.assertEqual(result.exit_code, 1)
        self.assertIn("No active extraction", result.stdout)

    def test_export_unknown_run_fails(self):
        result = runner.invoke(app, ["export", "missing", "--db", self.db])
        self.assertEqual(result.exit_code, 1)

    def test_export_stored_run(self):
        database.configure(self.db)
        database.init_db()
        database.save_extractions([{"sourceUrl": "https://a", "productName": "Gin"}], "run-1")
        output = os.path.join(self.tmp.name, "out.json")
        result = runner.invoke(app, ["export", "run-1", "--output", output, "--db", self.db])
        self.assertEqual(result.exit_code, 0)
        with open(output, encoding="utf-8") as f:
            payload = json.load(f)
        self.assertEqual(payload["results"][0]["productName"], "Gin")
        self.assertEqual(payload["metadata"]["run_id"], "run-1")


class TestExtractCommand(CliTestCase):
    def test_invalid_export_format(self):
        result = runner.invoke(app, ["extract", "--url", "https://a", "--instruction", "x", "--export-format", "pdf"])
        self.assertEqual(result.exit_code, 1)

    def test_requires_urls(self):
        result = runner.invoke(app, ["extract", "--instruction", "x", "--db", self.db, "--gemini-api-key", "k"])
        self.assertEqual(result.exit_code, 1)

    @mock.patch("productminer.main.run_extraction")
    def test_runs_pipeline_with_cli_settings(self, mocked_run):
        mocked_run.return_value = ExtractionResult(
            records=[{"sourceUrl": "https://a", "productName": "Gin"}],
            artifact=None,
            run_id="run-1",
        )
        result = runner.invoke(app, [
            "extract",
            "--url", "https://a",
            "--instruction", "name",
            "--delay", "0",
            "--db", self.db,
            "--gemini-api-key", "k",
        ])
        self.assertEqual(result.exit_code, 0, result.stdout)
        args, kwargs = mocked_run.call_args
        self.assertEqual(args, (["https://a"], "name"))
        self.assertEqual(kwargs["settings"].gemini_api_key, "k")
        self.assertEqual(kwargs["settings"].url_delay_s, 0.0)
        self.assertIn("Extracted data from 1/1 URLs", result.stdout)


if __name__ == "__main__":
    unittest.main()
