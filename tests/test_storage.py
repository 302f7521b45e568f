import io
import json
import os
import sys
import tempfile
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))

import pandas as pd
from openpyxl import load_workbook

from productminer.storage import SHEET_NAME, column_order, export_bytes, records_to_frame, save_results

RECORDS = [
    {"sourceUrl": "https://a", "productName": "Dairy Milk", "price": "$4.50"},
    {"error": "Failed to process URL: refused", "url": "https://b"},
    {"sourceUrl": "https://c", "productName": "Gin", "volume": "700ml"},
]


class TestFrames(unittest.TestCase):
    def test_columns_follow_first_appearance(self):
        self.assertEqual(
            column_order(RECORDS),
            ["sourceUrl", "productName", "price", "error", "url", "volume"],
        )

    def test_missing_fields_are_blank(self):
        frame = records_to_frame(RECORDS)
        self.assertEqual(len(frame), 3)
        self.assertTrue(pd.isna(frame.loc[0, "volume"]))
        self.assertEqual(frame.loc[1, "error"], "Failed to process URL: refused")


class TestSaveResults(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmp.cleanup()

    def path(self, name):
        return os.path.join(self.tmp.name, "out", name)

    def test_csv(self):
        written = save_results(RECORDS, self.path("products.csv"))
        self.assertTrue(os.path.isabs(written))
        frame = pd.read_csv(written)
        self.assertEqual(list(frame.columns), column_order(RECORDS))
        self.assertEqual(frame.loc[2, "volume"], "700ml")

    def test_json_is_a_list(self):
        written = save_results(RECORDS, self.path("products.json"))
        with open(written, encoding="utf-8") as f:
            self.assertEqual(json.load(f), RECORDS)

    def test_json_with_metadata(self):
        written = save_results(RECORDS, self.path("products.json"), metadata={"runId": "run-1"})
        with open(written, encoding="utf-8") as f:
            payload = json.load(f)
        self.assertEqual(payload["results"], RECORDS)
        self.assertEqual(payload["metadata"]["runId"], "run-1")
        self.assertIn("timestamp", payload["metadata"])

    def test_xlsx_sheet(self):
        written = save_results(RECORDS, self.path("products.xlsx"))
        workbook = load_workbook(written)
        self.assertEqual(workbook.sheetnames, [SHEET_NAME])
        rows = list(workbook[SHEET_NAME].iter_rows(values_only=True))
        self.assertEqual(list(rows[0]), column_order(RECORDS))
        self.assertEqual(len(rows), 4)

    def test_unsupported_extension(self):
        with self.assertRaises(ValueError):
            save_results(RECORDS, self.path("products.parquet"))

    def test_nothing_to_save(self):
        self.assertIsNone(save_results([], self.path("products.csv")))
        self.assertFalse(os.path.exists(self.path("products.csv")))


class TestExportBytes(unittest.TestCase):
    def test_formats(self):
        self.assertEqual(json.loads(export_bytes(RECORDS, "json")), RECORDS)
        csv_text = export_bytes(RECORDS, "csv").decode("utf-8")
        self.assertTrue(csv_text.startswith("sourceUrl,productName,price,error,url,volume"))
        workbook = load_workbook(io.BytesIO(export_bytes(RECORDS, "xlsx")))
        self.assertEqual(workbook.sheetnames, [SHEET_NAME])

    def test_unknown_format(self):
        with self.assertRaises(ValueError):
            export_bytes(RECORDS, "pdf")


if __name__ == "__main__":
    unittest.main()
