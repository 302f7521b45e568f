import os
import sys
import tempfile
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))

from productminer import database
from productminer.parser import PARSE_FAILURE, parse_product_data

URL = "https://shop.example.com/p/42"


class TestParseProductData(unittest.TestCase):
    def setUp(self):
        self._old_db = database.DB_FILE
        self.tmp = tempfile.TemporaryDirectory()
        database.configure(os.path.join(self.tmp.name, "test.db"))
        database.init_db()

    def tearDown(self):
        database.configure(self._old_db)
        self.tmp.cleanup()

    def test_plain_json(self):
        record = parse_product_data('{"productName": "Dairy Milk", "price": "$4.50"}', URL)
        self.assertEqual(record, {"sourceUrl": URL, "productName": "Dairy Milk", "price": "$4.50"})

    def test_code_fences_are_stripped(self):
        text = '```json\n{"productName": "Dairy Milk"}\n```'
        record = parse_product_data(text, URL)
        self.assertEqual(record["productName"], "Dairy Milk")
        self.assertNotIn("_salvaged", record)

    def test_nested_values_are_flattened(self):
        text = '{"allergens": ["milk", "soy"], "nutrition": {"fat": "30g", "sugar": "56g"}}'
        record = parse_product_data(text, URL)
        self.assertEqual(record["allergens"], "milk, soy")
        self.assertEqual(record["nutrition"], "fat: 30g, sugar: 56g")

    def test_json_embedded_in_prose_is_salvaged(self):
        text = 'Sure! Here is the data:\n{"productName": "Dairy Milk",\n "price": "$4.50"}\nLet me know.'
        record = parse_product_data(text, URL)
        self.assertTrue(record["_salvaged"])
        self.assertEqual(record["sourceUrl"], URL)
        self.assertEqual(record["price"], "$4.50")

    def test_model_cannot_override_source_url(self):
        record = parse_product_data('{"productName": "Gin", "sourceUrl": "https://other.example/"}', URL)
        self.assertEqual(record["sourceUrl"], URL)
        self.assertEqual(list(record), ["sourceUrl", "productName"])

    def test_salvage_tag_and_url_survive_model_keys(self):
        text = 'Result: {"productName": "Gin", "_salvaged": false, "sourceUrl": "https://other.example/"} done'
        record = parse_product_data(text, URL)
        self.assertIs(record["_salvaged"], True)
        self.assertEqual(record["sourceUrl"], URL)
        self.assertEqual(record["productName"], "Gin")

    def test_garbage_returns_error_record(self):
        record = parse_product_data("I could not find any product.", URL)
        self.assertEqual(record, {"error": PARSE_FAILURE, "url": URL})

    def test_json_array_is_not_a_record(self):
        record = parse_product_data("[1, 2, 3]", URL)
        self.assertEqual(record, {"error": PARSE_FAILURE, "url": URL})

    def test_empty_text(self):
        self.assertEqual(parse_product_data("", URL), {"error": PARSE_FAILURE, "url": URL})
        self.assertEqual(parse_product_data(None, URL), {"error": PARSE_FAILURE, "url": URL})

    def test_coles_last_resort_uses_url_slug(self):
        url = "https://www.coles.com.au/product/cadbury-dairy-milk-180g-123456"
        record = parse_product_data("nothing useful", url)
        self.assertEqual(record, {
            "productName": "Cadbury",
            "sourceUrl": url,
            "_salvaged": True,
            "error": "Partial data only - extraction failed",
        })

    def test_coles_last_resort_without_product_path(self):
        url = "https://www.coles.com.au/browse/pantry"
        record = parse_product_data("nothing useful", url)
        self.assertEqual(record["productName"], "Coles Product")


if __name__ == "__main__":
    unittest.main()
