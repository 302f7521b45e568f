import json
import os
import sys
import tempfile
import unittest
import urllib.error
from unittest import mock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))

from productminer import database
from productminer.errors import FetchError
from productminer.fallbacks import (
    enrich_bws_product,
    fetch_with_robot,
    fetch_with_scraping_proxy,
    robot_fields_to_html,
    salvage_bws_url,
    salvage_with_enrichment,
)
from productminer.sites import profile_for


class FakeResponse:
    def __init__(self, body):
        self.body = body.encode("utf-8")

    def read(self):
        return self.body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class TestBwsSalvage(unittest.TestCase):
    def test_recovers_fields_from_url(self):
        url = "https://bws.com.au/spirits/whisky/product/12345/jack-daniels-tennessee-whiskey-700ml?ref=home"
        record = salvage_bws_url(url)
        self.assertEqual(record["productId"], "12345")
        self.assertEqual(record["productName"], "Jack Daniels Tennessee Whiskey 700ml")
        self.assertEqual(record["category"], "Spirits")
        self.assertEqual(record["volume"], "700ml")
        self.assertEqual(record["sourceUrl"], url)
        self.assertEqual(record["ref"], "home")
        self.assertTrue(record["_salvaged"])
        # fields the URL does not carry are left out
        self.assertNotIn("price", record)
        self.assertNotIn("alcoholPercentage", record)

    def test_price_and_alcohol_from_url(self):
        url = "https://bws.com.au/wine/product/777/shiraz-14.5%-750ml-$24.99"
        record = salvage_bws_url(url)
        self.assertEqual(record["price"], "$24.99")
        self.assertEqual(record["alcoholPercentage"], "14.5%")
        self.assertEqual(record["volume"], "750ml")

    def test_name_falls_back_to_product_id(self):
        record = salvage_bws_url("https://bws.com.au/beer/product/coopers-pale-ale")
        self.assertEqual(record["productId"], "coopers-pale-ale")
        self.assertEqual(record["productName"], "Coopers Pale Ale")

    def test_no_product_id(self):
        self.assertIsNone(salvage_bws_url("https://bws.com.au/spirits/whisky"))


class TestBwsEnrichment(unittest.TestCase):
    def setUp(self):
        self._old_db = database.DB_FILE
        self.tmp = tempfile.TemporaryDirectory()
        database.configure(os.path.join(self.tmp.name, "test.db"))
        database.init_db()

    def tearDown(self):
        database.configure(self._old_db)
        self.tmp.cleanup()

    API_PAYLOAD = {
        "name": "Jack Daniel's Old No.7 Tennessee Whiskey 700mL",
        "price": {"value": 59.0},
        "description": "Mellowed drop by drop through sugar maple charcoal.",
        "brand": "Jack Daniel's",
        "images": [{"url": "https://img/1.jpg"}, {"url": "https://img/2.jpg"}],
        "volume": {"value": 700, "unitCode": "mL"},
        "alcoholPercentage": 40,
    }

    def test_enrich_maps_api_fields(self):
        urlopen = mock.Mock(return_value=FakeResponse(json.dumps(self.API_PAYLOAD)))
        enriched = enrich_bws_product("12345", urlopen=urlopen)
        self.assertEqual(enriched["price"], "$59.0")
        self.assertEqual(enriched["volume"], "700mL")
        self.assertEqual(enriched["alcoholPercentage"], "40%")
        self.assertEqual(enriched["images"], ["https://img/1.jpg", "https://img/2.jpg"])
        request = urlopen.call_args.args[0]
        self.assertEqual(request.full_url, "https://api.bws.com.au/apis/ui/product/12345")

    def test_api_fields_win_and_result_is_flat(self):
        urlopen = mock.Mock(return_value=FakeResponse(json.dumps(self.API_PAYLOAD)))
        url = "https://bws.com.au/spirits/whisky/product/12345/jack-daniels-700ml"
        record = salvage_with_enrichment(url, urlopen=urlopen)
        self.assertEqual(record["productName"], self.API_PAYLOAD["name"])
        self.assertEqual(record["volume"], "700mL")
        self.assertEqual(record["images"], "https://img/1.jpg, https://img/2.jpg")
        self.assertEqual(record["productId"], "12345")
        self.assertTrue(record["_salvaged"])

    def test_enrichment_failure_keeps_url_record(self):
        urlopen = mock.Mock(side_effect=urllib.error.HTTPError("u", 403, "Forbidden", {}, None))
        url = "https://bws.com.au/spirits/whisky/product/12345/jack-daniels-700ml"
        record = salvage_with_enrichment(url, urlopen=urlopen)
        self.assertEqual(record["productName"], "Jack Daniels 700ml")

    def test_enrich_error_raises_fetch_error(self):
        urlopen = mock.Mock(side_effect=urllib.error.URLError("down"))
        with self.assertRaises(FetchError):
            enrich_bws_product("1", urlopen=urlopen)


class TestRobot(unittest.TestCase):
    def test_synthetic_html_escapes_values(self):
        html = robot_fields_to_html({"productName": "<b>Gin</b>", "price": "$45", "notes": None})
        self.assertIn("&lt;b&gt;Gin&lt;/b&gt;", html)
        self.assertIn('data-field="price"', html)
        self.assertIn("$45", html)
        self.assertNotIn("notes", html)

    def test_fetch_with_robot_posts_url(self):
        urlopen = mock.Mock(return_value=FakeResponse('{"success": true, "data": {"productName": "Gin"}}'))
        html = fetch_with_robot("https://bws.com.au/p/1", "key", "robot-1", urlopen=urlopen)
        self.assertIn("Gin", html)
        request = urlopen.call_args.args[0]
        self.assertEqual(request.full_url, "https://api.browse.ai/v2/robots/robot-1/run")
        self.assertEqual(request.get_header("Authorization"), "Bearer key")
        body = json.loads(request.data.decode("utf-8"))
        self.assertEqual(body["url"], "https://bws.com.au/p/1")
        self.assertEqual(body["options"]["waitForSelectors"], [".product-details", ".product-name"])

    def test_unsuccessful_robot_raises(self):
        urlopen = mock.Mock(return_value=FakeResponse('{"success": false, "error": "timeout"}'))
        with self.assertRaises(FetchError) as ctx:
            fetch_with_robot("https://bws.com.au/p/1", "key", "robot-1", urlopen=urlopen)
        self.assertIn("timeout", str(ctx.exception))

    def test_missing_credentials(self):
        with self.assertRaises(FetchError):
            fetch_with_robot("https://bws.com.au/p/1", "key", None)


class TestScrapingProxy(unittest.TestCase):
    def test_site_wait_hints(self):
        urlopen = mock.Mock(return_value=FakeResponse("<html>ok</html>"))
        url = "https://bws.com.au/p/1"
        fetch_with_scraping_proxy(url, "bee", profile=profile_for(url), urlopen=urlopen)
        full_url = urlopen.call_args.args[0].full_url
        self.assertTrue(full_url.startswith("https://api.scrapingbee.com/v1/?"))
        self.assertIn("api_key=bee", full_url)
        self.assertIn("wait=5000", full_url)
        self.assertIn("wait_for=.product-details", full_url)

    def test_no_wait_hints_for_other_sites(self):
        urlopen = mock.Mock(return_value=FakeResponse("<html>ok</html>"))
        url = "https://www.danmurphys.com.au/product/1"
        fetch_with_scraping_proxy(url, "bee", profile=profile_for(url), urlopen=urlopen)
        self.assertNotIn("wait=", urlopen.call_args.args[0].full_url)

    def test_empty_page_raises(self):
        urlopen = mock.Mock(return_value=FakeResponse("   "))
        with self.assertRaises(FetchError):
            fetch_with_scraping_proxy("https://bws.com.au/p/1", "bee", urlopen=urlopen)


if __name__ == "__main__":
    unittest.main()
