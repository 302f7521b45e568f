import os
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))

from productminer.prompts import build_prompt

INSTRUCTION = "Extract the product name, current price and weight."
EXCERPT = "<h1>Dairy Milk 180g</h1><div class='price'>$4.50</div>"


class TestBasePrompt(unittest.TestCase):
    def test_embeds_url_instruction_and_excerpt(self):
        url = "https://shop.example.com/p/42"
        prompt = build_prompt(url, INSTRUCTION, EXCERPT)
        self.assertIn(f"URL: {url}", prompt)
        self.assertIn(INSTRUCTION, prompt)
        self.assertIn(EXCERPT, prompt)
        self.assertIn("Return ONLY a valid JSON object", prompt)
        self.assertIn("not RRP/MSRP", prompt)
        self.assertIn("currency symbol", prompt)
        self.assertNotIn("SITE-SPECIFIC TIPS", prompt)

    def test_is_deterministic(self):
        url = "https://shop.example.com/p/42"
        self.assertEqual(build_prompt(url, INSTRUCTION, EXCERPT), build_prompt(url, INSTRUCTION, EXCERPT))

    def test_instruction_with_braces_is_verbatim(self):
        instruction = 'Return {"name": ..., "price": ...}'
        prompt = build_prompt("https://shop.example.com/p/1", instruction, EXCERPT)
        self.assertIn(instruction, prompt)

    def test_site_name_for_known_retailer(self):
        prompt = build_prompt("https://www.jbhifi.com.au/products/tv", INSTRUCTION, EXCERPT)
        self.assertIn("from JB Hi-Fi", prompt)


class TestSiteAugmentation(unittest.TestCase):
    def test_grocery_tips_for_woolworths(self):
        prompt = build_prompt("https://www.woolworths.com.au/shop/productdetails/1/x", INSTRUCTION, EXCERPT)
        self.assertIn("SITE-SPECIFIC TIPS", prompt)
        self.assertIn("price per unit", prompt)

    def test_marketplace_tips_for_amazon(self):
        prompt = build_prompt("https://www.amazon.com/dp/B000123", INSTRUCTION, EXCERPT)
        self.assertIn("Deal of the Day", prompt)

    def test_marketplace_tips_for_ebay(self):
        prompt = build_prompt("https://www.ebay.com.au/itm/1234", INSTRUCTION, EXCERPT)
        self.assertIn("Deal of the Day", prompt)

    def test_coles_uses_layout_template(self):
        prompt = build_prompt("https://www.coles.com.au/product/x-123", INSTRUCTION, EXCERPT)
        self.assertIn("PAGE LAYOUT", prompt)
        self.assertIn("Nutritional information", prompt)
        self.assertIn("price per unit", prompt)
        self.assertIn(INSTRUCTION, prompt)

    def test_bws_requests_note_field(self):
        prompt = build_prompt("https://bws.com.au/spirits/product/123/vodka", INSTRUCTION, EXCERPT)
        self.assertIn('"note"', prompt)
        self.assertIn("may be incomplete", prompt)


if __name__ == "__main__":
    unittest.main()
