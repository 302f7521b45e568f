"""
Prompt construction for product extraction.

build_prompt is pure: the same (url, instruction, excerpt) always yields the
same text.
"""

from .sites import SiteProfile, profile_for

EXTRACTION_GUIDELINES = """IMPORTANT EXTRACTION GUIDELINES:
- Extract EXACTLY the data fields requested in the user instructions above
- Do NOT add fields that weren't requested unless they're essential
- For price fields, extract the CURRENT selling price with currency symbol
- Format prices as strings with currency symbols (e.g., "$1,299.99")
- If there are multiple prices shown, use the actual current selling price, not RRP/MSRP
- Flatten nested data: lists and sub-objects become comma-separated strings
- Return all data in a clean JSON format"""

OUTPUT_RULE = (
    "Return ONLY a valid JSON object with the extracted data. "
    "No explanations or markdown."
)

BASE_TEMPLATE = """
You are a specialized e-commerce data extraction expert. Extract structured product data from {site_name}.

URL: {url}

USER INSTRUCTIONS:
{instruction}

{guidelines}

HTML CONTENT:
{excerpt}

{output_rule}
"""

# Coles pages are heavy client-rendered documents; the model gets landmarks
# for where each block usually sits.
RIGID_GROCERY_TEMPLATE = """
You are a specialized e-commerce data extraction expert working on a {site_name} grocery product page.

URL: {url}

USER INSTRUCTIONS:
{instruction}

{guidelines}

PAGE LAYOUT:
- The product name is the main heading near the top of the page
- The current price sits directly below the product name; the unit price (e.g., "$1.20 per 100g") follows it
- Promotional prices and multi-buy offers appear as a badge next to the price
- Nutritional information is a table with "Quantity per serving" and "Quantity per 100g" columns
- Ingredients follow the nutrition table under an "Ingredients" heading
- Take values from these blocks only; ignore recommended and sponsored products

HTML CONTENT:
{excerpt}

{output_rule}
"""

# Used when the page content came from a salvage tier and may be incomplete.
SALVAGE_ONLY_TEMPLATE = """
You are a specialized e-commerce data extraction expert. The content below for this {site_name} product was recovered without a full page load and may be incomplete.

URL: {url}

USER INSTRUCTIONS:
{instruction}

{guidelines}
- Use only values present in the content; do not guess missing values
- Use null for any requested field that cannot be found
- Add a "note" field briefly describing which requested data was unavailable

HTML CONTENT:
{excerpt}

{output_rule}
"""

TEMPLATES = {
    "rigid_grocery": RIGID_GROCERY_TEMPLATE,
    "salvage_only": SALVAGE_ONLY_TEMPLATE,
}

SITE_HINTS = {
    "grocery": """
SITE-SPECIFIC TIPS (only if relevant to user's request):
- For grocery items, pay attention to price per unit (e.g., $/kg)
- Weight/volume information is often part of the product name
- Look for any special offers or multi-buy deals
""",
    "marketplace": """
SITE-SPECIFIC TIPS (only if relevant to user's request):
- Check for "Deal of the Day" or special pricing
- Listings often show multiple prices (list price, deal price); use the price a buyer pays now
- Look for member-specific pricing (e.g., Prime) only if mentioned
""",
}


def build_prompt(url: str, instruction: str, excerpt: str, profile: SiteProfile = None) -> str:
    """
    Builds the extraction prompt for one product page.

    Args:
        url: Product page URL
        instruction: The user's instruction, embedded verbatim
        excerpt: Reduced HTML from reduce_html
        profile: Site profile override (resolved from url when None)
    """
    profile = profile or profile_for(url)
    template = TEMPLATES.get(profile.prompt_template, BASE_TEMPLATE)
    prompt = template.format(
        site_name=profile.name,
        url=url,
        instruction=instruction,
        guidelines=EXTRACTION_GUIDELINES,
        excerpt=excerpt,
        output_rule=OUTPUT_RULE,
    )
    hints = SITE_HINTS.get(profile.prompt_hints)
    if hints:
        prompt += hints
    return prompt
