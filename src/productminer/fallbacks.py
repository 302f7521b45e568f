"""
Fallback fetch tiers for sites that block plain HTTP scraping.

- Scraping proxy (ScrapingBee): JS rendering through a premium proxy.
- Managed robot (Browse AI): a pre-trained robot returns product fields,
  which are re-serialized into a small HTML document.
- URL salvage: product facts recovered from the URL itself, optionally
  enriched from the site's product API.
"""

import html
import json
import re
import urllib.request
from typing import Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlparse

from .database import log_event
from .errors import FetchError
from .formatting import flatten_record, title_from_slug
from .sites import SiteProfile

SCRAPINGBEE_ENDPOINT = "https://api.scrapingbee.com/v1/"
BROWSE_AI_RUN_ENDPOINT = "https://api.browse.ai/v2/robots/{robot_id}/run"
BWS_PRODUCT_API = "https://api.bws.com.au/apis/ui/product/{product_id}"

DEFAULT_ROBOT_SELECTORS = [".product-details", ".product-name"]
API_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


def _read(request, timeout: float, urlopen: Callable) -> str:
    with urlopen(request, timeout=timeout) as resp:
        raw = resp.read()
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw


# =============================================================================
# Scraping proxy
# =============================================================================

def fetch_with_scraping_proxy(
    url: str,
    api_key: str,
    profile: Optional[SiteProfile] = None,
    timeout: float = 60.0,
    urlopen: Callable = urllib.request.urlopen,
) -> str:
    """
    Fetch rendered HTML through ScrapingBee. Raises FetchError.
    """
    if not api_key:
        raise FetchError(url, "Scraping proxy key not configured")

    params = {
        "api_key": api_key,
        "url": url,
        "render_js": "true",
        "premium_proxy": "true",
    }
    if profile is not None and profile.proxy_wait_ms:
        params["wait"] = str(profile.proxy_wait_ms)
    if profile is not None and profile.proxy_wait_for:
        params["wait_for"] = profile.proxy_wait_for

    request = urllib.request.Request(
        f"{SCRAPINGBEE_ENDPOINT}?{urlencode(params)}",
        headers={"Accept": "text/html,application/xhtml+xml"},
        method="GET",
    )
    try:
        body = _read(request, timeout, urlopen)
    except Exception as e:
        raise FetchError(url, f"Scraping proxy extraction failed: {e}", e) from e
    if not body.strip():
        raise FetchError(url, "Scraping proxy returned an empty page")
    return body


# =============================================================================
# Managed robot
# =============================================================================

def robot_fields_to_html(fields: dict, url: str = "") -> str:
    """
    Renders robot output as a minimal HTML document, one labelled block per
    field, so it can go through the normal reduce/prompt/parse path.
    """
    blocks = []
    for key, value in flatten_record(fields).items():
        if value is None:
            continue
        blocks.append(
            f'<div class="field" data-field="{html.escape(str(key), quote=True)}">'
            f"<strong>{html.escape(str(key))}:</strong> {html.escape(str(value))}</div>"
        )
    title = html.escape(str(fields.get("productName") or url))
    return (
        "<html><head><title>" + title + "</title></head><body>"
        '<main><div class="product-details">' + "".join(blocks) + "</div></main>"
        "</body></html>"
    )


def fetch_with_robot(
    url: str,
    api_key: str,
    robot_id: str,
    profile: Optional[SiteProfile] = None,
    timeout: float = 120.0,
    urlopen: Callable = urllib.request.urlopen,
) -> str:
    """
    Run the Browse AI robot for url and return a synthetic HTML document.
    Raises FetchError.
    """
    if not api_key or not robot_id:
        raise FetchError(url, "Browse.AI API key or Robot ID not configured")

    selectors = DEFAULT_ROBOT_SELECTORS
    if profile is not None and profile.proxy_wait_for:
        selectors = [s.strip() for s in profile.proxy_wait_for.split(",") if s.strip()]

    payload = {"url": url, "options": {"waitForSelectors": selectors}}
    request = urllib.request.Request(
        BROWSE_AI_RUN_ENDPOINT.format(robot_id=robot_id),
        data=json.dumps(payload).encode("utf-8"),
        headers={
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        },
        method="POST",
    )
    try:
        result = json.loads(_read(request, timeout, urlopen))
    except Exception as e:
        raise FetchError(url, f"Browse.AI extraction failed: {e}", e) from e

    if not isinstance(result, dict) or not result.get("success"):
        error = result.get("error") if isinstance(result, dict) else result
        raise FetchError(url, f"Browse.AI extraction failed: {error}")
    data = result.get("data")
    if not isinstance(data, dict) or not data:
        raise FetchError(url, "Browse.AI returned no product data")
    return robot_fields_to_html(data, url)


# =============================================================================
# URL salvage
# =============================================================================

def salvage_bws_url(url: str) -> Optional[dict]:
    """
    Recover product facts from a BWS product URL.

    Returns None when the URL carries no product id.
    """
    id_match = re.search(r"/products?/([^/?#]+)", url)
    if not id_match:
        return None
    product_id = id_match.group(1)

    name_match = re.search(r"/products?/[^/]+/([^?#]+)", url)
    product_name = title_from_slug(name_match.group(1) if name_match else product_id)

    price_match = re.search(r"\$([0-9]+(\.[0-9]+)?)", url)
    volume_pattern = re.compile(r"(\d+(\.\d+)?)\s*(ml|l|litre|liter)\b", re.IGNORECASE)
    volume_match = volume_pattern.search(product_name) or volume_pattern.search(url)
    alcohol_pattern = re.compile(r"(\d+(\.\d+)?)\s*%")
    alcohol_match = alcohol_pattern.search(product_name) or alcohol_pattern.search(url)
    category_match = re.search(r"bws\.com\.au/([^/]+)/", url)

    record = {
        "productId": product_id,
        "productName": product_name,
        "sourceUrl": url,
        "_salvaged": True,
        "category": title_from_slug(category_match.group(1)) if category_match else None,
        "price": f"${price_match.group(1)}" if price_match else None,
        "volume": volume_match.group(0) if volume_match else None,
        "alcoholPercentage": alcohol_match.group(0) if alcohol_match else None,
    }
    record.update(dict(parse_qsl(urlparse(url).query)))
    return {key: value for key, value in record.items() if value is not None}


def enrich_bws_product(
    product_id: str,
    timeout: float = 15.0,
    urlopen: Callable = urllib.request.urlopen,
) -> dict:
    """
    Fetch extra fields from the BWS product API.

    Returns only the fields the API actually provided; raises FetchError.
    """
    request = urllib.request.Request(
        BWS_PRODUCT_API.format(product_id=product_id),
        headers={"Accept": "application/json", "User-Agent": API_USER_AGENT},
    )
    try:
        data = json.loads(_read(request, timeout, urlopen))
    except Exception as e:
        raise FetchError(product_id, f"Could not enrich BWS product data: {e}", e) from e
    if not isinstance(data, dict):
        return {}

    price = data.get("price") or {}
    volume = data.get("volume") or {}
    images = [img.get("url") for img in data.get("images") or [] if isinstance(img, dict) and img.get("url")]

    enriched = {
        "productName": data.get("name") or None,
        "price": f"${price['value']}" if isinstance(price, dict) and price.get("value") else None,
        "description": data.get("description"),
        "brand": data.get("brand"),
        "images": images or None,
        "volume": (
            f"{volume['value']}{volume.get('unitCode', '')}"
            if isinstance(volume, dict) and volume.get("value")
            else None
        ),
        "alcoholPercentage": f"{data['alcoholPercentage']}%" if data.get("alcoholPercentage") else None,
    }
    return {key: value for key, value in enriched.items() if value is not None}


def salvage_with_enrichment(
    url: str,
    run_id: str = "",
    urlopen: Callable = urllib.request.urlopen,
) -> Optional[dict]:
    record = salvage_bws_url(url)
    if record is None:
        log_event(run_id, "fallbacks", "WARNING", f"Could not extract product ID from BWS URL: {url}")
        return None
    try:
        record.update(enrich_bws_product(record["productId"], urlopen=urlopen))
    except FetchError as e:
        log_event(run_id, "fallbacks", "WARNING", str(e), {"url": url})
    return flatten_record(record)


URL_SALVAGE_RULES = {
    "bws": salvage_with_enrichment,
}
