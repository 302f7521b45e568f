"""
Result parser: turns raw model text into a flat ProductRecord.

parse_product_data never raises. It tries, in order: a strict JSON parse, a
salvage of the first {...} span, a per-site last-resort record, and finally
an error record.
"""

import json
import re
from urllib.parse import urlparse

from .database import log_event
from .errors import ParseError
from .formatting import flatten_record, title_from_slug
from .sites import profile_for

FENCE_PATTERN = re.compile(r"```json|```", re.IGNORECASE)
OBJECT_SPAN = re.compile(r"\{.*\}")
PARSE_FAILURE = "Failed to parse extracted data"


def _load_object(text: str) -> dict:
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise ParseError(str(e)) from e
    if not isinstance(data, dict):
        raise ParseError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _strict(text: str) -> dict:
    return _load_object(FENCE_PATTERN.sub("", text.strip()).strip())


def _salvage(text: str) -> dict:
    collapsed = FENCE_PATTERN.sub("", text.strip())
    collapsed = re.sub(r"\s+", " ", collapsed).strip()
    match = OBJECT_SPAN.search(collapsed)
    if not match:
        raise ParseError("No JSON object found in response")
    return _load_object(match.group(0))


def _coles_fallback(url: str) -> dict:
    path = urlparse(url).path
    match = re.search(r"/product/(.+?)(?:/|-|$)", path)
    name = title_from_slug(match.group(1)) if match else "Coles Product"
    return {
        "productName": name,
        "sourceUrl": url,
        "_salvaged": True,
        "error": "Partial data only - extraction failed",
    }


LAST_RESORT_RULES = {
    "coles": _coles_fallback,
}


def parse_product_data(text: str, url: str, run_id: str = "") -> dict:
    """
    Parse and validate the model's product data.

    Returns a flat record with "sourceUrl" on success, or {"error", "url"}.
    """
    text = text or ""

    try:
        record = {"sourceUrl": url}
        record.update(flatten_record(_strict(text)))
        # the input URL wins over any sourceUrl the model echoes back
        record["sourceUrl"] = url
        return record
    except ParseError as e:
        log_event(run_id, "parser", "ERROR", f"Error parsing AI response for {url}: {e}", {"raw": text[:2000]})

    try:
        record = {"sourceUrl": url, "_salvaged": True}
        record.update(flatten_record(_salvage(text)))
        record["sourceUrl"] = url
        record["_salvaged"] = True
        log_event(run_id, "parser", "INFO", f"Salvaged partial data from invalid response for {url}")
        return record
    except ParseError as e:
        log_event(run_id, "parser", "ERROR", f"Failed to salvage data: {e}")

    rule = LAST_RESORT_RULES.get(profile_for(url).parse_fallback)
    if rule:
        return rule(url)

    return {"error": PARSE_FAILURE, "url": url}
