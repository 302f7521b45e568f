"""
Formatting helpers for record normalization and URL-derived labels.
"""

from __future__ import annotations

import json
import re
from urllib.parse import urlparse

LIST_SEPARATOR = ", "

_SCALAR_TYPES = (str, int, float, bool)


def flatten_value(value):
    """
    Flattens one record value so it fits a single spreadsheet cell.

    Scalars and None pass through. Lists become comma-joined strings and
    mappings become "key: value" pairs joined by commas.
    """
    if value is None or isinstance(value, _SCALAR_TYPES):
        return value
    if isinstance(value, (list, tuple)):
        return LIST_SEPARATOR.join(_item_text(item) for item in value)
    if isinstance(value, dict):
        try:
            return LIST_SEPARATOR.join(
                f"{key}: {_item_text(item)}" for key, item in value.items()
            )
        except (TypeError, ValueError):
            return _json_text(value)
    return str(value)


def flatten_record(record: dict) -> dict:
    """Returns a copy of record with every value flattened."""
    return {key: flatten_value(value) for key, value in record.items()}


def is_flat_record(record: dict) -> bool:
    return all(value is None or isinstance(value, _SCALAR_TYPES) for value in record.values())


def _item_text(item) -> str:
    if item is None:
        return ""
    if isinstance(item, str):
        return item
    if isinstance(item, _SCALAR_TYPES):
        return str(item)
    if isinstance(item, (list, tuple)):
        return LIST_SEPARATOR.join(_item_text(sub) for sub in item)
    return _json_text(item)


def _json_text(value) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def domain_of(url: str) -> str:
    """Lower-cased host of url, or "" when it cannot be parsed."""
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def title_from_slug(slug: str) -> str:
    """'cadbury-dairy-milk' -> 'Cadbury Dairy Milk'."""
    words = re.split(r"[-_\s]+", slug.strip())
    return " ".join(word[:1].upper() + word[1:] for word in words if word)
