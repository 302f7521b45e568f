"""
Content reducer: shrinks raw product-page HTML to a bounded excerpt for the LLM.

Site rules live in SITE_RULES (domain marker -> ordered rules). A site with no
rule, or whose rules find too little, goes through the generic patterns and
then a full-document cleanup. The result is always cut to max_length.
"""

import re
from dataclasses import dataclass
from typing import Optional

from .database import log_event
from .formatting import domain_of

MAX_EXCERPT_CHARS = 30000
MIN_USEFUL_CHARS = 500


def _block(tag: str, attr: str, marker: str) -> re.Pattern:
    return re.compile(
        rf"<{tag}[^>]*{attr}=[\"']?{marker}[^\"']*[\"']?[^>]*>([\s\S]*?)</{tag}>",
        re.IGNORECASE,
    )


def _strip_pattern(tag: str) -> re.Pattern:
    return re.compile(rf"<{tag}\b[^<]*(?:(?!</{tag}>)<[^<]*)*</{tag}>", re.IGNORECASE)


_NON_CONTENT = [_strip_pattern(tag) for tag in ("script", "style", "svg", "footer", "header", "nav")]
_NON_CONTENT.append(re.compile(r"<!--[\s\S]*?-->"))

_SCRIPTS_ONLY = [_strip_pattern(tag) for tag in ("script", "style", "svg")]


def strip_non_content(html: str, patterns=None) -> str:
    """Removes scripts, styles, inline SVG, nav/header/footer and comments."""
    for pattern in patterns or _NON_CONTENT:
        html = pattern.sub("", html)
    return html


# =============================================================================
# Rules
# =============================================================================

@dataclass(frozen=True)
class ContainerRule:
    """The inner HTML of the first matching container."""
    patterns: tuple

    def apply(self, html: str) -> Optional[str]:
        for pattern in self.patterns:
            match = pattern.search(html)
            if match and len(match.group(1)) > MIN_USEFUL_CHARS:
                return match.group(1)
        return None


@dataclass(frozen=True)
class PartsRule:
    """
    Title/price/description/spec blocks concatenated. Each part is a tuple of
    alternative patterns; the first alternative that matches is used.
    """
    parts: tuple

    def apply(self, html: str) -> Optional[str]:
        pieces = []
        for alternatives in self.parts:
            for pattern in alternatives:
                match = pattern.search(html)
                if match:
                    pieces.append(match.group(0))
                    break
        combined = "".join(pieces)
        return combined if len(combined) > MIN_USEFUL_CHARS else None


@dataclass(frozen=True)
class CleanedDocumentRule:
    """The whole document without scripts, styles and SVG."""

    def apply(self, html: str) -> Optional[str]:
        return strip_non_content(html, _SCRIPTS_ONLY)


_H1_ANY = re.compile(r"<h1[^>]*>([\s\S]*?)</h1>", re.IGNORECASE)
_PRICE_DIV = _block("div", "class", "price")
_DESCRIPTION_DIV = _block("div", "class", "product-description")

SITE_RULES = {
    "woolworths.com.au": (
        ContainerRule((_block("div", "class", "product-details"),)),
        PartsRule((
            (_block("h1", "class", "product-title"),),
            (_PRICE_DIV,),
            (_DESCRIPTION_DIV,),
            (_block("div", "class", "specifications"),),
        )),
    ),
    "coles.com.au": (CleanedDocumentRule(),),
    "kmart.com.au": (
        ContainerRule((_block("div", "class", "pdp-details"),)),
        PartsRule(((_H1_ANY,), (_PRICE_DIV,), (_DESCRIPTION_DIV,))),
    ),
    "target.com.au": (
        ContainerRule((_block("div", "class", "product-details"),)),
        PartsRule(((_H1_ANY,), (_PRICE_DIV,), (_DESCRIPTION_DIV,))),
    ),
    "bws.com.au": (
        ContainerRule((_block("div", "class", "product-details"),)),
        PartsRule(((_H1_ANY,), (_PRICE_DIV,), (_DESCRIPTION_DIV,))),
    ),
    "amazon.": (
        ContainerRule((
            _block("div", "id", "dp-container"),
            _block("div", "id", "ppd"),
            _block("div", "id", "centerCol"),
        )),
        PartsRule((
            (_block("span", "id", "productTitle"), _block("h1", "class", "a-size-large")),
            (_block("span", "class", "a-price"), _block("span", "id", "priceblock_ourprice")),
            (_block("div", "id", "productDescription"), _block("div", "id", "feature-bullets")),
        )),
    ),
    "jbhifi.": (
        ContainerRule((_block("div", "class", "product-detail"),)),
        PartsRule((
            (_block("h1", "class", "product-title"),),
            (_PRICE_DIV,),
            (_DESCRIPTION_DIV,),
        )),
    ),
    "walmart.": (
        ContainerRule((_block("div", "class", "product-main-content"),)),
        PartsRule((
            (_block("h1", "class", "prod-ProductTitle"),),
            (_block("span", "class", "price-characteristic"),),
            (_block("div", "class", "about-product"),),
        )),
    ),
}

GENERIC_RULE = ContainerRule((
    re.compile(r"<main[^>]*>([\s\S]*?)</main>", re.IGNORECASE),
    _block("div", "id", "product"),
    _block("div", "class", "product"),
    _block("div", "id", "pdp"),
    _block("div", "class", "pdp"),
    _block("div", "id", "details"),
    re.compile(r"<article[^>]*>([\s\S]*?)</article>", re.IGNORECASE),
))


def rules_for(url: str) -> tuple:
    host = domain_of(url)
    for marker, rules in SITE_RULES.items():
        if marker in host:
            return rules
    return ()


def reduce_html(html: str, url: str, max_length: int = MAX_EXCERPT_CHARS, run_id: str = "") -> str:
    """
    Extract the most relevant part of a product page.

    Never raises; on an internal error the input is simply truncated.
    """
    html = html or ""
    max_length = max(0, int(max_length))
    try:
        excerpt = None
        for rule in rules_for(url):
            excerpt = rule.apply(html)
            if excerpt:
                break

        if not excerpt:
            excerpt = GENERIC_RULE.apply(html)

        if not excerpt:
            excerpt = strip_non_content(html)

        if len(excerpt) > max_length:
            excerpt = excerpt[:max_length]
        log_event(run_id, "reducer", "INFO", f"Reduced HTML for {url}", {"input": len(html), "output": len(excerpt)})
        return excerpt
    except Exception as e:
        log_event(run_id, "reducer", "WARNING", f"Error extracting relevant HTML for {url}: {e}")
        return html[:max_length]
