"""
Site profiles: per-domain knowledge shared by the fetcher, prompt builder and
model tier selection.

Adding a site means adding a SiteProfile here; the orchestrator never looks
at domains itself.
"""

from dataclasses import dataclass
from typing import Optional

from .formatting import domain_of


@dataclass(frozen=True)
class SiteProfile:
    name: str
    domains: tuple[str, ...]
    # Generic scraping is known to be blocked, so fallback tiers run first
    blocking: bool = False
    # Scraping proxy render hints
    proxy_wait_ms: Optional[int] = None
    proxy_wait_for: Optional[str] = None
    # Key into fallbacks.URL_SALVAGE_RULES
    url_salvage: Optional[str] = None
    # Always use the expensive model tier
    high_fidelity: bool = False
    # Extra prompt guidance block: 'grocery' or 'marketplace'
    prompt_hints: Optional[str] = None
    # Full prompt template replacement: 'rigid_grocery' or 'salvage_only'
    prompt_template: Optional[str] = None
    # Key into parser.LAST_RESORT_RULES
    parse_fallback: Optional[str] = None


GENERIC = SiteProfile(name="this e-commerce site", domains=())

SITE_PROFILES = (
    SiteProfile(
        name="BWS",
        domains=("bws.com.au",),
        blocking=True,
        proxy_wait_ms=5000,
        proxy_wait_for=".product-details, .product-name",
        url_salvage="bws",
        prompt_template="salvage_only",
    ),
    SiteProfile(name="Dan Murphy's", domains=("danmurphys.com.au",), blocking=True),
    SiteProfile(name="Liquorland", domains=("liquorland.com.au",), blocking=True),
    SiteProfile(name="First Choice Liquor", domains=("firstchoiceliquor.com.au",), blocking=True),
    SiteProfile(
        name="Coles",
        domains=("coles.com.au",),
        high_fidelity=True,
        prompt_hints="grocery",
        prompt_template="rigid_grocery",
        parse_fallback="coles",
    ),
    SiteProfile(name="Woolworths", domains=("woolworths.com.au",), prompt_hints="grocery"),
    SiteProfile(name="Kmart", domains=("kmart.com.au",)),
    SiteProfile(name="Target", domains=("target.com.au",)),
    SiteProfile(name="Amazon", domains=("amazon.",), prompt_hints="marketplace"),
    SiteProfile(name="eBay", domains=("ebay.",), prompt_hints="marketplace"),
    SiteProfile(name="JB Hi-Fi", domains=("jbhifi.",)),
    SiteProfile(name="Walmart", domains=("walmart.",)),
)


def profile_for(url: str) -> SiteProfile:
    """Returns the profile whose domain marker appears in the URL host."""
    host = domain_of(url)
    if host:
        for profile in SITE_PROFILES:
            if any(marker in host for marker in profile.domains):
                return profile
    return GENERIC
