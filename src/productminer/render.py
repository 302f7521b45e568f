"""
Headless render rescue for pages the plain HTTP path could not fetch.

Uses Firecrawl's scrape endpoint (HTML format), which loads the page in a
real browser before returning it.
"""

from typing import Optional

from firecrawl import FirecrawlApp

from .database import log_event
from .errors import FetchError


class FirecrawlRenderer:
    """
    Renders a single URL with Firecrawl and returns its HTML.
    """

    def __init__(self, api_key: str, timeout_s: Optional[float] = None, app=None):
        if not api_key and app is None:
            raise ValueError("A Firecrawl API key is required.")
        self.timeout_s = timeout_s if timeout_s and timeout_s > 0 else None
        self.app = app or FirecrawlApp(api_key=api_key)

    def render(self, url: str, run_id: str = "") -> str:
        kwargs = {"formats": ["html"]}
        if self.timeout_s:
            # Firecrawl expects milliseconds
            kwargs["timeout"] = int(self.timeout_s * 1000)

        log_event(run_id, "render", "INFO", f"Rendering {url} with firecrawl")
        try:
            result = self.app.scrape(url, **kwargs)
        except Exception as e:
            raise FetchError(url, f"Firecrawl error: {e}", e) from e

        content = None
        if result is not None and hasattr(result, "html"):
            content = result.html or getattr(result, "raw_html", None)
        elif isinstance(result, dict):
            content = result.get("html") or result.get("rawHtml")

        if not content:
            raise FetchError(url, "Firecrawl returned no HTML")
        return content
