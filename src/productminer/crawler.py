import random
import time
import urllib.request
from dataclasses import dataclass
from typing import Callable, Optional, Union
from urllib.parse import urlparse

from .config import Settings
from .database import log_event
from .errors import FetchError
from .fallbacks import (
    URL_SALVAGE_RULES,
    fetch_with_robot,
    fetch_with_scraping_proxy,
)
from .sites import profile_for

USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/123.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36 Edg/124.0.2478.67",
)


@dataclass
class Complete:
    """Fetch produced a finished record; the LLM path is skipped."""
    record: dict


@dataclass
class NeedsPipeline:
    """Fetch produced HTML that still needs reduce/prompt/extract/parse."""
    html: str
    source: str


FetchOutcome = Union[Complete, NeedsPipeline]


def browser_headers(url: str, user_agent: Optional[str] = None) -> dict:
    parsed = urlparse(url)
    origin = f"{parsed.scheme or 'https'}://{parsed.netloc}"
    return {
        "User-Agent": user_agent or random.choice(USER_AGENTS),
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Referer": origin + "/",
    }


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """base * 2**attempt, capped."""
    return min(base * (2 ** attempt), cap)


def fetch_html(
    url: str,
    max_attempts: int = 3,
    base_delay_s: float = 1.0,
    max_delay_s: float = 8.0,
    timeout_s: float = 30.0,
    run_id: str = "",
    urlopen: Callable = urllib.request.urlopen,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """
    Plain HTTP GET with browser-like headers and exponential backoff.

    A fresh User-Agent is drawn for every attempt. Raises FetchError with the
    last cause once every attempt has failed.
    """
    last_error = None
    for attempt in range(max_attempts):
        request = urllib.request.Request(url, headers=browser_headers(url), method="GET")
        try:
            with urlopen(request, timeout=timeout_s) as resp:
                raw = resp.read()
            return raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        except Exception as e:
            last_error = e
            log_event(
                run_id,
                "crawler",
                "WARNING",
                f"Fetch attempt {attempt + 1}/{max_attempts} failed for {url}",
                {"error": str(e)},
            )
            if attempt < max_attempts - 1:
                sleep(backoff_delay(attempt, base_delay_s, max_delay_s))

    raise FetchError(url, f"Failed to fetch {url} after {max_attempts} attempts: {last_error}", last_error)


class PageFetcher:
    """
    Fetches product pages, escalating through fallback tiers for sites that
    block plain scraping.

    Order for blocking sites: scraping proxy, managed robot, URL salvage,
    then the plain HTTP path. A Firecrawl render is tried once as a rescue
    when the plain path is exhausted.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        urlopen: Callable = urllib.request.urlopen,
        sleep: Callable[[float], None] = time.sleep,
        renderer=None,
    ):
        self.settings = settings or Settings()
        self.urlopen = urlopen
        self.sleep = sleep
        self._renderer = renderer

    @property
    def renderer(self):
        if self._renderer is None and self.settings.has_renderer:
            from .render import FirecrawlRenderer

            self._renderer = FirecrawlRenderer(
                self.settings.firecrawl_api_key,
                timeout_s=self.settings.fetch_timeout_s,
            )
        return self._renderer

    def fetch(self, url: str, run_id: str = "") -> FetchOutcome:
        profile = profile_for(url)

        if profile.blocking:
            outcome = self._fetch_with_overrides(url, profile, run_id)
            if outcome is not None:
                return outcome

        try:
            html = fetch_html(
                url,
                max_attempts=self.settings.fetch_max_attempts,
                base_delay_s=self.settings.fetch_base_delay_s,
                max_delay_s=self.settings.fetch_max_delay_s,
                timeout_s=self.settings.fetch_timeout_s,
                run_id=run_id,
                urlopen=self.urlopen,
                sleep=self.sleep,
            )
            return NeedsPipeline(html=html, source="direct")
        except FetchError as e:
            rescued = self._render_rescue(url, run_id)
            if rescued is None:
                raise
            log_event(run_id, "crawler", "INFO", f"Rendered {url} after direct fetch failed", {"error": str(e)})
            return rescued

    def _fetch_with_overrides(self, url, profile, run_id) -> Optional[FetchOutcome]:
        settings = self.settings

        if settings.has_scraping_proxy:
            try:
                log_event(run_id, "crawler", "INFO", f"Using scraping proxy for {url}")
                html = fetch_with_scraping_proxy(
                    url,
                    settings.scrapingbee_api_key,
                    profile=profile,
                    urlopen=self.urlopen,
                )
                return NeedsPipeline(html=html, source="proxy")
            except Exception as e:
                log_event(run_id, "crawler", "ERROR", f"Scraping proxy failed for {url}: {e}")

        if settings.has_robot:
            try:
                log_event(run_id, "crawler", "INFO", f"Using managed robot for {url}")
                html = fetch_with_robot(
                    url,
                    settings.browse_ai_api_key,
                    settings.browse_ai_robot_id,
                    profile=profile,
                    urlopen=self.urlopen,
                )
                return NeedsPipeline(html=html, source="robot")
            except Exception as e:
                log_event(run_id, "crawler", "ERROR", f"Managed robot failed for {url}: {e}")

        salvage = URL_SALVAGE_RULES.get(profile.url_salvage)
        if salvage is not None:
            try:
                record = salvage(url, run_id=run_id, urlopen=self.urlopen)
                if record:
                    log_event(run_id, "crawler", "INFO", f"Salvaged product data from URL for {url}")
                    return Complete(record=record)
            except Exception as e:
                log_event(run_id, "crawler", "ERROR", f"URL salvage failed for {url}: {e}")

        return None

    def _render_rescue(self, url, run_id) -> Optional[FetchOutcome]:
        renderer = self.renderer
        if renderer is None:
            return None
        try:
            return NeedsPipeline(html=renderer.render(url, run_id=run_id), source="render")
        except Exception as e:
            log_event(run_id, "crawler", "ERROR", f"Render rescue failed for {url}: {e}")
            return None
