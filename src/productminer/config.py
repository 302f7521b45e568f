"""
Runtime configuration for ProductMiner.

Values come from the environment (a .env file is loaded by the CLI and the
HTTP service). Credentials for the fallback services are optional: a missing
key simply skips that fallback tier.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field

DEFAULT_DB_FILE = os.path.join("logs", "productminer.db")
DEFAULT_EXPORT_DIR = "exports"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_str(*names: str) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if value and value.strip():
            return value.strip()
    return None


class Settings(BaseModel):
    """Settings shared by the pipeline, CLI and HTTP service."""

    # === Credentials ===
    gemini_api_key: Optional[str] = None
    scrapingbee_api_key: Optional[str] = None
    browse_ai_api_key: Optional[str] = None
    browse_ai_robot_id: Optional[str] = None
    firecrawl_api_key: Optional[str] = None

    # === Storage ===
    db_file: str = DEFAULT_DB_FILE
    export_dir: Optional[str] = DEFAULT_EXPORT_DIR
    progress_ttl_s: int = Field(1800, ge=1)

    # === Fetching ===
    fetch_max_attempts: int = Field(3, ge=1, le=5)
    fetch_base_delay_s: float = 1.0
    fetch_max_delay_s: float = 8.0
    fetch_timeout_s: float = 30.0

    # === Model calls ===
    model_max_attempts: int = Field(4, ge=1)
    model_base_delay_s: float = 5.0
    model_max_delay_s: float = 60.0
    transient_max_delay_s: float = 30.0
    rate_limit_floor_s: float = 10.0
    rate_limit_buffer_s: float = 5.0
    llm_timeout_s: float = 120.0

    # === Pacing ===
    url_delay_s: float = 2.0

    # === Content reduction ===
    max_excerpt_chars: int = Field(30000, ge=1)

    @property
    def has_scraping_proxy(self) -> bool:
        return bool(self.scrapingbee_api_key)

    @property
    def has_robot(self) -> bool:
        return bool(self.browse_ai_api_key and self.browse_ai_robot_id)

    @property
    def has_renderer(self) -> bool:
        return bool(self.firecrawl_api_key)

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        """
        Build settings from environment variables.

        Keyword overrides (e.g. from CLI flags) win over the environment when
        they are not None.
        """
        values = {
            "gemini_api_key": _env_str("GEMINI_API_KEY", "GOOGLE_API_KEY"),
            "scrapingbee_api_key": _env_str("SCRAPINGBEE_API_KEY", "SCRAPING_API_KEY"),
            "browse_ai_api_key": _env_str("BROWSE_AI_API_KEY"),
            "browse_ai_robot_id": _env_str("BROWSE_AI_ROBOT_ID"),
            "firecrawl_api_key": _env_str("FIRECRAWL_API_KEY", "FCRAWL_API_KEY"),
            "db_file": _env_str("PRODUCTMINER_DB") or DEFAULT_DB_FILE,
            "export_dir": _env_str("PRODUCTMINER_EXPORT_DIR") or DEFAULT_EXPORT_DIR,
            "progress_ttl_s": int(_env_float("PROGRESS_TTL_S", 1800)),
            "url_delay_s": _env_float("URL_DELAY_S", 2.0),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
