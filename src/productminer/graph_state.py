"""
ProductMiner Graph State Schema

Defines the request model and the state that flows through the per-URL
LangGraph workflow.
"""

from typing import Any, Optional, TypedDict, Union

from pydantic import BaseModel, ConfigDict, field_validator

# A ProductRecord maps field names to flat values. Success records carry
# "sourceUrl"; failures are {"error": ..., "url": ...}.
ProductValue = Union[str, int, float, bool, None]
ProductRecord = dict[str, ProductValue]


class ExtractionRequest(BaseModel):
    """A batch of URLs and the instruction applied to each of them."""

    model_config = ConfigDict(frozen=True)

    urls: tuple[str, ...]
    instruction: str

    @field_validator("urls", mode="before")
    @classmethod
    def _check_urls(cls, value):
        if isinstance(value, str):
            value = [value]
        # entries are kept as given so every input position gets a record
        urls = tuple(value or ())
        if not urls:
            raise ValueError("At least one URL is required.")
        return urls


class UrlPipelineState(TypedDict, total=False):
    """
    State schema for the per-URL workflow.

    All fields are optional (total=False) to allow incremental updates.
    """
    # === Input ===
    run_id: str  # Extraction run ID (log key)
    url: str  # Product page URL
    instruction: str  # User instruction, verbatim
    index: int  # Position of the URL in the request
    services: Any  # PipelineServices bundle (fetcher, invoker, hooks)

    # === Fetch phase ===
    html: str  # Raw (or synthetic) HTML that needs the LLM pipeline
    fetch_source: str  # 'direct', 'proxy', 'robot' or 'render'

    # === Reduce / extract phases ===
    excerpt: str  # Bounded HTML excerpt
    model_tier: str  # 'cheap' or 'expensive'
    raw_text: str  # Raw model response

    # === Result ===
    record: Optional[dict]  # Final ProductRecord for this URL


# Model tier configuration
MODEL_TIERS = {
    "cheap": {
        "model_id": "gemini-2.5-flash",
        "langchain_model": "gemini-2.5-flash",
        "max_output_tokens": 2000,
    },
    "expensive": {
        "model_id": "gemini-2.5-pro",
        "langchain_model": "gemini-2.5-pro",
        "max_output_tokens": 4000,
    },
}
