"""
Error taxonomy for the extraction pipeline.

Per-URL failures (FetchError, ModelError) are turned into error records by the
orchestrator. ExtractionCancelled is the only error that escapes a run.
"""

from typing import Optional


class ProductMinerError(Exception):
    """Base class for all ProductMiner errors."""


class FetchError(ProductMinerError):
    """Network/HTTP failure after every fetch attempt was used up."""

    def __init__(self, url: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.url = url
        self.cause = cause


class ModelError(ProductMinerError):
    """LLM call failure."""


class RateLimited(ModelError):
    """The provider throttled the request."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        # seconds, when the provider suggested one
        self.retry_after = retry_after


class ParseError(ProductMinerError):
    """Malformed model output. Always recovered inside the parser."""


class StoreError(ProductMinerError):
    """Progress store read/write failure."""


class ExtractionCancelled(ProductMinerError):
    """Raised to the caller of a run once cancellation has been observed."""

    def __init__(self, run_id: str, records: Optional[list] = None):
        super().__init__("Extraction cancelled")
        self.run_id = run_id
        # records collected before the flag was observed
        self.records = list(records or [])
