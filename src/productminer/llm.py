"""
Extraction invoker: sends prompts to Gemini through LangChain and classifies
provider failures into ModelError / RateLimited.
"""

import re
import time
from typing import Callable, Optional

from langchain_core.messages import HumanMessage
from langchain_google_genai import ChatGoogleGenerativeAI

from .config import Settings
from .database import log_event
from .errors import ExtractionCancelled, ModelError, RateLimited
from .graph_callbacks import TimingTokenCallback
from .graph_state import MODEL_TIERS
from .sites import profile_for

LONG_INSTRUCTION_CHARS = 500
LARGE_EXCERPT_CHARS = 20000
TEMPERATURE = 0.1

RATE_LIMIT_MARKERS = ("429", "resource_exhausted", "resource exhausted", "rate limit", "quota", "too many requests")
RATE_LIMIT_CLASSES = ("ResourceExhausted", "TooManyRequests", "RateLimitError")

_RETRY_AFTER_PATTERNS = (
    re.compile(r"retry in ([0-9]+(?:\.[0-9]+)?)\s*s", re.IGNORECASE),
    re.compile(r"['\"]?retryDelay['\"]?\s*[:=]\s*['\"]?([0-9]+(?:\.[0-9]+)?)s", re.IGNORECASE),
    re.compile(r"retry_delay\s*\{\s*seconds:\s*([0-9]+)", re.IGNORECASE),
)


def select_model_tier(url: str, instruction: str, excerpt: str) -> str:
    """
    'expensive' for high-fidelity sites, or when both the instruction and the
    excerpt are large; otherwise 'cheap'.
    """
    if profile_for(url).high_fidelity:
        return "expensive"
    if len(instruction or "") > LONG_INSTRUCTION_CHARS and len(excerpt or "") > LARGE_EXCERPT_CHARS:
        return "expensive"
    return "cheap"


def parse_retry_after(error: BaseException) -> Optional[float]:
    value = getattr(error, "retry_after", None)
    if isinstance(value, (int, float)) and value >= 0:
        return float(value)
    message = str(error)
    for pattern in _RETRY_AFTER_PATTERNS:
        match = pattern.search(message)
        if match:
            return float(match.group(1))
    return None


def classify_error(error: BaseException) -> ModelError:
    """Maps a provider exception to RateLimited or a plain ModelError."""
    if isinstance(error, ModelError):
        return error
    names = {cls.__name__ for cls in type(error).__mro__}
    message = str(error)
    lowered = message.lower()
    if names.intersection(RATE_LIMIT_CLASSES) or any(marker in lowered for marker in RATE_LIMIT_MARKERS):
        return RateLimited(message or type(error).__name__, retry_after=parse_retry_after(error))
    return ModelError(message or type(error).__name__)


def _content_text(content) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type", "text") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    return str(content or "")


class ExtractionInvoker:
    """
    One Gemini chat model per tier, created lazily.

    llm_factory(model_name, max_output_tokens) can replace the LangChain
    client, e.g. in tests.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        settings: Optional[Settings] = None,
        run_id: Optional[str] = None,
        llm_factory: Optional[Callable] = None,
    ):
        self.settings = settings or Settings()
        self.api_key = api_key or self.settings.gemini_api_key
        self.run_id = run_id
        self.llm_factory = llm_factory or self._default_factory
        self._models = {}

    def _default_factory(self, model_name: str, max_output_tokens: int):
        if not self.api_key:
            raise ModelError("GEMINI_API_KEY is not configured")
        return ChatGoogleGenerativeAI(
            model=model_name,
            google_api_key=self.api_key,
            temperature=TEMPERATURE,
            max_output_tokens=max_output_tokens,
            # Retries are handled by invoke_with_retry
            max_retries=1,
            timeout=self.settings.llm_timeout_s,
        )

    def _model(self, tier: str):
        if tier not in self._models:
            config = MODEL_TIERS.get(tier, MODEL_TIERS["cheap"])
            self._models[tier] = self.llm_factory(config["langchain_model"], config["max_output_tokens"])
        return self._models[tier]

    def invoke(self, prompt: str, tier: str = "cheap", url: Optional[str] = None) -> str:
        """
        Returns the raw model text. Raises ModelError or RateLimited.
        """
        callback = TimingTokenCallback(self.run_id, "extract_llm", url)
        try:
            response = self._model(tier).invoke(
                [HumanMessage(content=prompt)],
                config={"callbacks": [callback]},
            )
        except Exception as e:
            raise classify_error(e) from e

        text = _content_text(getattr(response, "content", response))
        if not text.strip():
            raise ModelError("Empty response from model")
        return text


def retry_wait(error: ModelError, attempt: int, settings: Settings) -> float:
    """
    Seconds to wait after failed attempt number `attempt` (1-based).

    Rate limits use the provider's suggestion plus a buffer, or exponential
    backoff capped at model_max_delay_s, and never go below the floor. Other
    model errors use exponential backoff capped at transient_max_delay_s.
    """
    backoff = settings.model_base_delay_s * (2 ** attempt)
    if isinstance(error, RateLimited):
        if error.retry_after is not None:
            wait = error.retry_after + settings.rate_limit_buffer_s
        else:
            wait = min(backoff, settings.model_max_delay_s)
        return max(wait, settings.rate_limit_floor_s)
    return min(backoff, settings.transient_max_delay_s)


def invoke_with_retry(
    invoker: ExtractionInvoker,
    prompt: str,
    tier: str,
    settings: Settings,
    url: str = "",
    run_id: str = "",
    sleep: Callable[[float], None] = time.sleep,
    is_cancelled: Optional[Callable[[], bool]] = None,
) -> str:
    """
    Invoke with up to settings.model_max_attempts attempts.

    Raises the last ModelError when attempts are exhausted, and
    ExtractionCancelled if cancellation is observed between attempts.
    """
    max_attempts = settings.model_max_attempts
    for attempt in range(1, max_attempts + 1):
        try:
            return invoker.invoke(prompt, tier, url=url)
        except ModelError as e:
            if attempt >= max_attempts:
                log_event(run_id, "llm", "ERROR", f"Model call failed after {attempt} attempts for {url}: {e}")
                raise
            wait = retry_wait(e, attempt, settings)
            kind = "Rate limited" if isinstance(e, RateLimited) else "Model error"
            log_event(
                run_id,
                "llm",
                "WARNING",
                f"{kind} on attempt {attempt}/{max_attempts} for {url}; retrying in {wait:.1f}s",
                {"error": str(e), "tier": tier},
            )
            if is_cancelled is not None and is_cancelled():
                raise ExtractionCancelled(run_id) from e
            sleep(wait)
            if is_cancelled is not None and is_cancelled():
                raise ExtractionCancelled(run_id) from e
    raise ModelError("No model attempts were made")
