"""
ProductMiner Graph Nodes

Node implementations for the per-URL LangGraph workflow.
Each node takes the workflow state and returns updates to it.
"""

import time
from dataclasses import dataclass, field
from typing import Callable

from .config import Settings
from .crawler import Complete, PageFetcher
from .database import log_event
from .errors import ExtractionCancelled, ModelError
from .graph_callbacks import StepTimingWrapper
from .graph_state import UrlPipelineState
from .llm import ExtractionInvoker, invoke_with_retry, select_model_tier
from .parser import parse_product_data
from .prompts import build_prompt
from .reducer import reduce_html


def _no_op_emit(phase: str, status: str, index: int, url: str) -> None:
    return None


def _never_cancelled() -> None:
    return None


@dataclass
class PipelineServices:
    """
    Collaborators shared by every node of one run.

    emit(phase, status, index, url) publishes a progress snapshot;
    check_cancelled() raises ExtractionCancelled once the run is cancelled.
    """
    fetcher: PageFetcher
    invoker: ExtractionInvoker
    settings: Settings = field(default_factory=Settings)
    emit: Callable[[str, str, int, str], None] = _no_op_emit
    check_cancelled: Callable[[], None] = _never_cancelled
    sleep: Callable[[float], None] = time.sleep


def _is_cancelled(services: PipelineServices) -> Callable[[], bool]:
    def probe() -> bool:
        try:
            services.check_cancelled()
        except ExtractionCancelled:
            return True
        return False
    return probe


# =============================================================================
# Node: Fetch
# =============================================================================

def fetch_node(state: UrlPipelineState) -> dict:
    """
    Fetches the page. Salvage tiers may finish the URL here.
    """
    services: PipelineServices = state["services"]
    url = state["url"]
    index = state.get("index", 0)
    run_id = state.get("run_id", "")

    services.check_cancelled()
    services.emit("fetching", f"Fetching content from {url}...", index, url)

    with StepTimingWrapper("fetch", run_id, url) as timer:
        outcome = services.fetcher.fetch(url, run_id)
        if isinstance(outcome, Complete):
            timer.set_details({"source": "salvage"})
        else:
            timer.set_details({"source": outcome.source, "html_chars": len(outcome.html)})

    services.check_cancelled()

    if isinstance(outcome, Complete):
        return {"record": outcome.record, "fetch_source": "salvage"}
    return {"html": outcome.html, "fetch_source": outcome.source}


def route_after_fetch(state: UrlPipelineState) -> str:
    if state.get("record") is not None:
        return "done"
    return "reduce"


# =============================================================================
# Node: Reduce
# =============================================================================

def reduce_node(state: UrlPipelineState) -> dict:
    services: PipelineServices = state["services"]
    url = state["url"]
    run_id = state.get("run_id", "")

    services.emit("analyzing", "Analyzing product content...", state.get("index", 0), url)

    with StepTimingWrapper("reduce", run_id, url) as timer:
        excerpt = reduce_html(state.get("html", ""), url, services.settings.max_excerpt_chars, run_id=run_id)
        timer.set_details({"excerpt_chars": len(excerpt)})

    return {"excerpt": excerpt}


# =============================================================================
# Node: Extract
# =============================================================================

def extract_node(state: UrlPipelineState) -> dict:
    """
    Builds the prompt and calls the model with retry.

    Exhausted retries end the URL with an error record; the run continues.
    """
    services: PipelineServices = state["services"]
    url = state["url"]
    run_id = state.get("run_id", "")
    instruction = state.get("instruction", "")
    excerpt = state.get("excerpt", "")

    services.emit("extracting", "Extracting product data with AI...", state.get("index", 0), url)

    prompt = build_prompt(url, instruction, excerpt)
    tier = select_model_tier(url, instruction, excerpt)

    with StepTimingWrapper("extract", run_id, url) as timer:
        timer.set_details({"model_tier": tier, "prompt_chars": len(prompt)})
        try:
            raw_text = invoke_with_retry(
                services.invoker,
                prompt,
                tier,
                services.settings,
                url=url,
                run_id=run_id,
                sleep=services.sleep,
                is_cancelled=_is_cancelled(services),
            )
        except ModelError as e:
            log_event(run_id, "graph", "ERROR", f"Extraction failed for {url}: {e}")
            timer.set_details({"error": str(e)})
            return {
                "model_tier": tier,
                "record": {"error": f"AI extraction failed: {e}", "url": url},
            }

    services.check_cancelled()
    return {"raw_text": raw_text, "model_tier": tier}


def route_after_extract(state: UrlPipelineState) -> str:
    if state.get("record") is not None:
        return "done"
    return "parse"


# =============================================================================
# Node: Parse
# =============================================================================

def parse_node(state: UrlPipelineState) -> dict:
    services: PipelineServices = state["services"]
    url = state["url"]

    services.emit("processing", "Processing extracted data...", state.get("index", 0), url)
    record = parse_product_data(state.get("raw_text", ""), url, run_id=state.get("run_id", ""))
    return {"record": record}
