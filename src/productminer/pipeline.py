"""
Pipeline orchestrator: runs a batch of product URLs sequentially and
publishes progress as it goes.

Run lifecycle:
    initializing -> per URL (fetching, analyzing, extracting, processing,
    completed/error) -> waiting -> ... -> finalizing -> complete

"cancelled" can be entered from any state and is final.
"""

import math
import os
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from .config import Settings
from .crawler import PageFetcher
from .database import configure, create_run_id, init_db, log_event, save_extractions
from .errors import ExtractionCancelled
from .graph_nodes import PipelineServices
from .graph_state import ExtractionRequest
from .graph_workflow import run_url_workflow
from .llm import ExtractionInvoker
from .progress import CANCELLED_STATUS, ProgressPublisher, ProgressSnapshot, ProgressStore
from .storage import save_results

# Percent reserved for per-URL work; the final 5% covers finalizing/complete.
URL_WORK_PERCENT = 95

PHASE_FRACTIONS = {
    "fetching": 0.0,
    "analyzing": 0.25,
    "extracting": 0.5,
    "processing": 0.8,
    "completed": 1.0,
    "error": 1.0,
    "waiting": 1.0,
}


def compute_percent(index: int, total: int, phase: str) -> int:
    """floor(95 * (index + phase_fraction) / total)."""
    if total <= 0:
        return 0
    fraction = PHASE_FRACTIONS.get(phase, 0.0)
    return min(URL_WORK_PERCENT, math.floor(URL_WORK_PERCENT * (index + fraction) / total))


@dataclass
class ExtractionResult:
    records: List[dict]
    artifact: Optional[str]
    run_id: str

    @property
    def success_count(self) -> int:
        return sum(1 for record in self.records if "error" not in record)


def _is_failure(record: dict) -> bool:
    return "error" in record and not record.get("_salvaged")


def run_extraction(
    urls,
    instruction: str,
    *,
    settings: Optional[Settings] = None,
    run_id: Optional[str] = None,
    fetcher: Optional[PageFetcher] = None,
    invoker: Optional[ExtractionInvoker] = None,
    store: Optional[ProgressStore] = None,
    sleep: Callable[[float], None] = time.sleep,
    status_callback: Optional[Callable[[ProgressSnapshot], None]] = None,
    export_format: Optional[str] = "xlsx",
) -> ExtractionResult:
    """
    Extracts one record per URL, in input order.

    Per-URL failures become {"error", "url"} records and the run continues.
    The database module is pointed at settings.db_file for the run.
    Raises ExtractionCancelled (carrying the records collected so far) when
    the run is cancelled, and ValueError for an empty URL list.
    """
    request = ExtractionRequest(urls=urls, instruction=instruction)
    settings = settings or Settings.from_env()
    configure(settings.db_file)
    init_db()
    run_id = run_id or create_run_id()
    store = store or ProgressStore(settings.progress_ttl_s)
    total = len(request.urls)

    publisher = ProgressPublisher(run_id, total, store=store, listener=status_callback)
    fetcher = fetcher or PageFetcher(settings, sleep=sleep)
    invoker = invoker or ExtractionInvoker(settings.gemini_api_key, settings, run_id=run_id)

    def emit(phase: str, status: str, index: int, url: str) -> None:
        publisher.emit(status, phase, compute_percent(index, total, phase), url=url, index=index)

    def check_cancelled() -> None:
        if store.is_cancelled(run_id):
            raise ExtractionCancelled(run_id)

    services = PipelineServices(
        fetcher=fetcher,
        invoker=invoker,
        settings=settings,
        emit=emit,
        check_cancelled=check_cancelled,
        sleep=sleep,
    )

    log_event(run_id, "pipeline", "INFO", f"Starting extraction of {total} URLs", {
        "urls": list(request.urls),
        "instruction_chars": len(request.instruction),
    })
    publisher.emit("Initializing extraction...", "initializing", 0)

    records: List[dict] = []
    current_url = ""
    current_index = 0
    try:
        for index, url in enumerate(request.urls):
            current_url, current_index = url, index
            try:
                if not url.strip():
                    raise ValueError("URL is empty")
                record = run_url_workflow(url, request.instruction, services, index=index, run_id=run_id)
            except ExtractionCancelled:
                raise
            except Exception as e:
                log_event(run_id, "pipeline", "ERROR", f"Error processing {url}: {e}")
                record = {"error": f"Failed to process URL: {e}", "url": url}

            records.append(record)
            if _is_failure(record):
                emit("error", f"Error processing {url}", index, url)
            else:
                emit("completed", f"Completed {url}", index, url)

            if index < total - 1:
                check_cancelled()
                emit("waiting", "Waiting before processing next URL...", index, url)
                sleep(settings.url_delay_s)
                check_cancelled()
        # a cancel that lands after the last URL still wins over completion
        check_cancelled()
    except ExtractionCancelled as e:
        log_event(run_id, "pipeline", "WARNING", "Extraction cancelled", {"records": len(records)})
        publisher.emit(CANCELLED_STATUS, "cancelled", 100, url=current_url, index=current_index)
        raise ExtractionCancelled(run_id, records) from e

    publisher.emit("Generating spreadsheet...", "finalizing", URL_WORK_PERCENT, url=current_url, index=current_index)
    save_extractions(records, run_id)

    artifact = None
    if export_format and settings.export_dir:
        try:
            artifact = save_results(records, os.path.join(settings.export_dir, f"{run_id}.{export_format}"))
        except Exception as e:
            log_event(run_id, "pipeline", "ERROR", f"Failed to export results: {e}")

    result = ExtractionResult(records=records, artifact=artifact, run_id=run_id)
    log_event(run_id, "pipeline", "INFO", f"Successfully extracted data from {result.success_count}/{total} URLs")
    publisher.emit("Extraction complete!", "complete", 100, url=current_url, index=current_index)
    return result
