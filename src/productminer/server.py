"""
HTTP API for ProductMiner.

Endpoints:
    POST /api/extract                   - Start an extraction run in the background
    GET  /api/progress?id=              - Current progress snapshot
    GET  /api/extraction-progress?id=   - Progress as a Server-Sent Events stream
    POST /api/cancel?id=                - Request cancellation of a run
    GET  /api/runs/{run_id}/results     - Stored records of a run
    GET  /api/runs/{run_id}/export      - Records as xlsx/csv/json download

A missing id means "the latest run".
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel, ValidationError

from . import __version__
from .config import Settings
from .database import configure, create_run_id, get_extractions, init_db, log_event, purge_expired
from .errors import ExtractionCancelled, StoreError
from .graph_state import ExtractionRequest
from .pipeline import run_extraction
from .progress import ProgressPublisher, ProgressStore, cancel_run, get_progress, subscribe
from .storage import EXPORT_FORMATS, MEDIA_TYPES, export_bytes

logger = logging.getLogger("uvicorn.error")


class ExtractIn(BaseModel):
    urls: List[str]
    instruction: str


def _run_in_background(runner: Callable, request: ExtractionRequest, settings: Settings,
                       run_id: str, store: ProgressStore) -> None:
    try:
        runner(list(request.urls), request.instruction, settings=settings, run_id=run_id, store=store)
    except ExtractionCancelled as e:
        logger.info(f"[Extract] Run {run_id} cancelled after {len(e.records)} URLs")
    except Exception as e:
        logger.error(f"[Extract] Run {run_id} failed: {e}", exc_info=True)
        log_event(run_id, "server", "ERROR", f"Extraction failed: {e}")
        ProgressPublisher(run_id, len(request.urls), store=store).emit(
            f"Extraction failed: {e}", "failed", 100
        )


def create_app(settings: Optional[Settings] = None, runner: Callable = run_extraction) -> FastAPI:
    """
    Builds the FastAPI application. runner has the signature of
    pipeline.run_extraction.
    """
    settings = settings or Settings.from_env()
    configure(settings.db_file)
    init_db()
    try:
        removed = purge_expired()
        if removed:
            logger.info(f"[Startup] Purged {removed} expired progress keys")
    except StoreError as e:
        logger.warning(f"[Startup] Could not purge expired progress keys: {e}")
    store = ProgressStore(settings.progress_ttl_s)

    app = FastAPI(title="ProductMiner", version=__version__)

    @app.post("/api/extract")
    def extract(payload: ExtractIn, background_tasks: BackgroundTasks) -> Dict[str, Any]:
        """
        Start an extraction run and return its id immediately.
        """
        try:
            request = ExtractionRequest(urls=payload.urls, instruction=payload.instruction)
        except ValidationError:
            raise HTTPException(422, "At least one URL is required")

        run_id = create_run_id()
        ProgressPublisher(run_id, len(request.urls), store=store).emit(
            "Initializing extraction...", "initializing", 0
        )
        background_tasks.add_task(_run_in_background, runner, request, settings, run_id, store)
        logger.info(f"[Extract] Started run {run_id} for {len(request.urls)} URLs")
        return {"runId": run_id, "status": "queued", "totalUrls": len(request.urls)}

    @app.get("/api/progress")
    def progress(run_id: Optional[str] = Query(None, alias="id")) -> Dict[str, Any]:
        return get_progress(run_id, store=store).model_dump(by_alias=True)

    @app.get("/api/extraction-progress")
    def extraction_progress(run_id: Optional[str] = Query(None, alias="id")):
        """
        Stream snapshots as SSE "data:" events until the run finishes.
        """
        def event_stream():
            for snapshot in subscribe(run_id, store=store):
                yield f"data: {snapshot.to_json()}\n\n"

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    @app.post("/api/cancel")
    def cancel(run_id: Optional[str] = Query(None, alias="id")) -> Dict[str, Any]:
        cancelled = cancel_run(run_id, store=store)
        if not cancelled:
            raise HTTPException(404, "no active extraction")
        return {"ok": True, "runId": cancelled}

    @app.get("/api/runs/{run_id}/results")
    def results(run_id: str) -> Dict[str, Any]:
        records = get_extractions(run_id)
        if not records:
            raise HTTPException(404, "run not found")
        return {"runId": run_id, "records": records}

    @app.get("/api/runs/{run_id}/export")
    def export(run_id: str, format: str = Query("xlsx")) -> Response:
        if format not in EXPORT_FORMATS:
            raise HTTPException(400, f"format must be one of: {', '.join(EXPORT_FORMATS)}")
        records = get_extractions(run_id)
        if not records:
            raise HTTPException(404, "run not found")
        return Response(
            content=export_bytes(records, format),
            media_type=MEDIA_TYPES[format],
            headers={"Content-Disposition": f'attachment; filename="{run_id}.{format}"'},
        )

    return app
