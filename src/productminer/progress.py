"""
Run progress: snapshots, polling, streaming and cancellation.

Snapshots live in the SQLite key-value table under "progress:{run_id}" with a
TTL, and "latest-extraction-id" points at the most recently published run.
Cancellation is a per-run flag under "cancel:{run_id}".
"""

import json
import time
from typing import Callable, Iterator, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from . import database
from .database import log_event
from .errors import StoreError

LATEST_KEY = "latest-extraction-id"
DEFAULT_TTL_S = 1800

NO_ACTIVE_STATUS = "No active extraction"
ERROR_STATUS = "Error fetching progress"
CANCELLED_STATUS = "Cancelled"

TERMINAL_PHASES = ("complete", "cancelled")


def _now_ms() -> int:
    return int(time.time() * 1000)


class ProgressSnapshot(BaseModel):
    """
    What a client sees of a run. Serialized with camelCase keys
    (currentUrl, currentUrlIndex, totalUrls, lastUpdated, runId).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    current_url: str = ""
    current_url_index: int = 0
    total_urls: int = 0
    status: str = ""
    phase: str = "idle"
    percent: int = 0
    last_updated: int = 0
    run_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.percent >= 100 or self.phase in TERMINAL_PHASES

    def dedupe_key(self) -> str:
        return json.dumps(self.model_dump(by_alias=True, exclude={"last_updated"}), sort_keys=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


def no_active_snapshot(run_id: Optional[str] = None) -> ProgressSnapshot:
    return ProgressSnapshot(status=NO_ACTIVE_STATUS, phase="idle", percent=0, last_updated=_now_ms(), run_id=run_id)


def error_snapshot(run_id: Optional[str] = None, percent: int = 0) -> ProgressSnapshot:
    return ProgressSnapshot(status=ERROR_STATUS, phase="error", percent=percent, last_updated=_now_ms(), run_id=run_id)


class ProgressStore:
    """
    Snapshot persistence over database.kv_*.

    read/latest_run_id/request_cancel raise StoreError; publish never does.
    """

    def __init__(self, ttl_s: float = DEFAULT_TTL_S):
        self.ttl_s = ttl_s

    @staticmethod
    def progress_key(run_id: str) -> str:
        return f"progress:{run_id}"

    @staticmethod
    def cancel_key(run_id: str) -> str:
        return f"cancel:{run_id}"

    def read(self, run_id: str) -> Optional[ProgressSnapshot]:
        raw = database.kv_get(self.progress_key(run_id))
        if raw is None:
            return None
        try:
            return ProgressSnapshot.model_validate_json(raw)
        except ValueError as e:
            raise StoreError(f"Corrupt progress snapshot for {run_id}: {e}") from e

    def write(self, run_id: str, snapshot: ProgressSnapshot) -> None:
        database.kv_set(self.progress_key(run_id), snapshot.to_json(), self.ttl_s)
        database.kv_set(LATEST_KEY, run_id, self.ttl_s)

    def publish(self, run_id: str, snapshot: ProgressSnapshot) -> bool:
        """
        Best-effort write. A stored terminal snapshot is never replaced by a
        non-terminal one. Returns whether the snapshot was stored.
        """
        try:
            if not snapshot.is_terminal:
                current = self.read(run_id)
                if current is not None and current.is_terminal:
                    return False
            self.write(run_id, snapshot)
            return True
        except StoreError as e:
            log_event(run_id, "progress", "WARNING", f"Failed to publish progress: {e}")
            return False

    def latest_run_id(self) -> Optional[str]:
        return database.kv_get(LATEST_KEY)

    def request_cancel(self, run_id: str) -> None:
        database.kv_set(self.cancel_key(run_id), "1", self.ttl_s)

    def is_cancelled(self, run_id: str) -> bool:
        try:
            return database.kv_get(self.cancel_key(run_id)) is not None
        except StoreError as e:
            log_event(run_id, "progress", "WARNING", f"Failed to read cancel flag: {e}")
            return False


class ProgressPublisher:
    """
    Publishes snapshots for one run, keeping percent non-decreasing.
    """

    def __init__(self, run_id: str, total_urls: int, store: Optional[ProgressStore] = None,
                 listener: Optional[Callable[[ProgressSnapshot], None]] = None):
        self.run_id = run_id
        self.total_urls = total_urls
        self.store = store or ProgressStore()
        self.listener = listener
        self.percent = 0
        self.last: Optional[ProgressSnapshot] = None

    def emit(self, status: str, phase: str, percent: int, url: str = "", index: int = 0) -> ProgressSnapshot:
        self.percent = max(self.percent, min(int(percent), 100))
        snapshot = ProgressSnapshot(
            current_url=url,
            current_url_index=index,
            total_urls=self.total_urls,
            status=status,
            phase=phase,
            percent=self.percent,
            last_updated=_now_ms(),
            run_id=self.run_id,
        )
        self.last = snapshot
        self.store.publish(self.run_id, snapshot)
        if self.listener is not None:
            try:
                self.listener(snapshot)
            except Exception as e:
                log_event(self.run_id, "progress", "WARNING", f"Progress listener failed: {e}")
        return snapshot


def _store(store: Optional[ProgressStore]) -> ProgressStore:
    return store or ProgressStore()


def latest_run_id(store: Optional[ProgressStore] = None) -> Optional[str]:
    try:
        return _store(store).latest_run_id()
    except StoreError:
        return None


def get_progress(run_id: Optional[str] = None, store: Optional[ProgressStore] = None) -> ProgressSnapshot:
    """
    Current snapshot for run_id (or the latest run when None).
    """
    store = _store(store)
    try:
        target = run_id or store.latest_run_id()
        if not target:
            return no_active_snapshot()
        snapshot = store.read(target)
        return snapshot if snapshot is not None else no_active_snapshot(target)
    except StoreError as e:
        log_event(run_id or "", "progress", "ERROR", f"Error fetching progress: {e}")
        return error_snapshot(run_id)


def subscribe(
    run_id: Optional[str] = None,
    store: Optional[ProgressStore] = None,
    poll_interval: float = 0.2,
    max_errors: int = 5,
    max_backoff: float = 5.0,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[ProgressSnapshot]:
    """
    Yields snapshots as they change until the run reaches a terminal state.

    Consecutive duplicates (ignoring lastUpdated) are skipped. Store errors
    are reported as an error snapshot and retried with capped exponential
    backoff; the stream ends after max_errors in a row.
    """
    store = _store(store)
    target = run_id
    last_key = None
    errors = 0
    last_percent = 0

    while True:
        delay = poll_interval
        try:
            if not target:
                target = store.latest_run_id()
            snapshot = store.read(target) if target else None
            if snapshot is None:
                snapshot = no_active_snapshot(target)
            errors = 0
        except StoreError as e:
            errors += 1
            log_event(target or "", "progress", "ERROR", f"Error fetching progress: {e}")
            # keep the last delivered percent so readers never see it drop
            snapshot = error_snapshot(target, percent=last_percent)
            delay = min(poll_interval * (2 ** errors), max_backoff)

        key = snapshot.dedupe_key()
        if key != last_key:
            last_key = key
            last_percent = max(last_percent, snapshot.percent)
            yield snapshot

        if snapshot.is_terminal or errors >= max_errors:
            return
        sleep(delay)


def is_cancelled(run_id: str, store: Optional[ProgressStore] = None) -> bool:
    return _store(store).is_cancelled(run_id)


def cancel_run(run_id: Optional[str] = None, store: Optional[ProgressStore] = None) -> Optional[str]:
    """
    Flags run_id (or the latest run) as cancelled and marks its stored
    snapshot as Cancelled at 100%. Safe to call more than once.

    Returns the run id that was cancelled, or None if there is none or the
    store could not record the request.
    """
    store = _store(store)
    try:
        target = run_id or store.latest_run_id()
        if not target:
            return None
        store.request_cancel(target)
        current = store.read(target)
    except StoreError as e:
        log_event(run_id or "", "progress", "ERROR", f"Failed to request cancellation: {e}")
        return None

    cancelled = ProgressSnapshot(
        current_url=current.current_url if current else "",
        current_url_index=current.current_url_index if current else 0,
        total_urls=current.total_urls if current else 0,
        status=CANCELLED_STATUS,
        phase="cancelled",
        percent=100,
        last_updated=_now_ms(),
        run_id=target,
    )
    if current is None or current.phase != "complete":
        # best effort; the stored cancel flag is what the run observes
        store.publish(target, cancelled)
    log_event(target, "progress", "INFO", "Cancellation requested")
    return target
