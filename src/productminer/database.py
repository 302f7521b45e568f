import sqlite3
import uuid
import time
import json
from rich.console import Console

import os

from .errors import StoreError

console = Console()
DB_FILE = os.path.join("logs", "productminer.db")


def configure(db_file: str):
    """
    Points every helper in this module at a different SQLite file.
    """
    global DB_FILE
    DB_FILE = db_file


def _connect(timeout: float = 30.0) -> sqlite3.Connection:
    return sqlite3.connect(DB_FILE, timeout=timeout)


def init_db():
    """
    Initializes the SQLite database and creates the tables if they don't exist.
    """
    try:
        directory = os.path.dirname(DB_FILE)
        if directory:
            os.makedirs(directory, exist_ok=True)
        conn = _connect()
        cursor = conn.cursor()
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
                component TEXT NOT NULL,
                level TEXT NOT NULL,
                message TEXT NOT NULL,
                data TEXT
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS extractions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT,
                url TEXT NOT NULL,
                position INTEGER NOT NULL,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
                data TEXT NOT NULL
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS step_timings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                url TEXT,
                duration_seconds REAL NOT NULL,
                details TEXT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL NOT NULL
            )
        ''')
        conn.commit()
        conn.close()
    except Exception as e:
        console.print(f"[red]Failed to initialize database: {e}[/red]")


def create_run_id() -> str:
    """
    Creates a unique extraction run ID.
    """
    return f"extraction-{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}"


def log_event(run_id: str, component: str, level: str, message: str, data: dict = None):
    """
    Logs an event to the database.
    """
    try:
        data_json = json.dumps(data, default=str) if data else None
        with _connect() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO logs (run_id, component, level, message, data)
                VALUES (?, ?, ?, ?, ?)
            ''', (run_id or "", component, level, message, data_json))
    except Exception as e:
        # Logging must never interrupt a run
        print(f"Log error: {e}")


def log_step_timing(
    run_id: str,
    step_name: str,
    duration_seconds: float,
    url: str = None,
    details: dict = None,
):
    """
    Logs step timing for performance debugging.

    Args:
        run_id: The current extraction run ID
        step_name: Name of the step (e.g., 'fetch', 'reduce', 'extract_llm')
        duration_seconds: How long the step took
        url: Optional URL being processed
        details: Optional dict with additional info (tokens, model tier, etc.)
    """
    try:
        details_json = json.dumps(details, default=str) if details else None
        with _connect() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO step_timings (run_id, step_name, url, duration_seconds, details)
                VALUES (?, ?, ?, ?, ?)
            ''', (run_id or "", step_name, url, duration_seconds, details_json))
    except Exception as e:
        print(f"Step timing log error: {e}")


def save_extractions(extractions: list, run_id: str = None):
    """
    Saves a run's records to the database, keeping their order.
    """
    try:
        with _connect() as conn:
            cursor = conn.cursor()
            for position, extraction in enumerate(extractions):
                url = extraction.get("sourceUrl") or extraction.get("url") or "unknown"
                cursor.execute('''
                    INSERT INTO extractions (run_id, url, position, data)
                    VALUES (?, ?, ?, ?)
                ''', (run_id, url, position, json.dumps(extraction, default=str)))
    except Exception as e:
        console.print(f"[red]Failed to save extractions to DB: {e}[/red]")


def get_extractions(run_id: str) -> list:
    """
    Returns the stored records for a run in their original order.
    """
    try:
        with _connect() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT data FROM extractions
                WHERE run_id = ?
                ORDER BY position ASC, id ASC
            ''', (run_id,))
            rows = cursor.fetchall()
    except Exception as e:
        console.print(f"[red]Failed to read extractions: {e}[/red]")
        return []
    return [json.loads(row[0]) for row in rows]


# =============================================================================
# TTL key-value store (progress snapshots, cancellation flags)
# =============================================================================

def kv_set(key: str, value: str, ttl_seconds: float):
    """
    Stores a value that expires after ttl_seconds. Raises StoreError.
    """
    try:
        with _connect(timeout=5.0) as conn:
            conn.execute('''
                INSERT OR REPLACE INTO kv_store (key, value, expires_at)
                VALUES (?, ?, ?)
            ''', (key, value, time.time() + ttl_seconds))
    except sqlite3.Error as e:
        raise StoreError(f"Failed to write {key}: {e}") from e


def kv_get(key: str):
    """
    Returns the stored value, or None if missing or expired. Raises StoreError.
    """
    try:
        with _connect(timeout=5.0) as conn:
            cursor = conn.cursor()
            cursor.execute('SELECT value, expires_at FROM kv_store WHERE key = ?', (key,))
            row = cursor.fetchone()
            if row is None:
                return None
            value, expires_at = row
            if expires_at <= time.time():
                cursor.execute('DELETE FROM kv_store WHERE key = ?', (key,))
                return None
            return value
    except sqlite3.Error as e:
        raise StoreError(f"Failed to read {key}: {e}") from e


def purge_expired() -> int:
    """
    Deletes expired keys and returns how many were removed.
    """
    try:
        with _connect(timeout=5.0) as conn:
            cursor = conn.execute('DELETE FROM kv_store WHERE expires_at <= ?', (time.time(),))
            return cursor.rowcount
    except sqlite3.Error as e:
        raise StoreError(f"Failed to purge expired keys: {e}") from e


def get_token_usage_report(run_id: str) -> dict:
    """
    Aggregate token usage for a run from step_timings.
    """
    if not run_id or not os.path.exists(DB_FILE):
        return {"steps": [], "totals": {}}

    try:
        with _connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT step_name, duration_seconds, details
                FROM step_timings
                WHERE run_id = ?
                """,
                (run_id,),
            )
            rows = cursor.fetchall()
    except Exception as e:
        console.print(f"[red]Failed to read token usage: {e}[/red]")
        return {"steps": [], "totals": {}}

    by_step = {}
    for step_name, duration_seconds, details_json in rows:
        if not details_json:
            continue
        try:
            details = json.loads(details_json)
        except ValueError:
            continue
        if not isinstance(details, dict):
            continue
        if "prompt_tokens" not in details and "completion_tokens" not in details:
            continue

        entry = by_step.setdefault(
            step_name,
            {
                "step_name": step_name,
                "prompt_tokens": 0,
                "completion_tokens": 0,
                "total_tokens": 0,
                "calls": 0,
                "duration_seconds": 0.0,
            },
        )
        entry["prompt_tokens"] += int(details.get("prompt_tokens") or 0)
        entry["completion_tokens"] += int(details.get("completion_tokens") or 0)
        entry["total_tokens"] = entry["prompt_tokens"] + entry["completion_tokens"]
        entry["calls"] += 1
        entry["duration_seconds"] += float(duration_seconds or 0.0)

    steps = sorted(by_step.values(), key=lambda item: item["total_tokens"], reverse=True)
    if not steps:
        return {"steps": [], "totals": {}}

    totals = {
        "prompt_tokens": sum(step["prompt_tokens"] for step in steps),
        "completion_tokens": sum(step["completion_tokens"] for step in steps),
        "total_tokens": sum(step["total_tokens"] for step in steps),
        "calls": sum(step["calls"] for step in steps),
        "duration_seconds": sum(step["duration_seconds"] for step in steps),
    }
    return {"steps": steps, "totals": totals}
