import io
import json
import os
from datetime import datetime
from typing import Dict, List, Optional

import pandas as pd
from rich.console import Console
from rich.table import Table

console = Console()

SHEET_NAME = "Product Data"
EXPORT_FORMATS = ("xlsx", "csv", "json")


def column_order(records: List[Dict]) -> List[str]:
    """Union of record keys in first-seen order."""
    columns = []
    seen = set()
    for record in records:
        for key in record.keys():
            if key not in seen:
                seen.add(key)
                columns.append(key)
    return columns


def records_to_frame(records: List[Dict]) -> pd.DataFrame:
    """
    One row per record; fields a record lacks are left blank.
    """
    columns = column_order(records)
    return pd.DataFrame(list(records), columns=columns, dtype=object)


def save_results(records: List[Dict], output_file: str, metadata: Optional[Dict] = None) -> Optional[str]:
    """
    Saves records to .xlsx (sheet "Product Data"), .csv or .json, chosen by
    the file extension. JSON output is pretty-printed; when metadata is given
    it is wrapped as {"metadata": ..., "results": ...}.

    Returns the absolute path written, or None when there was nothing to save.
    """
    if not records:
        console.print("[yellow]No results to save.[/yellow]")
        return None

    directory = os.path.dirname(output_file)
    if directory:
        os.makedirs(directory, exist_ok=True)

    extension = os.path.splitext(output_file)[1].lower().lstrip(".")
    if extension == "json":
        if metadata is not None:
            payload = {"metadata": dict(metadata), "results": records}
            payload["metadata"].setdefault("timestamp", datetime.now().isoformat())
        else:
            payload = records
        with open(output_file, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, ensure_ascii=False, default=str)
    elif extension == "csv":
        records_to_frame(records).to_csv(output_file, index=False)
    elif extension == "xlsx":
        records_to_frame(records).to_excel(output_file, sheet_name=SHEET_NAME, index=False, engine="openpyxl")
    else:
        raise ValueError(f"Unsupported export format: {extension or output_file}")

    return os.path.abspath(output_file)


MEDIA_TYPES = {
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "csv": "text/csv",
    "json": "application/json",
}


def export_bytes(records: List[Dict], fmt: str) -> bytes:
    """Serializes records in memory, same layout as save_results."""
    if fmt == "json":
        return json.dumps(records, indent=2, ensure_ascii=False, default=str).encode("utf-8")
    if fmt == "csv":
        return records_to_frame(records).to_csv(index=False).encode("utf-8")
    if fmt == "xlsx":
        buffer = io.BytesIO()
        records_to_frame(records).to_excel(buffer, sheet_name=SHEET_NAME, index=False, engine="openpyxl")
        return buffer.getvalue()
    raise ValueError(f"Unsupported export format: {fmt}")


def display_results(records: List[Dict], max_cell_chars: int = 80):
    """
    Displays records in a Rich table, one column per field.
    """
    if not records:
        return

    table = Table(title="Extracted Product Data")
    columns = column_order(records)
    for key in columns:
        style = "red" if key == "error" else ("cyan" if key in ("sourceUrl", "url") else None)
        table.add_column(key, style=style, overflow="fold")

    for record in records:
        row = []
        for key in columns:
            value = record.get(key)
            text = "-" if value is None else str(value)
            if len(text) > max_cell_chars:
                text = text[:max_cell_chars] + "..."
            row.append(text)
        table.add_row(*row)

    console.print(table)
