import typer
from dotenv import load_dotenv, find_dotenv
import os
import sys
import platform
from pathlib import Path
from typing import List, Optional
from typing_extensions import Annotated
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich import box
from rich.prompt import Prompt, Confirm
import warnings

# Suppress Pydantic serializer warnings
warnings.filterwarnings("ignore", category=UserWarning, module="pydantic")

from .config import Settings
from .database import configure, init_db, create_run_id, log_event, get_extractions, get_token_usage_report
from .errors import ExtractionCancelled
from .graph_state import ExtractionRequest
from .pipeline import run_extraction
from .progress import ProgressStore, cancel_run, get_progress, subscribe
from .storage import EXPORT_FORMATS, save_results, display_results
from . import __version__

load_dotenv(find_dotenv())

app = typer.Typer(pretty_exceptions_show_locals=False)
console = Console()


def _fail(message: str, run_id: str = "") -> None:
    console.print(f"[bold red]Error:[/bold red] {message}")
    if run_id:
        log_event(run_id, "cli", "ERROR", message)
    raise typer.Exit(code=1)


def _load_settings(**overrides) -> Settings:
    settings = Settings.from_env(**overrides)
    configure(settings.db_file)
    init_db()
    return settings


def _prompt_for_api_key(key_name: str, description: str, url: str) -> str:
    """
    Prompts for a required API key and offers to save it to .env.
    """
    console.print()
    console.print(f"[bold yellow]⚠ {key_name} is required but not found in .env file[/bold yellow]")
    console.print(f"[dim]Get your {description} key from: {url}[/dim]")
    console.print()

    api_key = Prompt.ask(f"[bold]Enter your {description} key[/bold]", password=True)
    if not api_key or not api_key.strip():
        _fail(f"{key_name} cannot be empty")
    api_key = api_key.strip()

    if Confirm.ask(f"[bold]Save {key_name} to .env file?[/bold] (recommended for future runs)", default=True):
        try:
            env_file = Path(".env")
            lines = env_file.read_text().splitlines() if env_file.exists() else []
            lines = [line for line in lines if not line.strip().startswith(f"{key_name}=")]
            lines.append(f"{key_name}={api_key}")
            env_file.write_text("\n".join(lines) + "\n")
            console.print(f"[green]✓[/green] {key_name} saved to [bold]{env_file.resolve()}[/bold]")
        except OSError as e:
            console.print(f"[yellow]Warning: Could not save to .env file: {e}[/yellow]")

    os.environ[key_name] = api_key
    return api_key


def _read_urls(file: Optional[str], urls: Optional[List[str]]) -> List[str]:
    collected = []
    if file:
        if not os.path.exists(file):
            _fail(f"File {file} not found.")
        with open(file, "r", encoding="utf-8") as f:
            collected.extend(line.strip() for line in f if line.strip() and not line.strip().startswith("#"))
    collected.extend(u.strip() for u in urls or [] if u.strip())
    return collected


def _print_snapshot(snapshot) -> None:
    console.print(
        f"[cyan]{snapshot.percent:>3}%[/cyan] {snapshot.status}"
        + (f" [dim]({snapshot.current_url_index + 1}/{snapshot.total_urls})[/dim]" if snapshot.total_urls else "")
    )


def _print_token_report(run_id: str, db_file: str) -> None:
    token_report = get_token_usage_report(run_id)
    if not token_report.get("steps"):
        console.print("[dim]No token usage data recorded for this run.[/dim]")
        return

    token_table = Table(title="Token Usage Report", box=box.SIMPLE)
    token_table.add_column("Step", style="cyan")
    token_table.add_column("Calls", justify="right")
    token_table.add_column("Prompt", justify="right")
    token_table.add_column("Completion", justify="right")
    token_table.add_column("Total", justify="right")
    token_table.add_column("Duration (s)", justify="right")

    for step in token_report["steps"]:
        token_table.add_row(
            step["step_name"],
            f"{step['calls']:,}",
            f"{step['prompt_tokens']:,}",
            f"{step['completion_tokens']:,}",
            f"{step['total_tokens']:,}",
            f"{step['duration_seconds']:.2f}",
        )

    totals = token_report["totals"]
    token_table.add_row(
        "TOTAL",
        f"{totals['calls']:,}",
        f"{totals['prompt_tokens']:,}",
        f"{totals['completion_tokens']:,}",
        f"{totals['total_tokens']:,}",
        f"{totals['duration_seconds']:.2f}",
        style="bold",
    )
    console.print(token_table)
    console.print(f"[dim]Token usage details saved to {os.path.abspath(db_file)} (step_timings table)[/dim]")


@app.command()
def version():
    """Show the version of the application."""
    console.print(f"productminer v{__version__}")
    console.print(f"Platform: {platform.system()} {platform.release()}")
    console.print(f"Python: {sys.version.split()[0]}")


@app.command()
def extract(
    instruction: Annotated[Optional[str], typer.Option(help="What to extract from each product page")] = None,
    instruction_file: Annotated[Optional[str], typer.Option(help="Read the instruction from a text file")] = None,
    url: Annotated[Optional[List[str]], typer.Option(help="Product URL (repeatable)")] = None,
    file: Annotated[Optional[str], typer.Option(help="Text file with one product URL per line")] = None,
    output: Annotated[Optional[str], typer.Option(help="Also write results to this file (.xlsx, .csv or .json)")] = None,
    export_format: Annotated[str, typer.Option(help="Format of the run artifact in the export directory")] = "xlsx",
    delay: Annotated[Optional[float], typer.Option(help="Seconds to wait between URLs (overrides URL_DELAY_S)")] = None,
    db: Annotated[Optional[str], typer.Option(help="SQLite database file (overrides PRODUCTMINER_DB)")] = None,
    gemini_api_key: Annotated[Optional[str], typer.Option(help="Gemini API key (overrides GEMINI_API_KEY env var)")] = None,
):
    """
    Extract structured product data from one or more product pages.
    """
    if export_format not in EXPORT_FORMATS:
        _fail(f"Invalid --export-format '{export_format}'. Choose from: {', '.join(EXPORT_FORMATS)}.")

    settings = _load_settings(db_file=db, url_delay_s=delay, gemini_api_key=gemini_api_key)
    run_id = create_run_id()

    if instruction_file:
        if not os.path.exists(instruction_file):
            _fail(f"File {instruction_file} not found.", run_id)
        with open(instruction_file, "r", encoding="utf-8") as f:
            instruction = f.read().strip()
    if not instruction:
        _fail("An instruction is required (--instruction or --instruction-file).", run_id)

    urls = _read_urls(file, url)
    try:
        request = ExtractionRequest(urls=urls, instruction=instruction)
    except ValueError:
        _fail("At least one of --file or --url must provide a URL.", run_id)

    if not settings.gemini_api_key:
        key = _prompt_for_api_key("GEMINI_API_KEY", "Gemini API", "https://aistudio.google.com/app/apikey")
        settings = settings.model_copy(update={"gemini_api_key": key})

    log_event(run_id, "cli", "INFO", "Started extract command", {
        "urls": list(request.urls),
        "export_format": export_format,
        "url_delay_s": settings.url_delay_s,
    })
    console.print(Panel.fit("[bold cyan]ProductMiner: Product Data Extraction[/bold cyan]", border_style="cyan"))
    console.print(f"[dim]Run ID:[/dim] {run_id}")

    fallback_tiers = [
        name for name, enabled in (
            ("scraping proxy", settings.has_scraping_proxy),
            ("managed robot", settings.has_robot),
            ("headless render", settings.has_renderer),
        ) if enabled
    ]
    if fallback_tiers:
        console.print(f"[dim]Fallback tiers enabled: {', '.join(fallback_tiers)}[/dim]")

    from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn, TimeElapsedColumn

    records = []
    artifact = None
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=False,
    ) as progress:
        task = progress.add_task(f"[bold green]Processing {len(request.urls)} URLs...", total=100)

        def on_snapshot(snapshot):
            progress.update(task, completed=snapshot.percent, description=snapshot.status, refresh=True)
            if snapshot.phase == "completed":
                progress.console.print(f"  [green]✓[/green] {snapshot.current_url}")
            elif snapshot.phase == "error":
                progress.console.print(f"  [bold red]✗[/bold red] {snapshot.current_url}")

        try:
            result = run_extraction(
                list(request.urls),
                request.instruction,
                settings=settings,
                run_id=run_id,
                status_callback=on_snapshot,
                export_format=export_format,
            )
            records, artifact = result.records, result.artifact
        except ExtractionCancelled as e:
            records = e.records
            progress.console.print(f"[bold yellow]⚠ Extraction cancelled after {len(records)} URLs[/bold yellow]")

    if output and records:
        try:
            save_results(records, output, metadata={"run_id": run_id, "instruction": request.instruction})
            console.print(f"[green]Results saved to {os.path.abspath(output)}[/green]")
        except (OSError, ValueError) as e:
            console.print(f"[bold red]Failed to save {output}: {e}[/bold red]")

    display_results(records)
    if artifact:
        console.print(f"\n[bold green]✓[/bold green] Spreadsheet saved to [bold]{artifact}[/bold]")
    _print_token_report(run_id, settings.db_file)

    success = sum(1 for record in records if "error" not in record)
    console.print(f"[bold]Extracted data from {success}/{len(request.urls)} URLs[/bold]")
    log_event(run_id, "cli", "INFO", "Completed extract command", {"records": len(records)})

    if len(records) < len(request.urls):
        raise typer.Exit(code=1)


@app.command()
def progress(
    run_id: Annotated[Optional[str], typer.Argument(help="Run ID (defaults to the latest run)")] = None,
    db: Annotated[Optional[str], typer.Option(help="SQLite database file")] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print the raw snapshot JSON")] = False,
):
    """Show the current progress snapshot of a run."""
    settings = _load_settings(db_file=db)
    snapshot = get_progress(run_id, store=ProgressStore(settings.progress_ttl_s))
    if as_json:
        console.print_json(snapshot.to_json())
    else:
        _print_snapshot(snapshot)


@app.command()
def watch(
    run_id: Annotated[Optional[str], typer.Argument(help="Run ID (defaults to the latest run)")] = None,
    db: Annotated[Optional[str], typer.Option(help="SQLite database file")] = None,
    interval: Annotated[float, typer.Option(help="Polling interval in seconds")] = 0.2,
):
    """Stream progress updates until the run finishes."""
    settings = _load_settings(db_file=db)
    try:
        for snapshot in subscribe(run_id, store=ProgressStore(settings.progress_ttl_s), poll_interval=interval):
            _print_snapshot(snapshot)
    except KeyboardInterrupt:
        console.print("[dim]Stopped watching.[/dim]")


@app.command()
def cancel(
    run_id: Annotated[Optional[str], typer.Argument(help="Run ID (defaults to the latest run)")] = None,
    db: Annotated[Optional[str], typer.Option(help="SQLite database file")] = None,
):
    """Request cancellation of a running extraction."""
    settings = _load_settings(db_file=db)
    cancelled = cancel_run(run_id, store=ProgressStore(settings.progress_ttl_s))
    if not cancelled:
        _fail("No active extraction to cancel.")
    console.print(f"[yellow]Cancellation requested for {cancelled}[/yellow]")


@app.command()
def export(
    run_id: Annotated[str, typer.Argument(help="Run ID to export")],
    output: Annotated[str, typer.Option(help="Output file (.xlsx, .csv or .json)")] = "results.xlsx",
    db: Annotated[Optional[str], typer.Option(help="SQLite database file")] = None,
):
    """Export the stored records of a finished run."""
    _load_settings(db_file=db)
    records = get_extractions(run_id)
    if not records:
        _fail(f"No records stored for run {run_id}.")
    try:
        path = save_results(records, output, metadata={"run_id": run_id})
    except ValueError as e:
        _fail(str(e))
    console.print(f"[green]Results saved to {path}[/green]")


@app.command()
def serve(
    host: Annotated[str, typer.Option(help="Bind address")] = "127.0.0.1",
    port: Annotated[int, typer.Option(help="Port")] = 8000,
    db: Annotated[Optional[str], typer.Option(help="SQLite database file")] = None,
):
    """Run the HTTP API (submit, progress stream, cancel, export)."""
    import uvicorn

    if db:
        os.environ["PRODUCTMINER_DB"] = db
    _load_settings(db_file=db)
    console.print(f"[bold cyan]ProductMiner API[/bold cyan] on http://{host}:{port}")
    uvicorn.run("productminer.server:create_app", host=host, port=port, factory=True)


if __name__ == "__main__":
    app()
