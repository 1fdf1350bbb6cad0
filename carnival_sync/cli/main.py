"""Carnival Sync CLI using Typer."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
import typer
from dotenv import load_dotenv
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from carnival_sync import __version__
from carnival_sync.core.config import PipelineConfig
from carnival_sync.core.enums import RunStatus, TriggerSource
from carnival_sync.core.logging_context import configure_logging
from carnival_sync.core.schema import IngestionRun

if TYPE_CHECKING:
    from carnival_sync.ingestion.audit import AuditLogger

# Load .env file from current directory or project root
_env_paths = [
    Path.cwd() / ".env",
    Path(__file__).parent.parent.parent / ".env",
]
for _env_path in _env_paths:
    if _env_path.exists():
        load_dotenv(_env_path)
        break

console = Console()

app = typer.Typer(
    name="carnival-sync",
    help="Carnival Sync - MySideline ingestion for Masters Rugby League carnivals",
    add_completion=False,
)
sync_app = typer.Typer(help="Ingestion run commands")
db_app = typer.Typer(help="Database commands")
app.add_typer(sync_app, name="sync")
app.add_typer(db_app, name="db")

STATUS_STYLES = {
    RunStatus.OK: "green",
    RunStatus.PARTIAL: "yellow",
    RunStatus.FAILED: "red",
    RunStatus.RUNNING: "blue",
}


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    configure_logging(logging.DEBUG if verbose else logging.INFO)


def _load_config() -> PipelineConfig:
    try:
        return PipelineConfig.from_env()
    except (ValueError, FileNotFoundError) as e:
        rprint(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1) from e


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", "-h", help="Host to bind to"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to bind to"),
) -> None:
    """Start the operator API with the scheduler."""
    import uvicorn

    config = _load_config()
    typer.echo(f"Starting Carnival Sync on http://{host}:{port}")
    typer.echo(f"  Schedule: {config.schedule} ({config.timezone})")
    typer.echo(f"  Sync enabled: {config.sync_enabled}")
    typer.echo("Press Ctrl+C to stop the server")

    uvicorn.run("carnival_sync.web.app:create_app", factory=True, host=host, port=port)


@app.command()
def version() -> None:
    """Show the Carnival Sync version."""
    typer.echo(f"Carnival Sync v{__version__}")


@app.command()
def check_config() -> None:
    """Show the effective configuration."""
    config = _load_config()
    from carnival_sync.db.engine import get_database_url

    table = Table(title="Carnival Sync Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for var, field_name in PipelineConfig.ENV_VARS.items():
        table.add_row(var, str(getattr(config, field_name)))
    table.add_row("DATABASE_URL", get_database_url())
    console.print(table)


# ----------------------------------------------------------------------
# sync
# ----------------------------------------------------------------------


@sync_app.command("run")
def run_sync(
    wait: bool = typer.Option(
        True, "--wait/--no-wait", help="Run here and wait, or ask a running server to start one"
    ),
    server: str = typer.Option("http://127.0.0.1:8000", "--server", help="Server URL for --no-wait"),
) -> None:
    """
    Start an ingestion run.

    Examples:
        carnival-sync sync run
        carnival-sync sync run --no-wait --server http://localhost:8000
    """
    if not wait:
        try:
            response = httpx.post(f"{server.rstrip('/')}/api/sync/runs", timeout=10.0)
        except httpx.HTTPError as e:
            rprint(f"[red]Error:[/red] Could not reach {server}: {e}")
            raise typer.Exit(1) from e
        body = response.json()
        if response.status_code == 202:
            rprint(f"[green]Run accepted:[/green] {body['correlationId']}")
            return
        rprint(f"[yellow]Run not started:[/yellow] {body.get('reason')} {body.get('correlationId', '')}")
        raise typer.Exit(1)

    from carnival_sync.db.engine import get_session_factory, init_db
    from carnival_sync.ingestion.pipeline import IngestionPipeline
    from carnival_sync.ingestion.scheduler import SyncScheduler

    config = _load_config()
    init_db()

    async def _run() -> tuple:
        scheduler = SyncScheduler(IngestionPipeline(config, get_session_factory()), config)
        return await scheduler.run_once(TriggerSource.CLI)

    with console.status("[bold blue]Syncing from MySideline...[/bold blue]"):
        result, run = asyncio.run(_run())

    if not result.accepted:
        rprint(f"[yellow]Run not started:[/yellow] {result.reason} {result.correlation_id or ''}")
        raise typer.Exit(1)

    _display_run(run)
    if run is not None and run.status == RunStatus.FAILED:
        raise typer.Exit(1)


@sync_app.command("runs")
def list_runs(
    limit: int = typer.Option(10, "--limit", "-n", help="Number of runs to show"),
) -> None:
    """List recent runs, newest first."""
    audit = _audit()
    runs = audit.list_recent(limit)
    if not runs:
        rprint("[dim]No runs recorded yet.[/dim]")
        return

    table = Table(title="Recent Runs")
    table.add_column("Correlation ID", style="cyan")
    table.add_column("Trigger")
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("Scanned", justify="right")
    table.add_column("Created", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Blocked", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Errored", justify="right")

    for run in runs:
        style = STATUS_STYLES.get(run.status, "white")
        table.add_row(
            run.correlation_id,
            run.trigger_source.value,
            f"[{style}]{run.status.value}[/{style}]",
            run.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            str(run.counters.scanned),
            str(run.counters.created),
            str(run.counters.updated),
            str(run.counters.blocked),
            str(run.counters.skipped),
            str(run.counters.errored),
        )
    console.print(table)


@sync_app.command("status")
def run_status(correlation_id: str = typer.Argument(..., help="Run correlation ID")) -> None:
    """Show one run's counters and errors."""
    run = _audit().get_run(correlation_id)
    if run is None:
        rprint(f"[red]Error:[/red] Run '{correlation_id}' not found")
        raise typer.Exit(1)
    _display_run(run)


@sync_app.command("stats")
def run_stats(
    days: int = typer.Option(30, "--days", "-d", help="Trailing window in days"),
) -> None:
    """Show run statistics over a trailing window."""
    stats = _audit().get_stats(days)

    rprint(f"\n[bold]Runs in the last {stats.window_days} days[/bold]")
    rprint(f"  Total: {stats.total_runs}")
    rprint(f"  Successful: [green]{stats.successful_runs}[/green]")
    rprint(f"  Partial: [yellow]{stats.partial_runs}[/yellow]")
    rprint(f"  Failed: [red]{stats.failed_runs}[/red]")
    rprint(f"  Success rate: {stats.success_rate:.0%}")
    rprint(f"  Last success: {stats.last_success_at or '-'}")
    rprint(f"  Last failure: {stats.last_failure_at or '-'}")


def _audit() -> AuditLogger:
    from carnival_sync.db.engine import get_session_factory, init_db
    from carnival_sync.ingestion.audit import AuditLogger

    init_db()
    return AuditLogger(get_session_factory())


def _display_run(run: IngestionRun | None) -> None:
    """Display a run record."""
    if run is None:
        return
    style = STATUS_STYLES.get(run.status, "white")
    rprint(f"\n[bold]Run {run.correlation_id}[/bold]")
    rprint(f"  Status: [{style}]{run.status.value}[/{style}]")
    rprint(f"  Trigger: {run.trigger_source.value}")
    rprint(f"  Started: {run.started_at}")
    rprint(f"  Completed: {run.completed_at or '-'}")

    counters = run.counters
    rprint(
        f"  Scanned {counters.scanned}, created {counters.created}, updated {counters.updated}, "
        f"blocked {counters.blocked}, skipped {counters.skipped}, errored {counters.errored}"
    )
    if run.deactivated:
        rprint(f"  Deactivated: {run.deactivated}")
    if run.skip_reasons:
        reasons = ", ".join(f"{reason}={count}" for reason, count in sorted(run.skip_reasons.items()))
        rprint(f"  Skip reasons: {reasons}")
    if run.error_summary:
        rprint(f"  [red]Summary:[/red] {run.error_summary}")
    if run.error_samples:
        rprint(f"\n[bold]Errors ({len(run.error_samples)}):[/bold]")
        for sample in run.error_samples:
            rprint(f"  • {sample}")


# ----------------------------------------------------------------------
# db
# ----------------------------------------------------------------------


@db_app.command("init")
def db_init() -> None:
    """Initialize the database (create tables)."""
    from carnival_sync.db.engine import init_db

    typer.echo("Initializing database...")
    init_db()
    typer.echo("Database initialized successfully!")


@db_app.command("migrate")
def db_migrate() -> None:
    """Upgrade the database to the latest Alembic revision."""
    from carnival_sync.db.engine import run_migrations

    typer.echo("Running migrations...")
    run_migrations()
    typer.echo("Database is up to date.")


if __name__ == "__main__":
    app()
