"""CLI commands for pubpipe using Typer and Rich.

Commands:
- serve: Run the API with both schedulers
- add: Enqueue a work unit
- list: List work units in a table
- status: Show a unit with its step records
- retry: Reset one ingestion step for re-execution
- publish: Publish one phase of a unit now
"""

import asyncio
import logging
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from pubpipe import validate_dependencies
from pubpipe.config import settings
from pubpipe.db import init_database, shutdown
from pubpipe.orchestrator.publication import PHASES, PublicationScheduler, PublishNotAllowed
from pubpipe.orchestrator.runtime import build_runtime
from pubpipe.orchestrator.service import StepBusy, StepNotRetryable, request_step_retry
from pubpipe.orchestrator.state import (
    FAILED,
    FULLY_PUBLISHED,
    IN_PROGRESS_RECOVERY,
    PENDING_INGESTION,
    PRIMARY_PUBLISH_FAILED,
    SECONDARY_PUBLISH_FAILED,
    STEP_COMPLETED,
    STEP_FAILED,
    STEP_RUNNING,
    STEP_SKIPPED,
    UNIT_STATES,
)
from pubpipe.services.unit_service import UnitNotFound

app = typer.Typer(name="pubpipe", help="Staggered video publishing pipeline")
console = Console()


def _setup_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or settings.logging.level).upper(), logging.INFO),
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_time=False)],
        force=True,
    )


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default from config)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port (default from config)"),
):
    """Run the API server together with the ingestion and publication schedulers."""
    import uvicorn

    _setup_logging()

    # Fail-fast dependency validation
    try:
        validate_dependencies(settings.tools.ffmpeg_path, settings.tools.ytdlp_path)
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        raise typer.Exit(code=1)

    uvicorn.run(
        "pubpipe.api.app:app",
        host=host or settings.server.host,
        port=port or settings.server.port,
        reload=False,
        log_config=None,
    )


@app.command()
def add(
    source_ref: str = typer.Argument(..., help="Video id or URL"),
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Explicit source URL"),
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Source title"),
):
    """Enqueue a work unit for ingestion (no-op if it already exists)."""
    _setup_logging("WARNING")
    asyncio.run(_add_async(source_ref, url, title))


async def _add_async(source_ref: str, url: Optional[str], title: Optional[str]):
    await init_database()
    runtime = build_runtime()
    try:
        unit, created = await runtime.units.enqueue(source_ref, source_url=url, title=title)
    finally:
        await runtime.aclose()
        await shutdown()

    if created:
        console.print(f"[green]Enqueued:[/green] {unit.source_ref}")
    else:
        console.print(f"[yellow]Already known:[/yellow] {unit.source_ref} ({unit.status})")


@app.command(name="list")
def list_units(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by lifecycle code"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum rows"),
):
    """List work units, newest first."""
    if status is not None and status not in UNIT_STATES:
        console.print(f"[red]Error:[/red] Unknown status: {status}")
        console.print(f"Allowed: {', '.join(UNIT_STATES)}")
        raise typer.Exit(code=1)
    _setup_logging("WARNING")
    asyncio.run(_list_async(status, limit))


async def _list_async(status: Optional[str], limit: int):
    await init_database()
    runtime = build_runtime()
    try:
        units = await runtime.units.list_units(status=status, limit=limit)
    finally:
        await runtime.aclose()
        await shutdown()

    if not units:
        console.print("[yellow]No units found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Ref", style="dim")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Created")

    for unit in units:
        title = unit.generated_title or unit.title or ""
        title_display = title if len(title) <= 50 else title[:47] + "..."
        color = _get_status_color(unit.status)
        table.add_row(
            unit.source_ref,
            title_display,
            f"[{color}]{unit.status}[/{color}]",
            unit.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@app.command()
def status(
    source_ref: str = typer.Argument(..., help="Unit source ref"),
):
    """Show a unit's lifecycle state and its step records."""
    _setup_logging("WARNING")
    asyncio.run(_status_async(source_ref))


async def _status_async(source_ref: str):
    await init_database()
    runtime = build_runtime()
    try:
        unit = await runtime.units.get(source_ref)
        if unit is None:
            console.print(f"[red]Error:[/red] Unit not found: {source_ref}")
            raise typer.Exit(code=1)
        steps = await runtime.tracker.get_steps(source_ref)
        progress = await runtime.tracker.get_progress(source_ref)
    finally:
        await runtime.aclose()
        await shutdown()

    color = _get_status_color(unit.status)
    info_lines = [
        f"[bold]Ref:[/bold] {unit.source_ref}",
        f"[bold]Status:[/bold] [{color}]{unit.status}[/{color}] ({UNIT_STATES.get(unit.status, '')})",
        f"[bold]Progress:[/bold] {progress.percent}%",
        f"[bold]Created:[/bold] {unit.created_at.strftime('%Y-%m-%d %H:%M:%S')}",
    ]
    if unit.generated_title:
        info_lines.append(f"[bold]Title:[/bold] {unit.generated_title}")
    if unit.primary_publish_id:
        info_lines.append(f"[bold]Published as:[/bold] {unit.primary_publish_id}")
    if unit.primary_published_at:
        info_lines.append(f"[bold]Primary at:[/bold] {unit.primary_published_at.strftime('%Y-%m-%d %H:%M:%S')}")
    if unit.secondary_published_at:
        info_lines.append(f"[bold]Secondary at:[/bold] {unit.secondary_published_at.strftime('%Y-%m-%d %H:%M:%S')}")
    if unit.error_message:
        info_lines.append(f"[bold]Error:[/bold] [red]{unit.error_message}[/red]")

    console.print(Panel("\n".join(info_lines), title="[bold]Unit Status[/bold]", border_style="blue"))

    if not steps:
        return
    table = Table(show_header=True, header_style="bold blue")
    table.add_column("#", style="dim")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Error")
    for record in steps:
        step_color = _STEP_COLORS.get(record.status, "white")
        table.add_row(
            str(record.step_order),
            record.step_name,
            f"[{step_color}]{record.status}[/{step_color}]",
            str(record.attempts or 0),
            f"{(record.duration_ms or 0) / 1000:.1f}s",
            record.error_message or "",
        )
    console.print(table)


@app.command()
def retry(
    source_ref: str = typer.Argument(..., help="Unit source ref"),
    step_name: str = typer.Argument(..., help="Ingestion step to re-run"),
):
    """Reset one ingestion step; the running ingestion scheduler re-executes it."""
    _setup_logging("WARNING")
    asyncio.run(_retry_async(source_ref, step_name))


async def _retry_async(source_ref: str, step_name: str):
    await init_database()
    runtime = build_runtime()
    try:
        await request_step_retry(runtime, source_ref, step_name)
    except UnitNotFound:
        console.print(f"[red]Error:[/red] Unit not found: {source_ref}")
        raise typer.Exit(code=1)
    except (StepNotRetryable, StepBusy) as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        raise typer.Exit(code=1)
    finally:
        await runtime.aclose()
        await shutdown()

    console.print(f"[green]✓[/green] {step_name} reset; it runs on the next ingestion tick")


@app.command()
def publish(
    source_ref: str = typer.Argument(..., help="Unit source ref"),
    phase: str = typer.Argument(..., help="primary or secondary"),
):
    """Publish one phase of a unit now, bypassing cooldown and delay."""
    if phase not in PHASES:
        console.print(f"[red]Error:[/red] phase must be one of {', '.join(PHASES)}")
        raise typer.Exit(code=1)
    _setup_logging()
    asyncio.run(_publish_async(source_ref, phase))


async def _publish_async(source_ref: str, phase: str):
    await init_database()
    runtime = build_runtime()
    publication = PublicationScheduler(runtime)
    try:
        with console.status(f"[bold green]Publishing {phase}..."):
            published = await publication.publish_now(source_ref, phase)
        unit = await runtime.units.get(source_ref)
    except UnitNotFound:
        console.print(f"[red]Error:[/red] Unit not found: {source_ref}")
        raise typer.Exit(code=1)
    except PublishNotAllowed as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        raise typer.Exit(code=1)
    finally:
        await runtime.aclose()
        await shutdown()

    if published:
        console.print(f"[green]✓[/green] {source_ref} is now {unit.status}")
    else:
        console.print(f"[red]✗ Publication failed:[/red] {unit.error_message}")
        raise typer.Exit(code=1)


_STEP_COLORS = {
    STEP_COMPLETED: "green",
    STEP_SKIPPED: "cyan",
    STEP_FAILED: "red",
    STEP_RUNNING: "yellow",
}


def _get_status_color(status: str) -> str:
    """Get Rich color for a lifecycle code.

    Color coding:
    - fully published: green
    - failure codes: red
    - in-progress codes: yellow
    - pending: dim
    """
    if status == FULLY_PUBLISHED:
        return "green"
    elif status in (FAILED, PRIMARY_PUBLISH_FAILED, SECONDARY_PUBLISH_FAILED):
        return "red"
    elif status in IN_PROGRESS_RECOVERY:
        return "yellow"
    elif status == PENDING_INGESTION:
        return "dim"
    else:
        return "white"
