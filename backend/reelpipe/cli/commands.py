"""CLI commands for reelpipe using Typer and Rich.

Commands:
- create: Create a pending pipeline for a project
- run: Create and start an auto pipeline, processing it in this process
- start: Start a pending pipeline
- resume: Resume a paused pipeline
- step: Run one step of a manual pipeline
- status: Show pipeline details and step states
- list: List pipelines in a table
- logs: Show the audit log of a pipeline
- cancel: Cancel a non-terminal pipeline
- cleanup-stale: Fail pipelines no worker is advancing
- serve: Run the HTTP API
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from reelpipe.config import settings
from reelpipe.db import init_database, shutdown
from reelpipe.errors import PipelineError
from reelpipe.orchestrator import state
from reelpipe.orchestrator.registry import PipelineType
from reelpipe.runtime import Runtime, build_runtime

app = typer.Typer(name="reelpipe", help="Pipeline execution engine for AI content generation")
console = Console()


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def _open_runtime() -> AsyncIterator[Runtime]:
    await init_database()
    runtime = build_runtime(settings)
    try:
        yield runtime
    finally:
        await runtime.stop()
        await shutdown()


def _run(coro) -> None:
    """Run a command coroutine, turning engine errors into exit code 1."""
    try:
        asyncio.run(coro)
    except PipelineError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    except ValidationError as e:
        console.print("[red]Error:[/red] Invalid pipeline config")
        for err in e.errors():
            loc = ".".join(str(p) for p in err["loc"])
            console.print(f"  {loc}: {err['msg']}")
        raise typer.Exit(code=1)


def _parse_uuid(value: str, label: str = "pipeline") -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        console.print(f"[red]Error:[/red] Invalid {label} UUID: {value}")
        raise typer.Exit(code=1)


def _build_config(theme: str, duration: int, platform: str, song_brief: Optional[str]) -> dict:
    config = {"theme": theme, "duration": duration, "platform": platform}
    if song_brief:
        config["song_brief"] = song_brief
    return config


async def _drive(runtime: Runtime, pipeline_id: uuid.UUID) -> None:
    """Process queued work in this process until the queue drains."""
    await runtime.start()
    try:
        with console.status("[bold green]Running pipeline...") as status:
            async with runtime.events.subscribe(pipeline_id) as events:
                drained = asyncio.create_task(runtime.queue.join())
                while not drained.done():
                    try:
                        event = await asyncio.wait_for(events.get(), timeout=0.5)
                    except TimeoutError:
                        continue
                    step = f"{event.step} " if event.step else ""
                    status.update(f"[bold green]{step}{event.message or event.status}")
    except KeyboardInterrupt:
        console.print()
        console.print("[yellow]Interrupted. Pause or cancel the pipeline with:[/yellow]")
        console.print(f"  python -m reelpipe cancel {pipeline_id}")
        raise typer.Exit(code=130)

    pipeline = await runtime.service.get(pipeline_id)
    if pipeline.status == state.COMPLETED:
        console.print("[green]✓[/green] Pipeline complete!")
    elif pipeline.status == state.FAILED:
        console.print(f"[red]✗ Pipeline failed:[/red] {pipeline.error_message}")
        raise typer.Exit(code=1)
    else:
        console.print(f"Pipeline is [{_get_status_color(pipeline.status)}]{pipeline.status}[/]")


@app.command()
def create(
    theme: str = typer.Argument(..., help="Theme or topic of the content"),
    project_id: Optional[str] = typer.Option(None, "--project", "-p", help="Project UUID (new one if omitted)"),
    pipeline_type: PipelineType = typer.Option(PipelineType.VIDEO, "--type", "-t", help="Pipeline type"),
    mode: str = typer.Option(state.MODE_AUTO, "--mode", "-m", help="auto or manual"),
    duration: int = typer.Option(60, "--duration", "-d", help="Target duration in seconds (15-300)"),
    platform: str = typer.Option("youtube", "--platform", help="youtube, tiktok or instagram"),
    song_brief: Optional[str] = typer.Option(None, "--song-brief", help="Song brief (music video only)"),
):
    """Create a pending pipeline."""
    project_uuid = _parse_uuid(project_id, "project") if project_id else uuid.uuid4()
    config = _build_config(theme, duration, platform, song_brief)
    _run(_create_async(project_uuid, pipeline_type.value, mode, config))


async def _create_async(project_id: uuid.UUID, pipeline_type: str, mode: str, config: dict):
    async with _open_runtime() as runtime:
        pipeline = await runtime.service.create(project_id, pipeline_type, mode=mode, config=config)
    console.print(f"[green]Created pipeline:[/green] {pipeline.id}")
    console.print(f"[green]Project:[/green] {pipeline.project_id}")


@app.command()
def run(
    theme: str = typer.Argument(..., help="Theme or topic of the content"),
    project_id: Optional[str] = typer.Option(None, "--project", "-p", help="Project UUID (new one if omitted)"),
    pipeline_type: PipelineType = typer.Option(PipelineType.VIDEO, "--type", "-t", help="Pipeline type"),
    duration: int = typer.Option(60, "--duration", "-d", help="Target duration in seconds (15-300)"),
    platform: str = typer.Option("youtube", "--platform", help="youtube, tiktok or instagram"),
    song_brief: Optional[str] = typer.Option(None, "--song-brief", help="Song brief (music video only)"),
):
    """Create an auto pipeline and run it to completion in this process."""
    project_uuid = _parse_uuid(project_id, "project") if project_id else uuid.uuid4()
    config = _build_config(theme, duration, platform, song_brief)
    _run(_run_async(project_uuid, pipeline_type.value, config))


async def _run_async(project_id: uuid.UUID, pipeline_type: str, config: dict):
    async with _open_runtime() as runtime:
        pipeline = await runtime.service.create(
            project_id, pipeline_type, mode=state.MODE_AUTO, config=config
        )
        console.print(f"[green]Created pipeline:[/green] {pipeline.id}")
        console.print()
        await runtime.service.start(pipeline.id)
        await _drive(runtime, pipeline.id)


@app.command()
def start(pipeline_id: str = typer.Argument(..., help="Pipeline UUID")):
    """Start a pending pipeline. Auto pipelines are processed in this process."""
    _run(_start_async(_parse_uuid(pipeline_id)))


async def _start_async(pipeline_id: uuid.UUID):
    async with _open_runtime() as runtime:
        pipeline = await runtime.service.start(pipeline_id)
        if pipeline.mode == state.MODE_MANUAL:
            console.print(f"[green]Started manual pipeline at step:[/green] {pipeline.current_step}")
            return
        await _drive(runtime, pipeline_id)


@app.command()
def resume(pipeline_id: str = typer.Argument(..., help="Pipeline UUID")):
    """Resume a paused pipeline from its first unfinished step."""
    _run(_resume_async(_parse_uuid(pipeline_id)))


async def _resume_async(pipeline_id: uuid.UUID):
    async with _open_runtime() as runtime:
        pipeline = await runtime.service.resume(pipeline_id)
        console.print(f"[yellow]Resuming at:[/yellow] {pipeline.current_step or 'completion'}")
        await _drive(runtime, pipeline_id)


@app.command()
def step(
    pipeline_id: str = typer.Argument(..., help="Pipeline UUID"),
    step_name: str = typer.Argument(..., help="Step to run"),
):
    """Run one step of a manual pipeline."""
    _run(_step_async(_parse_uuid(pipeline_id), step_name))


async def _step_async(pipeline_id: uuid.UUID, step_name: str):
    async with _open_runtime() as runtime:
        await runtime.service.run_step(pipeline_id, step_name)
        await _drive(runtime, pipeline_id)
        result = await runtime.service.get_step_result(pipeline_id, step_name)
        console.print(f"[bold]{step_name}:[/bold] [{_get_status_color(result.status)}]{result.status}[/]")
        if result.error:
            console.print(f"[red]{result.error}[/red]")


@app.command()
def status(pipeline_id: str = typer.Argument(..., help="Pipeline UUID")):
    """Show pipeline details and step states."""
    _run(_status_async(_parse_uuid(pipeline_id)))


async def _status_async(pipeline_id: uuid.UUID):
    async with _open_runtime() as runtime:
        pipeline = await runtime.service.get(pipeline_id)
        steps = await runtime.service.steps(pipeline_id)

    status_color = _get_status_color(pipeline.status)
    theme = (pipeline.config or {}).get("theme", "")
    theme_display = theme if len(theme) <= 80 else theme[:77] + "..."

    info_lines = [
        f"[bold]ID:[/bold] {pipeline.id}",
        f"[bold]Project:[/bold] {pipeline.project_id}",
        f"[bold]Type:[/bold] {pipeline.pipeline_type} ({pipeline.mode})",
        f"[bold]Theme:[/bold] {theme_display}",
        f"[bold]Status:[/bold] [{status_color}]{pipeline.status}[/{status_color}]",
        f"[bold]Current Step:[/bold] {pipeline.current_step or '-'} ({pipeline.current_step_progress}%)",
        f"[bold]Created:[/bold] {pipeline.created_at.strftime('%Y-%m-%d %H:%M:%S')}",
    ]
    if pipeline.completed_at:
        info_lines.append(f"[bold]Completed:[/bold] {pipeline.completed_at.strftime('%Y-%m-%d %H:%M:%S')}")
    if pipeline.status == state.FAILED and pipeline.error_message:
        info_lines.append(f"[bold]Error:[/bold] [red]{pipeline.error_message}[/red]")

    console.print(Panel("\n".join(info_lines), title="[bold]Pipeline Status[/bold]", border_style="blue"))

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("Error")
    for name, s in steps:
        color = _get_status_color(s.status)
        table.add_row(name, f"[{color}]{s.status}[/{color}]", f"{s.progress}%", str(s.attempts), s.error or "")
    console.print(table)


@app.command(name="list")
def list_pipelines(
    project_id: Optional[str] = typer.Option(None, "--project", "-p", help="Only this project's pipelines"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum rows"),
):
    """List pipelines, newest first."""
    project_uuid = _parse_uuid(project_id, "project") if project_id else None
    _run(_list_async(project_uuid, limit))


async def _list_async(project_id: Optional[uuid.UUID], limit: int):
    async with _open_runtime() as runtime:
        pipelines = await runtime.service.list_pipelines(project_id, limit=limit)

    if not pipelines:
        console.print("[yellow]No pipelines found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("ID", style="dim")
    table.add_column("Type")
    table.add_column("Mode")
    table.add_column("Status")
    table.add_column("Step")
    table.add_column("Created")

    for pipeline in pipelines:
        color = _get_status_color(pipeline.status)
        table.add_row(
            str(pipeline.id)[:8] + "...",
            pipeline.pipeline_type,
            pipeline.mode,
            f"[{color}]{pipeline.status}[/{color}]",
            pipeline.current_step or "",
            pipeline.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command()
def logs(
    pipeline_id: str = typer.Argument(..., help="Pipeline UUID"),
    agent_type: Optional[str] = typer.Option(None, "--agent", "-a", help="Filter by agent/step"),
    log_type: Optional[str] = typer.Option(None, "--type", "-t", help="info, progress, result, error, thinking"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum entries"),
):
    """Show the audit log, newest first."""
    _run(_logs_async(_parse_uuid(pipeline_id), agent_type, log_type, limit))


async def _logs_async(pipeline_id: uuid.UUID, agent_type: Optional[str], log_type: Optional[str], limit: int):
    async with _open_runtime() as runtime:
        entries = await runtime.service.logs(pipeline_id, agent_type=agent_type, log_type=log_type, limit=limit)

    if not entries:
        console.print("[yellow]No log entries[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Time", style="dim")
    table.add_column("Agent")
    table.add_column("Type")
    table.add_column("Message")
    for entry in entries:
        color = "red" if entry.log_type == state.LOG_ERROR else "white"
        table.add_row(
            entry.created_at.strftime("%H:%M:%S"),
            entry.agent_type,
            f"[{color}]{entry.log_type}[/{color}]",
            entry.message,
        )
    console.print(table)


@app.command()
def cancel(pipeline_id: str = typer.Argument(..., help="Pipeline UUID")):
    """Cancel a pipeline that has not finished."""
    _run(_cancel_async(_parse_uuid(pipeline_id)))


async def _cancel_async(pipeline_id: uuid.UUID):
    async with _open_runtime() as runtime:
        await runtime.service.cancel(pipeline_id)
    console.print(f"[yellow]Cancelled pipeline:[/yellow] {pipeline_id}")


@app.command(name="cleanup-stale")
def cleanup_stale(
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be cleaned up without making changes"),
    stale_minutes: Optional[float] = typer.Option(
        None, "--stale-minutes", help="Minutes without progress before a pipeline counts as stale"
    ),
):
    """Fail pipelines stuck in running or paused with no worker behind them."""
    _run(_cleanup_stale_async(dry_run, stale_minutes or settings.pipeline.stale_minutes))


async def _cleanup_stale_async(dry_run: bool, stale_minutes: float):
    async with _open_runtime() as runtime:
        stale = await runtime.service.cleanup_stale(stale_minutes, dry_run=dry_run)

    prefix = "[DRY RUN] " if dry_run else ""
    if not stale:
        console.print(f"{prefix}[green]No stale pipelines[/green]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("ID", style="dim")
    table.add_column("Status")
    table.add_column("Step")
    table.add_column("Reason")
    for pipeline, reason in stale:
        color = _get_status_color(pipeline.status)
        table.add_row(
            str(pipeline.id),
            f"[{color}]{pipeline.status}[/{color}]",
            pipeline.current_step or "",
            reason,
        )
    console.print(table)
    verb = "Would fail" if dry_run else "Failed"
    console.print(f"{prefix}[yellow]{verb} {len(stale)} stale pipeline(s)[/yellow]")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
):
    """Run the HTTP API with its queue workers."""
    import uvicorn

    uvicorn.run(
        "reelpipe.api.app:app",
        host=host or settings.server.host,
        port=port or settings.server.port,
        reload=False,
    )


def _get_status_color(status: str) -> str:
    """Get Rich color for a pipeline or step status.

    Color coding:
    - completed: green
    - failed: red
    - running/paused: yellow
    - pending: dim
    """
    if status == "completed":
        return "green"
    elif status == "failed":
        return "red"
    elif status in ["running", "paused"]:
        return "yellow"
    elif status == "pending":
        return "dim"
    else:
        return "white"
