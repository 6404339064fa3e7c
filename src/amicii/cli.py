"""Command-line interface surface for operators."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer
import uvicorn
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .app import Coordinator, build_coordinator
from .config import get_settings
from .errors import CoordinationError
from .http import build_http_app
from .projects import project_to_dict

console = Console()

T = TypeVar("T")

app = typer.Typer(help="Operator utilities for the amicii coordination service.")
reservations_app = typer.Typer(help="Inspect advisory file reservations")
app.add_typer(reservations_app, name="reservations")


def _run_async(operation: Callable[[Coordinator], Awaitable[T]]) -> T:
    """Run ``operation`` against a fresh coordinator and dispose the engine afterwards.

    aiosqlite keeps a worker thread per connection; leaving the engine
    undisposed can stall interpreter shutdown.
    """

    async def _runner() -> T:
        coordinator = build_coordinator(get_settings())
        try:
            return await operation(coordinator)
        finally:
            await coordinator.close()

    try:
        return asyncio.run(_runner())
    except CoordinationError as exc:
        console.print(f"[red]{exc.kind}[/]: {escape(str(exc))}")
        raise typer.Exit(code=1) from exc


@app.command("serve-http")
def serve_http(
    host: Optional[str] = typer.Option(None, help="Host interface. Defaults to HTTP_HOST setting."),
    port: Optional[int] = typer.Option(None, help="Port to bind. Defaults to HTTP_PORT setting."),
) -> None:
    """Run the HTTP coordination server."""
    settings = get_settings()
    resolved_host = host or settings.http.host
    resolved_port = port or settings.http.port

    if settings.log_rich_enabled:
        from . import rich_logger

        async def _stats(coordinator: Coordinator) -> dict[str, Any]:
            return await coordinator.stats()

        rich_logger.display_startup_banner(settings, resolved_host, resolved_port, _run_async(_stats))

    fastapi_app = build_http_app(settings)
    uvicorn.run(fastapi_app, host=resolved_host, port=resolved_port, log_level="info")


@app.command("prune")
def prune(
    days: Optional[int] = typer.Option(None, min=0, help="Retention horizon in days. Defaults to RETENTION_DAYS."),
) -> None:
    """Run one retention sweep now."""
    retention_days = get_settings().retention.days if days is None else days

    async def _sweep(coordinator: Coordinator) -> dict[str, int]:
        return await coordinator.retention.sweep(retention_days)

    stats = _run_async(_sweep)
    console.print(f"[green]Retention sweep complete[/] (horizon {retention_days} days)")
    for key, value in stats.items():
        console.print(f"  {key.replace('_', ' ')}: {value}")


@app.command("status")
def status() -> None:
    """Show store counters."""
    settings = get_settings()

    async def _stats(coordinator: Coordinator) -> dict[str, Any]:
        return await coordinator.stats()

    stats = _run_async(_stats)
    table = Table(title="amicii status")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("database", settings.database.url)
    table.add_row("retention days", str(settings.retention.days))
    for key, value in stats.items():
        table.add_row(key.replace("_", " "), str(value))
    console.print(table)


@app.command("list-projects")
def list_projects(
    json_output: bool = typer.Option(False, "--json", help="Emit JSON instead of a table."),
) -> None:
    """List known projects, newest first."""

    async def _collect(coordinator: Coordinator) -> list[dict[str, Any]]:
        return [project_to_dict(p) for p in await coordinator.projects.list()]

    rows = _run_async(_collect)
    if json_output:
        typer.echo(json.dumps(rows, indent=2))
        return
    table = Table(title="Projects")
    table.add_column("ID", justify="right")
    table.add_column("Slug")
    table.add_column("Human Key")
    table.add_column("Created")
    for row in rows:
        table.add_row(str(row["id"]), row["slug"], escape(row["human_key"]), row["created_at"] or "")
    console.print(table)


@reservations_app.command("list")
def reservations_list(
    project: str = typer.Argument(..., help="Project slug or human key"),
    active: bool = typer.Option(False, "--active", help="Only show active reservations."),
) -> None:
    """List reservations for a project, newest first."""

    async def _collect(coordinator: Coordinator) -> list[dict[str, Any]]:
        return await coordinator.reservations.list(project, active=active)

    rows = _run_async(_collect)
    if not rows:
        console.print("[dim]No reservations.[/]")
        return
    table = Table(title=f"Reservations for {project}")
    table.add_column("ID", justify="right")
    table.add_column("Agent")
    table.add_column("Pattern")
    table.add_column("Exclusive")
    table.add_column("Expires")
    table.add_column("Released")
    for row in rows:
        table.add_row(
            str(row["id"]),
            row.get("agent_name") or "",
            escape(row["path_pattern"]),
            "yes" if row["exclusive"] else "no",
            row["expires_ts"] or "",
            row["released_ts"] or "",
        )
    console.print(table)
