"""Rich console output for the server banner and CLI tables."""

from __future__ import annotations

from typing import Any, Optional

from rich import box
from rich.columns import Columns
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .config import Settings

console = Console()


def _enabled(flag: bool) -> str:
    return "[bold bright_green]ENABLED[/bold bright_green]" if flag else "[dim]disabled[/dim]"


def create_stats_table(stats: dict[str, Any], title: str = "Database") -> Table:
    """Two-column table of counters."""
    table = Table(
        box=box.ROUNDED,
        border_style="bright_magenta",
        show_header=True,
        header_style="bold bright_white on bright_magenta",
        title=f"[bold bright_yellow]{title}[/bold bright_yellow]",
        padding=(0, 1),
    )
    table.add_column("Metric", style="bold bright_cyan")
    table.add_column("Value", style="white", justify="right")
    for key, value in stats.items():
        table.add_row(key.replace("_", " "), str(value))
    return table


def display_startup_banner(settings: Settings, host: str, port: int, stats: Optional[dict[str, Any]] = None) -> None:
    """Print the server configuration and, when available, the store counters."""
    console.print()
    console.print(
        Panel(
            Text("amicii · agent coordination over a shared store", style="bold bright_cyan", justify="center"),
            border_style="bright_blue",
            box=box.DOUBLE,
        )
    )

    server_table = Table(
        box=box.ROUNDED,
        border_style="bright_blue",
        show_header=True,
        header_style="bold bright_white on bright_blue",
        title="[bold bright_yellow]Server Configuration[/bold bright_yellow]",
        padding=(0, 1),
    )
    server_table.add_column("Setting", style="bold bright_cyan", width=18)
    server_table.add_column("Value", style="white", overflow="fold")
    server_table.add_row("Environment", f"[bold bright_green]{settings.environment}[/bold bright_green]")
    server_table.add_row("Endpoint", f"[bold bright_magenta]http://{host}:{port}[/bold bright_magenta]")
    server_table.add_row("Database", f"[dim]{settings.database.url}[/dim]")
    server_table.add_row("Retention", f"{settings.retention.days} days")
    server_table.add_row("Sweeper", _enabled(settings.retention.sweep_enabled))
    server_table.add_row("Ack policy", settings.ack_timestamp_policy)
    server_table.add_row("JSON logs", _enabled(settings.log_json_enabled))

    if stats:
        console.print(Columns([server_table, create_stats_table(stats)], padding=(0, 2)))
    else:
        console.print(server_table)
    console.print()
