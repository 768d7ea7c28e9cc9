"""Logs command - export, inspect and prune installer logs."""

import typer
from rich.console import Console

from braindrive_installer.config import AgentSettings, load_settings
from braindrive_installer.infrastructure.agent.layout import InstallLayout
from braindrive_installer.infrastructure.logging_config import (
    cleanup_old_logs,
    export_logs_for_sharing,
    get_recent_events,
)

app = typer.Typer(help="Installer log management")
console = Console()


def _log_dir(ctx: typer.Context):
    settings = load_settings(AgentSettings, (ctx.obj or {}).get("config"))
    return InstallLayout.default(settings.home).log_dir


@app.command("export")
def export(
    ctx: typer.Context,
    lines: int = typer.Option(1000, "--lines", "-n", help="Maximum lines to export"),
):
    """Write a redacted log excerpt that is safe to share."""
    try:
        path = export_logs_for_sharing(_log_dir(ctx), max_lines=lines)
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Exported logs to[/green] {path}")


@app.command("tail")
def tail(
    ctx: typer.Context,
    count: int = typer.Option(20, "--count", "-n", help="Number of events"),
):
    """Show the most recent log events."""
    for event in get_recent_events(_log_dir(ctx), count):
        level = event.get("level", "info")
        style = {"error": "red", "warning": "yellow"}.get(level, "dim")
        console.print(f"[{style}]{event.get('timestamp', '')} {level:<7}[/{style}] {event.get('event', '')}")


@app.command("cleanup")
def cleanup(
    ctx: typer.Context,
    keep_days: int = typer.Option(7, "--keep-days", help="Retention in days"),
):
    """Delete log files older than the retention period."""
    removed = cleanup_old_logs(_log_dir(ctx), keep_days)
    console.print(f"Removed {removed} old log file(s)")
