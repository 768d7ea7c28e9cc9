"""Agent command - run the local execution agent."""

import asyncio
from typing import Optional

import typer
from rich.console import Console

from braindrive_installer.config import AgentSettings, load_settings
from braindrive_installer.infrastructure.agent.client import AgentClient
from braindrive_installer.infrastructure.agent.dispatcher import AgentDispatcher
from braindrive_installer.infrastructure.agent.layout import InstallLayout
from braindrive_installer.infrastructure.logging_config import cleanup_old_logs, setup_logging

app = typer.Typer(help="Run the local execution agent")
console = Console()


@app.command("run")
def run_agent(
    ctx: typer.Context,
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Orchestrator websocket URL"),
):
    """Connect to the relay and execute audited operations on this machine.

    Press Ctrl+C to exit; services started by the agent are stopped first.
    """
    global_opts = ctx.obj or {}
    settings = load_settings(AgentSettings, global_opts.get("config"), orchestrator_url=url)
    layout = InstallLayout.default(settings.home)
    setup_logging("DEBUG" if global_opts.get("verbose") else settings.log_level, log_dir=layout.log_dir)
    cleanup_old_logs(layout.log_dir, settings.log_retention_days)

    dispatcher = AgentDispatcher(layout, default_env_name=settings.env_name)
    client = AgentClient(settings.orchestrator_url, dispatcher, settings.reconnect_delay)

    console.print(f"[bold blue]Agent[/bold blue] connecting to [cyan]{settings.orchestrator_url}[/cyan]")
    try:
        asyncio.run(client.run_forever())
    except KeyboardInterrupt:
        console.print("[dim]Agent stopped.[/dim]")
