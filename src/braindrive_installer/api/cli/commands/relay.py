"""Relay command - run the orchestrator."""

from typing import Optional

import typer
import uvicorn
from rich.console import Console

from braindrive_installer.api.server import create_app
from braindrive_installer.config import OrchestratorSettings, load_settings
from braindrive_installer.infrastructure.logging_config import setup_logging

app = typer.Typer(help="Run the orchestrator relay")
console = Console()


@app.command("serve")
def serve(
    ctx: typer.Context,
    host: Optional[str] = typer.Option(None, "--host", help="Listening interface"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Listening port"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="litellm model id"),
):
    """Serve the UI/agent websocket relay.

    Examples:
        braindrive-installer relay serve --port 3000
        braindrive-installer -c relay.yaml relay serve
    """
    global_opts = ctx.obj or {}
    settings = load_settings(
        OrchestratorSettings,
        global_opts.get("config"),
        host=host,
        port=port,
        model=model,
    )
    setup_logging(
        "DEBUG" if global_opts.get("verbose") else settings.log_level,
        log_dir=settings.log_dir,
    )

    if not settings.api_key:
        console.print("[yellow]No API key configured (ANTHROPIC_API_KEY); relying on provider defaults.[/yellow]")
    console.print(f"[bold blue]Relay[/bold blue] listening on [cyan]{settings.host}:{settings.port}[/cyan]")
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)
