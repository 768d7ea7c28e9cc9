"""BrainDrive installer CLI entry point."""

from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console

from braindrive_installer.api.cli.commands import agent, logs, relay, system

app = typer.Typer(
    name="braindrive-installer",
    help="BrainDrive installer - LLM-guided installation over audited operations",
    add_completion=True,
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

# Register command groups
app.add_typer(relay.app, name="relay", help="Run the orchestrator relay")
app.add_typer(agent.app, name="agent", help="Run the local execution agent")
app.add_typer(system.app, name="system", help="Inspect this machine")
app.add_typer(logs.app, name="logs", help="Installer log management")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML configuration file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """BrainDrive installer CLI."""
    load_dotenv()
    ctx.obj = {"config": config, "verbose": verbose}


@app.command()
def version():
    """Show the installer version."""
    from braindrive_installer import __version__

    console.print(f"[bold blue]BrainDrive installer[/bold blue] version [cyan]{__version__}[/cyan]")


if __name__ == "__main__":
    app()
