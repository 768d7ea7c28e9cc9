"""System command - inspect this machine without a relay."""

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from braindrive_installer.config import AgentSettings, load_settings
from braindrive_installer.core.catalog.operations import CATALOG
from braindrive_installer.infrastructure.agent.detection import detect_system
from braindrive_installer.infrastructure.agent.layout import InstallLayout
from braindrive_installer.infrastructure.agent.ports import probe_port

app = typer.Typer(help="Inspect this machine")
console = Console()


@app.command("detect")
def detect(ctx: typer.Context):
    """Show what detect_system reports for this machine."""
    settings = load_settings(AgentSettings, (ctx.obj or {}).get("config"))
    snapshot = asyncio.run(detect_system(InstallLayout.default(settings.home), settings.env_name))

    table = Table(title="System")
    table.add_column("Fact", style="cyan")
    table.add_column("Value", style="white")
    for key, value in snapshot.to_dict().items():
        if key == "gpus":
            value = ", ".join(f"{gpu['name']} ({gpu['vram_gb']} GB)" for gpu in value) or "none"
        elif isinstance(value, bool):
            value = "[green]yes[/green]" if value else "[red]no[/red]"
        table.add_row(key, str(value))
    console.print(table)
    console.print(f"Core install ready: {'[green]yes[/green]' if snapshot.core_ready else '[yellow]no[/yellow]'}")


@app.command("check-port")
def check_port(port: int = typer.Argument(..., help="TCP port")):
    """Probe a port on IPv4 and IPv6."""
    result = probe_port(port)
    status = "[green]available[/green]" if result.available else "[red]in use[/red]"
    console.print(f"Port {port}: {status} (IPv4 free: {result.ipv4_available}, IPv6 free: {result.ipv6_available})")
    if not result.available:
        raise typer.Exit(1)


@app.command("operations")
def operations():
    """List the audited operation catalog."""
    table = Table(title="Audited Operations")
    table.add_column("Name", style="cyan")
    table.add_column("Gate", style="magenta")
    table.add_column("Timeout", justify="right")
    table.add_column("Purpose", style="white")
    for spec in CATALOG.values():
        table.add_row(spec.name, spec.classification.value, f"{spec.timeout:g}s", spec.purpose)
    console.print(table)
