"""Config command group - inspect and export pipeline settings."""

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from merchant_copilot.application.factory import PipelineFactory
from merchant_copilot.application.settings import PipelineSettings
from merchant_copilot.core.domain.errors import ConfigurationError

console = Console()
app = typer.Typer(help="Manage configuration")


def _effective_settings(ctx: typer.Context) -> PipelineSettings:
    global_opts = ctx.obj or {}
    factory = PipelineFactory(config_dir=global_opts.get("config_dir", "configs"))
    try:
        profile = factory.load_profile(global_opts.get("profile", "dev"))
        return factory.create_settings(profile)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(2) from e


@app.command("show")
def show_config(ctx: typer.Context):
    """
    Show the effective pipeline settings of the active profile.

    Examples:
        copilot config show
        copilot --profile prod config show
    """
    settings = _effective_settings(ctx)
    config_data = settings.model_dump()

    table = Table(title="Pipeline Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="white")
    table.add_column("Description", style="dim")
    for field_name, field_info in PipelineSettings.model_fields.items():
        table.add_row(field_name, str(config_data.get(field_name)), field_info.description or "")
    console.print(table)


@app.command("export")
def export_config(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Destination YAML file"),
):
    """Write the effective settings to a YAML file."""
    settings = _effective_settings(ctx)
    settings.save_to_file(path)
    console.print(f"[green]✓[/green] Settings written to {path}")
