"""Merchant copilot CLI entry point."""

import logging

import structlog
import typer
from rich.console import Console

from merchant_copilot.api.cli.commands import ask, config, inspect

app = typer.Typer(
    name="copilot",
    help="Merchant copilot - conversational analysis over the merchant dashboard",
    add_completion=True,
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

app.command("ask", help="Answer a single question")(ask.ask)
app.command("chat", help="Interactive multi-turn session")(ask.chat)
app.command("rewrite", help="Show how a query is rewritten")(inspect.rewrite)
app.command("check", help="Run the boundary and uncertainty checks")(inspect.check)
app.add_typer(config.app, name="config", help="Configuration management")


@app.callback()
def main(
    ctx: typer.Context,
    profile: str = typer.Option("dev", "--profile", "-p", help="Configuration profile"),
    config_dir: str = typer.Option("configs", "--config-dir", help="Directory holding profile YAML files"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
):
    """Merchant copilot CLI."""
    ctx.obj = {"profile": profile, "config_dir": config_dir, "verbose": verbose}

    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(level))


@app.command()
def version():
    """Show merchant copilot version."""
    from merchant_copilot import __version__

    console.print(f"[bold blue]Merchant Copilot[/bold blue] version [cyan]{__version__}[/cyan]")


if __name__ == "__main__":
    app()
