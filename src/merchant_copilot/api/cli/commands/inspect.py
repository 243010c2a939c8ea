"""Inspection commands - run single stages without the full pipeline."""

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from merchant_copilot.core.domain.boundary_checker import BoundaryChecker
from merchant_copilot.core.domain.models import ConversationContext
from merchant_copilot.core.domain.query_rewriter import QueryRewriter
from merchant_copilot.infrastructure.classification.intent_classifier import KeywordIntentClassifier

console = Console()


def rewrite(
    text: str = typer.Argument(..., help="Raw user input"),
    entity: Optional[str] = typer.Option(None, "--entity", "-e", help="Active merchant name"),
):
    """Show the normalized query and every rewrite operation."""
    context = ConversationContext(entity_name=entity)
    result = QueryRewriter().rewrite(text, context)

    console.print(f"[bold]Original:[/bold]   {result.original}")
    console.print(f"[bold]Normalized:[/bold] [cyan]{result.normalized}[/cyan]")
    console.print(f"[bold]Confidence:[/bold] {result.confidence:.2f}")

    if result.operations:
        table = Table(title="Rewrite Operations")
        table.add_column("Kind", style="cyan")
        table.add_column("From", style="white")
        table.add_column("To", style="green")
        for op in result.operations:
            table.add_row(op.kind.value, op.from_text, op.to_text)
        console.print(table)


def check(text: str = typer.Argument(..., help="Raw user input")):
    """Show how the boundary check and the intent classifier judge an input."""
    checker = BoundaryChecker()
    boundary = checker.check_boundary(text)
    if boundary.allowed:
        console.print("[green]Allowed[/green]")
    else:
        console.print(f"[red]Refused ({boundary.category})[/red]: {boundary.reason}")
        console.print(f"[dim]Suggestion: {boundary.suggested_action}[/dim]")

    classifier = KeywordIntentClassifier()
    intent = classifier.classify(text)
    uncertainty = checker.check_uncertainty(text, intent.confidence)
    console.print(f"Intent: [cyan]{intent.intent}[/cyan] ({intent.confidence:.2f})")
    alternatives = [(name, score) for name, score in classifier.suggest_intents(text) if name != intent.intent]
    if alternatives:
        console.print("Alternatives: " + ", ".join(f"{name} ({score})" for name, score in alternatives))
    if uncertainty.needs_human_intervention:
        console.print(f"[yellow]Human intervention suggested: {uncertainty.reason}[/yellow]")

    if not boundary.allowed:
        raise typer.Exit(1)
