"""Ask and chat commands - run turns through the pipeline."""

import asyncio
import uuid
from typing import Optional

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from merchant_copilot.application.factory import PipelineFactory
from merchant_copilot.application.pipeline import TurnPipeline
from merchant_copilot.core.domain.confidence import ConfidenceEvaluator, ConfidenceThresholdManager
from merchant_copilot.core.domain.errors import ConfigurationError
from merchant_copilot.core.domain.models import ConversationContext, TurnResult

console = Console()

EXIT_WORDS = ("exit", "quit", "退出")


def ask(
    ctx: typer.Context,
    question: str = typer.Argument(..., help="Question about a merchant"),
    entity: Optional[str] = typer.Option(None, "--entity", "-e", help="Active merchant name"),
    report: bool = typer.Option(False, "--report", help="Print the full confidence report"),
):
    """Answer a single question.

    Examples:
        copilot ask "海底捞火锅的健康度怎么样"
        copilot ask "它有什么风险" --entity 海底捞火锅
    """
    pipeline = _create_pipeline(ctx)
    context = _new_context(pipeline, entity)

    result = asyncio.run(_run_turns(pipeline, context, [question]))[0]
    print_result(result, report=report)
    if result.error:
        raise typer.Exit(1)


def chat(
    ctx: typer.Context,
    entity: Optional[str] = typer.Option(None, "--entity", "-e", help="Initial merchant name"),
):
    """Interactive multi-turn session; the subject carries across turns."""
    pipeline = _create_pipeline(ctx)
    context = _new_context(pipeline, entity)
    console.print("[dim]Type 'exit' or 'quit' to end the session[/dim]")
    asyncio.run(_chat_loop(pipeline, context))


async def _chat_loop(pipeline: TurnPipeline, context: ConversationContext) -> None:
    pipeline.start()
    try:
        while True:
            user_input = await asyncio.to_thread(console.input, "[bold green]您[/bold green] > ")
            if user_input.strip().lower() in EXIT_WORDS:
                console.print("[dim]再见[/dim]")
                return
            if not user_input.strip():
                continue
            result = await pipeline.process_turn(user_input, context)
            print_result(result)
            fold_turn(context, user_input, result)
    finally:
        await pipeline.stop()


async def _run_turns(
    pipeline: TurnPipeline, context: ConversationContext, inputs: list[str]
) -> list[TurnResult]:
    pipeline.start()
    try:
        results = []
        for user_input in inputs:
            result = await pipeline.process_turn(user_input, context)
            fold_turn(context, user_input, result)
            results.append(result)
        return results
    finally:
        await pipeline.stop()


def fold_turn(context: ConversationContext, user_input: str, result: TurnResult) -> None:
    """Apply a finished turn to the session context."""
    entity = result.entity
    context.record_turn(
        user_input,
        response=result.response,
        intent=result.intent.intent if result.intent else None,
        entity_id=entity.entity_id if entity and entity.matched else None,
        entity_name=entity.entity_name if entity and entity.matched else None,
    )


def print_result(result: TurnResult, report: bool = False) -> None:
    style = "red" if not result.boundary_decision.allowed or result.error else "blue"
    console.print(Panel(result.response, title="Copilot", border_style=style))

    score = result.confidence_score
    if score is None:
        return

    table = Table(title="Confidence")
    table.add_column("Stage", style="cyan")
    table.add_column("Score", justify="right")
    table.add_column("Level", style="white")
    for stage, value in score.breakdown.as_dict().items():
        _, label = ConfidenceEvaluator.stage_level(value)
        table.add_row(stage, f"{value:.2f}", label)
    decision = ConfidenceThresholdManager().decide(score.overall)
    table.add_row("[bold]overall[/bold]", f"[bold]{score.overall:.2f}[/bold]", decision.reason)
    console.print(table)

    if result.cache_hit:
        console.print("[dim]intent served from cache[/dim]")
    if result.uncertainty and result.uncertainty.needs_human_intervention:
        console.print(f"[yellow]建议人工介入：{result.uncertainty.reason}[/yellow]")
    if result.fabricated_names:
        console.print(f"[yellow]已替换未知商户名称：{', '.join(result.fabricated_names)}[/yellow]")
    if result.error:
        console.print(f"[red]Error: {result.error}[/red]")
    if report:
        console.print(Markdown(ConfidenceEvaluator.report(score)))


def _create_pipeline(ctx: typer.Context) -> TurnPipeline:
    global_opts = ctx.obj or {}
    factory = PipelineFactory(config_dir=global_opts.get("config_dir", "configs"))
    try:
        return factory.create_pipeline(profile=global_opts.get("profile", "dev"))
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(2) from e


def _new_context(pipeline: TurnPipeline, entity_name: Optional[str]) -> ConversationContext:
    context = pipeline.new_context(uuid.uuid4().hex[:12])
    if entity_name:
        entity = next(
            (e for e in pipeline.catalog.lookup_entity_catalog() if e.name == entity_name), None
        )
        if entity is None:
            console.print(f"[red]Unknown merchant: {entity_name}[/red]")
            raise typer.Exit(2)
        context.set_subject(entity.id, entity.name)
    return context
