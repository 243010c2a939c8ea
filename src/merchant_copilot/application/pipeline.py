"""
Application Layer - Turn Pipeline

Composes the domain components and the external collaborators into the
single entry point of the conversational front-end:

    process_turn(raw_input, context) -> TurnResult

Stage order:
1. Boundary check (a refusal ends the turn)
2. Context switch detection (a switch only affects a turn-local copy)
3. Query rewrite and structural analysis (single, aggregation, comparison)
4. Cache lookup by normalized query, else the analysis intent for aggregation
   and comparison queries, else intent classification
5. Entity resolution (skipped for aggregation) and the advisory uncertainty check
6. Planning and execution (a non-empty plan needs a known subject unless
   every task is catalog-wide)
7. Confidence evaluation
8. Text generation, fabrication and citation validation
9. Confirmation prompt when the score asks for it

The caller's ConversationContext is never mutated; the caller folds the
result back in with ConversationContext.record_turn() between turns. The
pipeline never raises: faults become a TurnResult with `error` set.
"""

import dataclasses
import time
from typing import Any, Optional, Sequence

import structlog
import yaml

from merchant_copilot.application.performance_monitor import PerformanceMonitor
from merchant_copilot.core.domain.boundary_checker import BoundaryChecker
from merchant_copilot.core.domain.confidence import ConfidenceEvaluator
from merchant_copilot.core.domain.context_switch import ContextSwitchDetector
from merchant_copilot.core.domain.errors import CircularDependencyError, LLMServiceError
from merchant_copilot.core.domain.models import (
    BoundaryDecision,
    ContextSwitchDecision,
    ConversationContext,
    Entity,
    EntityResult,
    IntentResult,
    QueryAnalysis,
    QueryType,
    RewriteResult,
    SkillResult,
    TurnResult,
)
from merchant_copilot.core.domain.output_validator import OutputValidator
from merchant_copilot.core.domain.query_analyzer import QueryAnalyzer
from merchant_copilot.core.domain.query_rewriter import QueryRewriter
from merchant_copilot.core.domain.skill_executor import SkillExecutor
from merchant_copilot.core.domain.task_planner import SUBJECTLESS_ACTIONS, TaskPlanner
from merchant_copilot.core.interfaces.collaborators import (
    EntityCatalogProtocol,
    EntityResolverProtocol,
    IntentClassifierProtocol,
    TextGeneratorProtocol,
)
from merchant_copilot.infrastructure.cache.query_cache import QueryCache
from merchant_copilot.infrastructure.skills.builtin import RISK_LABELS

FAILURE_MESSAGE = "抱歉，处理您的问题时出现异常，请稍后重试或联系运营团队。"
PLAN_FAILURE_MESSAGE = "抱歉，任务规划存在无法满足的依赖关系，已停止执行。"
NO_GENERATOR_HEADER = "以下为系统分析结果："

INTENT_LABELS = {
    "health_query": "健康度查询",
    "risk_diagnosis": "风险诊断",
    "solution_recommend": "方案推荐",
    "data_query": "数据查询",
    "aggregation_query": "统计查询",
    "comparison_query": "对比分析",
    "general_chat": "一般对话",
    "unknown": "未知",
}


class TurnPipeline:
    """
    Orchestrates one conversational turn.

    All collaborators are injected; PipelineFactory wires the defaults.
    """

    def __init__(
        self,
        rewriter: QueryRewriter,
        boundary_checker: BoundaryChecker,
        switch_detector: ContextSwitchDetector,
        evaluator: ConfidenceEvaluator,
        validator: OutputValidator,
        planner: TaskPlanner,
        executor: SkillExecutor,
        cache: QueryCache,
        intent_classifier: IntentClassifierProtocol,
        entity_resolver: EntityResolverProtocol,
        catalog: EntityCatalogProtocol,
        text_generator: Optional[TextGeneratorProtocol] = None,
        monitor: Optional[PerformanceMonitor] = None,
        context_window: int = 10,
        analyzer: Optional[QueryAnalyzer] = None,
    ):
        self.rewriter = rewriter
        self.boundary_checker = boundary_checker
        self.switch_detector = switch_detector
        self.evaluator = evaluator
        self.validator = validator
        self.planner = planner
        self.executor = executor
        self.cache = cache
        self.intent_classifier = intent_classifier
        self.entity_resolver = entity_resolver
        self.catalog = catalog
        self.text_generator = text_generator
        self.monitor = monitor or PerformanceMonitor()
        self.context_window = context_window
        self.analyzer = analyzer or QueryAnalyzer(catalog)
        self.logger = structlog.get_logger().bind(component="turn_pipeline")

    def new_context(self, conversation_id: str) -> ConversationContext:
        """An empty session context sized to the configured message window."""
        return ConversationContext(conversation_id=conversation_id, max_messages=self.context_window)

    def start(self) -> None:
        self.cache.start()

    async def stop(self) -> None:
        await self.cache.stop()

    async def process_turn(self, raw_input: str, context: ConversationContext) -> TurnResult:
        self.logger.info(
            "turn.started",
            conversation_id=context.conversation_id,
            input=raw_input[:100],
            subject=context.entity_name,
        )

        boundary = self.boundary_checker.check_boundary(raw_input)
        if not boundary.allowed:
            return TurnResult(response=refusal_message(boundary), boundary_decision=boundary)

        try:
            return await self._process_allowed(raw_input, context, boundary)
        except Exception as e:
            self.logger.error(
                "turn.failed",
                conversation_id=context.conversation_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return TurnResult(
                response=FAILURE_MESSAGE,
                boundary_decision=boundary,
                error=f"{type(e).__name__}: {e}",
            )

    async def _process_allowed(
        self, raw_input: str, context: ConversationContext, boundary: BoundaryDecision
    ) -> TurnResult:
        switch = self.switch_detector.detect_switch(raw_input, context)
        turn_context = turn_local_context(context, switch)

        rewrite = self.rewriter.rewrite(raw_input, turn_context)
        analysis = self.analyzer.analyze(rewrite.normalized)
        intent, cache_hit = await self._classify(rewrite.normalized, analysis)
        if analysis.query_type is QueryType.AGGREGATION:
            # catalog-wide: no subject to resolve
            entity = EntityResult(confidence=1.0)
        else:
            entity = await self.entity_resolver.resolve_entity(rewrite.normalized, turn_context)
        uncertainty = self.boundary_checker.check_uncertainty(rewrite.normalized, intent.confidence)

        plan = self.planner.plan(intent, entity, turn_context, analysis)
        subject = self.catalog.get_entity(entity.entity_id) if entity.matched and entity.entity_id else None
        subjectless = all(task.action in SUBJECTLESS_ACTIONS for task in plan.tasks)

        results: list[SkillResult] = []
        if plan.tasks and (subject is not None or subjectless):
            try:
                results = await self.executor.execute(plan, subject)
            except CircularDependencyError as e:
                return TurnResult(
                    response=PLAN_FAILURE_MESSAGE,
                    boundary_decision=boundary,
                    switch_decision=switch,
                    rewrite=rewrite,
                    analysis=analysis,
                    intent=intent,
                    entity=entity,
                    skill_results=list(e.completed),
                    uncertainty=uncertainty,
                    cache_hit=cache_hit,
                    error=str(e),
                )

        score = self.evaluator.evaluate(rewrite, intent, entity, plan, results)

        generation_error: Optional[str] = None
        try:
            text = await self._generate(raw_input, rewrite, intent, subject, results)
        except LLMServiceError as e:
            generation_error = str(e)
            text = render_results(subject, results)

        aggregation = self.validator.validate_aggregation_response(
            text, self.catalog.lookup_entity_catalog()
        )
        citation = self.validator.validate_case_citation(
            aggregation.sanitized_response, has_matched_cases(results)
        )
        response = citation.enhanced_response
        if score.needs_confirmation:
            response += self.evaluator.confirmation_prompt(score)

        self.logger.info(
            "turn.completed",
            conversation_id=context.conversation_id,
            intent=intent.intent,
            subject=entity.entity_name,
            overall_confidence=round(score.overall, 4),
            needs_confirmation=score.needs_confirmation,
            tasks=len(results),
            cache_hit=cache_hit,
        )

        return TurnResult(
            response=response,
            boundary_decision=boundary,
            confidence_score=score,
            switch_decision=switch,
            rewrite=rewrite,
            analysis=analysis,
            intent=intent,
            entity=entity,
            skill_results=results,
            uncertainty=uncertainty,
            fabricated_names=aggregation.fabricated_names,
            citation_warnings=citation.warnings,
            cache_hit=cache_hit,
            error=generation_error,
        )

    async def _classify(
        self, normalized_query: str, analysis: QueryAnalysis
    ) -> tuple[IntentResult, bool]:
        start = time.perf_counter()
        cached = self.cache.get(normalized_query)
        if isinstance(cached, IntentResult):
            self.monitor.record(
                "cache", normalized_query, cached.intent, cached.confidence, _elapsed_ms(start)
            )
            return cached, True

        # Aggregation and comparison queries are decided by their structure.
        intent = self.analyzer.intent_for(analysis)
        source = "analyzer"
        if intent is None:
            intent = await self.intent_classifier.classify_intent(normalized_query)
            source = "classifier"
        self.cache.set(normalized_query, intent)
        self.monitor.record(
            source, normalized_query, intent.intent, intent.confidence, _elapsed_ms(start)
        )
        return intent, False

    async def _generate(
        self,
        raw_input: str,
        rewrite: RewriteResult,
        intent: IntentResult,
        subject: Optional[Entity],
        results: Sequence[SkillResult],
    ) -> str:
        if self.text_generator is None:
            return render_results(subject, results)
        prompt = build_prompt(raw_input, rewrite, intent, subject, results)
        return await self.text_generator.generate_text(prompt)


def refusal_message(boundary: BoundaryDecision) -> str:
    message = boundary.reason or ""
    if boundary.suggested_action:
        message += f"。{boundary.suggested_action}"
    return message


def turn_local_context(
    context: ConversationContext, switch: ContextSwitchDecision
) -> ConversationContext:
    """A copy of the context with the switch applied; the original is untouched."""
    if not switch.should_switch:
        return context
    return dataclasses.replace(
        context,
        entity_id=switch.new_entity_id,
        entity_name=switch.new_entity_name,
        recent_messages=list(context.recent_messages),
        entity_stack=list(context.entity_stack),
        intent_history=list(context.intent_history),
    )


def has_matched_cases(results: Sequence[SkillResult]) -> bool:
    return any(
        r.success and isinstance(r.data, dict) and r.data.get("cases") for r in results
    )


def build_prompt(
    raw_input: str,
    rewrite: RewriteResult,
    intent: IntentResult,
    subject: Optional[Entity],
    results: Sequence[SkillResult],
) -> str:
    context: dict[str, Any] = {
        "用户问题": raw_input,
        "理解后的问题": rewrite.normalized,
        "意图": INTENT_LABELS.get(intent.intent, intent.intent),
    }
    if subject is not None:
        context["商户"] = {"id": subject.id, "名称": subject.name, "业态": subject.category}
    if results:
        context["分析结果"] = [r.to_dict() for r in results]

    context_str = yaml.safe_dump(context, allow_unicode=True, default_flow_style=False, sort_keys=False)
    return f"""Context:
{context_str}
Task: 根据以上分析结果，用简洁的中文回答用户问题。只引用上下文中出现的商户名称；
引用案例时标注"案例ID：<ID>"。如果分析结果中有失败的任务，请说明相应信息暂不可用。
"""


def render_results(subject: Optional[Entity], results: Sequence[SkillResult]) -> str:
    """Plain rendering of skill results, used without a text generator."""
    if not results:
        if subject is None:
            return "请告诉我您想了解哪家商户。"
        return f"已识别商户「{subject.name}」，请告诉我您想了解的具体内容。"

    lines = [NO_GENERATOR_HEADER]
    for result in results:
        if not result.success:
            lines.append(f"- 任务 {result.task_id} 未完成：{result.error}")
            continue
        data = result.data if isinstance(result.data, dict) else {}
        if "operation" in data:
            lines.extend(render_aggregation(data))
        elif "insights" in data:
            lines.append(f"- 对比基准：{data['reference']['label']}")
            lines.extend(f"  - {insight}" for insight in data["insights"])
        elif "total_score" in data:
            lines.append(f"- 健康度评分 {data['total_score']} 分，风险等级 {data.get('risk_level')}")
        elif "risks" in data:
            lines.append(f"- 检测到 {len(data['risks'])} 项风险")
            lines.extend(f"  - {risk['message']}" for risk in data["risks"])
        elif "problems" in data:
            lines.append(f"- 诊断发现 {len(data['problems'])} 个问题")
            lines.extend(f"  - {problem}" for problem in data["problems"])
        elif "solutions" in data:
            for solution in data["solutions"]:
                lines.append(f"- 方案：{solution['title']}（案例ID：{solution['case_id']}）")
        elif "cases" in data:
            for case in data["cases"]:
                lines.append(f"- 相似案例：{case['title']}（案例ID：{case['id']}）")
    return "\n".join(lines)


OPERATION_LABELS = {"sum": "合计", "avg": "平均", "max": "最高", "min": "最低"}


def render_aggregation(data: dict[str, Any]) -> list[str]:
    if data["operation"] == "count":
        lines = [f"- 统计结果：共 {data['total']} 家商户"]
    else:
        label = OPERATION_LABELS.get(data["operation"], data["operation"])
        lines = [f"- 统计结果：{data['metric']} {label}值 {data['total']}"]

    for key, value in (data.get("breakdown") or {}).items():
        lines.append(f"  - {RISK_LABELS.get(key, key)}：{value}")

    if data["operation"] == "count" and not data.get("breakdown"):
        for entity in data.get("entities", [])[:10]:
            risk = RISK_LABELS.get(entity["risk_level"], entity["risk_level"])
            lines.append(f"  - {entity['name']}（{risk}，{entity['total_score']} 分）")
    return lines


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000
