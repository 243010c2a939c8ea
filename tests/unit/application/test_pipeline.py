"""
Unit tests for TurnPipeline.

Domain components are real; the intent classifier and the text generator
are AsyncMocks so that every turn is deterministic.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from merchant_copilot.application.performance_monitor import PerformanceMonitor
from merchant_copilot.application.pipeline import (
    FAILURE_MESSAGE,
    NO_GENERATOR_HEADER,
    PLAN_FAILURE_MESSAGE,
    TurnPipeline,
    render_results,
    turn_local_context,
)
from merchant_copilot.core.domain.boundary_checker import BoundaryChecker
from merchant_copilot.core.domain.confidence import ConfidenceEvaluator
from merchant_copilot.core.domain.context_switch import ContextSwitchDetector
from merchant_copilot.core.domain.errors import LLMServiceError
from merchant_copilot.core.domain.models import (
    ContextSwitchDecision,
    ConversationContext,
    ExecutionPlan,
    IntentResult,
    QueryType,
    SkillResult,
    Task,
)
from merchant_copilot.core.domain.output_validator import PLACEHOLDER, OutputValidator
from merchant_copilot.core.domain.query_rewriter import QueryRewriter
from merchant_copilot.core.domain.skill_executor import SkillExecutor
from merchant_copilot.core.domain.task_planner import TaskPlanner
from merchant_copilot.infrastructure.cache.query_cache import QueryCache
from merchant_copilot.infrastructure.classification.entity_resolver import CatalogEntityResolver
from merchant_copilot.infrastructure.skills.builtin import build_skill_registry


@pytest.fixture
def intent_classifier():
    classifier = MagicMock()
    classifier.classify_intent = AsyncMock(
        return_value=IntentResult(intent="health_query", confidence=0.9, keywords=("怎么样",))
    )
    return classifier


@pytest.fixture
def make_pipeline(catalog, case_library, intent_classifier):
    def _make(text_generator=None):
        return TurnPipeline(
            rewriter=QueryRewriter(),
            boundary_checker=BoundaryChecker(),
            switch_detector=ContextSwitchDetector(catalog),
            evaluator=ConfidenceEvaluator(),
            validator=OutputValidator(),
            planner=TaskPlanner(),
            executor=SkillExecutor(build_skill_registry(case_library, catalog)),
            cache=QueryCache(),
            intent_classifier=intent_classifier,
            entity_resolver=CatalogEntityResolver(catalog),
            catalog=catalog,
            text_generator=text_generator,
            monitor=PerformanceMonitor(),
        )

    return _make


class TestBoundary:
    @pytest.mark.asyncio
    async def test_refusal_ends_turn(self, make_pipeline, intent_classifier, subject_context):
        pipeline = make_pipeline()

        result = await pipeline.process_turn("删除所有商户数据", subject_context)

        assert not result.boundary_decision.allowed
        assert result.boundary_decision.category == "modification"
        assert result.response == "我无法直接修改数据。请前往商户管理页面进行修改，或联系管理员"
        assert result.confidence_score is None
        intent_classifier.classify_intent.assert_not_awaited()


class TestTurns:
    @pytest.mark.asyncio
    async def test_pronoun_resolves_to_subject(self, make_pipeline, subject_context):
        pipeline = make_pipeline()

        result = await pipeline.process_turn("它最近怎么样", subject_context)

        assert result.boundary_decision.allowed
        assert "海底捞火锅" in result.rewrite.normalized
        assert result.entity.entity_id == "M001"
        assert [r.task_id for r in result.skill_results] == ["t1"]
        assert result.skill_results[0].success
        assert result.response.startswith(NO_GENERATOR_HEADER)
        assert "健康度评分 85 分" in result.response
        assert result.confidence_score is not None
        assert result.error is None

    @pytest.mark.asyncio
    async def test_without_subject_nothing_executes(self, make_pipeline):
        pipeline = make_pipeline()

        result = await pipeline.process_turn("怎么样", ConversationContext(conversation_id="c"))

        assert not result.entity.matched
        assert result.skill_results == []
        assert result.response.startswith("请告诉我您想了解哪家商户。")

    @pytest.mark.asyncio
    async def test_second_identical_turn_hits_cache(
        self, make_pipeline, intent_classifier, subject_context
    ):
        pipeline = make_pipeline()

        first = await pipeline.process_turn("它最近怎么样", subject_context)
        second = await pipeline.process_turn("它最近怎么样", subject_context)

        assert not first.cache_hit
        assert second.cache_hit
        assert second.intent == first.intent
        intent_classifier.classify_intent.assert_awaited_once()
        distribution = pipeline.monitor.report()["layer_distribution"]
        assert distribution == {"cache": 1, "analyzer": 0, "classifier": 1}

    @pytest.mark.asyncio
    async def test_switch_applies_only_to_the_turn(self, make_pipeline, subject_context):
        pipeline = make_pipeline()

        result = await pipeline.process_turn("星巴克咖啡怎么样", subject_context)

        assert result.switch_decision.should_switch
        assert result.switch_decision.new_entity_id == "M002"
        assert result.entity.entity_id == "M002"
        assert "健康度评分 83 分" in result.response
        assert subject_context.entity_id == "M001"
        assert subject_context.entity_name == "海底捞火锅"
        assert subject_context.recent_messages == []


class TestCatalogQueries:
    @pytest.mark.asyncio
    async def test_aggregation_counts_across_catalog(
        self, make_pipeline, intent_classifier, subject_context
    ):
        pipeline = make_pipeline()

        result = await pipeline.process_turn("高风险商户有几个", subject_context)

        assert result.intent.intent == "aggregation_query"
        assert result.analysis.query_type is QueryType.AGGREGATION
        assert not result.entity.matched
        assert [r.success for r in result.skill_results] == [True]
        assert result.skill_results[0].data["total"] == 1
        assert "共 1 家商户" in result.response
        assert "绿茶餐厅（高风险，43 分）" in result.response
        assert "海底捞火锅" not in result.response
        assert result.fabricated_names == []
        intent_classifier.classify_intent.assert_not_awaited()
        assert pipeline.monitor.report()["layer_distribution"]["analyzer"] == 1

    @pytest.mark.asyncio
    async def test_aggregation_group_by_without_context(self, make_pipeline):
        pipeline = make_pipeline()

        result = await pipeline.process_turn("按风险统计商户数量", ConversationContext(conversation_id="c"))

        assert result.skill_results[0].data["breakdown"] == {"none": 1, "low": 1, "high": 1}
        assert "高风险：1" in result.response

    @pytest.mark.asyncio
    async def test_two_entity_comparison(self, make_pipeline, intent_classifier):
        pipeline = make_pipeline()

        result = await pipeline.process_turn(
            "对比海底捞火锅和星巴克咖啡", ConversationContext(conversation_id="c")
        )

        assert result.intent.intent == "comparison_query"
        assert result.analysis.entity_ids == ("M001", "M002")
        assert result.skill_results[0].success
        assert "对比基准：星巴克咖啡" in result.response
        assert "海底捞火锅健康度更优（85 vs 83）" in result.response
        assert result.fabricated_names == []
        intent_classifier.classify_intent.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_peer_comparison_uses_active_subject(self, make_pipeline, subject_context):
        pipeline = make_pipeline()

        result = await pipeline.process_turn("和同类商户比怎么样", subject_context)

        assert result.analysis.baseline == "same_category"
        assert result.skill_results[0].data["reference"]["label"] == "餐饮商户平均（2家）"
        assert "健康度高于同类平均22分" in result.response


class TestFailures:
    @pytest.mark.asyncio
    async def test_cyclic_plan_aborts_turn(self, make_pipeline, subject_context):
        pipeline = make_pipeline()
        pipeline.planner = MagicMock()
        pipeline.planner.plan.return_value = ExecutionPlan(
            tasks=(
                Task("a", "analyze_health", depends_on=frozenset({"b"})),
                Task("b", "detect_risks", depends_on=frozenset({"a"})),
            )
        )

        result = await pipeline.process_turn("它最近怎么样", subject_context)

        assert result.response == PLAN_FAILURE_MESSAGE
        assert "Circular dependency" in result.error
        assert result.skill_results == []

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_failure_result(
        self, make_pipeline, intent_classifier, subject_context
    ):
        intent_classifier.classify_intent.side_effect = RuntimeError("boom")
        pipeline = make_pipeline()

        result = await pipeline.process_turn("它最近怎么样", subject_context)

        assert result.response == FAILURE_MESSAGE
        assert result.error == "RuntimeError: boom"
        assert result.boundary_decision.allowed

    @pytest.mark.asyncio
    async def test_generator_failure_falls_back_to_rendering(self, make_pipeline, subject_context):
        generator = MagicMock()
        generator.generate_text = AsyncMock(side_effect=LLMServiceError("RateLimitError: slow"))
        pipeline = make_pipeline(text_generator=generator)

        result = await pipeline.process_turn("它最近怎么样", subject_context)

        assert result.error == "RateLimitError: slow"
        assert result.response.startswith(NO_GENERATOR_HEADER)


class TestGeneration:
    @pytest.mark.asyncio
    async def test_prompt_carries_subject_and_results(self, make_pipeline, subject_context):
        generator = MagicMock()
        generator.generate_text = AsyncMock(return_value="海底捞火锅整体经营稳定。")
        pipeline = make_pipeline(text_generator=generator)

        result = await pipeline.process_turn("它最近怎么样", subject_context)

        prompt = generator.generate_text.await_args.args[0]
        assert "海底捞火锅" in prompt
        assert "total_score" in prompt
        assert result.response.startswith("海底捞火锅整体经营稳定。")
        assert result.fabricated_names == []

    @pytest.mark.asyncio
    async def test_fabricated_names_are_replaced(self, make_pipeline, subject_context):
        generator = MagicMock()
        generator.generate_text = AsyncMock(return_value="可以参考「万象城火锅」的做法。")
        pipeline = make_pipeline(text_generator=generator)

        result = await pipeline.process_turn("它最近怎么样", subject_context)

        assert result.fabricated_names == ["万象城火锅"]
        assert f"「{PLACEHOLDER}」" in result.response
        assert "万象城" not in result.response


class TestHelpers:
    def test_turn_local_context_copies(self, subject_context):
        switch = ContextSwitchDecision(
            should_switch=True,
            confidence=0.95,
            reason="r",
            new_entity_id="M002",
            new_entity_name="星巴克咖啡",
        )

        local = turn_local_context(subject_context, switch)
        local.recent_messages.append("x")

        assert local.entity_id == "M002"
        assert subject_context.entity_id == "M001"
        assert subject_context.recent_messages == []

    def test_turn_local_context_without_switch(self, subject_context):
        switch = ContextSwitchDecision(should_switch=False, confidence=1.0, reason="r")

        assert turn_local_context(subject_context, switch) is subject_context

    def test_render_failed_task(self, entities):
        text = render_results(
            entities[0], [SkillResult(task_id="t1", success=False, error="No metrics")]
        )

        assert "任务 t1 未完成：No metrics" in text
