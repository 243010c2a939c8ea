"""Unit tests for TaskPlanner."""

import pytest

from merchant_copilot.core.domain.errors import PlanValidationError
from merchant_copilot.core.domain.models import (
    ConversationContext,
    EntityResult,
    ExecutionPlan,
    IntentResult,
    QueryAnalysis,
    QueryType,
    Task,
)
from merchant_copilot.core.domain.task_planner import (
    AGGREGATE,
    ANALYZE_HEALTH,
    COMPARE,
    DETECT_RISKS,
    DIAGNOSE,
    GENERATE_SOLUTION,
    MATCH_CASES,
    TaskPlanner,
    has_cycle,
)


@pytest.fixture
def planner():
    return TaskPlanner()


@pytest.fixture
def entity():
    return EntityResult(confidence=1.0, matched=True, entity_id="M001", entity_name="海底捞火锅")


def plan_for(planner, intent, entity, context=None):
    return planner.plan(IntentResult(intent=intent, confidence=0.9), entity, context or ConversationContext())


class TestPlan:
    def test_health_query_single_task(self, planner, entity):
        plan = plan_for(planner, "health_query", entity)

        assert [t.action for t in plan.tasks] == [ANALYZE_HEALTH]
        assert plan.tasks[0].params == {"entity_id": "M001"}
        assert plan.strategy == "skills"
        assert plan.parallelizable is False
        assert plan.confidence == 1.0

    def test_health_query_after_problem_talk_adds_risk_detection(self, planner, entity):
        context = ConversationContext()
        context.add_message("user", "海底捞火锅最近营收下降了")

        plan = plan_for(planner, "health_query", entity, context)

        assert [t.action for t in plan.tasks] == [ANALYZE_HEALTH, DETECT_RISKS]
        assert plan.tasks[1].depends_on == frozenset({"t1"})

    def test_risk_diagnosis(self, planner, entity):
        plan = plan_for(planner, "risk_diagnosis", entity)

        assert [t.action for t in plan.tasks] == [DETECT_RISKS, DIAGNOSE, MATCH_CASES]
        assert plan.tasks[2].depends_on == frozenset({"t2"})
        assert plan.parallelizable is True

    def test_solution_recommend(self, planner, entity):
        plan = plan_for(planner, "solution_recommend", entity)

        assert [t.action for t in plan.tasks] == [DIAGNOSE, MATCH_CASES, GENERATE_SOLUTION]
        assert plan.tasks[2].depends_on == frozenset({"t1", "t2"})
        assert planner.execution_order(plan.tasks) == [["t1"], ["t2"], ["t3"]]

    def test_data_query_is_hybrid(self, planner, entity):
        assert plan_for(planner, "data_query", entity).strategy == "hybrid"

    @pytest.mark.parametrize("intent", ["general_chat", "unknown", "something_else"])
    def test_chat_intents_have_no_tasks(self, planner, entity, intent):
        plan = plan_for(planner, intent, entity)

        assert plan.tasks == ()
        assert plan.strategy == "llm"

    def test_follow_up_raises_confidence_capped(self, planner, entity):
        context = ConversationContext(last_intent="health_query")

        plan = plan_for(planner, "risk_diagnosis", entity, context)

        assert plan.confidence == 1.0


class TestCatalogPlans:
    def test_aggregation_task_carries_filters(self, planner):
        analysis = QueryAnalysis(
            query_type=QueryType.AGGREGATION, risk_levels=("high",), group_by="category"
        )

        plan = planner.plan(
            IntentResult("aggregation_query", 0.85), EntityResult(confidence=1.0), ConversationContext(), analysis
        )

        assert [t.action for t in plan.tasks] == [AGGREGATE]
        assert plan.tasks[0].params == {
            "operation": "count",
            "metric": None,
            "risk_levels": ["high"],
            "categories": [],
            "group_by": "category",
        }
        assert plan.strategy == "skills"
        assert planner.validate_plan(plan) == (True, [])

    def test_two_entity_comparison(self, planner, entity):
        analysis = QueryAnalysis(
            query_type=QueryType.COMPARISON, entity_ids=("M001", "M002"), baseline="entity"
        )

        plan = planner.plan(IntentResult("comparison_query", 0.85), entity, ConversationContext(), analysis)

        assert [t.action for t in plan.tasks] == [COMPARE]
        assert plan.tasks[0].params == {"entity_ids": ["M001", "M002"], "baseline": "entity"}

    def test_peer_comparison_falls_back_to_resolved_entity(self, planner, entity):
        analysis = QueryAnalysis(query_type=QueryType.COMPARISON, baseline="same_category")

        plan = planner.plan(IntentResult("comparison_query", 0.85), entity, ConversationContext(), analysis)

        assert plan.tasks[0].params == {"entity_ids": ["M001"], "baseline": "same_category"}

    def test_peer_comparison_without_any_entity_is_empty(self, planner):
        analysis = QueryAnalysis(query_type=QueryType.COMPARISON, baseline="same_category")

        plan = planner.plan(
            IntentResult("comparison_query", 0.85), EntityResult(confidence=0.0), ConversationContext(), analysis
        )

        assert plan.tasks == ()
        assert plan.strategy == "llm"


class TestPlanConfidence:
    def test_large_plan_penalized(self, planner):
        tasks = [Task(f"t{i}", ANALYZE_HEALTH) for i in range(5)]

        assert planner.plan_confidence(tasks, ConversationContext()) == pytest.approx(0.8)

    def test_dependencies_penalized(self, planner):
        tasks = [
            Task("a", DIAGNOSE),
            Task("b", MATCH_CASES, depends_on=frozenset({"a"})),
            Task("c", GENERATE_SOLUTION, depends_on=frozenset({"a", "b"})),
            Task("d", GENERATE_SOLUTION, depends_on=frozenset({"a", "b", "c"})),
        ]

        # one task beyond three, three dependencies beyond three
        assert planner.plan_confidence(tasks, ConversationContext()) == pytest.approx(0.75)

    def test_floor(self, planner):
        tasks = [Task(f"t{i}", ANALYZE_HEALTH) for i in range(20)]

        assert planner.plan_confidence(tasks, ConversationContext()) == 0.3


class TestValidation:
    def test_valid_plan(self, planner, entity):
        plan = plan_for(planner, "solution_recommend", entity)

        assert planner.validate_plan(plan) == (True, [])

    def test_cycle_detected(self, planner):
        plan = ExecutionPlan(
            tasks=(
                Task("a", DIAGNOSE, {"entity_id": "M001"}, frozenset({"b"})),
                Task("b", MATCH_CASES, {"entity_id": "M001"}, frozenset({"a"})),
            )
        )

        valid, errors = planner.validate_plan(plan)

        assert valid is False
        assert "检测到循环依赖" in errors

    def test_unknown_dependency(self, planner):
        plan = ExecutionPlan(tasks=(Task("a", DIAGNOSE, {"entity_id": "M001"}, frozenset({"zz"})),))

        valid, errors = planner.validate_plan(plan)

        assert valid is False
        assert errors == ["任务 a 依赖的任务 zz 不存在"]

    def test_missing_entity_id(self, planner):
        plan = ExecutionPlan(
            tasks=(Task("a", DIAGNOSE, {}), Task("b", GENERATE_SOLUTION, {}, frozenset({"a"})))
        )

        valid, errors = planner.validate_plan(plan)

        assert valid is False
        assert errors == ["任务 a 缺少必需的 entity_id 参数"]

    def test_plan_without_subject_still_builds(self, planner):
        plan = plan_for(planner, "health_query", EntityResult(confidence=0.0))

        assert plan.tasks[0].params == {"entity_id": None}
        assert planner.validate_plan(plan)[0] is False

    def test_structural_error_raises_on_plan(self, planner, entity, monkeypatch):
        monkeypatch.setattr(
            planner,
            "_build_tasks",
            lambda *args: [Task("a", DIAGNOSE, depends_on=frozenset({"a"}))],
        )

        with pytest.raises(PlanValidationError) as exc_info:
            plan_for(planner, "risk_diagnosis", entity)

        assert exc_info.value.errors == ["检测到循环依赖"]


class TestExecutionOrder:
    def test_parallel_batches(self):
        tasks = [
            Task("a", DETECT_RISKS),
            Task("b", DIAGNOSE),
            Task("c", MATCH_CASES, depends_on=frozenset({"b"})),
        ]

        assert TaskPlanner.execution_order(tasks) == [["a", "b"], ["c"]]

    def test_cycle_members_left_out(self):
        tasks = [
            Task("a", DIAGNOSE),
            Task("b", MATCH_CASES, depends_on=frozenset({"c"})),
            Task("c", MATCH_CASES, depends_on=frozenset({"b"})),
        ]

        assert TaskPlanner.execution_order(tasks) == [["a"]]

    def test_unknown_dependency_left_out(self):
        tasks = [Task("a", DIAGNOSE), Task("b", MATCH_CASES, depends_on=frozenset({"x"}))]

        assert TaskPlanner.execution_order(tasks) == [["a"]]


def test_has_cycle_self_loop():
    assert has_cycle([Task("a", DIAGNOSE, depends_on=frozenset({"a"}))]) is True


def test_has_cycle_diamond_is_acyclic():
    tasks = [
        Task("a", DIAGNOSE),
        Task("b", DIAGNOSE, depends_on=frozenset({"a"})),
        Task("c", DIAGNOSE, depends_on=frozenset({"a"})),
        Task("d", DIAGNOSE, depends_on=frozenset({"b", "c"})),
    ]

    assert has_cycle(tasks) is False
