"""
Task Planner

Decomposes a classified intent into an execution plan: a DAG of skill tasks
plus the strategy (skills / llm / hybrid), a parallelism hint and a plan
confidence.

Aggregation and comparison intents become one catalog-wide task whose
parameters come from the QueryAnalysis of the turn.
"""

import re
from typing import Iterable

import structlog

from merchant_copilot.core.domain.errors import PlanValidationError
from merchant_copilot.core.domain.models import (
    ConversationContext,
    EntityResult,
    ExecutionPlan,
    IntentResult,
    QueryAnalysis,
    Task,
)
from merchant_copilot.core.domain.query_analyzer import AGGREGATION_INTENT, COMPARISON_INTENT

ANALYZE_HEALTH = "analyze_health"
DETECT_RISKS = "detect_risks"
DIAGNOSE = "diagnose"
MATCH_CASES = "match_cases"
GENERATE_SOLUTION = "generate_solution"
AGGREGATE = "aggregate"
COMPARE = "compare"

# Actions expected to follow each intent in a typical conversation.
INTENT_CHAINS: dict[str, tuple[str, ...]] = {
    "health_query": (DETECT_RISKS, DIAGNOSE),
    "risk_diagnosis": (MATCH_CASES, GENERATE_SOLUTION),
    "solution_recommend": (ANALYZE_HEALTH, DIAGNOSE),
    "data_query": (ANALYZE_HEALTH,),
}

PROBLEM_INDICATORS = re.compile(r"问题|风险|下降|低|差|不好")

# Actions that can run without a subject entity.
SUBJECTLESS_ACTIONS = frozenset({GENERATE_SOLUTION, AGGREGATE, COMPARE})


class TaskPlanner:
    """Builds, validates and orders execution plans."""

    def __init__(self):
        self.logger = structlog.get_logger().bind(component="task_planner")

    def plan(
        self,
        intent: IntentResult,
        entity: EntityResult,
        context: ConversationContext,
        analysis: QueryAnalysis | None = None,
    ) -> ExecutionPlan:
        if intent.intent in (AGGREGATION_INTENT, COMPARISON_INTENT):
            tasks = self._catalog_tasks(intent.intent, entity, analysis)
        else:
            params = {"entity_id": entity.entity_id}
            tasks = self._build_tasks(intent.intent, params, context)

        errors = self._structural_errors(tasks)
        if errors:
            raise PlanValidationError(errors)

        plan = ExecutionPlan(
            tasks=tuple(tasks),
            confidence=self.plan_confidence(tasks, context),
            strategy=self.decide_strategy(intent.intent, tasks),
            parallelizable=self.is_parallelizable(tasks),
        )
        self.logger.debug(
            "plan.created",
            intent=intent.intent,
            tasks=[task.action for task in tasks],
            strategy=plan.strategy,
            confidence=plan.confidence,
        )
        return plan

    def _build_tasks(
        self, intent: str, params: dict, context: ConversationContext
    ) -> list[Task]:
        if intent == "health_query":
            tasks = [Task("t1", ANALYZE_HEALTH, dict(params))]
            if self.should_prepare_diagnosis(context):
                tasks.append(Task("t2", DETECT_RISKS, dict(params), frozenset({"t1"}), priority=2))
            return tasks

        if intent == "risk_diagnosis":
            return [
                Task("t1", DETECT_RISKS, dict(params)),
                Task("t2", DIAGNOSE, dict(params)),
                Task("t3", MATCH_CASES, dict(params), frozenset({"t2"}), priority=2),
            ]

        if intent == "solution_recommend":
            return [
                Task("t1", DIAGNOSE, dict(params)),
                Task("t2", MATCH_CASES, dict(params), frozenset({"t1"}), priority=2),
                Task("t3", GENERATE_SOLUTION, dict(params), frozenset({"t1", "t2"}), priority=3),
            ]

        if intent == "data_query":
            return [Task("t1", ANALYZE_HEALTH, dict(params))]

        # general_chat, unknown and anything else is answered by the LLM alone
        return []

    @staticmethod
    def _catalog_tasks(
        intent: str, entity: EntityResult, analysis: QueryAnalysis | None
    ) -> list[Task]:
        """A single aggregate or compare task; none when the analysis lacks its inputs."""
        if analysis is None:
            return []

        if intent == AGGREGATION_INTENT:
            params = {
                "operation": analysis.operation,
                "metric": analysis.metric,
                "risk_levels": list(analysis.risk_levels),
                "categories": list(analysis.categories),
                "group_by": analysis.group_by,
            }
            return [Task("t1", AGGREGATE, params)]

        if analysis.baseline == "entity" and len(analysis.entity_ids) >= 2:
            params = {"entity_ids": list(analysis.entity_ids[:2]), "baseline": "entity"}
            return [Task("t1", COMPARE, params)]

        subject_id = analysis.entity_ids[0] if analysis.entity_ids else entity.entity_id
        if analysis.baseline == "same_category" and subject_id:
            return [Task("t1", COMPARE, {"entity_ids": [subject_id], "baseline": "same_category"})]
        return []

    @staticmethod
    def decide_strategy(intent: str, tasks: Iterable[Task]) -> str:
        if not list(tasks) or intent in ("general_chat", "unknown"):
            return "llm"
        if intent == "data_query":
            return "hybrid"
        return "skills"

    @staticmethod
    def is_parallelizable(tasks: list[Task]) -> bool:
        if len(tasks) <= 1:
            return False
        independent = sum(1 for task in tasks if not task.depends_on)
        return independent >= 2

    def plan_confidence(self, tasks: list[Task], context: ConversationContext) -> float:
        confidence = 1.0

        if len(tasks) > 3:
            confidence -= 0.1 * (len(tasks) - 3)

        dependencies = sum(len(task.depends_on) for task in tasks)
        if dependencies > 3:
            confidence -= 0.05 * (dependencies - 3)

        if context.last_intent and self.is_follow_up(context.last_intent, tasks):
            confidence += 0.1

        return max(0.3, min(1.0, confidence))

    @staticmethod
    def is_follow_up(last_intent: str, tasks: list[Task]) -> bool:
        expected = INTENT_CHAINS.get(last_intent, ())
        return any(task.action in expected for task in tasks)

    @staticmethod
    def should_prepare_diagnosis(context: ConversationContext) -> bool:
        if context.last_intent == "risk_diagnosis":
            return True
        recent = " ".join(message.content for message in context.recent_messages[-3:])
        return bool(PROBLEM_INDICATORS.search(recent))

    def validate_plan(self, plan: ExecutionPlan) -> tuple[bool, list[str]]:
        """
        Check a plan for cycles, unknown dependency ids and missing subject
        parameters. Returns (valid, errors).
        """
        errors = self._structural_errors(plan.tasks)
        for task in plan.tasks:
            if not task.params.get("entity_id") and task.action not in SUBJECTLESS_ACTIONS:
                errors.append(f"任务 {task.id} 缺少必需的 entity_id 参数")
        return not errors, errors

    def _structural_errors(self, tasks: Iterable[Task]) -> list[str]:
        tasks = list(tasks)
        errors: list[str] = []
        if has_cycle(tasks):
            errors.append("检测到循环依赖")

        ids = {task.id for task in tasks}
        for task in tasks:
            for dependency in sorted(task.depends_on):
                if dependency not in ids:
                    errors.append(f"任务 {task.id} 依赖的任务 {dependency} 不存在")
        return errors

    @staticmethod
    def execution_order(tasks: Iterable[Task]) -> list[list[str]]:
        """
        Topological batches of task ids; every task in a batch depends only on
        tasks of earlier batches. Stops at the first batch it cannot form, so tasks
        on a cycle or depending on an unknown id are left out.
        """
        tasks = list(tasks)
        ids = {task.id for task in tasks}
        in_degree = {task.id: len(task.depends_on) for task in tasks}
        dependents: dict[str, list[str]] = {task.id: [] for task in tasks}
        for task in tasks:
            for dependency in task.depends_on & ids:
                dependents[dependency].append(task.id)

        batches: list[list[str]] = []
        remaining = [task.id for task in tasks]
        while remaining:
            batch = [task_id for task_id in remaining if in_degree[task_id] == 0]
            if not batch:
                break
            batches.append(batch)
            for task_id in batch:
                remaining.remove(task_id)
                for dependent in dependents[task_id]:
                    in_degree[dependent] -= 1
        return batches


def has_cycle(tasks: Iterable[Task]) -> bool:
    graph = {task.id: task.depends_on for task in tasks}
    visited: set[str] = set()
    on_stack: set[str] = set()

    def visit(task_id: str) -> bool:
        visited.add(task_id)
        on_stack.add(task_id)
        for dependency in graph.get(task_id, ()):
            if dependency not in visited:
                if visit(dependency):
                    return True
            elif dependency in on_stack:
                return True
        on_stack.discard(task_id)
        return False

    return any(visit(task_id) for task_id in graph if task_id not in visited)
