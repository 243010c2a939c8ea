"""
Confidence Evaluation

Combines the per-stage confidence signals of one turn into a single score,
detects concrete ambiguities, and decides whether the user must confirm
before the answer is trusted.

Stage weights (query understanding 0.15, intent 0.25, entity 0.30, planning
0.15, execution 0.15) make entity resolution the most expensive failure:
a wrong subject means an entirely wrong answer.
"""

from dataclasses import dataclass
from typing import Sequence

import structlog

from merchant_copilot.core.domain.models import (
    ConfidenceBreakdown,
    ConfidenceScore,
    EntityResult,
    ExecutionPlan,
    IntentResult,
    RewriteKind,
    RewriteResult,
    SkillResult,
)


@dataclass(frozen=True)
class StageWeights:
    query_understanding: float = 0.15
    intent_classification: float = 0.25
    entity_extraction: float = 0.30
    task_planning: float = 0.15
    execution: float = 0.15

    def as_dict(self) -> dict[str, float]:
        return {
            "query_understanding": self.query_understanding,
            "intent_classification": self.intent_classification,
            "entity_extraction": self.entity_extraction,
            "task_planning": self.task_planning,
            "execution": self.execution,
        }


class ConfidenceEvaluator:
    """
    Scores a turn from the outputs of every prior stage.

    Args:
        weights: Per-stage weights for the overall score
        ambiguity_threshold: Stage confidence below which an ambiguity is reported
        confirmation_threshold: Overall score below which (together with at
            least one ambiguity) confirmation is required
        max_rewrite_operations: Rewrite operation count above which the query
            is reported as ambiguous
    """

    def __init__(
        self,
        weights: StageWeights | None = None,
        ambiguity_threshold: float = 0.3,
        confirmation_threshold: float = 0.5,
        max_rewrite_operations: int = 8,
    ):
        self.weights = weights or StageWeights()
        self.ambiguity_threshold = ambiguity_threshold
        self.confirmation_threshold = confirmation_threshold
        self.max_rewrite_operations = max_rewrite_operations
        self.logger = structlog.get_logger().bind(component="confidence_evaluator")

    def evaluate(
        self,
        rewrite: RewriteResult,
        intent: IntentResult,
        entity: EntityResult,
        plan: ExecutionPlan,
        execution_results: Sequence[SkillResult],
    ) -> ConfidenceScore:
        breakdown = ConfidenceBreakdown(
            query_understanding=_clamp(rewrite.confidence),
            intent_classification=_clamp(intent.confidence),
            entity_extraction=_clamp(entity.confidence),
            task_planning=_clamp(plan.confidence),
            execution=self.execution_confidence(execution_results),
        )
        overall = self.overall_confidence(breakdown)
        ambiguities = self.detect_ambiguities(rewrite, intent, entity)

        # Both conditions are required: a low score with no concrete
        # ambiguity does not interrupt the user.
        needs_confirmation = overall < self.confirmation_threshold and len(ambiguities) > 0

        self.logger.debug(
            "confidence.evaluated",
            overall=round(overall, 4),
            ambiguities=len(ambiguities),
            needs_confirmation=needs_confirmation,
        )

        return ConfidenceScore(
            overall=overall,
            breakdown=breakdown,
            needs_confirmation=needs_confirmation,
            ambiguities=tuple(ambiguities),
        )

    @staticmethod
    def execution_confidence(results: Sequence[SkillResult]) -> float:
        # No tasks attempted means no task failed.
        if not results:
            return 1.0
        return sum(1 for r in results if r.success) / len(results)

    def overall_confidence(self, breakdown: ConfidenceBreakdown) -> float:
        weights = self.weights.as_dict()
        values = breakdown.as_dict()
        total_weight = sum(weights.values())
        if total_weight <= 0:
            return 0.0
        weighted = sum(values[stage] * weight for stage, weight in weights.items())
        return _clamp(weighted / total_weight)

    def detect_ambiguities(
        self, rewrite: RewriteResult, intent: IntentResult, entity: EntityResult
    ) -> list[str]:
        threshold = self.ambiguity_threshold
        ambiguities: list[str] = []

        if rewrite.confidence < threshold:
            ambiguities.append("查询理解不确定，建议您提供更多细节")

        if intent.confidence < threshold:
            ambiguities.append("意图识别不确定，请明确您的需求")

        if entity.matched and entity.confidence < threshold:
            ambiguities.append(f'不确定您是否在询问"{entity.entity_name or ""}"，请确认')

        if len(rewrite.operations) > self.max_rewrite_operations:
            ambiguities.append("查询包含多个部分，可能理解有误")

        if rewrite.count(RewriteKind.COREFERENCE, RewriteKind.ELLIPSIS) and rewrite.confidence < threshold:
            ambiguities.append("对话上下文理解可能有误，建议重新表述")

        return ambiguities

    def should_confirm(self, score: ConfidenceScore, threshold: float = 0.6) -> bool:
        """Looser confirmation check for callers that want an earlier prompt."""
        return score.overall < threshold and len(score.ambiguities) > 0

    @staticmethod
    def confirmation_prompt(score: ConfidenceScore) -> str:
        if not score.ambiguities:
            return ""
        lines = ["", "", "---", "", "⚠️ **提示**:"]
        lines.extend(f"- {ambiguity}" for ambiguity in score.ambiguities)
        return "\n".join(lines) + "\n"

    @staticmethod
    def stage_level(value: float) -> tuple[str, str]:
        if value >= 0.8:
            return "high", "置信度高"
        if value >= 0.6:
            return "medium", "置信度中等"
        return "low", "置信度低，建议人工确认"

    @staticmethod
    def report(score: ConfidenceScore) -> str:
        labels = {
            "query_understanding": "查询理解",
            "intent_classification": "意图识别",
            "entity_extraction": "实体提取",
            "task_planning": "任务规划",
            "execution": "执行结果",
        }
        lines = [
            "# 置信度评估报告",
            "",
            f"**综合置信度**: {score.overall * 100:.1f}%",
            "",
            "## 分项置信度",
            "",
        ]
        for stage, value in score.breakdown.as_dict().items():
            lines.append(f"- {labels[stage]}: {value * 100:.1f}%")

        if score.ambiguities:
            lines.extend(["", "## 检测到的歧义", ""])
            lines.extend(f"{i}. {a}" for i, a in enumerate(score.ambiguities, start=1))

        lines.append("")
        if score.needs_confirmation:
            lines.append("⚠️ **建议**: 需要用户确认")
        else:
            lines.append("✅ **结论**: 可以直接执行")
        return "\n".join(lines) + "\n"

    @staticmethod
    def compare(before: ConfidenceScore, after: ConfidenceScore) -> tuple[bool, float, str]:
        delta = after.overall - before.overall
        if delta > 0:
            details = f"置信度提升了 {delta * 100:.1f}%"
        elif delta < 0:
            details = f"置信度下降了 {abs(delta) * 100:.1f}%"
        else:
            details = "置信度无变化"
        return delta > 0, delta, details


@dataclass(frozen=True)
class ConfidenceDecision:
    execute: bool
    ask_confirmation: bool
    show_warning: bool
    reason: str


@dataclass(frozen=True)
class ConfidenceThresholds:
    high: float = 0.85
    medium: float = 0.6
    low: float = 0.4


class ConfidenceThresholdManager:
    """Maps a single confidence value to an execute/confirm/warn decision."""

    MESSAGES = {
        "high": "",
        "medium": "⚠️ 提示：我对这个理解有一定把握，但不是完全确定。",
        "low": "❓ 我不太确定您的意思，请确认：",
        "very_low": "❌ 抱歉，我无法理解您的问题。",
    }

    def __init__(self, thresholds: ConfidenceThresholds | None = None):
        self.thresholds = thresholds or ConfidenceThresholds()

    def level(self, confidence: float) -> str:
        if confidence >= self.thresholds.high:
            return "high"
        if confidence >= self.thresholds.medium:
            return "medium"
        if confidence >= self.thresholds.low:
            return "low"
        return "very_low"

    def decide(self, confidence: float) -> ConfidenceDecision:
        level = self.level(confidence)
        if level == "high":
            return ConfidenceDecision(True, False, False, "高置信度，直接执行")
        if level == "medium":
            return ConfidenceDecision(True, False, True, "中等置信度，执行但提示用户")
        if level == "low":
            return ConfidenceDecision(False, True, False, "低置信度，需要用户确认")
        return ConfidenceDecision(False, False, False, "置信度过低，无法执行")

    def message(self, confidence: float) -> str:
        return self.MESSAGES[self.level(confidence)]


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))
