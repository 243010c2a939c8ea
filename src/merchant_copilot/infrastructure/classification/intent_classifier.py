"""
Keyword Intent Classifier

Rule-based classifier: each intent pattern carries weighted keywords and a
priority. A pattern's score is the sum of the weights of the keywords found
in the query multiplied by its priority; the best-scoring pattern wins.

Confidence is the winning score relative to half the maximum achievable
score of any pattern, capped at 1.0. No match, or a winning score below 5,
yields `general_chat` at 0.3.
"""

from dataclasses import dataclass

import structlog

from merchant_copilot.core.domain.models import IntentResult

FALLBACK_INTENT = "general_chat"
FALLBACK_CONFIDENCE = 0.3
MIN_SCORE = 5


@dataclass(frozen=True)
class IntentPattern:
    intent: str
    priority: int
    keywords: tuple[tuple[str, int], ...]

    @property
    def max_score(self) -> int:
        return sum(weight for _, weight in self.keywords) * self.priority

    def score(self, text: str) -> tuple[int, list[str]]:
        matched = [keyword for keyword, _ in self.keywords if keyword in text]
        raw = sum(weight for keyword, weight in self.keywords if keyword in text)
        return raw * self.priority, matched


INTENT_PATTERNS: tuple[IntentPattern, ...] = (
    IntentPattern(
        intent="health_query",
        priority=2,
        keywords=(
            ("怎么样", 10), ("健康", 10), ("评分", 10), ("状况", 8), ("情况", 8),
            ("表现", 8), ("最近", 5), ("现在", 5), ("当前", 5), ("分数", 8), ("得分", 8),
        ),
    ),
    IntentPattern(
        intent="risk_diagnosis",
        priority=3,
        keywords=(
            ("风险", 15), ("问题", 12), ("诊断", 15), ("检测", 10), ("分析", 10),
            ("隐患", 12), ("异常", 10), ("预警", 12), ("危机", 12),
        ),
    ),
    IntentPattern(
        intent="solution_recommend",
        priority=3,
        keywords=(
            ("方案", 15), ("建议", 15), ("措施", 15), ("推荐", 12), ("怎么办", 12),
            ("如何", 10), ("帮扶", 12), ("改善", 10), ("提升", 10), ("解决", 10), ("策略", 10),
        ),
    ),
    IntentPattern(
        intent="data_query",
        priority=1,
        keywords=(
            ("营收", 10), ("收入", 10), ("销售", 10), ("客流", 10), ("满意度", 10),
            ("租金", 10), ("成本", 10), ("数据", 8), ("指标", 8), ("多少", 8),
        ),
    ),
)


class KeywordIntentClassifier:
    """Implements IntentClassifierProtocol with weighted keyword patterns."""

    def __init__(self, patterns: tuple[IntentPattern, ...] = INTENT_PATTERNS):
        self.patterns = patterns
        self.max_possible_score = max((p.max_score for p in patterns), default=0)
        self.logger = structlog.get_logger().bind(component="intent_classifier")

    async def classify_intent(self, normalized_query: str) -> IntentResult:
        return self.classify(normalized_query)

    def classify(self, query: str) -> IntentResult:
        text = query.lower().strip()
        best: tuple[int, str, list[str]] | None = None
        for pattern in self.patterns:
            score, matched = pattern.score(text)
            if score > 0 and (best is None or score > best[0]):
                best = (score, pattern.intent, matched)

        if best is None or best[0] < MIN_SCORE or self.max_possible_score <= 0:
            return IntentResult(intent=FALLBACK_INTENT, confidence=FALLBACK_CONFIDENCE)

        score, intent, matched = best
        confidence = min(score / (self.max_possible_score * 0.5), 1.0)
        self.logger.debug("intent.classified", intent=intent, score=score, confidence=confidence)
        return IntentResult(intent=intent, confidence=confidence, keywords=tuple(matched))

    def suggest_intents(self, query: str, limit: int = 3) -> list[tuple[str, int]]:
        """Every intent with a non-zero raw score, best first."""
        text = query.lower().strip()
        scored = []
        for pattern in self.patterns:
            score, _ = pattern.score(text)
            if score > 0:
                scored.append((pattern.intent, score // pattern.priority))
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:limit]
