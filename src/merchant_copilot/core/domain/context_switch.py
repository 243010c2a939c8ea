"""
Context Switch Detector

Decides whether the active subject entity should change, independently of
the main classification pipeline. Rules, in order:

1. Input names a catalog entity other than the current subject -> switch (0.95)
2. Input uses switch vocabulary ("换", "另一个", ...) -> switch (0.8)
3. Input uses comparison vocabulary ("对比", "和", ...) -> do not switch (0.9);
   comparing implies focus on several entities, not a replacement
4. Otherwise -> do not switch (1.0)
"""

import re
from dataclasses import dataclass

import structlog

from merchant_copilot.core.domain.models import ContextSwitchDecision, ConversationContext, Entity
from merchant_copilot.core.interfaces.collaborators import EntityCatalogProtocol


@dataclass(frozen=True)
class SwitchRule:
    name: str
    keywords: tuple[str, ...]
    should_switch: bool
    confidence: float
    reason: str

    def matches(self, text: str) -> bool:
        return any(keyword in text for keyword in self.keywords)


VOCABULARY_RULES: tuple[SwitchRule, ...] = (
    SwitchRule(
        name="switch_vocabulary",
        keywords=("换", "其他", "另一个", "别的", "换个", "看看别的"),
        should_switch=True,
        confidence=0.8,
        reason="用户使用了切换关键词",
    ),
    SwitchRule(
        name="comparison_vocabulary",
        keywords=("对比", "比较", "vs", "versus", "和", "跟"),
        should_switch=False,
        confidence=0.9,
        reason="用户想进行对比，不是切换上下文",
    ),
)

ENTITY_MENTION_CONFIDENCE = 0.95

NAME_SUFFIXES: tuple[str, ...] = ("火锅", "咖啡", "餐厅", "店", "馆")

_NOISE = re.compile(r"[\s，。！？；：“”‘’\"'（）【】《》,.!?;:()\[\]]+")


def normalize_text(text: str) -> str:
    """Lowercase, trim, and drop whitespace and punctuation."""
    return _NOISE.sub("", text.lower().strip())


def strip_suffixes(name: str, suffixes: tuple[str, ...] = NAME_SUFFIXES) -> str:
    for suffix in suffixes:
        if name.endswith(suffix):
            name = name[: -len(suffix)]
    return name


class ContextSwitchDetector:
    """Evaluates entity mentions and the vocabulary rule table."""

    def __init__(
        self,
        catalog: EntityCatalogProtocol,
        rules: tuple[SwitchRule, ...] = VOCABULARY_RULES,
        suffixes: tuple[str, ...] = NAME_SUFFIXES,
    ):
        self.catalog = catalog
        self.rules = rules
        self.suffixes = suffixes
        self.logger = structlog.get_logger().bind(component="context_switch_detector")

    def detect_switch(
        self, user_input: str, current_context: ConversationContext | None = None
    ) -> ContextSwitchDecision:
        current_name = current_context.entity_name if current_context else None

        mentioned = self.find_mentioned_entity(user_input)
        if mentioned is not None and mentioned.name != current_name:
            self.logger.info(
                "context.switch.detected",
                from_entity=current_name,
                to_entity=mentioned.name,
            )
            return ContextSwitchDecision(
                should_switch=True,
                confidence=ENTITY_MENTION_CONFIDENCE,
                reason=f'用户明确提到了新商户"{mentioned.name}"',
                new_entity_id=mentioned.id,
                new_entity_name=mentioned.name,
            )

        lowered = user_input.lower()
        for rule in self.rules:
            if rule.matches(lowered):
                return ContextSwitchDecision(
                    should_switch=rule.should_switch,
                    confidence=rule.confidence,
                    reason=rule.reason,
                )

        return ContextSwitchDecision(should_switch=False, confidence=1.0, reason="无切换意图")

    def find_mentioned_entity(self, user_input: str) -> Entity | None:
        """Exact name containment first, then suffix-stripped containment."""
        normalized = normalize_text(user_input)
        entities = self.catalog.lookup_entity_catalog()

        for entity in entities:
            name = normalize_text(entity.name)
            if name and name in normalized:
                return entity

        for entity in entities:
            core = strip_suffixes(normalize_text(entity.name), self.suffixes)
            if len(core) >= 2 and core in normalized:
                return entity

        return None
