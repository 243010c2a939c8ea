"""
Catalog Entity Resolver

Resolves the subject entity of a query against the entity catalog:

1. Exact: a normalized entity name occurs in the query -> 1.0
2. Fuzzy: the name with its category suffix removed occurs in the query,
   or equals the query with its suffix removed -> 0.85
3. Partial: longest-common-substring overlap above 0.5 -> the overlap ratio
4. Context: the query refers to or omits the subject and the context has
   one -> 0.7
5. Otherwise no match (0.0)

Empty input falls back to the context subject at 0.8.
"""

import re
from typing import Optional

import structlog

from merchant_copilot.core.domain.models import ConversationContext, Entity, EntityResult
from merchant_copilot.core.interfaces.collaborators import EntityCatalogProtocol

EXACT_CONFIDENCE = 1.0
FUZZY_CONFIDENCE = 0.85
CONTEXT_CONFIDENCE = 0.7
EMPTY_INPUT_CONFIDENCE = 0.8
PARTIAL_THRESHOLD = 0.5

CATEGORY_SUFFIXES: tuple[str, ...] = (
    "火锅", "咖啡", "餐厅", "服装", "超市", "便利店", "书店", "影院", "健身房",
    "美容院", "理发店", "药店", "花店", "面包店", "甜品店", "奶茶店",
    "店", "馆", "坊", "阁", "轩", "居",
)

_NOISE = re.compile(r"[\s，。！？；：“”‘’（）【】《》]")


def normalize(text: str) -> str:
    return _NOISE.sub("", text.lower().strip())


def remove_suffixes(text: str, suffixes: tuple[str, ...] = CATEGORY_SUFFIXES) -> str:
    # Applied in table order, each at most once.
    for suffix in suffixes:
        if text.endswith(suffix):
            text = text[: -len(suffix)]
    return text


def longest_common_substring(a: str, b: str) -> str:
    best_length, best_end = 0, 0
    previous = [0] * (len(b) + 1)
    for i in range(1, len(a) + 1):
        current = [0] * (len(b) + 1)
        for j in range(1, len(b) + 1):
            if a[i - 1] == b[j - 1]:
                current[j] = previous[j - 1] + 1
                if current[j] > best_length:
                    best_length, best_end = current[j], i
        previous = current
    return a[best_end - best_length:best_end]


class CatalogEntityResolver:
    """Implements EntityResolverProtocol over an entity catalog."""

    def __init__(
        self,
        catalog: EntityCatalogProtocol,
        suffixes: tuple[str, ...] = CATEGORY_SUFFIXES,
    ):
        self.catalog = catalog
        self.suffixes = suffixes
        self.logger = structlog.get_logger().bind(component="entity_resolver")

    async def resolve_entity(
        self, normalized_query: str, context: ConversationContext
    ) -> EntityResult:
        result = self.resolve(normalized_query, context)
        self.logger.debug(
            "entity.resolved",
            matched=result.matched,
            entity=result.entity_name,
            confidence=result.confidence,
            from_context=result.from_context,
        )
        return result

    def resolve(self, query: str, context: ConversationContext) -> EntityResult:
        subject = self._context_subject(context)

        if not query or not query.strip():
            if subject is not None:
                return _result(subject, EMPTY_INPUT_CONFIDENCE, from_context=True)
            return EntityResult(confidence=0.0)

        text = normalize(query)
        entities = self.catalog.lookup_entity_catalog()

        for entity in entities:
            name = normalize(entity.name)
            if name and name in text:
                return _result(entity, EXACT_CONFIDENCE)

        fuzzy = self._fuzzy_match(text, entities)
        if fuzzy is not None:
            return _result(fuzzy, FUZZY_CONFIDENCE)

        partial = self._partial_match(text, entities)
        if partial is not None:
            return partial

        if subject is not None:
            # Nothing named; the query refers to or omits the active subject.
            return _result(subject, CONTEXT_CONFIDENCE, from_context=True)

        return EntityResult(confidence=0.0)

    def _fuzzy_match(self, text: str, entities: list[Entity]) -> Optional[Entity]:
        text_core = remove_suffixes(text, self.suffixes)
        for entity in entities:
            core = remove_suffixes(normalize(entity.name), self.suffixes)
            if len(core) >= 2 and (core in text or core == text_core):
                return entity
        return None

    def _partial_match(self, text: str, entities: list[Entity]) -> Optional[EntityResult]:
        best: tuple[float, Entity] | None = None
        for entity in entities:
            name = normalize(entity.name)
            if not name:
                continue
            if text in name:
                score = len(text) / len(name)
            else:
                overlap = longest_common_substring(text, name)
                score = len(overlap) / max(len(text), len(name)) if len(overlap) >= 2 else 0.0
            if score > PARTIAL_THRESHOLD and (best is None or score > best[0]):
                best = (score, entity)

        if best is None:
            return None
        score, entity = best
        return _result(entity, min(score, 1.0))

    def _context_subject(self, context: ConversationContext) -> Optional[Entity]:
        if context.entity_id:
            entity = self.catalog.get_entity(context.entity_id)
            if entity is not None:
                return entity
        if context.entity_name:
            return next(
                (e for e in self.catalog.lookup_entity_catalog() if e.name == context.entity_name),
                None,
            )
        return None


def _result(entity: Entity, confidence: float, from_context: bool = False) -> EntityResult:
    return EntityResult(
        confidence=confidence,
        matched=True,
        entity_id=entity.id,
        entity_name=entity.name,
        from_context=from_context,
    )
