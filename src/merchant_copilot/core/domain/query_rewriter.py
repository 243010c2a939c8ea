"""
Query Rewriter

Turns a raw utterance into a canonical query in four fixed stages, each
operating on the output of the previous one:

1. Coreference resolution: pronouns and demonstratives -> active subject name
2. Ellipsis completion: subject-less question openers get the subject prepended
3. Vocabulary expansion: generic nouns -> domain nouns (only if no specific term is present)
4. Normalization: trailing filler particles stripped, whitespace collapsed

Every edit is recorded as a RewriteOperation. The rewriter is a pure function
of (input, context): no I/O, and the context is never mutated.
"""

import re
from typing import Callable

import structlog

from merchant_copilot.core.domain.models import (
    ConversationContext,
    RewriteKind,
    RewriteOperation,
    RewriteResult,
)

# Multi-character forms first so "这家" is not consumed as two edits.
REFERRING_EXPRESSIONS: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (form, re.compile(pattern))
    for form, pattern in (
        ("这一家", "这一家"),
        ("这个", "这个"),
        ("那个", "那个"),
        ("这家", "这家"),
        ("那家", "那家"),
        ("它", "它"),
        ("他", "(?<!其)他"),
        ("她", "她"),
        ("该", "(?<!应)该"),
    )
)

ELLIPSIS_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^(有)?什么(问题|风险|情况)"),
    re.compile(r"^(怎么|如何)(样|办)"),
    re.compile(r"^(表现|经营|运营)(怎么样|如何)"),
    re.compile(r"^(能|可以)(不能|吗)"),
)

# generic term -> more specific terms; the first one is the replacement
DOMAIN_EXPANSIONS: dict[str, tuple[str, ...]] = {
    "情况": ("健康度", "状况"),
    "表现": ("经营状况", "业绩"),
    "办": ("改善", "解决"),
}

FILLER_PARTICLES: tuple[str, ...] = ("的", "了", "吗", "呢", "啊", "吧", "呀")

_WHITESPACE = re.compile(r"\s+")

DEFAULT_CONFIDENCE_FLOOR = 0.5


class QueryRewriter:
    """
    Rewrites raw user input against the conversation context.

    Confidence starts at 1.0. Normalization is free, any expansion costs a
    flat 0.05, coreference/ellipsis cost 0.1 when a real substitution happened
    and 0.3 otherwise. More than five operations cost 0.05 per extra
    operation (at most 0.2). The result is clamped to [confidence_floor, 1.0].

    The default floor of 0.5 treats partial understanding as actionable so
    that rewriting alone never pushes a turn into a confirmation prompt.
    """

    def __init__(self, confidence_floor: float = DEFAULT_CONFIDENCE_FLOOR):
        if not 0.0 <= confidence_floor <= 1.0:
            raise ValueError("confidence_floor must be within [0, 1]")
        self.confidence_floor = confidence_floor
        self.logger = structlog.get_logger().bind(component="query_rewriter")

    def rewrite(self, user_input: str, context: ConversationContext) -> RewriteResult:
        operations: list[RewriteOperation] = []
        text = user_input

        stages: tuple[Callable[[str, ConversationContext], tuple[str, list[RewriteOperation]]], ...] = (
            self._resolve_coreference,
            self._complete_ellipsis,
            self._expand_vocabulary,
            self._normalize,
        )
        for stage in stages:
            text, stage_ops = stage(text, context)
            operations.extend(stage_ops)

        confidence = self.calculate_confidence(operations)

        self.logger.debug(
            "query.rewritten",
            original=user_input,
            normalized=text,
            operations=len(operations),
            confidence=confidence,
        )

        return RewriteResult(
            original=user_input,
            normalized=text,
            operations=tuple(operations),
            confidence=confidence,
        )

    def _resolve_coreference(
        self, text: str, context: ConversationContext
    ) -> tuple[str, list[RewriteOperation]]:
        subject = context.entity_name or ""
        if not subject:
            return text, []

        # Occurrences of the subject name itself are never rewritten, which
        # keeps the stage a fixed point when the name contains a pronoun.
        segments = text.split(subject)
        operations: list[RewriteOperation] = []
        for form, pattern in REFERRING_EXPRESSIONS:
            replaced_any = False
            for index, segment in enumerate(segments):
                new_segment, count = pattern.subn(subject, segment)
                if count:
                    segments[index] = new_segment
                    replaced_any = True
            if replaced_any:
                operations.append(RewriteOperation(RewriteKind.COREFERENCE, form, subject))

        return subject.join(segments), operations

    def _complete_ellipsis(
        self, text: str, context: ConversationContext
    ) -> tuple[str, list[RewriteOperation]]:
        subject = context.entity_name or ""
        if not subject:
            return text, []

        # Leading whitespace is left for the normalization stage to drop.
        body = text.lstrip()
        lead = text[: len(text) - len(body)]
        for pattern in ELLIPSIS_PATTERNS:
            match = pattern.match(body)
            if match:
                completed = f"{subject}{match.group(0)}"
                return (
                    lead + completed + body[match.end():],
                    [RewriteOperation(RewriteKind.ELLIPSIS, match.group(0), completed)],
                )
        return text, []

    def _expand_vocabulary(
        self, text: str, context: ConversationContext
    ) -> tuple[str, list[RewriteOperation]]:
        operations: list[RewriteOperation] = []
        result = text
        for term, expansions in DOMAIN_EXPANSIONS.items():
            if term in text and not any(exp in text for exp in expansions):
                result = result.replace(term, expansions[0], 1)
                operations.append(RewriteOperation(RewriteKind.EXPANSION, term, expansions[0]))
        return result, operations

    def _normalize(
        self, text: str, context: ConversationContext
    ) -> tuple[str, list[RewriteOperation]]:
        operations: list[RewriteOperation] = []
        result = text

        stripped = True
        while stripped:
            stripped = False
            for particle in FILLER_PARTICLES:
                trimmed = result.rstrip()
                if trimmed.endswith(particle) and len(trimmed) > len(particle):
                    result = trimmed[: -len(particle)]
                    operations.append(RewriteOperation(RewriteKind.NORMALIZATION, particle, ""))
                    stripped = True

        cleaned = _WHITESPACE.sub(" ", result).strip()
        if cleaned != result:
            operations.append(RewriteOperation(RewriteKind.NORMALIZATION, result, cleaned))
        return cleaned, operations

    def calculate_confidence(self, operations: list[RewriteOperation]) -> float:
        confidence = 1.0

        if any(op.kind is RewriteKind.EXPANSION for op in operations):
            confidence -= 0.05

        contextual = [
            op for op in operations if op.kind in (RewriteKind.COREFERENCE, RewriteKind.ELLIPSIS)
        ]
        if contextual:
            substituted = any(op.to_text and op.to_text != op.from_text for op in contextual)
            confidence -= 0.1 if substituted else 0.3

        if len(operations) > 5:
            confidence -= min((len(operations) - 5) * 0.05, 0.2)

        return max(self.confidence_floor, min(1.0, confidence))
