"""
Output Validator

Post-processes generated text before it reaches the user:

- Fabrication check: anything that looks like a specific entity name but is
  neither in the caller's known-entity list nor a generic category word is
  replaced with a placeholder.
- Citation check: recommendations without a case citation get a disclosure
  appended when reference cases existed for the turn.
"""

import re
from dataclasses import dataclass, field

import structlog

from merchant_copilot.core.interfaces.collaborators import KnownEntities

PLACEHOLDER = "[商户示例]"

NAME_SUFFIXES = ("商行", "店", "餐厅", "超市", "咖啡", "火锅", "珠宝", "服饰", "影院")

# Function words and demonstratives never belong to a name; they end a run.
_BREAK_CHARS = "的了在是和与及或去到看把对给比如像请让从向将被为这那该此本各每有个家们也都还就开进入出回离喝吃买卖"

_NAME_CHAR = rf"(?:(?![{_BREAK_CHARS}])[一-龥])"

SUFFIXED_NAME = re.compile(rf"{_NAME_CHAR}{{1,6}}(?:{'|'.join(NAME_SUFFIXES)})")
QUOTED_NAME = re.compile(r"[「『【]([^」』】\s]{2,12})[」』】]")

GENERIC_TERMS = frozenset(
    {
        "商户", "店铺", "门店", "餐厅", "超市", "商行", "商场", "商店", "小店", "分店",
        "总店", "网店", "饭店", "实体店", "便利店", "火锅店", "咖啡店", "快餐店", "服装店",
        "珠宝店", "影院", "电影院", "火锅", "咖啡", "珠宝", "服饰", "同类店", "同类门店",
        "连锁店", "旗舰店", "餐饮店", "零售店", "本店", "该店", "商户示例",
    }
)

SUGGESTION_KEYWORDS = ("建议", "可以尝试", "措施", "方案", "推荐")
CITATION_PATTERNS = (
    re.compile(r"案例ID[:：]\s*CASE_\w+"),
    re.compile(r"参考.*的经验"),
)
CASE_DISCLOSURE = "\n\n---\n💡 **说明**：以上建议基于系统匹配的类似案例，具体案例信息请咨询运营团队。"

DATA_SOURCE_PATTERNS = (
    re.compile(r"数据来源[:：](.+)"),
    re.compile(r"(?<!数据)来源[:：](.+)"),
    re.compile(r"基于(.+?)数据"),
)


@dataclass(frozen=True)
class AggregationValidation:
    valid: bool
    fabricated_names: list[str] = field(default_factory=list)
    sanitized_response: str = ""


@dataclass(frozen=True)
class CitationValidation:
    valid: bool
    warnings: list[str] = field(default_factory=list)
    enhanced_response: str = ""


class OutputValidator:
    """Pure validation functions over generated text; safe to share."""

    def __init__(self, placeholder: str = PLACEHOLDER, generic_terms: frozenset[str] = GENERIC_TERMS):
        self.placeholder = placeholder
        self.generic_terms = generic_terms
        self.logger = structlog.get_logger().bind(component="output_validator")

    def validate_aggregation_response(
        self, text: str, known_entities: KnownEntities
    ) -> AggregationValidation:
        known_names = sorted(
            {_entity_name(entity) for entity in known_entities if _entity_name(entity)},
            key=len,
            reverse=True,
        )

        # Mask known names first so that text around a real name is never
        # mistaken for part of an invented one.
        masked = text
        for index, name in enumerate(known_names):
            masked = masked.replace(name, _sentinel(index))

        fabricated: list[str] = []

        def _check(candidate: str) -> bool:
            if candidate in self.generic_terms or candidate == self.placeholder:
                return False
            if candidate not in fabricated:
                fabricated.append(candidate)
            return True

        def _replace_quoted(match: re.Match[str]) -> str:
            name = match.group(1)
            if _MASK_OPEN in name or not _check(name):
                return match.group(0)
            return match.group(0).replace(name, self.placeholder)

        def _replace_suffixed(match: re.Match[str]) -> str:
            return self.placeholder if _check(match.group(0)) else match.group(0)

        sanitized = QUOTED_NAME.sub(_replace_quoted, masked)
        sanitized = SUFFIXED_NAME.sub(_replace_suffixed, sanitized)

        for index, name in enumerate(known_names):
            sanitized = sanitized.replace(_sentinel(index), name)

        if fabricated:
            self.logger.warning("output.fabrication.detected", fabricated_names=fabricated)

        return AggregationValidation(
            valid=not fabricated,
            fabricated_names=fabricated,
            sanitized_response=sanitized,
        )

    def validate_case_citation(self, text: str, has_cases: bool) -> CitationValidation:
        has_suggestion = any(keyword in text for keyword in SUGGESTION_KEYWORDS)
        has_citation = any(pattern.search(text) for pattern in CITATION_PATTERNS)

        if has_suggestion and not has_citation and has_cases:
            return CitationValidation(
                valid=False,
                warnings=["建议措施未标注案例来源"],
                enhanced_response=text + CASE_DISCLOSURE,
            )
        return CitationValidation(valid=True, enhanced_response=text)

    @staticmethod
    def validate_data_source(text: str) -> list[str]:
        """Return the data sources the text declares, in pattern order."""
        sources: list[str] = []
        for pattern in DATA_SOURCE_PATTERNS:
            match = pattern.search(text)
            if match:
                sources.append(match.group(1).strip())
        return sources


# Private-use code points; never part of a name run.
_MASK_OPEN = "\ue000"
_MASK_CLOSE = "\ue001"


def _sentinel(index: int) -> str:
    return f"{_MASK_OPEN}{index}{_MASK_CLOSE}"


def _entity_name(entity: object) -> str:
    if isinstance(entity, str):
        return entity
    return str(getattr(entity, "name", "") or "")
