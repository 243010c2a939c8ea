"""
Query Analyzer

Tells single-subject questions apart from the two catalog-wide query shapes:

- aggregation: counts and statistics over the whole catalog
  ("高风险商户有几个", "按业态统计商户数量", "商户平均健康度")
- comparison: two named entities side by side ("对比海底捞火锅和星巴克咖啡"),
  or one entity against its category peers ("海底捞火锅和同类商户比怎么样")

Everything else is a single-subject query and is left to the intent
classifier. Analysis runs on the rewritten query, so pronouns have already
been replaced by the active subject's name.
"""

import structlog

from merchant_copilot.core.domain.context_switch import NAME_SUFFIXES, normalize_text, strip_suffixes
from merchant_copilot.core.domain.models import Entity, IntentResult, QueryAnalysis, QueryType
from merchant_copilot.core.interfaces.collaborators import EntityCatalogProtocol

AGGREGATION_INTENT = "aggregation_query"
COMPARISON_INTENT = "comparison_query"
ANALYSIS_CONFIDENCE = 0.85

AGGREGATION_KEYWORDS: tuple[str, ...] = (
    "多少", "几个", "几家", "数量", "统计", "总共", "有哪些", "哪些", "平均", "最高", "最低", "分布",
)
# An aggregation keyword alone ("有哪些方案") is not enough; the query must
# also be about the merchant population or carry a filter or breakdown.
POPULATION_TERMS: tuple[str, ...] = ("商户", "商家", "门店", "店铺", "几家", "哪家")

COMPARISON_KEYWORDS: tuple[str, ...] = ("对比", "比较", "vs", "versus", "相比", "和", "跟")
PEER_TERMS: tuple[str, ...] = ("同类", "同业态")
PEER_COMPARISON_KEYWORDS: tuple[str, ...] = ("对比", "比较", "相比", "比")

RISK_FILTERS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("高风险", "风险高", "风险较高"), "high"),
    (("中风险", "中等风险"), "medium"),
    (("低风险", "风险低", "风险较低"), "low"),
    (("无风险", "没有风险"), "none"),
)

CATEGORY_FILTERS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("餐饮",), "餐饮"),
    (("零售",), "零售"),
    (("娱乐",), "娱乐"),
    (("火锅",), "火锅"),
    (("咖啡",), "咖啡"),
    (("服装", "服饰"), "服装"),
    (("超市",), "超市"),
    (("珠宝",), "珠宝"),
    (("影院", "电影"), "影院"),
)

GROUP_BY_TERMS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("按风险", "分风险", "风险分布", "各风险"), "risk_level"),
    (("按业态", "分业态", "业态分布", "各业态", "按类别"), "category"),
    (("按楼层", "分楼层", "楼层分布", "各楼层"), "floor"),
)

OPERATION_TERMS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("平均",), "avg"),
    (("最高", "最好"), "max"),
    (("最低", "最差"), "min"),
    (("总和", "合计", "总计"), "sum"),
)

# "抗风险" before anything mentioning "风险" alone
METRIC_TERMS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("租售比",), "rent_to_sales_ratio"),
    (("抗风险",), "risk_resistance"),
    (("收缴",), "collection"),
    (("经营",), "operational"),
    (("品质",), "site_quality"),
    (("评价", "口碑"), "customer_review"),
    (("健康度", "评分", "得分", "分数"), "total_score"),
)

DEFAULT_METRIC = "total_score"


class QueryAnalyzer:
    """
    Rule-based structural analysis of a normalized query.

    Args:
        catalog: Entity catalog used to find the entities a query names
        suffixes: Name suffixes stripped for the loose name match
    """

    def __init__(self, catalog: EntityCatalogProtocol, suffixes: tuple[str, ...] = NAME_SUFFIXES):
        self.catalog = catalog
        self.suffixes = suffixes
        self.logger = structlog.get_logger().bind(component="query_analyzer")

    def analyze(self, normalized_query: str) -> QueryAnalysis:
        text = normalize_text(normalized_query)
        mentioned = self.mentioned_entities(text)
        entity_ids = tuple(entity.id for entity in mentioned)

        analysis = self._comparison(text, entity_ids) or self._aggregation(text, entity_ids)
        if analysis is None:
            return QueryAnalysis(entity_ids=entity_ids)

        self.logger.debug(
            "query.analyzed",
            query_type=analysis.query_type.value,
            entities=list(analysis.entity_ids),
            keywords=list(analysis.keywords),
        )
        return analysis

    def mentioned_entities(self, text: str) -> list[Entity]:
        """Catalog entities found in normalized text, ordered by position."""
        found: list[tuple[int, Entity]] = []
        for entity in self.catalog.lookup_entity_catalog():
            name = normalize_text(entity.name)
            position = text.find(name) if name else -1
            if position < 0:
                core = strip_suffixes(name, self.suffixes)
                position = text.find(core) if len(core) >= 2 else -1
            if position >= 0:
                found.append((position, entity))
        found.sort(key=lambda item: item[0])
        return [entity for _, entity in found]

    def _comparison(self, text: str, entity_ids: tuple[str, ...]) -> QueryAnalysis | None:
        peers = _matched(text, PEER_TERMS)
        if peers:
            verbs = _matched(text, PEER_COMPARISON_KEYWORDS)
            if verbs:
                return QueryAnalysis(
                    query_type=QueryType.COMPARISON,
                    entity_ids=entity_ids[:1],
                    baseline="same_category",
                    keywords=tuple(peers + verbs),
                )

        if len(entity_ids) >= 2:
            verbs = _matched(text, COMPARISON_KEYWORDS)
            if verbs:
                return QueryAnalysis(
                    query_type=QueryType.COMPARISON,
                    entity_ids=entity_ids[:2],
                    baseline="entity",
                    keywords=tuple(verbs),
                )
        return None

    def _aggregation(self, text: str, entity_ids: tuple[str, ...]) -> QueryAnalysis | None:
        if entity_ids:
            return None
        keywords = _matched(text, AGGREGATION_KEYWORDS)
        if not keywords:
            return None

        risk_levels = _table_values(text, RISK_FILTERS)
        categories = _table_values(text, CATEGORY_FILTERS)
        group_by = next(iter(_table_values(text, GROUP_BY_TERMS)), None)
        if not (risk_levels or categories or group_by or _matched(text, POPULATION_TERMS)):
            return None

        operation = next(iter(_table_values(text, OPERATION_TERMS)), "count")
        metric = None
        if operation != "count":
            metric = next(iter(_table_values(text, METRIC_TERMS)), DEFAULT_METRIC)

        return QueryAnalysis(
            query_type=QueryType.AGGREGATION,
            operation=operation,
            metric=metric,
            risk_levels=risk_levels,
            categories=categories,
            group_by=group_by,
            keywords=tuple(keywords),
        )

    @staticmethod
    def intent_for(analysis: QueryAnalysis) -> IntentResult | None:
        """The intent a structural analysis implies, None for single queries."""
        if analysis.query_type is QueryType.AGGREGATION:
            return IntentResult(AGGREGATION_INTENT, ANALYSIS_CONFIDENCE, analysis.keywords)
        if analysis.query_type is QueryType.COMPARISON:
            return IntentResult(COMPARISON_INTENT, ANALYSIS_CONFIDENCE, analysis.keywords)
        return None


def _matched(text: str, keywords: tuple[str, ...]) -> list[str]:
    return [keyword for keyword in keywords if keyword in text]


def _table_values(text: str, table: tuple[tuple[tuple[str, ...], str], ...]) -> tuple[str, ...]:
    values: list[str] = []
    for terms, value in table:
        if value not in values and any(term in text for term in terms):
            values.append(value)
    return tuple(values)
