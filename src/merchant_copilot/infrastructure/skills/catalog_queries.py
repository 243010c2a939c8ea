"""
Catalog Query Skills

Catalog-wide skills that do not act on a single subject:

- `CatalogAggregator`: count / sum / avg / max / min over the catalog,
  after risk-level and category filters, optionally broken down by
  risk level, category or floor
- `CatalogComparator`: one entity against another, or against the average
  of its category peers, with a numeric delta and short insights

Both read the same recorded metrics as the built-in skills; an entity
without metrics has risk level "unknown" and is left out of numeric
aggregates.
"""

from typing import Any, Mapping, Optional

import structlog

from merchant_copilot.core.domain.models import Entity, SkillResult
from merchant_copilot.core.interfaces.collaborators import EntityCatalogProtocol
from merchant_copilot.infrastructure.skills.builtin import (
    DIMENSIONS,
    RISK_LABELS,
    health_total,
    read_metrics,
    risk_level,
)

OPERATIONS = ("count", "sum", "avg", "max", "min")
GROUP_KEYS = ("risk_level", "category", "floor")
NUMERIC_FIELDS = ("total_score", "rent_to_sales_ratio") + tuple(name for name, _ in DIMENSIONS)

PEER_GAP = 10


def summarize(entity: Entity) -> dict[str, Any]:
    """Flat view of an entity used for filtering, grouping and listing."""
    summary: dict[str, Any] = {
        "id": entity.id,
        "name": entity.name,
        "category": entity.category,
        "floor": str(entity.attributes.get("floor") or "unknown"),
        "total_score": None,
        "risk_level": "unknown",
    }
    try:
        metrics = read_metrics(entity)
    except ValueError:
        return summary

    total = health_total(metrics)
    summary.update(metrics)
    summary["total_score"] = total
    summary["risk_level"] = risk_level(total)
    ratio = entity.attributes.get("rent_to_sales_ratio")
    if ratio is not None:
        summary["rent_to_sales_ratio"] = float(ratio)
    return summary


def reduce_values(operation: str, values: list[float]) -> Optional[float]:
    if operation == "count":
        return len(values)
    if operation == "sum":
        return round(sum(values), 4)
    if not values:
        return None
    if operation == "avg":
        return round(sum(values) / len(values), 2)
    if operation == "max":
        return max(values)
    return min(values)


class CatalogAggregator:
    """
    Aggregates over every catalog entity matching the filters.

    Params:
        operation: count (default), sum, avg, max or min
        metric: Numeric field for every operation except count
        risk_levels: Keep entities with one of these risk levels
        categories: Keep entities whose category contains every term
        group_by: risk_level, category or floor
    """

    def __init__(self, catalog: EntityCatalogProtocol):
        self.catalog = catalog
        self.logger = structlog.get_logger().bind(component="catalog_aggregator")

    def __call__(
        self,
        subject: Optional[Entity],
        params: Mapping[str, Any],
        prior_results: Mapping[str, SkillResult],
    ) -> dict[str, Any]:
        operation = params.get("operation") or "count"
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown aggregation operation: {operation}")
        metric = params.get("metric")
        if operation != "count" and metric not in NUMERIC_FIELDS:
            raise ValueError(f"Operation {operation} requires a numeric field, got {metric}")
        group_by = params.get("group_by")
        if group_by and group_by not in GROUP_KEYS:
            raise ValueError(f"Unknown group key: {group_by}")

        risk_levels = list(params.get("risk_levels") or [])
        categories = list(params.get("categories") or [])

        selected = [
            summary
            for summary in map(summarize, self.catalog.lookup_entity_catalog())
            if (not risk_levels or summary["risk_level"] in risk_levels)
            and all(term in summary["category"] for term in categories)
        ]

        breakdown: Optional[dict[str, Optional[float]]] = None
        if group_by:
            groups: dict[str, list[dict[str, Any]]] = {}
            for summary in selected:
                groups.setdefault(summary[group_by], []).append(summary)
            breakdown = {
                key: reduce_values(operation, self._values(members, operation, metric))
                for key, members in groups.items()
            }

        total = reduce_values(operation, self._values(selected, operation, metric))
        self.logger.debug(
            "catalog.aggregated",
            operation=operation,
            metric=metric,
            matched=len(selected),
            group_by=group_by,
        )
        return {
            "operation": operation,
            "metric": metric,
            "total": total,
            "breakdown": breakdown,
            "group_by": group_by,
            "filters": {"risk_levels": risk_levels, "categories": categories},
            "entities": [
                {
                    "id": s["id"],
                    "name": s["name"],
                    "category": s["category"],
                    "risk_level": s["risk_level"],
                    "total_score": s["total_score"],
                }
                for s in selected
            ],
        }

    @staticmethod
    def _values(members: list[dict[str, Any]], operation: str, metric: Optional[str]) -> list[float]:
        if operation == "count":
            return [1.0] * len(members)
        return [float(m[metric]) for m in members if m.get(metric) is not None]


class CatalogComparator:
    """
    Compares entities by their recorded metrics.

    Params:
        entity_ids: Two ids for baseline "entity", one id for "same_category"
        baseline: "entity" (default) or "same_category"

    Category peers share the major category (the part before "-"), so a
    hotpot restaurant is compared with the other 餐饮 merchants.
    """

    def __init__(self, catalog: EntityCatalogProtocol):
        self.catalog = catalog
        self.logger = structlog.get_logger().bind(component="catalog_comparator")

    def __call__(
        self,
        subject: Optional[Entity],
        params: Mapping[str, Any],
        prior_results: Mapping[str, SkillResult],
    ) -> dict[str, Any]:
        entity_ids = list(params.get("entity_ids") or [])
        baseline = params.get("baseline") or "entity"

        if baseline == "entity":
            if len(entity_ids) < 2:
                raise ValueError("需要两个商户进行对比")
            return self.compare_entities(self._get(entity_ids[0]), self._get(entity_ids[1]))
        if baseline == "same_category":
            if not entity_ids:
                raise ValueError("缺少对比的商户")
            return self.compare_with_peers(self._get(entity_ids[0]))
        raise ValueError(f"Unknown comparison baseline: {baseline}")

    def compare_entities(self, first: Entity, second: Entity) -> dict[str, Any]:
        current, reference = comparison_data(first), comparison_data(second)
        insights: list[str] = []

        if current["total_score"] > reference["total_score"]:
            insights.append(
                f"{first.name}健康度更优（{current['total_score']} vs {reference['total_score']}）"
            )
        elif current["total_score"] < reference["total_score"]:
            insights.append(
                f"{second.name}健康度更优（{reference['total_score']} vs {current['total_score']}）"
            )
        else:
            insights.append("两家商户健康度相当")

        if current["risk_level"] != reference["risk_level"]:
            insights.append(
                f"风险等级不同：{first.name}为{RISK_LABELS[current['risk_level']]}，"
                f"{second.name}为{RISK_LABELS[reference['risk_level']]}"
            )
        if first.category != second.category:
            insights.append(f"业态不同：{first.category} vs {second.category}")

        self.logger.debug("catalog.compared", current=first.id, reference=second.id)
        return {
            "baseline": "entity",
            "current": {"entity_id": first.id, "entity_name": first.name, "data": current},
            "reference": {
                "entity_id": second.id,
                "entity_name": second.name,
                "label": second.name,
                "data": reference,
            },
            "delta": delta(current, reference),
            "insights": insights,
        }

    def compare_with_peers(self, entity: Entity) -> dict[str, Any]:
        current = comparison_data(entity)
        major = major_category(entity.category)

        peers = []
        for candidate in self.catalog.lookup_entity_catalog():
            if candidate.id == entity.id or major_category(candidate.category) != major:
                continue
            try:
                peers.append(comparison_data(candidate))
            except ValueError:
                continue
        if not peers:
            raise ValueError(f"没有可对比的同类商户：{major or entity.name}")

        reference = {
            key: round(sum(peer[key] for peer in peers) / len(peers), 1)
            for key in NUMERIC_FIELDS
            if all(key in peer for peer in peers)
        }
        gap = round(current["total_score"] - reference["total_score"], 1)
        if gap > PEER_GAP:
            insights = [f"健康度高于同类平均{gap:g}分"]
        elif gap < -PEER_GAP:
            insights = [f"健康度低于同类平均{abs(gap):g}分"]
        else:
            insights = ["健康度接近同类平均水平"]
        insights.append(f"对比了{len(peers)}家同类商户")

        self.logger.debug("catalog.compared", current=entity.id, peers=len(peers))
        return {
            "baseline": "same_category",
            "current": {"entity_id": entity.id, "entity_name": entity.name, "data": current},
            "reference": {
                "label": f"{major}商户平均（{len(peers)}家）",
                "data": reference,
            },
            "delta": delta(current, reference),
            "insights": insights,
        }

    def _get(self, entity_id: str) -> Entity:
        entity = self.catalog.get_entity(entity_id)
        if entity is None:
            raise ValueError(f"商户不存在: {entity_id}")
        return entity


def comparison_data(entity: Entity) -> dict[str, Any]:
    """Numeric profile of an entity; raises ValueError without metrics."""
    metrics = read_metrics(entity)
    total = health_total(metrics)
    data: dict[str, Any] = {"total_score": total, "risk_level": risk_level(total), **metrics}
    ratio = entity.attributes.get("rent_to_sales_ratio")
    if ratio is not None:
        data["rent_to_sales_ratio"] = float(ratio)
    return data


def delta(current: Mapping[str, Any], reference: Mapping[str, Any]) -> dict[str, float]:
    return {
        key: round(current[key] - reference[key], 4)
        for key in NUMERIC_FIELDS
        if key in current and key in reference
    }


def major_category(category: str) -> str:
    return category.split("-")[0]
