"""
Built-in Skills

Read-only skills dispatched by the SkillExecutor. Each one is a callable
`(subject, params, prior_results) -> data` over the subject entity's
recorded attributes:

    metrics:
      collection: 0-100        rent collection health
      operational: 0-100       operating performance
      site_quality: 0-100      on-site quality
      customer_review: 0-100   customer reviews
      risk_resistance: 0-100   resilience
    rent_to_sales_ratio: 0-1

Scores are never written back; a subject without metrics fails the task.
"""

from typing import Any, Callable, Mapping, Optional

from merchant_copilot.core.domain.models import Entity, SkillResult
from merchant_copilot.core.domain.task_planner import (
    AGGREGATE,
    ANALYZE_HEALTH,
    COMPARE,
    DETECT_RISKS,
    DIAGNOSE,
    GENERATE_SOLUTION,
    MATCH_CASES,
)
from merchant_copilot.core.interfaces.collaborators import EntityCatalogProtocol
from merchant_copilot.infrastructure.catalog.yaml_catalog import Case, CaseLibrary

DIMENSIONS: tuple[tuple[str, str], ...] = (
    ("collection", "收缴健康度"),
    ("operational", "经营健康度"),
    ("site_quality", "现场品质"),
    ("customer_review", "顾客评价"),
    ("risk_resistance", "抗风险能力"),
)

RISK_LABELS: dict[str, str] = {
    "high": "高风险",
    "medium": "中风险",
    "low": "低风险",
    "none": "无风险",
    "unknown": "未知",
}

RENT_RATIO_WARNING = 0.25
RENT_RATIO_HIGH = 0.30


def read_metrics(subject: Entity) -> dict[str, float]:
    metrics = subject.attributes.get("metrics")
    if not isinstance(metrics, Mapping):
        raise ValueError(f"No metrics recorded for {subject.name}")
    missing = [name for name, _ in DIMENSIONS if name not in metrics]
    if missing:
        raise ValueError(f"Incomplete metrics for {subject.name}: missing {', '.join(missing)}")
    return {name: float(metrics[name]) for name, _ in DIMENSIONS}


def health_total(metrics: Mapping[str, float]) -> int:
    return round(sum(metrics.values()) / len(metrics))


def risk_level(total_score: float) -> str:
    if total_score < 60:
        return "high"
    if total_score < 75:
        return "medium"
    if total_score < 85:
        return "low"
    return "none"


def dimension_status(score: float) -> str:
    if score >= 85:
        return "excellent"
    if score >= 70:
        return "good"
    if score >= 60:
        return "warning"
    return "critical"


def analyze_health(
    subject: Entity, params: Mapping[str, Any], prior_results: Mapping[str, SkillResult]
) -> dict[str, Any]:
    metrics = read_metrics(subject)
    total = health_total(metrics)
    weakest_name, weakest_label = min(DIMENSIONS, key=lambda d: metrics[d[0]])

    recommendations = []
    if metrics["collection"] < 80:
        recommendations.append("加强租金催收，建立分期还款计划")
    if metrics["operational"] < 70:
        recommendations.append("开展营销活动提升客流和营收")
    if metrics["site_quality"] < 70:
        recommendations.append("改善店面陈列和环境卫生")
    if metrics["customer_review"] < 70:
        recommendations.append("提升服务质量，建立顾客反馈机制")
    if metrics["risk_resistance"] < 70:
        recommendations.append("优化成本结构，增强抗风险能力")

    return {
        "entity_id": subject.id,
        "entity_name": subject.name,
        "total_score": total,
        "risk_level": risk_level(total),
        "weakest_dimension": {
            "name": weakest_name,
            "label": weakest_label,
            "score": metrics[weakest_name],
        },
        "dimension_scores": [
            {"name": label, "score": metrics[name], "status": dimension_status(metrics[name])}
            for name, label in DIMENSIONS
        ],
        "recommendations": recommendations,
    }


def detect_risks(
    subject: Entity, params: Mapping[str, Any], prior_results: Mapping[str, SkillResult]
) -> dict[str, Any]:
    metrics = read_metrics(subject)
    total = health_total(metrics)
    ratio = float(subject.attributes.get("rent_to_sales_ratio") or 0.0)
    risks: list[dict[str, Any]] = []

    def add(risk_type: str, high: bool, message: str, actions: list[str]) -> None:
        risks.append(
            {
                "risk_type": risk_type,
                "severity": "high" if high else "medium",
                "message": message,
                "suggested_actions": actions,
            }
        )

    if metrics["collection"] < 60:
        add(
            "rent_overdue",
            metrics["collection"] < 40,
            f"收缴健康度仅{metrics['collection']:g}分，存在租金逾期风险",
            ["立即联系商户了解情况", "评估商户经营状况", "制定分期还款计划"],
        )
    if metrics["operational"] < 60:
        add(
            "low_revenue",
            metrics["operational"] < 40,
            f"经营健康度仅{metrics['operational']:g}分，营收持续下滑",
            ["分析营收下滑原因", "开展联合营销活动", "优化商品结构"],
        )
    if ratio > RENT_RATIO_WARNING:
        add(
            "high_rent_ratio",
            ratio > RENT_RATIO_HIGH,
            f"租售比达到{ratio * 100:.1f}%，{'远超' if ratio > RENT_RATIO_HIGH else '接近'}行业警戒线25%",
            ["评估降租可能性", "协助提升营收", "考虑业态调整"],
        )
    if metrics["customer_review"] < 60:
        add(
            "customer_complaint",
            metrics["customer_review"] < 40,
            f"顾客满意度评分{metrics['customer_review']:g}分，低于60分及格线",
            ["开展服务质量培训", "建立顾客反馈机制", "及时处理投诉"],
        )
    if total < 60:
        add(
            "health_declining",
            total < 45,
            f"健康度评分仅{total}分，整体经营状况不佳",
            ["全面评估商户状况", "制定综合帮扶方案", "定期跟进改善进度"],
        )

    return {
        "entity_id": subject.id,
        "risks": risks,
        "high_risk_count": sum(1 for r in risks if r["severity"] == "high"),
        "medium_risk_count": sum(1 for r in risks if r["severity"] == "medium"),
    }


def diagnose(
    subject: Entity, params: Mapping[str, Any], prior_results: Mapping[str, SkillResult]
) -> dict[str, Any]:
    metrics = read_metrics(subject)
    ratio = float(subject.attributes.get("rent_to_sales_ratio") or 0.0)
    problems: list[str] = []
    tags: list[str] = []

    if metrics["collection"] < 80:
        problems.append(f"租金缴纳存在风险({metrics['collection']:g}分)")
        tags += ["收缴问题", "欠租"]
    if metrics["operational"] < 60:
        problems.append(f"经营表现不佳({metrics['operational']:g}分)")
        tags += ["业绩下滑", "营收低", "客流少"]
    if metrics["customer_review"] < 70:
        problems.append(f"顾客满意度偏低({metrics['customer_review']:g}分)")
        tags += ["口碑差", "服务问题", "投诉"]
    if metrics["site_quality"] < 70:
        problems.append(f"现场品质需改善({metrics['site_quality']:g}分)")
        tags += ["陈列差", "环境问题"]
    if metrics["risk_resistance"] < 60:
        problems.append(f"抗风险能力较弱({metrics['risk_resistance']:g}分)")
        tags += ["经营脆弱", "抗压能力差"]
    if ratio > RENT_RATIO_WARNING:
        problems.append(f"租售比过高({ratio * 100:.1f}%)，超过25%警戒线")
        tags += ["高租售比", "租金压力", "降租"]

    total = health_total(metrics)
    return {
        "entity_id": subject.id,
        "entity_name": subject.name,
        "category": subject.category,
        "risk_level": risk_level(total),
        "problems": problems,
        "problem_tags": list(dict.fromkeys(tags)),
    }


class CaseMatcher:
    """Ranks library cases by industry and problem-tag overlap."""

    def __init__(self, library: CaseLibrary, top_n: int = 3):
        self.library = library
        self.top_n = top_n

    def score(self, case: Case, category: str, problem_tags: list[str]) -> int:
        score = 0
        if category and case.industry == category:
            score += 40
        elif category and case.industry.split("-")[0] == category.split("-")[0]:
            score += 25
        matched = [tag for tag in case.tags if any(tag in pt or pt in tag for pt in problem_tags)]
        return score + 15 * len(matched)

    def __call__(
        self, subject: Entity, params: Mapping[str, Any], prior_results: Mapping[str, SkillResult]
    ) -> dict[str, Any]:
        diagnosis = _find_data(prior_results, "problem_tags")
        problem_tags = list(diagnosis.get("problem_tags", [])) if diagnosis else []

        scored = [
            (self.score(case, subject.category, problem_tags), case) for case in self.library.cases
        ]
        ranked = sorted((item for item in scored if item[0] > 0), key=lambda item: -item[0])
        return {
            "entity_id": subject.id,
            "used_diagnosis": diagnosis is not None,
            "cases": [
                {**case.to_dict(), "match_score": score} for score, case in ranked[: self.top_n]
            ],
        }


def generate_solution(
    subject: Entity, params: Mapping[str, Any], prior_results: Mapping[str, SkillResult]
) -> dict[str, Any]:
    """Fuse the diagnosis and matched cases of earlier tasks into a solution."""
    diagnosis = _find_data(prior_results, "problem_tags")
    matched = _find_data(prior_results, "cases")
    cases = matched.get("cases", []) if matched else []

    return {
        "entity_id": subject.id,
        "entity_name": subject.name,
        "diagnosis": diagnosis,
        "recommended_cases": cases,
        "solutions": [
            {
                "case_id": case["id"],
                "title": case["title"],
                "actions": case.get("actions", []),
                "expected_effect": case.get("expected_effect", ""),
            }
            for case in cases
        ],
        "failed_inputs": sorted(tid for tid, result in prior_results.items() if not result.success),
    }


def build_skill_registry(
    library: CaseLibrary, catalog: Optional[EntityCatalogProtocol] = None
) -> dict[str, Callable[..., Any]]:
    """
    Skills keyed by action name. The catalog-wide skills (aggregate, compare)
    are only registered when a catalog is given.
    """
    registry: dict[str, Callable[..., Any]] = {
        ANALYZE_HEALTH: analyze_health,
        DETECT_RISKS: detect_risks,
        DIAGNOSE: diagnose,
        MATCH_CASES: CaseMatcher(library),
        GENERATE_SOLUTION: generate_solution,
    }
    if catalog is not None:
        from merchant_copilot.infrastructure.skills.catalog_queries import (
            CatalogAggregator,
            CatalogComparator,
        )

        registry[AGGREGATE] = CatalogAggregator(catalog)
        registry[COMPARE] = CatalogComparator(catalog)
    return registry


def _find_data(prior_results: Mapping[str, SkillResult], key: str) -> dict[str, Any] | None:
    """Data of the first successful prior result carrying `key`."""
    for result in prior_results.values():
        if result.success and isinstance(result.data, dict) and key in result.data:
            return result.data
    return None
