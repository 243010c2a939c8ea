"""
Boundary Checker

Synchronous guard that classifies raw input against forbidden request
categories before anything else runs. Rules are an ordered table of
(category, keywords, refusal, suggested action); the first matching rule wins
and no violations are accumulated.

A second, independent check flags requests that need a human: low
confidence, requests to predict the future, and requests for regulated
professional advice. These are recommendations for the caller, not blocks.
"""

from dataclasses import dataclass

import structlog

from merchant_copilot.core.domain.models import BoundaryDecision, UncertaintyDecision


@dataclass(frozen=True)
class KeywordRule:
    """A keyword predicate plus the outcome it produces."""

    category: str
    keywords: tuple[str, ...]
    reason: str
    suggested_action: str | None = None

    def matches(self, text: str) -> bool:
        return any(keyword in text for keyword in self.keywords)


BOUNDARY_RULES: tuple[KeywordRule, ...] = (
    KeywordRule(
        category="modification",
        keywords=("修改", "删除", "更新", "设置", "调整为", "改成", "改为"),
        reason="我无法直接修改数据",
        suggested_action="请前往商户管理页面进行修改，或联系管理员",
    ),
    KeywordRule(
        category="batch_operation",
        keywords=("所有", "全部", "批量", "一键"),
        reason="批量操作需要人工审核",
        suggested_action="请明确具体商户和操作内容",
    ),
    KeywordRule(
        category="sensitive_data",
        keywords=("银行", "账号", "密码", "身份证", "合同", "协议"),
        reason="该信息涉及商户隐私",
        suggested_action="请联系商户运营经理获取授权",
    ),
    KeywordRule(
        category="admin_operation",
        keywords=("配置", "权限", "用户管理", "系统设置", "数据库"),
        reason="系统管理操作需要管理员权限",
        suggested_action="请联系系统管理员处理",
    ),
)

UNCERTAINTY_RULES: tuple[KeywordRule, ...] = (
    KeywordRule(
        category="future_prediction",
        keywords=("预测", "未来", "明年", "下个月会", "趋势会"),
        reason="系统无法预测未来，建议基于历史数据分析趋势",
    ),
    KeywordRule(
        category="professional_advice",
        keywords=("法律", "合规", "税务", "财务建议", "投资"),
        reason="此类问题需要专业人士意见，建议咨询法务/财务部门",
    ),
)

LOW_CONFIDENCE_REASON = "查询意图不明确，建议重新表述或咨询运营团队"


class BoundaryChecker:
    """Evaluates the boundary and uncertainty rule tables."""

    def __init__(
        self,
        rules: tuple[KeywordRule, ...] = BOUNDARY_RULES,
        uncertainty_rules: tuple[KeywordRule, ...] = UNCERTAINTY_RULES,
        uncertainty_threshold: float = 0.5,
    ):
        self.rules = rules
        self.uncertainty_rules = uncertainty_rules
        self.uncertainty_threshold = uncertainty_threshold
        self.logger = structlog.get_logger().bind(component="boundary_checker")

    def check_boundary(self, raw_input: str) -> BoundaryDecision:
        rule = first_match(self.rules, raw_input)
        if rule is None:
            return BoundaryDecision(allowed=True)

        self.logger.info("boundary.violation", category=rule.category)
        return BoundaryDecision(
            allowed=False,
            category=rule.category,
            reason=rule.reason,
            suggested_action=rule.suggested_action,
        )

    def check_uncertainty(self, query: str, confidence: float) -> UncertaintyDecision:
        if confidence < self.uncertainty_threshold:
            return UncertaintyDecision(needs_human_intervention=True, reason=LOW_CONFIDENCE_REASON)

        rule = first_match(self.uncertainty_rules, query)
        if rule is not None:
            return UncertaintyDecision(needs_human_intervention=True, reason=rule.reason)

        return UncertaintyDecision(needs_human_intervention=False)


def first_match(rules: tuple[KeywordRule, ...], text: str) -> KeywordRule | None:
    for rule in rules:
        if rule.matches(text):
            return rule
    return None
