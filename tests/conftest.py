"""Shared fixtures: a small merchant catalog and case library."""

import pytest

from merchant_copilot.core.domain.models import ConversationContext, Entity
from merchant_copilot.infrastructure.catalog.yaml_catalog import Case, CaseLibrary, EntityCatalog


def make_entity(entity_id, name, category, rent_ratio=0.15, **metrics):
    values = {
        "collection": 90,
        "operational": 85,
        "site_quality": 85,
        "customer_review": 85,
        "risk_resistance": 80,
    }
    values.update(metrics)
    return Entity(
        id=entity_id,
        name=name,
        category=category,
        attributes={"metrics": values, "rent_to_sales_ratio": rent_ratio},
    )


@pytest.fixture
def entities():
    return [
        make_entity("M001", "海底捞火锅", "餐饮-火锅", rent_ratio=0.12),
        make_entity("M002", "星巴克咖啡", "餐饮-咖啡", operational=78, customer_review=80),
        make_entity(
            "M007",
            "绿茶餐厅",
            "餐饮-中餐",
            rent_ratio=0.36,
            collection=35,
            operational=38,
            site_quality=55,
            customer_review=48,
            risk_resistance=40,
        ),
    ]


@pytest.fixture
def catalog(entities):
    return EntityCatalog(entities)


@pytest.fixture
def case_library():
    return CaseLibrary(
        [
            Case(
                id="CASE_001",
                title="餐饮商户降租与营收提升帮扶",
                industry="餐饮-中餐",
                tags=("高租售比", "租金压力", "营收低", "欠租"),
                actions=("阶段性下调租金", "午市套餐引流"),
                expected_effect="租售比降至25%以内",
            ),
            Case(
                id="CASE_002",
                title="口碑修复与服务提升",
                industry="餐饮-火锅",
                tags=("口碑差", "服务问题", "投诉"),
            ),
            Case(
                id="CASE_003",
                title="服装零售营销引流",
                industry="零售-服装",
                tags=("业绩下滑", "客流少"),
            ),
        ]
    )


@pytest.fixture
def subject_context():
    return ConversationContext(conversation_id="conv-1", entity_id="M001", entity_name="海底捞火锅")
