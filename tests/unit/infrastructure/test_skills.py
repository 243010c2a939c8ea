"""Unit tests for the built-in read-only skills."""

import pytest

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
from merchant_copilot.infrastructure.skills.builtin import (
    CaseMatcher,
    analyze_health,
    build_skill_registry,
    detect_risks,
    diagnose,
    dimension_status,
    generate_solution,
    read_metrics,
    risk_level,
)


@pytest.fixture
def healthy(entities):
    return entities[0]


@pytest.fixture
def struggling(entities):
    return entities[2]


class TestHelpers:
    def test_read_metrics_requires_all_dimensions(self):
        entity = Entity(id="X", name="测试", attributes={"metrics": {"collection": 80}})

        with pytest.raises(ValueError, match="missing operational"):
            read_metrics(entity)

    def test_read_metrics_requires_metrics(self):
        with pytest.raises(ValueError, match="No metrics"):
            read_metrics(Entity(id="X", name="测试"))

    @pytest.mark.parametrize("score,level", [(59, "high"), (60, "medium"), (80, "low"), (85, "none")])
    def test_risk_level(self, score, level):
        assert risk_level(score) == level

    @pytest.mark.parametrize(
        "score,status", [(90, "excellent"), (70, "good"), (60, "warning"), (10, "critical")]
    )
    def test_dimension_status(self, score, status):
        assert dimension_status(score) == status


class TestAnalyzeHealth:
    def test_healthy_merchant(self, healthy):
        data = analyze_health(healthy, {}, {})

        assert data["total_score"] == 85
        assert data["risk_level"] == "none"
        assert data["weakest_dimension"]["name"] == "risk_resistance"
        assert data["recommendations"] == []

    def test_struggling_merchant(self, struggling):
        data = analyze_health(struggling, {}, {})

        assert data["total_score"] == 43
        assert data["risk_level"] == "high"
        assert data["weakest_dimension"]["name"] == "collection"
        assert len(data["recommendations"]) == 5
        assert len(data["dimension_scores"]) == 5


class TestDetectRisks:
    def test_struggling_merchant(self, struggling):
        data = detect_risks(struggling, {}, {})

        types = [risk["risk_type"] for risk in data["risks"]]
        assert types == [
            "rent_overdue",
            "low_revenue",
            "high_rent_ratio",
            "customer_complaint",
            "health_declining",
        ]
        assert data["high_risk_count"] == 4
        assert data["medium_risk_count"] == 1

    def test_healthy_merchant(self, healthy):
        assert detect_risks(healthy, {}, {})["risks"] == []


class TestDiagnose:
    def test_problem_tags_deduplicated(self, struggling):
        data = diagnose(struggling, {}, {})

        assert len(data["problems"]) == 6
        assert data["problem_tags"][:2] == ["收缴问题", "欠租"]
        assert len(data["problem_tags"]) == len(set(data["problem_tags"]))
        assert data["category"] == "餐饮-中餐"

    def test_healthy_merchant(self, healthy):
        data = diagnose(healthy, {}, {})

        assert data["problems"] == []
        assert data["problem_tags"] == []


class TestCaseMatcher:
    def test_uses_prior_diagnosis(self, struggling, case_library):
        prior = {"t1": SkillResult("t1", True, diagnose(struggling, {}, {}))}

        data = CaseMatcher(case_library)(struggling, {}, prior)

        assert data["used_diagnosis"] is True
        assert [(c["id"], c["match_score"]) for c in data["cases"]] == [
            ("CASE_001", 100),
            ("CASE_002", 70),
            ("CASE_003", 30),
        ]

    def test_industry_only_without_diagnosis(self, healthy, case_library):
        data = CaseMatcher(case_library)(healthy, {}, {})

        assert data["used_diagnosis"] is False
        assert [c["id"] for c in data["cases"]] == ["CASE_002", "CASE_001"]

    def test_failed_diagnosis_ignored(self, struggling, case_library):
        prior = {"t1": SkillResult("t1", False, error="boom")}

        assert CaseMatcher(case_library)(struggling, {}, prior)["used_diagnosis"] is False

    def test_top_n(self, struggling, case_library):
        prior = {"t1": SkillResult("t1", True, diagnose(struggling, {}, {}))}

        assert len(CaseMatcher(case_library, top_n=1)(struggling, {}, prior)["cases"]) == 1


class TestGenerateSolution:
    def test_fuses_prior_results(self, struggling, case_library):
        diagnosis = diagnose(struggling, {}, {})
        prior = {
            "t1": SkillResult("t1", True, diagnosis),
            "t2": SkillResult("t2", True, CaseMatcher(case_library)(struggling, {}, {})),
        }

        data = generate_solution(struggling, {}, prior)

        assert data["diagnosis"] == diagnosis
        assert data["solutions"][0]["case_id"] == "CASE_001"
        assert data["failed_inputs"] == []

    def test_reports_failed_inputs(self, struggling):
        prior = {
            "t1": SkillResult("t1", True, diagnose(struggling, {}, {})),
            "t2": SkillResult("t2", False, error="case library unavailable"),
        }

        data = generate_solution(struggling, {}, prior)

        assert data["solutions"] == []
        assert data["failed_inputs"] == ["t2"]


def test_registry_covers_planner_actions(case_library):
    registry = build_skill_registry(case_library)

    assert set(registry) == {ANALYZE_HEALTH, DETECT_RISKS, DIAGNOSE, MATCH_CASES, GENERATE_SOLUTION}


def test_registry_adds_catalog_skills_with_catalog(case_library, catalog):
    registry = build_skill_registry(case_library, catalog)

    assert {AGGREGATE, COMPARE} <= set(registry)
    assert len(registry) == 7
