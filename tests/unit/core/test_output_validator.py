"""Unit tests for OutputValidator."""

import pytest

from merchant_copilot.core.domain.models import Entity
from merchant_copilot.core.domain.output_validator import (
    CASE_DISCLOSURE,
    PLACEHOLDER,
    OutputValidator,
)

KNOWN = ["海底捞火锅", "星巴克咖啡", "绿茶餐厅"]


@pytest.fixture
def validator():
    return OutputValidator()


class TestAggregation:
    def test_known_names_pass(self, validator):
        text = "海底捞火锅的健康度为90分，星巴克咖啡为82分。"

        result = validator.validate_aggregation_response(text, KNOWN)

        assert result.valid is True
        assert result.fabricated_names == []
        assert result.sanitized_response == text

    def test_invented_name_replaced(self, validator):
        text = "海底捞火锅的健康度良好，可以看看老李烧烤店的做法。"

        result = validator.validate_aggregation_response(text, KNOWN)

        assert result.valid is False
        assert result.fabricated_names == ["老李烧烤店"]
        assert result.sanitized_response == f"海底捞火锅的健康度良好，可以看看{PLACEHOLDER}的做法。"

    def test_quoted_name_replaced(self, validator):
        result = validator.validate_aggregation_response("参考「老王小吃」的经验", KNOWN)

        assert result.fabricated_names == ["老王小吃"]
        assert result.sanitized_response == f"参考「{PLACEHOLDER}」的经验"

    def test_quoted_known_name_kept(self, validator):
        text = "已识别商户「绿茶餐厅」"

        assert validator.validate_aggregation_response(text, KNOWN).sanitized_response == text

    def test_generic_terms_allowed(self, validator):
        result = validator.validate_aggregation_response("周边的火锅店客流较好", KNOWN)

        assert result.valid is True

    def test_known_name_with_trailing_suffix(self, validator):
        result = validator.validate_aggregation_response("海底捞火锅店客流稳定", KNOWN)

        assert result.valid is True

    def test_accepts_entities(self, validator):
        entities = [Entity(id="M001", name="海底捞火锅", category="餐饮-火锅")]

        assert validator.validate_aggregation_response("海底捞火锅很好", entities).valid is True

    def test_empty_known_list_is_strict(self, validator):
        result = validator.validate_aggregation_response("海底捞火锅很好", [])

        assert result.fabricated_names == ["海底捞火锅"]

    def test_duplicates_reported_once(self, validator):
        text = "看看老李烧烤店，再看看老李烧烤店"

        result = validator.validate_aggregation_response(text, KNOWN)

        assert result.fabricated_names == ["老李烧烤店"]
        assert result.sanitized_response.count(PLACEHOLDER) == 2

    @pytest.mark.parametrize(
        "text",
        [
            "可以看看老李烧烤店的做法",
            "「老王小吃」和「海底捞火锅」",
            "推荐去王记咖啡和绿茶餐厅",
            "周大福珠宝与星巴克咖啡",
        ],
    )
    def test_sanitized_output_contains_no_fabrication(self, validator, text):
        first = validator.validate_aggregation_response(text, KNOWN)
        second = validator.validate_aggregation_response(first.sanitized_response, KNOWN)

        assert second.valid is True
        assert all(name not in first.sanitized_response for name in first.fabricated_names)


class TestCitation:
    def test_suggestion_without_citation_gets_disclosure(self, validator):
        result = validator.validate_case_citation("建议开展联合营销活动", has_cases=True)

        assert result.valid is False
        assert result.warnings == ["建议措施未标注案例来源"]
        assert result.enhanced_response == "建议开展联合营销活动" + CASE_DISCLOSURE

    def test_cited_case_passes(self, validator):
        text = "建议参考案例ID：CASE_001 的做法"

        result = validator.validate_case_citation(text, has_cases=True)

        assert result.valid is True
        assert result.enhanced_response == text

    def test_experience_reference_counts_as_citation(self, validator):
        assert validator.validate_case_citation("建议参考同类商户的经验", has_cases=True).valid

    def test_no_cases_no_disclosure(self, validator):
        result = validator.validate_case_citation("建议开展联合营销活动", has_cases=False)

        assert result.valid is True
        assert result.enhanced_response == "建议开展联合营销活动"

    def test_no_suggestion(self, validator):
        assert validator.validate_case_citation("健康度为90分", has_cases=True).valid


class TestDataSource:
    def test_explicit_data_source(self):
        assert OutputValidator.validate_data_source("数据来源：运营系统") == ["运营系统"]

    def test_plain_source(self):
        assert OutputValidator.validate_data_source("来源：商户月报") == ["商户月报"]

    def test_based_on(self):
        assert OutputValidator.validate_data_source("基于近三个月数据分析") == ["近三个月"]

    def test_none(self):
        assert OutputValidator.validate_data_source("一切正常") == []
