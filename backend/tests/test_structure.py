"""ルール構造検証のユニットテスト"""

import copy

import pytest

from app.services.rules import IssueKind, validate_structure

from conftest import HIGH_AMOUNT_MOBILE_RULE


@pytest.fixture
def rule():
    return copy.deepcopy(HIGH_AMOUNT_MOBILE_RULE)


def _paths(result):
    return [e.path for e in result.errors]


class TestValidateStructure:
    """構造検証のテスト"""

    def test_valid_rule(self, rule):
        result = validate_structure(rule)
        assert result.valid
        assert result.warnings == []

    def test_not_an_object(self):
        result = validate_structure(["not", "a", "rule"])
        assert not result.valid
        assert result.errors[0].message == "rule must be an object"

    @pytest.mark.parametrize("missing", ["ruleset_name", "description", "decision", "conditions"])
    def test_required_fields(self, rule, missing):
        del rule[missing]
        result = validate_structure(rule)
        assert not result.valid
        assert missing in _paths(result)

    def test_ruleset_name_must_be_kebab_case(self, rule):
        rule["ruleset_name"] = "High_Amount Rule"
        result = validate_structure(rule)
        assert not result.valid
        assert "kebab-case" in result.errors[0].message

    def test_ruleset_name_length(self, rule):
        rule["ruleset_name"] = "ab"
        assert "ruleset_name" in _paths(validate_structure(rule))
        rule["ruleset_name"] = "a" * 101
        assert "ruleset_name" in _paths(validate_structure(rule))

    def test_description_length(self, rule):
        rule["description"] = "short"
        result = validate_structure(rule)
        assert "description" in _paths(result)

    def test_invalid_decision(self, rule):
        rule["decision"] = "deny"
        result = validate_structure(rule)
        assert not result.valid
        assert "allow, review, block" in result.errors[0].message

    def test_unknown_category_is_warning(self, rule):
        rule["category"] = "misc"
        result = validate_structure(rule)
        assert result.valid
        assert result.warnings[0].path == "category"

    def test_category_optional(self, rule):
        del rule["category"]
        assert validate_structure(rule).valid

    def test_empty_conditions(self, rule):
        rule["conditions"] = []
        result = validate_structure(rule)
        assert _paths(result) == ["conditions"]

    def test_conditions_must_be_array(self, rule):
        rule["conditions"] = {"field": "amount", "op": ">", "value": 1}
        assert not validate_structure(rule).valid

    def test_too_many_conditions(self, rule):
        rule["conditions"] = [{"field": "hour", "op": "==", "value": h} for h in range(11)]
        result = validate_structure(rule)
        assert not result.valid
        assert "more than 10 items" in result.errors[0].message

    def test_invalid_operator(self, rule):
        rule["conditions"][0]["op"] = "~="
        result = validate_structure(rule)
        assert _paths(result) == ["conditions[0].op"]

    def test_non_string_operator(self, rule):
        rule["conditions"][0]["op"] = [">"]
        result = validate_structure(rule)
        assert _paths(result) == ["conditions[0].op"]
        assert result.errors[0].message == "op must be a string"

    def test_non_string_field(self, rule):
        rule["conditions"][0]["field"] = ["amount"]
        result = validate_structure(rule)
        assert _paths(result) == ["conditions[0]"]

    def test_missing_value(self, rule):
        del rule["conditions"][1]["value"]
        result = validate_structure(rule)
        assert _paths(result) == ["conditions[1]"]

    def test_leaf_and_group_mixed(self, rule):
        rule["conditions"] = [{"field": "amount", "all": []}]
        assert not validate_structure(rule).valid

    def test_empty_group(self, rule):
        rule["conditions"] = [{"any": []}]
        result = validate_structure(rule)
        assert _paths(result) == ["conditions[0].any"]

    def test_nesting_depth(self, rule):
        leaf = {"field": "hour", "op": "==", "value": 1}
        rule["conditions"] = [{"all": [{"any": [{"all": [leaf]}]}]}]
        result = validate_structure(rule)
        assert not result.valid
        assert "cannot nest deeper" in result.errors[0].message

    def test_field_legality_not_checked(self, rule):
        """フィールドの妥当性はカタログ検証の責務"""
        rule["conditions"] = [{"field": "velocity", "op": ">", "value": "x"}]
        assert validate_structure(rule).valid

    def test_issue_kind(self, rule):
        rule["decision"] = "deny"
        assert validate_structure(rule).errors[0].kind == IssueKind.STRUCTURAL
