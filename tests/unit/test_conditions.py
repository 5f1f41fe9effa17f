"""Tests for filter operators, field resolution and and/or combination."""

import pytest

from crm_automation.workflow.conditions import (
    ConditionRegistry,
    OperatorEvaluator,
    resolve_field,
    to_comparable,
)
from crm_automation.workflow.models import FilterCondition, FilterOperator


RECORD = {
    "id": "contact-1",
    "first_name": "Ada",
    "email": "ada@example.com",
    "lead_score": 80,
    "tags": ["vip", "newsletter"],
    "company": {"name": "Analytical Engines", "size": 12},
    "custom_fields": {"plan": "pro", "renewal_date": "2024-06-01"},
    "last_order_at": "2024-02-01T12:00:00Z",
    "notes": "",
}


def _cond(field, operator, value=None) -> FilterCondition:
    return FilterCondition(field=field, operator=operator, value=value)


class TestResolveField:
    def test_top_level_field(self):
        assert resolve_field(RECORD, "first_name") == "Ada"

    def test_dotted_path(self):
        assert resolve_field(RECORD, "company.name") == "Analytical Engines"

    def test_bare_name_falls_back_to_custom_fields(self):
        assert resolve_field(RECORD, "plan") == "pro"

    def test_missing_field_is_none(self):
        assert resolve_field(RECORD, "company.missing.deeper") is None
        assert resolve_field(RECORD, "nope") is None


class TestOperators:
    @pytest.mark.parametrize("operator,value,expected", [
        ("equals", "Ada", True),
        ("equals", "ada", False),
        ("not_equals", "Grace", True),
        ("contains", "ADA", True),
        ("not_contains", "grace", True),
        ("starts_with", "ad", True),
        ("ends_with", "da", True),
    ])
    def test_string_operators(self, operator, value, expected):
        assert ConditionRegistry.evaluate(RECORD, _cond("first_name", operator, value)) is expected

    def test_equals_compares_string_forms(self):
        assert ConditionRegistry.evaluate(RECORD, _cond("lead_score", "equals", "80"))

    def test_numeric_comparisons(self):
        assert ConditionRegistry.evaluate(RECORD, _cond("lead_score", "greater_than", 50))
        assert ConditionRegistry.evaluate(RECORD, _cond("lead_score", "less_than", "100"))
        assert not ConditionRegistry.evaluate(RECORD, _cond("lead_score", "greater_than", 80))

    def test_date_comparisons(self):
        assert ConditionRegistry.evaluate(RECORD, _cond("last_order_at", "greater_than", "2024-01-01"))
        assert ConditionRegistry.evaluate(RECORD, _cond("renewal_date", "less_than", "2024-12-31"))

    def test_type_mismatch_is_false_not_an_error(self):
        assert not ConditionRegistry.evaluate(RECORD, _cond("first_name", "greater_than", 5))
        assert not ConditionRegistry.evaluate(RECORD, _cond("lead_score", "less_than", "2024-01-01"))

    def test_contains_on_list_is_membership(self):
        assert ConditionRegistry.evaluate(RECORD, _cond("tags", "contains", "vip"))
        assert not ConditionRegistry.evaluate(RECORD, _cond("tags", "contains", "vi"))

    def test_empty_checks(self):
        assert ConditionRegistry.evaluate(RECORD, _cond("notes", "is_empty"))
        assert ConditionRegistry.evaluate(RECORD, _cond("phone", "is_empty"))
        assert ConditionRegistry.evaluate(RECORD, _cond("tags", "is_not_empty"))

    def test_in_and_not_in(self):
        assert ConditionRegistry.evaluate(RECORD, _cond("plan", "in", ["basic", "pro"]))
        assert ConditionRegistry.evaluate(RECORD, _cond("tags", "in", ["newsletter"]))
        assert ConditionRegistry.evaluate(RECORD, _cond("plan", "not_in", ["basic"]))

    def test_unknown_operator_is_false(self):
        assert ConditionRegistry.evaluate_operator("x", "matches_regex", ".*") is False


class TestEvaluateAll:
    def test_and_requires_every_condition(self):
        conditions = [_cond("lead_score", "greater_than", 50), _cond("plan", "equals", "basic")]
        assert not ConditionRegistry.evaluate_all(RECORD, conditions, "and")

    def test_or_requires_any_condition(self):
        conditions = [_cond("lead_score", "greater_than", 50), _cond("plan", "equals", "basic")]
        assert ConditionRegistry.evaluate_all(RECORD, conditions, "or")

    def test_empty_conditions_are_true(self):
        assert ConditionRegistry.evaluate_all(RECORD, [])


class TestRegistry:
    def test_register_overrides_and_reset_restores(self):
        class AlwaysTrue(OperatorEvaluator):
            def evaluate(self, value, operand):
                return True

        ConditionRegistry.register(FilterOperator.EQUALS, AlwaysTrue())
        assert ConditionRegistry.evaluate(RECORD, _cond("first_name", "equals", "nobody"))

        ConditionRegistry.reset()
        assert not ConditionRegistry.evaluate(RECORD, _cond("first_name", "equals", "nobody"))

    def test_evaluator_errors_yield_false(self):
        class Broken(OperatorEvaluator):
            def evaluate(self, value, operand):
                raise RuntimeError("boom")

        ConditionRegistry.register(FilterOperator.CONTAINS, Broken())
        assert ConditionRegistry.evaluate(RECORD, _cond("first_name", "contains", "A")) is False


def test_to_comparable_rejects_booleans_and_blank_strings():
    assert to_comparable(True) is None
    assert to_comparable("   ") is None
    assert to_comparable("12.5") == 12.5
