"""Tests for edge condition evaluation."""

import pytest

from models.nodes import WorkflowEdge
from services.execution.conditions import (
    decide_next_edges,
    evaluate_condition,
    evaluate_edge_condition,
    evaluate_expression,
    get_nested_value,
    validate_condition,
)

SCOPE = {
    "score": 72,
    "status": "qualified",
    "trigger": {"source": "facebook"},
    "items": [{"name": "first"}],
    "lead": {"name": "Ana", "tags": ["vip", "hot"], "email": "ana@example.com"},
    "empty": "",
}


class TestExpressions:
    """String expression grammar."""

    @pytest.mark.parametrize("expression", [
        "score > 50",
        "score >= 72 and status == 'qualified'",
        "status == \"qualified\"",
        "lead.tags contains 'vip'",
        "status in ['new', 'qualified']",
        "trigger.source != 'google' || score < 10",
        "not (score < 50)",
        "lead.email endswith '@example.com'",
        "lead.name startswith 'A'",
        "lead.email matches '^ana@'",
        "items.0.name == 'first'",
        "'cold' not in lead.tags",
    ])
    def test_true_expressions(self, expression):
        assert evaluate_expression(expression, SCOPE) is True

    @pytest.mark.parametrize("expression", [
        "score < 50",
        "status == 'new' and score > 50",
        "lead.tags contains 'cold'",
        "empty",
    ])
    def test_false_expressions(self, expression):
        assert evaluate_expression(expression, SCOPE) is False

    def test_missing_variable_is_false(self):
        assert evaluate_expression("lead.company == 'Acme'", SCOPE) is False

    def test_missing_variable_poisons_whole_expression(self):
        assert evaluate_expression("score > 50 or unknown == 1", SCOPE) is False

    def test_literals(self):
        assert evaluate_expression("true", {}) is True
        assert evaluate_expression("null == none", {}) is True

    def test_type_mismatch_is_false(self):
        assert evaluate_expression("status > 5", SCOPE) is False

    def test_syntax_error_is_false(self):
        assert evaluate_expression("score >", SCOPE) is False


class TestStructuredConditions:
    def test_equality(self):
        assert evaluate_condition({"field": "status", "operator": "eq", "value": "qualified"}, SCOPE)

    def test_missing_field_only_satisfies_absence(self):
        assert evaluate_condition({"field": "lead.phone", "operator": "not_exists"}, SCOPE)
        assert evaluate_condition({"field": "lead.phone", "operator": "is_empty"}, SCOPE)
        assert not evaluate_condition({"field": "lead.phone", "operator": "neq", "value": "x"}, SCOPE)

    def test_numeric_comparison_rejects_bools(self):
        assert not evaluate_condition({"field": "flag", "operator": "gt", "value": 0}, {"flag": True})

    def test_get_nested_value(self):
        assert get_nested_value(SCOPE, "lead.name") == "Ana"
        assert get_nested_value(SCOPE, "lead.missing") is None


class TestEdgeSelection:
    def test_no_condition_always_taken(self):
        assert evaluate_edge_condition(None, {}) is True

    def test_fan_out_takes_every_passing_edge(self):
        edges = [
            WorkflowEdge(source="a", target="b", condition="score > 50"),
            WorkflowEdge(source="a", target="c", condition="score > 70"),
            WorkflowEdge(source="a", target="d", condition="score > 90"),
            WorkflowEdge(source="a", target="e"),
        ]
        assert [e.target for e in decide_next_edges(edges, SCOPE)] == ["b", "c", "e"]

    def test_take_all_ignores_conditions(self):
        edges = [WorkflowEdge(source="a", target="b", condition="false")]
        assert len(decide_next_edges(edges, SCOPE, take_all=True)) == 1

    def test_blank_condition_is_unconditional(self):
        assert WorkflowEdge(source="a", target="b", condition="  ").condition is None


class TestValidation:
    def test_valid(self):
        assert validate_condition("score > 1") is None
        assert validate_condition({"field": "x", "operator": "exists"}) is None

    def test_invalid_expression(self):
        assert "Invalid condition" in validate_condition("score >")

    def test_unknown_operator(self):
        assert validate_condition({"field": "x", "operator": "near"}) == "unknown operator 'near'"

    def test_operator_requires_value(self):
        assert validate_condition({"field": "x", "operator": "eq"}) == "operator 'eq' requires 'value'"
