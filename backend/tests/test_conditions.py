"""Tests for condition evaluation."""

import pytest

from core.constants import ConditionOperator as Op
from workflow.conditions import compare, evaluate, evaluate_payload, evaluate_with_details
from workflow.context import MISSING, ExecutionContext
from workflow.models import Condition


@pytest.fixture
def ctx():
    context = ExecutionContext.create(
        "wf-1",
        "ex-1",
        variables={"amount": 150, "status": "paid", "tags": ["urgent", "vip"], "customer": {"tier": "gold"}},
        trigger_payload={"priority": "high", "source": "api"},
    )
    context.record_step_output("fetch", {"x": 1, "items": [{"id": "a"}]})
    context.record_step_error("charge", "card declined")
    return context


@pytest.mark.unit
class TestCompare:
    def test_equals(self):
        assert compare(Op.EQUALS, "paid", "paid")
        assert not compare(Op.EQUALS, "paid", "open")

    def test_not_equals(self):
        assert compare(Op.NOT_EQUALS, "paid", "open")

    def test_contains_string_and_list(self):
        assert compare(Op.CONTAINS, "hello world", "world")
        assert compare(Op.CONTAINS, ["a", "b"], "b")
        assert not compare(Op.CONTAINS, 42, "4")

    def test_not_contains(self):
        assert compare(Op.NOT_CONTAINS, ["a"], "b")
        assert not compare(Op.NOT_CONTAINS, ["a"], "a")

    def test_unhashable_operand_is_not_a_member(self):
        assert not compare(Op.CONTAINS, {"a": 1}, ["a"])
        assert not compare(Op.CONTAINS, {"a", "b"}, {"a": 1})
        assert compare(Op.NOT_CONTAINS, {"a": 1}, ["a"])
        assert not compare(Op.IN, {"a": 1}, {"a", "b"})
        assert compare(Op.NOT_IN, ["a"], frozenset({"a"}))

    def test_numeric_comparisons_coerce(self):
        assert compare(Op.GREATER, "150", 100)
        assert compare(Op.LESS, 5, "10")
        assert compare(Op.GREATER_EQUAL, 10, 10)
        assert compare(Op.LESS_EQUAL, 9.5, 10)

    def test_numeric_comparison_with_non_number_is_false(self):
        assert not compare(Op.GREATER, "abc", 1)
        assert not compare(Op.LESS, True, 5)

    def test_in_and_not_in(self):
        assert compare(Op.IN, "b", ["a", "b"])
        assert compare(Op.NOT_IN, "c", ["a", "b"])
        assert not compare(Op.IN, "b", 5)

    def test_exists(self):
        assert compare(Op.EXISTS, 0, None)
        assert compare(Op.EXISTS, "", None)
        assert not compare(Op.EXISTS, MISSING, None)

    @pytest.mark.parametrize("operator", [op for op in Op if op != Op.NOT_EXISTS])
    def test_missing_field_only_satisfies_not_exists(self, operator):
        assert not compare(operator, MISSING, "anything")
        assert compare(Op.NOT_EXISTS, MISSING, None)

    def test_none_counts_as_missing(self):
        assert compare(Op.NOT_EXISTS, None, None)
        assert not compare(Op.NOT_EQUALS, None, "x")


@pytest.mark.unit
class TestEvaluate:
    def test_empty_list_is_true(self, ctx):
        assert evaluate([], ctx)

    def test_context_variable(self, ctx):
        assert evaluate([Condition(field="amount", operator=Op.GREATER, value=100)], ctx)

    def test_nested_variable_path(self, ctx):
        assert evaluate([{"field": "customer.tier", "operator": "equals", "value": "gold"}], ctx)

    def test_trigger_source(self, ctx):
        cond = {"field": "priority", "operator": "equals", "value": "high", "source": "trigger"}
        assert evaluate([cond], ctx)

    def test_previous_step_output(self, ctx):
        cond = {"field": "fetch.x", "operator": "equals", "value": 1, "source": "previous_step"}
        assert evaluate([cond], ctx)

    def test_previous_step_list_index(self, ctx):
        cond = {"field": "fetch.items.0.id", "operator": "equals", "value": "a", "source": "previous_step"}
        assert evaluate([cond], ctx)

    def test_previous_step_error_fallback(self, ctx):
        cond = {"field": "charge.error", "operator": "contains", "value": "declined", "source": "previous_step"}
        assert evaluate([cond], ctx)

    def test_unhashable_value_evaluates_false(self, ctx):
        assert not evaluate([{"field": "customer", "operator": "contains", "value": ["tier"]}], ctx)

    def test_previous_step_not_run(self, ctx):
        cond = {"field": "later.x", "operator": "not_exists", "source": "previous_step"}
        assert evaluate([cond], ctx)

    def test_and_requires_all(self, ctx):
        conds = [
            {"field": "amount", "operator": "greater", "value": 100},
            {"field": "status", "operator": "equals", "value": "open"},
        ]
        assert not evaluate(conds, ctx, "and")

    def test_or_requires_any(self, ctx):
        conds = [
            {"field": "amount", "operator": "greater", "value": 1000},
            {"field": "tags", "operator": "contains", "value": "vip"},
        ]
        assert evaluate(conds, ctx, "or")

    def test_with_details(self, ctx):
        conds = [
            {"field": "amount", "operator": "greater", "value": 100},
            {"field": "missing", "operator": "exists"},
        ]
        met, results = evaluate_with_details(conds, ctx)
        assert met is False
        assert results == [True, False]


@pytest.mark.unit
class TestEvaluatePayload:
    def test_priority_mismatch_is_false(self):
        conds = [{"field": "priority", "operator": "equals", "value": "high"}]
        assert not evaluate_payload(conds, {"priority": "low"})

    def test_priority_match(self):
        conds = [{"field": "priority", "operator": "equals", "value": "high"}]
        assert evaluate_payload(conds, {"priority": "high"})

    def test_dotted_key_wins_over_path(self):
        conds = [{"field": "order.id", "operator": "equals", "value": 7}]
        assert evaluate_payload(conds, {"order.id": 7, "order": {"id": 8}})

    def test_no_conditions(self):
        assert evaluate_payload([], {})
