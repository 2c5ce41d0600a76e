"""Condition evaluation for steps, workflows and triggers.

A condition list is combined with a single logical operator; mixed AND/OR
precedence is not supported. A field that is absent (or null) satisfies
only ``not_exists``: every other operator, negative ones included, is
false for it.
"""

from typing import Any, Iterable, Union

from core.constants import ConditionOperator, ConditionSource, LogicalOperator
from workflow.context import MISSING, ExecutionContext, lookup_path
from workflow.models import Condition

ConditionLike = Union[Condition, dict]


def _as_condition(condition: ConditionLike) -> Condition:
    if isinstance(condition, Condition):
        return condition
    return Condition.model_validate(condition)


def _to_number(value: Any):
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, str):
        return str(item) in container
    if isinstance(container, (list, tuple, set, frozenset, dict)):
        try:
            return item in container
        except TypeError:
            # unhashable operand against a dict or set
            return False
    return False


def compare(operator: ConditionOperator, actual: Any, expected: Any) -> bool:
    """Apply ``operator`` to a resolved field value."""
    if actual is None:
        actual = MISSING

    if operator == ConditionOperator.EXISTS:
        return actual is not MISSING
    if operator == ConditionOperator.NOT_EXISTS:
        return actual is MISSING
    if actual is MISSING:
        return False

    if operator == ConditionOperator.EQUALS:
        return actual == expected
    if operator == ConditionOperator.NOT_EQUALS:
        return actual != expected
    if operator == ConditionOperator.CONTAINS:
        return _contains(actual, expected)
    if operator == ConditionOperator.NOT_CONTAINS:
        if not isinstance(actual, (str, list, tuple, set, frozenset, dict)):
            return False
        return not _contains(actual, expected)
    if operator == ConditionOperator.IN:
        return isinstance(expected, (list, tuple, set, frozenset, str)) and _contains(expected, actual)
    if operator == ConditionOperator.NOT_IN:
        return isinstance(expected, (list, tuple, set, frozenset, str)) and not _contains(expected, actual)

    left, right = _to_number(actual), _to_number(expected)
    if left is None or right is None:
        return False
    if operator == ConditionOperator.GREATER:
        return left > right
    if operator == ConditionOperator.LESS:
        return left < right
    if operator == ConditionOperator.GREATER_EQUAL:
        return left >= right
    if operator == ConditionOperator.LESS_EQUAL:
        return left <= right
    return False


def resolve_field(condition: Condition, context: ExecutionContext) -> Any:
    """Read the condition's field from its source, or MISSING."""
    if condition.source == ConditionSource.CONTEXT:
        return lookup_path(context.variables, condition.field)
    if condition.source == ConditionSource.TRIGGER:
        return lookup_path(context.trigger_payload, condition.field)

    step_id, _, rest = condition.field.partition(".")
    if not rest:
        return context.step_results.get(step_id, MISSING)
    if step_id in context.step_results:
        value = lookup_path(context.step_results[step_id], rest)
        if value is not MISSING:
            return value
    if rest == "error" and step_id in context.step_errors:
        return context.step_errors[step_id]
    return MISSING


def evaluate_condition(condition: ConditionLike, context: ExecutionContext) -> bool:
    cond = _as_condition(condition)
    return compare(cond.operator, resolve_field(cond, context), cond.value)


def _combine(results: Iterable[bool], logical_operator) -> bool:
    if LogicalOperator(logical_operator) == LogicalOperator.OR:
        return any(results)
    return all(results)


def evaluate(
    conditions: list[ConditionLike],
    context: ExecutionContext,
    logical_operator: Union[LogicalOperator, str] = LogicalOperator.AND,
) -> bool:
    """Evaluate a condition list against an execution context. Empty is true."""
    if not conditions:
        return True
    return _combine([evaluate_condition(c, context) for c in conditions], logical_operator)


def evaluate_with_details(
    conditions: list[ConditionLike],
    context: ExecutionContext,
    logical_operator: Union[LogicalOperator, str] = LogicalOperator.AND,
) -> tuple[bool, list[bool]]:
    """Like ``evaluate`` but also returns the per-condition results."""
    results = [evaluate_condition(c, context) for c in conditions]
    if not results:
        return True, results
    return _combine(results, logical_operator), results


def evaluate_payload(
    conditions: list[ConditionLike],
    payload: dict,
    logical_operator: Union[LogicalOperator, str] = LogicalOperator.AND,
) -> bool:
    """Evaluate trigger conditions against a raw payload; the source field is ignored."""
    if not conditions:
        return True
    results = []
    for condition in conditions:
        cond = _as_condition(condition)
        results.append(compare(cond.operator, lookup_path(payload or {}, cond.field), cond.value))
    return _combine(results, logical_operator)
