"""
Condition Evaluator

Pure evaluation of rule conditions against an entity snapshot.
All conditions must hold (AND). An empty condition list always passes.

A condition with an operator this module does not know evaluates to False
and logs a warning: one malformed rule must never stop the others.
"""
import logging
from typing import Any, Callable, Dict, Iterable, Mapping, Union

from ...models.rule_schemas import ConditionSpec

logger = logging.getLogger(__name__)

_MISSING = object()


def _ordered(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    """Wrap an ordering comparison so missing or incomparable values are False."""
    def evaluate(field_value, expected):
        if field_value is None or expected is None:
            return False
        try:
            return compare(field_value, expected)
        except TypeError:
            return False
    return evaluate


def _contains(field_value, expected) -> bool:
    return isinstance(field_value, str) and isinstance(expected, str) and expected in field_value


def _in(field_value, expected) -> bool:
    return isinstance(expected, (list, tuple, set, frozenset)) and field_value in expected


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda field_value, expected: field_value == expected,
    "neq": lambda field_value, expected: field_value != expected,
    "gt": _ordered(lambda a, b: a > b),
    "gte": _ordered(lambda a, b: a >= b),
    "lt": _ordered(lambda a, b: a < b),
    "lte": _ordered(lambda a, b: a <= b),
    "contains": _contains,
    "in": _in,
    "exists": lambda field_value, expected: field_value is not None,
}


def resolve_field(snapshot: Mapping[str, Any], field: str) -> Any:
    """
    Look a field up in the snapshot.

    An exact key wins; otherwise a dotted path ("account.city") walks nested
    mappings. Missing fields resolve to None.
    """
    if field in snapshot:
        return snapshot[field]

    current: Any = snapshot
    for part in field.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part, _MISSING)
        if current is _MISSING:
            return None
    return current


def evaluate_condition(condition: Union[ConditionSpec, Mapping[str, Any]], snapshot: Mapping[str, Any]) -> bool:
    if isinstance(condition, ConditionSpec):
        field, op, expected = condition.field, condition.op, condition.value
    else:
        field, op, expected = condition.get("field"), condition.get("op"), condition.get("value")

    evaluator = OPERATORS.get(op)
    if evaluator is None:
        logger.warning(f"Unknown condition operator: {op}")
        return False

    return evaluator(resolve_field(snapshot, field or ""), expected)


def evaluate_conditions(
    conditions: Iterable[Union[ConditionSpec, Mapping[str, Any]]],
    snapshot: Mapping[str, Any],
) -> bool:
    """True when every condition holds for the snapshot."""
    if not conditions:
        return True
    return all(evaluate_condition(condition, snapshot or {}) for condition in conditions)
