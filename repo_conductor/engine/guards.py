"""Guard expressions for workflow transitions.

Guards are data, not code. A guard is either a condition comparing a
context field against a literal, or a group combining nested guards with
``and``/``or``. Raw guards come from workflow YAML as mappings:

    {"field": "review.approved", "operator": "==", "value": true}

    {"logic": "or", "conditions": [
        {"field": "attempts", "operator": ">=", "value": 3},
        {"field": "status", "operator": "==", "value": "done"},
    ]}

Evaluation is pure and deterministic. Field paths are dotted and walk
nested mappings; a missing field never equals any literal. Ordering
operators only hold between two numbers. Booleans are never treated as
numbers.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Union

from repo_conductor.exceptions import GuardEvaluationError

OPERATORS = frozenset({"==", "!=", ">", "<", ">=", "<="})
LOGIC_OPERATORS = frozenset({"and", "or"})

GuardValue = Union[str, int, float, bool]

_MISSING = object()


@dataclass(frozen=True)
class GuardCondition:
    """Compare the context value at ``field`` with ``value``."""

    field: str
    operator: str
    value: GuardValue


@dataclass(frozen=True)
class GuardGroup:
    """Combine nested guards with ``and`` or ``or``."""

    logic: str
    conditions: tuple["GuardExpression", ...]


GuardExpression = Union[GuardCondition, GuardGroup]


def parse_guard(raw: GuardExpression | Mapping[str, Any]) -> GuardExpression:
    """Parse a raw guard mapping into a guard expression tree.

    Args:
        raw: Mapping loaded from workflow configuration, or an already
            parsed expression (returned unchanged)

    Returns:
        The parsed GuardCondition or GuardGroup

    Raises:
        GuardEvaluationError: If the mapping is neither a valid condition
            nor a valid group
    """
    if isinstance(raw, (GuardCondition, GuardGroup)):
        return raw

    if not isinstance(raw, Mapping):
        raise GuardEvaluationError(
            f"Guard expression must be a mapping, got {type(raw).__name__}"
        )

    if "logic" in raw:
        logic = raw["logic"]
        if logic not in LOGIC_OPERATORS:
            raise GuardEvaluationError(f"Unsupported guard logic: {logic!r}")
        conditions = raw.get("conditions")
        if not isinstance(conditions, (list, tuple)):
            raise GuardEvaluationError("Guard group 'conditions' must be a list")
        return GuardGroup(logic=logic, conditions=tuple(parse_guard(c) for c in conditions))

    missing = [key for key in ("field", "operator", "value") if key not in raw]
    if missing:
        raise GuardEvaluationError(
            f"Guard condition is missing required keys: {', '.join(missing)}"
        )

    field_path = raw["field"]
    operator = raw["operator"]
    value = raw["value"]

    if not isinstance(field_path, str) or not field_path:
        raise GuardEvaluationError("Guard condition 'field' must be a non-empty string")
    if operator not in OPERATORS:
        raise GuardEvaluationError(f"Unsupported guard operator: {operator!r}")
    if not isinstance(value, (str, int, float, bool)):
        raise GuardEvaluationError(
            f"Guard condition value must be a string, number or boolean, "
            f"got {type(value).__name__}"
        )

    return GuardCondition(field=field_path, operator=operator, value=value)


def resolve_field(context: Mapping[str, Any], path: str) -> Any:
    """Walk a dotted path through nested mappings.

    Returns a sentinel when any segment is absent or a non-mapping is
    reached before the path ends; use ``field_exists`` to test for it.
    """
    current: Any = context
    for segment in path.split("."):
        if not isinstance(current, Mapping) or segment not in current:
            return _MISSING
        current = current[segment]
    return current


def field_exists(context: Mapping[str, Any], path: str) -> bool:
    return resolve_field(context, path) is not _MISSING


def evaluate_guard(
    expression: GuardExpression | Mapping[str, Any],
    context: Mapping[str, Any],
) -> bool:
    """Evaluate a guard against a run context.

    Args:
        expression: Parsed expression or raw guard mapping
        context: Run context to read fields from

    Returns:
        True if the guard holds

    Raises:
        GuardEvaluationError: If the expression is malformed

    Example:
        >>> evaluate_guard(
        ...     {"field": "review.approved", "operator": "==", "value": True},
        ...     {"review": {"approved": True}},
        ... )
        True
    """
    return _evaluate(parse_guard(expression), context)


def _evaluate(node: GuardExpression, context: Mapping[str, Any]) -> bool:
    if isinstance(node, GuardGroup):
        results = (_evaluate(child, context) for child in node.conditions)
        return all(results) if node.logic == "and" else any(results)

    actual = resolve_field(context, node.field)
    expected = node.value

    if node.operator == "==":
        return _values_equal(actual, expected)
    if node.operator == "!=":
        return not _values_equal(actual, expected)

    if not (_is_number(actual) and _is_number(expected)):
        return False
    if node.operator == ">":
        return actual > expected
    if node.operator == "<":
        return actual < expected
    if node.operator == ">=":
        return actual >= expected
    return actual <= expected


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _values_equal(actual: Any, expected: GuardValue) -> bool:
    if actual is _MISSING:
        return False
    if isinstance(actual, bool) or isinstance(expected, bool):
        return isinstance(actual, bool) and isinstance(expected, bool) and actual is expected
    if _is_number(actual) and _is_number(expected):
        return actual == expected
    return type(actual) is type(expected) and actual == expected
