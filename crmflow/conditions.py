"""Condition evaluator - pure match/no-match over an entity snapshot.

A condition tree is stored as nested JSON:

    {"all": [node, ...]}                    AND
    {"any": [node, ...]}                    OR
    {"not": node}                           negation
    {"field": "a.b", "operator": "equals", "value": 1}   leaf

``parse_condition`` turns that JSON into the node types below; ``evaluate``
and ``explain`` only ever see parsed nodes. A missing (``None``) tree or an
empty list always matches. A bare list of leaves is read as ``all``.

Null policy: a missing path or ``None`` value satisfies ``is_not_set`` and
``not_equals`` and fails every other operator. There is no type coercion:
ordering two values of different runtime types is ``False``.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from .errors import ConditionError

BLOCKED_KEYS = frozenset({"__proto__", "constructor", "prototype"})


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUALS = "greater_than_or_equals"
    LESS_THAN = "less_than"
    LESS_THAN_OR_EQUALS = "less_than_or_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IN = "in"
    NOT_IN = "not_in"
    IS_SET = "is_set"
    IS_NOT_SET = "is_not_set"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"


UNARY_OPERATORS = frozenset({
    Operator.IS_SET,
    Operator.IS_NOT_SET,
    Operator.IS_EMPTY,
    Operator.IS_NOT_EMPTY,
})


@dataclass(frozen=True)
class LeafNode:
    field: str
    operator: Operator
    value: Any = None


@dataclass(frozen=True)
class AllNode:
    children: Tuple["ConditionNode", ...]


@dataclass(frozen=True)
class AnyNode:
    children: Tuple["ConditionNode", ...]


@dataclass(frozen=True)
class NotNode:
    child: "ConditionNode"


ConditionNode = Union[AllNode, AnyNode, NotNode, LeafNode]


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"


MISSING = _Missing()


# =============================================================================
# Parsing
# =============================================================================

def parse_condition(raw: Any) -> Optional[ConditionNode]:
    """Parse stored condition JSON into a node tree.

    Returns None when there is nothing to evaluate (always matches).

    Raises:
        ConditionError: the tree is malformed
    """
    if raw is None:
        return None
    if isinstance(raw, list):
        if not raw:
            return None
        return AllNode(tuple(_parse_node(item, f"$[{i}]") for i, item in enumerate(raw)))
    if isinstance(raw, dict) and not raw:
        return None
    return _parse_node(raw, "$")


def _parse_node(raw: Any, path: str) -> ConditionNode:
    if not isinstance(raw, dict):
        raise ConditionError(f"Condition at {path} must be an object, got {type(raw).__name__}")

    keys = set(raw) & {"all", "any", "not", "field"}
    if len(keys) != 1:
        raise ConditionError(
            f"Condition at {path} must have exactly one of 'all', 'any', 'not' or 'field'"
        )

    if "all" in raw or "any" in raw:
        key = "all" if "all" in raw else "any"
        items = raw[key]
        if not isinstance(items, list) or not items:
            raise ConditionError(f"'{key}' at {path} must be a non-empty list")
        children = tuple(_parse_node(item, f"{path}.{key}[{i}]") for i, item in enumerate(items))
        return AllNode(children) if key == "all" else AnyNode(children)

    if "not" in raw:
        return NotNode(_parse_node(raw["not"], f"{path}.not"))

    field_path = raw.get("field")
    if not isinstance(field_path, str) or not field_path.strip():
        raise ConditionError(f"Leaf at {path} needs a non-empty 'field'")
    try:
        operator = Operator(raw.get("operator"))
    except ValueError:
        raise ConditionError(f"Unknown operator at {path}: {raw.get('operator')!r}") from None
    if operator not in UNARY_OPERATORS and "value" not in raw:
        raise ConditionError(f"Operator '{operator.value}' at {path} requires a 'value'")
    if operator in (Operator.IN, Operator.NOT_IN) and not isinstance(raw.get("value"), list):
        raise ConditionError(f"Operator '{operator.value}' at {path} requires a list value")
    return LeafNode(field=field_path.strip(), operator=operator, value=raw.get("value"))


# =============================================================================
# Evaluation
# =============================================================================

def resolve_path(snapshot: Mapping[str, Any], path: str) -> Any:
    """Dotted-path lookup. Returns MISSING when any segment is absent."""
    current: Any = snapshot
    for part in path.split("."):
        if part in BLOCKED_KEYS:
            return MISSING
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def evaluate(node: Optional[ConditionNode], snapshot: Mapping[str, Any]) -> bool:
    """Return True if ``snapshot`` satisfies ``node``. No side effects."""
    if node is None:
        return True
    if isinstance(node, AllNode):
        return all(evaluate(child, snapshot) for child in node.children)
    if isinstance(node, AnyNode):
        return any(evaluate(child, snapshot) for child in node.children)
    if isinstance(node, NotNode):
        return not evaluate(node.child, snapshot)
    if isinstance(node, LeafNode):
        return apply_operator(node.operator, resolve_path(snapshot, node.field), node.value)
    raise TypeError(f"Unknown condition node: {node!r}")


def explain(node: Optional[ConditionNode], snapshot: Mapping[str, Any]) -> Dict[str, Any]:
    """Evaluate every node (no short-circuit) and return a result tree.

    The root ``result`` always equals ``evaluate(node, snapshot)``.
    """
    if node is None:
        return {"type": "always", "result": True}
    if isinstance(node, (AllNode, AnyNode)):
        children = [explain(child, snapshot) for child in node.children]
        results = [c["result"] for c in children]
        is_all = isinstance(node, AllNode)
        return {
            "type": "all" if is_all else "any",
            "result": all(results) if is_all else any(results),
            "children": children,
        }
    if isinstance(node, NotNode):
        child = explain(node.child, snapshot)
        return {"type": "not", "result": not child["result"], "child": child}
    if isinstance(node, LeafNode):
        actual = resolve_path(snapshot, node.field)
        return {
            "type": "leaf",
            "field": node.field,
            "operator": node.operator.value,
            "value": node.value,
            "actual": None if actual is MISSING else actual,
            "present": actual is not MISSING,
            "result": apply_operator(node.operator, actual, node.value),
        }
    raise TypeError(f"Unknown condition node: {node!r}")


def apply_operator(operator: Operator, actual: Any, expected: Any) -> bool:
    if actual is MISSING or actual is None:
        return operator in (Operator.IS_NOT_SET, Operator.NOT_EQUALS)

    if operator == Operator.IS_SET:
        return True
    if operator == Operator.IS_NOT_SET:
        return False
    if operator == Operator.IS_EMPTY:
        return _is_empty(actual)
    if operator == Operator.IS_NOT_EMPTY:
        return not _is_empty(actual)
    if operator == Operator.EQUALS:
        return _equals(actual, expected)
    if operator == Operator.NOT_EQUALS:
        return not _equals(actual, expected)
    if operator == Operator.CONTAINS:
        return _contains(actual, expected)
    if operator == Operator.NOT_CONTAINS:
        return _is_container(actual, expected) and not _contains(actual, expected)
    if operator == Operator.IN:
        return isinstance(expected, list) and any(_equals(actual, item) for item in expected)
    if operator == Operator.NOT_IN:
        return isinstance(expected, list) and not any(_equals(actual, item) for item in expected)

    ordering = _compare(actual, expected)
    if ordering is None:
        return False
    if operator == Operator.GREATER_THAN:
        return ordering > 0
    if operator == Operator.GREATER_THAN_OR_EQUALS:
        return ordering >= 0
    if operator == Operator.LESS_THAN:
        return ordering < 0
    if operator == Operator.LESS_THAN_OR_EQUALS:
        return ordering <= 0
    raise TypeError(f"Unhandled operator: {operator!r}")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _same_kind(a: Any, b: Any) -> bool:
    if _is_number(a) and _is_number(b):
        return True
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool)
    if isinstance(a, str) and isinstance(b, str):
        return True
    if isinstance(a, datetime) and isinstance(b, datetime):
        return (a.tzinfo is None) == (b.tzinfo is None)
    if isinstance(a, date) and isinstance(b, date):
        return not isinstance(a, datetime) and not isinstance(b, datetime)
    return type(a) is type(b)


def _equals(actual: Any, expected: Any) -> bool:
    if expected is None:
        return False
    return _same_kind(actual, expected) and actual == expected


def _compare(actual: Any, expected: Any) -> Optional[int]:
    if expected is None or not _same_kind(actual, expected):
        return None
    if not (_is_number(actual) or isinstance(actual, (str, date))):
        return None
    if actual < expected:
        return -1
    if actual > expected:
        return 1
    return 0


def _is_container(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return isinstance(expected, str)
    return isinstance(actual, list)


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return isinstance(expected, str) and expected.lower() in actual.lower()
    if isinstance(actual, list):
        return any(_equals(item, expected) for item in actual)
    return False


def _is_empty(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, dict, tuple)):
        return len(value) == 0
    return False

