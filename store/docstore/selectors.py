"""
Mango selector matching for in-memory queries and filtered change feeds.

Supports the CouchDB selector syntax:
- Implicit equality: {"status": "done"}
- Dotted paths: {"owner.name": "alice"}
- Combination operators: $and, $or, $nor, $not
- Condition operators: $eq, $ne, $gt, $gte, $lt, $lte, $in, $nin,
  $exists, $type, $regex, $size, $mod, $all, $elemMatch, $allMatch

Invariants:
    - An empty selector matches every document
    - Ordering comparisons use CouchDB collation, so mixed types are
      ordered (null < bool < number < string < array < object) instead
      of raising TypeError
    - Unknown operators raise SelectorError
"""

from __future__ import annotations

import re
from typing import Any

from .base import StoreError
from .views import collate

_MISSING = object()

_COMBINATION_OPERATORS = {"$and", "$or", "$nor", "$not"}


class SelectorError(StoreError):
    """Selector is malformed or uses an unsupported operator."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status=400, error="invalid_selector", reason=message)


def _json_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def resolve_path(doc: Any, path: str) -> Any:
    """Resolve a dotted field path; returns a sentinel when absent."""
    current = doc
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def matches(doc: dict[str, Any], selector: dict[str, Any] | None) -> bool:
    """Return True if a document satisfies a selector."""
    if not selector:
        return True
    if not isinstance(selector, dict):
        raise SelectorError(f"Selector must be an object, got {type(selector).__name__}")
    return _match_object(doc, selector)


def _match_object(doc: Any, selector: dict[str, Any]) -> bool:
    for key, condition in selector.items():
        if key in _COMBINATION_OPERATORS:
            if not _match_combination(doc, key, condition):
                return False
        elif key.startswith("$"):
            raise SelectorError(f"Unknown top-level operator: {key}")
        else:
            if not _match_field(resolve_path(doc, key), condition):
                return False
    return True


def _match_combination(doc: Any, operator: str, condition: Any) -> bool:
    if operator == "$not":
        if not isinstance(condition, dict):
            raise SelectorError("$not requires an object")
        return not _match_object(doc, condition)

    if not isinstance(condition, list):
        raise SelectorError(f"{operator} requires an array")
    results = (_match_object(doc, sub) for sub in condition)
    if operator == "$and":
        return all(results)
    if operator == "$or":
        return any(results)
    return not any(results)


def _is_operator_object(condition: Any) -> bool:
    return isinstance(condition, dict) and bool(condition) and all(
        key.startswith("$") for key in condition
    )


def _match_field(value: Any, condition: Any) -> bool:
    if _is_operator_object(condition):
        return all(
            _match_operator(value, operator, argument)
            for operator, argument in condition.items()
        )
    if isinstance(condition, dict) and condition:
        # Nested sub-selector: {"owner": {"name": "alice"}}
        if value is _MISSING or not isinstance(value, dict):
            return False
        return _match_object(value, condition)
    return _match_operator(value, "$eq", condition)


def _match_operator(value: Any, operator: str, argument: Any) -> bool:
    present = value is not _MISSING

    if operator == "$exists":
        return present == bool(argument)
    if operator == "$ne":
        return not present or collate(value, argument) != 0
    if operator == "$nin":
        if not isinstance(argument, list):
            raise SelectorError("$nin requires an array")
        return not present or all(collate(value, item) != 0 for item in argument)
    if operator == "$not":
        return not _match_field(value, argument)
    if operator in _COMBINATION_OPERATORS:
        if not isinstance(argument, list):
            raise SelectorError(f"{operator} requires an array")
        results = (_match_field(value, sub) for sub in argument)
        if operator == "$and":
            return all(results)
        if operator == "$or":
            return any(results)
        return not any(results)

    if not present:
        return False

    if operator == "$eq":
        return collate(value, argument) == 0
    if operator == "$gt":
        return collate(value, argument) > 0
    if operator == "$gte":
        return collate(value, argument) >= 0
    if operator == "$lt":
        return collate(value, argument) < 0
    if operator == "$lte":
        return collate(value, argument) <= 0
    if operator == "$in":
        if not isinstance(argument, list):
            raise SelectorError("$in requires an array")
        return any(collate(value, item) == 0 for item in argument)
    if operator == "$type":
        return _json_type(value) == argument
    if operator == "$regex":
        return isinstance(value, str) and re.search(argument, value) is not None
    if operator == "$size":
        return isinstance(value, list) and len(value) == argument
    if operator == "$mod":
        if not (isinstance(argument, list) and len(argument) == 2):
            raise SelectorError("$mod requires [divisor, remainder]")
        divisor, remainder = argument
        return (
            isinstance(value, int)
            and not isinstance(value, bool)
            and divisor != 0
            and value % divisor == remainder
        )
    if operator == "$all":
        if not isinstance(argument, list):
            raise SelectorError("$all requires an array")
        return isinstance(value, list) and all(
            any(collate(item, wanted) == 0 for item in value) for wanted in argument
        )
    if operator == "$elemMatch":
        return isinstance(value, list) and any(_match_field(item, argument) for item in value)
    if operator == "$allMatch":
        return (
            isinstance(value, list)
            and bool(value)
            and all(_match_field(item, argument) for item in value)
        )

    raise SelectorError(f"Unknown operator: {operator}")
