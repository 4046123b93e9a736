"""
CouchDB collation and map/reduce view execution for in-memory stores.

A view is a mapping {"map": fn, "reduce": fn_or_builtin}. The map
function receives a document and returns (or yields) (key, value)
pairs - the Python counterpart of calling emit(key, value):

    def by_status(doc):
        if "status" in doc:
            yield doc["status"], 1

Reduce may be a callable reduce(keys, values, rereduce) or one of the
builtins "_count", "_sum" and "_stats".

Invariants:
    - Rows are ordered by CouchDB collation of the key, then by doc id
    - Collation never raises on mixed types:
      null < false < true < numbers < strings < arrays < objects
    - Strings compare by code point (no ICU rules)
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable, Iterable
from typing import Any

from .base import StoreError

logger = logging.getLogger(__name__)

_BUILTIN_REDUCERS = ("_count", "_sum", "_stats")


class ViewError(StoreError):
    """View definition is invalid or its functions failed."""

    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message, status=status, error="query_parse_error", reason=message)


def _type_rank(value: Any) -> int:
    if value is None:
        return 0
    if value is False:
        return 1
    if value is True:
        return 2
    if isinstance(value, (int, float)):
        return 3
    if isinstance(value, str):
        return 4
    if isinstance(value, (list, tuple)):
        return 5
    if isinstance(value, dict):
        return 6
    return 7


def collate(left: Any, right: Any) -> int:
    """Compare two JSON values using CouchDB view collation.

    Returns:
        Negative, zero or positive like a classic cmp()
    """
    left_rank, right_rank = _type_rank(left), _type_rank(right)
    if left_rank != right_rank:
        return left_rank - right_rank

    if left_rank in (3, 4):
        return (left > right) - (left < right)

    if left_rank == 5:
        for left_item, right_item in zip(left, right):
            result = collate(left_item, right_item)
            if result:
                return result
        return len(left) - len(right)

    if left_rank == 6:
        for (left_key, left_value), (right_key, right_value) in zip(left.items(), right.items()):
            result = collate(left_key, right_key) or collate(left_value, right_value)
            if result:
                return result
        return len(left) - len(right)

    if left_rank == 7:
        return collate(repr(left), repr(right))

    return 0


collation_key = functools.cmp_to_key(collate)


def _row_sort_key(row: dict[str, Any]) -> tuple[Any, Any]:
    return collation_key(row["key"]), collation_key(row["id"])


def normalize_view(view: Any) -> dict[str, Any]:
    """Accept a bare map callable or a {"map", "reduce"} mapping."""
    if callable(view):
        return {"map": view}
    if isinstance(view, dict) and "map" in view:
        return view
    raise ViewError("View requires at least a map function")


def map_documents(
    docs: Iterable[dict[str, Any]],
    map_fn: Callable[[dict[str, Any]], Any],
) -> list[dict[str, Any]]:
    """Run a map function over documents and return sorted rows."""
    if not callable(map_fn):
        raise ViewError(
            "Map functions must be Python callables for in-memory databases"
        )

    rows: list[dict[str, Any]] = []
    for doc in docs:
        try:
            # Generators raise while being consumed, so drain them here
            emitted = list(map_fn(doc) or ())
        except Exception as e:
            # CouchDB skips documents whose map function throws
            logger.debug(
                "Map function raised, skipping document",
                extra={"doc_id": doc.get("_id"), "error": repr(e)},
            )
            continue
        for pair in emitted:
            key, value = pair
            rows.append({"id": doc["_id"], "key": key, "value": value})

    rows.sort(key=_row_sort_key)
    return rows


def _in_range(key: Any, options: dict[str, Any]) -> bool:
    descending = bool(options.get("descending", False))
    inclusive_end = options.get("inclusive_end", True)

    if "key" in options:
        return collate(key, options["key"]) == 0

    start = options.get("startkey", options.get("start_key"))
    end = options.get("endkey", options.get("end_key"))

    if start is not None:
        order = collate(key, start)
        if (order < 0 and not descending) or (order > 0 and descending):
            return False
    if end is not None:
        order = collate(key, end)
        if descending:
            if order < 0 or (order == 0 and not inclusive_end):
                return False
        elif order > 0 or (order == 0 and not inclusive_end):
            return False
    return True


def _sum(values: list[Any]) -> Any:
    total: Any = 0
    for value in values:
        if isinstance(value, list):
            if not isinstance(total, list):
                total = [total] if total else []
            width = max(len(total), len(value))
            total = [
                (total[i] if i < len(total) else 0) + (value[i] if i < len(value) else 0)
                for i in range(width)
            ]
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            if isinstance(total, list):
                raise ViewError("_sum cannot mix numbers and arrays")
            total += value
        else:
            raise ViewError(f"_sum requires numbers, got {type(value).__name__}")
    return total


def _stats(values: list[Any]) -> dict[str, Any]:
    numbers = [v for v in values if isinstance(v, (int, float)) and not isinstance(v, bool)]
    if len(numbers) != len(values):
        raise ViewError("_stats requires numeric values")
    if not numbers:
        return {"sum": 0, "count": 0, "min": 0, "max": 0, "sumsqr": 0}
    return {
        "sum": sum(numbers),
        "count": len(numbers),
        "min": min(numbers),
        "max": max(numbers),
        "sumsqr": sum(n * n for n in numbers),
    }


def reduce_rows(reduce_fn: Any, rows: list[dict[str, Any]]) -> Any:
    """Reduce a group of rows with a builtin or custom reducer."""
    values = [row["value"] for row in rows]
    if reduce_fn == "_count":
        return len(rows)
    if reduce_fn == "_sum":
        return _sum(values)
    if reduce_fn == "_stats":
        return _stats(values)
    if callable(reduce_fn):
        keys = [[row["key"], row["id"]] for row in rows]
        try:
            return reduce_fn(keys, values, False)
        except Exception as e:
            raise ViewError(f"Reduce function failed: {e}", status=500) from e
    raise ViewError(f"Unsupported reduce function: {reduce_fn!r}")


def _group_key(key: Any, group_level: int | None) -> Any:
    if group_level is None:
        return key
    if isinstance(key, list):
        return key[:group_level]
    return key


def run_view(
    docs: list[dict[str, Any]],
    view: Any,
    options: dict[str, Any],
    load_doc: Callable[[str], dict[str, Any] | None] | None = None,
) -> dict[str, Any]:
    """Execute a view over documents.

    Args:
        docs: Candidate documents (design documents already excluded)
        view: {"map": fn, "reduce": ...} or a bare map callable
        options: Query options (key, keys, startkey, endkey, inclusive_end,
            descending, skip, limit, include_docs, reduce, group, group_level)
        load_doc: Resolves a doc id for include_docs

    Returns:
        {"total_rows", "offset", "rows"} or {"rows"} for reduced results
    """
    view = normalize_view(view)
    all_rows = map_documents(docs, view["map"])
    descending = bool(options.get("descending", False))

    if "keys" in options:
        rows = []
        for wanted in options["keys"]:
            rows.extend(row for row in all_rows if collate(row["key"], wanted) == 0)
    else:
        rows = [row for row in all_rows if _in_range(row["key"], options)]
        if descending:
            rows.reverse()

    reduce_fn = view.get("reduce")
    use_reduce = reduce_fn is not None and options.get("reduce", True)

    if use_reduce:
        group_level = options.get("group_level")
        if options.get("group") or group_level is not None:
            groups: list[tuple[Any, list[dict[str, Any]]]] = []
            for row in rows:
                key = _group_key(row["key"], group_level)
                if groups and collate(groups[-1][0], key) == 0:
                    groups[-1][1].append(row)
                else:
                    groups.append((key, [row]))
            reduced = [
                {"key": key, "value": reduce_rows(reduce_fn, members)}
                for key, members in groups
            ]
        else:
            reduced = [{"key": None, "value": reduce_rows(reduce_fn, rows)}] if rows else []
        skip = int(options.get("skip", 0))
        limit = options.get("limit")
        reduced = reduced[skip:]
        if limit is not None:
            reduced = reduced[: int(limit)]
        return {"rows": reduced}

    skip = int(options.get("skip", 0))
    limit = options.get("limit")
    page = rows[skip:]
    if limit is not None:
        page = page[: int(limit)]

    if options.get("include_docs"):
        for row in page:
            row["doc"] = load_doc(row["id"]) if load_doc else None

    return {"total_rows": len(all_rows), "offset": skip, "rows": page}
