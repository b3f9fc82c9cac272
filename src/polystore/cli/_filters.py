"""CLI filter token parser: converts CLI triples to a condition tree."""

from __future__ import annotations

import json
from typing import Any, Callable

from polystore.conditions import (
    EMPTY,
    ConditionCoupling,
    array_element_exists,
    array_element_not_exists,
    attribute_equals,
    attribute_exists,
    attribute_greater,
    attribute_greater_or_equal,
    attribute_less,
    attribute_less_or_equal,
    attribute_not_equals,
    attribute_not_exists,
)

# Map CLI operator tokens to condition builders
_VALUE_OPS: dict[str, Callable[[str, Any], ConditionCoupling]] = {
    "eq": attribute_equals,
    "ne": attribute_not_equals,
    "gt": attribute_greater,
    "gte": attribute_greater_or_equal,
    "lt": attribute_less,
    "lte": attribute_less_or_equal,
    "contains": array_element_exists,
    "not_contains": array_element_not_exists,
}

_EXISTENCE_OPS: dict[str, Callable[[str], ConditionCoupling]] = {
    "exists": attribute_exists,
    "not_exists": attribute_not_exists,
}


def parse_cli_filters(triples: list[tuple[str, str, str]]) -> ConditionCoupling | None:
    """Parse CLI filter triples (PATH, OP, VALUE_JSON) into a condition tree.

    Multiple filters are AND-combined. ``exists``/``not_exists`` ignore
    the value token.
    """
    if not triples:
        return None

    coupling = EMPTY
    for path, op_token, value_json in triples:
        if op_token in _EXISTENCE_OPS:
            coupling = coupling & _EXISTENCE_OPS[op_token](path)
            continue
        builder = _VALUE_OPS.get(op_token)
        if builder is None:
            valid = sorted([*_VALUE_OPS, *_EXISTENCE_OPS])
            raise ValueError(
                f"Unknown filter operator '{op_token}'. Valid operators: {', '.join(valid)}"
            )
        coupling = coupling & builder(path, json.loads(value_json))
    return coupling


def split_filter_args(filter_args: list[str] | None) -> list[tuple[str, str, str]]:
    """Group --filter values into triples.

    Accepts either three separate values per filter or one
    space-separated ``"PATH OP VALUE_JSON"`` string.
    """
    if not filter_args:
        return []
    if len(filter_args) % 3 == 0 and not any(" " in a for a in filter_args[::3]):
        return [
            (filter_args[i], filter_args[i + 1], filter_args[i + 2])
            for i in range(0, len(filter_args), 3)
        ]
    triples: list[tuple[str, str, str]] = []
    for arg in filter_args:
        parts = arg.split(None, 2)
        if len(parts) == 2 and parts[1] in _EXISTENCE_OPS:
            parts.append("null")
        if len(parts) != 3:
            raise ValueError(f"Invalid filter (expected 'PATH OP VALUE_JSON'): {arg}")
        triples.append((parts[0], parts[1], parts[2]))
    return triples
