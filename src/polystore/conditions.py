"""Condition trees over nested document paths, plus the in-process evaluator."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from polystore.errors import InvalidArgumentError, InvalidPathError
from polystore.primitives import Primitive, PrimitiveKind, canonical_string

# --- Path parsing ---

_SIZE_RE = re.compile(r"^size\((.*)\)$")

COMPARISON_OPS = ("==", "!=", ">", ">=", "<", "<=")
_ORDERED_OPS = (">", ">=", "<", "<=")


@dataclass(frozen=True)
class AttributePath:
    """A parsed dot-separated path, optionally wrapped in ``size(...)``."""

    segments: tuple[str, ...]
    size: bool = False

    def __str__(self) -> str:
        dotted = ".".join(self.segments)
        return f"size({dotted})" if self.size else dotted


def parse_path(path: str, *, allow_size: bool = False) -> AttributePath:
    """Parse and validate a condition path.

    Raises InvalidPathError for empty segments and for index syntax:
    array elements are addressed with ArrayElementExists/NotExists, never
    with ``a[0]``.
    """
    if not isinstance(path, str) or not path.strip():
        raise InvalidPathError("Path must not be empty")
    text = path.strip()
    size = False
    m = _SIZE_RE.match(text)
    if m:
        if not allow_size:
            raise InvalidPathError(f"size() is only valid in comparisons: '{path}'")
        size = True
        text = m.group(1).strip()
    if "[" in text or "]" in text:
        raise InvalidPathError(
            f"Index syntax is not supported in path '{path}'; "
            "use ArrayElementExists or ArrayElementNotExists for array elements"
        )
    segments = tuple(s.strip() for s in text.split("."))
    if not segments or any(not s for s in segments):
        raise InvalidPathError(f"Path '{path}' has an empty segment")
    return AttributePath(segments=segments, size=size)


_MISSING = object()


def resolve_path(document: dict[str, Any], segments: tuple[str, ...]) -> Any:
    """Walk ``segments`` through nested dicts; returns ``_MISSING`` on any gap."""
    current: Any = document
    for segment in segments:
        if not isinstance(current, dict) or segment not in current:
            return _MISSING
        current = current[segment]
    return current


# --- Conditions ---


class Condition:
    """Base class for a single predicate on one path."""

    path: str

    @property
    def attribute_path(self) -> AttributePath:
        return parse_path(self.path, allow_size=isinstance(self, Compare))


@dataclass(frozen=True)
class Exists(Condition):
    path: str

    def __post_init__(self) -> None:
        parse_path(self.path)


@dataclass(frozen=True)
class NotExists(Condition):
    path: str

    def __post_init__(self) -> None:
        parse_path(self.path)


@dataclass(frozen=True)
class Compare(Condition):
    """``path op value``; ``path`` may be ``size(path)`` to compare an array's length."""

    path: str
    op: str
    value: Primitive

    def __post_init__(self) -> None:
        parsed = parse_path(self.path, allow_size=True)
        if self.op not in COMPARISON_OPS:
            raise InvalidArgumentError(f"Unknown comparison operator '{self.op}'")
        value = Primitive.of(self.value)
        object.__setattr__(self, "value", value)
        if parsed.size and not value.is_numeric:
            raise InvalidArgumentError("size() can only be compared against a number")
        if value.kind is PrimitiveKind.BOOLEAN and self.op in _ORDERED_OPS:
            raise InvalidArgumentError(f"Booleans support only == and !=, got '{self.op}'")


@dataclass(frozen=True)
class ArrayElementExists(Condition):
    path: str
    value: Primitive

    def __post_init__(self) -> None:
        parse_path(self.path)
        object.__setattr__(self, "value", Primitive.of(self.value))


@dataclass(frozen=True)
class ArrayElementNotExists(Condition):
    path: str
    value: Primitive

    def __post_init__(self) -> None:
        parse_path(self.path)
        object.__setattr__(self, "value", Primitive.of(self.value))


# --- Couplings ---


class ConditionCoupling:
    """Boolean tree of conditions. ``&`` and ``|`` build And/Or nodes."""

    def __and__(self, other: ConditionCoupling) -> ConditionCoupling:
        if isinstance(self, EmptyCoupling):
            return other
        if isinstance(other, EmptyCoupling):
            return self
        return AndCoupling(self, other)

    def __or__(self, other: ConditionCoupling) -> ConditionCoupling:
        if isinstance(self, EmptyCoupling):
            return other
        if isinstance(other, EmptyCoupling):
            return self
        return OrCoupling(self, other)

    @property
    def is_empty(self) -> bool:
        return isinstance(self, EmptyCoupling)

    def conditions(self) -> list[Condition]:
        """All leaf conditions, left to right."""
        if isinstance(self, SingleCoupling):
            return [self.condition]
        if isinstance(self, (AndCoupling, OrCoupling)):
            return self.left.conditions() + self.right.conditions()
        return []


@dataclass(frozen=True)
class EmptyCoupling(ConditionCoupling):
    pass


@dataclass(frozen=True)
class SingleCoupling(ConditionCoupling):
    condition: Condition


@dataclass(frozen=True)
class AndCoupling(ConditionCoupling):
    left: ConditionCoupling
    right: ConditionCoupling


@dataclass(frozen=True)
class OrCoupling(ConditionCoupling):
    left: ConditionCoupling
    right: ConditionCoupling


EMPTY = EmptyCoupling()


def as_coupling(conditions: ConditionCoupling | Condition | None) -> ConditionCoupling:
    if conditions is None:
        return EMPTY
    if isinstance(conditions, Condition):
        return SingleCoupling(conditions)
    return conditions


# --- Builders ---


def attribute_exists(path: str) -> ConditionCoupling:
    return SingleCoupling(Exists(path))


def attribute_not_exists(path: str) -> ConditionCoupling:
    return SingleCoupling(NotExists(path))


def attribute_equals(path: str, value: Any) -> ConditionCoupling:
    return SingleCoupling(Compare(path, "==", value))


def attribute_not_equals(path: str, value: Any) -> ConditionCoupling:
    return SingleCoupling(Compare(path, "!=", value))


def attribute_greater(path: str, value: Any) -> ConditionCoupling:
    return SingleCoupling(Compare(path, ">", value))


def attribute_greater_or_equal(path: str, value: Any) -> ConditionCoupling:
    return SingleCoupling(Compare(path, ">=", value))


def attribute_less(path: str, value: Any) -> ConditionCoupling:
    return SingleCoupling(Compare(path, "<", value))


def attribute_less_or_equal(path: str, value: Any) -> ConditionCoupling:
    return SingleCoupling(Compare(path, "<=", value))


def array_element_exists(path: str, value: Any) -> ConditionCoupling:
    return SingleCoupling(ArrayElementExists(path, value))


def array_element_not_exists(path: str, value: Any) -> ConditionCoupling:
    return SingleCoupling(ArrayElementNotExists(path, value))


# --- In-process evaluation ---


def _is_number(node: Any) -> bool:
    return isinstance(node, (int, float)) and not isinstance(node, bool)


def _apply_op(left: Any, op: str, right: Any) -> bool:
    if op == "==":
        return bool(left == right)
    if op == "!=":
        return bool(left != right)
    if op == ">":
        return bool(left > right)
    if op == ">=":
        return bool(left >= right)
    if op == "<":
        return bool(left < right)
    if op == "<=":
        return bool(left <= right)
    raise InvalidArgumentError(f"Unknown comparison operator '{op}'")


def _compare(node: Any, op: str, literal: Primitive) -> bool:
    if node is _MISSING:
        return False
    if literal.is_numeric:
        if not _is_number(node):
            return False
        return _apply_op(float(node), op, float(literal.value))  # type: ignore[arg-type]
    if literal.kind is PrimitiveKind.BOOLEAN:
        if not isinstance(node, bool):
            return False
        return _apply_op(node, op, literal.value)
    # strings, and bytes in their stored base64 form
    if not isinstance(node, str):
        return False
    return _apply_op(node, op, literal.canonical())


def _contains_element(node: Any, literal: Primitive) -> bool:
    if not isinstance(node, list):
        return False
    wanted = literal.canonical()
    return any(canonical_string(element) == wanted for element in node)


def evaluate_condition(condition: Condition, document: dict[str, Any]) -> bool:
    if isinstance(condition, Exists):
        return resolve_path(document, condition.attribute_path.segments) is not _MISSING
    if isinstance(condition, NotExists):
        return resolve_path(document, condition.attribute_path.segments) is _MISSING
    if isinstance(condition, Compare):
        parsed = condition.attribute_path
        node = resolve_path(document, parsed.segments)
        if parsed.size:
            if not isinstance(node, list):
                return False
            return _apply_op(float(len(node)), condition.op, float(condition.value.value))  # type: ignore[arg-type]
        return _compare(node, condition.op, condition.value)
    if isinstance(condition, ArrayElementExists):
        node = resolve_path(document, condition.attribute_path.segments)
        return _contains_element(node, condition.value)
    if isinstance(condition, ArrayElementNotExists):
        node = resolve_path(document, condition.attribute_path.segments)
        return not _contains_element(node, condition.value)
    raise ValueError(f"Unknown condition type: {type(condition)}")


def evaluate(coupling: ConditionCoupling | Condition | None, document: dict[str, Any] | None) -> bool:
    """Evaluate a condition tree against a document; an absent item is ``{}``."""
    coupling = as_coupling(coupling)
    doc = document if document is not None else {}
    if isinstance(coupling, EmptyCoupling):
        return True
    if isinstance(coupling, SingleCoupling):
        return evaluate_condition(coupling.condition, doc)
    if isinstance(coupling, AndCoupling):
        return evaluate(coupling.left, doc) and evaluate(coupling.right, doc)
    if isinstance(coupling, OrCoupling):
        return evaluate(coupling.left, doc) or evaluate(coupling.right, doc)
    raise ValueError(f"Unknown condition coupling type: {type(coupling)}")
