"""Compile condition trees into DynamoDB expression syntax.

Every path segment and literal becomes a placeholder (``#nK`` / ``:vK``)
allocated from one ExpressionContext, so a request that carries several
expressions (update + condition, or nested And/Or) never reuses an index.

Compiled comparisons are guarded with ``attribute_type`` so that the
native result matches ``conditions.evaluate``: a cross-kind comparison
is false on both sides rather than DynamoDB's "types differ, so <> is
true".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from polystore.conditions import (
    AndCoupling,
    ArrayElementExists,
    ArrayElementNotExists,
    AttributePath,
    Compare,
    Condition,
    ConditionCoupling,
    EmptyCoupling,
    Exists,
    NotExists,
    OrCoupling,
    SingleCoupling,
    as_coupling,
)
from polystore.primitives import (
    Primitive,
    PrimitiveKind,
    is_canonical_number,
    parse_canonical_number,
)

# Significant digits a DynamoDB number carries.
NUMBER_PRECISION = 38

_DYNAMO_OPS = {"==": "=", "!=": "<>", ">": ">", ">=": ">=", "<": "<", "<=": "<="}


@dataclass
class ExpressionContext:
    """Placeholder allocator shared by every expression of one request."""

    names: dict[str, str] = field(default_factory=dict)
    values: dict[str, Any] = field(default_factory=dict)
    _name_index: dict[str, str] = field(default_factory=dict)
    _next_name: int = 0
    _next_value: int = 0

    def name(self, segment: str) -> str:
        placeholder = self._name_index.get(segment)
        if placeholder is None:
            placeholder = f"#n{self._next_name}"
            self._next_name += 1
            self._name_index[segment] = placeholder
            self.names[placeholder] = segment
        return placeholder

    def path(self, segments: tuple[str, ...] | list[str]) -> str:
        return ".".join(self.name(s) for s in segments)

    def value(self, literal: Any) -> str:
        placeholder = f":v{self._next_value}"
        self._next_value += 1
        self.values[placeholder] = literal
        return placeholder

    def type_guard(self, path_expr: str, type_code: str) -> str:
        return f"attribute_type({path_expr}, {self.value(type_code)})"


@dataclass(frozen=True)
class CompiledExpression:
    expression: str
    names: dict[str, str]
    values: dict[str, Any]


def literal_value(literal: Primitive) -> Any:
    """Placeholder value for a comparison literal; bytes compare as their base64 text."""
    if literal.is_numeric or literal.kind is PrimitiveKind.BOOLEAN:
        return literal.value
    return literal.canonical()


def _storable_number(number: int | float) -> int | float | None:
    if isinstance(number, float) or len(str(abs(number))) <= NUMBER_PRECISION:
        return number
    try:
        as_float = float(number)
    except OverflowError:
        return None
    return as_float if int(as_float) == number else None


def membership_values(literal: Primitive) -> list[Any]:
    """Every stored element whose canonical string equals the literal's.

    ``contains`` on a list matches by type as well as value, so the string,
    number and boolean spellings of the literal are each tested.
    Integers wider than NUMBER_PRECISION digits can only be stored as the
    double they came from, so they are tested in that form, or not at all.
    """
    text = literal.canonical()
    forms: list[Any] = [text]
    if is_canonical_number(text):
        number = _storable_number(parse_canonical_number(text))
        if number is not None:
            forms.append(number)
    if text in ("True", "False"):
        forms.append(text == "True")
    return forms


def _type_code(literal: Primitive) -> str:
    if literal.is_numeric:
        return "N"
    if literal.kind is PrimitiveKind.BOOLEAN:
        return "BOOL"
    return "S"


def _compile_membership(parsed: AttributePath, literal: Primitive, ctx: ExpressionContext) -> str:
    path_expr = ctx.path(parsed.segments)
    guard = ctx.type_guard(path_expr, "L")
    contains = " OR ".join(
        f"contains({path_expr}, {ctx.value(form)})" for form in membership_values(literal)
    )
    return f"({guard} AND ({contains}))"


def compile_condition(condition: Condition, ctx: ExpressionContext) -> str:
    """Compile one leaf condition."""
    if isinstance(condition, Exists):
        return f"attribute_exists({ctx.path(condition.attribute_path.segments)})"
    if isinstance(condition, NotExists):
        return f"attribute_not_exists({ctx.path(condition.attribute_path.segments)})"
    if isinstance(condition, Compare):
        parsed = condition.attribute_path
        path_expr = ctx.path(parsed.segments)
        op = _DYNAMO_OPS[condition.op]
        if parsed.size:
            guard = ctx.type_guard(path_expr, "L")
            operand = ctx.value(literal_value(condition.value))
            return f"({guard} AND size({path_expr}) {op} {operand})"
        guard = ctx.type_guard(path_expr, _type_code(condition.value))
        operand = ctx.value(literal_value(condition.value))
        return f"({guard} AND {path_expr} {op} {operand})"
    if isinstance(condition, ArrayElementExists):
        return _compile_membership(condition.attribute_path, condition.value, ctx)
    if isinstance(condition, ArrayElementNotExists):
        return f"(NOT {_compile_membership(condition.attribute_path, condition.value, ctx)})"
    raise ValueError(f"Unknown condition type: {type(condition)}")


def compile_coupling(coupling: ConditionCoupling, ctx: ExpressionContext) -> str | None:
    """Compile a condition tree; returns None for an empty tree."""
    if isinstance(coupling, EmptyCoupling):
        return None
    if isinstance(coupling, SingleCoupling):
        return compile_condition(coupling.condition, ctx)
    if isinstance(coupling, (AndCoupling, OrCoupling)):
        left = compile_coupling(coupling.left, ctx)
        right = compile_coupling(coupling.right, ctx)
        if left is None:
            return right
        if right is None:
            return left
        joiner = " AND " if isinstance(coupling, AndCoupling) else " OR "
        return f"({left}{joiner}{right})"
    raise ValueError(f"Unknown condition coupling type: {type(coupling)}")


def compile_expression(
    conditions: ConditionCoupling | Condition | None,
    ctx: ExpressionContext | None = None,
) -> CompiledExpression | None:
    """Compile a full tree into a standalone expression with its placeholder maps."""
    ctx = ctx if ctx is not None else ExpressionContext()
    expression = compile_coupling(as_coupling(conditions), ctx)
    if expression is None:
        return None
    return CompiledExpression(expression=expression, names=dict(ctx.names), values=dict(ctx.values))


def combine_and(*parts: str | None) -> str | None:
    present = [p for p in parts if p]
    if not present:
        return None
    if len(present) == 1:
        return present[0]
    return "(" + " AND ".join(present) + ")"
