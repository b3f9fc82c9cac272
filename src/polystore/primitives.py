"""Primitive values, their canonical string form, and item keys."""

from __future__ import annotations

import base64
import enum
import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, Union

from pydantic import BaseModel, ConfigDict, field_validator

from polystore.errors import InvalidArgumentError

PrimitiveValue = Union[str, int, float, bool, bytes]

_INT_RE = re.compile(r"^(0|-?[1-9][0-9]*)$")


class PrimitiveKind(enum.Enum):
    STRING = "string"
    INTEGER = "integer"
    DOUBLE = "double"
    BOOLEAN = "boolean"
    BYTES = "bytes"


class KeyValueType(enum.Enum):
    """Declared type of a key-table's partition key."""

    STRING = "string"
    INTEGER = "integer"
    DOUBLE = "double"


def _canonical_float(value: float) -> str:
    if math.isfinite(value) and value.is_integer():
        return str(int(value))
    return repr(value)


def canonical_string(value: Any) -> str | None:
    """Return the canonical string of a JSON scalar, or None for containers/null.

    Booleans render as ``True``/``False``, integral doubles drop their
    fractional part, and bytes render as standard base64. Array membership
    and removal compare elements by this form, so ``3``, ``3.0`` and ``"3"``
    are the same element.
    """
    if isinstance(value, bool):
        return "True" if value else "False"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _canonical_float(value)
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    return None


def is_canonical_number(text: str) -> bool:
    """True if some int or float renders canonically as exactly ``text``."""
    if _INT_RE.match(text):
        return True
    try:
        parsed = float(text)
    except ValueError:
        return False
    return math.isfinite(parsed) and _canonical_float(parsed) == text


def parse_canonical_number(text: str) -> int | float:
    if _INT_RE.match(text):
        return int(text)
    return float(text)


@dataclass(frozen=True)
class Primitive:
    """A tagged scalar: string, integer, double, boolean or bytes."""

    kind: PrimitiveKind
    value: PrimitiveValue

    @classmethod
    def of(cls, value: Any) -> Primitive:
        if isinstance(value, Primitive):
            return value
        if isinstance(value, bool):
            return cls(PrimitiveKind.BOOLEAN, value)
        if isinstance(value, int):
            return cls(PrimitiveKind.INTEGER, value)
        if isinstance(value, float):
            if not math.isfinite(value):
                raise InvalidArgumentError(f"Non-finite double is not a valid primitive: {value}")
            return cls(PrimitiveKind.DOUBLE, value)
        if isinstance(value, str):
            return cls(PrimitiveKind.STRING, value)
        if isinstance(value, (bytes, bytearray)):
            return cls(PrimitiveKind.BYTES, bytes(value))
        raise InvalidArgumentError(f"Unsupported primitive type: {type(value).__name__}")

    @property
    def is_numeric(self) -> bool:
        return self.kind in (PrimitiveKind.INTEGER, PrimitiveKind.DOUBLE)

    def canonical(self) -> str:
        text = canonical_string(self.value)
        assert text is not None
        return text

    def to_json(self) -> Any:
        """Document form: bytes become base64 text, everything else is unchanged."""
        if self.kind is PrimitiveKind.BYTES:
            return self.canonical()
        return self.value

    def __str__(self) -> str:
        return self.canonical()


def coerce_elements(elements: Iterable[Any]) -> list[Primitive]:
    """Convert an element list to primitives, requiring a non-empty single-kind list."""
    primitives = [Primitive.of(e) for e in elements]
    if not primitives:
        raise InvalidArgumentError("Element array must not be empty")
    kinds = {p.kind for p in primitives}
    if len(kinds) > 1:
        names = sorted(k.value for k in kinds)
        raise InvalidArgumentError(f"Element array must hold a single primitive kind, got {names}")
    return primitives


class DbKey(BaseModel):
    """Name and value of the partition key attribute that identifies an item."""

    model_config = ConfigDict(frozen=True)

    name: str
    value: Union[str, int, float, bytes]

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Key name must not be empty")
        if v != v.strip():
            raise ValueError(f"Key name must not have leading or trailing whitespace: {v!r}")
        return v

    @field_validator("value", mode="before")
    @classmethod
    def _check_value(cls, v: Any) -> Any:
        if isinstance(v, bool) or not isinstance(v, (str, int, float, bytes, bytearray)):
            raise ValueError(f"Key value must be str, int, float or bytes, got {type(v).__name__}")
        if isinstance(v, float) and not math.isfinite(v):
            raise ValueError("Key value must be a finite number")
        if isinstance(v, bytearray):
            return bytes(v)
        return v

    @property
    def primitive(self) -> Primitive:
        return Primitive.of(self.value)

    @property
    def key_type(self) -> KeyValueType:
        return key_type_for(self.primitive)

    @property
    def stored_value(self) -> str | int | float:
        """The key as it is written into the item document."""
        return self.primitive.to_json()

    def __str__(self) -> str:
        return f"{self.name}={self.primitive.canonical()}"


def key_type_for(primitive: Primitive) -> KeyValueType:
    if primitive.kind is PrimitiveKind.INTEGER:
        return KeyValueType.INTEGER
    if primitive.kind is PrimitiveKind.DOUBLE:
        return KeyValueType.DOUBLE
    if primitive.kind in (PrimitiveKind.STRING, PrimitiveKind.BYTES):
        return KeyValueType.STRING
    raise InvalidArgumentError(f"{primitive.kind.value} values cannot be used as keys")
