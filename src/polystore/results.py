"""Result and status types returned by every public polystore operation."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class Status(enum.Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    PRECONDITION_FAILED = "precondition_failed"
    TIMEOUT = "timeout"
    TOO_MUCH_CONTENTION = "too_much_contention"
    INVALID_ARGUMENT = "invalid_argument"
    SERVICE_UNAVAILABLE = "service_unavailable"
    INTERNAL_ERROR = "internal_error"


_HTTP_STATUS = {
    Status.OK: 200,
    Status.NOT_FOUND: 404,
    Status.CONFLICT: 409,
    Status.PRECONDITION_FAILED: 412,
    Status.TIMEOUT: 408,
    Status.TOO_MUCH_CONTENTION: 409,
    Status.INVALID_ARGUMENT: 400,
    Status.SERVICE_UNAVAILABLE: 503,
    Status.INTERNAL_ERROR: 500,
}


class ReturnBehavior(enum.Enum):
    """Which version of the item a mutation hands back."""

    DO_NOT_RETURN = "do_not_return"
    RETURN_OLD_VALUES = "return_old_values"
    RETURN_NEW_VALUES = "return_new_values"


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Outcome of a public operation: payload on success, status and message otherwise."""

    status: Status
    data: T | None = None
    message: str = ""

    @property
    def success(self) -> bool:
        return self.status is Status.OK

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self.status]

    @classmethod
    def ok(cls, data: T | None = None) -> OperationResult[T]:
        return cls(status=Status.OK, data=data)

    @classmethod
    def failure(cls, status: Status, message: str) -> OperationResult[T]:
        if status is Status.OK:
            raise ValueError("failure() requires a non-OK status")
        return cls(status=status, message=message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status.value,
            "http_status": self.http_status,
            "data": self.data,
            "message": self.message,
        }


@dataclass(frozen=True)
class ScanPage:
    """One page of a paginated scan.

    ``keys`` is the sorted key attribute name list on the first page and
    None on continuation pages. ``next_token`` is None once every
    key-table is exhausted; it is the only continuation signal, since
    filtered pages can be short while more data remains.
    """

    keys: list[str] | None
    items: list[dict[str, Any]]
    next_token: str | None
    total_count: int | None = None
