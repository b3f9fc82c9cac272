"""Process exit codes used by the polystore CLI."""

from __future__ import annotations

from polystore.results import Status

SUCCESS = 0
GENERAL_ERROR = 1
USAGE_ERROR = 2
DATABASE_ERROR = 3
NOT_FOUND = 4
PRECONDITION_FAILED = 5
CONFLICT = 6

_BY_STATUS = {
    Status.OK: SUCCESS,
    Status.NOT_FOUND: NOT_FOUND,
    Status.PRECONDITION_FAILED: PRECONDITION_FAILED,
    Status.CONFLICT: CONFLICT,
    Status.TOO_MUCH_CONTENTION: CONFLICT,
    Status.INVALID_ARGUMENT: USAGE_ERROR,
}


def for_status(status: Status) -> int:
    return _BY_STATUS.get(status, DATABASE_ERROR)
