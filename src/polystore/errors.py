"""Structured error types for polystore."""

from __future__ import annotations

from polystore.results import Status


class PolystoreError(Exception):
    """Base error for all polystore errors."""

    status: Status = Status.INTERNAL_ERROR


class NotFoundError(PolystoreError):
    """Raised when a key-table or item does not exist."""

    status = Status.NOT_FOUND


class ConflictError(PolystoreError):
    """Raised when a key value's type disagrees with the key-table's declared type."""

    status = Status.CONFLICT

    def __init__(self, physical_name: str, expected: str, actual: str) -> None:
        self.physical_name = physical_name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Key type mismatch for '{physical_name}': table accepts {expected}, got {actual}"
        )


class PreconditionFailedError(PolystoreError):
    """Raised when a write condition or the no-overwrite guard is not met."""

    status = Status.PRECONDITION_FAILED

    def __init__(self, detail: str = "Condition is not satisfied") -> None:
        super().__init__(detail)


class TableTimeoutError(PolystoreError):
    """Raised when a key-table does not become active within the allowed polling attempts."""

    status = Status.TIMEOUT

    def __init__(self, physical_name: str, attempts: int) -> None:
        self.physical_name = physical_name
        self.attempts = attempts
        super().__init__(
            f"Key-table '{physical_name}' did not become active after {attempts} polls"
        )


class TooMuchContentionError(PolystoreError):
    """Raised when every transactional retry attempt has aborted."""

    status = Status.TOO_MUCH_CONTENTION

    def __init__(self, operation: str, attempts: int) -> None:
        self.operation = operation
        self.attempts = attempts
        super().__init__(f"Too much contention: {operation} aborted after {attempts} attempts")


class InvalidArgumentError(PolystoreError):
    """Raised for malformed caller input (bad keys, element arrays, or page tokens)."""

    status = Status.INVALID_ARGUMENT


class InvalidPathError(InvalidArgumentError, ValueError):
    """Raised synchronously when a condition path cannot be compiled."""


class ServiceUnavailableError(PolystoreError):
    """Raised when the backend client was never initialized."""

    status = Status.SERVICE_UNAVAILABLE


class StorageBackendError(PolystoreError):
    """Raised when a backend operation fails unexpectedly."""

    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"Storage backend error during {operation}: {detail}")


class TableAlreadyExistsError(StorageBackendError):
    """Raised by a backend when a create races with another creator."""

    def __init__(self, physical_name: str) -> None:
        super().__init__("create_table", f"'{physical_name}' is already being created")


class TransientContentionError(StorageBackendError):
    """Raised by transactional backends on aborted/unavailable commits; always retried."""
