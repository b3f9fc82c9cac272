"""Polystore: one conditional document API over DynamoDB, Datastore and memory."""

__version__ = "0.1.0"

from polystore.conditions import (
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
from polystore.config import PolystoreConfig
from polystore.errors import (
    ConflictError,
    InvalidArgumentError,
    InvalidPathError,
    NotFoundError,
    PolystoreError,
    PreconditionFailedError,
    ServiceUnavailableError,
    StorageBackendError,
    TableTimeoutError,
    TooMuchContentionError,
)
from polystore.primitives import DbKey
from polystore.results import OperationResult, ReturnBehavior, ScanPage, Status
from polystore.service import DatabaseService

__all__ = [
    "__version__",
    "DatabaseService",
    "DbKey",
    "ReturnBehavior",
    "OperationResult",
    "ScanPage",
    "Status",
    "PolystoreConfig",
    "ConditionCoupling",
    "attribute_exists",
    "attribute_not_exists",
    "attribute_equals",
    "attribute_not_equals",
    "attribute_greater",
    "attribute_greater_or_equal",
    "attribute_less",
    "attribute_less_or_equal",
    "array_element_exists",
    "array_element_not_exists",
    "PolystoreError",
    "NotFoundError",
    "ConflictError",
    "PreconditionFailedError",
    "TableTimeoutError",
    "TooMuchContentionError",
    "InvalidArgumentError",
    "InvalidPathError",
    "ServiceUnavailableError",
    "StorageBackendError",
]
