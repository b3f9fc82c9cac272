"""Configuration for the polystore service and its backends."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PolystoreConfig:
    """Configuration for DatabaseService and the storage adapters."""

    aws_region: str | None = None
    dynamodb_endpoint_url: str | None = None
    request_timeout_s: float = 10.0
    sdk_max_attempts: int = 5
    datastore_project: str | None = None
    datastore_namespace: str | None = None
    table_poll_interval_s: float = 1.0
    table_poll_max_attempts: int = 300
    contention_max_attempts: int = 5
    contention_backoff_s: float = 5.0
    system_table_name: str = "polystore-system-table"
    auto_sort_arrays: bool = False
    auto_convert_roundable_float_to_int: bool = False
    log_level: str = "INFO"
    log_format: str = "console"
