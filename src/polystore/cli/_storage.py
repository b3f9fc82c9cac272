"""CLI helpers for backend-aware service construction."""

from __future__ import annotations

import os

from polystore.config import PolystoreConfig
from polystore.service import DatabaseService


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


def config_from_env() -> PolystoreConfig:
    """Build service config from ``POLYSTORE_*`` environment variables."""
    from polystore.cli import state

    defaults = PolystoreConfig()
    return PolystoreConfig(
        aws_region=os.getenv("POLYSTORE_AWS_REGION") or os.getenv("AWS_REGION"),
        dynamodb_endpoint_url=os.getenv("POLYSTORE_DYNAMODB_ENDPOINT_URL"),
        request_timeout_s=_env_float("POLYSTORE_REQUEST_TIMEOUT_S", defaults.request_timeout_s),
        datastore_project=os.getenv("POLYSTORE_DATASTORE_PROJECT"),
        datastore_namespace=os.getenv("POLYSTORE_DATASTORE_NAMESPACE"),
        table_poll_interval_s=_env_float(
            "POLYSTORE_TABLE_POLL_INTERVAL_S", defaults.table_poll_interval_s
        ),
        table_poll_max_attempts=_env_int(
            "POLYSTORE_TABLE_POLL_MAX_ATTEMPTS", defaults.table_poll_max_attempts
        ),
        contention_max_attempts=_env_int(
            "POLYSTORE_CONTENTION_MAX_ATTEMPTS", defaults.contention_max_attempts
        ),
        contention_backoff_s=_env_float(
            "POLYSTORE_CONTENTION_BACKOFF_S", defaults.contention_backoff_s
        ),
        system_table_name=os.getenv("POLYSTORE_SYSTEM_TABLE") or defaults.system_table_name,
        log_level=state.log_level,
        log_format=os.getenv("POLYSTORE_LOG_FORMAT") or defaults.log_format,
    )


def open_service() -> DatabaseService:
    """Open the database service for the global CLI storage selection."""
    from polystore.cli import state

    return DatabaseService.from_uri(state.storage_uri, config_from_env())
