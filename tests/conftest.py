"""Shared test fixtures for polystore tests."""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine, TypeVar

import pytest

from polystore import DatabaseService, DbKey, PolystoreConfig
from polystore.registry import KeyTableRegistry
from polystore.storage_memory import MemoryStore

T = TypeVar("T")


def run(coro: Coroutine[Any, Any, T]) -> T:
    """Drive one coroutine to completion."""
    return asyncio.run(coro)


def order_key(value: Any = "A1") -> DbKey:
    return DbKey(name="orderId", value=value)


# --- Fixtures ---


@pytest.fixture
def config() -> PolystoreConfig:
    """Config with polling and backoff delays removed."""
    return PolystoreConfig(
        table_poll_interval_s=0.0,
        table_poll_max_attempts=5,
        contention_backoff_s=0.0,
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def registry(store, config) -> KeyTableRegistry:
    return KeyTableRegistry(store, config)


@pytest.fixture
def service(store, config) -> DatabaseService:
    svc = DatabaseService(store, config)
    yield svc
    svc.close()
