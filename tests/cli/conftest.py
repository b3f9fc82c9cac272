"""Shared fixtures for CLI tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
import structlog
from typer.testing import CliRunner

from polystore import DbKey
from polystore.cli import app, state
from tests.conftest import order_key, run

if TYPE_CHECKING:
    from click.testing import Result


@pytest.fixture
def runner():
    """Create a CLI test runner; drops the logging config bound to its streams afterwards."""
    yield CliRunner()
    structlog.reset_defaults()


@pytest.fixture
def cli_service(service, monkeypatch):
    """Route every CLI command to the shared in-memory service."""
    monkeypatch.setattr("polystore.cli._storage.open_service", lambda: service)
    yield service
    state.storage_uri = "memory://"
    state.json_output = False
    state.log_level = "WARNING"


@pytest.fixture
def seeded(cli_service):
    """Service holding a few orders and one user."""
    run(cli_service.put_item("orders", order_key("A1"), {"total": 10, "status": "new"}))
    run(cli_service.put_item("orders", order_key("B2"), {"total": 3, "status": "paid"}))
    run(cli_service.put_item("orders", DbKey(name="sku", value=7), {"total": 25}))
    run(cli_service.put_item("users", DbKey(name="email", value="a@b.c"), {"name": "Ann"}))
    return cli_service


def invoke(runner: CliRunner, args: list[str], storage_uri: str | None = None) -> "Result":
    """Invoke CLI with proper state setup."""
    if storage_uri:
        # Inject --storage-uri before subcommand
        args = ["--storage-uri", storage_uri] + args
    result = runner.invoke(app, args, catch_exceptions=False)
    return result
