"""polystore tables / keys / drop: logical table catalog commands."""

from __future__ import annotations

import asyncio

import typer

from polystore.cli import _exitcodes as ec
from polystore.cli import _storage
from polystore.cli._output import print_error, print_object, print_table
from polystore.results import OperationResult


def _fail(result: OperationResult) -> None:
    print_error(result.message)
    raise typer.Exit(ec.for_status(result.status))


def tables_cmd() -> None:
    """List logical tables recorded in the system catalog."""
    from polystore.cli import state

    service = _storage.open_service()
    try:
        result = asyncio.run(service.get_table_names())
    finally:
        service.close()
    if not result.success:
        _fail(result)

    names = result.data or []
    if state.json_output:
        print_object(names, json_mode=True)
        return
    if not names:
        print("No tables.")
        return
    print_table(["table"], [[name] for name in names])


def keys_cmd(table: str = typer.Argument(..., help="Logical table name")) -> None:
    """List key attribute names used for writes to TABLE."""
    from polystore.cli import state

    service = _storage.open_service()
    try:
        result = asyncio.run(service.get_table_keys(table))
    finally:
        service.close()
    if not result.success:
        _fail(result)

    keys = result.data or []
    if state.json_output:
        print_object(keys, json_mode=True)
        return
    if not keys:
        print(f"No keys for table '{table}'.")
        return
    print_table(["key", "physical_table"], [[k, f"{table}-{k}"] for k in keys])


def drop_cmd(
    table: str = typer.Argument(..., help="Logical table name"),
    yes: bool = typer.Option(False, "--yes", help="Confirm dropping every key-table of TABLE"),
) -> None:
    """Delete every key-table of TABLE and its catalog entry."""
    from polystore.cli import state

    if not yes:
        print_error(f"Refusing to drop '{table}' without --yes")
        raise typer.Exit(ec.USAGE_ERROR)

    service = _storage.open_service()
    try:
        result = asyncio.run(service.drop_table(table))
    finally:
        service.close()
    if not result.success:
        _fail(result)

    if state.json_output:
        print_object({"table": table, "dropped": True}, json_mode=True)
    else:
        print(f"Dropped table '{table}'.")
