"""polystore get / put / scan: item-level commands."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import typer
from pydantic import ValidationError

from polystore.cli import _exitcodes as ec
from polystore.cli import _storage
from polystore.cli._filters import parse_cli_filters, split_filter_args
from polystore.cli._output import print_error, print_items, print_object
from polystore.cli.tables import _fail
from polystore.primitives import DbKey

_KEY_TYPES = ("string", "integer", "double")


def _parse_key(key_name: str, key_value: str, key_type: str) -> DbKey:
    if key_type not in _KEY_TYPES:
        print_error(f"Unknown key type '{key_type}'. Valid types: {', '.join(_KEY_TYPES)}")
        raise typer.Exit(ec.USAGE_ERROR)
    try:
        value: Any = key_value
        if key_type == "integer":
            value = int(key_value)
        elif key_type == "double":
            value = float(key_value)
        return DbKey(name=key_name, value=value)
    except (ValueError, ValidationError) as e:
        print_error(f"Invalid key {key_name}={key_value!r}: {e}")
        raise typer.Exit(ec.USAGE_ERROR)


def get_cmd(
    table: str = typer.Argument(..., help="Logical table name"),
    key_name: str = typer.Argument(..., help="Key attribute name"),
    key_value: str = typer.Argument(..., help="Key value"),
    key_type: str = typer.Option("string", "--key-type", help="string, integer or double"),
) -> None:
    """Print one item."""
    from polystore.cli import state

    key = _parse_key(key_name, key_value, key_type)
    service = _storage.open_service()
    try:
        result = asyncio.run(service.get_item(table, key))
    finally:
        service.close()
    if not result.success:
        _fail(result)
    if result.data is None:
        print_error(f"Item {key} not found in '{table}'")
        raise typer.Exit(ec.NOT_FOUND)
    print_object(result.data, json_mode=state.json_output)


def put_cmd(
    table: str = typer.Argument(..., help="Logical table name"),
    key_name: str = typer.Argument(..., help="Key attribute name"),
    key_value: str = typer.Argument(..., help="Key value"),
    item_json: str = typer.Argument(..., help="Item document as a JSON object"),
    key_type: str = typer.Option("string", "--key-type", help="string, integer or double"),
    overwrite: bool = typer.Option(False, "--overwrite", help="Replace an existing item"),
) -> None:
    """Write one item; fails if it exists unless --overwrite is given."""
    from polystore.cli import state

    key = _parse_key(key_name, key_value, key_type)
    try:
        item = json.loads(item_json)
    except json.JSONDecodeError as e:
        print_error(f"Invalid item JSON: {e}")
        raise typer.Exit(ec.USAGE_ERROR)
    if not isinstance(item, dict):
        print_error("Item JSON must be an object")
        raise typer.Exit(ec.USAGE_ERROR)

    service = _storage.open_service()
    try:
        result = asyncio.run(service.put_item(table, key, item, overwrite=overwrite))
    finally:
        service.close()
    if not result.success:
        _fail(result)

    if state.json_output:
        print_object({"table": table, "key": str(key), "written": True}, json_mode=True)
    else:
        print(f"Wrote {key} to '{table}'.")


def scan_cmd(
    table: str = typer.Argument(..., help="Logical table name"),
    page_size: Optional[int] = typer.Option(None, "--page-size", help="Items per page"),
    token: Optional[str] = typer.Option(None, "--token", help="Page token from a previous scan"),
    filter_args: Optional[list[str]] = typer.Option(
        None, "--filter", help="PATH OP VALUE_JSON (repeatable)"
    ),
) -> None:
    """Scan TABLE across all of its key-tables."""
    from polystore.cli import state

    try:
        conditions = parse_cli_filters(split_filter_args(filter_args))
    except (ValueError, json.JSONDecodeError) as e:
        print_error(str(e))
        raise typer.Exit(ec.USAGE_ERROR)

    if token is not None and page_size is None:
        print_error("--token requires --page-size")
        raise typer.Exit(ec.USAGE_ERROR)

    service = _storage.open_service()
    try:
        if page_size is not None:
            page_result = asyncio.run(
                service.scan_table_with_filter_paginated(table, conditions, page_size, token)
            )
            if not page_result.success:
                _fail(page_result)
            assert page_result.data is not None
            items = page_result.data.items
            key_names = page_result.data.keys or []
            next_token = page_result.data.next_token
        else:
            full_result = asyncio.run(service.scan_table_with_filter(table, conditions))
            if not full_result.success:
                _fail(full_result)
            assert full_result.data is not None
            key_names, items = full_result.data
            next_token = None
    finally:
        service.close()

    print_items(items, key_names=key_names, next_token=next_token, json_mode=state.json_output)
