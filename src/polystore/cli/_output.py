"""Output formatting helpers for the CLI."""

from __future__ import annotations

import json
import sys
from typing import Any, Iterable

_MISSING = object()


def _json(data: Any, *, indent: int | None = None) -> str:
    return json.dumps(data, indent=indent, default=str)


def _cell(value: Any) -> str:
    if value is _MISSING:
        return ""
    if isinstance(value, (dict, list)) or value is None:
        return _json(value)
    return str(value)


def print_table(headers: list[str], rows: list[list[Any]], *, json_mode: bool = False) -> None:
    """Print rows under ``headers`` as aligned text, or as a JSON array of objects."""
    if json_mode:
        print(_json([dict(zip(headers, row)) for row in rows], indent=2))
        return
    if not rows:
        return

    cells = [[_cell(v) for v in row] for row in rows]
    widths = [len(h) for h in headers]
    for row in cells:
        for i, val in enumerate(row[: len(widths)]):
            widths[i] = max(widths[i], len(val))
    lines = [headers, ["-" * w for w in widths]] + cells
    for line in lines:
        print("  ".join(val.ljust(widths[i]) for i, val in enumerate(line[: len(widths)])).rstrip())


def item_columns(items: list[dict[str, Any]], key_names: Iterable[str] = ()) -> list[str]:
    """Key attributes present in ``items`` first, in key order, then every other attribute sorted."""
    present = {name for item in items for name in item}
    leading = [k for k in key_names if k in present]
    return leading + sorted(present.difference(leading))


def print_items(
    items: list[dict[str, Any]],
    *,
    key_names: Iterable[str] = (),
    next_token: str | None = None,
    json_mode: bool = False,
) -> None:
    """Print one scan result: its items and the token for the following page, if any."""
    if json_mode:
        print(_json({"items": items, "next_token": next_token}, indent=2))
        return

    if items:
        headers = item_columns(items, key_names)
        print_table(headers, [[item.get(h, _MISSING) for h in headers] for item in items])
    else:
        print("No items.")
    if next_token:
        print(f"Next page token: {next_token}")


def print_object(data: dict[str, Any] | list[Any], *, json_mode: bool = False) -> None:
    """Print an item as ``attribute: value`` lines, or a list one entry per line."""
    if json_mode:
        print(_json(data, indent=2))
        return

    if isinstance(data, list):
        for entry in data:
            print(f"  {_cell(entry)}")
        return

    for name, value in data.items():
        print(f"{name}: {_cell(value)}")


def print_error(msg: str) -> None:
    print(f"Error: {msg}", file=sys.stderr)
