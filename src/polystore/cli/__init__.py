"""Polystore CLI: operator console for inspecting and editing stores."""

from __future__ import annotations

from typing import Optional

import typer

from polystore.cli import items, tables

app = typer.Typer(
    name="polystore",
    help="Polystore CLI: operator console for inspecting and editing stores.",
    no_args_is_help=True,
)


class _State:
    """Global CLI state shared across subcommands."""

    storage_uri: str = "memory://"
    json_output: bool = False
    log_level: str = "WARNING"


state = _State()


def _version_callback(value: bool) -> None:
    if value:
        from polystore import __version__

        print(f"polystore {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    storage_uri: str = typer.Option(
        "memory://",
        "--storage-uri",
        envvar="POLYSTORE_STORAGE_URI",
        help="Backend storage URI (e.g. dynamodb://us-east-1 or datastore://project/namespace)",
    ),
    json_output: bool = typer.Option(False, "--json", help="JSON output when supported"),
    log_level: str = typer.Option(
        "WARNING", "--log-level", envvar="POLYSTORE_LOG_LEVEL", help="Log level for stderr logging"
    ),
    version: Optional[bool] = typer.Option(
        None, "--version", help="Show version", is_eager=True, callback=_version_callback
    ),
) -> None:
    """Global options for all polystore commands."""
    from polystore.errors import StorageBackendError
    from polystore.logging import setup_logging
    from polystore.storage import parse_storage_target

    try:
        parse_storage_target(storage_uri)
    except StorageBackendError as e:
        raise typer.BadParameter(e.detail, param_hint="--storage-uri")
    try:
        setup_logging(log_level)
    except AttributeError:
        raise typer.BadParameter(f"Unknown log level '{log_level}'", param_hint="--log-level")

    state.storage_uri = storage_uri
    state.json_output = json_output
    state.log_level = log_level.upper()
    if ctx.invoked_subcommand is None:
        print(ctx.get_help())
        raise typer.Exit()


# Register top-level commands
app.command(name="tables")(tables.tables_cmd)
app.command(name="keys")(tables.keys_cmd)
app.command(name="drop")(tables.drop_cmd)
app.command(name="get")(items.get_cmd)
app.command(name="put")(items.put_cmd)
app.command(name="scan")(items.scan_cmd)


def main() -> None:
    """Entry point for the polystore CLI."""
    app()
