"""Tests for the polystore CLI commands."""

import json

from polystore import DbKey
from polystore.cli import _exitcodes as ec
from polystore.pagination import PaginationCursor
from tests.cli.conftest import invoke
from tests.conftest import order_key, run


def test_version(runner):
    result = invoke(runner, ["--version"])
    assert result.exit_code == 0
    assert "polystore 0.1.0" in result.output


def test_invalid_storage_uri(runner, cli_service):
    result = invoke(runner, ["tables"], "s3://bucket")
    assert result.exit_code == ec.USAGE_ERROR


def test_invalid_log_level(runner, cli_service):
    result = invoke(runner, ["--log-level", "LOUD", "tables"])
    assert result.exit_code == ec.USAGE_ERROR


# --- tables / keys / drop ---


def test_tables(runner, seeded):
    result = invoke(runner, ["tables"])
    assert result.exit_code == 0
    assert "orders" in result.output
    assert "users" in result.output


def test_tables_json(runner, seeded):
    result = invoke(runner, ["--json", "tables"])
    assert result.exit_code == 0
    assert json.loads(result.output) == ["orders", "users"]


def test_tables_empty(runner, cli_service):
    result = invoke(runner, ["tables"])
    assert result.exit_code == 0
    assert "No tables." in result.output


def test_keys(runner, seeded):
    result = invoke(runner, ["keys", "orders"])
    assert result.exit_code == 0
    assert "orders-orderId" in result.output
    assert "orders-sku" in result.output


def test_keys_json(runner, seeded):
    result = invoke(runner, ["--json", "keys", "orders"])
    assert json.loads(result.output) == ["orderId", "sku"]


def test_keys_unknown_table(runner, seeded):
    result = invoke(runner, ["keys", "ghost"])
    assert result.exit_code == 0
    assert "No keys" in result.output


def test_drop_requires_yes(runner, seeded):
    result = invoke(runner, ["drop", "orders"])
    assert result.exit_code == ec.USAGE_ERROR
    assert run(seeded.get_table_keys("orders")).data == ["orderId", "sku"]


def test_drop(runner, seeded):
    result = invoke(runner, ["drop", "orders", "--yes"])
    assert result.exit_code == 0
    assert "Dropped table 'orders'" in result.output
    assert run(seeded.get_table_names()).data == ["users"]


# --- get / put ---


def test_get(runner, seeded):
    result = invoke(runner, ["get", "orders", "orderId", "A1"])
    assert result.exit_code == 0
    assert "total: 10" in result.output
    assert "status: new" in result.output


def test_get_json(runner, seeded):
    result = invoke(runner, ["--json", "get", "orders", "orderId", "A1"])
    assert json.loads(result.output) == {"total": 10, "status": "new", "orderId": "A1"}


def test_get_integer_key(runner, seeded):
    result = invoke(runner, ["--json", "get", "orders", "sku", "7", "--key-type", "integer"])
    assert result.exit_code == 0
    assert json.loads(result.output)["total"] == 25


def test_get_missing(runner, seeded):
    result = invoke(runner, ["get", "orders", "orderId", "Z9"])
    assert result.exit_code == ec.NOT_FOUND


def test_get_bad_integer(runner, seeded):
    result = invoke(runner, ["get", "orders", "sku", "seven", "--key-type", "integer"])
    assert result.exit_code == ec.USAGE_ERROR


def test_get_unknown_key_type(runner, seeded):
    result = invoke(runner, ["get", "orders", "sku", "7", "--key-type", "uuid"])
    assert result.exit_code == ec.USAGE_ERROR


def test_put(runner, seeded):
    result = invoke(runner, ["put", "orders", "orderId", "C3", '{"total": 7}'])
    assert result.exit_code == 0
    assert run(seeded.get_item("orders", order_key("C3"))).data == {"total": 7, "orderId": "C3"}


def test_put_existing_fails(runner, seeded):
    result = invoke(runner, ["put", "orders", "orderId", "A1", '{"total": 1}'])
    assert result.exit_code == ec.PRECONDITION_FAILED
    assert "Error:" in result.output


def test_put_overwrite(runner, seeded):
    result = invoke(runner, ["put", "orders", "orderId", "A1", '{"total": 1}', "--overwrite"])
    assert result.exit_code == 0
    assert run(seeded.get_item("orders", order_key("A1"))).data == {"total": 1, "orderId": "A1"}


def test_put_key_type_conflict(runner, seeded):
    result = invoke(runner, ["put", "orders", "sku", "abc", "{}"])
    assert result.exit_code == ec.CONFLICT


def test_put_invalid_json(runner, seeded):
    assert invoke(runner, ["put", "orders", "orderId", "C3", "{nope"]).exit_code == ec.USAGE_ERROR
    assert invoke(runner, ["put", "orders", "orderId", "C3", "[1]"]).exit_code == ec.USAGE_ERROR


def test_put_json(runner, cli_service):
    result = invoke(runner, ["--json", "put", "t", "id", "1.5", "{}", "--key-type", "double"])
    assert result.exit_code == 0
    assert json.loads(result.output) == {"table": "t", "key": str(DbKey(name="id", value=1.5)), "written": True}


# --- scan ---


def test_scan_table(runner, seeded):
    result = invoke(runner, ["scan", "orders"])
    assert result.exit_code == 0
    assert "A1" in result.output
    assert "B2" in result.output
    assert "Next page token" not in result.output
    assert any(line.split()[:2] == ["orderId", "sku"] for line in result.output.splitlines())


def test_scan_json(runner, seeded):
    result = invoke(runner, ["--json", "scan", "orders"])
    data = json.loads(result.output)
    assert len(data["items"]) == 3
    assert data["next_token"] is None


def test_scan_empty(runner, cli_service):
    result = invoke(runner, ["scan", "ghost"])
    assert result.exit_code == 0
    assert "No items." in result.output


def test_scan_filter(runner, seeded):
    result = invoke(runner, ["--json", "scan", "orders", "--filter", "total gt 5"])
    totals = sorted(item["total"] for item in json.loads(result.output)["items"])
    assert totals == [10, 25]


def test_scan_filter_triples(runner, seeded):
    args = ["--json", "scan", "orders", "--filter", "status", "--filter", "eq", "--filter", '"paid"']
    items = json.loads(invoke(runner, args).output)["items"]
    assert [item["orderId"] for item in items] == ["B2"]


def test_scan_bad_filter(runner, seeded):
    result = invoke(runner, ["scan", "orders", "--filter", "total like 5"])
    assert result.exit_code == ec.USAGE_ERROR
    assert "Unknown filter operator" in result.output


def test_scan_pages(runner, seeded):
    first = json.loads(invoke(runner, ["--json", "scan", "orders", "--page-size", "2"]).output)
    assert len(first["items"]) == 2
    assert PaginationCursor.decode(first["next_token"]).key_name == "sku"
    second = json.loads(
        invoke(
            runner,
            ["--json", "scan", "orders", "--page-size", "2", "--token", first["next_token"]],
        ).output
    )
    assert [item["sku"] for item in second["items"]] == [7]
    assert second["next_token"] is None


def test_scan_text_prints_token(runner, seeded):
    result = invoke(runner, ["scan", "orders", "--page-size", "1"])
    assert result.exit_code == 0
    assert "Next page token:" in result.output


def test_scan_token_requires_page_size(runner, seeded):
    result = invoke(runner, ["scan", "orders", "--token", "abc"])
    assert result.exit_code == ec.USAGE_ERROR


def test_scan_garbage_token(runner, seeded):
    result = invoke(runner, ["scan", "orders", "--page-size", "2", "--token", "garbage###"])
    assert result.exit_code == ec.USAGE_ERROR
