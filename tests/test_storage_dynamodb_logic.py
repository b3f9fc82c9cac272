"""Focused unit tests for DynamoDB adapter logic that do not require a live endpoint."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import pytest
from boto3.dynamodb.types import Binary
from botocore.exceptions import ClientError

from polystore.conditions import array_element_exists, attribute_equals, attribute_greater
from polystore.compiler import compile_expression
from polystore.errors import (
    NotFoundError,
    PreconditionFailedError,
    StorageBackendError,
    TableAlreadyExistsError,
    TooMuchContentionError,
)
from polystore.executor import MutationExecutor
from polystore.primitives import DbKey, KeyValueType
from polystore.registry import KeyTableHandle, KeyTableRegistry
from polystore.results import ReturnBehavior
from polystore.storage import TableStatus, decode_backend_token
from polystore.storage_dynamodb import DynamoDBStore, from_dynamo_value, to_dynamo_value
from tests.conftest import order_key, run

HANDLE = KeyTableHandle(
    table_name="orders",
    key_name="orderId",
    physical_name="orders-orderId",
    key_types=frozenset({KeyValueType.STRING}),
)


def _client_error(code: str, operation: str = "Op") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"{code} happened"}}, operation)


class RecordingClient:
    """Stands in for the low-level boto3 DynamoDB client."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.responses: dict[str, list[Any]] = {}

    def queue(self, operation: str, *responses: Any) -> None:
        self.responses.setdefault(operation, []).extend(responses)

    def calls_to(self, operation: str) -> list[dict[str, Any]]:
        return [kwargs for op, kwargs in self.calls if op == operation]

    def _respond(self, operation: str, kwargs: dict[str, Any]) -> Any:
        self.calls.append((operation, kwargs))
        pending = self.responses.get(operation)
        response = pending.pop(0) if pending else {}
        if isinstance(response, Exception):
            raise response
        return response

    def describe_table(self, **kwargs):
        return self._respond("describe_table", kwargs)

    def create_table(self, **kwargs):
        return self._respond("create_table", kwargs)

    def delete_table(self, **kwargs):
        return self._respond("delete_table", kwargs)

    def list_tables(self, **kwargs):
        return self._respond("list_tables", kwargs)

    def get_item(self, **kwargs):
        return self._respond("get_item", kwargs)

    def put_item(self, **kwargs):
        return self._respond("put_item", kwargs)

    def update_item(self, **kwargs):
        return self._respond("update_item", kwargs)

    def delete_item(self, **kwargs):
        return self._respond("delete_item", kwargs)

    def scan(self, **kwargs):
        return self._respond("scan", kwargs)


@pytest.fixture
def client() -> RecordingClient:
    return RecordingClient()


@pytest.fixture
def dynamo(client, config) -> DynamoDBStore:
    return DynamoDBStore(config=config, client=client)


@pytest.fixture
def executor(dynamo, config) -> MutationExecutor:
    return MutationExecutor(dynamo, config)


class TestValueConversion:
    def test_to_dynamo(self):
        assert to_dynamo_value(2.5) == Decimal("2.5")
        assert to_dynamo_value(b"hi") == "aGk="
        assert to_dynamo_value({"a": [1.5, True]}) == {"a": [Decimal("1.5"), True]}

    def test_from_dynamo(self):
        assert from_dynamo_value(Decimal("3")) == 3
        assert isinstance(from_dynamo_value(Decimal("3.0")), int)
        assert from_dynamo_value(Decimal("2.5")) == 2.5
        assert from_dynamo_value(Binary(b"hi")) == "aGk="
        assert from_dynamo_value({"s": {"b", "a"}}) == {"s": ["a", "b"]}

    def test_wide_integral_numbers_stay_float(self):
        assert isinstance(from_dynamo_value(Decimal("1" + "0" * 37)), int)
        wide = from_dynamo_value(Decimal("1E+100"))
        assert isinstance(wide, float)
        assert wide == 1e100
        assert to_dynamo_value(wide) == Decimal("1E+100")


class TestCatalog:
    def test_describe_missing(self, dynamo, client):
        client.queue("describe_table", _client_error("ResourceNotFoundException"))
        assert dynamo.describe_table("orders-orderId") is None

    def test_describe_numeric_key(self, dynamo, client):
        client.queue(
            "describe_table",
            {
                "Table": {
                    "KeySchema": [{"AttributeName": "orderId", "KeyType": "HASH"}],
                    "AttributeDefinitions": [{"AttributeName": "orderId", "AttributeType": "N"}],
                    "TableStatus": "CREATING",
                }
            },
        )
        description = dynamo.describe_table("orders-orderId")
        assert description.key_name == "orderId"
        assert description.key_types == frozenset({KeyValueType.INTEGER, KeyValueType.DOUBLE})
        assert description.status is TableStatus.CREATING

    def test_create_request(self, dynamo, client):
        dynamo.create_table("orders-orderId", "orderId", KeyValueType.DOUBLE)
        (kwargs,) = client.calls_to("create_table")
        assert kwargs["AttributeDefinitions"] == [{"AttributeName": "orderId", "AttributeType": "N"}]
        assert kwargs["KeySchema"] == [{"AttributeName": "orderId", "KeyType": "HASH"}]
        assert kwargs["BillingMode"] == "PAY_PER_REQUEST"

    def test_create_race(self, dynamo, client):
        client.queue("create_table", _client_error("ResourceInUseException"))
        with pytest.raises(TableAlreadyExistsError):
            dynamo.create_table("orders-orderId", "orderId", KeyValueType.STRING)

    def test_delete_tolerates_missing(self, dynamo, client):
        client.queue("delete_table", _client_error("ResourceNotFoundException"))
        dynamo.delete_table("orders-orderId")

    def test_list_tables_paginates(self, dynamo, client):
        client.queue(
            "list_tables",
            {"TableNames": ["a"], "LastEvaluatedTableName": "a"},
            {"TableNames": ["b"]},
        )
        assert dynamo.list_tables() == ["a", "b"]
        assert client.calls_to("list_tables")[1]["ExclusiveStartTableName"] == "a"

    def test_unexpected_error(self, dynamo, client):
        client.queue("get_item", _client_error("InternalServerError"))
        with pytest.raises(StorageBackendError) as exc:
            dynamo.get_item("orders-orderId", "orderId", "A1")
        assert exc.value.operation == "get_item"

    def test_numeric_table_accepts_doubles(self, dynamo, client, config):
        description = {
            "Table": {
                "KeySchema": [{"AttributeName": "id", "KeyType": "HASH"}],
                "AttributeDefinitions": [{"AttributeName": "id", "AttributeType": "N"}],
                "TableStatus": "ACTIVE",
            }
        }
        client.queue("describe_table", description)
        registry = KeyTableRegistry(dynamo, config)
        handle = run(registry.resolve("t", DbKey(name="id", value=1), create=False))
        assert handle.accepts(KeyValueType.DOUBLE)
        assert run(registry.resolve("t", DbKey(name="id", value=1.5), create=False)) is handle


class TestMutations:
    def test_put_without_overwrite_is_conditional(self, executor, client):
        run(executor.put(HANDLE, order_key(), {"total": 10}))
        (kwargs,) = client.calls_to("put_item")
        assert kwargs["ConditionExpression"] == "attribute_not_exists(#n0)"
        assert kwargs["ExpressionAttributeNames"] == {"#n0": "orderId"}
        assert "ExpressionAttributeValues" not in kwargs
        assert kwargs["Item"] == {"total": {"N": "10"}, "orderId": {"S": "A1"}}

    def test_put_overwrite_has_no_condition(self, executor, client):
        client.queue("put_item", {"Attributes": {"orderId": {"S": "A1"}, "total": {"N": "10"}}})
        old = run(
            executor.put(
                HANDLE,
                order_key(),
                {"total": 99},
                overwrite=True,
                return_behavior=ReturnBehavior.RETURN_OLD_VALUES,
            )
        )
        (kwargs,) = client.calls_to("put_item")
        assert "ConditionExpression" not in kwargs
        assert kwargs["ReturnValues"] == "ALL_OLD"
        assert old == {"orderId": "A1", "total": 10}

    def test_put_existing_is_precondition_failed(self, executor, client):
        client.queue("put_item", _client_error("ConditionalCheckFailedException"))
        with pytest.raises(PreconditionFailedError):
            run(executor.put(HANDLE, order_key(), {"total": 99}))

    def test_update_compiles_condition_into_request(self, executor, client):
        run(
            executor.update(
                HANDLE, order_key(), {"total": 20}, conditions=attribute_greater("total", 10)
            )
        )
        (kwargs,) = client.calls_to("update_item")
        assert kwargs["Key"] == {"orderId": {"S": "A1"}}
        assert kwargs["UpdateExpression"] == "SET #n0 = :v0"
        assert kwargs["ConditionExpression"] == "(attribute_type(#n0, :v1) AND #n0 > :v2)"
        assert kwargs["ExpressionAttributeValues"] == {
            ":v0": {"N": "20"},
            ":v1": {"S": "N"},
            ":v2": {"N": "10"},
        }
        assert kwargs["ReturnValues"] == "NONE"

    def test_update_skips_key_attribute(self, executor, client):
        run(executor.update(HANDLE, order_key(), {"orderId": "other", "a": 1.5}))
        (kwargs,) = client.calls_to("update_item")
        assert kwargs["ExpressionAttributeNames"] == {"#n0": "a"}
        assert kwargs["ExpressionAttributeValues"] == {":v0": {"N": "1.5"}}

    def test_delete_with_condition(self, executor, client):
        run(executor.delete(HANDLE, order_key(), conditions=attribute_equals("status", "done")))
        (kwargs,) = client.calls_to("delete_item")
        assert kwargs["ConditionExpression"] == "(attribute_type(#n0, :v0) AND #n0 = :v1)"
        assert kwargs["ReturnValues"] == "NONE"

    def test_add_elements_uses_list_append(self, executor, client):
        client.queue("update_item", {"Attributes": {"orderId": {"S": "A1"}, "tags": {"L": [{"S": "a"}]}}})
        new = run(
            executor.add_elements(
                HANDLE, order_key(), "tags", ["a"], return_behavior=ReturnBehavior.RETURN_NEW_VALUES
            )
        )
        (kwargs,) = client.calls_to("update_item")
        assert kwargs["UpdateExpression"] == "SET #n0 = list_append(if_not_exists(#n0, :v0), :v1)"
        assert kwargs["ConditionExpression"] == "(attribute_not_exists(#n0) OR attribute_type(#n0, :v2))"
        assert kwargs["ExpressionAttributeValues"] == {
            ":v0": {"L": []},
            ":v1": {"L": [{"S": "a"}]},
            ":v2": {"S": "L"},
        }
        assert kwargs["ReturnValues"] == "ALL_NEW"
        assert new == {"orderId": "A1", "tags": ["a"]}

    def test_increment(self, executor, client):
        client.queue("update_item", {"Attributes": {"total": {"N": "15"}}})
        assert run(executor.increment(HANDLE, order_key(), "total", 5)) == 15.0
        (kwargs,) = client.calls_to("update_item")
        assert kwargs["UpdateExpression"] == "SET #n0 = if_not_exists(#n0, :v0) + :v1"
        assert kwargs["ReturnValues"] == "UPDATED_NEW"

    def test_remove_pins_previous_array(self, executor, client):
        client.queue(
            "get_item",
            {"Item": {"orderId": {"S": "A1"}, "tags": {"L": [{"S": "a"}, {"N": "3"}, {"S": "b"}]}}},
        )
        run(executor.remove_elements(HANDLE, order_key(), "tags", ["3", "b"]))
        (kwargs,) = client.calls_to("update_item")
        assert kwargs["UpdateExpression"] == "SET #n0 = :v0"
        assert kwargs["ConditionExpression"] == "#n0 = :v1"
        assert kwargs["ExpressionAttributeValues"][":v0"] == {"L": [{"S": "a"}]}
        assert kwargs["ExpressionAttributeValues"][":v1"] == {
            "L": [{"S": "a"}, {"N": "3"}, {"S": "b"}]
        }

    def test_remove_pins_array_holding_wide_double(self, executor, client):
        client.queue(
            "get_item",
            {"Item": {"orderId": {"S": "A1"}, "tags": {"L": [{"N": "1E+100"}, {"S": "a"}]}}},
        )
        run(executor.remove_elements(HANDLE, order_key(), "tags", ["a"]))
        (kwargs,) = client.calls_to("update_item")
        assert kwargs["ExpressionAttributeValues"][":v0"] == {"L": [{"N": "1E+100"}]}
        assert kwargs["ExpressionAttributeValues"][":v1"] == {
            "L": [{"N": "1E+100"}, {"S": "a"}]
        }

    def test_membership_of_wide_double_serializes(self, executor, client):
        run(
            executor.update(
                HANDLE, order_key(), {"total": 1}, conditions=array_element_exists("tags", 1e100)
            )
        )
        (kwargs,) = client.calls_to("update_item")
        assert {"N": "1E+100"} in kwargs["ExpressionAttributeValues"].values()

    def test_remove_retries_lost_race(self, executor, client):
        item = {"Item": {"orderId": {"S": "A1"}, "tags": {"L": [{"S": "a"}]}}}
        client.queue("get_item", item, item)
        client.queue("update_item", _client_error("ConditionalCheckFailedException"), {})
        run(executor.remove_elements(HANDLE, order_key(), "tags", ["a"]))
        assert len(client.calls_to("get_item")) == 2
        assert len(client.calls_to("update_item")) == 2

    def test_remove_gives_up_after_max_attempts(self, executor, client, config):
        item = {"Item": {"orderId": {"S": "A1"}, "tags": {"L": [{"S": "a"}]}}}
        client.queue("get_item", *[item] * config.contention_max_attempts)
        client.queue(
            "update_item",
            *[_client_error("ConditionalCheckFailedException")] * config.contention_max_attempts,
        )
        with pytest.raises(TooMuchContentionError):
            run(executor.remove_elements(HANDLE, order_key(), "tags", ["a"]))

    def test_remove_absent_attribute_skips_write(self, executor, client):
        client.queue("get_item", {"Item": {"orderId": {"S": "A1"}}})
        run(executor.remove_elements(HANDLE, order_key(), "tags", ["a"]))
        assert client.calls_to("update_item") == []


class TestScan:
    def test_filtered_page(self, dynamo, client):
        client.queue(
            "scan",
            {
                "Items": [{"orderId": {"S": "A1"}, "total": {"N": "10"}}],
                "LastEvaluatedKey": {"orderId": {"S": "A1"}},
            },
        )
        compiled = compile_expression(attribute_greater("total", 5))
        result = dynamo.scan("orders-orderId", 1, None, compiled)
        (kwargs,) = client.calls_to("scan")
        assert kwargs["FilterExpression"] == compiled.expression
        assert kwargs["Limit"] == 1
        assert kwargs["ConsistentRead"] is True
        assert result.items == [{"orderId": "A1", "total": 10}]
        assert decode_backend_token(result.next_token) == {"orderId": {"S": "A1"}}

    def test_resume_from_token(self, dynamo, client):
        client.queue("scan", {"Items": [], "LastEvaluatedKey": {"orderId": {"S": "A1"}}})
        token = dynamo.scan("orders-orderId", 1, None).next_token
        client.queue("scan", {"Items": []})
        result = dynamo.scan("orders-orderId", 1, token)
        assert client.calls_to("scan")[1]["ExclusiveStartKey"] == {"orderId": {"S": "A1"}}
        assert result.next_token is None

    def test_unlimited_scan_drains(self, dynamo, client):
        client.queue(
            "scan",
            {"Items": [{"orderId": {"S": "A1"}}], "LastEvaluatedKey": {"orderId": {"S": "A1"}}},
            {"Items": [{"orderId": {"S": "B2"}}]},
        )
        result = dynamo.scan("orders-orderId", None, None)
        assert [i["orderId"] for i in result.items] == ["A1", "B2"]
        assert result.next_token is None

    def test_missing_table(self, dynamo, client):
        client.queue("scan", _client_error("ResourceNotFoundException"))
        with pytest.raises(NotFoundError):
            dynamo.scan("orders-orderId", 10, None)
