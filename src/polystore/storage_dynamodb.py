"""Amazon DynamoDB backend: one table per key-table, native condition expressions."""

from __future__ import annotations

import base64
from decimal import Decimal
from typing import Any, Callable, ClassVar

import boto3
from boto3.dynamodb.types import Binary, TypeDeserializer, TypeSerializer
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, ParamValidationError

from polystore.compiler import NUMBER_PRECISION
from polystore.config import PolystoreConfig
from polystore.errors import (
    NotFoundError,
    PreconditionFailedError,
    ServiceUnavailableError,
    StorageBackendError,
    TableAlreadyExistsError,
)
from polystore.primitives import KeyValueType
from polystore.storage import (
    ScanResult,
    TableDescription,
    TableStatus,
    decode_backend_token,
    encode_backend_token,
)

_ATTRIBUTE_TYPES = {
    "S": frozenset({KeyValueType.STRING}),
    "N": frozenset({KeyValueType.INTEGER, KeyValueType.DOUBLE}),
    "B": frozenset(),
}

_KEY_ATTRIBUTE_TYPE = {
    KeyValueType.STRING: "S",
    KeyValueType.INTEGER: "N",
    KeyValueType.DOUBLE: "N",
}


# --- Value conversion helpers ---


def to_dynamo_value(value: Any) -> Any:
    """Prepare a JSON value for TypeSerializer: floats become Decimal, bytes base64 text."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, dict):
        return {k: to_dynamo_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_dynamo_value(v) for v in value]
    return value


def from_dynamo_value(value: Any) -> Any:
    """Turn deserialized DynamoDB values back into JSON.

    Integral Decimals become int while they fit NUMBER_PRECISION digits;
    wider ones were written from a double and come back as float.
    """
    if isinstance(value, Decimal):
        if value == value.to_integral_value() and value.adjusted() < NUMBER_PRECISION:
            return int(value)
        return float(value)
    if isinstance(value, dict):
        return {k: from_dynamo_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [from_dynamo_value(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted(from_dynamo_value(v) for v in value)
    if isinstance(value, Binary):
        return base64.b64encode(value.value).decode("ascii")
    return value


def _error_code(err: ClientError) -> str:
    return err.response.get("Error", {}).get("Code", "")


def _error_message(err: ClientError) -> str:
    return err.response.get("Error", {}).get("Message", str(err))


class DynamoDBStore:
    """Expression-capable backend over the low-level boto3 DynamoDB client."""

    expression_capable: ClassVar[bool] = True
    backend_name: ClassVar[str] = "dynamodb"

    def __init__(
        self,
        region: str | None = None,
        endpoint_url: str | None = None,
        *,
        config: PolystoreConfig | None = None,
        client: Any = None,
    ) -> None:
        cfg = config or PolystoreConfig()
        if client is None:
            session = boto3.Session(region_name=region)
            client = session.client(
                "dynamodb",
                region_name=region,
                endpoint_url=endpoint_url,
                config=BotoConfig(
                    connect_timeout=cfg.request_timeout_s,
                    read_timeout=cfg.request_timeout_s,
                    retries={"max_attempts": cfg.sdk_max_attempts, "mode": "standard"},
                ),
            )
        self._client = client
        self._serializer = TypeSerializer()
        self._deserializer = TypeDeserializer()

    def close(self) -> None:
        close = getattr(self._client, "close", None)
        if callable(close):
            close()

    # --- Serialization ---

    def _serialize(self, value: Any) -> dict[str, Any]:
        return self._serializer.serialize(to_dynamo_value(value))

    def _serialize_item(self, item: dict[str, Any]) -> dict[str, dict[str, Any]]:
        return {k: self._serialize(v) for k, v in item.items()}

    def _deserialize_item(self, raw: dict[str, Any] | None) -> dict[str, Any] | None:
        if raw is None:
            return None
        return {k: from_dynamo_value(self._deserializer.deserialize(v)) for k, v in raw.items()}

    def _call(self, operation: str, fn: Callable[..., Any], **kwargs: Any) -> Any:
        if self._client is None:
            raise ServiceUnavailableError("DynamoDB client not initialized")
        try:
            return fn(**kwargs)
        except ClientError as e:
            code = _error_code(e)
            if code == "ConditionalCheckFailedException":
                raise PreconditionFailedError() from e
            if code == "ResourceNotFoundException":
                raise NotFoundError(_error_message(e)) from e
            raise StorageBackendError(operation, f"{code}: {_error_message(e)}") from e
        except ParamValidationError as e:
            raise StorageBackendError(operation, str(e)) from e
        except BotoCoreError as e:
            raise StorageBackendError(operation, str(e)) from e

    def _expression_kwargs(
        self, names: dict[str, str] | None, values: dict[str, Any] | None
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if names:
            kwargs["ExpressionAttributeNames"] = names
        if values:
            kwargs["ExpressionAttributeValues"] = {k: self._serialize(v) for k, v in values.items()}
        return kwargs

    # --- Catalog ---

    def describe_table(self, name: str) -> TableDescription | None:
        try:
            response = self._call("describe_table", self._client.describe_table, TableName=name)
        except NotFoundError:
            return None
        table = response["Table"]
        key_name = next(k["AttributeName"] for k in table["KeySchema"] if k["KeyType"] == "HASH")
        attr_type = next(
            a["AttributeType"] for a in table["AttributeDefinitions"] if a["AttributeName"] == key_name
        )
        return TableDescription(
            name=name,
            key_name=key_name,
            key_types=_ATTRIBUTE_TYPES.get(attr_type, frozenset()),
            status=TableStatus.from_backend(table.get("TableStatus", "")),
        )

    def create_table(self, name: str, key_name: str, key_type: KeyValueType) -> None:
        try:
            self._call(
                "create_table",
                self._client.create_table,
                TableName=name,
                AttributeDefinitions=[
                    {"AttributeName": key_name, "AttributeType": _KEY_ATTRIBUTE_TYPE[key_type]}
                ],
                KeySchema=[{"AttributeName": key_name, "KeyType": "HASH"}],
                BillingMode="PAY_PER_REQUEST",
            )
        except StorageBackendError as e:
            if e.detail.startswith("ResourceInUseException"):
                raise TableAlreadyExistsError(name) from e
            raise

    def delete_table(self, name: str) -> None:
        try:
            self._call("delete_table", self._client.delete_table, TableName=name)
        except NotFoundError:
            return
        except StorageBackendError as e:
            # already deleting
            if not e.detail.startswith("ResourceInUseException"):
                raise

    def list_tables(self) -> list[str]:
        names: list[str] = []
        kwargs: dict[str, Any] = {"Limit": 100}
        while True:
            response = self._call("list_tables", self._client.list_tables, **kwargs)
            names.extend(response.get("TableNames", []))
            last = response.get("LastEvaluatedTableName")
            if not last:
                return names
            kwargs["ExclusiveStartTableName"] = last

    # --- Items ---

    def get_item(self, name: str, key_name: str, key_value: Any) -> dict[str, Any] | None:
        try:
            response = self._call(
                "get_item",
                self._client.get_item,
                TableName=name,
                Key={key_name: self._serialize(key_value)},
                ConsistentRead=True,
            )
        except NotFoundError:
            return None
        return self._deserialize_item(response.get("Item"))

    def put_item(
        self,
        name: str,
        item: dict[str, Any],
        *,
        condition: str | None = None,
        names: dict[str, str] | None = None,
        values: dict[str, Any] | None = None,
        return_old: bool = False,
    ) -> dict[str, Any] | None:
        kwargs = self._expression_kwargs(names, values)
        if condition:
            kwargs["ConditionExpression"] = condition
        response = self._call(
            "put_item",
            self._client.put_item,
            TableName=name,
            Item=self._serialize_item(item),
            ReturnValues="ALL_OLD" if return_old else "NONE",
            **kwargs,
        )
        return self._deserialize_item(response.get("Attributes"))

    def update_item(
        self,
        name: str,
        key_name: str,
        key_value: Any,
        *,
        update: str | None,
        condition: str | None = None,
        names: dict[str, str] | None = None,
        values: dict[str, Any] | None = None,
        return_values: str = "NONE",
    ) -> dict[str, Any] | None:
        kwargs = self._expression_kwargs(names, values)
        if update:
            kwargs["UpdateExpression"] = update
        if condition:
            kwargs["ConditionExpression"] = condition
        response = self._call(
            "update_item",
            self._client.update_item,
            TableName=name,
            Key={key_name: self._serialize(key_value)},
            ReturnValues=return_values,
            **kwargs,
        )
        return self._deserialize_item(response.get("Attributes"))

    def delete_item(
        self,
        name: str,
        key_name: str,
        key_value: Any,
        *,
        condition: str | None = None,
        names: dict[str, str] | None = None,
        values: dict[str, Any] | None = None,
        return_old: bool = False,
    ) -> dict[str, Any] | None:
        kwargs = self._expression_kwargs(names, values)
        if condition:
            kwargs["ConditionExpression"] = condition
        response = self._call(
            "delete_item",
            self._client.delete_item,
            TableName=name,
            Key={key_name: self._serialize(key_value)},
            ReturnValues="ALL_OLD" if return_old else "NONE",
            **kwargs,
        )
        return self._deserialize_item(response.get("Attributes"))

    def scan(
        self,
        name: str,
        limit: int | None,
        start_token: str | None,
        condition: Any = None,
    ) -> ScanResult:
        """One scan request; ``condition`` is a CompiledExpression applied as FilterExpression.

        With ``limit=None`` the table is drained. DynamoDB applies Limit
        before filtering, so a filtered page can be short or empty while
        ``next_token`` is still set.
        """
        kwargs: dict[str, Any] = {"TableName": name, "ConsistentRead": True}
        if condition is not None:
            kwargs["FilterExpression"] = condition.expression
            kwargs.update(self._expression_kwargs(condition.names, condition.values))
        if start_token:
            kwargs["ExclusiveStartKey"] = decode_backend_token(start_token)
        items: list[dict[str, Any]] = []
        while True:
            if limit is not None:
                kwargs["Limit"] = limit
            response = self._call("scan", self._client.scan, **kwargs)
            items.extend(self._deserialize_item(raw) for raw in response.get("Items", []))  # type: ignore[misc]
            last_key = response.get("LastEvaluatedKey")
            if limit is not None:
                token = encode_backend_token(last_key) if last_key else None
                return ScanResult(items=items, next_token=token)
            if not last_key:
                return ScanResult(items=items)
            kwargs["ExclusiveStartKey"] = last_key
