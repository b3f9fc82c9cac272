"""Google Cloud Datastore backend: one entity kind per key-table."""

from __future__ import annotations

import base64
import copy
from typing import Any, ClassVar

from google.api_core import exceptions as gexc
from google.cloud import datastore

from polystore.errors import (
    NotFoundError,
    StorageBackendError,
    TableAlreadyExistsError,
    TransientContentionError,
)
from polystore.primitives import KeyValueType, canonical_string
from polystore.storage import (
    ScanResult,
    TableDescription,
    TableStatus,
    TransactionBody,
    TransactionOutcome,
    WriteKind,
    decode_backend_token,
    encode_backend_token,
)

CATALOG_KIND = "polystore-key-tables"
_DELETE_BATCH = 500


# --- Entity conversion helpers ---


def _to_property(value: Any) -> Any:
    if isinstance(value, dict):
        embedded = datastore.Entity(exclude_from_indexes=tuple(value.keys()))
        embedded.update({k: _to_property(v) for k, v in value.items()})
        return embedded
    if isinstance(value, list):
        return [_to_property(v) for v in value]
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    return value


def _from_property(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _from_property(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_property(v) for v in value]
    return value


def _entity_to_document(entity: datastore.Entity | None) -> dict[str, Any] | None:
    if entity is None:
        return None
    return {k: _from_property(v) for k, v in entity.items()}


def _is_transient(err: Exception) -> bool:
    return isinstance(err, (gexc.Aborted, gexc.ServiceUnavailable))


class DatastoreStore:
    """Transactional backend on Cloud Datastore.

    Each key-table is an entity kind named after the physical table and each
    item is an entity keyed by the canonical string of its key value. The
    catalog of key-tables lives in the ``polystore-key-tables`` kind, since
    Datastore kinds exist implicitly.
    """

    expression_capable: ClassVar[bool] = False
    backend_name: ClassVar[str] = "datastore"

    def __init__(
        self,
        project: str | None = None,
        namespace: str | None = None,
        *,
        client: Any = None,
    ) -> None:
        self._client = client or datastore.Client(project=project, namespace=namespace)

    def close(self) -> None:
        close = getattr(self._client, "close", None)
        if callable(close):
            close()

    def _item_key(self, name: str, key_value: Any) -> Any:
        text = canonical_string(key_value)
        if text is None:
            raise StorageBackendError("item_key", f"Unsupported key value: {key_value!r}")
        return self._client.key(name, text)

    def _catalog_key(self, name: str) -> Any:
        return self._client.key(CATALOG_KIND, name)

    # --- Catalog ---

    def describe_table(self, name: str) -> TableDescription | None:
        try:
            entity = self._client.get(self._catalog_key(name))
        except gexc.GoogleAPICallError as e:
            raise StorageBackendError("describe_table", str(e)) from e
        if entity is None:
            return None
        return TableDescription(
            name=name,
            key_name=entity["key_name"],
            key_types=frozenset({KeyValueType(entity["key_type"])}),
            status=TableStatus.from_backend(entity.get("status", "ACTIVE")),
        )

    def create_table(self, name: str, key_name: str, key_type: KeyValueType) -> None:
        key = self._catalog_key(name)
        try:
            with self._client.transaction() as txn:
                if self._client.get(key) is not None:
                    raise TableAlreadyExistsError(name)
                entity = datastore.Entity(key=key)
                entity.update({"key_name": key_name, "key_type": key_type.value, "status": "ACTIVE"})
                txn.put(entity)
        except gexc.GoogleAPICallError as e:
            if _is_transient(e):
                raise TableAlreadyExistsError(name) from e
            raise StorageBackendError("create_table", str(e)) from e

    def delete_table(self, name: str) -> None:
        try:
            query = self._client.query(kind=name)
            query.keys_only()
            keys = [entity.key for entity in query.fetch()]
            for start in range(0, len(keys), _DELETE_BATCH):
                self._client.delete_multi(keys[start : start + _DELETE_BATCH])
            self._client.delete(self._catalog_key(name))
        except gexc.GoogleAPICallError as e:
            raise StorageBackendError("delete_table", str(e)) from e

    def list_tables(self) -> list[str]:
        try:
            query = self._client.query(kind=CATALOG_KIND)
            query.keys_only()
            return sorted(entity.key.name for entity in query.fetch())
        except gexc.GoogleAPICallError as e:
            raise StorageBackendError("list_tables", str(e)) from e

    # --- Items ---

    def get_item(self, name: str, key_name: str, key_value: Any) -> dict[str, Any] | None:
        try:
            return _entity_to_document(self._client.get(self._item_key(name, key_value)))
        except gexc.GoogleAPICallError as e:
            raise StorageBackendError("get_item", str(e)) from e

    def run_transaction(
        self, name: str, key_name: str, key_value: Any, body: TransactionBody
    ) -> TransactionOutcome:
        key = self._item_key(name, key_value)
        try:
            with self._client.transaction() as txn:
                before = _entity_to_document(self._client.get(key))
                write = body(copy.deepcopy(before))
                if write.kind is WriteKind.UNCHANGED:
                    after = before
                elif write.kind is WriteKind.DELETE:
                    txn.delete(key)
                    after = None
                else:
                    assert write.document is not None
                    entity = datastore.Entity(key=key, exclude_from_indexes=_unindexed(write.document))
                    entity.update({k: _to_property(v) for k, v in write.document.items()})
                    txn.put(entity)
                    after = dict(write.document)
        except gexc.GoogleAPICallError as e:
            if _is_transient(e):
                raise TransientContentionError("run_transaction", str(e)) from e
            if isinstance(e, gexc.NotFound):
                raise NotFoundError(str(e)) from e
            raise StorageBackendError("run_transaction", str(e)) from e
        return TransactionOutcome(before=before, after=after)

    def scan(self, name: str, limit: int | None, start_token: str | None) -> ScanResult:
        cursor = decode_backend_token(start_token)["cursor"] if start_token else None
        try:
            query = self._client.query(kind=name)
            iterator = query.fetch(limit=limit, start_cursor=cursor)
            if limit is None:
                return ScanResult(items=[_entity_to_document(e) for e in iterator])  # type: ignore[misc]
            page = next(iterator.pages, None)
            items = [_entity_to_document(e) for e in page] if page is not None else []
            next_cursor = iterator.next_page_token
        except gexc.GoogleAPICallError as e:
            raise StorageBackendError("scan", str(e)) from e
        if isinstance(next_cursor, bytes):
            next_cursor = next_cursor.decode("ascii")
        if not next_cursor or not items:
            return ScanResult(items=items)  # type: ignore[arg-type]
        return ScanResult(items=items, next_token=encode_backend_token({"cursor": next_cursor}))  # type: ignore[arg-type]


def _unindexed(document: dict[str, Any]) -> tuple[str, ...]:
    # indexed string properties are capped at 1500 bytes
    return tuple(k for k, v in document.items() if isinstance(v, (str, dict, list)))
