"""Backend protocols, catalog types, and storage URI resolution."""

from __future__ import annotations

import base64
import enum
import json
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Protocol, runtime_checkable
from urllib.parse import parse_qs, urlparse

from polystore.config import PolystoreConfig
from polystore.errors import InvalidArgumentError, StorageBackendError
from polystore.primitives import KeyValueType


class TableStatus(enum.Enum):
    CREATING = "CREATING"
    UPDATING = "UPDATING"
    DELETING = "DELETING"
    ARCHIVING = "ARCHIVING"
    ACTIVE = "ACTIVE"
    UNAVAILABLE = "UNAVAILABLE"

    @classmethod
    def from_backend(cls, raw: str) -> TableStatus:
        try:
            return cls(raw)
        except ValueError:
            return cls.UNAVAILABLE


TRANSITIONAL_STATUSES = frozenset(
    {TableStatus.CREATING, TableStatus.UPDATING, TableStatus.DELETING, TableStatus.ARCHIVING}
)


@dataclass(frozen=True)
class TableDescription:
    """Catalog view of one physical key-table."""

    name: str
    key_name: str
    key_types: frozenset[KeyValueType]
    status: TableStatus


@dataclass(frozen=True)
class ScanResult:
    items: list[dict[str, Any]]
    next_token: str | None = None


class WriteKind(enum.Enum):
    UPSERT = "upsert"
    DELETE = "delete"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class ItemWrite:
    """What a transaction body wants committed for its item."""

    kind: WriteKind
    document: dict[str, Any] | None = None

    @classmethod
    def upsert(cls, document: dict[str, Any]) -> ItemWrite:
        return cls(WriteKind.UPSERT, document)

    @classmethod
    def delete(cls) -> ItemWrite:
        return cls(WriteKind.DELETE)

    @classmethod
    def unchanged(cls) -> ItemWrite:
        return cls(WriteKind.UNCHANGED)


@dataclass(frozen=True)
class TransactionOutcome:
    before: dict[str, Any] | None
    after: dict[str, Any] | None


TransactionBody = Callable[[dict[str, Any] | None], ItemWrite]


# --- Backend token helpers ---


def encode_backend_token(payload: Any) -> str:
    """Serialize a backend cursor as URL-safe base64 JSON (never contains '#')."""
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_backend_token(token: str) -> Any:
    try:
        return json.loads(base64.urlsafe_b64decode(token.encode("ascii")).decode("utf-8"))
    except (ValueError, UnicodeError) as e:
        raise InvalidArgumentError(f"Malformed backend scan token: {e}") from e


# --- Protocols ---


@runtime_checkable
class CatalogProtocol(Protocol):
    """Catalog and point-read operations every backend provides."""

    expression_capable: ClassVar[bool]
    backend_name: ClassVar[str]

    def describe_table(self, name: str) -> TableDescription | None: ...

    def create_table(self, name: str, key_name: str, key_type: KeyValueType) -> None: ...

    def delete_table(self, name: str) -> None: ...

    def list_tables(self) -> list[str]: ...

    def get_item(self, name: str, key_name: str, key_value: Any) -> dict[str, Any] | None: ...

    def close(self) -> None: ...


@runtime_checkable
class ExpressionStore(CatalogProtocol, Protocol):
    """Store with native conditional writes, list append and filtered scans.

    Expressions use the placeholder maps produced by ``compiler``; a failed
    condition raises PreconditionFailedError.
    """

    def put_item(
        self,
        name: str,
        item: dict[str, Any],
        *,
        condition: str | None = None,
        names: dict[str, str] | None = None,
        values: dict[str, Any] | None = None,
        return_old: bool = False,
    ) -> dict[str, Any] | None: ...

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
    ) -> dict[str, Any] | None: ...

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
    ) -> dict[str, Any] | None: ...

    def scan(
        self,
        name: str,
        limit: int | None,
        start_token: str | None,
        condition: Any = None,
    ) -> ScanResult: ...


@runtime_checkable
class TransactionalStore(CatalogProtocol, Protocol):
    """Store with only transactional get/upsert/delete and unfiltered scans.

    ``run_transaction`` calls ``body`` with the current item (or None) and
    commits the returned ItemWrite atomically. Optimistic-concurrency
    aborts raise TransientContentionError; exceptions raised by ``body``
    roll the transaction back and propagate.
    """

    def run_transaction(
        self, name: str, key_name: str, key_value: Any, body: TransactionBody
    ) -> TransactionOutcome: ...

    def scan(self, name: str, limit: int | None, start_token: str | None) -> ScanResult: ...


# --- Storage targets ---


@dataclass(frozen=True)
class StorageTarget:
    """Resolved backend target from a storage URI."""

    backend: str
    uri: str
    region: str | None = None
    endpoint_url: str | None = None
    project: str | None = None
    namespace: str | None = None
    options: dict[str, str] = field(default_factory=dict)


def parse_storage_target(storage_uri: str) -> StorageTarget:
    """Resolve ``dynamodb://``, ``datastore://`` and ``memory://`` URIs."""
    parsed = urlparse(storage_uri)
    query = {k: v[-1] for k, v in parse_qs(parsed.query).items()}

    if parsed.scheme == "dynamodb":
        region = parsed.netloc or None
        return StorageTarget(
            backend="dynamodb",
            uri=storage_uri,
            region=region,
            endpoint_url=query.get("endpoint"),
            options=query,
        )

    if parsed.scheme == "datastore":
        project = parsed.netloc
        if not project:
            raise StorageBackendError(
                "parse_storage_uri", f"Invalid datastore URI (missing project): {storage_uri}"
            )
        namespace = parsed.path.strip("/") or None
        if namespace is not None and "/" in namespace:
            raise StorageBackendError(
                "parse_storage_uri", f"Invalid datastore namespace in URI: {storage_uri}"
            )
        return StorageTarget(
            backend="datastore",
            uri=storage_uri,
            project=project,
            namespace=namespace,
            options=query,
        )

    if parsed.scheme == "memory":
        return StorageTarget(backend="memory", uri=storage_uri, options=query)

    raise StorageBackendError(
        "parse_storage_uri",
        f"Unsupported storage URI scheme '{parsed.scheme}' for '{storage_uri}'",
    )


def open_backend(
    storage_uri: str = "memory://",
    *,
    config: PolystoreConfig | None = None,
) -> ExpressionStore | TransactionalStore:
    """Open the backend a storage URI points at."""
    cfg = config or PolystoreConfig()
    target = parse_storage_target(storage_uri)

    if target.backend == "dynamodb":
        from polystore.storage_dynamodb import DynamoDBStore

        return DynamoDBStore(
            region=target.region or cfg.aws_region,
            endpoint_url=target.endpoint_url or cfg.dynamodb_endpoint_url,
            config=cfg,
        )

    if target.backend == "datastore":
        from polystore.storage_datastore import DatastoreStore

        return DatastoreStore(
            project=target.project or cfg.datastore_project,
            namespace=target.namespace or cfg.datastore_namespace,
        )

    from polystore.storage_memory import MemoryStore

    return MemoryStore()
