"""In-process transactional backend with optimistic versioning."""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from typing import Any, ClassVar

from polystore.errors import (
    NotFoundError,
    StorageBackendError,
    TableAlreadyExistsError,
    TransientContentionError,
)
from polystore.primitives import KeyValueType, canonical_string
from polystore.storage import (
    ItemWrite,
    ScanResult,
    TableDescription,
    TableStatus,
    TransactionBody,
    TransactionOutcome,
    WriteKind,
    decode_backend_token,
    encode_backend_token,
)


@dataclass
class _MemoryTable:
    key_name: str
    key_type: KeyValueType
    status: TableStatus = TableStatus.ACTIVE
    pending_polls: int = 0
    items: dict[str, dict[str, Any]] = field(default_factory=dict)
    versions: dict[str, int] = field(default_factory=dict)


def _item_id(key_value: Any) -> str:
    text = canonical_string(key_value)
    if text is None:
        raise StorageBackendError("item_key", f"Unsupported key value: {key_value!r}")
    return text


class MemoryStore:
    """Process-local store behaving like a transactional entity store.

    Transactions read a version, run the body without holding the lock, and
    commit only if the version is unchanged; otherwise they abort with
    TransientContentionError like a contended Datastore commit. Tests can
    force aborts with ``inject_aborts`` and delay activation with
    ``creation_polls``.
    """

    expression_capable: ClassVar[bool] = False
    backend_name: ClassVar[str] = "memory"

    def __init__(self, *, creation_polls: int = 0) -> None:
        self._tables: dict[str, _MemoryTable] = {}
        self._lock = threading.Lock()
        self._creation_polls = creation_polls
        self._forced_aborts = 0
        self.create_calls = 0
        self.commit_attempts = 0

    def inject_aborts(self, count: int) -> None:
        """Make the next ``count`` commits abort with contention."""
        with self._lock:
            self._forced_aborts = count

    def close(self) -> None:
        pass

    # --- Catalog ---

    def describe_table(self, name: str) -> TableDescription | None:
        with self._lock:
            table = self._tables.get(name)
            if table is None:
                return None
            if table.status is TableStatus.CREATING:
                if table.pending_polls > 0:
                    table.pending_polls -= 1
                else:
                    table.status = TableStatus.ACTIVE
            return TableDescription(
                name=name,
                key_name=table.key_name,
                key_types=frozenset({table.key_type}),
                status=table.status,
            )

    def create_table(self, name: str, key_name: str, key_type: KeyValueType) -> None:
        with self._lock:
            self.create_calls += 1
            if name in self._tables:
                raise TableAlreadyExistsError(name)
            self._tables[name] = _MemoryTable(
                key_name=key_name,
                key_type=key_type,
                status=TableStatus.CREATING,
                pending_polls=self._creation_polls,
            )

    def delete_table(self, name: str) -> None:
        with self._lock:
            self._tables.pop(name, None)

    def list_tables(self) -> list[str]:
        with self._lock:
            return sorted(self._tables)

    def _table(self, name: str) -> _MemoryTable:
        table = self._tables.get(name)
        if table is None or table.status is not TableStatus.ACTIVE:
            raise NotFoundError(f"Key-table '{name}' does not exist")
        return table

    # --- Items ---

    def get_item(self, name: str, key_name: str, key_value: Any) -> dict[str, Any] | None:
        with self._lock:
            table = self._tables.get(name)
            if table is None:
                return None
            item = table.items.get(_item_id(key_value))
            return copy.deepcopy(item) if item is not None else None

    def run_transaction(
        self, name: str, key_name: str, key_value: Any, body: TransactionBody
    ) -> TransactionOutcome:
        item_id = _item_id(key_value)
        with self._lock:
            table = self._table(name)
            version = table.versions.get(item_id, 0)
            before = copy.deepcopy(table.items.get(item_id))

        write: ItemWrite = body(copy.deepcopy(before))

        with self._lock:
            self.commit_attempts += 1
            if self._forced_aborts > 0:
                self._forced_aborts -= 1
                raise TransientContentionError("commit", f"transaction on '{name}' aborted")
            table = self._table(name)
            if table.versions.get(item_id, 0) != version:
                raise TransientContentionError("commit", f"concurrent write to '{name}/{item_id}'")
            if write.kind is WriteKind.UNCHANGED:
                return TransactionOutcome(before=before, after=before)
            table.versions[item_id] = version + 1
            if write.kind is WriteKind.DELETE:
                table.items.pop(item_id, None)
                return TransactionOutcome(before=before, after=None)
            assert write.document is not None
            table.items[item_id] = copy.deepcopy(write.document)
            return TransactionOutcome(before=before, after=copy.deepcopy(write.document))

    def scan(self, name: str, limit: int | None, start_token: str | None) -> ScanResult:
        with self._lock:
            table = self._table(name)
            ordered = sorted(table.items)
            if start_token is not None:
                after = decode_backend_token(start_token)["after"]
                ordered = [i for i in ordered if i > after]
            page_ids = ordered if limit is None else ordered[:limit]
            items = [copy.deepcopy(table.items[i]) for i in page_ids]
        has_more = limit is not None and len(ordered) > limit
        token = encode_backend_token({"after": page_ids[-1]}) if has_more and page_ids else None
        return ScanResult(items=items, next_token=token)
