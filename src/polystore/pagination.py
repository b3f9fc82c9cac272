"""Paginated scans across every key-table of a logical table.

Key-tables are visited in lexicographic order of their key attribute
name. A page token records the key-table being scanned, the backend's own
cursor within it, and a hash of the full sorted key name list; a token
whose hash no longer matches is rejected rather than resumed.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from polystore.compiler import compile_expression
from polystore.conditions import ConditionCoupling, Condition, as_coupling, evaluate
from polystore.errors import InvalidArgumentError, NotFoundError
from polystore.logging import get_logger
from polystore.registry import KeyTableHandle, KeyTableRegistry
from polystore.results import ScanPage
from polystore.storage import ExpressionStore, ScanResult, TransactionalStore

TOKEN_SEPARATOR = "###"
_NULL_TOKEN = "null"

log = get_logger(__name__)


def key_list_hash(keys: list[str]) -> str:
    """SHA-256 hex digest of the sorted key attribute names."""
    digest = hashlib.sha256()
    for key in sorted(keys):
        digest.update(key.encode("utf-8"))
        digest.update(b"\n")
    return digest.hexdigest()


class PaginationCursor(BaseModel):
    """Resumable position of a paginated scan."""

    model_config = ConfigDict(frozen=True)

    key_name: str
    backend_token: str | None = None
    keys_hash: str

    @field_validator("key_name", "keys_hash")
    @classmethod
    def _not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("backend_token")
    @classmethod
    def _no_separator(cls, v: str | None) -> str | None:
        if v is not None and (not v or "#" in v):
            raise ValueError("backend token must be non-empty and free of '#'")
        return v

    def encode(self) -> str:
        raw = TOKEN_SEPARATOR.join(
            [self.key_name, self.backend_token or _NULL_TOKEN, self.keys_hash]
        )
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    @classmethod
    def decode(cls, token: str) -> PaginationCursor:
        try:
            raw = base64.b64decode(token.encode("ascii"), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeError, ValueError) as e:
            raise InvalidArgumentError(f"Invalid pagination token: {e}") from e
        parts = raw.rsplit(TOKEN_SEPARATOR, 2)
        if len(parts) != 3:
            raise InvalidArgumentError("Invalid pagination token")
        key_name, backend_token, keys_hash = parts
        try:
            return cls(
                key_name=key_name,
                backend_token=None if backend_token == _NULL_TOKEN else backend_token,
                keys_hash=keys_hash,
            )
        except ValidationError as e:
            raise InvalidArgumentError(f"Invalid pagination token: {e.errors()[0]['msg']}") from e


class PaginationEngine:
    """Runs paginated and full scans over a logical table's key-tables."""

    def __init__(
        self,
        backend: ExpressionStore | TransactionalStore,
        registry: KeyTableRegistry,
    ) -> None:
        self._backend = backend
        self._registry = registry

    @property
    def expression_capable(self) -> bool:
        return bool(getattr(self._backend, "expression_capable", False))

    async def _handle(self, table_name: str, key_name: str) -> KeyTableHandle | None:
        try:
            return await self._registry.resolve_existing(table_name, key_name)
        except NotFoundError:
            log.info("scan_key_table_missing", table=table_name, key_name=key_name)
            return None

    async def _scan_once(
        self,
        handle: KeyTableHandle,
        limit: int | None,
        start_token: str | None,
        coupling: ConditionCoupling,
    ) -> ScanResult:
        if self.expression_capable:
            backend: ExpressionStore = self._backend  # type: ignore[assignment]
            compiled = compile_expression(coupling)
            return await asyncio.to_thread(
                backend.scan, handle.physical_name, limit, start_token, compiled
            )
        result: ScanResult = await asyncio.to_thread(
            self._backend.scan, handle.physical_name, limit, start_token
        )
        if coupling.is_empty:
            return result
        return ScanResult(
            items=[item for item in result.items if evaluate(coupling, item)],
            next_token=result.next_token,
        )

    async def scan_page(
        self,
        table_name: str,
        page_size: int,
        page_token: str | None = None,
        conditions: ConditionCoupling | Condition | None = None,
    ) -> ScanPage:
        """Return one page of up to ``page_size`` items.

        Raises InvalidArgumentError for a non-positive page size, a token
        that cannot be decoded, a token naming an unknown key-table, or a
        token issued before the key-table list changed.
        """
        if page_size <= 0:
            raise InvalidArgumentError(f"Page size must be positive, got {page_size}")
        coupling = as_coupling(conditions)

        keys = sorted(await self._registry.table_keys(table_name))
        keys_hash = key_list_hash(keys)

        start = 0
        cursor: PaginationCursor | None = None
        if page_token:
            cursor = PaginationCursor.decode(page_token)
            if cursor.keys_hash != keys_hash:
                raise InvalidArgumentError(
                    f"Pagination token is stale: keys of table '{table_name}' changed since it was issued"
                )
            if cursor.key_name not in keys:
                raise InvalidArgumentError(f"Pagination token names unknown key '{cursor.key_name}'")
            start = keys.index(cursor.key_name)

        first_page = cursor is None
        items: list[dict[str, Any]] = []

        def page(next_cursor: PaginationCursor | None) -> ScanPage:
            return ScanPage(
                keys=keys if first_page else None,
                items=items,
                next_token=next_cursor.encode() if next_cursor is not None else None,
            )

        for key_name in keys[start:]:
            if len(items) >= page_size:
                return page(PaginationCursor(key_name=key_name, keys_hash=keys_hash))

            handle = await self._handle(table_name, key_name)
            if handle is None:
                continue

            resume = cursor.backend_token if cursor is not None and cursor.key_name == key_name else None
            try:
                result = await self._scan_once(handle, page_size - len(items), resume, coupling)
            except NotFoundError:
                self._registry.evict(table_name, key_name)
                continue
            items.extend(result.items)
            if result.next_token is not None:
                return page(
                    PaginationCursor(
                        key_name=key_name, backend_token=result.next_token, keys_hash=keys_hash
                    )
                )

        return page(None)

    async def scan_all(
        self,
        table_name: str,
        conditions: ConditionCoupling | Condition | None = None,
    ) -> tuple[list[str], list[dict[str, Any]]]:
        """Drain every key-table; returns the sorted key names and all matching items."""
        coupling = as_coupling(conditions)
        keys = sorted(await self._registry.table_keys(table_name))
        items: list[dict[str, Any]] = []
        for key_name in keys:
            handle = await self._handle(table_name, key_name)
            if handle is None:
                continue
            try:
                result = await self._scan_once(handle, None, None, coupling)
            except NotFoundError:
                self._registry.evict(table_name, key_name)
                continue
            items.extend(result.items)
        return keys, items
