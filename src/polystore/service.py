"""Public async database API over one storage backend."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from polystore.conditions import (
    ConditionCoupling,
    Condition,
    array_element_not_exists,
    as_coupling,
    evaluate,
)
from polystore.config import PolystoreConfig
from polystore.errors import (
    NotFoundError,
    PolystoreError,
    PreconditionFailedError,
    ServiceUnavailableError,
)
from polystore.executor import MutationExecutor
from polystore.logging import get_logger
from polystore.pagination import PaginationEngine
from polystore.primitives import DbKey, canonical_string
from polystore.registry import (
    SYSTEM_KEY_NAME,
    SYSTEM_KEYS_ATTRIBUTE,
    KeyTableHandle,
    KeyTableRegistry,
)
from polystore.results import OperationResult, ReturnBehavior, ScanPage, Status
from polystore.storage import ExpressionStore, TransactionalStore, open_backend

T = TypeVar("T")

Conditions = ConditionCoupling | Condition | None

log = get_logger(__name__)


def _sort_key(value: Any) -> str:
    text = canonical_string(value)
    assert text is not None
    return text


def apply_output_options(value: Any, config: PolystoreConfig) -> Any:
    """Apply ``auto_sort_arrays`` and ``auto_convert_roundable_float_to_int`` recursively."""
    if isinstance(value, dict):
        return {k: apply_output_options(v, config) for k, v in value.items()}
    if isinstance(value, list):
        converted = [apply_output_options(v, config) for v in value]
        if config.auto_sort_arrays and all(canonical_string(v) is not None for v in converted):
            converted.sort(key=_sort_key)
        return converted
    if (
        config.auto_convert_roundable_float_to_int
        and isinstance(value, float)
        and value.is_integer()
    ):
        return int(value)
    return value


def _project(item: dict[str, Any], key_name: str, attributes: list[str] | None) -> dict[str, Any]:
    if not attributes:
        return item
    wanted = set(attributes) | {key_name}
    return {k: v for k, v in item.items() if k in wanted}


class DatabaseService:
    """Backend-agnostic document store.

    Every method is a coroutine returning an ``OperationResult``; expected
    failures come back as a non-OK status, never as an exception.
    ``asyncio.CancelledError`` is not caught and propagates to the caller.

    Example:
        service = DatabaseService.from_uri("memory://")
        await service.put_item("orders", DbKey(name="orderId", value="A1"), {"total": 10})
    """

    def __init__(
        self,
        backend: ExpressionStore | TransactionalStore | None,
        config: PolystoreConfig | None = None,
        registry: KeyTableRegistry | None = None,
    ) -> None:
        self._backend = backend
        self._config = config or PolystoreConfig()
        self._registry = registry
        self._executor: MutationExecutor | None = None
        self._pagination: PaginationEngine | None = None
        if backend is not None:
            self._registry = registry or KeyTableRegistry(backend, self._config)
            self._executor = MutationExecutor(backend, self._config)
            self._pagination = PaginationEngine(backend, self._registry)

    @classmethod
    def from_uri(cls, storage_uri: str = "memory://", config: PolystoreConfig | None = None) -> DatabaseService:
        cfg = config or PolystoreConfig()
        return cls(open_backend(storage_uri, config=cfg), cfg)

    @property
    def config(self) -> PolystoreConfig:
        return self._config

    @property
    def registry(self) -> KeyTableRegistry:
        if self._registry is None:
            raise ServiceUnavailableError("Database client is not initialized")
        return self._registry

    @property
    def executor(self) -> MutationExecutor:
        if self._executor is None:
            raise ServiceUnavailableError("Database client is not initialized")
        return self._executor

    @property
    def pagination(self) -> PaginationEngine:
        if self._pagination is None:
            raise ServiceUnavailableError("Database client is not initialized")
        return self._pagination

    def close(self) -> None:
        if self._backend is not None:
            self._backend.close()

    # --- Result boundary ---

    async def _run(self, operation: str, fn: Callable[[], Awaitable[T]]) -> OperationResult[T]:
        try:
            if self._backend is None:
                raise ServiceUnavailableError("Database client is not initialized")
            return OperationResult.ok(await fn())
        except PolystoreError as e:
            log.debug("operation_failed", operation=operation, status=e.status.value, error=str(e))
            return OperationResult.failure(e.status, f"{operation}: {e}")
        except Exception as e:
            log.exception("operation_error", operation=operation)
            return OperationResult.failure(Status.INTERNAL_ERROR, f"{operation}: {e}")

    def _output(self, document: dict[str, Any] | None) -> dict[str, Any] | None:
        if document is None:
            return None
        return apply_output_options(document, self._config)

    # --- Key-table helpers ---

    async def _register_key(self, table_name: str, key_name: str) -> None:
        """Record ``key_name`` in the system catalog entry of ``table_name``."""
        if table_name == self._config.system_table_name:
            return
        if self.registry.is_registered(table_name, key_name):
            return
        system = await self.registry.system_handle(create=True)
        try:
            await self.executor.add_elements(
                system,
                self.registry.system_key(table_name),
                SYSTEM_KEYS_ATTRIBUTE,
                [key_name],
                conditions=array_element_not_exists(SYSTEM_KEYS_ATTRIBUTE, key_name),
            )
        except PreconditionFailedError:
            pass  # already registered
        self.registry.mark_registered(table_name, key_name)

    async def _write_handle(self, table_name: str, key: DbKey) -> KeyTableHandle:
        handle = await self.registry.resolve(table_name, key, create=True)
        await self._register_key(table_name, key.name)
        return handle

    async def _existing_handle(self, table_name: str, key: DbKey) -> KeyTableHandle | None:
        try:
            return await self.registry.resolve(table_name, key, create=False)
        except NotFoundError:
            return None

    async def _read(self, table_name: str, key: DbKey) -> dict[str, Any] | None:
        handle = await self._existing_handle(table_name, key)
        if handle is None:
            return None
        backend = self._backend
        assert backend is not None
        return await asyncio.to_thread(
            backend.get_item, handle.physical_name, key.name, key.stored_value
        )

    # --- Reads ---

    async def item_exists(
        self, table_name: str, key: DbKey, conditions: Conditions = None
    ) -> OperationResult[bool]:
        """OK(True) if the item exists and satisfies ``conditions``.

        A missing item is NOT_FOUND; an existing item that fails the
        conditions is PRECONDITION_FAILED.
        """

        async def run() -> bool:
            item = await self._read(table_name, key)
            if item is None:
                raise NotFoundError(f"Item {key} does not exist in '{table_name}'")
            if not evaluate(as_coupling(conditions), item):
                raise PreconditionFailedError(f"Item {key} does not satisfy the conditions")
            return True

        return await self._run("item_exists", run)

    async def get_item(
        self, table_name: str, key: DbKey, attributes: list[str] | None = None
    ) -> OperationResult[dict[str, Any]]:
        async def run() -> dict[str, Any] | None:
            item = await self._read(table_name, key)
            if item is None:
                return None
            return self._output(_project(item, key.name, attributes))

        return await self._run("get_item", run)

    async def get_items(
        self, table_name: str, keys: list[DbKey], attributes: list[str] | None = None
    ) -> OperationResult[list[dict[str, Any]]]:
        """Fetch several items concurrently; missing keys are left out of the result."""

        async def run() -> list[dict[str, Any]]:
            found = await asyncio.gather(*(self._read(table_name, key) for key in keys))
            return [
                self._output(_project(item, key.name, attributes))  # type: ignore[misc]
                for key, item in zip(keys, found)
                if item is not None
            ]

        return await self._run("get_items", run)

    # --- Mutations ---

    async def put_item(
        self,
        table_name: str,
        key: DbKey,
        item: dict[str, Any],
        return_behavior: ReturnBehavior = ReturnBehavior.DO_NOT_RETURN,
        overwrite: bool = False,
    ) -> OperationResult[dict[str, Any]]:
        async def run() -> dict[str, Any] | None:
            handle = await self._write_handle(table_name, key)
            result = await self.executor.put(
                handle, key, item, overwrite=overwrite, return_behavior=return_behavior
            )
            return self._output(result)

        return await self._run("put_item", run)

    async def update_item(
        self,
        table_name: str,
        key: DbKey,
        data: dict[str, Any],
        return_behavior: ReturnBehavior = ReturnBehavior.DO_NOT_RETURN,
        conditions: Conditions = None,
    ) -> OperationResult[dict[str, Any]]:
        """Shallow-merge ``data`` into the item, creating it if absent."""

        async def run() -> dict[str, Any] | None:
            handle = await self._write_handle(table_name, key)
            result = await self.executor.update(
                handle, key, data, return_behavior=return_behavior, conditions=conditions
            )
            return self._output(result)

        return await self._run("update_item", run)

    async def delete_item(
        self,
        table_name: str,
        key: DbKey,
        return_behavior: ReturnBehavior = ReturnBehavior.DO_NOT_RETURN,
        conditions: Conditions = None,
    ) -> OperationResult[dict[str, Any]]:
        async def run() -> dict[str, Any] | None:
            handle = await self._existing_handle(table_name, key)
            if handle is None:
                if not evaluate(as_coupling(conditions), None):
                    raise PreconditionFailedError()
                return None
            result = await self.executor.delete(
                handle, key, return_behavior=return_behavior, conditions=conditions
            )
            return self._output(result)

        return await self._run("delete_item", run)

    async def add_elements_to_array(
        self,
        table_name: str,
        key: DbKey,
        attribute: str,
        elements: list[Any],
        return_behavior: ReturnBehavior = ReturnBehavior.DO_NOT_RETURN,
        conditions: Conditions = None,
    ) -> OperationResult[dict[str, Any]]:
        async def run() -> dict[str, Any] | None:
            handle = await self._write_handle(table_name, key)
            result = await self.executor.add_elements(
                handle, key, attribute, elements,
                return_behavior=return_behavior, conditions=conditions,
            )
            return self._output(result)

        return await self._run("add_elements_to_array", run)

    async def remove_elements_from_array(
        self,
        table_name: str,
        key: DbKey,
        attribute: str,
        elements: list[Any],
        return_behavior: ReturnBehavior = ReturnBehavior.DO_NOT_RETURN,
        conditions: Conditions = None,
    ) -> OperationResult[dict[str, Any]]:
        async def run() -> dict[str, Any] | None:
            handle = await self._existing_handle(table_name, key)
            if handle is None:
                if not evaluate(as_coupling(conditions), None):
                    raise PreconditionFailedError()
                return None
            result = await self.executor.remove_elements(
                handle, key, attribute, elements,
                return_behavior=return_behavior, conditions=conditions,
            )
            return self._output(result)

        return await self._run("remove_elements_from_array", run)

    async def increment_attribute(
        self,
        table_name: str,
        key: DbKey,
        attribute: str,
        delta: float,
        conditions: Conditions = None,
    ) -> OperationResult[float]:
        async def run() -> float:
            handle = await self._write_handle(table_name, key)
            return await self.executor.increment(handle, key, attribute, delta, conditions=conditions)

        return await self._run("increment_attribute", run)

    # --- Scans ---

    async def scan_table(self, table_name: str) -> OperationResult[tuple[list[str], list[dict[str, Any]]]]:
        return await self.scan_table_with_filter(table_name, None)

    async def scan_table_with_filter(
        self, table_name: str, conditions: Conditions
    ) -> OperationResult[tuple[list[str], list[dict[str, Any]]]]:
        async def run() -> tuple[list[str], list[dict[str, Any]]]:
            keys, items = await self.pagination.scan_all(table_name, conditions)
            return keys, [apply_output_options(item, self._config) for item in items]

        return await self._run("scan_table", run)

    async def scan_table_paginated(
        self, table_name: str, page_size: int, page_token: str | None = None
    ) -> OperationResult[ScanPage]:
        return await self.scan_table_with_filter_paginated(table_name, None, page_size, page_token)

    async def scan_table_with_filter_paginated(
        self,
        table_name: str,
        conditions: Conditions,
        page_size: int,
        page_token: str | None = None,
    ) -> OperationResult[ScanPage]:
        async def run() -> ScanPage:
            page = await self.pagination.scan_page(table_name, page_size, page_token, conditions)
            return ScanPage(
                keys=page.keys,
                items=[apply_output_options(item, self._config) for item in page.items],
                next_token=page.next_token,
                total_count=page.total_count,
            )

        return await self._run("scan_table_paginated", run)

    # --- Catalog ---

    async def get_table_names(self) -> OperationResult[list[str]]:
        async def run() -> list[str]:
            try:
                system = await self.registry.system_handle(create=False)
            except NotFoundError:
                return []
            backend = self._backend
            assert backend is not None
            result = await asyncio.to_thread(backend.scan, system.physical_name, None, None)
            return sorted(
                str(entry[SYSTEM_KEY_NAME])
                for entry in result.items
                if entry.get(SYSTEM_KEYS_ATTRIBUTE)
            )

        return await self._run("get_table_names", run)

    async def get_table_keys(self, table_name: str) -> OperationResult[list[str]]:
        async def run() -> list[str]:
            return sorted(await self.registry.table_keys(table_name))

        return await self._run("get_table_keys", run)

    async def drop_table(self, table_name: str) -> OperationResult[bool]:
        """Delete every key-table of ``table_name`` and its system catalog entry."""

        async def run() -> bool:
            keys = await self.registry.table_keys(table_name)
            await self.registry.drop_key_tables(table_name, keys)
            try:
                system = await self.registry.system_handle(create=False)
            except NotFoundError:
                return True
            await self.executor.delete(system, self.registry.system_key(table_name))
            self.registry.evict(table_name)
            log.info("table_dropped", table=table_name, keys=keys)
            return True

        return await self._run("drop_table", run)
