"""Key-table registry: resolve (logical table, key name) to a ready physical table."""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from typing import Any

from polystore.config import PolystoreConfig
from polystore.errors import (
    ConflictError,
    NotFoundError,
    TableAlreadyExistsError,
    TableTimeoutError,
)
from polystore.logging import get_logger
from polystore.primitives import DbKey, KeyValueType
from polystore.storage import (
    TRANSITIONAL_STATUSES,
    CatalogProtocol,
    TableDescription,
    TableStatus,
)

SYSTEM_KEY_NAME = "table"
SYSTEM_KEYS_ATTRIBUTE = "keys"

log = get_logger(__name__)


@dataclass(frozen=True)
class KeyTableHandle:
    """A physical key-table known to be active."""

    table_name: str
    key_name: str
    physical_name: str
    key_types: frozenset[KeyValueType]

    def accepts(self, key_type: KeyValueType) -> bool:
        return key_type in self.key_types


def physical_name(table_name: str, key_name: str) -> str:
    return f"{table_name}-{key_name}"


def _describe_types(types: frozenset[KeyValueType]) -> str:
    return "|".join(sorted(t.value for t in types)) or "nothing"


class KeyTableRegistry:
    """Resolves and caches key-table handles for one service instance.

    The cache is the only shared mutable state in the service; it maps
    (table_name, key_name) to an active handle and is guarded by a lock.
    Creation races are resolved by the backend: a losing creator sees
    TableAlreadyExistsError and then waits for the winner's table.
    """

    def __init__(self, backend: CatalogProtocol, config: PolystoreConfig | None = None) -> None:
        self._backend = backend
        self._config = config or PolystoreConfig()
        self._cache: dict[tuple[str, str], KeyTableHandle] = {}
        self._registered: set[tuple[str, str]] = set()
        self._lock = threading.Lock()

    @property
    def system_table_name(self) -> str:
        return self._config.system_table_name

    # --- Cache helpers ---

    def cached(self, table_name: str, key_name: str) -> KeyTableHandle | None:
        with self._lock:
            return self._cache.get((table_name, key_name))

    def evict(self, table_name: str, key_name: str | None = None) -> None:
        with self._lock:
            for cache_key in list(self._cache):
                if cache_key[0] == table_name and (key_name is None or cache_key[1] == key_name):
                    del self._cache[cache_key]
            self._registered = {
                r for r in self._registered
                if not (r[0] == table_name and (key_name is None or r[1] == key_name))
            }

    def is_registered(self, table_name: str, key_name: str) -> bool:
        with self._lock:
            return (table_name, key_name) in self._registered

    def mark_registered(self, table_name: str, key_name: str) -> None:
        with self._lock:
            self._registered.add((table_name, key_name))

    # --- Resolution ---

    async def _describe_settled(self, name: str) -> TableDescription | None:
        """Describe ``name``, polling while it is creating/updating/deleting/archiving."""
        attempts = self._config.table_poll_max_attempts
        for attempt in range(attempts):
            description = await asyncio.to_thread(self._backend.describe_table, name)
            if description is None or description.status not in TRANSITIONAL_STATUSES:
                return description
            log.info(
                "key_table_waiting",
                physical_name=name,
                status=description.status.value,
                attempt=attempt + 1,
            )
            await asyncio.sleep(self._config.table_poll_interval_s)
        log.error("key_table_timeout", physical_name=name, attempts=attempts)
        raise TableTimeoutError(name, attempts)

    def _handle_from(self, table_name: str, key_name: str, description: TableDescription) -> KeyTableHandle:
        if description.status is not TableStatus.ACTIVE:
            raise NotFoundError(
                f"Key-table '{description.name}' is not active (status {description.status.value})"
            )
        if description.key_name != key_name:
            raise ConflictError(description.name, description.key_name, key_name)
        return KeyTableHandle(
            table_name=table_name,
            key_name=key_name,
            physical_name=description.name,
            key_types=description.key_types,
        )

    def _check_type(self, handle: KeyTableHandle, key_type: KeyValueType) -> None:
        if not handle.accepts(key_type):
            raise ConflictError(handle.physical_name, _describe_types(handle.key_types), key_type.value)

    def _remember(self, handle: KeyTableHandle) -> KeyTableHandle:
        with self._lock:
            return self._cache.setdefault((handle.table_name, handle.key_name), handle)

    async def resolve(self, table_name: str, key: DbKey, *, create: bool) -> KeyTableHandle:
        """Return the active key-table for ``key`` in ``table_name``.

        Raises NotFoundError when the key-table is absent (and ``create`` is
        False) or not active, ConflictError when its key type does not
        accept ``key``'s value, and TableTimeoutError when it stays in a
        transitional state for every polling attempt.
        """
        key_type = key.key_type
        handle = self.cached(table_name, key.name)
        if handle is not None:
            self._check_type(handle, key_type)
            return handle

        name = physical_name(table_name, key.name)
        description = await self._describe_settled(name)
        if description is None:
            if not create:
                raise NotFoundError(f"Key-table '{name}' does not exist")
            try:
                await asyncio.to_thread(self._backend.create_table, name, key.name, key_type)
                log.info("key_table_created", physical_name=name, key_type=key_type.value)
            except TableAlreadyExistsError:
                log.info("key_table_create_race", physical_name=name)
            description = await self._describe_settled(name)
            if description is None:
                raise NotFoundError(f"Key-table '{name}' disappeared while being created")

        handle = self._handle_from(table_name, key.name, description)
        self._check_type(handle, key_type)
        return self._remember(handle)

    async def resolve_existing(self, table_name: str, key_name: str) -> KeyTableHandle:
        """Resolve a key-table by name alone, without a key value to type-check."""
        handle = self.cached(table_name, key_name)
        if handle is not None:
            return handle
        name = physical_name(table_name, key_name)
        description = await self._describe_settled(name)
        if description is None:
            raise NotFoundError(f"Key-table '{name}' does not exist")
        return self._remember(self._handle_from(table_name, key_name, description))

    # --- System catalog ---

    def system_key(self, table_name: str) -> DbKey:
        return DbKey(name=SYSTEM_KEY_NAME, value=table_name)

    async def system_handle(self, *, create: bool) -> KeyTableHandle:
        return await self.resolve(self.system_table_name, self.system_key(self.system_table_name), create=create)

    async def table_keys(self, table_name: str) -> list[str]:
        """Key attribute names ever registered for ``table_name``."""
        try:
            handle = await self.system_handle(create=False)
        except NotFoundError:
            return []
        entry: dict[str, Any] | None = await asyncio.to_thread(
            self._backend.get_item, handle.physical_name, SYSTEM_KEY_NAME, table_name
        )
        if not entry:
            return []
        keys = entry.get(SYSTEM_KEYS_ATTRIBUTE) or []
        return [str(k) for k in keys]

    async def drop_key_tables(self, table_name: str, key_names: list[str]) -> None:
        """Delete every key-table of ``table_name`` and wait until each is gone."""
        for key_name in key_names:
            name = physical_name(table_name, key_name)
            description = await self._describe_settled(name)
            if description is not None:
                await asyncio.to_thread(self._backend.delete_table, name)
                log.info("key_table_deleting", physical_name=name)
                await self._wait_deleted(name)
            self.evict(table_name, key_name)

    async def _wait_deleted(self, name: str) -> None:
        attempts = self._config.table_poll_max_attempts
        for _ in range(attempts):
            description = await asyncio.to_thread(self._backend.describe_table, name)
            if description is None:
                return
            await asyncio.sleep(self._config.table_poll_interval_s)
        log.error("key_table_delete_timeout", physical_name=name, attempts=attempts)
        raise TableTimeoutError(name, attempts)
