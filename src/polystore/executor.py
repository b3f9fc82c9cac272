"""Mutation executor: conditional writes against a resolved key-table.

Expression-capable stores get one native request per mutation, with the
condition compiled into the same request. Transactional stores run a
read/evaluate/commit body inside ``run_transaction``, retried on
contention up to ``contention_max_attempts`` with a fixed backoff.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from polystore.compiler import (
    ExpressionContext,
    combine_and,
    compile_coupling,
)
from polystore.conditions import ConditionCoupling, Condition, as_coupling, evaluate
from polystore.config import PolystoreConfig
from polystore.errors import (
    InvalidArgumentError,
    PreconditionFailedError,
    TooMuchContentionError,
    TransientContentionError,
)
from polystore.logging import get_logger
from polystore.primitives import DbKey, canonical_string, coerce_elements
from polystore.registry import KeyTableHandle
from polystore.results import ReturnBehavior
from polystore.storage import ExpressionStore, ItemWrite, TransactionalStore, TransactionOutcome

log = get_logger(__name__)

Conditions = ConditionCoupling | Condition | None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _pick(behavior: ReturnBehavior, before: dict[str, Any] | None, after: dict[str, Any] | None) -> dict[str, Any] | None:
    if behavior is ReturnBehavior.RETURN_OLD_VALUES:
        return before
    if behavior is ReturnBehavior.RETURN_NEW_VALUES:
        return after
    return None


def _dynamo_return_values(behavior: ReturnBehavior) -> str:
    if behavior is ReturnBehavior.RETURN_OLD_VALUES:
        return "ALL_OLD"
    if behavior is ReturnBehavior.RETURN_NEW_VALUES:
        return "ALL_NEW"
    return "NONE"


def _check(conditions: ConditionCoupling, document: dict[str, Any] | None) -> None:
    if not evaluate(conditions, document):
        raise PreconditionFailedError()


def _removed(array: list[Any], removal: set[str]) -> list[Any]:
    return [e for e in array if canonical_string(e) not in removal]


class MutationExecutor:
    """Runs Put/Update/Delete/ArrayAdd/ArrayRemove/Increment on one backend."""

    def __init__(
        self,
        backend: ExpressionStore | TransactionalStore,
        config: PolystoreConfig | None = None,
    ) -> None:
        self._backend = backend
        self._config = config or PolystoreConfig()

    @property
    def expression_capable(self) -> bool:
        return bool(getattr(self._backend, "expression_capable", False))

    # --- Contention retry ---

    async def _with_contention_retry(
        self, operation: str, attempt_fn: Callable[[], Awaitable[Any]]
    ) -> Any:
        attempts = self._config.contention_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await attempt_fn()
            except TransientContentionError as e:
                log.warning("mutation_contention", operation=operation, attempt=attempt, detail=e.detail)
                if attempt < attempts:
                    await asyncio.sleep(self._config.contention_backoff_s)
        log.error("mutation_contention_exhausted", operation=operation, attempts=attempts)
        raise TooMuchContentionError(operation, attempts)

    async def _transact(
        self,
        operation: str,
        handle: KeyTableHandle,
        key: DbKey,
        body: Callable[[dict[str, Any] | None], ItemWrite],
    ) -> TransactionOutcome:
        backend: TransactionalStore = self._backend  # type: ignore[assignment]

        async def attempt() -> TransactionOutcome:
            return await asyncio.to_thread(
                backend.run_transaction, handle.physical_name, key.name, key.stored_value, body
            )

        return await self._with_contention_retry(operation, attempt)

    # --- Put ---

    async def put(
        self,
        handle: KeyTableHandle,
        key: DbKey,
        item: dict[str, Any],
        *,
        overwrite: bool = False,
        return_behavior: ReturnBehavior = ReturnBehavior.DO_NOT_RETURN,
    ) -> dict[str, Any] | None:
        document = {**item, key.name: key.stored_value}

        if self.expression_capable:
            backend: ExpressionStore = self._backend  # type: ignore[assignment]
            ctx = ExpressionContext()
            condition = None if overwrite else f"attribute_not_exists({ctx.name(key.name)})"
            old = await asyncio.to_thread(
                backend.put_item,
                handle.physical_name,
                document,
                condition=condition,
                names=ctx.names,
                values=ctx.values,
                return_old=return_behavior is ReturnBehavior.RETURN_OLD_VALUES,
            )
            return _pick(return_behavior, old, document)

        def body(current: dict[str, Any] | None) -> ItemWrite:
            if current is not None and not overwrite:
                raise PreconditionFailedError(f"Item {key} already exists")
            return ItemWrite.upsert(document)

        outcome = await self._transact("put_item", handle, key, body)
        return _pick(return_behavior, outcome.before, outcome.after)

    # --- Update ---

    async def update(
        self,
        handle: KeyTableHandle,
        key: DbKey,
        data: dict[str, Any],
        *,
        return_behavior: ReturnBehavior = ReturnBehavior.DO_NOT_RETURN,
        conditions: Conditions = None,
    ) -> dict[str, Any] | None:
        coupling = as_coupling(conditions)
        changes = {k: v for k, v in data.items() if k != key.name}

        if self.expression_capable:
            backend: ExpressionStore = self._backend  # type: ignore[assignment]
            ctx = ExpressionContext()
            assignments = [
                f"{ctx.name(attr)} = {ctx.value(value)}" for attr, value in changes.items()
            ]
            update = "SET " + ", ".join(assignments) if assignments else None
            condition = compile_coupling(coupling, ctx)
            result = await asyncio.to_thread(
                backend.update_item,
                handle.physical_name,
                key.name,
                key.stored_value,
                update=update,
                condition=condition,
                names=ctx.names,
                values=ctx.values,
                return_values=_dynamo_return_values(return_behavior),
            )
            return result if return_behavior is not ReturnBehavior.DO_NOT_RETURN else None

        def body(current: dict[str, Any] | None) -> ItemWrite:
            _check(coupling, current)
            return ItemWrite.upsert({**(current or {}), **changes, key.name: key.stored_value})

        outcome = await self._transact("update_item", handle, key, body)
        return _pick(return_behavior, outcome.before, outcome.after)

    # --- Delete ---

    async def delete(
        self,
        handle: KeyTableHandle,
        key: DbKey,
        *,
        return_behavior: ReturnBehavior = ReturnBehavior.DO_NOT_RETURN,
        conditions: Conditions = None,
    ) -> dict[str, Any] | None:
        coupling = as_coupling(conditions)

        if self.expression_capable:
            backend: ExpressionStore = self._backend  # type: ignore[assignment]
            ctx = ExpressionContext()
            condition = compile_coupling(coupling, ctx)
            old = await asyncio.to_thread(
                backend.delete_item,
                handle.physical_name,
                key.name,
                key.stored_value,
                condition=condition,
                names=ctx.names,
                values=ctx.values,
                return_old=return_behavior is ReturnBehavior.RETURN_OLD_VALUES,
            )
            return old if return_behavior is ReturnBehavior.RETURN_OLD_VALUES else None

        def body(current: dict[str, Any] | None) -> ItemWrite:
            _check(coupling, current)
            if current is None:
                return ItemWrite.unchanged()
            return ItemWrite.delete()

        outcome = await self._transact("delete_item", handle, key, body)
        return outcome.before if return_behavior is ReturnBehavior.RETURN_OLD_VALUES else None

    # --- Arrays ---

    async def add_elements(
        self,
        handle: KeyTableHandle,
        key: DbKey,
        attribute: str,
        elements: list[Any],
        *,
        return_behavior: ReturnBehavior = ReturnBehavior.DO_NOT_RETURN,
        conditions: Conditions = None,
    ) -> dict[str, Any] | None:
        coupling = as_coupling(conditions)
        additions = [p.to_json() for p in coerce_elements(elements)]

        if self.expression_capable:
            backend: ExpressionStore = self._backend  # type: ignore[assignment]
            ctx = ExpressionContext()
            attr = ctx.name(attribute)
            update = (
                f"SET {attr} = list_append(if_not_exists({attr}, {ctx.value([])}), "
                f"{ctx.value(additions)})"
            )
            shape_guard = f"(attribute_not_exists({attr}) OR {ctx.type_guard(attr, 'L')})"
            condition = combine_and(compile_coupling(coupling, ctx), shape_guard)
            result = await asyncio.to_thread(
                backend.update_item,
                handle.physical_name,
                key.name,
                key.stored_value,
                update=update,
                condition=condition,
                names=ctx.names,
                values=ctx.values,
                return_values=_dynamo_return_values(return_behavior),
            )
            return result if return_behavior is not ReturnBehavior.DO_NOT_RETURN else None

        def body(current: dict[str, Any] | None) -> ItemWrite:
            _check(coupling, current)
            document = dict(current or {})
            existing = document.get(attribute, [])
            if not isinstance(existing, list):
                raise PreconditionFailedError(f"Attribute '{attribute}' is not an array")
            document[attribute] = existing + additions
            document[key.name] = key.stored_value
            return ItemWrite.upsert(document)

        outcome = await self._transact("add_elements_to_array", handle, key, body)
        return _pick(return_behavior, outcome.before, outcome.after)

    async def remove_elements(
        self,
        handle: KeyTableHandle,
        key: DbKey,
        attribute: str,
        elements: list[Any],
        *,
        return_behavior: ReturnBehavior = ReturnBehavior.DO_NOT_RETURN,
        conditions: Conditions = None,
    ) -> dict[str, Any] | None:
        """Remove every element whose canonical string matches one of ``elements``.

        An absent attribute (or item) is a successful no-op; a present
        non-array attribute fails with PreconditionFailedError.
        """
        coupling = as_coupling(conditions)
        removal = {p.canonical() for p in coerce_elements(elements)}

        if self.expression_capable:
            return await self._remove_with_expressions(
                handle, key, attribute, removal, coupling, return_behavior
            )

        def body(current: dict[str, Any] | None) -> ItemWrite:
            _check(coupling, current)
            if current is None or attribute not in current:
                return ItemWrite.unchanged()
            existing = current[attribute]
            if not isinstance(existing, list):
                raise PreconditionFailedError(f"Attribute '{attribute}' is not an array")
            return ItemWrite.upsert({**current, attribute: _removed(existing, removal)})

        outcome = await self._transact("remove_elements_from_array", handle, key, body)
        return _pick(return_behavior, outcome.before, outcome.after)

    async def _remove_with_expressions(
        self,
        handle: KeyTableHandle,
        key: DbKey,
        attribute: str,
        removal: set[str],
        coupling: ConditionCoupling,
        return_behavior: ReturnBehavior,
    ) -> dict[str, Any] | None:
        # Read, filter, then write back conditioned on the array still being
        # what was read; a lost race re-reads until the contention attempts run out.
        backend: ExpressionStore = self._backend  # type: ignore[assignment]

        async def attempt() -> dict[str, Any] | None:
            current = await asyncio.to_thread(
                backend.get_item, handle.physical_name, key.name, key.stored_value
            )
            _check(coupling, current)
            if current is None or attribute not in current:
                return _pick(return_behavior, current, current)
            existing = current[attribute]
            if not isinstance(existing, list):
                raise PreconditionFailedError(f"Attribute '{attribute}' is not an array")

            ctx = ExpressionContext()
            attr = ctx.name(attribute)
            update = f"SET {attr} = {ctx.value(_removed(existing, removal))}"
            pin = f"{attr} = {ctx.value(existing)}"
            condition = combine_and(compile_coupling(coupling, ctx), pin)
            try:
                result = await asyncio.to_thread(
                    backend.update_item,
                    handle.physical_name,
                    key.name,
                    key.stored_value,
                    update=update,
                    condition=condition,
                    names=ctx.names,
                    values=ctx.values,
                    return_values=_dynamo_return_values(return_behavior),
                )
            except PreconditionFailedError as e:
                raise TransientContentionError("remove_elements_from_array", str(e)) from e
            return result if return_behavior is not ReturnBehavior.DO_NOT_RETURN else None

        return await self._with_contention_retry("remove_elements_from_array", attempt)

    # --- Increment ---

    async def increment(
        self,
        handle: KeyTableHandle,
        key: DbKey,
        attribute: str,
        delta: float,
        *,
        conditions: Conditions = None,
    ) -> float:
        coupling = as_coupling(conditions)
        if not _is_number(delta):
            raise InvalidArgumentError(f"Increment must be numeric, got {type(delta).__name__}")

        if self.expression_capable:
            backend: ExpressionStore = self._backend  # type: ignore[assignment]
            ctx = ExpressionContext()
            attr = ctx.name(attribute)
            zero = ctx.value(0)
            update = f"SET {attr} = if_not_exists({attr}, {zero}) + {ctx.value(delta)}"
            shape_guard = f"(attribute_not_exists({attr}) OR {ctx.type_guard(attr, 'N')})"
            condition = combine_and(compile_coupling(coupling, ctx), shape_guard)
            result = await asyncio.to_thread(
                backend.update_item,
                handle.physical_name,
                key.name,
                key.stored_value,
                update=update,
                condition=condition,
                names=ctx.names,
                values=ctx.values,
                return_values="UPDATED_NEW",
            )
            return float((result or {}).get(attribute, 0))

        def body(current: dict[str, Any] | None) -> ItemWrite:
            _check(coupling, current)
            document = dict(current or {})
            existing = document.get(attribute, 0)
            if not _is_number(existing):
                raise PreconditionFailedError(f"Attribute '{attribute}' is not numeric")
            document[attribute] = existing + delta
            document[key.name] = key.stored_value
            return ItemWrite.upsert(document)

        outcome = await self._transact("increment_attribute", handle, key, body)
        assert outcome.after is not None
        return float(outcome.after[attribute])

