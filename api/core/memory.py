"""
In-process storage backend.

Behaves like the Postgres backend for everything the services rely on:
partial unique keys, conditional updates, SQL-style NULL handling in
filters, NULLS LAST/FIRST ordering and all-or-nothing transactions.
"""

from __future__ import annotations

import asyncio
import contextvars
import copy
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any

from query.plan import And, Compare, FieldDef, IsNull, Predicate, QueryPlan

from .errors import StorageError, UniqueConstraintError
from .storage import TableSpec

_MISSING = object()


def _raw_value(row: dict[str, Any], f: FieldDef) -> Any:
    if f.column:
        return row.get(f.name)
    payload = row.get("payload") or {}
    return payload.get(f.name)


def _value(row: dict[str, Any], f: FieldDef) -> Any:
    try:
        return f.coerce(_raw_value(row, f))
    except (TypeError, ValueError):
        return None


def matches(predicate: Predicate, row: dict[str, Any]) -> bool:
    if isinstance(predicate, And):
        return all(matches(item, row) for item in predicate.items)

    if isinstance(predicate, IsNull):
        is_null = _raw_value(row, predicate.field) is None
        return not is_null if predicate.negate else is_null

    if isinstance(predicate, Compare):
        actual = _value(row, predicate.field)
        if actual is None:
            return False
        expected = predicate.value
        op = predicate.op
        if op == "eq":
            return actual == expected
        if op == "ne":
            return actual != expected
        if op == "lt":
            return actual < expected
        if op == "lte":
            return actual <= expected
        if op == "gt":
            return actual > expected
        if op == "gte":
            return actual >= expected
        if op == "contains":
            return str(expected).lower() in str(actual).lower()
        if op == "in":
            return actual in expected
        raise ValueError(f"Unsupported operator: {op!r}")

    raise TypeError(f"Unsupported predicate: {predicate!r}")


def _sorted(rows: list[dict[str, Any]], plan: QueryPlan) -> list[dict[str, Any]]:
    # Stable sorts applied from the last key to the first.
    # Postgres puts NULLs last for ASC and first for DESC; reverse=True gives the same.
    out = list(rows)
    for order in reversed(plan.order_by):
        out.sort(
            key=lambda r, f=order.field: (_value(r, f) is None, _value(r, f)),
            reverse=order.descending,
        )
    return out


class MemoryStorage:
    def __init__(self) -> None:
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}
        self._specs: dict[str, TableSpec] = {}
        self._lock = asyncio.Lock()
        self._in_transaction: contextvars.ContextVar[bool] = contextvars.ContextVar(
            f"memory_storage_tx_{id(self)}", default=False
        )

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def prepare(self, tables: Iterable[TableSpec]) -> None:
        for spec in tables:
            self._specs[spec.name] = spec
            self._tables.setdefault(spec.name, {})

    def _table(self, name: str) -> dict[str, dict[str, Any]]:
        table = self._tables.get(name)
        if table is None:
            raise StorageError(f"Unknown table: {name}")
        return table

    @asynccontextmanager
    async def _exclusive(self) -> AsyncIterator[None]:
        if self._in_transaction.get():
            yield
            return
        async with self._lock:
            yield

    def _check_unique(self, table: str, candidate: dict[str, Any]) -> None:
        spec = self._specs.get(table)
        if spec is None:
            return
        for key in spec.unique:
            if key.active_only and candidate.get("deleted_at") is not None:
                continue
            values = tuple(_raw_value(candidate, f) for f in key.fields)
            if any(v is None for v in values):
                continue
            scope = tuple(_raw_value(candidate, f) for f in key.scope)
            for other in self._tables[table].values():
                if other.get("id") == candidate.get("id"):
                    continue
                if key.active_only and other.get("deleted_at") is not None:
                    continue
                if tuple(_raw_value(other, f) for f in key.scope) != scope:
                    continue
                if tuple(_raw_value(other, f) for f in key.fields) == values:
                    raise UniqueConstraintError(key.name)

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        async with self._exclusive():
            rows = self._table(table)
            row_id = row.get("id")
            if not row_id:
                raise StorageError("Rows need an id.")
            if row_id in rows:
                raise UniqueConstraintError(f"{table}_pkey")
            stored = copy.deepcopy(row)
            self._check_unique(table, stored)
            rows[row_id] = stored
            return copy.deepcopy(stored)

    async def append(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        return await self.insert(table, row)

    async def fetch(self, table: str, row_id: str) -> dict[str, Any] | None:
        async with self._exclusive():
            row = self._table(table).get(row_id)
            return copy.deepcopy(row) if row is not None else None

    async def scan(self, table: str, plan: QueryPlan) -> tuple[list[dict[str, Any]], int]:
        async with self._exclusive():
            hits = [r for r in self._table(table).values() if matches(plan.where, r)]
            ordered = _sorted(hits, plan)
            window = ordered[plan.offset : plan.offset + plan.limit]
            return [copy.deepcopy(r) for r in window], len(hits)

    async def update(
        self,
        table: str,
        row_id: str,
        values: dict[str, Any],
        *,
        where: Predicate | None = None,
    ) -> dict[str, Any] | None:
        async with self._exclusive():
            rows = self._table(table)
            current = rows.get(row_id)
            if current is None:
                return None
            if where is not None and not matches(where, current):
                return None
            updated = {**copy.deepcopy(current), **copy.deepcopy(values)}
            self._check_unique(table, updated)
            rows[row_id] = updated
            return copy.deepcopy(updated)

    async def delete(self, table: str, row_id: str, *, where: Predicate | None = None) -> bool:
        async with self._exclusive():
            rows = self._table(table)
            current = rows.get(row_id, _MISSING)
            if current is _MISSING:
                return False
            if where is not None and not matches(where, current):
                return False
            del rows[row_id]
            return True

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._in_transaction.get():
            yield
            return
        async with self._lock:
            snapshot = copy.deepcopy(self._tables)
            token = self._in_transaction.set(True)
            try:
                yield
            except BaseException:
                self._tables = snapshot
                raise
            finally:
                self._in_transaction.reset(token)
