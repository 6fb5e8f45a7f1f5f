"""
Storage collaborator contract.

Services never reach for a global connection; they receive an object that
implements `Storage`. Two implementations ship with the project:

- `core.db.PostgresStorage`   asyncpg + raw SQL
- `core.memory.MemoryStorage` in-process tables for tests and local runs

Rows are plain dicts. Resource tables have the columns
`id, tenant_id, owner_id, payload, created_at, updated_at, deleted_at`;
other tables declare their own DDL through `TableSpec.ddl`.

Backends raise `core.errors.UniqueConstraintError` when a unique key is
violated and `core.errors.StorageError` for everything else that goes wrong.
"""

from __future__ import annotations

from collections.abc import Iterable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Any, Protocol

from query.plan import TENANT_ID, FieldDef, Predicate, QueryPlan

JSON_COLUMNS = frozenset({"payload", "context"})


@dataclass(frozen=True)
class UniqueKey:
    """
    Unique constraint over `fields`, partitioned by `scope`.

    With `active_only`, soft-deleted rows do not take part (partial index on
    `deleted_at IS NULL`).
    """

    name: str
    fields: tuple[FieldDef, ...]
    scope: tuple[FieldDef, ...] = (TENANT_ID,)
    active_only: bool = True


@dataclass(frozen=True)
class TableSpec:
    name: str
    unique: tuple[UniqueKey, ...] = ()
    # Empty means "standard resource table".
    ddl: tuple[str, ...] = ()


class Storage(Protocol):
    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def prepare(self, tables: Iterable[TableSpec]) -> None: ...

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]: ...

    async def fetch(self, table: str, row_id: str) -> dict[str, Any] | None: ...

    async def scan(self, table: str, plan: QueryPlan) -> tuple[list[dict[str, Any]], int]: ...

    async def update(
        self,
        table: str,
        row_id: str,
        values: dict[str, Any],
        *,
        where: Predicate | None = None,
    ) -> dict[str, Any] | None: ...

    async def delete(self, table: str, row_id: str, *, where: Predicate | None = None) -> bool: ...

    async def append(self, table: str, row: dict[str, Any]) -> dict[str, Any]: ...

    def transaction(self) -> AbstractAsyncContextManager[None]: ...
