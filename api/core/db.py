"""
Postgres storage backend (raw SQL) using asyncpg.

`PostgresStorage` owns the connection pool. The FastAPI app opens it on
startup and closes it on shutdown (see `api/main.py`).

SQL parameter style:
- asyncpg uses positional placeholders: $1, $2, $3, ...

Transactions bind a single connection to the current task through a
context variable, so every storage call made inside `transaction()` runs on
that connection.
"""

from __future__ import annotations

import asyncio
import contextvars
import json
import logging
import os
from collections.abc import AsyncIterator, Iterable, Iterator
from contextlib import asynccontextmanager, contextmanager
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import asyncpg

from query.plan import And, Predicate, QueryPlan
from query.sql import Params, count_sql, field_sql, identifier, select_sql, where_sql

from .errors import StorageError, UniqueConstraintError
from .storage import JSON_COLUMNS, TableSpec, UniqueKey

logger = logging.getLogger(__name__)


def _sanitize_database_url(url: str) -> str:
    parts = urlsplit(url)
    if not parts.query:
        return url

    params = [(k, v) for (k, v) in parse_qsl(parts.query, keep_blank_values=True) if k != "sslmode"]
    query = urlencode(params)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def database_url() -> str:
    url = os.environ.get("DATABASE_URL", "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL is not set.")
    return _sanitize_database_url(url)


def _json_arg(value: Any) -> str | None:
    """
    asyncpg does not automatically encode Python dicts for json/jsonb parameters.
    We pass JSON as a string and cast to jsonb in SQL.
    """
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=True, default=str)


def _record_to_dict(record: asyncpg.Record) -> dict[str, Any]:
    row = dict(record)
    for name in JSON_COLUMNS:
        if isinstance(row.get(name), str):
            row[name] = json.loads(row[name])
    return row


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except asyncpg.UniqueViolationError as exc:
        raise UniqueConstraintError(exc.constraint_name or str(exc)) from exc
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as exc:
        raise StorageError(str(exc)) from exc


def resource_table_ddl(spec: TableSpec) -> list[str]:
    table = identifier(spec.name)
    statements = [
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
          id text PRIMARY KEY,
          tenant_id text,
          owner_id text,
          payload jsonb NOT NULL DEFAULT '{{}}'::jsonb,
          created_at timestamptz NOT NULL,
          updated_at timestamptz NOT NULL,
          deleted_at timestamptz,
          CHECK (updated_at >= created_at),
          CHECK (deleted_at IS NULL OR deleted_at >= updated_at)
        )
        """,
        f"CREATE INDEX IF NOT EXISTS {table}_tenant_owner_idx ON {table} (tenant_id, owner_id)",
        f"CREATE INDEX IF NOT EXISTS {table}_deleted_at_idx ON {table} (deleted_at)",
    ]
    statements.extend(unique_index_ddl(table, key) for key in spec.unique)
    return statements


def unique_index_ddl(table: str, key: UniqueKey) -> str:
    # NULL tenants share one namespace, hence the coalesce.
    scope = [f"coalesce({field_sql(f)}, '')" for f in key.scope]
    fields = [f"({field_sql(f)})" if not f.column else field_sql(f) for f in key.fields]
    predicate = " WHERE deleted_at IS NULL" if key.active_only else ""
    return (
        f"CREATE UNIQUE INDEX IF NOT EXISTS {identifier(key.name)} "
        f"ON {table} ({', '.join(scope + fields)}){predicate}"
    )


class PostgresStorage:
    def __init__(
        self,
        dsn: str | None = None,
        *,
        min_size: int = 1,
        max_size: int = 5,
        command_timeout: float = 30,
    ) -> None:
        self._dsn = _sanitize_database_url(dsn) if dsn else None
        self._min_size = min_size
        self._max_size = max_size
        self._command_timeout = command_timeout
        self._pool: asyncpg.Pool | None = None
        self._conn: contextvars.ContextVar[asyncpg.Connection | None] = contextvars.ContextVar(
            f"pg_storage_conn_{id(self)}", default=None
        )

    async def open(self) -> None:
        if self._pool is not None:
            return None
        with _translate_errors():
            self._pool = await asyncpg.create_pool(
                dsn=self._dsn or database_url(),
                min_size=self._min_size,
                max_size=self._max_size,
                command_timeout=self._command_timeout,
            )
        logger.info("db_pool_opened min_size=%s max_size=%s", self._min_size, self._max_size)

    async def close(self) -> None:
        if self._pool is None:
            return None
        await self._pool.close()
        self._pool = None

    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise StorageError("DB pool is not initialized. Call open() on startup.")
        return self._pool

    def _executor(self) -> asyncpg.Connection | asyncpg.Pool:
        return self._conn.get() or self.pool()

    async def fetch_one(self, sql: str, *args: Any) -> dict[str, Any] | None:
        """
        Run a query and return a single row as a dict (or None).
        """
        with _translate_errors():
            row = await self._executor().fetchrow(sql, *args)
        return _record_to_dict(row) if row is not None else None

    async def fetch_all(self, sql: str, *args: Any) -> list[dict[str, Any]]:
        """
        Run a query and return all rows as a list of dicts.
        """
        with _translate_errors():
            rows = await self._executor().fetch(sql, *args)
        return [_record_to_dict(r) for r in rows]

    async def execute(self, sql: str, *args: Any) -> None:
        """
        Run a statement (INSERT/UPDATE/DELETE/DDL). No result returned.
        """
        with _translate_errors():
            await self._executor().execute(sql, *args)

    async def prepare(self, tables: Iterable[TableSpec]) -> None:
        for spec in tables:
            statements = list(spec.ddl) if spec.ddl else resource_table_ddl(spec)
            for statement in statements:
                await self.execute(statement)

    def _values_sql(self, values: dict[str, Any], params: Params) -> tuple[list[str], list[str]]:
        columns: list[str] = []
        placeholders: list[str] = []
        for name, value in values.items():
            columns.append(identifier(name))
            if name in JSON_COLUMNS:
                placeholders.append(f"{params.add(_json_arg(value))}::jsonb")
            else:
                placeholders.append(params.add(value))
        return columns, placeholders

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        params = Params()
        columns, placeholders = self._values_sql(row, params)
        created = await self.fetch_one(
            f"""
            INSERT INTO {identifier(table)} ({', '.join(columns)})
            VALUES ({', '.join(placeholders)})
            RETURNING *
            """,
            *params.values,
        )
        if created is None:
            raise StorageError(f"Failed to insert into {table}.")
        return created

    async def append(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        return await self.insert(table, row)

    async def fetch(self, table: str, row_id: str) -> dict[str, Any] | None:
        return await self.fetch_one(f"SELECT * FROM {identifier(table)} WHERE id = $1", row_id)

    async def scan(self, table: str, plan: QueryPlan) -> tuple[list[dict[str, Any]], int]:
        total_sql, total_args = count_sql(table, plan)
        total_row = await self.fetch_one(total_sql, *total_args)
        total = int((total_row or {}).get("n", 0))
        if total == 0 or plan.offset >= total:
            return [], total
        page_sql, page_args = select_sql(table, plan)
        return await self.fetch_all(page_sql, *page_args), total

    async def update(
        self,
        table: str,
        row_id: str,
        values: dict[str, Any],
        *,
        where: Predicate | None = None,
    ) -> dict[str, Any] | None:
        params = Params()
        id_placeholder = params.add(row_id)
        columns, placeholders = self._values_sql(values, params)
        assignments = ", ".join(f"{c} = {p}" for c, p in zip(columns, placeholders))
        condition = where_sql(where if where is not None else And(), params)
        return await self.fetch_one(
            f"""
            UPDATE {identifier(table)}
            SET {assignments}
            WHERE id = {id_placeholder}
              AND ({condition})
            RETURNING *
            """,
            *params.values,
        )

    async def delete(self, table: str, row_id: str, *, where: Predicate | None = None) -> bool:
        params = Params()
        id_placeholder = params.add(row_id)
        condition = where_sql(where if where is not None else And(), params)
        row = await self.fetch_one(
            f"""
            DELETE FROM {identifier(table)}
            WHERE id = {id_placeholder}
              AND ({condition})
            RETURNING id
            """,
            *params.values,
        )
        return row is not None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        current = self._conn.get()
        if current is not None:
            # Nested: a savepoint on the bound connection.
            async with current.transaction():
                yield
            return

        with _translate_errors():
            conn = await self.pool().acquire()
        try:
            tx = conn.transaction()
            with _translate_errors():
                await tx.start()
            token = self._conn.set(conn)
            try:
                yield
            except BaseException:
                self._conn.reset(token)
                with _translate_errors():
                    await tx.rollback()
                raise
            self._conn.reset(token)
            with _translate_errors():
                await tx.commit()
        finally:
            await self.pool().release(conn)
