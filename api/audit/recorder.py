"""
Append-only audit trail.

`record` is called inside the storage transaction of the mutation it
describes. If the append fails the error is raised as `AuditWriteError`, the
transaction rolls back and the mutation is rejected with it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import uuid4

from pydantic_core import to_jsonable_python

from core.clock import Clock, utc_now
from core.errors import AuditWriteError, Fatal, StorageError
from core.storage import Storage, TableSpec
from query.plan import CREATED_AT, FieldType, OrderBy, QueryPlan, column, eq

logger = logging.getLogger(__name__)

AUDIT_ENTRIES = "audit_entries"

TARGET_TYPE = column("target_type", FieldType.TEXT)
TARGET_ID = column("target_id")

AUDIT_TABLE = TableSpec(
    AUDIT_ENTRIES,
    ddl=(
        """
        CREATE TABLE IF NOT EXISTS audit_entries (
          id text PRIMARY KEY,
          actor_id text,
          action text NOT NULL,
          target_type text NOT NULL,
          target_id text,
          context jsonb NOT NULL DEFAULT '{}'::jsonb,
          created_at timestamptz NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS audit_entries_target_idx ON audit_entries (target_type, target_id)",
        "CREATE INDEX IF NOT EXISTS audit_entries_actor_idx ON audit_entries (actor_id)",
    ),
)

_OLDEST_FIRST = (OrderBy(CREATED_AT),)


@dataclass(frozen=True)
class AuditEntry:
    id: str
    actor_id: str | None
    action: str
    target_type: str
    target_id: str | None
    context: dict[str, Any]
    created_at: datetime

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "AuditEntry":
        return cls(
            id=str(row["id"]),
            actor_id=row.get("actor_id"),
            action=str(row["action"]),
            target_type=str(row["target_type"]),
            target_id=row.get("target_id"),
            context=dict(row.get("context") or {}),
            created_at=row["created_at"],
        )


class AuditRecorder:
    def __init__(self, storage: Storage, clock: Clock = utc_now) -> None:
        self._storage = storage
        self._clock = clock

    async def record(
        self,
        actor_id: str | None,
        action: str,
        target_type: str,
        target_id: str | None,
        context: dict[str, Any] | None = None,
    ) -> AuditEntry:
        row = {
            "id": str(uuid4()),
            "actor_id": actor_id,
            "action": action,
            "target_type": target_type,
            "target_id": target_id,
            "context": to_jsonable_python(context or {}),
            "created_at": self._clock(),
        }
        try:
            stored = await self._storage.append(AUDIT_ENTRIES, row)
        except StorageError as exc:
            logger.exception(
                "audit_write_failed action=%s target_type=%s target_id=%s",
                action,
                target_type,
                target_id,
            )
            raise AuditWriteError("Audit entry could not be persisted.") from exc
        return AuditEntry.from_row(stored)

    async def history(
        self,
        target_type: str,
        target_id: str,
        *,
        limit: int = 100,
    ) -> list[AuditEntry]:
        plan = QueryPlan.matching(
            eq(TARGET_TYPE, target_type),
            eq(TARGET_ID, target_id),
            limit=limit,
            order_by=_OLDEST_FIRST,
        )
        try:
            rows, _ = await self._storage.scan(AUDIT_ENTRIES, plan)
        except StorageError as exc:
            raise Fatal("Audit history is unavailable.") from exc
        return [AuditEntry.from_row(r) for r in rows]
