from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, TypeVar

from query.plan import Pagination

T = TypeVar("T")


@dataclass(frozen=True)
class Resource:
    id: str
    tenant_id: str | None
    owner_id: str | None
    payload: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Resource":
        return cls(
            id=str(row["id"]),
            tenant_id=row.get("tenant_id"),
            owner_id=row.get("owner_id"),
            payload=dict(row.get("payload") or {}),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row.get("deleted_at"),
        )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass(frozen=True)
class Scope:
    """
    Visibility window for repository reads: one tenant, optionally with
    soft-deleted rows.
    """

    tenant_id: str | None
    include_deleted: bool = False


@dataclass(frozen=True)
class Page(Generic[T]):
    data: list[T] = field(default_factory=list)
    pagination: Pagination | None = None
