"""
Pydantic schemas for the generic resource endpoints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from audit.recorder import AuditEntry

from .records import Page, Resource


class FilterItem(BaseModel):
    field: str = Field(..., min_length=1, max_length=64)
    operator: str | None = Field(default=None, max_length=16)
    value: Any = None


class ListRequest(BaseModel):
    """
    JSON body accepted by `PATCH /{kind}` (list with a structured query).
    """

    filters: list[FilterItem] = Field(default_factory=list)
    sort: str | None = None
    sort_by: str | None = None
    sort_direction: str | None = None
    page: int | None = None
    limit: int | None = None
    include_deleted: bool = False

    def to_params(self) -> dict[str, Any]:
        params = self.model_dump(exclude_none=True, exclude={"filters"})
        if self.filters:
            params["filters"] = [item.model_dump() for item in self.filters]
        return params


class ResourceResponse(BaseModel):
    id: str
    tenant_id: str | None
    owner_id: str | None
    payload: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None

    @classmethod
    def from_resource(cls, resource: Resource) -> "ResourceResponse":
        return cls(
            id=resource.id,
            tenant_id=resource.tenant_id,
            owner_id=resource.owner_id,
            payload=resource.payload,
            created_at=resource.created_at,
            updated_at=resource.updated_at,
            deleted_at=resource.deleted_at,
        )


class PaginationResponse(BaseModel):
    current: int
    limit: int
    records: int
    pages: int


class PageResponse(BaseModel):
    data: list[ResourceResponse]
    pagination: PaginationResponse

    @classmethod
    def from_page(cls, page: Page[Resource]) -> "PageResponse":
        pagination = page.pagination
        return cls(
            data=[ResourceResponse.from_resource(r) for r in page.data],
            pagination=PaginationResponse(
                current=pagination.current,
                limit=pagination.limit,
                records=pagination.records,
                pages=pagination.pages,
            ),
        )


class AuditEntryResponse(BaseModel):
    id: str
    actor_id: str | None
    action: str
    target_type: str
    target_id: str | None
    context: dict[str, Any]
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id,
            actor_id=entry.actor_id,
            action=entry.action,
            target_type=entry.target_type,
            target_id=entry.target_id,
            context=entry.context,
            created_at=entry.created_at,
        )
