"""
Resource service: the orchestrator behind every resource endpoint.

Each operation takes the calling principal and runs

    guard -> query builder (list) / repository -> audit

Mutations and their audit entry share one storage transaction. Storage
faults never leave this module as storage exceptions; they surface as
`Fatal`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any

from pydantic import BaseModel

from access.guard import AccessGuard, Action, Ownership
from audit.recorder import AuditEntry, AuditRecorder
from auth.principal import Principal
from core.clock import Clock, utc_now
from core.config import Settings
from core.errors import Fatal, StorageError
from core.storage import Storage
from query import builder
from query.plan import OWNER_ID, TENANT_ID, Pagination, eq
from query.request import QuerySpec

from .kinds import ResourceKind
from .records import Page, Resource, Scope
from .repository import ResourceRepository

logger = logging.getLogger(__name__)


class ResourceService:
    def __init__(
        self,
        storage: Storage,
        kind: ResourceKind,
        guard: AccessGuard,
        audit: AuditRecorder,
        settings: Settings,
        clock: Clock = utc_now,
    ) -> None:
        self._storage = storage
        self.kind = kind
        self._guard = guard
        self._audit = audit
        self._settings = settings
        self.repository = ResourceRepository(storage, kind, clock)

    @asynccontextmanager
    async def _storage_faults(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except StorageError as exc:
            logger.exception("storage_failure kind=%s operation=%s", self.kind.name, operation)
            raise Fatal("Storage failure.") from exc

    @asynccontextmanager
    async def _mutation(self, operation: str) -> AsyncIterator[None]:
        async with self._storage_faults(operation):
            async with self._storage.transaction():
                yield

    async def _load(self, principal: Principal, resource_id: str, action: Action) -> Resource:
        # Deleted rows are loaded too; the guard decides whether they are visible.
        resource = await self.repository.get(resource_id, Scope(principal.tenant_id, include_deleted=True))
        self._guard.authorize(principal, action, resource, kind=self.kind)
        return resource

    async def list(self, principal: Principal | None, spec: QuerySpec) -> Page[Resource]:
        principal = self._guard.authorize_list(principal, self.kind, include_deleted=spec.include_deleted)
        elevated = self._guard.is_elevated(principal)

        plan = builder.compile(
            spec,
            self.kind.filter_fields,
            self.kind.allowed_sort_fields,
            elevated=elevated,
            default_page_size=self._settings.page_size_default,
            max_page_size=self._settings.page_size_max,
        )
        plan = plan.scoped(eq(TENANT_ID, principal.tenant_id))
        if self.kind.ownership is Ownership.OWNER and not elevated:
            plan = plan.scoped(eq(OWNER_ID, principal.id))

        async with self._storage_faults("list"):
            resources, total = await self.repository.list(plan)
        return Page(data=resources, pagination=Pagination.for_plan(plan, total))

    async def get(self, principal: Principal | None, resource_id: str) -> Resource:
        principal = self._guard.authorize(principal, Action.READ, kind=self.kind)
        async with self._storage_faults("get"):
            return await self._load(principal, resource_id, Action.READ)

    async def create(self, principal: Principal | None, payload: Mapping[str, Any] | BaseModel) -> Resource:
        principal = self._guard.authorize(principal, Action.CREATE, kind=self.kind)
        async with self._mutation("create"):
            resource = await self.repository.create(payload, principal)
            await self._audit.record(principal.id, "create", self.kind.name, resource.id, {"payload": resource.payload})
        logger.info("resource_created kind=%s id=%s principal_id=%s", self.kind.name, resource.id, principal.id)
        return resource

    async def update(
        self,
        principal: Principal | None,
        resource_id: str,
        partial: Mapping[str, Any],
    ) -> Resource:
        principal = self._guard.authorize(principal, Action.UPDATE, kind=self.kind)
        async with self._mutation("update"):
            await self._load(principal, resource_id, Action.UPDATE)
            resource = await self.repository.update(resource_id, partial, Scope(principal.tenant_id))
            await self._audit.record(
                principal.id,
                "update",
                self.kind.name,
                resource.id,
                {"fields": sorted(partial.keys())},
            )
        return resource

    async def delete(self, principal: Principal | None, resource_id: str) -> None:
        principal = self._guard.authorize(principal, Action.DELETE, kind=self.kind)
        async with self._mutation("delete"):
            await self._load(principal, resource_id, Action.DELETE)
            await self.repository.soft_delete(resource_id, Scope(principal.tenant_id))
            await self._audit.record(
                principal.id,
                "delete",
                self.kind.name,
                resource_id,
                {"soft": self.kind.soft_delete},
            )
        logger.info("resource_deleted kind=%s id=%s principal_id=%s", self.kind.name, resource_id, principal.id)

    async def history(self, principal: Principal | None, resource_id: str) -> list[AuditEntry]:
        principal = self._guard.require_elevated(principal)
        self._guard.authorize(principal, Action.AUDIT, kind=self.kind)
        async with self._storage_faults("history"):
            await self._load(principal, resource_id, Action.AUDIT)
        return await self._audit.history(self.kind.name, resource_id)
