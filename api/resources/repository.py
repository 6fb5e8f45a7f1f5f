"""
Generic persistence for one resource kind.

Rows live in the kind's table (`id, tenant_id, owner_id, payload, created_at,
updated_at, deleted_at`). Every read is scoped to one tenant; rows of other
tenants are reported as NotFound, exactly like rows that never existed.

Writes are read-modify-write with a conditional update on the `updated_at`
that was read, so a concurrent writer makes the slower one fail with
Conflict (or NotFound if the row was deleted meanwhile) instead of silently
overwriting it.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ValidationError
from pydantic_core import to_jsonable_python

from access.guard import Action
from auth.principal import Principal
from core.clock import Clock, as_utc, utc_now
from core.errors import (
    AlreadyDeleted,
    Conflict,
    InvalidPayload,
    Locked,
    NotFound,
    UniqueConstraintError,
    UniquenessViolation,
)
from core.storage import Storage, UniqueKey
from query.plan import DELETED_AT, ID, TENANT_ID, UPDATED_AT, And, Compare, FieldType, IsNull, QueryPlan, eq

from .kinds import ResourceKind
from .records import Resource, Scope

logger = logging.getLogger(__name__)

_TICK = timedelta(microseconds=1)


def _next_updated_at(now: datetime, previous: datetime) -> datetime:
    # Strictly increasing even when the clock has not moved.
    previous = as_utc(previous)
    return now if now > previous else previous + _TICK


class ResourceRepository:
    def __init__(self, storage: Storage, kind: ResourceKind, clock: Clock = utc_now) -> None:
        self._storage = storage
        self.kind = kind
        self._clock = clock

    def _now(self) -> datetime:
        return as_utc(self._clock())

    def _normalize_payload(self, payload: Mapping[str, Any] | BaseModel) -> dict[str, Any]:
        model = self.kind.payload_model
        if model is not None:
            try:
                validated = payload if isinstance(payload, model) else model.model_validate(payload)
            except ValidationError as exc:
                raise InvalidPayload(
                    f"Invalid {self.kind.name} payload.",
                    errors=exc.errors(include_url=False, include_context=False, include_input=False),
                ) from exc
            document = validated.model_dump(mode="json")
        else:
            if isinstance(payload, BaseModel):
                payload = payload.model_dump(mode="json")
            if not isinstance(payload, Mapping):
                raise InvalidPayload(f"{self.kind.name} payload must be an object.")
            document = to_jsonable_python(dict(payload))
        self._check_typed_fields(document)
        return document

    def _check_typed_fields(self, document: dict[str, Any]) -> None:
        # Typed payload fields are cast when filtered or sorted on.
        for f in self.kind.fields:
            if f.column or f.type in (FieldType.TEXT, FieldType.ID):
                continue
            try:
                f.coerce(document.get(f.name))
            except (TypeError, ValueError) as exc:
                raise InvalidPayload(
                    f"Field '{f.name}' must be a {f.type.value}.", field=f.name
                ) from exc

    def _key_predicates(self, key: UniqueKey, payload: dict[str, Any]) -> list[Compare] | None:
        predicates: list[Compare] = []
        for f in key.fields:
            raw = payload.get(f.name)
            if raw is None:
                # NULLs never collide in a unique index.
                return None
            try:
                predicates.append(Compare(f, "eq", f.coerce(raw)))
            except (TypeError, ValueError) as exc:
                raise InvalidPayload(f"Invalid value for field '{f.name}'.", field=f.name) from exc
        return predicates

    async def _find_clash(
        self,
        payload: dict[str, Any],
        tenant_id: str | None,
        *,
        exclude_id: str | None = None,
    ) -> UniqueKey | None:
        for key in self.kind.unique_keys():
            predicates = self._key_predicates(key, payload)
            if predicates is None:
                continue
            plan = QueryPlan.matching(eq(TENANT_ID, tenant_id), IsNull(DELETED_AT), *predicates)
            if exclude_id is not None:
                plan = plan.scoped(Compare(ID, "ne", exclude_id))
            _, total = await self._storage.scan(self.kind.table, plan)
            if total:
                return key
        return None

    async def create(self, payload: Mapping[str, Any] | BaseModel, owner: Principal) -> Resource:
        document = self._normalize_payload(payload)
        clash = await self._find_clash(document, owner.tenant_id)
        if clash is not None:
            raise UniquenessViolation(
                f"A {self.kind.name} with the same {', '.join(f.name for f in clash.fields)} already exists.",
                key=clash.name,
            )

        now = self._now()
        row = {
            "id": str(uuid4()),
            "tenant_id": owner.tenant_id,
            "owner_id": owner.id,
            "payload": document,
            "created_at": now,
            "updated_at": now,
            "deleted_at": None,
        }
        try:
            stored = await self._storage.insert(self.kind.table, row)
        except UniqueConstraintError as exc:
            # Lost a race with a concurrent create.
            logger.info("unique_race kind=%s constraint=%s", self.kind.name, exc)
            raise UniquenessViolation(f"A {self.kind.name} with the same key already exists.") from exc
        return Resource.from_row(stored)

    async def _fetch_scoped(self, resource_id: str, scope: Scope) -> Resource | None:
        row = await self._storage.fetch(self.kind.table, resource_id)
        if row is None or row.get("tenant_id") != scope.tenant_id:
            return None
        return Resource.from_row(row)

    async def get(self, resource_id: str, scope: Scope) -> Resource:
        resource = await self._fetch_scoped(resource_id, scope)
        if resource is None or (resource.is_deleted and not scope.include_deleted):
            raise NotFound(f"{self.kind.name} not found.")
        return resource

    async def list(self, plan: QueryPlan) -> tuple[list[Resource], int]:
        rows, total = await self._storage.scan(self.kind.table, plan)
        return [Resource.from_row(r) for r in rows], total

    def _ensure_unlocked(self, resource: Resource, action: Action) -> None:
        reason = self.kind.lock_reason(resource, action)
        if reason:
            raise Locked(reason, id=resource.id)

    async def update(
        self,
        resource_id: str,
        partial: Mapping[str, Any],
        scope: Scope,
    ) -> Resource:
        current = await self.get(resource_id, Scope(scope.tenant_id))
        self._ensure_unlocked(current, Action.UPDATE)

        if not isinstance(partial, Mapping):
            raise InvalidPayload(f"{self.kind.name} update must be an object.")
        document = self._normalize_payload({**current.payload, **partial})

        clash = await self._find_clash(document, current.tenant_id, exclude_id=current.id)
        if clash is not None:
            raise Conflict(
                f"Another {self.kind.name} already uses this {', '.join(f.name for f in clash.fields)}.",
                key=clash.name,
            )

        values = {
            "payload": document,
            "updated_at": _next_updated_at(self._now(), current.updated_at),
        }
        try:
            row = await self._storage.update(
                self.kind.table,
                current.id,
                values,
                where=And((eq(UPDATED_AT, current.updated_at), IsNull(DELETED_AT))),
            )
        except UniqueConstraintError as exc:
            raise Conflict(f"Another {self.kind.name} already uses this key.") from exc

        if row is None:
            # Someone else won the read-modify-write race.
            latest = await self._fetch_scoped(current.id, scope)
            if latest is None or latest.is_deleted:
                raise NotFound(f"{self.kind.name} not found.")
            raise Conflict(f"{self.kind.name} was modified concurrently.", id=current.id)
        return Resource.from_row(row)

    async def soft_delete(self, resource_id: str, scope: Scope) -> None:
        """
        Mark the resource deleted, or remove it for hard-delete kinds.

        Not idempotent: a second call on a soft-deleted row raises
        AlreadyDeleted, on a hard-deleted one NotFound.
        """
        current = await self._fetch_scoped(resource_id, scope)
        if current is None:
            raise NotFound(f"{self.kind.name} not found.")
        if current.is_deleted:
            raise AlreadyDeleted(f"{self.kind.name} is already deleted.", id=current.id)
        self._ensure_unlocked(current, Action.DELETE)

        if not self.kind.soft_delete:
            if not await self._storage.delete(self.kind.table, current.id, where=IsNull(DELETED_AT)):
                raise NotFound(f"{self.kind.name} not found.")
            return None

        deleted_at = max(self._now(), as_utc(current.updated_at))
        row = await self._storage.update(
            self.kind.table,
            current.id,
            {"deleted_at": deleted_at},
            where=IsNull(DELETED_AT),
        )
        if row is None:
            latest = await self._fetch_scoped(current.id, scope)
            if latest is None:
                raise NotFound(f"{self.kind.name} not found.")
            raise AlreadyDeleted(f"{self.kind.name} is already deleted.", id=current.id)
        return None
