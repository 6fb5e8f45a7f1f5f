"""
Access guard: one place that decides whether a principal may act on a
resource kind or a specific resource.

Checks run in a fixed order:
1. no principal                         -> UNAUTHENTICATED
2. role not permitted for the action    -> FORBIDDEN
3. resource in another tenant           -> FORBIDDEN (elevated roles included)
4. owner-scoped resource, not the owner -> FORBIDDEN unless elevated
5. soft-deleted resource on read/update -> HIDDEN unless elevated

Delete is allowed through step 5 so that the repository can answer a
repeated delete with AlreadyDeleted.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Mapping
from datetime import datetime
from enum import Enum
from typing import Protocol

from auth.principal import Principal
from core.errors import Forbidden, NotFound, Unauthenticated

logger = logging.getLogger(__name__)


class Action(str, Enum):
    LIST = "list"
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    AUDIT = "audit"


class Ownership(str, Enum):
    # Any principal of the tenant may act on the resource.
    TENANT = "tenant"
    # Only the owning principal (or an elevated role in the same tenant).
    OWNER = "owner"


class Decision(str, Enum):
    OK = "ok"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    HIDDEN = "hidden"


class GuardedKind(Protocol):
    name: str
    ownership: Ownership
    permissions: Mapping[Action, frozenset[str]]


class ResourceRef(Protocol):
    id: str
    tenant_id: str | None
    owner_id: str | None
    deleted_at: datetime | None


_HIDES_DELETED = frozenset({Action.READ, Action.UPDATE, Action.AUDIT})


class AccessGuard:
    def __init__(self, elevated_roles: Collection[str]) -> None:
        self._elevated_roles = frozenset(elevated_roles)

    def is_elevated(self, principal: Principal | None) -> bool:
        return principal is not None and principal.role in self._elevated_roles

    def check(
        self,
        principal: Principal | None,
        action: Action,
        resource: ResourceRef | None = None,
        *,
        kind: GuardedKind | None = None,
    ) -> Decision:
        if principal is None:
            return Decision.UNAUTHENTICATED

        elevated = self.is_elevated(principal)

        if kind is not None:
            allowed = kind.permissions.get(action)
            if allowed is not None and not elevated and principal.role not in allowed:
                return Decision.FORBIDDEN

        if resource is None:
            return Decision.OK

        if resource.tenant_id != principal.tenant_id:
            return Decision.FORBIDDEN

        ownership = kind.ownership if kind is not None else Ownership.TENANT
        if ownership is Ownership.OWNER and not elevated and resource.owner_id != principal.id:
            return Decision.FORBIDDEN

        if resource.deleted_at is not None and not elevated and action in _HIDES_DELETED:
            return Decision.HIDDEN

        return Decision.OK

    def authorize(
        self,
        principal: Principal | None,
        action: Action,
        resource: ResourceRef | None = None,
        *,
        kind: GuardedKind | None = None,
    ) -> Principal:
        if principal is None:
            raise Unauthenticated("Authentication required.")
        decision = self.check(principal, action, resource, kind=kind)
        if decision is Decision.OK:
            return principal

        kind_name = kind.name if kind is not None else "-"
        if decision is Decision.HIDDEN:
            raise NotFound(f"{kind_name} not found.")

        logger.warning(
            "access_denied principal_id=%s role=%s action=%s kind=%s resource_id=%s",
            principal.id,
            principal.role,
            action.value,
            kind_name,
            resource.id if resource is not None else None,
        )
        raise Forbidden(f"Not allowed to {action.value} {kind_name}.")

    def authorize_list(
        self,
        principal: Principal | None,
        kind: GuardedKind,
        *,
        include_deleted: bool = False,
    ) -> Principal:
        principal = self.authorize(principal, Action.LIST, kind=kind)
        if include_deleted and not self.is_elevated(principal):
            raise Forbidden("Only elevated roles may list deleted records.")
        return principal

    def require_elevated(self, principal: Principal | None) -> Principal:
        if principal is None:
            raise Unauthenticated("Authentication required.")
        if not self.is_elevated(principal):
            raise Forbidden("An elevated role is required.")
        return principal
