"""Access guard decisions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

import pytest

from access.guard import AccessGuard, Action, Decision, Ownership
from auth.principal import Principal
from core.errors import Forbidden, NotFound, Unauthenticated


@dataclass
class _Kind:
    name: str = "things"
    ownership: Ownership = Ownership.TENANT
    permissions: dict = field(default_factory=dict)


@dataclass
class _Ref:
    id: str = "r1"
    tenant_id: str | None = "t1"
    owner_id: str | None = "p-alice"
    deleted_at: datetime | None = None


DELETED = datetime(2024, 1, 2, tzinfo=timezone.utc)

GUARD = AccessGuard({"admin"})
ALICE = Principal("p-alice", "member", "t1")
BOB = Principal("p-bob", "member", "t1")
ADMIN = Principal("p-admin", "admin", "t1")
FOREIGN_ADMIN = Principal("p-root", "admin", "t2")


def test_missing_principal_is_unauthenticated_first() -> None:
    assert GUARD.check(None, Action.READ, _Ref()) is Decision.UNAUTHENTICATED
    with pytest.raises(Unauthenticated):
        GUARD.authorize(None, Action.READ, _Ref())


def test_authorize_returns_the_principal_it_was_given() -> None:
    assert GUARD.authorize(ALICE, Action.LIST, kind=_Kind()) is ALICE
    with pytest.raises(Unauthenticated):
        GUARD.authorize(None, Action.LIST, kind=_Kind())
    with pytest.raises(Unauthenticated):
        GUARD.authorize_list(None, _Kind())


def test_same_tenant_member_may_act_on_tenant_scoped_kind() -> None:
    assert GUARD.authorize(BOB, Action.UPDATE, _Ref(), kind=_Kind()) is BOB


def test_other_tenant_is_forbidden_even_for_elevated_roles() -> None:
    assert GUARD.check(FOREIGN_ADMIN, Action.READ, _Ref(), kind=_Kind()) is Decision.FORBIDDEN
    with pytest.raises(Forbidden):
        GUARD.authorize(FOREIGN_ADMIN, Action.DELETE, _Ref(), kind=_Kind())


def test_owner_scoped_kind_requires_owner_or_elevated() -> None:
    kind = _Kind(ownership=Ownership.OWNER)

    assert GUARD.check(ALICE, Action.UPDATE, _Ref(), kind=kind) is Decision.OK
    assert GUARD.check(BOB, Action.UPDATE, _Ref(), kind=kind) is Decision.FORBIDDEN
    assert GUARD.check(ADMIN, Action.UPDATE, _Ref(), kind=kind) is Decision.OK


def test_role_permissions_per_action() -> None:
    kind = _Kind(permissions={Action.DELETE: frozenset({"manager"})})
    manager = Principal("p-manager", "manager", "t1")

    assert GUARD.check(ALICE, Action.DELETE, kind=kind) is Decision.FORBIDDEN
    assert GUARD.check(ALICE, Action.READ, kind=kind) is Decision.OK
    assert GUARD.check(manager, Action.DELETE, kind=kind) is Decision.OK
    assert GUARD.check(ADMIN, Action.DELETE, kind=kind) is Decision.OK


@pytest.mark.parametrize("action", [Action.READ, Action.UPDATE, Action.AUDIT])
def test_deleted_resources_are_hidden_from_non_elevated_roles(action: Action) -> None:
    ref = _Ref(deleted_at=DELETED)

    with pytest.raises(NotFound):
        GUARD.authorize(ALICE, action, ref, kind=_Kind())
    assert GUARD.check(ADMIN, action, ref, kind=_Kind()) is Decision.OK


def test_delete_of_a_deleted_resource_is_left_to_the_repository() -> None:
    assert GUARD.check(ALICE, Action.DELETE, _Ref(deleted_at=DELETED), kind=_Kind()) is Decision.OK


def test_deleted_view_needs_elevation() -> None:
    with pytest.raises(Forbidden):
        GUARD.authorize_list(ALICE, _Kind(), include_deleted=True)
    assert GUARD.authorize_list(ALICE, _Kind()) is ALICE
    assert GUARD.authorize_list(ADMIN, _Kind(), include_deleted=True) is ADMIN


def test_require_elevated() -> None:
    with pytest.raises(Unauthenticated):
        GUARD.require_elevated(None)
    with pytest.raises(Forbidden):
        GUARD.require_elevated(ALICE)
    assert GUARD.require_elevated(ADMIN) is ADMIN
