"""Registration, login, refresh, logout and role changes."""

from __future__ import annotations

import pytest

from audit.recorder import AUDIT_ENTRIES
from auth import repository, schemas
from auth.principal import Principal
from auth.service import AuthService
from core.errors import Forbidden, NotFound, TokenRevoked, Unauthenticated, UniquenessViolation
from query.plan import QueryPlan


async def _register(auth_service: AuthService, email: str = "alice@example.com", **kwargs) -> schemas.AuthResponse:
    payload = schemas.RegisterRequest(email=email, password="s3cret-password", tenant_id="t1", **kwargs)
    return await auth_service.register(payload)


async def _audit_actions(storage) -> list[str]:
    rows, _ = await storage.scan(AUDIT_ENTRIES, QueryPlan(limit=100, order_by=()))
    return [r["action"] for r in rows]


@pytest.mark.asyncio
async def test_register_creates_principal_with_default_role(auth_service, storage) -> None:
    result = await _register(auth_service, email="  Alice@Example.com ")

    assert result.principal.email == "alice@example.com"
    assert result.principal.role == "member"
    assert result.principal.tenant_id == "t1"
    assert result.tokens.token_type == "bearer"

    principal = auth_service.principal_from_token(result.tokens.access_token)
    assert principal.id == result.principal.id
    assert principal.tenant_id == "t1"
    assert await _audit_actions(storage) == ["register"]


@pytest.mark.asyncio
async def test_duplicate_email_is_a_uniqueness_violation(auth_service) -> None:
    await _register(auth_service)

    with pytest.raises(UniquenessViolation):
        await _register(auth_service, email="ALICE@example.com")


@pytest.mark.asyncio
async def test_elevated_role_needs_an_elevated_registrar(auth_service) -> None:
    with pytest.raises(Forbidden):
        await _register(auth_service, email="root@example.com", role="admin")

    registrar = Principal("p-admin", "admin", "t1")
    payload = schemas.RegisterRequest(
        email="root@example.com", password="s3cret-password", role="admin", tenant_id="t1"
    )
    result = await auth_service.register(payload, actor=registrar)
    assert result.principal.role == "admin"


@pytest.mark.asyncio
async def test_self_registration_cannot_pick_a_role(auth_service) -> None:
    with pytest.raises(Forbidden):
        await _register(auth_service, email="boss@example.com", role="manager")

    result = await _register(auth_service, email="plain@example.com", role="member")
    assert result.principal.role == "member"


@pytest.mark.asyncio
async def test_self_registration_cannot_join_an_existing_tenant(auth_service, storage) -> None:
    await _register(auth_service)

    with pytest.raises(Forbidden):
        await _register(auth_service, email="intruder@example.com")
    # The rejected sign-up leaves nothing behind.
    assert await repository.get_principal_by_email(storage, "intruder@example.com") is None

    fresh = await auth_service.register(
        schemas.RegisterRequest(email="solo@example.com", password="s3cret-password")
    )
    assert fresh.principal.tenant_id not in (None, "t1")


@pytest.mark.asyncio
async def test_elevated_actor_registers_into_its_own_tenant_only(auth_service) -> None:
    registrar = Principal("p-admin", "admin", "t1")

    with pytest.raises(Forbidden):
        await auth_service.register(
            schemas.RegisterRequest(email="bob@example.com", password="s3cret-password", tenant_id="t2"),
            actor=registrar,
        )

    joined = await auth_service.register(
        schemas.RegisterRequest(email="bob@example.com", password="s3cret-password", role="manager"),
        actor=registrar,
    )
    assert joined.principal.tenant_id == "t1"
    assert joined.principal.role == "manager"


@pytest.mark.asyncio
async def test_non_elevated_actor_cannot_provision_into_its_tenant(auth_service) -> None:
    owner = await _register(auth_service)
    member = auth_service.principal_from_token(owner.tokens.access_token)

    with pytest.raises(Forbidden):
        await auth_service.register(
            schemas.RegisterRequest(email="friend@example.com", password="s3cret-password", tenant_id="t1"),
            actor=member,
        )


@pytest.mark.asyncio
async def test_login_success_and_failures_are_audited(auth_service, storage) -> None:
    await _register(auth_service)

    ok = await auth_service.login(schemas.LoginRequest(email="alice@example.com", password="s3cret-password"))
    assert ok.principal.email == "alice@example.com"

    with pytest.raises(Unauthenticated):
        await auth_service.login(schemas.LoginRequest(email="alice@example.com", password="wrong"))
    with pytest.raises(Unauthenticated):
        await auth_service.login(schemas.LoginRequest(email="nobody@example.com", password="whatever"))

    assert await _audit_actions(storage) == ["register", "login", "login_failed", "login_failed"]


@pytest.mark.asyncio
async def test_inactive_principals_cannot_log_in(auth_service, storage) -> None:
    registered = await _register(auth_service)
    await storage.update("principals", registered.principal.id, {"is_active": False})

    with pytest.raises(Forbidden):
        await auth_service.login(schemas.LoginRequest(email="alice@example.com", password="s3cret-password"))


@pytest.mark.asyncio
async def test_refresh_rotates_and_old_token_is_revoked(auth_service, storage) -> None:
    registered = await _register(auth_service)
    old = registered.tokens.refresh_token

    rotated = await auth_service.refresh(schemas.RefreshRequest(refresh_token=old))
    assert rotated.refresh_token != old

    with pytest.raises(TokenRevoked):
        await auth_service.refresh(schemas.RefreshRequest(refresh_token=old))
    assert (await _audit_actions(storage)).count("refresh") == 1


@pytest.mark.asyncio
async def test_logout_revokes_one_or_all_sessions(auth_service) -> None:
    registered = await _register(auth_service)
    second = await auth_service.login(schemas.LoginRequest(email="alice@example.com", password="s3cret-password"))

    await auth_service.logout(schemas.LogoutRequest(refresh_token=registered.tokens.refresh_token))
    with pytest.raises(TokenRevoked):
        await auth_service.refresh(schemas.RefreshRequest(refresh_token=registered.tokens.refresh_token))

    current = auth_service.principal_from_token(second.tokens.access_token)
    await auth_service.logout(schemas.LogoutRequest(), current=current)
    with pytest.raises(TokenRevoked):
        await auth_service.refresh(schemas.RefreshRequest(refresh_token=second.tokens.refresh_token))

    with pytest.raises(Unauthenticated):
        await auth_service.logout(schemas.LogoutRequest())


@pytest.mark.asyncio
async def test_role_change_requires_elevation_and_same_tenant(auth_service, storage) -> None:
    registered = await _register(auth_service)
    member_id = registered.principal.id
    member = auth_service.principal_from_token(registered.tokens.access_token)

    with pytest.raises(Forbidden):
        await auth_service.change_role(member, member_id, "admin")

    with pytest.raises(NotFound):
        await auth_service.change_role(Principal("p-root", "admin", "t2"), member_id, "manager")

    updated = await auth_service.change_role(Principal("p-admin", "admin", "t1"), member_id, "manager")
    assert updated.role == "manager"

    # The new role shows up on the next rotation.
    rotated = await auth_service.refresh(schemas.RefreshRequest(refresh_token=registered.tokens.refresh_token))
    assert auth_service.verify(rotated.access_token).role == "manager"
    assert "role_change" in await _audit_actions(storage)


@pytest.mark.asyncio
async def test_me_returns_the_stored_principal(auth_service) -> None:
    registered = await _register(auth_service)
    principal = auth_service.principal_from_token(registered.tokens.access_token)

    me = await auth_service.me(principal)
    assert me.id == registered.principal.id
    assert me.is_active is True
