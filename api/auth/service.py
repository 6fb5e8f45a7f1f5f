"""
Auth business logic.

Registration, login, refresh, logout and role changes. Every state change is
written to the audit trail in the same storage transaction; failed logins
are recorded as well.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from access.guard import AccessGuard
from audit.recorder import AuditRecorder
from core.clock import Clock, utc_now
from core.config import Settings
from core.errors import (
    Fatal,
    Forbidden,
    InvalidPayload,
    NotFound,
    StorageError,
    Unauthenticated,
    UniqueConstraintError,
    UniquenessViolation,
)
from core.storage import Storage

from . import repository, schemas, security
from .principal import Principal, PrincipalClaims, Session
from .tokens import TokenIssuer

logger = logging.getLogger(__name__)

TARGET_TYPE = "principal"


def _to_principal_response(row: dict[str, Any]) -> schemas.PrincipalResponse:
    return schemas.PrincipalResponse(
        id=str(row["id"]),
        email=str(row["email"]),
        role=str(row["role"]),
        tenant_id=row.get("tenant_id"),
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
    )


def _to_token_pair(session: Session) -> schemas.TokenPairResponse:
    return schemas.TokenPairResponse(
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        access_expires_at=session.access_expires_at,
        refresh_expires_at=session.refresh_expires_at,
    )


class AuthService:
    def __init__(
        self,
        storage: Storage,
        issuer: TokenIssuer,
        guard: AccessGuard,
        audit: AuditRecorder,
        settings: Settings,
        clock: Clock = utc_now,
    ) -> None:
        self._storage = storage
        self.issuer = issuer
        self._guard = guard
        self._audit = audit
        self._settings = settings
        self._clock = clock

    async def _record_failed_login(self, email: str, reason: str, principal_id: str | None = None) -> None:
        logger.warning("login_failed email=%s reason=%s", repository.normalize_email(email), reason)
        async with self._storage.transaction():
            await self._audit.record(
                principal_id,
                "login_failed",
                TARGET_TYPE,
                principal_id,
                {"email": repository.normalize_email(email), "reason": reason},
            )

    def _registration_target(
        self, role: str, tenant_id: str | None, actor: Principal | None
    ) -> tuple[str | None, bool]:
        """
        Resolve the tenant a new principal lands in.

        Elevated actors provision principals into their own tenant only.
        Everyone else signs up with the default role and must claim a tenant
        that does not exist yet; returns True when the tenant has to be claimed.
        """
        if actor is not None and self._guard.is_elevated(actor):
            if tenant_id is not None and tenant_id != actor.tenant_id:
                raise Forbidden("Principals can only be registered into the actor's own tenant.")
            return actor.tenant_id, False

        if role != self._settings.default_role:
            raise Forbidden("Roles other than the default are granted by an elevated principal.")
        return tenant_id or str(uuid4()), True

    async def register(
        self,
        payload: schemas.RegisterRequest,
        *,
        actor: Principal | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> schemas.AuthResponse:
        role = (payload.role or self._settings.default_role).strip()
        tenant_id, claim_tenant = self._registration_target(role, payload.tenant_id, actor)

        try:
            existing = await repository.get_principal_by_email(self._storage, payload.email)
            if existing is not None:
                raise UniquenessViolation("Email is already registered.")

            password_hash = security.hash_password(payload.password, rounds=self._settings.bcrypt_rounds)
            async with self._storage.transaction():
                now = self._clock()
                try:
                    principal_row = await repository.create_principal(
                        self._storage,
                        email=payload.email,
                        password_hash=password_hash,
                        role=role,
                        tenant_id=tenant_id,
                        now=now,
                    )
                except UniqueConstraintError as exc:
                    raise UniquenessViolation("Email is already registered.") from exc

                principal = Principal.from_row(principal_row)
                if claim_tenant and tenant_id is not None:
                    try:
                        await repository.create_tenant(self._storage, tenant_id, created_by=principal.id, now=now)
                    except UniqueConstraintError as exc:
                        logger.warning("register_tenant_taken tenant_id=%s", tenant_id)
                        raise Forbidden(
                            "Tenant already exists; ask one of its administrators for an account."
                        ) from exc

                session = await self.issuer.issue(principal, user_agent=user_agent, ip_address=ip_address)
                await self._audit.record(
                    actor.id if actor is not None else principal.id,
                    "register",
                    TARGET_TYPE,
                    principal.id,
                    {"role": role, "tenant_id": tenant_id},
                )
        except StorageError as exc:
            logger.exception("register_failed email=%s", repository.normalize_email(payload.email))
            raise Fatal("Storage failure.") from exc

        logger.info("principal_registered principal_id=%s role=%s", principal.id, role)
        return schemas.AuthResponse(
            principal=_to_principal_response(principal_row),
            tokens=_to_token_pair(session),
        )

    async def login(
        self,
        payload: schemas.LoginRequest,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> schemas.AuthResponse:
        try:
            principal_row = await repository.get_principal_by_email(self._storage, payload.email)
            if principal_row is None:
                await self._record_failed_login(payload.email, "unknown_email")
                raise Unauthenticated("Invalid email or password.")

            principal_id = str(principal_row["id"])
            if not bool(principal_row.get("is_active", False)):
                await self._record_failed_login(payload.email, "inactive", principal_id)
                raise Forbidden("Principal is inactive.")

            is_valid = security.verify_password(payload.password, str(principal_row.get("password_hash") or ""))
            if not is_valid:
                await self._record_failed_login(payload.email, "bad_password", principal_id)
                raise Unauthenticated("Invalid email or password.")

            principal = Principal.from_row(principal_row)
            async with self._storage.transaction():
                session = await self.issuer.issue(principal, user_agent=user_agent, ip_address=ip_address)
                await self._audit.record(principal.id, "login", TARGET_TYPE, principal.id, {"ip_address": ip_address})
        except StorageError as exc:
            logger.exception("login_storage_failure")
            raise Fatal("Storage failure.") from exc

        return schemas.AuthResponse(
            principal=_to_principal_response(principal_row),
            tokens=_to_token_pair(session),
        )

    async def refresh(
        self,
        payload: schemas.RefreshRequest,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> schemas.TokenPairResponse:
        try:
            async with self._storage.transaction():
                session = await self.issuer.rotate(
                    payload.refresh_token,
                    user_agent=user_agent,
                    ip_address=ip_address,
                )
                await self._audit.record(
                    session.principal_id, "refresh", TARGET_TYPE, session.principal_id, {}
                )
        except StorageError as exc:
            logger.exception("refresh_storage_failure")
            raise Fatal("Storage failure.") from exc
        return _to_token_pair(session)

    async def logout(
        self,
        payload: schemas.LogoutRequest,
        *,
        current: Principal | None = None,
    ) -> dict[str, bool]:
        refresh_token = (payload.refresh_token or "").strip()
        if not refresh_token and current is None:
            raise Unauthenticated("Provide refresh_token or authenticate.")

        try:
            async with self._storage.transaction():
                # If specific refresh token is provided, revoke only that token.
                if refresh_token:
                    revoked = int(await self.issuer.revoke(refresh_token))
                else:
                    # Token not provided, but principal is authenticated: revoke all sessions.
                    revoked = await self.issuer.revoke_all(current.id)
                actor_id = current.id if current is not None else None
                await self._audit.record(actor_id, "logout", TARGET_TYPE, actor_id, {"revoked": revoked})
        except StorageError as exc:
            logger.exception("logout_storage_failure")
            raise Fatal("Storage failure.") from exc
        return {"ok": True}

    def verify(self, access_token: str) -> PrincipalClaims:
        return self.issuer.verify(access_token)

    def principal_from_token(self, access_token: str) -> Principal:
        return self.issuer.verify(access_token).principal()

    async def me(self, principal: Principal) -> schemas.PrincipalResponse:
        try:
            row = await repository.get_principal_by_id(self._storage, principal.id)
        except StorageError as exc:
            raise Fatal("Storage failure.") from exc
        if row is None:
            raise Unauthenticated("Principal not found.")
        return _to_principal_response(row)

    async def change_role(
        self,
        actor: Principal | None,
        principal_id: str,
        role: str,
    ) -> schemas.PrincipalResponse:
        actor = self._guard.require_elevated(actor)
        role = (role or "").strip()
        if not role:
            raise InvalidPayload("Role is required.")

        try:
            async with self._storage.transaction():
                target = await repository.get_principal_by_id(self._storage, principal_id)
                # Elevated roles never cross tenant boundaries.
                if target is None or target.get("tenant_id") != actor.tenant_id:
                    raise NotFound("Principal not found.")

                previous = str(target["role"])
                updated = await repository.update_principal_role(
                    self._storage, principal_id, role=role, now=self._clock()
                )
                if updated is None:
                    raise NotFound("Principal not found.")
                await self._audit.record(
                    actor.id, "role_change", TARGET_TYPE, principal_id, {"from": previous, "to": role}
                )
        except StorageError as exc:
            logger.exception("role_change_storage_failure principal_id=%s", principal_id)
            raise Fatal("Storage failure.") from exc

        logger.info("role_changed principal_id=%s from=%s to=%s by=%s", principal_id, previous, role, actor.id)
        return _to_principal_response(updated)
