"""
Token issuer: mint, verify and rotate session credentials.

Access tokens are self-contained JWTs and are verified without touching
storage. Refresh tokens are opaque; only their SHA-256 hash is stored, and
rotation revokes the old row with a compare-and-set so that two concurrent
rotations of the same token cannot both succeed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from core.clock import Clock, as_utc, utc_now
from core.config import Settings
from core.errors import TokenExpired, TokenMalformed, TokenRevoked
from core.storage import Storage

from . import repository, security
from .principal import Principal, PrincipalClaims, Session

logger = logging.getLogger(__name__)


class TokenIssuer:
    def __init__(self, storage: Storage, settings: Settings, clock: Clock = utc_now) -> None:
        self._storage = storage
        self._settings = settings
        self._clock = clock

    def _now(self) -> datetime:
        # JWT timestamps are whole seconds; keep the returned expiries exact.
        return as_utc(self._clock()).replace(microsecond=0)

    async def issue(
        self,
        principal: Principal,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
        replaced_token_id: str | None = None,
    ) -> Session:
        issued_at = self._now()
        access_expires_at = issued_at + timedelta(minutes=self._settings.access_token_expire_minutes)
        refresh_expires_at = issued_at + timedelta(days=self._settings.refresh_token_expire_days)

        access_token = security.build_access_token(
            principal_id=principal.id,
            role=principal.role,
            tenant_id=principal.tenant_id,
            fingerprint=principal.fingerprint,
            issued_at=issued_at,
            expires_at=access_expires_at,
            secret=self._settings.jwt_secret,
            algorithm=self._settings.jwt_algorithm,
        )
        raw_refresh_token = security.build_refresh_token()

        refresh_row = await repository.insert_refresh_token(
            self._storage,
            principal_id=principal.id,
            token_hash=security.hash_refresh_token(raw_refresh_token),
            expires_at=refresh_expires_at,
            now=issued_at,
            user_agent=user_agent,
            ip_address=ip_address,
        )

        if replaced_token_id is not None:
            await repository.set_refresh_token_replacement(
                self._storage,
                old_token_id=replaced_token_id,
                new_token_id=str(refresh_row["id"]),
            )

        return Session(
            principal_id=principal.id,
            access_token=access_token,
            refresh_token=raw_refresh_token,
            issued_at=issued_at,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
        )

    def verify(self, token: str) -> PrincipalClaims:
        payload = security.decode_access_token(
            token,
            secret=self._settings.jwt_secret,
            algorithm=self._settings.jwt_algorithm,
            now=as_utc(self._clock()),
        )

        subject = str(payload.get("sub") or "").strip()
        role = str(payload.get("role") or "").strip()
        if not subject or not role:
            raise TokenMalformed("Access token is missing subject or role.")

        tenant = payload.get("tenant")
        return PrincipalClaims(
            principal_id=subject,
            role=role,
            tenant_id=str(tenant) if tenant is not None else None,
            token_id=str(payload.get("jti") or ""),
            issued_at=security.epoch_to_datetime(int(payload["iat"])),
            expires_at=security.epoch_to_datetime(int(payload["exp"])),
            fingerprint=payload.get("fp"),
        )

    async def rotate(
        self,
        refresh_token: str,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> Session:
        incoming = (refresh_token or "").strip()
        if not incoming:
            raise TokenMalformed("refresh_token is required.")

        now = self._now()
        old_row = await repository.get_refresh_token_by_hash(
            self._storage, security.hash_refresh_token(incoming)
        )
        if old_row is None:
            raise TokenMalformed("Invalid refresh token.")

        token_id = str(old_row["id"])
        if old_row.get("revoked_at") is not None:
            logger.warning("refresh_token_reuse token_id=%s principal_id=%s", token_id, old_row["principal_id"])
            raise TokenRevoked("Refresh token is revoked.")

        expires_at = old_row.get("expires_at")
        if not isinstance(expires_at, datetime) or as_utc(expires_at) <= now:
            # Revoke expired token as cleanup.
            await repository.revoke_refresh_token_by_id(self._storage, token_id, now=now)
            raise TokenExpired("Refresh token is expired.")

        principal_row = await repository.get_principal_by_id(self._storage, str(old_row["principal_id"]))
        if principal_row is None or not bool(principal_row.get("is_active", False)):
            await repository.revoke_refresh_token_by_id(self._storage, token_id, now=now)
            raise TokenRevoked("Invalid refresh token owner.")

        async with self._storage.transaction():
            if not await repository.revoke_refresh_token_by_id(self._storage, token_id, now=now):
                raise TokenRevoked("Refresh token is revoked.")

            return await self.issue(
                Principal.from_row(principal_row),
                user_agent=user_agent,
                ip_address=ip_address,
                replaced_token_id=token_id,
            )

    async def revoke(self, refresh_token: str) -> bool:
        token_hash = security.hash_refresh_token((refresh_token or "").strip())
        return await repository.revoke_refresh_token_by_hash(self._storage, token_hash, now=self._now())

    async def revoke_all(self, principal_id: str) -> int:
        return await repository.revoke_all_refresh_tokens_for_principal(
            self._storage, principal_id, now=self._now()
        )
