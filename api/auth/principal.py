"""
Authenticated actors and their sessions.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from . import security


@dataclass(frozen=True)
class Principal:
    id: str
    role: str
    tenant_id: str | None = None
    fingerprint: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Principal":
        return cls(
            id=str(row["id"]),
            role=str(row["role"]),
            tenant_id=row.get("tenant_id"),
            fingerprint=security.credential_fingerprint(str(row.get("password_hash") or "")),
        )


@dataclass(frozen=True)
class PrincipalClaims:
    principal_id: str
    role: str
    tenant_id: str | None
    token_id: str
    issued_at: datetime
    expires_at: datetime
    fingerprint: str | None = None

    def principal(self) -> Principal:
        return Principal(
            id=self.principal_id,
            role=self.role,
            tenant_id=self.tenant_id,
            fingerprint=self.fingerprint,
        )


@dataclass(frozen=True)
class Session:
    principal_id: str
    access_token: str
    refresh_token: str
    issued_at: datetime
    access_expires_at: datetime
    refresh_expires_at: datetime
