"""
Auth persistence helpers.

Every function takes the storage collaborator as its first argument.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from core.clock import as_utc
from core.storage import Storage, TableSpec, UniqueKey
from query.plan import FieldType, IsNull, QueryPlan, column, eq

TENANTS = "tenants"
PRINCIPALS = "principals"
REFRESH_TOKENS = "refresh_tokens"

EMAIL = column("email", FieldType.TEXT)
PRINCIPAL_ID = column("principal_id")
TOKEN_HASH = column("token_hash", FieldType.TEXT)
REVOKED_AT = column("revoked_at", FieldType.DATETIME)

PRINCIPALS_TABLE = TableSpec(
    PRINCIPALS,
    unique=(UniqueKey("principals_email_key", (EMAIL,), scope=(), active_only=False),),
    ddl=(
        """
        CREATE TABLE IF NOT EXISTS principals (
          id text PRIMARY KEY,
          email text NOT NULL UNIQUE,
          password_hash text NOT NULL,
          role text NOT NULL,
          tenant_id text,
          is_active boolean NOT NULL DEFAULT true,
          created_at timestamptz NOT NULL,
          updated_at timestamptz NOT NULL
        )
        """,
    ),
)

TENANTS_TABLE = TableSpec(
    TENANTS,
    ddl=(
        """
        CREATE TABLE IF NOT EXISTS tenants (
          id text PRIMARY KEY,
          created_by text,
          created_at timestamptz NOT NULL
        )
        """,
        # Tenants that predate this table belong to their earliest principal.
        """
        INSERT INTO tenants (id, created_by, created_at)
        SELECT DISTINCT ON (tenant_id) tenant_id, id, created_at
        FROM principals
        WHERE tenant_id IS NOT NULL
        ORDER BY tenant_id, created_at
        ON CONFLICT (id) DO NOTHING
        """,
    ),
)

REFRESH_TOKENS_TABLE = TableSpec(
    REFRESH_TOKENS,
    unique=(UniqueKey("refresh_tokens_token_hash_key", (TOKEN_HASH,), scope=(), active_only=False),),
    ddl=(
        """
        CREATE TABLE IF NOT EXISTS refresh_tokens (
          id text PRIMARY KEY,
          principal_id text NOT NULL REFERENCES principals (id),
          token_hash text NOT NULL UNIQUE,
          expires_at timestamptz NOT NULL,
          revoked_at timestamptz,
          replaced_by_token_id text,
          created_at timestamptz NOT NULL,
          last_used_at timestamptz,
          user_agent text,
          ip_address text
        )
        """,
        "CREATE INDEX IF NOT EXISTS refresh_tokens_principal_idx ON refresh_tokens (principal_id)",
    ),
)

TABLES = (PRINCIPALS_TABLE, TENANTS_TABLE, REFRESH_TOKENS_TABLE)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


async def create_principal(
    storage: Storage,
    *,
    email: str,
    password_hash: str,
    role: str,
    tenant_id: str | None,
    now: datetime,
    is_active: bool = True,
) -> dict[str, Any]:
    return await storage.insert(
        PRINCIPALS,
        {
            "id": str(uuid4()),
            "email": normalize_email(email),
            "password_hash": password_hash,
            "role": role,
            "tenant_id": tenant_id,
            "is_active": is_active,
            "created_at": now,
            "updated_at": now,
        },
    )


async def create_tenant(storage: Storage, tenant_id: str, *, created_by: str, now: datetime) -> dict[str, Any]:
    """Claim a tenant id. Raises UniqueConstraintError when it is already taken."""
    return await storage.insert(TENANTS, {"id": tenant_id, "created_by": created_by, "created_at": now})


async def get_principal_by_email(storage: Storage, email: str) -> dict[str, Any] | None:
    rows, _ = await storage.scan(PRINCIPALS, QueryPlan.matching(eq(EMAIL, normalize_email(email))))
    return rows[0] if rows else None


async def get_principal_by_id(storage: Storage, principal_id: str) -> dict[str, Any] | None:
    return await storage.fetch(PRINCIPALS, principal_id)


async def update_principal_role(
    storage: Storage,
    principal_id: str,
    *,
    role: str,
    now: datetime,
) -> dict[str, Any] | None:
    return await storage.update(PRINCIPALS, principal_id, {"role": role, "updated_at": now})


async def insert_refresh_token(
    storage: Storage,
    *,
    principal_id: str,
    token_hash: str,
    expires_at: datetime,
    now: datetime,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> dict[str, Any]:
    return await storage.insert(
        REFRESH_TOKENS,
        {
            "id": str(uuid4()),
            "principal_id": principal_id,
            "token_hash": token_hash,
            "expires_at": as_utc(expires_at),
            "revoked_at": None,
            "replaced_by_token_id": None,
            "created_at": now,
            "last_used_at": None,
            "user_agent": user_agent,
            "ip_address": ip_address,
        },
    )


async def get_refresh_token_by_hash(storage: Storage, token_hash: str) -> dict[str, Any] | None:
    rows, _ = await storage.scan(REFRESH_TOKENS, QueryPlan.matching(eq(TOKEN_HASH, token_hash)))
    return rows[0] if rows else None


async def revoke_refresh_token_by_id(storage: Storage, token_id: str, *, now: datetime) -> bool:
    """
    Revoke a token that is still live. Returns False when another caller
    revoked it first, which makes this the atomic read-then-invalidate step.
    """
    row = await storage.update(
        REFRESH_TOKENS,
        token_id,
        {"revoked_at": now, "last_used_at": now},
        where=IsNull(REVOKED_AT),
    )
    return row is not None


async def revoke_refresh_token_by_hash(storage: Storage, token_hash: str, *, now: datetime) -> bool:
    row = await get_refresh_token_by_hash(storage, token_hash)
    if row is None:
        return False
    return await revoke_refresh_token_by_id(storage, str(row["id"]), now=now)


async def revoke_all_refresh_tokens_for_principal(
    storage: Storage,
    principal_id: str,
    *,
    now: datetime,
) -> int:
    rows, _ = await storage.scan(
        REFRESH_TOKENS,
        QueryPlan.matching(eq(PRINCIPAL_ID, principal_id), IsNull(REVOKED_AT), limit=10_000),
    )
    revoked = 0
    for row in rows:
        if await revoke_refresh_token_by_id(storage, str(row["id"]), now=now):
            revoked += 1
    return revoked


async def set_refresh_token_replacement(storage: Storage, *, old_token_id: str, new_token_id: str) -> None:
    await storage.update(REFRESH_TOKENS, old_token_id, {"replaced_by_token_id": new_token_id})
