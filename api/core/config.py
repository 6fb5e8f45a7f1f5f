"""
Runtime settings read from environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_JWT_SECRET = "dev-change-this-secret-before-deploying-it"


def _env_str(name: str, default: str) -> str:
    return os.environ.get(name, default).strip() or default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_set(name: str, default: str) -> frozenset[str]:
    raw = _env_str(name, default)
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = ""
    # Local default keeps development simple.
    # In production, set JWT_SECRET in environment.
    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    refresh_token_expire_days: int = 7
    page_size_default: int = 20
    page_size_max: int = 100
    elevated_roles: frozenset[str] = frozenset({"admin"})
    default_role: str = "member"
    bcrypt_rounds: int = 12

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ.get("DATABASE_URL", "").strip(),
            jwt_secret=_env_str("JWT_SECRET", DEFAULT_JWT_SECRET),
            jwt_algorithm=_env_str("JWT_ALG", "HS256"),
            access_token_expire_minutes=_env_int("ACCESS_TOKEN_EXPIRE_MIN", 60),
            refresh_token_expire_days=_env_int("REFRESH_TOKEN_EXPIRE_DAYS", 7),
            page_size_default=_env_int("PAGE_SIZE_DEFAULT", 20),
            page_size_max=_env_int("PAGE_SIZE_MAX", 100),
            elevated_roles=_env_set("ELEVATED_ROLES", "admin"),
            default_role=_env_str("DEFAULT_ROLE", "member"),
            bcrypt_rounds=_env_int("BCRYPT_ROUNDS", 12),
        )

    def is_elevated(self, role: str | None) -> bool:
        return bool(role) and role in self.elevated_roles
