"""
Auth security helpers.
"""

from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timezone
from typing import Any

import bcrypt
import jwt

from core.errors import TokenExpired, TokenMalformed, TokenSignatureInvalid

ACCESS_TOKEN_TYPE = "access"


def hash_password(plain_password: str, *, rounds: int = 12) -> str:
    password = (plain_password or "").encode("utf-8")
    if not password:
        raise ValueError("Password is empty.")
    return bcrypt.hashpw(password, bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain_password: str, password_hash: str) -> bool:
    password = (plain_password or "").encode("utf-8")
    hashed = (password_hash or "").encode("utf-8")
    if not password or not hashed:
        return False
    try:
        return bcrypt.checkpw(password, hashed)
    except ValueError:
        return False


def credential_fingerprint(password_hash: str) -> str | None:
    if not password_hash:
        return None
    return hashlib.sha256(password_hash.encode("utf-8")).hexdigest()[:16]


def build_access_token(
    *,
    principal_id: str,
    role: str,
    tenant_id: str | None,
    issued_at: datetime,
    expires_at: datetime,
    secret: str,
    algorithm: str,
    fingerprint: str | None = None,
) -> str:
    payload = {
        "sub": principal_id,
        "role": role,
        "tenant": tenant_id,
        "fp": fingerprint,
        "type": ACCESS_TOKEN_TYPE,
        "jti": secrets.token_hex(16),
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_access_token(token: str, *, secret: str, algorithm: str, now: datetime) -> dict[str, Any]:
    """
    Validate signature and shape of an access token, then check expiry
    against `now` (so callers control the clock).
    """
    raw = (token or "").strip()
    if not raw:
        raise TokenMalformed("Access token is empty.")

    try:
        payload = jwt.decode(
            raw,
            secret,
            algorithms=[algorithm],
            options={
                "verify_exp": False,
                "verify_iat": False,
                "verify_nbf": False,
                "require": ["sub", "exp", "iat"],
            },
        )
    except jwt.InvalidSignatureError as exc:
        raise TokenSignatureInvalid("Access token signature is invalid.") from exc
    except jwt.InvalidTokenError as exc:
        raise TokenMalformed("Invalid access token.") from exc

    token_type = str(payload.get("type") or "").strip().lower()
    if token_type != ACCESS_TOKEN_TYPE:
        raise TokenMalformed("Token is not an access token.")

    expires = payload.get("exp")
    if not isinstance(expires, int) or isinstance(expires, bool):
        raise TokenMalformed("Access token has an invalid expiry.")
    if now.timestamp() >= expires:
        raise TokenExpired("Access token is expired.")

    return payload


def epoch_to_datetime(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def build_refresh_token() -> str:
    # URL-safe random string for client storage/transmission.
    return secrets.token_urlsafe(48)


def hash_refresh_token(raw_refresh_token: str) -> str:
    token = (raw_refresh_token or "").encode("utf-8")
    if not token:
        raise TokenMalformed("Refresh token is empty.")
    return hashlib.sha256(token).hexdigest()
