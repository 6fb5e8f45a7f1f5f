"""
Auth dependencies for protected FastAPI routes.
"""

from __future__ import annotations

from fastapi import Depends, Header, Request

from core.errors import Unauthenticated

from .principal import Principal


def _extract_bearer_token(authorization: str | None) -> str:
    raw = (authorization or "").strip()
    if not raw:
        raise Unauthenticated("Missing Authorization header.")

    parts = raw.split(" ", 1)
    if len(parts) != 2:
        raise Unauthenticated("Invalid Authorization header format.")

    scheme, token = parts[0].strip().lower(), parts[1].strip()
    if scheme != "bearer" or not token:
        raise Unauthenticated("Authorization must be: Bearer <token>.")
    return token


async def get_bearer_token(authorization: str | None = Header(default=None)) -> str:
    return _extract_bearer_token(authorization)


async def get_optional_bearer_token(authorization: str | None = Header(default=None)) -> str | None:
    if not (authorization or "").strip():
        return None
    return _extract_bearer_token(authorization)


async def get_current_principal(
    request: Request,
    access_token: str = Depends(get_bearer_token),
) -> Principal:
    return request.app.state.services.auth.principal_from_token(access_token)


async def get_optional_principal(
    request: Request,
    access_token: str | None = Depends(get_optional_bearer_token),
) -> Principal | None:
    if access_token is None:
        return None
    return request.app.state.services.auth.principal_from_token(access_token)


def client_meta(request: Request) -> dict[str, str | None]:
    return {
        "user_agent": request.headers.get("user-agent"),
        "ip_address": request.client.host if request.client else None,
    }
