"""
Auth API endpoints.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from . import dependencies, schemas
from .principal import Principal

router = APIRouter(prefix="/auth")


def _service(request: Request):
    return request.app.state.services.auth


@router.post("/register", status_code=201)
async def register(
    payload: schemas.RegisterRequest,
    request: Request,
    actor: Principal | None = Depends(dependencies.get_optional_principal),
) -> schemas.AuthResponse:
    return await _service(request).register(payload, actor=actor, **dependencies.client_meta(request))


@router.post("/login")
async def login(payload: schemas.LoginRequest, request: Request) -> schemas.AuthResponse:
    return await _service(request).login(payload, **dependencies.client_meta(request))


@router.post("/refresh")
async def refresh(payload: schemas.RefreshRequest, request: Request) -> schemas.TokenPairResponse:
    return await _service(request).refresh(payload, **dependencies.client_meta(request))


@router.post("/logout")
async def logout(
    payload: schemas.LogoutRequest,
    request: Request,
    current: Principal | None = Depends(dependencies.get_optional_principal),
) -> dict:
    return await _service(request).logout(payload, current=current)


@router.get("/me")
async def me(
    request: Request,
    current: Principal = Depends(dependencies.get_current_principal),
) -> schemas.PrincipalResponse:
    return await _service(request).me(current)


@router.put("/principals/{principal_id}/role")
async def change_role(
    principal_id: str,
    payload: schemas.RoleChangeRequest,
    request: Request,
    current: Principal = Depends(dependencies.get_current_principal),
) -> schemas.PrincipalResponse:
    return await _service(request).change_role(current, principal_id, payload.role)
