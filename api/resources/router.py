"""
FastAPI router factory for resource kinds.

`build_router(kind)` mounts the same CRUD surface for every declared kind:

    GET    /{kind}            list (flat query parameters)
    PATCH  /{kind}            list (JSON body with structured filters)
    POST   /{kind}            create
    GET    /{kind}/{id}       read
    PUT    /{kind}/{id}       partial update
    DELETE /{kind}/{id}       delete
    GET    /{kind}/{id}/audit audit history (elevated roles)
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Request

from auth import dependencies as auth_dependencies
from auth.principal import Principal
from query.request import QuerySpec

from . import schemas
from .kinds import ResourceKind
from .service import ResourceService


def _query_params(request: Request) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for key, value in request.query_params.multi_items():
        if key in params:
            existing = params[key]
            params[key] = [*existing, value] if isinstance(existing, list) else [existing, value]
        else:
            params[key] = value
    return params


def build_router(kind: ResourceKind) -> APIRouter:
    router = APIRouter(prefix=f"/{kind.name}", tags=[kind.name])
    field_names = tuple(kind.filter_fields)

    def _service(request: Request) -> ResourceService:
        return request.app.state.services.resources[kind.name]

    @router.get("")
    async def list_resources(
        request: Request,
        current: Principal = Depends(auth_dependencies.get_current_principal),
    ) -> schemas.PageResponse:
        spec = QuerySpec.from_params(_query_params(request), fields=field_names)
        page = await _service(request).list(current, spec)
        return schemas.PageResponse.from_page(page)

    @router.patch("")
    async def query_resources(
        request: Request,
        body: schemas.ListRequest,
        current: Principal = Depends(auth_dependencies.get_current_principal),
    ) -> schemas.PageResponse:
        spec = QuerySpec.from_params(body.to_params(), fields=field_names)
        page = await _service(request).list(current, spec)
        return schemas.PageResponse.from_page(page)

    @router.post("", status_code=201)
    async def create_resource(
        request: Request,
        payload: dict[str, Any] = Body(...),
        current: Principal = Depends(auth_dependencies.get_current_principal),
    ) -> schemas.ResourceResponse:
        resource = await _service(request).create(current, payload)
        return schemas.ResourceResponse.from_resource(resource)

    @router.get("/{resource_id}")
    async def get_resource(
        resource_id: str,
        request: Request,
        current: Principal = Depends(auth_dependencies.get_current_principal),
    ) -> schemas.ResourceResponse:
        resource = await _service(request).get(current, resource_id)
        return schemas.ResourceResponse.from_resource(resource)

    @router.put("/{resource_id}")
    async def update_resource(
        resource_id: str,
        request: Request,
        partial: dict[str, Any] = Body(...),
        current: Principal = Depends(auth_dependencies.get_current_principal),
    ) -> schemas.ResourceResponse:
        resource = await _service(request).update(current, resource_id, partial)
        return schemas.ResourceResponse.from_resource(resource)

    @router.delete("/{resource_id}")
    async def delete_resource(
        resource_id: str,
        request: Request,
        current: Principal = Depends(auth_dependencies.get_current_principal),
    ) -> dict:
        await _service(request).delete(current, resource_id)
        return {"ok": True, "id": resource_id}

    @router.get("/{resource_id}/audit")
    async def resource_audit(
        resource_id: str,
        request: Request,
        current: Principal = Depends(auth_dependencies.get_current_principal),
    ) -> dict:
        entries = await _service(request).history(current, resource_id)
        return {
            "entries": [schemas.AuditEntryResponse.from_entry(e) for e in entries],
            "count": len(entries),
        }

    return router
