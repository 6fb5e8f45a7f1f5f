from __future__ import annotations

import logging
from collections.abc import Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic_core import to_jsonable_python

from access.guard import AccessGuard
from audit.recorder import AUDIT_TABLE, AuditRecorder
from auth import repository as auth_repository
from auth import router as auth_router
from auth.service import AuthService
from auth.tokens import TokenIssuer
from core.clock import Clock, utc_now
from core.config import Settings
from core.db import PostgresStorage
from core.errors import ServiceError, Unauthenticated
from core.storage import Storage
from resources.catalog import DEFAULT_KINDS
from resources.kinds import ResourceKind
from resources.router import build_router
from resources.service import ResourceService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    storage: Storage
    auth: AuthService
    guard: AccessGuard
    audit: AuditRecorder
    resources: dict[str, ResourceService] = field(default_factory=dict)


def build_services(
    settings: Settings,
    storage: Storage,
    kinds: Iterable[ResourceKind],
    clock: Clock = utc_now,
) -> Services:
    guard = AccessGuard(settings.elevated_roles)
    audit = AuditRecorder(storage, clock)
    issuer = TokenIssuer(storage, settings, clock)
    return Services(
        storage=storage,
        auth=AuthService(storage, issuer, guard, audit, settings, clock),
        guard=guard,
        audit=audit,
        resources={
            kind.name: ResourceService(storage, kind, guard, audit, settings, clock)
            for kind in kinds
        },
    )


async def service_error_handler(_: Request, exc: ServiceError) -> JSONResponse:
    content = {"detail": exc.message, "code": exc.code}
    if exc.details:
        content["context"] = to_jsonable_python(exc.details, fallback=str)
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthenticated) else None
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


def create_app(
    settings: Settings | None = None,
    storage: Storage | None = None,
    kinds: Iterable[ResourceKind] | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    storage = storage or PostgresStorage(settings.database_url or None)
    kinds = tuple(DEFAULT_KINDS if kinds is None else kinds)
    services = build_services(settings, storage, kinds, clock or utc_now)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        # Open storage once per process and make sure every table exists.
        await storage.open()
        try:
            await storage.prepare(
                [*auth_repository.TABLES, AUDIT_TABLE, *(kind.table_spec() for kind in kinds)]
            )
            logger.info("storage_ready kinds=%s", ",".join(kind.name for kind in kinds))
            yield
        finally:
            await storage.close()

    app = FastAPI(lifespan=lifespan)
    app.state.services = services
    app.add_exception_handler(ServiceError, service_error_handler)

    # Allow local frontend dev server to call this API from the browser.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth_router.router, tags=["auth"])
    for kind in kinds:
        app.include_router(build_router(kind))

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/")
    def root() -> dict:
        return {"message": "tenant resource api", "kinds": [kind.name for kind in kinds]}

    return app


app = create_app()
