from __future__ import annotations

import os
import traceback
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.engine import Engine
from starlette.exceptions import HTTPException as StarletteHTTPException

from ptw.api.routers import dashboard, evidence, identity, notifications, permits, reference
from ptw.domain.errors import PtwError
from ptw.infra.audit import AuditMiddleware
from ptw.infra.db import AUTO_CREATE_DB, build_engine, check_db_ready, create_schema
from ptw.infra.events import EventBus
from ptw.infra.logging import RequestIdMiddleware, setup_logging
from ptw.services.notification_service import InAppNotificationDispatcher
from ptw.services.storage_service import (
    URL_PREFIX,
    EvidenceStore,
    LocalEvidenceStore,
    build_default_store,
)

APP_ENV = os.getenv("APP_ENV", "development")

logger = structlog.get_logger(__name__)


def _error_response(status_code: int, message: str, error: Any, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, "error": jsonable_encoder(error)},
        headers=headers,
    )


async def handle_ptw_error(request: Request, exc: PtwError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, message=exc.message)
    return _error_response(exc.status_code, exc.message, {"code": exc.code, "detail": exc.detail})


async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return _error_response(
        exc.status_code,
        message,
        {"code": "http_error", "detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(400, "Invalid request", {"code": "validation_error", "detail": exc.errors()})


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", path=request.url.path)
    error: dict[str, Any] = {"code": "internal_error"}
    if APP_ENV != "production":
        error["detail"] = str(exc)
        error["traceback"] = traceback.format_exception(exc)
    return _error_response(500, "Internal server error", error)


def create_app(engine: Engine | None = None, store: EvidenceStore | None = None) -> FastAPI:
    setup_logging()
    engine = engine if engine is not None else build_engine()
    store = store if store is not None else build_default_store()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if AUTO_CREATE_DB:
            create_schema(engine)
        logger.info("app_started", env=APP_ENV)
        yield
        engine.dispose()
        logger.info("app_stopped")

    app = FastAPI(
        title="ptw-platform",
        description="Permit-to-work backend: permit workflow, approvals and site evidence.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.store = store
    app.state.event_bus = EventBus(engine)
    InAppNotificationDispatcher(engine).subscribe(app.state.event_bus)

    app.add_middleware(AuditMiddleware)
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(PtwError, handle_ptw_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    app.include_router(identity.router, prefix="/api/identity", tags=["identity"])
    app.include_router(reference.router, prefix="/api", tags=["reference"])
    app.include_router(permits.router, prefix="/api", tags=["permits"])
    app.include_router(evidence.router, prefix="/api", tags=["evidence"])
    app.include_router(notifications.router, prefix="/api/notifications", tags=["notifications"])
    app.include_router(dashboard.router, prefix="/api/dashboard", tags=["dashboard"])

    if isinstance(store, LocalEvidenceStore):
        app.mount(URL_PREFIX, StaticFiles(directory=str(store.root_dir)), name="uploads")

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/readyz")
    def readyz() -> dict[str, object]:
        db_ok = check_db_ready(engine)
        checks = {"db": "ok" if db_ok else "fail"}
        if not db_ok:
            raise HTTPException(
                status_code=503,
                detail={"status": "not_ready", "checks": checks},
            )
        return {"status": "ready", "checks": checks}

    return app


def run() -> None:
    uvicorn.run(
        "ptw.main:create_app",
        factory=True,
        host=os.getenv("APP_HOST", "0.0.0.0"),
        port=int(os.getenv("APP_PORT", "8000")),
    )


if __name__ == "__main__":
    run()
