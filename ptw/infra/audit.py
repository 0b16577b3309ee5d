from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy.engine import Engine
from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.routing import Match

from ptw.domain.models import AuditLog

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
SKIPPED_PATHS = {"/healthz", "/readyz"}

logger = structlog.get_logger(__name__)


def write_audit_log(
    engine: Engine,
    *,
    actor_id: int | None,
    request_id: str | None,
    action: str,
    resource: str,
    method: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> None:
    log = AuditLog(
        actor_id=actor_id,
        request_id=request_id,
        action=action,
        resource=resource,
        method=method,
        status_code=status_code,
        detail=detail or {},
    )
    with Session(engine) as session:
        session.add(log)
        session.commit()


def _status_outcome(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in {401, 403, 404}:
        return "denied"
    if status_code >= 400:
        return "rejected"
    return "success"


def _route_template(request: Request) -> str:
    # scope["route"] lacks the include_router prefix on some FastAPI releases.
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", request.url.path)
    return request.url.path


class AuditMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        path = request.url.path
        method = request.method
        if path in SKIPPED_PATHS or method not in WRITE_METHODS:
            return response

        claims = getattr(request.state, "claims", {})
        actor_id = claims.get("id")
        route_path = _route_template(request)
        outcome = _status_outcome(response.status_code)
        detail: dict[str, Any] = {
            "route": route_path,
            "query": request.url.query,
            "client_ip": request.client.host if request.client is not None else None,
            "role": claims.get("role"),
            "outcome": outcome,
        }
        logger.info(
            "request_audited",
            method=method,
            path=path,
            status_code=response.status_code,
            actor_id=actor_id,
            outcome=outcome,
        )
        try:
            write_audit_log(
                request.app.state.engine,
                actor_id=actor_id,
                request_id=getattr(request.state, "request_id", None),
                action=f"{method}:{route_path}",
                resource=path,
                method=method,
                status_code=response.status_code,
                detail=detail,
            )
        except Exception:
            logger.exception("audit_write_failed", method=method, path=path)
        return response
