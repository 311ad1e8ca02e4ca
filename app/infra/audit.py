from __future__ import annotations

from typing import Any

from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.domain.models import AuditLog, now_utc
from app.infra.db import get_engine
from app.infra.logging import get_logger
from app.infra.tenant import clear_request_context

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
SKIPPED_PATHS = {"/healthz", "/readyz"}
AUDIT_CONTEXT_STATE_KEY = "_audit_context"
SYSTEM_TENANT = "system"

logger = get_logger(__name__)


def record_audit(
    session: Session,
    *,
    tenant_id: str | None,
    actor_id: str | None,
    action: str,
    resource: str,
    detail: dict[str, Any] | None = None,
) -> AuditLog:
    """Stage an audit row inside the caller's transaction.

    Governance writes use this so the audit entry commits or rolls back with
    the change it describes.
    """
    log = AuditLog(
        tenant_id=tenant_id or SYSTEM_TENANT,
        actor_id=actor_id,
        action=action,
        resource=resource,
        method="SERVICE",
        status_code=0,
        detail=detail or {},
    )
    session.add(log)
    return log


def write_audit_log(
    *,
    tenant_id: str,
    actor_id: str | None,
    action: str,
    resource: str,
    method: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> None:
    log = AuditLog(
        tenant_id=tenant_id,
        actor_id=actor_id,
        action=action,
        resource=resource,
        method=method,
        status_code=status_code,
        detail=detail or {},
    )
    with Session(get_engine()) as session:
        session.add(log)
        session.commit()


def _status_outcome(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in {401, 402, 403, 404}:
        return "denied"
    if status_code >= 400:
        return "rejected"
    return "success"


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    resource: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    context_raw = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {})
    context = dict(context_raw) if isinstance(context_raw, dict) else {}
    if action is not None:
        context["action"] = action
    if resource is not None:
        context["resource"] = resource
    if detail:
        merged = dict(context.get("detail") or {})
        merged.update(detail)
        context["detail"] = merged
    setattr(request.state, AUDIT_CONTEXT_STATE_KEY, context)


class AuditMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        path = request.url.path
        method = request.method
        if path in SKIPPED_PATHS or method not in WRITE_METHODS:
            return response

        context_raw = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {})
        context = context_raw if isinstance(context_raw, dict) else {}
        claims = getattr(request.state, "claims", {})
        tenant_id = claims.get("tenant_id") or SYSTEM_TENANT
        actor_id = claims.get("sub")
        action = context.get("action") or f"{method}:{path}"
        resource = context.get("resource") or path
        detail: dict[str, Any] = {
            "request_ts": now_utc().isoformat(),
            "client_ip": request.client.host if request.client is not None else None,
            "outcome": _status_outcome(response.status_code),
            **(context.get("detail") or {}),
        }
        try:
            write_audit_log(
                tenant_id=tenant_id,
                actor_id=actor_id,
                action=action,
                resource=resource,
                method=method,
                status_code=response.status_code,
                detail=detail,
            )
        except Exception:
            # Request audit is best effort; governance writes carry their own rows.
            logger.exception("audit_write_failed", action=action, path=path)
        return response
