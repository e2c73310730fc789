from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from pagegate.domain.models import AuditLog
from pagegate.infra.db import engine

logger = logging.getLogger(__name__)

WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
UNAUDITED_PATHS = frozenset({"/healthz", "/readyz"})
AUDIT_CONTEXT_STATE_KEY = "audit_context"


@dataclass
class AuditContext:
    action: str | None = None
    resource: str | None = None
    sections: dict[str, dict[str, Any]] = field(default_factory=dict)

    def merge(self, detail: dict[str, dict[str, Any]]) -> None:
        for section, values in detail.items():
            self.sections.setdefault(section, {}).update(values)


def _request_context(request: Request) -> AuditContext | None:
    context = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, None)
    return context if isinstance(context, AuditContext) else None


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    resource: str | None = None,
    detail: dict[str, dict[str, Any]] | None = None,
) -> None:
    """Names the audited action of the current request.

    ``detail`` is grouped in sections such as ``what`` and ``result``;
    repeated calls merge into the sections recorded so far.
    """
    context = _request_context(request)
    if context is None:
        context = AuditContext()
        setattr(request.state, AUDIT_CONTEXT_STATE_KEY, context)
    if action is not None:
        context.action = action
    if resource is not None:
        context.resource = resource
    if detail:
        context.merge(detail)


def outcome_for(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in {401, 403, 404}:
        return "denied"
    if status_code >= 400:
        return "rejected"
    return "success"


def write_audit_log(
    *,
    actor_id: str | None,
    action: str,
    resource: str,
    method: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> None:
    log = AuditLog(
        actor_id=actor_id,
        action=action,
        resource=resource,
        method=method,
        status_code=status_code,
        detail=detail or {},
    )
    with Session(engine) as session:
        session.add(log)
        session.commit()


class AuditMiddleware(BaseHTTPMiddleware):
    """Records every write request, and reads that named an audit action."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        path = request.url.path
        method = request.method
        context = _request_context(request)
        if path in UNAUDITED_PATHS or (context is None and method not in WRITE_METHODS):
            return response
        context = context or AuditContext()

        claims = getattr(request.state, "claims", {})
        actor_id = claims.get("sub")
        action = context.action or f"{method}:{path}"
        resource = context.resource or path
        record = AuditContext(
            sections={
                "who": {"actor_id": actor_id},
                "what": {"action": action, "resource": resource, "method": method, "path": path},
                "result": {"status_code": response.status_code, "outcome": outcome_for(response.status_code)},
            }
        )
        record.merge(context.sections)

        try:
            write_audit_log(
                actor_id=actor_id,
                action=action,
                resource=resource,
                method=method,
                status_code=response.status_code,
                detail=record.sections,
            )
        except SQLAlchemyError:
            logger.exception("failed to write audit log for %s %s", method, path)
        return response
