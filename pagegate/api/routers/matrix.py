from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from pagegate.api.deps import PAGE_ACCESS_ADMIN_PATH, require_page_access
from pagegate.domain.models import MatrixCommitRead, MatrixCommitRequest, MatrixRead
from pagegate.infra.audit import set_audit_context
from pagegate.infra.rule_store import FetchError
from pagegate.services.identity_service import RoleLookupError
from pagegate.services.matrix_service import MatrixService, ValidationError

router = APIRouter()


def get_matrix_service() -> MatrixService:
    return MatrixService()


AdminClaims = Annotated[dict[str, Any], Depends(require_page_access(PAGE_ACCESS_ADMIN_PATH))]
Service = Annotated[MatrixService, Depends(get_matrix_service)]


def _handle_matrix_error(exc: Exception) -> None:
    if isinstance(exc, ValidationError):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(exc), "invalid_page_keys": exc.invalid_keys},
        ) from exc
    if isinstance(exc, (FetchError, RoleLookupError)):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    raise exc


@router.get("", response_model=MatrixRead)
def get_matrix(
    claims: AdminClaims,
    service: Service,
    search: Annotated[str | None, Query(max_length=200)] = None,
) -> MatrixRead:
    try:
        return service.load_matrix(search)
    except (FetchError, RoleLookupError) as exc:
        _handle_matrix_error(exc)
        raise


@router.post("/commit", response_model=MatrixCommitRead)
def commit_matrix(
    payload: MatrixCommitRequest,
    request: Request,
    claims: AdminClaims,
    service: Service,
) -> MatrixCommitRead:
    set_audit_context(
        request,
        action="page_access.commit",
        resource="page_access_rules",
        detail={"what": {"changes": len(payload.changes)}},
    )
    try:
        result = service.commit(payload.changes, actor_id=claims["sub"])
    except (ValidationError, FetchError) as exc:
        _handle_matrix_error(exc)
        raise
    set_audit_context(
        request,
        detail={
            "result": {
                "applied": result.applied,
                "operations": result.operations,
                "failed": len(result.errors),
            }
        },
    )
    return result
