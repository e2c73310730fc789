from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from pagegate.domain.models import AccessReason
from pagegate.infra.auth import decode_access_token
from pagegate.services.access_service import AccessService, get_access_service

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/identity/dev-login")

PAGE_ACCESS_ADMIN_PATH = "/super-admin/page-access"
USER_ROLES_ADMIN_PATH = "/super-admin/user-roles"


def get_current_claims(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> dict[str, Any]:
    try:
        claims = decode_access_token(token)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc
    request.state.claims = claims
    return claims


def require_page_access(path: str) -> Callable[..., dict[str, Any]]:
    def _checker(
        claims: Annotated[dict[str, Any], Depends(get_current_claims)],
        access: Annotated[AccessService, Depends(get_access_service)],
    ) -> dict[str, Any]:
        decision = access.check(claims["sub"], path)
        if decision.allowed:
            return claims
        if decision.reason == AccessReason.FETCH_ERROR:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"Could not determine access to {decision.path}: {decision.fetch_error}",
            )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"No access to page: {decision.path}",
        )

    return _checker
