from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query

from pagegate.api.deps import get_current_claims
from pagegate.domain.models import (
    AccessDecisionRead,
    AccessProfileRead,
    NavItemRead,
    NavSectionRead,
    RoleRead,
)
from pagegate.services.access_service import AccessService, get_access_service

router = APIRouter()

Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[AccessService, Depends(get_access_service)]


@router.get("/check", response_model=AccessDecisionRead)
def check_access(
    claims: Claims,
    service: Service,
    path: Annotated[str, Query(max_length=500)],
) -> AccessDecisionRead:
    return service.check(claims["sub"], path)


@router.get("/navigation", response_model=list[NavSectionRead])
def navigation(claims: Claims, service: Service) -> list[NavSectionRead]:
    return [
        NavSectionRead(
            id=section.id,
            label=section.display_label,
            items=[NavItemRead(page_key=item.page_key, label=item.label) for item in section.items],
        )
        for section in service.navigation(claims["sub"])
    ]


@router.get("/me", response_model=AccessProfileRead)
def my_access(claims: Claims, service: Service) -> AccessProfileRead:
    principal = service.load_principal(claims["sub"])
    has_wildcard, paths = service.accessible_paths(principal)
    return AccessProfileRead(
        user_id=principal.user_id,
        roles=[RoleRead.model_validate(role) for role in principal.roles],
        has_wildcard=has_wildcard,
        allowed_paths=paths,
        fetch_error=principal.fetch_error,
    )
