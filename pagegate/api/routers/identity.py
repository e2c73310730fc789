from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from pagegate.api.deps import USER_ROLES_ADMIN_PATH, require_page_access
from pagegate.domain.models import (
    BootstrapAdminRequest,
    DevLoginRequest,
    RoleCreate,
    RoleRead,
    TokenResponse,
    UserCreate,
    UserRead,
    UserRoleLinkRead,
)
from pagegate.infra.audit import set_audit_context
from pagegate.infra.auth import create_access_token
from pagegate.infra.cell_mutex import CellBusyError
from pagegate.services.identity_service import (
    AuthError,
    ConflictError,
    IdentityService,
    NotFoundError,
    RoleLookupError,
)

router = APIRouter()


def get_identity_service() -> IdentityService:
    return IdentityService()


AdminClaims = Annotated[dict[str, Any], Depends(require_page_access(USER_ROLES_ADMIN_PATH))]
Service = Annotated[IdentityService, Depends(get_identity_service)]


def _handle_identity_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, (ConflictError, CellBusyError)):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, AuthError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    if isinstance(exc, RoleLookupError):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    raise exc


@router.post("/bootstrap-admin", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def bootstrap_admin(payload: BootstrapAdminRequest, service: Service) -> UserRead:
    try:
        user = service.bootstrap_admin(payload.username, payload.password)
        return UserRead.model_validate(user)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.post("/dev-login", response_model=TokenResponse)
def dev_login(payload: DevLoginRequest, service: Service) -> TokenResponse:
    try:
        user, role_ids = service.dev_login(payload.username, payload.password)
    except (NotFoundError, ConflictError, AuthError, RoleLookupError) as exc:
        _handle_identity_error(exc)
        raise
    token = create_access_token(user_id=user.id)
    return TokenResponse(access_token=token, role_ids=role_ids)


@router.post("/users", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(payload: UserCreate, claims: AdminClaims, service: Service) -> UserRead:
    try:
        user = service.create_user(payload)
        return UserRead.model_validate(user)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.get("/users", response_model=list[UserRead])
def list_users(claims: AdminClaims, service: Service) -> list[UserRead]:
    return [UserRead.model_validate(item) for item in service.list_users()]


@router.get("/users/search", response_model=list[UserRead])
def search_users(
    claims: AdminClaims,
    service: Service,
    q: Annotated[str, Query(max_length=200)] = "",
) -> list[UserRead]:
    return [UserRead.model_validate(item) for item in service.search_users(q)]


@router.get("/users/{user_id}", response_model=UserRead)
def get_user(user_id: str, claims: AdminClaims, service: Service) -> UserRead:
    try:
        return UserRead.model_validate(service.get_user(user_id))
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.post("/roles", response_model=RoleRead, status_code=status.HTTP_201_CREATED)
def create_role(payload: RoleCreate, claims: AdminClaims, service: Service) -> RoleRead:
    return RoleRead.model_validate(service.create_role(payload))


@router.get("/roles", response_model=list[RoleRead])
def list_roles(
    claims: AdminClaims,
    service: Service,
    q: Annotated[str | None, Query(max_length=200)] = None,
) -> list[RoleRead]:
    try:
        roles = service.search_roles(q)
    except RoleLookupError as exc:
        _handle_identity_error(exc)
        raise
    return [RoleRead.model_validate(item) for item in roles]


@router.get("/users/{user_id}/roles", response_model=list[RoleRead])
def list_user_roles(user_id: str, claims: AdminClaims, service: Service) -> list[RoleRead]:
    try:
        service.get_user(user_id)
        roles = service.list_roles_for_principal(user_id)
    except (NotFoundError, RoleLookupError) as exc:
        _handle_identity_error(exc)
        raise
    return [RoleRead.model_validate(item) for item in roles]


def _set_user_role(
    request: Request,
    service: IdentityService,
    claims: dict[str, Any],
    *,
    user_id: str,
    role_id: str,
    assigned: bool,
) -> UserRoleLinkRead:
    set_audit_context(
        request,
        action="user_role.bind" if assigned else "user_role.unbind",
        resource=f"user:{user_id}",
        detail={"what": {"target": {"user_id": user_id, "role_id": role_id}}},
    )
    try:
        if assigned:
            changed = service.bind_user_role(user_id, role_id, actor_id=claims["sub"])
        else:
            changed = service.unbind_user_role(user_id, role_id, actor_id=claims["sub"])
    except (NotFoundError, ConflictError, CellBusyError) as exc:
        _handle_identity_error(exc)
        raise
    return UserRoleLinkRead(user_id=user_id, role_id=role_id, assigned=assigned, changed=changed)


@router.put("/users/{user_id}/roles/{role_id}", response_model=UserRoleLinkRead)
def bind_user_role(
    user_id: str,
    role_id: str,
    request: Request,
    claims: AdminClaims,
    service: Service,
) -> UserRoleLinkRead:
    return _set_user_role(request, service, claims, user_id=user_id, role_id=role_id, assigned=True)


@router.delete("/users/{user_id}/roles/{role_id}", response_model=UserRoleLinkRead)
def unbind_user_role(
    user_id: str,
    role_id: str,
    request: Request,
    claims: AdminClaims,
    service: Service,
) -> UserRoleLinkRead:
    return _set_user_role(request, service, claims, user_id=user_id, role_id=role_id, assigned=False)
