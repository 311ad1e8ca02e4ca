from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request, status

from app.api.deps import (
    get_current_claims,
    handle_governance_error,
    require_active_tenant,
    require_perm,
    require_tenant,
)
from app.domain.errors import GovernanceError
from app.domain.models import (
    BootstrapPlatformRequest,
    DevLoginRequest,
    TenantRead,
    TenantSignupRequest,
    TokenResponse,
    UserCreate,
    UserRead,
    UserRoleAssignRequest,
)
from app.domain.permissions import PERM_MANAGE_USERS, PERM_VIEW_USERS
from app.infra.audit import set_audit_context
from app.infra.auth import create_access_token
from app.services.identity_service import IdentityService
from app.services.permission_service import PermissionService

router = APIRouter()


def get_identity_service() -> IdentityService:
    return IdentityService()


def get_permission_service() -> PermissionService:
    return PermissionService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[IdentityService, Depends(get_identity_service)]
Registry = Annotated[PermissionService, Depends(get_permission_service)]


@router.post("/bootstrap", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def bootstrap_platform(payload: BootstrapPlatformRequest, request: Request, registry: Registry) -> UserRead:
    try:
        admin = registry.bootstrap_platform(payload)
    except GovernanceError as exc:
        handle_governance_error(exc)
    set_audit_context(request, action="governance.bootstrap", detail={"what": {"user_id": admin.id}})
    return UserRead.model_validate(admin)


@router.post("/signup", response_model=TenantRead, status_code=status.HTTP_201_CREATED)
def signup_tenant(payload: TenantSignupRequest, request: Request, service: Service) -> TenantRead:
    try:
        tenant, admin = service.signup_tenant(payload)
    except GovernanceError as exc:
        handle_governance_error(exc)
    set_audit_context(
        request,
        action="identity.tenant.signup",
        detail={"what": {"tenant_id": tenant.id, "admin_id": admin.id}},
    )
    return TenantRead.model_validate(tenant)


@router.post("/dev-login", response_model=TokenResponse)
def dev_login(payload: DevLoginRequest, service: Service) -> TokenResponse:
    try:
        user = service.dev_login(payload.tenant_id, payload.username, payload.password)
    except GovernanceError as exc:
        handle_governance_error(exc)
    token = create_access_token(user_id=user.id, tenant_id=user.tenant_id)
    return TokenResponse(access_token=token)


@router.get("/tenants/me", response_model=TenantRead)
def get_my_tenant(claims: Claims, service: Service) -> TenantRead:
    tenant_id = require_tenant(claims)
    try:
        return TenantRead.model_validate(service.get_tenant(tenant_id))
    except GovernanceError as exc:
        handle_governance_error(exc)


@router.post(
    "/users",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_MANAGE_USERS)), Depends(require_active_tenant)],
)
def create_user(payload: UserCreate, request: Request, claims: Claims, service: Service) -> UserRead:
    tenant_id = require_tenant(claims)
    try:
        user = service.create_user(claims["sub"], tenant_id, payload)
    except GovernanceError as exc:
        handle_governance_error(exc)
    set_audit_context(request, action="identity.user.create", detail={"what": {"user_id": user.id}})
    return UserRead.model_validate(user)


@router.get("/users", response_model=list[UserRead], dependencies=[Depends(require_perm(PERM_VIEW_USERS))])
def list_users(claims: Claims, service: Service) -> list[UserRead]:
    tenant_id = require_tenant(claims)
    return [UserRead.model_validate(item) for item in service.list_users(tenant_id)]


@router.get("/users/{user_id}", response_model=UserRead, dependencies=[Depends(require_perm(PERM_VIEW_USERS))])
def get_user(user_id: str, claims: Claims, service: Service) -> UserRead:
    try:
        return UserRead.model_validate(service.get_user(claims.get("tenant_id"), user_id))
    except GovernanceError as exc:
        handle_governance_error(exc)


@router.put(
    "/users/{user_id}/role",
    response_model=UserRead,
    dependencies=[Depends(require_perm(PERM_MANAGE_USERS)), Depends(require_active_tenant)],
)
def assign_user_role(
    user_id: str,
    payload: UserRoleAssignRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> UserRead:
    tenant_id = require_tenant(claims)
    try:
        user = service.assign_role(claims["sub"], tenant_id, user_id, payload.role_id)
    except GovernanceError as exc:
        handle_governance_error(exc)
    set_audit_context(
        request,
        action="identity.user.assign_role",
        detail={"what": {"user_id": user.id, "role_id": payload.role_id}},
    )
    return UserRead.model_validate(user)
