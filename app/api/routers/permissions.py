from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request, Response, status

from app.api.deps import (
    get_authorization_service,
    get_current_claims,
    handle_governance_error,
    require_active_tenant,
    require_perm,
)
from app.domain.errors import GovernanceError
from app.domain.models import (
    AuthorizationCheckRead,
    AuthorizationCheckRequest,
    EffectivePermissionsRead,
    PermissionCreate,
    PermissionRead,
    PermissionScope,
    RoleCreate,
    RolePermissionRead,
    RolePermissionWrite,
    RoleRead,
    UserPermissionRead,
    UserPermissionWrite,
)
from app.domain.permissions import (
    PERM_CREATE_PERMISSION,
    PERM_CREATE_ROLE,
    PERM_MANAGE_USERS,
    PERM_UPDATE_ROLE,
    PERM_VIEW_PERMISSION,
    PERM_VIEW_ROLE,
    PERM_VIEW_USERS,
    PermissionScopeKind,
)
from app.infra.audit import set_audit_context
from app.services.authorization_service import AuthorizationService, DelegationGuard, tenant_scope
from app.services.identity_service import IdentityService
from app.services.permission_service import PermissionService

router = APIRouter()


def get_permission_service() -> PermissionService:
    return PermissionService()


def get_delegation_guard() -> DelegationGuard:
    return DelegationGuard()


def get_identity_service() -> IdentityService:
    return IdentityService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[PermissionService, Depends(get_permission_service)]
Guard = Annotated[DelegationGuard, Depends(get_delegation_guard)]
Resolver = Annotated[AuthorizationService, Depends(get_authorization_service)]
Identity = Annotated[IdentityService, Depends(get_identity_service)]


def _scope_for(tenant_id: str | None, kind: PermissionScopeKind, scope_id: str | None) -> PermissionScope:
    if kind == PermissionScopeKind.BRANCH and scope_id:
        return PermissionScope(kind=kind, scope_id=scope_id)
    return tenant_scope(scope_id or tenant_id)


@router.post(
    "",
    response_model=PermissionRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_CREATE_PERMISSION))],
)
def create_permission(payload: PermissionCreate, request: Request, claims: Claims, service: Service) -> PermissionRead:
    try:
        permission = service.create_permission(claims["sub"], payload)
    except GovernanceError as exc:
        handle_governance_error(exc)
    set_audit_context(request, action="permissions.create", detail={"what": {"name": permission.name}})
    return PermissionRead.model_validate(permission)


@router.get("", response_model=list[PermissionRead], dependencies=[Depends(require_perm(PERM_VIEW_PERMISSION))])
def list_permissions(service: Service) -> list[PermissionRead]:
    return [PermissionRead.model_validate(item) for item in service.list_permissions()]


@router.post(
    "/roles",
    response_model=RoleRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_CREATE_ROLE)), Depends(require_active_tenant)],
)
def create_role(payload: RoleCreate, request: Request, claims: Claims, service: Service) -> RoleRead:
    try:
        role = service.create_role(claims["sub"], payload)
    except GovernanceError as exc:
        handle_governance_error(exc)
    set_audit_context(request, action="permissions.role.create", detail={"what": {"role_id": role.id}})
    return RoleRead.model_validate(role)


@router.get("/roles", response_model=list[RoleRead], dependencies=[Depends(require_perm(PERM_VIEW_ROLE))])
def list_roles(claims: Claims, service: Service) -> list[RoleRead]:
    return [RoleRead.model_validate(item) for item in service.list_roles(claims.get("tenant_id"))]


@router.get("/roles/{role_id}", response_model=RoleRead, dependencies=[Depends(require_perm(PERM_VIEW_ROLE))])
def get_role(role_id: str, claims: Claims, service: Service) -> RoleRead:
    try:
        return RoleRead.model_validate(service.get_role(claims.get("tenant_id"), role_id))
    except GovernanceError as exc:
        handle_governance_error(exc)


@router.get(
    "/roles/{role_id}/permissions",
    response_model=list[RolePermissionRead],
    dependencies=[Depends(require_perm(PERM_VIEW_ROLE))],
)
def list_role_permissions(role_id: str, claims: Claims, service: Service) -> list[RolePermissionRead]:
    try:
        return service.list_role_permissions(claims.get("tenant_id"), role_id)
    except GovernanceError as exc:
        handle_governance_error(exc)


@router.put(
    "/roles/{role_id}/permissions",
    response_model=RolePermissionRead,
    dependencies=[Depends(require_perm(PERM_UPDATE_ROLE)), Depends(require_active_tenant)],
)
def set_role_permission(
    role_id: str,
    payload: RolePermissionWrite,
    request: Request,
    claims: Claims,
    guard: Guard,
) -> RolePermissionRead:
    try:
        row = guard.set_role_permission(claims["sub"], role_id, payload)
    except GovernanceError as exc:
        handle_governance_error(exc)
    set_audit_context(
        request,
        action="permissions.role.grant",
        detail={"what": {"role_id": role_id, "permission": payload.permission_name, "granted": payload.granted}},
    )
    return RolePermissionRead(
        role_id=row.role_id,
        permission_name=payload.permission_name,
        granted=row.granted,
        granted_by=row.granted_by,
    )


@router.delete(
    "/roles/{role_id}/permissions/{permission_name}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_UPDATE_ROLE)), Depends(require_active_tenant)],
)
def revoke_role_permission(
    role_id: str,
    permission_name: str,
    request: Request,
    claims: Claims,
    guard: Guard,
) -> Response:
    try:
        guard.revoke_role_permission(claims["sub"], role_id, permission_name)
    except GovernanceError as exc:
        handle_governance_error(exc)
    set_audit_context(
        request,
        action="permissions.role.revoke",
        detail={"what": {"role_id": role_id, "permission": permission_name}},
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/users/{user_id}/overrides",
    response_model=list[UserPermissionRead],
    dependencies=[Depends(require_perm(PERM_VIEW_USERS))],
)
def list_user_overrides(user_id: str, claims: Claims, guard: Guard, identity: Identity) -> list[UserPermissionRead]:
    try:
        identity.get_user(claims.get("tenant_id"), user_id)
    except GovernanceError as exc:
        handle_governance_error(exc)
    return [
        UserPermissionRead(
            id=row.id,
            user_id=row.user_id,
            permission_name=name,
            scope=row.scope,
            scope_id=row.scope_id,
            granted=row.granted,
            granted_by=row.granted_by,
            updated_at=row.updated_at,
        )
        for row, name in guard.list_user_permissions(user_id)
    ]


@router.put(
    "/users/{user_id}/overrides",
    response_model=UserPermissionRead,
    dependencies=[Depends(require_perm(PERM_MANAGE_USERS)), Depends(require_active_tenant)],
)
def set_user_override(
    user_id: str,
    payload: UserPermissionWrite,
    request: Request,
    claims: Claims,
    guard: Guard,
) -> UserPermissionRead:
    try:
        row = guard.set_user_permission(claims["sub"], user_id, payload)
    except GovernanceError as exc:
        handle_governance_error(exc)
    set_audit_context(
        request,
        action="permissions.user.grant",
        detail={"what": {"user_id": user_id, "permission": payload.permission_name, "granted": payload.granted}},
    )
    return UserPermissionRead(
        id=row.id,
        user_id=row.user_id,
        permission_name=payload.permission_name,
        scope=row.scope,
        scope_id=row.scope_id,
        granted=row.granted,
        granted_by=row.granted_by,
        updated_at=row.updated_at,
    )


@router.delete(
    "/users/{user_id}/overrides/{permission_name}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_MANAGE_USERS)), Depends(require_active_tenant)],
)
def revoke_user_override(
    user_id: str,
    permission_name: str,
    request: Request,
    claims: Claims,
    guard: Guard,
    scope: PermissionScopeKind = PermissionScopeKind.TENANT,
    scope_id: str | None = None,
) -> Response:
    try:
        guard.revoke_user_permission(claims["sub"], user_id, permission_name, scope, scope_id)
    except GovernanceError as exc:
        handle_governance_error(exc)
    set_audit_context(
        request,
        action="permissions.user.revoke",
        detail={"what": {"user_id": user_id, "permission": permission_name, "scope": str(scope)}},
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/check",
    response_model=AuthorizationCheckRead,
    dependencies=[Depends(require_perm(PERM_VIEW_PERMISSION))],
)
def check_permission(
    payload: AuthorizationCheckRequest,
    claims: Claims,
    resolver: Resolver,
    identity: Identity,
) -> AuthorizationCheckRead:
    try:
        user = identity.get_user(claims.get("tenant_id"), payload.user_id)
    except GovernanceError as exc:
        handle_governance_error(exc)
    scope = _scope_for(user.tenant_id, payload.scope, payload.scope_id)
    granted = resolver.resolve_permission(payload.user_id, payload.permission_name, scope)
    return AuthorizationCheckRead(
        user_id=payload.user_id,
        permission_name=payload.permission_name,
        scope=scope.kind,
        scope_id=scope.scope_id,
        granted=granted,
    )


@router.get(
    "/users/{user_id}/effective",
    response_model=EffectivePermissionsRead,
    dependencies=[Depends(require_perm(PERM_VIEW_PERMISSION))],
)
def effective_permissions(
    user_id: str,
    claims: Claims,
    resolver: Resolver,
    identity: Identity,
    scope: PermissionScopeKind = PermissionScopeKind.TENANT,
    scope_id: str | None = None,
) -> EffectivePermissionsRead:
    try:
        user = identity.get_user(claims.get("tenant_id"), user_id)
        resolved_scope = _scope_for(user.tenant_id, scope, scope_id)
        names = resolver.effective_permissions(user_id, resolved_scope)
    except GovernanceError as exc:
        handle_governance_error(exc)
    return EffectivePermissionsRead(
        user_id=user_id,
        scope=resolved_scope.kind,
        scope_id=resolved_scope.scope_id,
        permissions=names,
    )


@router.get(
    "/{permission_id}",
    response_model=PermissionRead,
    dependencies=[Depends(require_perm(PERM_VIEW_PERMISSION))],
)
def get_permission(permission_id: str, service: Service) -> PermissionRead:
    try:
        return PermissionRead.model_validate(service.get_permission(permission_id))
    except GovernanceError as exc:
        handle_governance_error(exc)
