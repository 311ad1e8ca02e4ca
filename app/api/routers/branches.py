from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request, Response, status

from app.api.deps import (
    get_current_claims,
    handle_governance_error,
    require_active_tenant,
    require_perm,
    require_tenant,
)
from app.domain.errors import GovernanceError
from app.domain.models import BranchCreate, BranchRead
from app.domain.permissions import PERM_CREATE_BRANCH, PERM_MANAGE_BRANCHES, PERM_VIEW_BRANCH
from app.infra.audit import set_audit_context
from app.services.branch_service import BranchService

router = APIRouter()


def get_branch_service() -> BranchService:
    return BranchService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[BranchService, Depends(get_branch_service)]


@router.post(
    "",
    response_model=BranchRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_CREATE_BRANCH)), Depends(require_active_tenant)],
)
def create_branch(payload: BranchCreate, request: Request, claims: Claims, service: Service) -> BranchRead:
    tenant_id = require_tenant(claims)
    try:
        branch = service.create_branch(tenant_id, claims["sub"], payload)
    except GovernanceError as exc:
        handle_governance_error(exc)
    set_audit_context(request, action="branches.create", detail={"what": {"branch_id": branch.id}})
    return BranchRead.model_validate(branch)


@router.get("", response_model=list[BranchRead], dependencies=[Depends(require_perm(PERM_VIEW_BRANCH))])
def list_branches(claims: Claims, service: Service) -> list[BranchRead]:
    tenant_id = require_tenant(claims)
    return [BranchRead.model_validate(item) for item in service.list_branches(tenant_id)]


@router.get(
    "/{branch_id}",
    response_model=BranchRead,
    dependencies=[Depends(require_perm(PERM_VIEW_BRANCH, branch_param="branch_id"))],
)
def get_branch(branch_id: str, claims: Claims, service: Service) -> BranchRead:
    tenant_id = require_tenant(claims)
    try:
        return BranchRead.model_validate(service.get_branch(tenant_id, branch_id))
    except GovernanceError as exc:
        handle_governance_error(exc)


@router.delete(
    "/{branch_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[
        Depends(require_perm(PERM_MANAGE_BRANCHES, branch_param="branch_id")),
        Depends(require_active_tenant),
    ],
)
def delete_branch(branch_id: str, request: Request, claims: Claims, service: Service) -> Response:
    tenant_id = require_tenant(claims)
    try:
        service.delete_branch(tenant_id, claims["sub"], branch_id)
    except GovernanceError as exc:
        handle_governance_error(exc)
    set_audit_context(request, action="branches.delete", detail={"what": {"branch_id": branch_id}})
    return Response(status_code=status.HTTP_204_NO_CONTENT)
