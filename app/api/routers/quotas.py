from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request

from app.api.deps import get_current_claims, handle_governance_error, require_perm, require_tenant
from app.domain.errors import GovernanceError
from app.domain.models import QuotaCheckRead, QuotaCheckRequest, TenantUsageRead, UsageRecordRequest
from app.domain.permissions import PERM_MANAGE_PLANS, PERM_MANAGE_SUBSCRIPTION, PERM_VIEW_QUOTA
from app.infra.audit import set_audit_context
from app.services.quota_service import QuotaService

router = APIRouter()


def get_quota_service() -> QuotaService:
    return QuotaService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[QuotaService, Depends(get_quota_service)]


@router.post("/check", response_model=QuotaCheckRead, dependencies=[Depends(require_perm(PERM_VIEW_QUOTA))])
def check_quota(payload: QuotaCheckRequest, claims: Claims, service: Service) -> QuotaCheckRead:
    tenant_id = require_tenant(claims)
    try:
        return service.check_quota(tenant_id, payload.quota_key, payload.delta)
    except GovernanceError as exc:
        handle_governance_error(exc)


@router.get("/usage", response_model=list[TenantUsageRead], dependencies=[Depends(require_perm(PERM_VIEW_QUOTA))])
def get_usage(claims: Claims, service: Service) -> list[TenantUsageRead]:
    tenant_id = require_tenant(claims)
    return [TenantUsageRead.model_validate(item) for item in service.get_usage(tenant_id)]


@router.post(
    "/usage/recount",
    response_model=list[TenantUsageRead],
    dependencies=[Depends(require_perm(PERM_MANAGE_SUBSCRIPTION))],
)
def recount_usage(request: Request, claims: Claims, service: Service) -> list[TenantUsageRead]:
    tenant_id = require_tenant(claims)
    try:
        rows = service.recount_usage(tenant_id)
    except GovernanceError as exc:
        handle_governance_error(exc)
    set_audit_context(request, action="quotas.usage.recount", detail={"what": {"tenant_id": tenant_id}})
    return [TenantUsageRead.model_validate(item) for item in rows]


@router.post(
    "/tenants/{tenant_id}/usage",
    response_model=TenantUsageRead,
    dependencies=[Depends(require_perm(PERM_MANAGE_PLANS))],
)
def record_usage(tenant_id: str, payload: UsageRecordRequest, request: Request, service: Service) -> TenantUsageRead:
    try:
        row = service.record_usage(tenant_id, payload.quota_key, payload.delta)
    except GovernanceError as exc:
        handle_governance_error(exc)
    set_audit_context(
        request,
        action="quotas.usage.record",
        detail={"what": {"tenant_id": tenant_id, "quota_key": payload.quota_key, "delta": payload.delta}},
    )
    return TenantUsageRead.model_validate(row)
