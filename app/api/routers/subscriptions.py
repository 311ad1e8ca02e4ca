from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.api.deps import get_current_claims, handle_governance_error, require_perm, require_tenant
from app.domain.errors import GovernanceError
from app.domain.models import SubscriptionCancelRequest, SubscriptionCreate, SubscriptionRead
from app.domain.permissions import PERM_MANAGE_SUBSCRIPTION, PERM_VIEW_SUBSCRIPTION
from app.infra.audit import set_audit_context
from app.services.subscription_service import SubscriptionService

router = APIRouter()


def get_subscription_service() -> SubscriptionService:
    return SubscriptionService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[SubscriptionService, Depends(get_subscription_service)]


@router.post(
    "",
    response_model=SubscriptionRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_MANAGE_SUBSCRIPTION))],
)
def create_subscription(
    payload: SubscriptionCreate,
    request: Request,
    claims: Claims,
    service: Service,
) -> SubscriptionRead:
    tenant_id = require_tenant(claims)
    try:
        row = service.create_subscription(tenant_id, claims["sub"], payload)
    except GovernanceError as exc:
        handle_governance_error(exc)
    set_audit_context(
        request,
        action="subscriptions.create",
        detail={"what": {"subscription_id": row.id, "plan_id": row.plan_id, "end_date": row.end_date.isoformat()}},
    )
    return SubscriptionRead.model_validate(row)


@router.get(
    "",
    response_model=list[SubscriptionRead],
    dependencies=[Depends(require_perm(PERM_VIEW_SUBSCRIPTION))],
)
def list_subscriptions(claims: Claims, service: Service) -> list[SubscriptionRead]:
    tenant_id = require_tenant(claims)
    return [SubscriptionRead.model_validate(item) for item in service.list_subscriptions(tenant_id)]


@router.get(
    "/current",
    response_model=SubscriptionRead,
    dependencies=[Depends(require_perm(PERM_VIEW_SUBSCRIPTION))],
)
def get_current_subscription(claims: Claims, service: Service) -> SubscriptionRead:
    tenant_id = require_tenant(claims)
    try:
        row = service.get_current_subscription(tenant_id)
    except GovernanceError as exc:
        handle_governance_error(exc)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no active subscription")
    return SubscriptionRead.model_validate(row)


@router.post(
    "/{subscription_id}/cancel",
    response_model=SubscriptionRead,
    dependencies=[Depends(require_perm(PERM_MANAGE_SUBSCRIPTION))],
)
def cancel_subscription(
    subscription_id: str,
    payload: SubscriptionCancelRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> SubscriptionRead:
    tenant_id = require_tenant(claims)
    try:
        row = service.cancel_subscription(tenant_id, subscription_id, claims["sub"], payload.reason)
    except GovernanceError as exc:
        handle_governance_error(exc)
    set_audit_context(
        request,
        action="subscriptions.cancel",
        detail={"what": {"subscription_id": row.id, "reason": payload.reason}},
    )
    return SubscriptionRead.model_validate(row)
