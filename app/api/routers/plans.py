from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, status

from app.api.deps import handle_governance_error, require_perm
from app.domain.errors import GovernanceError
from app.domain.models import PlanCreate, PlanLimitRead, PlanLimitWrite, PlanRead
from app.domain.permissions import PERM_MANAGE_PLANS, PERM_VIEW_PLANS
from app.infra.audit import set_audit_context
from app.services.plan_catalog_service import PlanCatalogService

router = APIRouter()


def get_plan_catalog_service() -> PlanCatalogService:
    return PlanCatalogService()


Service = Annotated[PlanCatalogService, Depends(get_plan_catalog_service)]


@router.post(
    "",
    response_model=PlanRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_MANAGE_PLANS))],
)
def create_plan(payload: PlanCreate, request: Request, service: Service) -> PlanRead:
    try:
        plan = service.create_plan(payload)
    except GovernanceError as exc:
        handle_governance_error(exc)
    set_audit_context(request, action="plans.create", detail={"what": {"plan_id": plan.id, "name": plan.name}})
    return plan


@router.post(
    "/seed",
    response_model=list[PlanRead],
    dependencies=[Depends(require_perm(PERM_MANAGE_PLANS))],
)
def seed_default_plans(request: Request, service: Service) -> list[PlanRead]:
    plans = service.seed_default_plans()
    set_audit_context(request, action="plans.seed", detail={"what": {"plans": [item.name for item in plans]}})
    return plans


@router.get("", response_model=list[PlanRead], dependencies=[Depends(require_perm(PERM_VIEW_PLANS))])
def list_plans(service: Service, include_inactive: bool = False) -> list[PlanRead]:
    return service.list_plans(include_inactive=include_inactive)


@router.get("/{plan_id}", response_model=PlanRead, dependencies=[Depends(require_perm(PERM_VIEW_PLANS))])
def get_plan(plan_id: str, service: Service) -> PlanRead:
    try:
        return service.get_plan(plan_id)
    except GovernanceError as exc:
        handle_governance_error(exc)


@router.put(
    "/{plan_id}/limits",
    response_model=PlanLimitRead,
    dependencies=[Depends(require_perm(PERM_MANAGE_PLANS))],
)
def upsert_plan_limit(plan_id: str, payload: PlanLimitWrite, request: Request, service: Service) -> PlanLimitRead:
    try:
        limit = service.upsert_limit(plan_id, payload)
    except GovernanceError as exc:
        handle_governance_error(exc)
    set_audit_context(
        request,
        action="plans.limit.upsert",
        detail={"what": {"plan_id": plan_id, "key": limit.key, "value": limit.value}},
    )
    return limit
