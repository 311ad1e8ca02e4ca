from __future__ import annotations

import os

from sqlalchemy import func
from sqlmodel import Session, col, select

from app.domain.errors import NotFoundError, QuotaExceeded, SubscriptionRequired, ValidationError
from app.domain.models import (
    Branch,
    QuotaCheckRead,
    Role,
    Tenant,
    TenantUsage,
    UploadedFile,
    User,
    now_utc,
)
from app.domain.permissions import RoleTag
from app.domain.plan_limits import (
    KEY_MAX_BRANCHES,
    KEY_MAX_STAFF,
    KEY_STORAGE_QUOTA_GB,
    BoolLimit,
    TextLimit,
)
from app.domain.state_machine import TenantStatus
from app.infra.db import get_engine, run_atomic
from app.infra.logging import get_logger
from app.services.plan_catalog_service import PlanCatalogService
from app.services.subscription_service import ensure_single_active_subscription, lock_tenant

TRIAL_PLAN_NAME = os.getenv("TRIAL_PLAN_NAME", "Basic")
BYTES_PER_GB = 1024**3
# Float tolerance for fractional meters such as storage gigabytes.
_EPSILON = 1e-9

logger = get_logger(__name__)


def bytes_to_gb(size_bytes: int) -> float:
    return size_bytes / BYTES_PER_GB


class QuotaService:
    def __init__(self, plans: PlanCatalogService | None = None, trial_plan_name: str | None = None) -> None:
        self._plans = plans or PlanCatalogService()
        self._trial_plan_name = trial_plan_name or TRIAL_PLAN_NAME

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _governing_plan_id(self, session: Session, tenant: Tenant) -> str:
        subscription = ensure_single_active_subscription(session, tenant.id)
        if subscription is not None:
            return subscription.plan_id
        if tenant.status == TenantStatus.TRIAL:
            trial_plan = self._plans.get_plan_by_name(session, self._trial_plan_name)
            if trial_plan is not None:
                return trial_plan.id
        raise SubscriptionRequired(f"tenant {tenant.id} has no active subscription")

    def _used(self, session: Session, tenant_id: str, quota_key: str) -> float:
        usage = session.get(TenantUsage, (tenant_id, quota_key))
        return usage.used if usage is not None else 0.0

    def _evaluate(self, session: Session, tenant: Tenant, quota_key: str, delta: float) -> QuotaCheckRead:
        if delta < 0:
            raise ValidationError("requested delta must not be negative")
        plan_id = self._governing_plan_id(session, tenant)
        limit = self._plans.get_limit(session, plan_id, quota_key)

        if limit is None:
            return QuotaCheckRead(
                tenant_id=tenant.id,
                quota_key=quota_key,
                allowed=False,
                requested=delta,
                reason="limit_not_configured",
            )
        if isinstance(limit, TextLimit):
            raise ValidationError(f"{quota_key} is not a quota-bearing limit")
        if isinstance(limit, BoolLimit):
            return QuotaCheckRead(
                tenant_id=tenant.id,
                quota_key=quota_key,
                allowed=limit.value,
                limit=limit.value,
                requested=delta,
                reason="capability_enabled" if limit.value else "capability_disabled",
            )

        used = self._used(session, tenant.id, quota_key)
        projected = used + delta
        allowed = projected <= limit.value + _EPSILON
        return QuotaCheckRead(
            tenant_id=tenant.id,
            quota_key=quota_key,
            allowed=allowed,
            used=used,
            limit=limit.value,
            requested=delta,
            projected=projected,
            reason="within_limit" if allowed else "limit_exceeded",
        )

    def check_quota(self, tenant_id: str, quota_key: str, requested_delta: float = 1) -> QuotaCheckRead:
        with self._session() as session:
            tenant = session.get(Tenant, tenant_id)
            if tenant is None:
                raise NotFoundError("tenant not found")
            return self._evaluate(session, tenant, quota_key, requested_delta)

    def enforce_quota(self, session: Session, tenant_id: str, quota_key: str, delta: float) -> QuotaCheckRead:
        """Check the quota with the tenant row locked, raising when denied.

        Must run inside the transaction that performs the gated write so the
        lock is held until usage is recorded.
        """
        tenant = lock_tenant(session, tenant_id)
        result = self._evaluate(session, tenant, quota_key, delta)
        if not result.allowed:
            logger.warning(
                "quota_denied",
                tenant_id=tenant_id,
                quota_key=quota_key,
                used=result.used,
                limit=result.limit,
                requested=delta,
                reason=result.reason,
            )
            raise QuotaExceeded(
                f"{quota_key} quota exceeded ({result.reason})",
                quota_key=quota_key,
                used=result.used,
                limit=result.limit,
            )
        return result

    def _apply_usage(self, session: Session, tenant_id: str, quota_key: str, delta: float) -> TenantUsage:
        usage = session.get(TenantUsage, (tenant_id, quota_key))
        if usage is None:
            usage = TenantUsage(tenant_id=tenant_id, quota_key=quota_key, used=0)
        usage.used = max(0.0, usage.used + delta)
        usage.updated_at = now_utc()
        session.add(usage)
        session.flush()
        return usage

    def record_usage(
        self,
        tenant_id: str,
        quota_key: str,
        delta: float,
        *,
        session: Session | None = None,
    ) -> TenantUsage:
        if session is not None:
            return self._apply_usage(session, tenant_id, quota_key, delta)

        def _work(inner: Session) -> TenantUsage:
            lock_tenant(inner, tenant_id)
            return self._apply_usage(inner, tenant_id, quota_key, delta)

        return run_atomic(_work)

    def get_usage(self, tenant_id: str) -> list[TenantUsage]:
        with self._session() as session:
            statement = select(TenantUsage).where(TenantUsage.tenant_id == tenant_id).order_by(TenantUsage.quota_key)
            return list(session.exec(statement).all())

    def recount_usage(self, tenant_id: str) -> list[TenantUsage]:
        def _work(session: Session) -> list[TenantUsage]:
            lock_tenant(session, tenant_id)
            branch_count = session.exec(
                select(func.count()).select_from(Branch).where(Branch.tenant_id == tenant_id)
            ).one()
            stored_bytes = session.exec(
                select(func.coalesce(func.sum(UploadedFile.size_bytes), 0)).where(UploadedFile.tenant_id == tenant_id)
            ).one()
            staff_count = session.exec(
                select(func.count())
                .select_from(User)
                .join(Role, col(Role.id) == col(User.role_id))
                .where(User.tenant_id == tenant_id)
                .where(Role.role_tag == RoleTag.STAFF)
            ).one()
            measured = {
                KEY_MAX_BRANCHES: float(branch_count),
                KEY_STORAGE_QUOTA_GB: bytes_to_gb(int(stored_bytes)),
                KEY_MAX_STAFF: float(staff_count),
            }
            rows: list[TenantUsage] = []
            for quota_key, used in measured.items():
                usage = session.get(TenantUsage, (tenant_id, quota_key))
                if usage is None:
                    usage = TenantUsage(tenant_id=tenant_id, quota_key=quota_key)
                usage.used = used
                usage.updated_at = now_utc()
                session.add(usage)
                rows.append(usage)
            session.flush()
            return rows

        rows = run_atomic(_work)
        logger.info("usage_recounted", tenant_id=tenant_id, usage={row.quota_key: row.used for row in rows})
        return rows
