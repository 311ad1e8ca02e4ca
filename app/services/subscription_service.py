from __future__ import annotations

import calendar
from datetime import date

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.errors import (
    ConflictError,
    DuplicateSubscription,
    NotFoundError,
    SubscriptionRequired,
    ValidationError,
)
from app.domain.models import (
    BillingCycle,
    EventEnvelope,
    Plan,
    Subscription,
    SubscriptionCreate,
    Tenant,
    now_utc,
)
from app.domain.state_machine import (
    WRITABLE_TENANT_STATUSES,
    SubscriptionStatus,
    TenantStatus,
    can_subscription_transition,
    can_tenant_transition,
)
from app.infra.audit import record_audit
from app.infra.db import get_engine, run_atomic
from app.infra.events import (
    EVENT_SUBSCRIPTION_CANCELLED,
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_SUBSCRIPTION_EXPIRED,
    Notifier,
    event_bus,
)
from app.infra.logging import get_logger

logger = get_logger(__name__)


def today_utc() -> date:
    return now_utc().date()


def add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def compute_end_date(start: date, cycle: BillingCycle) -> date:
    if cycle == BillingCycle.YEARLY:
        return add_months(start, 12)
    return add_months(start, 1)


def lock_tenant(session: Session, tenant_id: str) -> Tenant:
    # Serializes check-then-act sequences per tenant; SQLite ignores FOR UPDATE.
    tenant = session.exec(select(Tenant).where(Tenant.id == tenant_id).with_for_update()).first()
    if tenant is None:
        raise NotFoundError("tenant not found")
    return tenant


def ensure_single_active_subscription(session: Session, tenant_id: str) -> Subscription | None:
    active = session.exec(
        select(Subscription)
        .where(Subscription.tenant_id == tenant_id)
        .where(Subscription.status == SubscriptionStatus.ACTIVE)
    ).all()
    if len(active) > 1:
        raise ConflictError("tenant has more than one active subscription")
    return active[0] if active else None


class SubscriptionService:
    def __init__(self, notifier: Notifier | None = None) -> None:
        self._notifier = notifier if notifier is not None else event_bus

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _set_tenant_status(self, tenant: Tenant, target: TenantStatus) -> None:
        if tenant.status == target:
            return
        if not can_tenant_transition(tenant.status, target):
            raise ConflictError(f"tenant cannot move from {tenant.status} to {target}")
        tenant.status = target
        tenant.updated_at = now_utc()

    def _publish(
        self,
        session: Session,
        event_type: str,
        subscription: Subscription,
        actor_id: str | None,
        **extra: object,
    ) -> None:
        self._notifier.publish(
            EventEnvelope(
                event_type=event_type,
                tenant_id=subscription.tenant_id,
                actor_id=actor_id,
                payload={
                    "subscription_id": subscription.id,
                    "plan_id": subscription.plan_id,
                    "end_date": subscription.end_date.isoformat(),
                    **extra,
                },
            ),
            session,
        )

    def create_subscription(self, tenant_id: str, actor_id: str | None, payload: SubscriptionCreate) -> Subscription:
        start = payload.start_date or today_utc()

        def _work(session: Session) -> Subscription:
            tenant = lock_tenant(session, tenant_id)
            plan = session.get(Plan, payload.plan_id)
            if plan is None:
                raise NotFoundError("plan not found")
            if not plan.is_active:
                raise ValidationError("plan is not available for subscription")
            if ensure_single_active_subscription(session, tenant_id) is not None:
                raise DuplicateSubscription("tenant already has an active subscription")

            cycle = payload.billing_cycle or plan.billing_cycle
            subscription = Subscription(
                tenant_id=tenant_id,
                plan_id=plan.id,
                billing_cycle=cycle,
                start_date=start,
                end_date=compute_end_date(start, cycle),
                status=SubscriptionStatus.ACTIVE,
                payment_method=payload.payment_method,
                created_by=actor_id,
                detail=dict(payload.detail),
            )
            session.add(subscription)
            try:
                session.flush()
            except IntegrityError as exc:
                raise ConflictError("subscription could not be recorded") from exc
            ensure_single_active_subscription(session, tenant_id)

            self._set_tenant_status(tenant, TenantStatus.ACTIVE)
            tenant.active_subscription_id = subscription.id
            session.add(tenant)
            record_audit(
                session,
                tenant_id=tenant_id,
                actor_id=actor_id,
                action="subscription.create",
                resource=f"subscriptions/{subscription.id}",
                detail={
                    "plan_id": plan.id,
                    "plan_name": plan.name,
                    "billing_cycle": str(cycle),
                    "end_date": subscription.end_date.isoformat(),
                },
            )
            self._publish(session, EVENT_SUBSCRIPTION_CREATED, subscription, actor_id)
            return subscription

        subscription = run_atomic(_work)
        logger.info(
            "subscription_created",
            tenant_id=tenant_id,
            subscription_id=subscription.id,
            plan_id=subscription.plan_id,
        )
        return subscription

    def cancel_subscription(
        self,
        tenant_id: str,
        subscription_id: str,
        actor_id: str | None,
        reason: str | None = None,
    ) -> Subscription:
        def _work(session: Session) -> Subscription:
            tenant = lock_tenant(session, tenant_id)
            subscription = session.exec(
                select(Subscription)
                .where(Subscription.tenant_id == tenant_id)
                .where(Subscription.id == subscription_id)
            ).first()
            if subscription is None:
                raise NotFoundError("subscription not found")
            if not can_subscription_transition(subscription.status, SubscriptionStatus.CANCELLED):
                raise ConflictError(f"subscription is {subscription.status} and cannot be cancelled")

            subscription.status = SubscriptionStatus.CANCELLED
            subscription.updated_at = now_utc()
            session.add(subscription)
            if tenant.active_subscription_id == subscription.id:
                self._set_tenant_status(tenant, TenantStatus.CANCELLED)
                tenant.active_subscription_id = None
                session.add(tenant)
            session.flush()
            ensure_single_active_subscription(session, tenant_id)
            record_audit(
                session,
                tenant_id=tenant_id,
                actor_id=actor_id,
                action="subscription.cancel",
                resource=f"subscriptions/{subscription.id}",
                detail={"reason": reason},
            )
            self._publish(session, EVENT_SUBSCRIPTION_CANCELLED, subscription, actor_id, reason=reason)
            return subscription

        subscription = run_atomic(_work)
        logger.info("subscription_cancelled", tenant_id=tenant_id, subscription_id=subscription.id)
        return subscription

    def expire_subscription(self, session: Session, subscription: Subscription, *, today: date) -> None:
        """Move an active subscription and its tenant to expired.

        Runs inside the caller's transaction with the tenant row already locked.
        """
        if not can_subscription_transition(subscription.status, SubscriptionStatus.EXPIRED):
            raise ConflictError(f"subscription is {subscription.status} and cannot expire")
        subscription.status = SubscriptionStatus.EXPIRED
        subscription.updated_at = now_utc()
        session.add(subscription)

        tenant = session.get(Tenant, subscription.tenant_id)
        if tenant is not None and tenant.active_subscription_id == subscription.id:
            self._set_tenant_status(tenant, TenantStatus.EXPIRED)
            tenant.active_subscription_id = None
            session.add(tenant)
        session.flush()
        record_audit(
            session,
            tenant_id=subscription.tenant_id,
            actor_id=None,
            action="subscription.expire",
            resource=f"subscriptions/{subscription.id}",
            detail={"end_date": subscription.end_date.isoformat(), "run_date": today.isoformat()},
        )
        self._publish(session, EVENT_SUBSCRIPTION_EXPIRED, subscription, None)

    def list_subscriptions(self, tenant_id: str) -> list[Subscription]:
        with self._session() as session:
            statement = (
                select(Subscription)
                .where(Subscription.tenant_id == tenant_id)
                .order_by(col(Subscription.created_at).desc())
            )
            return list(session.exec(statement).all())

    def get_current_subscription(self, tenant_id: str) -> Subscription | None:
        with self._session() as session:
            if session.get(Tenant, tenant_id) is None:
                raise NotFoundError("tenant not found")
            return ensure_single_active_subscription(session, tenant_id)

    def require_writable_tenant(self, tenant_id: str) -> Tenant:
        with self._session() as session:
            tenant = session.get(Tenant, tenant_id)
            if tenant is None:
                raise NotFoundError("tenant not found")
            if tenant.status not in WRITABLE_TENANT_STATUSES:
                if tenant.status == TenantStatus.EXPIRED:
                    raise SubscriptionRequired("Your subscription has expired. Please subscribe to continue.")
                raise SubscriptionRequired(f"tenant is {tenant.status}; subscribe to continue")
            return tenant
