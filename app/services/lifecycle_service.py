from __future__ import annotations

import os
from collections.abc import Callable
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select
from sqlmodel.sql.expression import SelectOfScalar

from app.domain.errors import GovernanceError
from app.domain.models import (
    BillingCycle,
    Branch,
    EventEnvelope,
    ReconcileReport,
    Subscription,
    Tenant,
    now_utc,
)
from app.domain.state_machine import BranchStatus, SubscriptionStatus, TenantStatus, can_tenant_transition
from app.infra.audit import record_audit
from app.infra.db import get_engine, run_atomic
from app.infra.events import EVENT_TRIAL_EXPIRED, Notifier, event_bus
from app.infra.logging import get_logger
from app.services.subscription_service import (
    SubscriptionService,
    ensure_single_active_subscription,
    lock_tenant,
    today_utc,
)

SUBSCRIPTION_GRACE_DAYS = int(os.getenv("SUBSCRIPTION_GRACE_DAYS", "2"))
TRIAL_WINDOW_DAYS = int(os.getenv("TRIAL_WINDOW_DAYS", "15"))
BRANCH_TIMEZONE = os.getenv("BRANCH_TIMEZONE", "UTC")

JOB_SUBSCRIPTIONS = "reconcile_subscriptions"
JOB_TRIALS = "reconcile_trials"
JOB_BRANCH_STATUS = "reconcile_branch_operating_status"

logger = get_logger(__name__)


def branch_status_at(opening: time, closing: time, local_time: time) -> BranchStatus:
    """Operating status for a local time of day.

    The window is ``[opening, closing)``. A closing time at or before the
    opening time wraps past midnight; equal times mean open around the clock.
    """
    if opening < closing:
        is_open = opening <= local_time < closing
    else:
        is_open = local_time >= opening or local_time < closing
    return BranchStatus.ACTIVE if is_open else BranchStatus.INACTIVE


def local_time_of_day(moment: datetime, timezone: ZoneInfo) -> time:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=ZoneInfo("UTC"))
    return moment.astimezone(timezone).time().replace(tzinfo=None)


class LifecycleService:
    def __init__(
        self,
        notifier: Notifier | None = None,
        subscriptions: SubscriptionService | None = None,
        *,
        grace_days: int | None = None,
        trial_days: int | None = None,
        branch_timezone: str | None = None,
    ) -> None:
        self._notifier = notifier if notifier is not None else event_bus
        self._subscriptions = subscriptions or SubscriptionService(notifier=self._notifier)
        self._grace_days = SUBSCRIPTION_GRACE_DAYS if grace_days is None else grace_days
        self._trial_days = TRIAL_WINDOW_DAYS if trial_days is None else trial_days
        self._timezone = ZoneInfo(branch_timezone or BRANCH_TIMEZONE)

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _run_items(
        self,
        report: ReconcileReport,
        item_ids: list[str],
        work_for: Callable[[str], Callable[[Session], bool]],
    ) -> ReconcileReport:
        report.matched = len(item_ids)
        for item_id in item_ids:
            try:
                changed = run_atomic(work_for(item_id))
            except (GovernanceError, SQLAlchemyError):
                # Deferred to the next run; the rest of the batch still proceeds.
                logger.exception("reconcile_item_failed", job=report.job, item_id=item_id)
                report.failed.append(item_id)
                continue
            if changed:
                report.transitioned.append(item_id)
        logger.info(
            "reconcile_finished",
            job=report.job,
            matched=report.matched,
            transitioned=len(report.transitioned),
            failed=len(report.failed),
        )
        return report

    def _due_cycles(self, today: date) -> list[BillingCycle]:
        # Yearly plans are only swept on the first day of each month.
        if today.day == 1:
            return [BillingCycle.MONTHLY, BillingCycle.YEARLY]
        return [BillingCycle.MONTHLY]

    def _expired_subscriptions_statement(
        self, cutoff: date, cycles: list[BillingCycle]
    ) -> SelectOfScalar[Subscription]:
        return (
            select(Subscription)
            .where(Subscription.status == SubscriptionStatus.ACTIVE)
            .where(Subscription.end_date < cutoff)
            .where(col(Subscription.billing_cycle).in_(cycles))
        )

    def reconcile_subscriptions(self, today: date | None = None) -> ReconcileReport:
        run_date = today or today_utc()
        cutoff = run_date - timedelta(days=self._grace_days)
        cycles = self._due_cycles(run_date)
        with self._session() as session:
            candidates = session.exec(self._expired_subscriptions_statement(cutoff, cycles)).all()
            pairs = [(item.id, item.tenant_id) for item in candidates]
        tenant_by_subscription = dict(pairs)

        def work_for(subscription_id: str) -> Callable[[Session], bool]:
            def _work(session: Session) -> bool:
                lock_tenant(session, tenant_by_subscription[subscription_id])
                subscription = session.exec(
                    self._expired_subscriptions_statement(cutoff, cycles)
                    .where(Subscription.id == subscription_id)
                    .with_for_update()
                ).first()
                if subscription is None:
                    return False
                self._subscriptions.expire_subscription(session, subscription, today=run_date)
                return True

            return _work

        report = ReconcileReport(job=JOB_SUBSCRIPTIONS)
        return self._run_items(report, [item_id for item_id, _ in pairs], work_for)

    def _expired_trials_statement(self, cutoff: datetime) -> SelectOfScalar[Tenant]:
        return (
            select(Tenant)
            .where(Tenant.status == TenantStatus.TRIAL)
            .where(col(Tenant.active_subscription_id).is_(None))
            .where(Tenant.created_at < cutoff)
        )

    def reconcile_trials(self, now: datetime | None = None) -> ReconcileReport:
        cutoff = (now or now_utc()) - timedelta(days=self._trial_days)
        with self._session() as session:
            tenant_ids = [item.id for item in session.exec(self._expired_trials_statement(cutoff)).all()]

        def work_for(tenant_id: str) -> Callable[[Session], bool]:
            def _work(session: Session) -> bool:
                tenant = session.exec(
                    self._expired_trials_statement(cutoff).where(Tenant.id == tenant_id).with_for_update()
                ).first()
                if tenant is None:
                    return False
                # An existing subscription is authoritative over trial state.
                if ensure_single_active_subscription(session, tenant_id) is not None:
                    return False
                if not can_tenant_transition(tenant.status, TenantStatus.EXPIRED):
                    return False
                tenant.status = TenantStatus.EXPIRED
                tenant.updated_at = now_utc()
                session.add(tenant)
                session.flush()
                record_audit(
                    session,
                    tenant_id=tenant_id,
                    actor_id=None,
                    action="tenant.trial_expire",
                    resource=f"tenants/{tenant_id}",
                    detail={"trial_days": self._trial_days},
                )
                self._notifier.publish(
                    EventEnvelope(
                        event_type=EVENT_TRIAL_EXPIRED,
                        tenant_id=tenant_id,
                        payload={"trial_days": self._trial_days},
                    ),
                    session,
                )
                return True

            return _work

        report = ReconcileReport(job=JOB_TRIALS)
        return self._run_items(report, tenant_ids, work_for)

    def reconcile_branch_operating_status(self, now: datetime | None = None) -> ReconcileReport:
        local_time = local_time_of_day(now or now_utc(), self._timezone)
        with self._session() as session:
            branches = session.exec(select(Branch)).all()
            stale = [
                item.id
                for item in branches
                if item.status != branch_status_at(item.opening_time, item.closing_time, local_time)
            ]

        def work_for(branch_id: str) -> Callable[[Session], bool]:
            def _work(session: Session) -> bool:
                branch = session.exec(select(Branch).where(Branch.id == branch_id).with_for_update()).first()
                if branch is None:
                    return False
                target = branch_status_at(branch.opening_time, branch.closing_time, local_time)
                if branch.status == target:
                    return False
                branch.status = target
                branch.updated_at = now_utc()
                session.add(branch)
                return True

            return _work

        report = ReconcileReport(job=JOB_BRANCH_STATUS)
        return self._run_items(report, stale, work_for)
