from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, date, datetime, time, timedelta
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, select

from app.domain.errors import ConflictError
from app.domain.models import (
    AuditLog,
    BillingCycle,
    Branch,
    BranchCreate,
    EventEnvelope,
    PlanCreate,
    PlanLimitWrite,
    Subscription,
    SubscriptionCreate,
    Tenant,
    TenantSignupRequest,
)
from app.domain.plan_limits import KEY_MAX_BRANCHES, LimitDataType
from app.domain.state_machine import BranchStatus, SubscriptionStatus, TenantStatus
from app.infra import db, redis_state
from app.infra.events import EVENT_SUBSCRIPTION_EXPIRED, EVENT_TRIAL_EXPIRED
from app.services.branch_service import BranchService
from app.services.identity_service import IdentityService
from app.services.lifecycle_service import LifecycleService, branch_status_at
from app.services.plan_catalog_service import PlanCatalogService
from app.services.subscription_service import SubscriptionService


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[EventEnvelope] = []

    def publish(self, event: EventEnvelope, session: Session | None = None) -> None:
        self.events.append(event)


class FlakySubscriptionService(SubscriptionService):
    def __init__(self, failing_ids: set[str]) -> None:
        super().__init__()
        self.failing_ids = failing_ids

    def expire_subscription(self, session: Session, subscription: Subscription, *, today: date) -> None:
        if subscription.id in self.failing_ids:
            raise ConflictError("simulated write failure")
        super().expire_subscription(session, subscription, today=today)


@pytest.fixture()
def lifecycle_engine(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[Engine, None, None]:
    db_path = tmp_path / "lifecycle_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(redis_state, "PERMISSION_CACHE_TTL_SEC", 0)
    yield test_engine
    test_engine.dispose()


def _signup(name: str) -> str:
    tenant, _admin = IdentityService().signup_tenant(
        TenantSignupRequest(name=name, admin_username=f"{name}-admin", admin_password="admin-pass")
    )
    return tenant.id


def _subscribe(tenant_id: str, plan_id: str, start: date) -> Subscription:
    return SubscriptionService().create_subscription(
        tenant_id,
        None,
        SubscriptionCreate(plan_id=plan_id, start_date=start),
    )


def _basic_plan_id() -> str:
    return {item.name: item.id for item in PlanCatalogService().seed_default_plans()}["Basic"]


def _age_tenant(engine: Engine, tenant_id: str, days: int) -> None:
    with Session(engine) as session:
        tenant = session.get(Tenant, tenant_id)
        assert tenant is not None
        tenant.created_at = datetime.now(UTC) - timedelta(days=days)
        session.add(tenant)
        session.commit()


def test_monthly_subscription_expires_after_grace(lifecycle_engine: Engine) -> None:
    tenant_id = _signup("grace-diner")
    row = _subscribe(tenant_id, _basic_plan_id(), date(2024, 1, 15))
    assert row.end_date == date(2024, 2, 15)
    notifier = RecordingNotifier()
    lifecycle = LifecycleService(notifier=notifier, grace_days=2)

    within_grace = lifecycle.reconcile_subscriptions(today=date(2024, 2, 17))
    assert within_grace.matched == 0

    report = lifecycle.reconcile_subscriptions(today=date(2024, 2, 18))
    assert report.transitioned == [row.id]
    assert report.failed == []
    assert [item.event_type for item in notifier.events] == [EVENT_SUBSCRIPTION_EXPIRED]

    with Session(lifecycle_engine) as session:
        subscription = session.get(Subscription, row.id)
        tenant = session.get(Tenant, tenant_id)
        assert subscription is not None and tenant is not None
        assert subscription.status == SubscriptionStatus.EXPIRED
        assert tenant.status == TenantStatus.EXPIRED
        assert tenant.active_subscription_id is None
        audit = session.exec(select(AuditLog).where(AuditLog.action == "subscription.expire")).all()
        assert len(audit) == 1

    rerun = lifecycle.reconcile_subscriptions(today=date(2024, 2, 18))
    assert rerun.matched == 0
    assert rerun.transitioned == []
    assert len(notifier.events) == 1


def test_yearly_subscriptions_sweep_on_first_of_month(lifecycle_engine: Engine) -> None:
    annual = PlanCatalogService().create_plan(
        PlanCreate(
            name="Annual",
            price_cents=99900,
            billing_cycle=BillingCycle.YEARLY,
            limits=[PlanLimitWrite(key=KEY_MAX_BRANCHES, value="4", data_type=LimitDataType.NUMBER)],
        )
    )
    tenant_id = _signup("annual-diner")
    row = _subscribe(tenant_id, annual.id, date(2023, 1, 10))
    assert row.end_date == date(2024, 1, 10)
    lifecycle = LifecycleService(notifier=RecordingNotifier(), grace_days=2)

    assert lifecycle.reconcile_subscriptions(today=date(2024, 1, 20)).matched == 0
    report = lifecycle.reconcile_subscriptions(today=date(2024, 2, 1))
    assert report.transitioned == [row.id]


def test_trial_expires_after_window(lifecycle_engine: Engine) -> None:
    stale = _signup("stale-trial")
    fresh = _signup("fresh-trial")
    subscribed = _signup("paid-early")
    _subscribe(subscribed, _basic_plan_id(), date.today())
    _age_tenant(lifecycle_engine, stale, 16)
    _age_tenant(lifecycle_engine, fresh, 10)
    _age_tenant(lifecycle_engine, subscribed, 30)
    notifier = RecordingNotifier()
    lifecycle = LifecycleService(notifier=notifier, trial_days=15)

    report = lifecycle.reconcile_trials()
    assert report.transitioned == [stale]
    assert [item.event_type for item in notifier.events] == [EVENT_TRIAL_EXPIRED]

    with Session(lifecycle_engine) as session:
        statuses = {item.id: item.status for item in session.exec(select(Tenant)).all()}
    assert statuses[stale] == TenantStatus.EXPIRED
    assert statuses[fresh] == TenantStatus.TRIAL
    assert statuses[subscribed] == TenantStatus.ACTIVE

    assert lifecycle.reconcile_trials().transitioned == []


def test_failed_item_does_not_block_batch(lifecycle_engine: Engine) -> None:
    plan_id = _basic_plan_id()
    first = _subscribe(_signup("first"), plan_id, date(2024, 1, 5))
    second = _subscribe(_signup("second"), plan_id, date(2024, 1, 5))
    flaky = LifecycleService(
        notifier=RecordingNotifier(),
        subscriptions=FlakySubscriptionService({first.id}),
        grace_days=2,
    )

    report = flaky.reconcile_subscriptions(today=date(2024, 3, 10))
    assert report.matched == 2
    assert report.failed == [first.id]
    assert report.transitioned == [second.id]

    retry = LifecycleService(notifier=RecordingNotifier(), grace_days=2).reconcile_subscriptions(
        today=date(2024, 3, 10)
    )
    assert retry.transitioned == [first.id]


@pytest.mark.parametrize(
    ("opening", "closing", "local", "expected"),
    [
        (time(9, 0), time(17, 0), time(12, 0), BranchStatus.ACTIVE),
        (time(9, 0), time(17, 0), time(9, 0), BranchStatus.ACTIVE),
        (time(9, 0), time(17, 0), time(17, 0), BranchStatus.INACTIVE),
        (time(9, 0), time(17, 0), time(8, 59), BranchStatus.INACTIVE),
        (time(22, 0), time(2, 0), time(23, 30), BranchStatus.ACTIVE),
        (time(22, 0), time(2, 0), time(1, 59), BranchStatus.ACTIVE),
        (time(22, 0), time(2, 0), time(3, 0), BranchStatus.INACTIVE),
        (time(0, 0), time(0, 0), time(4, 0), BranchStatus.ACTIVE),
    ],
)
def test_branch_status_window(opening: time, closing: time, local: time, expected: BranchStatus) -> None:
    assert branch_status_at(opening, closing, local) == expected


def test_branch_status_reconcile_is_idempotent(lifecycle_engine: Engine) -> None:
    _basic_plan_id()
    tenant_id = _signup("hours")
    branch = BranchService().create_branch(
        tenant_id,
        None,
        BranchCreate(name="harbor", opening_time=time(9, 0), closing_time=time(17, 0)),
    )
    lifecycle = LifecycleService(notifier=RecordingNotifier(), branch_timezone="UTC")

    midday = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
    lifecycle.reconcile_branch_operating_status(now=midday)
    with Session(lifecycle_engine) as session:
        row = session.get(Branch, branch.id)
        assert row is not None
        assert row.status == BranchStatus.ACTIVE
    assert lifecycle.reconcile_branch_operating_status(now=midday).transitioned == []

    evening = datetime(2024, 5, 1, 18, 0, tzinfo=UTC)
    report = lifecycle.reconcile_branch_operating_status(now=evening)
    assert report.transitioned == [branch.id]
    with Session(lifecycle_engine) as session:
        row = session.get(Branch, branch.id)
        assert row is not None
        assert row.status == BranchStatus.INACTIVE


def test_branch_status_uses_configured_timezone(lifecycle_engine: Engine) -> None:
    _basic_plan_id()
    tenant_id = _signup("tokyo-branch")
    branch = BranchService().create_branch(
        tenant_id,
        None,
        BranchCreate(name="ginza", opening_time=time(9, 0), closing_time=time(17, 0)),
    )
    with Session(lifecycle_engine) as session:
        row = session.get(Branch, branch.id)
        assert row is not None
        row.status = BranchStatus.INACTIVE
        session.add(row)
        session.commit()
    lifecycle = LifecycleService(notifier=RecordingNotifier(), branch_timezone="Asia/Tokyo")

    # 01:00 UTC is 10:00 in Tokyo.
    lifecycle.reconcile_branch_operating_status(now=datetime(2024, 5, 1, 1, 0, tzinfo=UTC))
    with Session(lifecycle_engine) as session:
        row = session.get(Branch, branch.id)
        assert row is not None
        assert row.status == BranchStatus.ACTIVE
