from __future__ import annotations

import threading
from collections.abc import Callable, Generator
from datetime import time
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Connection, Engine
from sqlmodel import Session, SQLModel, col, create_engine, select

from app.domain.errors import ConcurrencyConflict, ConflictError, QuotaExceeded
from app.domain.models import (
    BootstrapPlatformRequest,
    Branch,
    BranchCreate,
    Role,
    SubscriptionCreate,
    TenantSignupRequest,
    User,
)
from app.domain.permissions import RoleTag
from app.domain.plan_limits import KEY_MAX_BRANCHES
from app.infra import db, redis_state
from app.infra.events import NullNotifier
from app.services.authorization_service import DelegationGuard
from app.services.branch_service import BranchService
from app.services.identity_service import IdentityService
from app.services.permission_service import PermissionService
from app.services.plan_catalog_service import PlanCatalogService
from app.services.quota_service import QuotaService
from app.services.subscription_service import SubscriptionService


@pytest.fixture()
def locking_engine(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[Engine, None, None]:
    db_path = tmp_path / "concurrency_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(test_engine, "connect")
    def _configure_connection(dbapi_connection: object, _connection_record: object) -> None:
        # SQLAlchemy emits BEGIN itself; see _begin_immediate.
        dbapi_connection.isolation_level = None  # type: ignore[attr-defined]
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(test_engine, "begin")
    def _begin_immediate(connection: Connection) -> None:
        # Each transaction takes the write lock up front, like FOR UPDATE on the tenant row.
        connection.exec_driver_sql("BEGIN IMMEDIATE")

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(redis_state, "PERMISSION_CACHE_TTL_SEC", 0)
    yield test_engine
    test_engine.dispose()


def _race(workers: int, action: Callable[[int], object]) -> tuple[list[object], list[Exception]]:
    barrier = threading.Barrier(workers)
    guard = threading.Lock()
    results: list[object] = []
    errors: list[Exception] = []

    def _run(index: int) -> None:
        barrier.wait()
        try:
            outcome = action(index)
        except Exception as exc:
            with guard:
                errors.append(exc)
        else:
            with guard:
                results.append(outcome)

    threads = [threading.Thread(target=_run, args=(index,)) for index in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=120)
    return results, errors


def test_concurrent_branch_creation_never_overshoots_limit(locking_engine: Engine) -> None:
    catalog = PlanCatalogService()
    catalog.seed_default_plans()
    tenant, admin = IdentityService().signup_tenant(
        TenantSignupRequest(name="food-court", admin_username="owner", admin_password="owner-pass")
    )
    basic_id = next(plan.id for plan in catalog.list_plans() if plan.name == "Basic")
    SubscriptionService(notifier=NullNotifier()).create_subscription(
        tenant.id,
        admin.id,
        SubscriptionCreate(plan_id=basic_id),
    )
    branches = BranchService()
    for name in ("stall-1", "stall-2"):
        branches.create_branch(
            tenant.id, admin.id, BranchCreate(name=name, opening_time=time(9), closing_time=time(21))
        )

    created, errors = _race(
        4,
        lambda index: branches.create_branch(
            tenant.id,
            admin.id,
            BranchCreate(name=f"rush-{index}", opening_time=time(9), closing_time=time(21)),
        ),
    )

    assert len(created) + len(errors) == 4
    assert all(isinstance(exc, (QuotaExceeded, ConcurrencyConflict)) for exc in errors)
    assert any(isinstance(exc, QuotaExceeded) for exc in errors)
    with Session(locking_engine) as session:
        count = len(session.exec(select(Branch).where(Branch.tenant_id == tenant.id)).all())
    assert count == 2 + len(created)
    assert count <= 3
    usage = {row.quota_key: row.used for row in QuotaService().get_usage(tenant.id)}
    assert usage[KEY_MAX_BRANCHES] == count


def test_concurrent_bootstrap_creates_one_super_admin(locking_engine: Engine) -> None:
    registry = PermissionService(guard=DelegationGuard(notifier=NullNotifier()))

    admins, errors = _race(
        2,
        lambda index: registry.bootstrap_platform(
            BootstrapPlatformRequest(username=f"root-{index}", password="root-pass")
        ),
    )

    assert len(admins) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], (ConflictError, ConcurrencyConflict))
    with Session(locking_engine) as session:
        super_admins = session.exec(
            select(User)
            .join(Role, col(Role.id) == col(User.role_id))
            .where(Role.role_tag == RoleTag.SUPER_ADMIN)
        ).all()
        global_roles = session.exec(select(Role).where(col(Role.tenant_id).is_(None))).all()
    assert len(super_admins) == 1
    assert len(global_roles) == len(RoleTag)
