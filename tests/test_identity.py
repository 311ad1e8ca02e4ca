from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, select

from app.domain.errors import AuthError, AuthorityExceeded, ConflictError, NotFoundError
from app.domain.models import AuditLog, Role, RoleCreate, TenantSignupRequest, UserCreate, UserPermissionWrite
from app.domain.permissions import PERM_MANAGE_USERS, PERM_UPDATE_ROLE, PERM_VIEW_MENU, RoleTag
from app.domain.state_machine import TenantStatus
from app.infra import db, redis_state
from app.infra.auth import create_access_token, decode_access_token
from app.infra.events import NullNotifier
from app.services.authorization_service import DelegationGuard
from app.services.identity_service import IdentityService
from app.services.permission_service import PermissionService, global_role
from app.services.plan_catalog_service import PlanCatalogService


@pytest.fixture()
def identity_engine(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[Engine, None, None]:
    db_path = tmp_path / "identity_test.db"
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
    PlanCatalogService().seed_default_plans()
    yield test_engine
    test_engine.dispose()


def _signup(service: IdentityService, name: str) -> tuple[str, str]:
    tenant, admin = service.signup_tenant(
        TenantSignupRequest(name=name, admin_username="owner", admin_password="owner-pass")
    )
    return tenant.id, admin.id


def _role_id(engine: Engine, tag: RoleTag) -> str:
    with Session(engine) as session:
        role = global_role(session, tag)
        assert role is not None
        return role.id


def test_signup_starts_trial_with_tenant_admin(identity_engine: Engine) -> None:
    service = IdentityService()
    tenant_id, admin_id = _signup(service, "shawarma-house")

    tenant = service.get_tenant(tenant_id)
    assert tenant.status == TenantStatus.TRIAL
    admin = service.get_user(tenant_id, admin_id)
    assert admin.role_id == _role_id(identity_engine, RoleTag.TENANT_ADMIN)
    with Session(identity_engine) as session:
        audit = session.exec(select(AuditLog).where(AuditLog.action == "tenant.signup")).one()
        assert audit.tenant_id == tenant_id
        global_roles = session.exec(select(Role).where(Role.role_tag == RoleTag.STAFF)).all()
        assert len(global_roles) == 1

    with pytest.raises(ConflictError):
        _signup(service, "shawarma-house")


def test_usernames_are_unique_per_tenant(identity_engine: Engine) -> None:
    service = IdentityService()
    tenant_a, admin_a = _signup(service, "pizza-a")
    tenant_b, _admin_b = _signup(service, "pizza-b")

    service.create_user(admin_a, tenant_a, UserCreate(username="chef", password="pw"))
    with pytest.raises(ConflictError):
        service.create_user(admin_a, tenant_a, UserCreate(username="chef", password="pw"))

    with pytest.raises(NotFoundError):
        service.get_user(tenant_b, admin_a)
    assert [user.username for user in service.list_users(tenant_b)] == ["owner"]


def test_role_assignment_boundaries(identity_engine: Engine) -> None:
    service = IdentityService()
    tenant_a, admin_a = _signup(service, "sushi-a")
    _tenant_b, admin_b = _signup(service, "sushi-b")
    foreign_role = PermissionService(guard=DelegationGuard(notifier=NullNotifier())).create_role(
        admin_b,
        RoleCreate(name="cashier", permission_names=[PERM_VIEW_MENU]),
    )
    user = service.create_user(admin_a, tenant_a, UserCreate(username="runner", password="pw"))

    with pytest.raises(AuthorityExceeded):
        service.assign_role(admin_a, tenant_a, user.id, _role_id(identity_engine, RoleTag.SUPER_ADMIN))
    with pytest.raises(NotFoundError):
        service.assign_role(admin_a, tenant_a, user.id, foreign_role.id)

    staff = service.create_user(
        admin_a,
        tenant_a,
        UserCreate(username="lead", password="pw", role_id=_role_id(identity_engine, RoleTag.STAFF)),
    )
    with pytest.raises(AuthorityExceeded):
        service.assign_role(staff.id, tenant_a, user.id, _role_id(identity_engine, RoleTag.TENANT_ADMIN))

    promoted = service.assign_role(admin_a, tenant_a, user.id, _role_id(identity_engine, RoleTag.TENANT_ADMIN))
    assert promoted.role_id == _role_id(identity_engine, RoleTag.TENANT_ADMIN)


def test_assigning_a_role_requires_holding_its_permissions(identity_engine: Engine) -> None:
    service = IdentityService()
    guard = DelegationGuard(notifier=NullNotifier())
    tenant_id, admin_id = _signup(service, "ramen-bar")
    manager_role = PermissionService(guard=guard).create_role(
        admin_id,
        RoleCreate(name="manager", permission_names=[PERM_UPDATE_ROLE, PERM_MANAGE_USERS]),
    )
    staff = service.create_user(
        admin_id,
        tenant_id,
        UserCreate(username="host", password="pw", role_id=_role_id(identity_engine, RoleTag.STAFF)),
    )
    guard.set_user_permission(admin_id, staff.id, UserPermissionWrite(permission_name=PERM_MANAGE_USERS))

    with pytest.raises(AuthorityExceeded, match="update_role"):
        service.assign_role(staff.id, tenant_id, staff.id, manager_role.id)
    with pytest.raises(AuthorityExceeded):
        service.create_user(staff.id, tenant_id, UserCreate(username="crony", password="pw", role_id=manager_role.id))
    assert service.get_user(tenant_id, staff.id).role_id == _role_id(identity_engine, RoleTag.STAFF)
    assert [user.username for user in service.list_users(tenant_id)] == ["owner", "host"]

    guest = service.create_user(
        staff.id,
        tenant_id,
        UserCreate(username="guest", password="pw", role_id=_role_id(identity_engine, RoleTag.CUSTOMER)),
    )
    assert guest.created_by == staff.id

    promoted = service.assign_role(admin_id, tenant_id, staff.id, manager_role.id)
    assert promoted.role_id == manager_role.id


def test_dev_login_and_token_claims(identity_engine: Engine) -> None:
    service = IdentityService()
    tenant_id, admin_id = _signup(service, "kebab")
    service.create_user(admin_id, tenant_id, UserCreate(username="off-duty", password="pw", is_active=False))

    user = service.dev_login(tenant_id, "owner", "owner-pass")
    assert user.id == admin_id
    with pytest.raises(AuthError):
        service.dev_login(tenant_id, "owner", "wrong")
    with pytest.raises(AuthError):
        service.dev_login(tenant_id, "off-duty", "pw")
    with pytest.raises(AuthError):
        service.dev_login(None, "owner", "owner-pass")

    claims = decode_access_token(create_access_token(user_id=user.id, tenant_id=tenant_id))
    assert claims["sub"] == admin_id
    assert claims["tenant_id"] == tenant_id
    assert claims["exp"] > claims["iat"]
