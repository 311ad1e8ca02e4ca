from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.errors import AuthError, AuthorityExceeded, ConflictError, NotFoundError, ValidationError
from app.domain.models import (
    Role,
    Tenant,
    TenantSignupRequest,
    User,
    UserCreate,
)
from app.domain.permissions import RoleTag
from app.domain.plan_limits import KEY_MAX_STAFF
from app.infra.audit import record_audit
from app.infra.auth import hash_password
from app.infra.db import get_engine, run_atomic
from app.infra.logging import get_logger
from app.services.authorization_service import DelegationGuard, tenant_scope
from app.services.permission_service import seed_default_roles
from app.services.quota_service import QuotaService

logger = get_logger(__name__)


class IdentityService:
    def __init__(self, quota: QuotaService | None = None, guard: DelegationGuard | None = None) -> None:
        self._quota = quota or QuotaService()
        self._guard = guard or DelegationGuard()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_scoped_user(self, session: Session, tenant_id: str | None, user_id: str) -> User | None:
        statement = select(User).where(User.id == user_id)
        if tenant_id is not None:
            statement = statement.where(User.tenant_id == tenant_id)
        return session.exec(statement).first()

    def _assignable_role(self, session: Session, actor: User | None, tenant_id: str, role_id: str) -> Role:
        role = session.get(Role, role_id)
        if role is None or role.tenant_id not in {None, tenant_id}:
            raise NotFoundError("role not found")
        if role.role_tag == RoleTag.SUPER_ADMIN:
            raise AuthorityExceeded("the super admin role cannot be assigned to tenant users")
        if role.role_tag == RoleTag.TENANT_ADMIN and actor is not None and actor.tenant_id is not None:
            actor_role = session.get(Role, actor.role_id) if actor.role_id else None
            if actor_role is None or actor_role.role_tag != RoleTag.TENANT_ADMIN:
                raise AuthorityExceeded("only a tenant admin can appoint another tenant admin")
        if actor is not None:
            # Handing out a role delegates every permission it grants.
            grants = self._guard.resolver.role_grants(session, role.id, use_cache=False)
            for permission_name in sorted(name for name, granted in grants.items() if granted):
                self._guard.require_authority(session, actor, permission_name, tenant_scope(actor.tenant_id))
        return role

    def _adjust_staff_usage(self, session: Session, tenant_id: str, before: Role | None, after: Role | None) -> None:
        was_staff = before is not None and before.role_tag == RoleTag.STAFF
        is_staff = after is not None and after.role_tag == RoleTag.STAFF
        if is_staff and not was_staff:
            self._quota.enforce_quota(session, tenant_id, KEY_MAX_STAFF, 1)
            self._quota.record_usage(tenant_id, KEY_MAX_STAFF, 1, session=session)
        elif was_staff and not is_staff:
            self._quota.record_usage(tenant_id, KEY_MAX_STAFF, -1, session=session)

    def signup_tenant(self, payload: TenantSignupRequest) -> tuple[Tenant, User]:
        """Create a restaurant tenant in trial together with its first admin."""
        name = payload.name.strip()
        if not name or not payload.admin_username.strip():
            raise ValidationError("tenant name and admin username are required")

        def _work(session: Session) -> tuple[Tenant, User]:
            roles = seed_default_roles(session)
            tenant = Tenant(name=name)
            session.add(tenant)
            try:
                session.flush()
            except IntegrityError as exc:
                raise ConflictError("tenant name already exists") from exc
            admin = User(
                tenant_id=tenant.id,
                username=payload.admin_username.strip(),
                password_hash=hash_password(payload.admin_password),
                role_id=roles[RoleTag.TENANT_ADMIN].id,
                is_active=True,
            )
            session.add(admin)
            session.flush()
            record_audit(
                session,
                tenant_id=tenant.id,
                actor_id=admin.id,
                action="tenant.signup",
                resource=f"tenants/{tenant.id}",
                detail={"name": name, "admin_username": admin.username},
            )
            return tenant, admin

        tenant, admin = run_atomic(_work)
        logger.info("tenant_signed_up", tenant_id=tenant.id, admin_id=admin.id)
        return tenant, admin

    def get_tenant(self, tenant_id: str) -> Tenant:
        with self._session() as session:
            tenant = session.get(Tenant, tenant_id)
            if tenant is None:
                raise NotFoundError("tenant not found")
            return tenant

    def create_user(self, actor_id: str | None, tenant_id: str, payload: UserCreate) -> User:
        def _work(session: Session) -> User:
            if session.get(Tenant, tenant_id) is None:
                raise NotFoundError("tenant not found")
            actor = self._guard.lock_grantor(session, actor_id) if actor_id else None
            role = self._assignable_role(session, actor, tenant_id, payload.role_id) if payload.role_id else None
            self._adjust_staff_usage(session, tenant_id, None, role)
            user = User(
                tenant_id=tenant_id,
                username=payload.username.strip(),
                password_hash=hash_password(payload.password),
                role_id=role.id if role is not None else None,
                is_active=payload.is_active,
                created_by=actor_id,
            )
            session.add(user)
            try:
                session.flush()
            except IntegrityError as exc:
                raise ConflictError("username already exists in tenant") from exc
            record_audit(
                session,
                tenant_id=tenant_id,
                actor_id=actor_id,
                action="user.create",
                resource=f"users/{user.id}",
                detail={"username": user.username, "role_id": user.role_id},
            )
            return user

        return run_atomic(_work)

    def assign_role(self, actor_id: str | None, tenant_id: str, user_id: str, role_id: str) -> User:
        def _work(session: Session) -> User:
            user = self._get_scoped_user(session, tenant_id, user_id)
            if user is None:
                raise NotFoundError("user not found")
            actor = self._guard.lock_grantor(session, actor_id) if actor_id else None
            role = self._assignable_role(session, actor, tenant_id, role_id)
            previous = session.get(Role, user.role_id) if user.role_id else None
            self._adjust_staff_usage(session, tenant_id, previous, role)
            user.role_id = role.id
            session.add(user)
            session.flush()
            record_audit(
                session,
                tenant_id=tenant_id,
                actor_id=actor_id,
                action="user.assign_role",
                resource=f"users/{user.id}",
                detail={"role_id": role.id, "previous_role_id": previous.id if previous else None},
            )
            return user

        user = run_atomic(_work)
        logger.info("user_role_assigned", user_id=user_id, role_id=role_id)
        return user

    def list_users(self, tenant_id: str) -> list[User]:
        with self._session() as session:
            statement = select(User).where(User.tenant_id == tenant_id).order_by(col(User.created_at))
            return list(session.exec(statement).all())

    def get_user(self, tenant_id: str | None, user_id: str) -> User:
        with self._session() as session:
            user = self._get_scoped_user(session, tenant_id, user_id)
            if user is None:
                raise NotFoundError("user not found")
            return user

    def dev_login(self, tenant_id: str | None, username: str, password: str) -> User:
        with self._session() as session:
            statement = select(User).where(User.username == username)
            if tenant_id is None:
                statement = statement.where(col(User.tenant_id).is_(None))
            else:
                statement = statement.where(User.tenant_id == tenant_id)
            user = session.exec(statement).first()
            if user is None:
                raise AuthError("invalid credentials")
            if not user.is_active:
                raise AuthError("user disabled")
            if user.password_hash != hash_password(password):
                raise AuthError("invalid credentials")
            return user
