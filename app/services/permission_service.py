from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, or_, select
from sqlmodel.sql.expression import SelectOfScalar

from app.domain.errors import ConflictError, NotFoundError, ValidationError
from app.domain.models import (
    BootstrapPlatformRequest,
    Permission,
    PermissionCreate,
    Role,
    RoleCreate,
    RolePermission,
    RolePermissionRead,
    User,
)
from app.domain.permissions import DEFAULT_PERMISSIONS, DEFAULT_ROLE_GRANTS, RoleTag
from app.infra.audit import record_audit
from app.infra.auth import hash_password
from app.infra.db import acquire_transaction_lock, get_engine, run_atomic
from app.infra.logging import get_logger
from app.services.authorization_service import DelegationGuard

logger = get_logger(__name__)


def seed_default_permissions(session: Session) -> dict[str, Permission]:
    by_name = {item.name: item for item in session.exec(select(Permission)).all()}
    for name, description in DEFAULT_PERMISSIONS.items():
        if name in by_name:
            continue
        permission = Permission(name=name, description=description)
        session.add(permission)
        by_name[name] = permission
    session.flush()
    return by_name


def seed_default_roles(session: Session) -> dict[RoleTag, Role]:
    """Create the global role templates and their grants if they are missing.

    Existing grants are left alone so operator edits survive a re-seed.
    """
    acquire_transaction_lock(session, "governance.seed_roles")
    permissions = seed_default_permissions(session)
    roles: dict[RoleTag, Role] = {}
    for tag, permission_names in DEFAULT_ROLE_GRANTS.items():
        role = session.exec(
            select(Role).where(col(Role.tenant_id).is_(None)).where(Role.role_tag == tag)
        ).first()
        if role is None:
            role = Role(tenant_id=None, name=str(tag), role_tag=tag, description=f"global {tag} role")
            session.add(role)
            session.flush()
            for name in permission_names:
                session.add(RolePermission(role_id=role.id, permission_id=permissions[name].id, granted=True))
            session.flush()
        roles[tag] = role
    return roles


def global_role(session: Session, tag: RoleTag) -> Role | None:
    return session.exec(select(Role).where(col(Role.tenant_id).is_(None)).where(Role.role_tag == tag)).first()


class PermissionService:
    def __init__(self, guard: DelegationGuard | None = None) -> None:
        self._guard = guard or DelegationGuard()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def create_permission(self, actor_id: str | None, payload: PermissionCreate) -> Permission:
        name = payload.name.strip()
        if not name:
            raise ValidationError("permission name is empty")

        def _work(session: Session) -> tuple[Permission, list[str]]:
            permission = Permission(name=name, description=payload.description)
            session.add(permission)
            try:
                session.flush()
            except IntegrityError as exc:
                raise ConflictError("permission name already exists") from exc
            # Super admins hold the whole catalog, including new entries.
            super_roles = session.exec(select(Role).where(Role.role_tag == RoleTag.SUPER_ADMIN)).all()
            for role in super_roles:
                session.add(
                    RolePermission(role_id=role.id, permission_id=permission.id, granted=True, granted_by=actor_id)
                )
            session.flush()
            record_audit(
                session,
                tenant_id=None,
                actor_id=actor_id,
                action="permission.create",
                resource=f"permissions/{permission.id}",
                detail={"name": name},
            )
            return permission, [role.id for role in super_roles]

        permission, role_ids = run_atomic(_work)
        for role_id in role_ids:
            self._guard.resolver.cache.invalidate(role_id)
        logger.info("permission_created", permission=name)
        return permission

    def list_permissions(self) -> list[Permission]:
        with self._session() as session:
            return list(session.exec(select(Permission).order_by(Permission.name)).all())

    def get_permission(self, permission_id: str) -> Permission:
        with self._session() as session:
            permission = session.get(Permission, permission_id)
            if permission is None:
                raise NotFoundError("permission not found")
            return permission

    def create_role(self, actor_id: str, payload: RoleCreate) -> Role:
        name = payload.name.strip()
        if not name:
            raise ValidationError("role name is empty")

        def _work(session: Session) -> Role:
            grantor = self._guard.lock_grantor(session, actor_id)
            role = Role(
                tenant_id=grantor.tenant_id,
                name=name,
                role_tag=RoleTag.STAFF,
                description=payload.description,
                created_by=actor_id,
            )
            session.add(role)
            try:
                session.flush()
            except IntegrityError as exc:
                raise ConflictError("role name already exists in tenant") from exc
            for permission_name in dict.fromkeys(payload.permission_names):
                self._guard.grant_to_role(session, grantor, role, permission_name, True)
            record_audit(
                session,
                tenant_id=role.tenant_id,
                actor_id=actor_id,
                action="role.create",
                resource=f"roles/{role.id}",
                detail={"name": name, "permissions": list(payload.permission_names)},
            )
            return role

        role = run_atomic(_work)
        logger.info("role_created", role_id=role.id, tenant_id=role.tenant_id)
        return role

    def _visible_roles(self, tenant_id: str | None) -> SelectOfScalar[Role]:
        statement = select(Role)
        if tenant_id is not None:
            statement = statement.where(or_(col(Role.tenant_id).is_(None), Role.tenant_id == tenant_id))
        return statement

    def list_roles(self, tenant_id: str | None) -> list[Role]:
        with self._session() as session:
            statement = self._visible_roles(tenant_id).order_by(Role.name)
            return list(session.exec(statement).all())

    def get_role(self, tenant_id: str | None, role_id: str) -> Role:
        with self._session() as session:
            role = session.exec(self._visible_roles(tenant_id).where(Role.id == role_id)).first()
            if role is None:
                raise NotFoundError("role not found")
            return role

    def list_role_permissions(self, tenant_id: str | None, role_id: str) -> list[RolePermissionRead]:
        role = self.get_role(tenant_id, role_id)
        with self._session() as session:
            rows = session.exec(
                select(RolePermission, Permission.name)
                .join(Permission, col(Permission.id) == col(RolePermission.permission_id))
                .where(RolePermission.role_id == role.id)
                .order_by(Permission.name)
            ).all()
            return [
                RolePermissionRead(
                    role_id=row.role_id,
                    permission_name=name,
                    granted=row.granted,
                    granted_by=row.granted_by,
                )
                for row, name in rows
            ]

    def seed_defaults(self) -> dict[RoleTag, Role]:
        return run_atomic(seed_default_roles)

    def bootstrap_platform(self, payload: BootstrapPlatformRequest) -> User:
        """Seed the catalog and create the first super admin.

        This is the only path that grants privileges without a grantor, so it
        refuses to run once any super admin exists.
        """

        def _work(session: Session) -> User:
            acquire_transaction_lock(session, "governance.bootstrap")
            existing = session.exec(
                select(User.id)
                .join(Role, col(Role.id) == col(User.role_id))
                .where(Role.role_tag == RoleTag.SUPER_ADMIN)
            ).first()
            if existing is not None:
                raise ConflictError("platform already bootstrapped")
            roles = seed_default_roles(session)
            admin = User(
                tenant_id=None,
                username=payload.username,
                password_hash=hash_password(payload.password),
                role_id=roles[RoleTag.SUPER_ADMIN].id,
                is_active=True,
            )
            session.add(admin)
            session.flush()
            record_audit(
                session,
                tenant_id=None,
                actor_id=admin.id,
                action="governance.bootstrap",
                resource=f"users/{admin.id}",
                detail={"username": payload.username, "roles": [str(tag) for tag in roles]},
            )
            return admin

        admin = run_atomic(_work)
        logger.info("platform_bootstrapped", user_id=admin.id)
        return admin
