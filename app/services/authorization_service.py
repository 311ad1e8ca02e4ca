from __future__ import annotations

from sqlmodel import Session, col, select

from app.domain.errors import AuthorityExceeded, NotFoundError, ValidationError
from app.domain.models import (
    Branch,
    EventEnvelope,
    Permission,
    PermissionScope,
    Role,
    RolePermission,
    RolePermissionWrite,
    User,
    UserPermission,
    UserPermissionWrite,
    now_utc,
)
from app.domain.permissions import PermissionScopeKind, RoleTag
from app.infra.audit import record_audit
from app.infra.db import get_engine, run_atomic
from app.infra.events import EVENT_PERMISSION_CHANGED, Notifier, event_bus
from app.infra.logging import get_logger
from app.infra.redis_state import RolePermissionCache

logger = get_logger(__name__)

PLATFORM_SCOPE_ID = "platform"


def tenant_scope(tenant_id: str | None) -> PermissionScope:
    return PermissionScope(kind=PermissionScopeKind.TENANT, scope_id=tenant_id or PLATFORM_SCOPE_ID)


class AuthorizationService:
    """Resolves a user's effective permission for a tenant or branch scope.

    Per-user overrides win over role grants. For a branch scope the branch
    override is consulted first, then the tenant-wide override. Anything not
    granted is denied.
    """

    def __init__(self, cache: RolePermissionCache | None = None) -> None:
        self._cache = cache if cache is not None else RolePermissionCache()

    @property
    def cache(self) -> RolePermissionCache:
        return self._cache

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def role_grants(self, session: Session, role_id: str, *, use_cache: bool) -> dict[str, bool]:
        if use_cache:
            cached = self._cache.get(role_id)
            if cached is not None:
                return cached
        rows = session.exec(
            select(Permission.name, RolePermission.granted)
            .join(RolePermission, col(RolePermission.permission_id) == col(Permission.id))
            .where(RolePermission.role_id == role_id)
        ).all()
        grants = {name: bool(granted) for name, granted in rows}
        if use_cache:
            self._cache.set(role_id, grants)
        return grants

    def _scope_chain(
        self,
        session: Session,
        user: User,
        scope: PermissionScope,
    ) -> list[tuple[PermissionScopeKind, str]] | None:
        """Override lookup order for a scope, or None when the scope is out of reach."""
        if scope.kind == PermissionScopeKind.BRANCH:
            branch = session.get(Branch, scope.scope_id)
            if branch is None:
                return None
            if user.tenant_id is not None and branch.tenant_id != user.tenant_id:
                return None
            return [
                (PermissionScopeKind.BRANCH, branch.id),
                (PermissionScopeKind.TENANT, branch.tenant_id),
            ]
        if user.tenant_id is not None and scope.scope_id != user.tenant_id:
            return None
        return [(PermissionScopeKind.TENANT, scope.scope_id)]

    def _overrides(
        self,
        session: Session,
        user_id: str,
        chain: list[tuple[PermissionScopeKind, str]],
    ) -> list[dict[str, bool]]:
        rows = session.exec(
            select(Permission.name, UserPermission.scope, UserPermission.scope_id, UserPermission.granted)
            .join(UserPermission, col(UserPermission.permission_id) == col(Permission.id))
            .where(UserPermission.user_id == user_id)
        ).all()
        layers: list[dict[str, bool]] = [{} for _ in chain]
        for name, scope_kind, scope_id, granted in rows:
            for index, (kind, chain_id) in enumerate(chain):
                if scope_kind == kind and scope_id == chain_id:
                    layers[index][name] = bool(granted)
        return layers

    def effective_map(
        self,
        session: Session,
        user_id: str,
        scope: PermissionScope | None = None,
        *,
        use_cache: bool,
    ) -> dict[str, bool]:
        user = session.get(User, user_id)
        if user is None or not user.is_active:
            return {}
        chain = self._scope_chain(session, user, scope or tenant_scope(user.tenant_id))
        if chain is None:
            return {}
        resolved = self.role_grants(session, user.role_id, use_cache=use_cache) if user.role_id else {}
        resolved = dict(resolved)
        # Apply the least specific layer first so narrower overrides win.
        for layer in reversed(self._overrides(session, user.id, chain)):
            resolved.update(layer)
        return resolved

    def resolve(
        self,
        session: Session,
        user_id: str,
        permission_name: str,
        scope: PermissionScope | None = None,
        *,
        use_cache: bool = True,
    ) -> bool:
        if session.exec(select(Permission.id).where(Permission.name == permission_name)).first() is None:
            return False
        return self.effective_map(session, user_id, scope, use_cache=use_cache).get(permission_name, False)

    def resolve_permission(self, user_id: str, permission_name: str, scope: PermissionScope | None = None) -> bool:
        with self._session() as session:
            return self.resolve(session, user_id, permission_name, scope)

    def authorize(self, user_id: str, permission_name: str, scope: PermissionScope | None = None) -> bool:
        allowed = self.resolve_permission(user_id, permission_name, scope)
        if not allowed:
            logger.info("authorization_denied", user_id=user_id, permission=permission_name)
        return allowed

    def effective_permissions(self, user_id: str, scope: PermissionScope | None = None) -> list[str]:
        with self._session() as session:
            if session.get(User, user_id) is None:
                raise NotFoundError("user not found")
            resolved = self.effective_map(session, user_id, scope, use_cache=True)
            return sorted(name for name, granted in resolved.items() if granted)


class DelegationGuard:
    """Grant and revoke writes that require the grantor to hold the permission.

    The grantor row is locked and re-evaluated without the cache inside the
    same transaction as the write, so a grantor who loses a permission
    concurrently cannot complete a delegation.
    """

    def __init__(
        self,
        resolver: AuthorizationService | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self._resolver = resolver or AuthorizationService()
        self._notifier = notifier if notifier is not None else event_bus

    @property
    def resolver(self) -> AuthorizationService:
        return self._resolver

    def lock_grantor(self, session: Session, grantor_id: str) -> User:
        grantor = session.exec(select(User).where(User.id == grantor_id).with_for_update()).first()
        if grantor is None or not grantor.is_active:
            raise AuthorityExceeded("grantor is unknown or inactive")
        return grantor

    def is_super_admin(self, session: Session, user: User) -> bool:
        if user.role_id is None:
            return False
        role = session.get(Role, user.role_id)
        return role is not None and role.role_tag == RoleTag.SUPER_ADMIN

    def require_authority(
        self,
        session: Session,
        grantor: User,
        permission_name: str,
        scope: PermissionScope,
    ) -> None:
        if not self._resolver.resolve(session, grantor.id, permission_name, scope, use_cache=False):
            logger.warning("delegation_denied", grantor_id=grantor.id, permission=permission_name, scope=scope.kind)
            raise AuthorityExceeded(f"You cannot grant permissions you don't own: {permission_name}")

    def require_role_authority(self, session: Session, grantor: User, permission_name: str) -> None:
        """Role edits count only the grantor's own role grants, never per-user overrides."""
        grants = self._resolver.role_grants(session, grantor.role_id, use_cache=False) if grantor.role_id else {}
        if not grants.get(permission_name, False):
            logger.warning("delegation_denied", grantor_id=grantor.id, permission=permission_name, scope="role")
            raise AuthorityExceeded(f"You cannot grant permissions you don't own: {permission_name}")

    def _permission(self, session: Session, permission_name: str) -> Permission:
        permission = session.exec(select(Permission).where(Permission.name == permission_name)).first()
        if permission is None:
            raise NotFoundError(f"permission not found: {permission_name}")
        return permission

    def _lock_role(self, session: Session, role_id: str) -> Role:
        role = session.exec(select(Role).where(Role.id == role_id).with_for_update()).first()
        if role is None:
            raise NotFoundError("role not found")
        return role

    def _check_role_edit(self, session: Session, grantor: User, role: Role) -> None:
        if self.is_super_admin(session, grantor):
            return
        if role.tenant_id is None:
            raise AuthorityExceeded("global roles can only be edited by a super admin")
        if role.tenant_id != grantor.tenant_id:
            raise AuthorityExceeded("role belongs to another tenant")
        if role.role_tag in {RoleTag.SUPER_ADMIN, RoleTag.TENANT_ADMIN}:
            raise AuthorityExceeded("privileged roles can only be edited by a super admin")

    def _publish(self, session: Session, tenant_id: str | None, actor_id: str, payload: dict[str, object]) -> None:
        self._notifier.publish(
            EventEnvelope(
                event_type=EVENT_PERMISSION_CHANGED,
                tenant_id=tenant_id or PLATFORM_SCOPE_ID,
                actor_id=actor_id,
                payload=payload,
            ),
            session,
        )

    def grant_to_role(
        self,
        session: Session,
        grantor: User,
        role: Role,
        permission_name: str,
        granted: bool,
    ) -> RolePermission:
        """Write one role grant inside the caller's transaction."""
        self._check_role_edit(session, grantor, role)
        permission = self._permission(session, permission_name)
        self.require_role_authority(session, grantor, permission_name)

        row = session.get(RolePermission, (role.id, permission.id))
        if row is None:
            row = RolePermission(role_id=role.id, permission_id=permission.id)
        row.granted = granted
        row.granted_by = grantor.id
        row.updated_at = now_utc()
        session.add(row)
        session.flush()
        record_audit(
            session,
            tenant_id=role.tenant_id,
            actor_id=grantor.id,
            action="permission.role.set",
            resource=f"roles/{role.id}",
            detail={"permission": permission_name, "granted": granted},
        )
        self._publish(
            session,
            role.tenant_id,
            grantor.id,
            {"role_id": role.id, "permission": permission_name, "granted": granted},
        )
        return row

    def set_role_permission(self, grantor_id: str, role_id: str, payload: RolePermissionWrite) -> RolePermission:
        def _work(session: Session) -> RolePermission:
            grantor = self.lock_grantor(session, grantor_id)
            role = self._lock_role(session, role_id)
            return self.grant_to_role(session, grantor, role, payload.permission_name, payload.granted)

        row = run_atomic(_work)
        self._resolver.cache.invalidate(role_id)
        logger.info("role_permission_set", role_id=role_id, permission=payload.permission_name, granted=payload.granted)
        return row

    def revoke_role_permission(self, grantor_id: str, role_id: str, permission_name: str) -> None:
        def _work(session: Session) -> None:
            grantor = self.lock_grantor(session, grantor_id)
            role = self._lock_role(session, role_id)
            self._check_role_edit(session, grantor, role)
            permission = self._permission(session, permission_name)
            self.require_role_authority(session, grantor, permission_name)
            row = session.get(RolePermission, (role.id, permission.id))
            if row is None:
                raise NotFoundError("role permission not found")
            session.delete(row)
            session.flush()
            record_audit(
                session,
                tenant_id=role.tenant_id,
                actor_id=grantor.id,
                action="permission.role.revoke",
                resource=f"roles/{role.id}",
                detail={"permission": permission_name},
            )
            self._publish(
                session,
                role.tenant_id,
                grantor.id,
                {"role_id": role.id, "permission": permission_name, "revoked": True},
            )

        run_atomic(_work)
        self._resolver.cache.invalidate(role_id)
        logger.info("role_permission_revoked", role_id=role_id, permission=permission_name)

    def _target_scope(
        self,
        session: Session,
        target: User,
        kind: PermissionScopeKind,
        scope_id: str | None,
    ) -> PermissionScope:
        if kind == PermissionScopeKind.BRANCH:
            if not scope_id:
                raise ValidationError("branch scope requires scope_id")
            branch = session.get(Branch, scope_id)
            if branch is None or (target.tenant_id is not None and branch.tenant_id != target.tenant_id):
                raise NotFoundError("branch not found")
            return PermissionScope(kind=kind, scope_id=branch.id)
        if target.tenant_id is not None:
            if scope_id and scope_id != target.tenant_id:
                raise ValidationError("tenant scope must be the user's tenant")
            return tenant_scope(target.tenant_id)
        return tenant_scope(scope_id)

    def _target_user(self, session: Session, grantor: User, target_user_id: str) -> User:
        target = session.get(User, target_user_id)
        if target is None:
            raise NotFoundError("user not found")
        if target.tenant_id != grantor.tenant_id and not self.is_super_admin(session, grantor):
            raise AuthorityExceeded("grantor and user belong to different tenants")
        return target

    def set_user_permission(self, grantor_id: str, target_user_id: str, payload: UserPermissionWrite) -> UserPermission:
        def _work(session: Session) -> UserPermission:
            grantor = self.lock_grantor(session, grantor_id)
            target = self._target_user(session, grantor, target_user_id)
            scope = self._target_scope(session, target, payload.scope, payload.scope_id)
            permission = self._permission(session, payload.permission_name)
            self.require_authority(session, grantor, payload.permission_name, scope)

            row = session.exec(
                select(UserPermission)
                .where(UserPermission.user_id == target.id)
                .where(UserPermission.permission_id == permission.id)
                .where(UserPermission.scope == scope.kind)
                .where(UserPermission.scope_id == scope.scope_id)
            ).first()
            if row is None:
                row = UserPermission(
                    user_id=target.id,
                    permission_id=permission.id,
                    scope=scope.kind,
                    scope_id=scope.scope_id,
                    granted=payload.granted,
                )
            row.granted = payload.granted
            row.granted_by = grantor.id
            row.updated_at = now_utc()
            session.add(row)
            session.flush()
            record_audit(
                session,
                tenant_id=target.tenant_id,
                actor_id=grantor.id,
                action="permission.user.set",
                resource=f"users/{target.id}",
                detail={
                    "permission": payload.permission_name,
                    "scope": str(scope.kind),
                    "scope_id": scope.scope_id,
                    "granted": payload.granted,
                },
            )
            self._publish(
                session,
                target.tenant_id,
                grantor.id,
                {"user_id": target.id, "permission": payload.permission_name, "granted": payload.granted},
            )
            return row

        row = run_atomic(_work)
        logger.info(
            "user_permission_set",
            user_id=target_user_id,
            permission=payload.permission_name,
            scope=str(row.scope),
            granted=row.granted,
        )
        return row

    def revoke_user_permission(
        self,
        grantor_id: str,
        target_user_id: str,
        permission_name: str,
        scope_kind: PermissionScopeKind = PermissionScopeKind.TENANT,
        scope_id: str | None = None,
    ) -> None:
        def _work(session: Session) -> None:
            grantor = self.lock_grantor(session, grantor_id)
            target = self._target_user(session, grantor, target_user_id)
            scope = self._target_scope(session, target, scope_kind, scope_id)
            permission = self._permission(session, permission_name)
            self.require_authority(session, grantor, permission_name, scope)
            row = session.exec(
                select(UserPermission)
                .where(UserPermission.user_id == target.id)
                .where(UserPermission.permission_id == permission.id)
                .where(UserPermission.scope == scope.kind)
                .where(UserPermission.scope_id == scope.scope_id)
            ).first()
            if row is None:
                raise NotFoundError("user permission override not found")
            session.delete(row)
            session.flush()
            record_audit(
                session,
                tenant_id=target.tenant_id,
                actor_id=grantor.id,
                action="permission.user.revoke",
                resource=f"users/{target.id}",
                detail={"permission": permission_name, "scope": str(scope.kind), "scope_id": scope.scope_id},
            )
            self._publish(
                session,
                target.tenant_id,
                grantor.id,
                {"user_id": target.id, "permission": permission_name, "revoked": True},
            )

        run_atomic(_work)
        logger.info("user_permission_revoked", user_id=target_user_id, permission=permission_name)

    def list_user_permissions(self, user_id: str) -> list[tuple[UserPermission, str]]:
        with Session(get_engine(), expire_on_commit=False) as session:
            rows = session.exec(
                select(UserPermission, Permission.name)
                .join(Permission, col(Permission.id) == col(UserPermission.permission_id))
                .where(UserPermission.user_id == user_id)
                .order_by(Permission.name)
            ).all()
            return [(row, name) for row, name in rows]
