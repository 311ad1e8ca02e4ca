from __future__ import annotations

from zoneinfo import ZoneInfo

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.domain.errors import ConflictError, NotFoundError, ValidationError
from app.domain.models import Branch, BranchCreate, UserPermission, now_utc
from app.domain.permissions import PermissionScopeKind
from app.domain.plan_limits import KEY_MAX_BRANCHES
from app.infra.audit import record_audit
from app.infra.db import get_engine, run_atomic
from app.infra.logging import get_logger
from app.services.lifecycle_service import BRANCH_TIMEZONE, branch_status_at, local_time_of_day
from app.services.quota_service import QuotaService
from app.services.subscription_service import lock_tenant

logger = get_logger(__name__)


class BranchService:
    def __init__(self, quota: QuotaService | None = None) -> None:
        self._quota = quota or QuotaService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def create_branch(self, tenant_id: str, actor_id: str | None, payload: BranchCreate) -> Branch:
        name = payload.name.strip()
        if not name:
            raise ValidationError("branch name is empty")

        def _work(session: Session) -> Branch:
            self._quota.enforce_quota(session, tenant_id, KEY_MAX_BRANCHES, 1)
            local_time = local_time_of_day(now_utc(), ZoneInfo(BRANCH_TIMEZONE))
            branch = Branch(
                tenant_id=tenant_id,
                name=name,
                opening_time=payload.opening_time,
                closing_time=payload.closing_time,
                status=branch_status_at(payload.opening_time, payload.closing_time, local_time),
                created_by=actor_id,
            )
            session.add(branch)
            try:
                session.flush()
            except IntegrityError as exc:
                raise ConflictError("branch name already exists in tenant") from exc
            self._quota.record_usage(tenant_id, KEY_MAX_BRANCHES, 1, session=session)
            record_audit(
                session,
                tenant_id=tenant_id,
                actor_id=actor_id,
                action="branch.create",
                resource=f"branches/{branch.id}",
                detail={"name": name},
            )
            return branch

        branch = run_atomic(_work)
        logger.info("branch_created", tenant_id=tenant_id, branch_id=branch.id)
        return branch

    def list_branches(self, tenant_id: str) -> list[Branch]:
        with self._session() as session:
            return list(session.exec(select(Branch).where(Branch.tenant_id == tenant_id).order_by(Branch.name)).all())

    def get_branch(self, tenant_id: str, branch_id: str) -> Branch:
        with self._session() as session:
            branch = session.exec(
                select(Branch).where(Branch.tenant_id == tenant_id).where(Branch.id == branch_id)
            ).first()
            if branch is None:
                raise NotFoundError("branch not found")
            return branch

    def delete_branch(self, tenant_id: str, actor_id: str | None, branch_id: str) -> None:
        def _work(session: Session) -> None:
            lock_tenant(session, tenant_id)
            branch = session.exec(
                select(Branch).where(Branch.tenant_id == tenant_id).where(Branch.id == branch_id).with_for_update()
            ).first()
            if branch is None:
                raise NotFoundError("branch not found")
            overrides = session.exec(
                select(UserPermission)
                .where(UserPermission.scope == PermissionScopeKind.BRANCH)
                .where(UserPermission.scope_id == branch_id)
            ).all()
            for override in overrides:
                session.delete(override)
            session.delete(branch)
            session.flush()
            self._quota.record_usage(tenant_id, KEY_MAX_BRANCHES, -1, session=session)
            record_audit(
                session,
                tenant_id=tenant_id,
                actor_id=actor_id,
                action="branch.delete",
                resource=f"branches/{branch_id}",
                detail={"name": branch.name, "overrides_removed": len(overrides)},
            )

        run_atomic(_work)
        logger.info("branch_deleted", tenant_id=tenant_id, branch_id=branch_id)
