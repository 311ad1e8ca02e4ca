from __future__ import annotations

from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.domain.errors import ConfigurationError, ConflictError, NotFoundError, ValidationError
from app.domain.models import (
    BillingCycle,
    Plan,
    PlanCreate,
    PlanLimit,
    PlanLimitRead,
    PlanLimitWrite,
    PlanRead,
    now_utc,
)
from app.domain.plan_limits import (
    KEY_KDS_ENABLED,
    KEY_MAX_BRANCHES,
    KEY_MAX_STAFF,
    KEY_STORAGE_QUOTA_GB,
    LimitDataType,
    PlanLimitValue,
    parse_limit,
)
from app.infra.db import get_engine, run_atomic
from app.infra.logging import get_logger

logger = get_logger(__name__)


class PlanCatalogService:
    DEFAULT_PLANS: tuple[dict[str, Any], ...] = (
        {
            "name": "Basic",
            "price_cents": 2999,
            "limits": {KEY_MAX_BRANCHES: 3, KEY_STORAGE_QUOTA_GB: 10, KEY_MAX_STAFF: 5, KEY_KDS_ENABLED: False},
        },
        {
            "name": "Pro",
            "price_cents": 9999,
            "limits": {KEY_MAX_BRANCHES: 5, KEY_STORAGE_QUOTA_GB: 50, KEY_MAX_STAFF: 20, KEY_KDS_ENABLED: True},
        },
        {
            "name": "Enterprise",
            "price_cents": 14999,
            "limits": {KEY_MAX_BRANCHES: 10, KEY_STORAGE_QUOTA_GB: 200, KEY_MAX_STAFF: 50, KEY_KDS_ENABLED: True},
        },
    )

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _validate_limit(self, item: PlanLimitWrite) -> None:
        key = item.key.strip()
        if not key:
            raise ValidationError("plan limit key is empty")
        try:
            parse_limit(key, item.value, item.data_type)
        except ConfigurationError as exc:
            raise ValidationError(str(exc)) from exc

    def _to_read(self, session: Session, plan: Plan) -> PlanRead:
        limits = session.exec(select(PlanLimit).where(PlanLimit.plan_id == plan.id).order_by(PlanLimit.key)).all()
        return PlanRead(
            id=plan.id,
            name=plan.name,
            description=plan.description,
            price_cents=plan.price_cents,
            billing_cycle=plan.billing_cycle,
            is_active=plan.is_active,
            created_at=plan.created_at,
            limits=[PlanLimitRead.model_validate(item) for item in limits],
        )

    def create_plan(self, payload: PlanCreate) -> PlanRead:
        keys = [item.key.strip() for item in payload.limits]
        if len(set(keys)) != len(keys):
            raise ValidationError("plan limit keys must be unique")
        for item in payload.limits:
            self._validate_limit(item)

        def _work(session: Session) -> PlanRead:
            plan = Plan(
                name=payload.name,
                description=payload.description,
                price_cents=payload.price_cents,
                billing_cycle=payload.billing_cycle,
                is_active=payload.is_active,
            )
            session.add(plan)
            try:
                session.flush()
            except IntegrityError as exc:
                raise ConflictError("plan name already exists") from exc
            for item in payload.limits:
                session.add(
                    PlanLimit(
                        plan_id=plan.id,
                        key=item.key.strip(),
                        value=item.value,
                        data_type=item.data_type,
                        description=item.description,
                    )
                )
            session.flush()
            return self._to_read(session, plan)

        plan_read = run_atomic(_work)
        logger.info("plan_created", plan_id=plan_read.id, name=plan_read.name)
        return plan_read

    def list_plans(self, *, include_inactive: bool = False) -> list[PlanRead]:
        with self._session() as session:
            statement = select(Plan).order_by(Plan.price_cents, Plan.name)
            if not include_inactive:
                statement = statement.where(Plan.is_active == True)  # noqa: E712
            return [self._to_read(session, plan) for plan in session.exec(statement).all()]

    def get_plan(self, plan_id: str) -> PlanRead:
        with self._session() as session:
            plan = session.get(Plan, plan_id)
            if plan is None:
                raise NotFoundError("plan not found")
            return self._to_read(session, plan)

    def get_plan_by_name(self, session: Session, name: str) -> Plan | None:
        return session.exec(select(Plan).where(Plan.name == name)).first()

    def get_limit(self, session: Session, plan_id: str, key: str) -> PlanLimitValue | None:
        row = session.exec(
            select(PlanLimit).where(PlanLimit.plan_id == plan_id).where(PlanLimit.key == key)
        ).first()
        if row is None:
            return None
        return parse_limit(row.key, row.value, row.data_type)

    def upsert_limit(self, plan_id: str, payload: PlanLimitWrite) -> PlanLimitRead:
        self._validate_limit(payload)
        key = payload.key.strip()

        def _work(session: Session) -> PlanLimitRead:
            if session.get(Plan, plan_id) is None:
                raise NotFoundError("plan not found")
            row = session.exec(
                select(PlanLimit).where(PlanLimit.plan_id == plan_id).where(PlanLimit.key == key)
            ).first()
            if row is None:
                row = PlanLimit(plan_id=plan_id, key=key, value=payload.value, data_type=payload.data_type)
            row.value = payload.value
            row.data_type = payload.data_type
            if payload.description is not None:
                row.description = payload.description
            row.updated_at = now_utc()
            session.add(row)
            session.flush()
            return PlanLimitRead.model_validate(row)

        result = run_atomic(_work)
        logger.info("plan_limit_upserted", plan_id=plan_id, key=key, value=payload.value)
        return result

    def seed_default_plans(self) -> list[PlanRead]:
        def _work(session: Session) -> list[PlanRead]:
            seeded: list[PlanRead] = []
            for definition in self.DEFAULT_PLANS:
                plan = self.get_plan_by_name(session, definition["name"])
                if plan is None:
                    plan = Plan(
                        name=definition["name"],
                        description=f"{definition['name']} plan",
                        price_cents=definition["price_cents"],
                        billing_cycle=BillingCycle.MONTHLY,
                    )
                    session.add(plan)
                    session.flush()
                existing = {
                    row.key
                    for row in session.exec(select(PlanLimit).where(PlanLimit.plan_id == plan.id)).all()
                }
                for key, value in definition["limits"].items():
                    if key in existing:
                        continue
                    if isinstance(value, bool):
                        raw, data_type = ("true" if value else "false"), LimitDataType.BOOLEAN
                    else:
                        raw, data_type = str(value), LimitDataType.NUMBER
                    session.add(
                        PlanLimit(
                            plan_id=plan.id,
                            key=key,
                            value=raw,
                            data_type=data_type,
                            description=f"Limit for {key} in {plan.name} plan",
                        )
                    )
                session.flush()
                seeded.append(self._to_read(session, plan))
            return seeded

        return run_atomic(_work)
