from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, select

from app.domain.errors import ConflictError, NotFoundError, ValidationError
from app.domain.models import PlanCreate, PlanLimit, PlanLimitWrite
from app.domain.plan_limits import (
    KEY_KDS_ENABLED,
    KEY_MAX_BRANCHES,
    BoolLimit,
    LimitDataType,
    NumberLimit,
)
from app.infra import db
from app.services.plan_catalog_service import PlanCatalogService


@pytest.fixture()
def catalog_engine(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[Engine, None, None]:
    test_engine = create_engine(
        f"sqlite:///{tmp_path / 'catalog_test.db'}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    yield test_engine
    test_engine.dispose()


def test_seed_default_plans_is_idempotent(catalog_engine: Engine) -> None:
    catalog = PlanCatalogService()
    first = catalog.seed_default_plans()
    second = catalog.seed_default_plans()

    assert [item.id for item in first] == [item.id for item in second]
    limits = {item.name: {limit.key: limit.value for limit in item.limits} for item in second}
    assert limits["Basic"] == {
        "kds_enabled": "false",
        "max_branches": "3",
        "max_staff": "5",
        "storage_quota_gb": "10",
    }
    assert limits["Enterprise"]["storage_quota_gb"] == "200"
    with Session(catalog_engine) as session:
        assert len(session.exec(select(PlanLimit)).all()) == 12


def test_seed_keeps_operator_edits(catalog_engine: Engine) -> None:
    catalog = PlanCatalogService()
    basic = next(item for item in catalog.seed_default_plans() if item.name == "Basic")
    catalog.upsert_limit(basic.id, PlanLimitWrite(key=KEY_MAX_BRANCHES, value="4", data_type=LimitDataType.NUMBER))

    catalog.seed_default_plans()
    with Session(catalog_engine) as session:
        assert catalog.get_limit(session, basic.id, KEY_MAX_BRANCHES) == NumberLimit(key=KEY_MAX_BRANCHES, value=4)
        assert catalog.get_limit(session, basic.id, KEY_KDS_ENABLED) == BoolLimit(key=KEY_KDS_ENABLED, value=False)
        assert catalog.get_limit(session, basic.id, "max_menu_items") is None


def test_create_plan_validation(catalog_engine: Engine) -> None:
    catalog = PlanCatalogService()
    created = catalog.create_plan(
        PlanCreate(
            name="Food Truck",
            price_cents=1999,
            limits=[PlanLimitWrite(key=KEY_MAX_BRANCHES, value="1", data_type=LimitDataType.NUMBER)],
        )
    )
    assert catalog.get_plan(created.id).limits[0].value == "1"

    with pytest.raises(ConflictError):
        catalog.create_plan(PlanCreate(name="Food Truck"))
    with pytest.raises(ValidationError):
        catalog.create_plan(
            PlanCreate(
                name="Twice",
                limits=[
                    PlanLimitWrite(key=KEY_MAX_BRANCHES, value="1", data_type=LimitDataType.NUMBER),
                    PlanLimitWrite(key=KEY_MAX_BRANCHES, value="2", data_type=LimitDataType.NUMBER),
                ],
            )
        )
    with pytest.raises(NotFoundError):
        catalog.get_plan("missing")
    with pytest.raises(NotFoundError):
        catalog.upsert_limit("missing", PlanLimitWrite(key="max_staff", value="1", data_type=LimitDataType.NUMBER))

    retired = catalog.create_plan(PlanCreate(name="Retired", is_active=False))
    assert retired.id not in {item.id for item in catalog.list_plans()}
    assert retired.id in {item.id for item in catalog.list_plans(include_inactive=True)}
