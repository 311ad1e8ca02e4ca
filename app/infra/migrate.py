from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

from app.infra.db import run_atomic
from app.infra.logging import get_logger, setup_logging
from app.services.permission_service import seed_default_roles
from app.services.plan_catalog_service import PlanCatalogService

ROOT = Path(__file__).resolve().parents[2]

logger = get_logger(__name__)


def run_upgrade_head() -> None:
    config = Config(str(ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(ROOT / "infra" / "migrations"))
    command.upgrade(config, "head")


def seed_catalog() -> None:
    """Seed the default plans, permissions and global roles after migrating."""
    plans = PlanCatalogService().seed_default_plans()
    roles = run_atomic(seed_default_roles)
    logger.info("catalog_seeded", plans=[item.name for item in plans], roles=[str(tag) for tag in roles])


if __name__ == "__main__":
    setup_logging()
    run_upgrade_head()
    seed_catalog()
