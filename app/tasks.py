"""Scheduled lifecycle jobs.

Each task runs one reconciler pass and returns its report as a plain dict.
Individual items that fail are recorded in the report and retried on the next
scheduled run, so the tasks themselves do not retry.
"""

from __future__ import annotations

from typing import Any

from app.celery_app import celery_app
from app.infra.logging import setup_logging
from app.services.lifecycle_service import LifecycleService


def get_lifecycle_service() -> LifecycleService:
    return LifecycleService()


@celery_app.task(name="app.tasks.reconcile_subscriptions")
def reconcile_subscriptions() -> dict[str, Any]:
    setup_logging()
    report = get_lifecycle_service().reconcile_subscriptions()
    return report.model_dump(mode="json")


@celery_app.task(name="app.tasks.reconcile_trials")
def reconcile_trials() -> dict[str, Any]:
    setup_logging()
    report = get_lifecycle_service().reconcile_trials()
    return report.model_dump(mode="json")


@celery_app.task(name="app.tasks.reconcile_branch_operating_status")
def reconcile_branch_operating_status() -> dict[str, Any]:
    setup_logging()
    report = get_lifecycle_service().reconcile_branch_operating_status()
    return report.model_dump(mode="json")
