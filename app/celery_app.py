from __future__ import annotations

import os

from celery import Celery
from celery.schedules import crontab

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", REDIS_URL)

celery_app = Celery(
    "rms_governance",
    broker=CELERY_BROKER_URL,
    backend=CELERY_BROKER_URL,
    include=["app.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    worker_prefetch_multiplier=1,
    result_expires=3600,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    broker_connection_retry_on_startup=True,
    beat_schedule={
        "reconcile-subscriptions-daily": {
            "task": "app.tasks.reconcile_subscriptions",
            "schedule": crontab(hour=2, minute=0),
        },
        "reconcile-trials-daily": {
            "task": "app.tasks.reconcile_trials",
            "schedule": crontab(hour=2, minute=0),
        },
        "reconcile-branch-status-hourly": {
            "task": "app.tasks.reconcile_branch_operating_status",
            "schedule": crontab(minute=0),
        },
    },
)
