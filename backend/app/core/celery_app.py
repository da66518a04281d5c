"""Celery application configuration.

Only the daily recurring billing batch runs here; it is safe to redeliver
because a renewal never charges a subscription whose period already moved.
"""

from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "webtoon_studio",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    result_expires=7 * 24 * 3600,
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.BILLING_BATCH_TIME_LIMIT_SECONDS,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    broker_connection_retry_on_startup=True,
    task_routes={"billing.*": {"queue": "billing"}},
    beat_schedule={
        "billing-recurring-payments-daily": {
            "task": "billing.process_recurring_payments",
            "schedule": crontab(
                hour=settings.BILLING_RUN_HOUR_UTC,
                minute=settings.BILLING_RUN_MINUTE_UTC,
            ),
        },
    },
)

celery_app.autodiscover_tasks(["app.modules.billing"])
