"""
Celery application and beat schedule.

Run a worker with ``celery -A payship.worker worker`` and the scheduler with
``celery -A payship.worker beat``.
"""

from datetime import timedelta

from celery import Celery

from payship.core.config import get_settings
from payship.core.logging import configure_logging

settings = get_settings()
configure_logging()

celery_app = Celery(
    "payship",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "payship.services.shipments.tasks",
        "payship.services.payments.tasks",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    broker_connection_timeout=2,
    result_expires=3600,
    beat_schedule={
        "retry-failed-shipments": {
            "task": "shipments.retry_failed_shipments",
            "schedule": timedelta(minutes=settings.shipment_retry_interval_minutes),
        },
        "repair-inconsistent-orders": {
            "task": "payments.repair_inconsistent_orders",
            "schedule": timedelta(minutes=settings.repair_interval_minutes),
        },
        "cleanup-stale-orders": {
            "task": "payments.cleanup_stale_orders",
            "schedule": timedelta(minutes=settings.cleanup_interval_minutes),
        },
    },
)

app = celery_app
