"""
Celery application configuration.

Registers the billing sweeps on a fixed beat schedule taken from settings.
"""

from typing import Any

import structlog
from celery import Celery
from kombu import Queue

from subs.settings import get_settings

logger = structlog.get_logger(__name__)

settings = get_settings()

celery_app = Celery(
    "subs_billing",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=["subs.billing.tasks"],
)

celery_app.conf.update(
    task_routes={
        "billing.*": {"queue": "billing"},
    },
    task_default_queue="default",
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("billing", routing_key="billing"),
    ),
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    result_expires=3600,
    task_track_started=True,
    task_time_limit=settings.celery.task_time_limit,
    task_soft_time_limit=settings.celery.task_soft_time_limit,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,
)


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def setup_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    """Billing beat schedule."""
    from subs.billing.tasks import (
        billing_maintenance_task,
        process_due_payments_task,
        retry_failed_payments_task,
    )

    sender.add_periodic_task(
        float(settings.celery.process_payments_interval_seconds),
        process_due_payments_task.s(),
        name="billing-process-due-payments",
    )
    sender.add_periodic_task(
        float(settings.celery.retry_payments_interval_seconds),
        retry_failed_payments_task.s(),
        name="billing-retry-failed-payments",
    )
    sender.add_periodic_task(
        float(settings.celery.maintenance_interval_seconds),
        billing_maintenance_task.s(),
        name="billing-maintenance",
    )
    logger.info("celery.beat.configured", tasks=3)


__all__ = ["celery_app"]
