"""
Celery tasks for the billing sweeps.

Each task runs its sweep in a fresh event loop with a container (and
engine) that lives only for that run.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from subs.billing.dependencies import BillingContainer
from subs.billing.sweeps import BillingSweeps
from subs.celery_app import celery_app

logger = structlog.get_logger(__name__)

SweepJob = Callable[[BillingSweeps], Awaitable[dict[str, Any]]]


async def _run_sweep(job: SweepJob) -> dict[str, Any]:
    container = BillingContainer.from_settings()
    try:
        return await job(container.sweeps)
    finally:
        await container.dispose()


def run_sweep(name: str, job: SweepJob) -> dict[str, Any]:
    try:
        return asyncio.run(_run_sweep(job))
    except Exception as e:
        logger.error("billing.task.failed", task=name, error=str(e), exc_info=True)
        raise


@celery_app.task(name="billing.process_due_payments")
def process_due_payments_task() -> dict[str, Any]:
    """Charge subscriptions whose next payment date has arrived."""
    return run_sweep("process_due_payments", lambda sweeps: sweeps.process_due_payments())


@celery_app.task(name="billing.retry_failed_payments")
def retry_failed_payments_task() -> dict[str, Any]:
    """Retry past-due subscriptions whose retry delay has elapsed."""
    return run_sweep("retry_failed_payments", lambda sweeps: sweeps.retry_failed_payments())


@celery_app.task(name="billing.maintenance")
def billing_maintenance_task() -> dict[str, Any]:
    return run_sweep("maintenance", lambda sweeps: sweeps.run_maintenance())


__all__ = [
    "billing_maintenance_task",
    "process_due_payments_task",
    "retry_failed_payments_task",
    "run_sweep",
]
