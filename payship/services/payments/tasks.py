"""
Celery tasks for the payment repair and stale-order cleanup sweeps.
"""

import asyncio
from typing import Any

from celery import Task

from payship.core.exceptions import RepositoryError
from payship.core.logging import get_logger
from payship.database.connection import close_database_connections, get_session
from payship.services.inventory.stock_ledger import StockLedger
from payship.services.orders.repository import OrderRepository
from payship.services.payments.reconciler import OrderPaymentReconciler, build_reconciler
from payship.services.shipments.tasks import enqueue_shipment
from payship.worker import celery_app

logger = get_logger(__name__)


class SweepTask(Task):
    autoretry_for = (RepositoryError,)
    retry_kwargs = {"max_retries": 2}
    retry_backoff = True
    retry_backoff_max = 600

    def on_failure(self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any) -> None:
        logger.error(
            "Payment sweep failed",
            task_id=task_id,
            task_name=self.name,
            exception=str(exc),
            exc_info=einfo,
        )


def _reconciler(session: Any) -> OrderPaymentReconciler:
    return build_reconciler(
        repository=OrderRepository(session),
        ledger=StockLedger(session),
        shipment_dispatcher=enqueue_shipment,
    )


async def _repair() -> dict[str, int]:
    try:
        async with get_session() as session:
            report = await _reconciler(session).repair_inconsistent_orders()
            return report.to_dict()
    finally:
        await close_database_connections()


async def _cleanup() -> dict[str, int]:
    try:
        async with get_session() as session:
            report = await _reconciler(session).cleanup_stale_orders()
            return report.to_dict()
    finally:
        await close_database_connections()


@celery_app.task(
    bind=True,
    base=SweepTask,
    name="payments.repair_inconsistent_orders",
    time_limit=900,
    soft_time_limit=840,
)
def repair_inconsistent_orders_task(self: Task) -> dict[str, int]:
    """Resolve orders carrying both confirmation and cancellation times."""
    logger.info("Starting repair sweep", task_id=self.request.id)
    result = asyncio.run(_repair())
    logger.info("Repair sweep task completed", task_id=self.request.id, result=result)
    return result


@celery_app.task(
    bind=True,
    base=SweepTask,
    name="payments.cleanup_stale_orders",
    time_limit=900,
    soft_time_limit=840,
)
def cleanup_stale_orders_task(self: Task) -> dict[str, int]:
    """Purge never-paid orders and release stock of expired failures."""
    logger.info("Starting cleanup sweep", task_id=self.request.id)
    result = asyncio.run(_cleanup())
    logger.info("Cleanup sweep task completed", task_id=self.request.id, result=result)
    return result
