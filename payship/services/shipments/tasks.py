"""
Celery tasks for courier shipment creation.

Each task runs the async shipment code on its own event loop with a fresh
database session and disposes of the engine before returning.
"""

import asyncio
import uuid
from typing import Any

from celery import Task

from payship.core.exceptions import RepositoryError
from payship.core.logging import get_logger
from payship.database.connection import close_database_connections, get_session
from payship.services.orders.repository import OrderRepository
from payship.services.shipments.manager import build_shipment_manager
from payship.worker import celery_app

logger = get_logger(__name__)


class ShipmentTask(Task):
    """
    Base task for shipment work.

    Database errors are retried with backoff. Courier failures are recorded
    on the order by the manager and picked up by the retry sweep instead.
    """

    autoretry_for = (RepositoryError,)
    retry_kwargs = {"max_retries": 3}
    retry_backoff = True
    retry_backoff_max = 300
    retry_jitter = True

    def on_failure(self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any) -> None:
        logger.error(
            "Shipment task failed",
            task_id=task_id,
            task_name=self.name,
            exception=str(exc),
            args=args,
            exc_info=einfo,
        )

    def on_retry(self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any) -> None:
        logger.warning(
            "Shipment task retrying",
            task_id=task_id,
            task_name=self.name,
            exception=str(exc),
            retry_count=self.request.retries,
        )


async def _create_shipment(order_id: uuid.UUID) -> dict[str, Any]:
    try:
        async with get_session() as session:
            manager = build_shipment_manager(OrderRepository(session))
            outcome = await manager.create_shipment(order_id)
            return outcome.to_dict()
    finally:
        await close_database_connections()


async def _retry_failed_shipments() -> dict[str, int]:
    try:
        async with get_session() as session:
            manager = build_shipment_manager(OrderRepository(session))
            return await manager.retry_failed_shipments()
    finally:
        await close_database_connections()


@celery_app.task(
    bind=True,
    base=ShipmentTask,
    name="shipments.create_shipment",
    time_limit=120,
    soft_time_limit=90,
)
def create_shipment_task(self: Task, order_id: str) -> dict[str, Any]:
    """
    Create the courier shipment for a freshly paid order.

    Args:
        self: Task instance
        order_id: Order id as a string

    Returns:
        Shipment outcome
    """
    logger.info("Processing shipment task", task_id=self.request.id, order_id=order_id)
    result = asyncio.run(_create_shipment(uuid.UUID(order_id)))
    logger.info("Shipment task completed", task_id=self.request.id, result=result)
    return result


@celery_app.task(
    bind=True,
    base=ShipmentTask,
    name="shipments.retry_failed_shipments",
    time_limit=1800,
    soft_time_limit=1740,
)
def retry_failed_shipments_task(self: Task) -> dict[str, int]:
    """Re-attempt shipment creation for confirmed courier orders without a waybill."""
    logger.info("Starting shipment retry sweep", task_id=self.request.id)
    return asyncio.run(_retry_failed_shipments())


# A publish that cannot reach the broker gives up quickly; the retry sweep
# covers orders whose task was never queued.
ENQUEUE_RETRY_POLICY = {
    "max_retries": 2,
    "interval_start": 0,
    "interval_step": 0.5,
    "interval_max": 1,
}


def enqueue_shipment(order_id: uuid.UUID) -> None:
    """Queue shipment creation; used as the reconciler's shipment dispatcher."""
    create_shipment_task.apply_async(
        args=[str(order_id)], retry=True, retry_policy=ENQUEUE_RETRY_POLICY
    )
