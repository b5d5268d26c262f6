"""
Shipment lifecycle for courier orders.

A paid, confirmed courier order gets exactly one waybill. Creation failures
are recorded on the order and retried by a scheduled sweep until the attempt
cap, after which the order is listed for manual intervention.
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from payship.core.config import Settings, get_settings
from payship.core.exceptions import BusinessConflictError, PayshipError
from payship.core.logging import bind_order_id, get_logger
from payship.database.models.order import DeliveryProvider, Order
from payship.services.delivery.adapters import CourierAdapter, ProviderCapability
from payship.services.delivery.courier_client import (
    DEFAULT_SHIPMENT_DESCRIPTION,
    ShipmentRequest,
    TrackingResult,
    get_courier_client,
)
from payship.services.delivery.router import should_create_shipment
from payship.services.delivery.zones import DeliveryZoneConfig
from payship.services.orders.repository import OrderRepository

logger = get_logger(__name__)


class ShipmentNotTrackableError(BusinessConflictError):
    default_code = "SHIPMENT_NOT_TRACKABLE"


@dataclass(frozen=True)
class ShipmentOutcome:
    order_id: uuid.UUID
    created: bool
    waybill: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": str(self.order_id),
            "created": self.created,
            "waybill": self.waybill,
            "error": self.error,
            "skipped": self.skipped,
        }


def build_shipment_request(order: Order) -> ShipmentRequest:
    """Shipment request from the order's delivery address and item snapshot."""
    address = order.address
    phone = address.phone if address is not None else None
    if not phone and order.customer is not None:
        phone = order.customer.phone
    names = ", ".join(item.name for item in order.items)

    return ShipmentRequest(
        order_id=str(order.id),
        customer_name=address.full_name if address is not None else "",
        address=address.street if address is not None else "",
        postal_code=address.postal_code if address is not None else "",
        city=address.city if address is not None else "",
        state=address.state if address is not None else "",
        phone=phone or "",
        total_amount=Decimal(order.total_amount) / 100,
        quantity=order.total_quantity,
        weight_grams=order.total_weight_grams,
        description=names or DEFAULT_SHIPMENT_DESCRIPTION,
    )


class ShipmentLifecycleManager:
    """
    Creates, retries and tracks courier shipments.

    Attributes:
        repository: Order data access
        courier: Courier adapter, the only provider able to ship
        max_attempts: Creation attempts before an order needs a human
    """

    def __init__(
        self,
        repository: OrderRepository,
        courier: CourierAdapter,
        max_attempts: int = 3,
    ):
        if not courier.supports(ProviderCapability.CREATE_SHIPMENT):
            raise ValueError("Shipment manager requires a provider that can create shipments")
        self.repository = repository
        self.courier = courier
        self.max_attempts = max_attempts

    async def create_shipment(self, order_id: uuid.UUID) -> ShipmentOutcome:
        """
        Create the courier shipment for an order if it still needs one.

        Upstream or address problems are recorded on the order, not raised.

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        bind_order_id(order_id)
        order = await self.repository.get_or_raise(order_id)

        if not should_create_shipment(order):
            logger.info(
                "Shipment not required",
                order_id=str(order_id),
                status=order.status.value,
                payment_status=order.payment_status.value,
                has_waybill=bool(order.waybill),
            )
            return ShipmentOutcome(order_id=order_id, created=False, waybill=order.waybill, skipped=True)

        if order.shipment_attempts >= self.max_attempts:
            logger.warning(
                "Shipment attempts exhausted",
                order_id=str(order_id),
                attempts=order.shipment_attempts,
            )
            return ShipmentOutcome(
                order_id=order_id,
                created=False,
                error=order.shipment_last_error,
                skipped=True,
            )

        result = await self.courier.create_shipment(build_shipment_request(order))

        if not result.success:
            error = result.error or "Shipment creation failed"
            await self.repository.record_shipment_failure(order_id, error)
            logger.warning(
                "Shipment creation failed",
                order_id=str(order_id),
                attempt=order.shipment_attempts + 1,
                max_attempts=self.max_attempts,
                error=error,
            )
            return ShipmentOutcome(order_id=order_id, created=False, error=error)

        if not await self.repository.mark_shipment_created(order_id, result.waybill):
            logger.warning(
                "Waybill received for an order no longer awaiting shipment",
                order_id=str(order_id),
                waybill=result.waybill,
            )
            return ShipmentOutcome(order_id=order_id, created=False, waybill=result.waybill, skipped=True)

        logger.info("Shipment created", order_id=str(order_id), waybill=result.waybill)
        return ShipmentOutcome(order_id=order_id, created=True, waybill=result.waybill)

    async def retry_failed_shipments(self) -> dict[str, int]:
        """
        Re-attempt every confirmed courier order still without a waybill.

        Returns:
            Counts of total, successful and failed attempts
        """
        candidates = [order.id for order in await self.repository.list_shipment_candidates(self.max_attempts)]
        results = {"total": len(candidates), "success": 0, "failed": 0}

        for order_id in candidates:
            try:
                outcome = await self.create_shipment(order_id)
            except PayshipError as e:
                logger.error("Shipment retry errored", order_id=str(order_id), error=str(e))
                results["failed"] += 1
                continue
            if outcome.created:
                results["success"] += 1
            elif not outcome.skipped:
                results["failed"] += 1

        logger.info("Shipment retry sweep finished", **results)
        return results

    async def orders_needing_intervention(self) -> list[dict[str, Any]]:
        """Paid courier orders that used up their creation attempts."""
        orders = await self.repository.list_needing_intervention(self.max_attempts)
        return [
            {
                "order_id": str(order.id),
                "attempts": order.shipment_attempts,
                "last_error": order.shipment_last_error,
                "confirmed_at": order.confirmed_at.isoformat() if order.confirmed_at else None,
                "total_amount": order.total_amount,
            }
            for order in orders
        ]

    async def track(self, order_id: uuid.UUID) -> TrackingResult:
        """
        Refresh the courier status of a shipped order.

        Raises:
            OrderNotFoundError: If the order does not exist
            ShipmentNotTrackableError: If the order has no courier waybill
        """
        order = await self.repository.get_or_raise(order_id)
        if order.delivery_provider != DeliveryProvider.COURIER or not order.waybill:
            raise ShipmentNotTrackableError(
                "Order has no courier shipment to track",
                order_id=str(order_id),
            )

        result = await self.courier.track(order.waybill)
        if result.success:
            await self.repository.update_delivery_status(order_id, result.status)
            logger.info(
                "Tracking refreshed",
                order_id=str(order_id),
                waybill=order.waybill,
                delivery_status=result.status.value,
            )
        return result


def build_shipment_manager(
    repository: OrderRepository,
    settings: Optional[Settings] = None,
) -> ShipmentLifecycleManager:
    settings = settings or get_settings()
    courier = CourierAdapter(DeliveryZoneConfig.from_settings(settings), get_courier_client(settings))
    return ShipmentLifecycleManager(
        repository=repository,
        courier=courier,
        max_attempts=settings.shipment_max_attempts,
    )
