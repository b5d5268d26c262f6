"""
Shipment administration and tracking endpoints.
"""

from uuid import UUID

from fastapi import APIRouter

from payship.api.deps import OperatorAccess, ShipmentManagerDep, raise_http_error
from payship.core.exceptions import PayshipError, UpstreamUnavailableError
from payship.core.logging import get_logger
from payship.schemas.shipments import (
    InterventionOrder,
    ShipmentRetryResponse,
    TrackingResponse,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/shipments", tags=["Shipments"])


@router.post(
    "/retry",
    response_model=ShipmentRetryResponse,
    dependencies=[OperatorAccess],
    summary="Retry failed shipment creation",
)
async def retry_shipments(manager: ShipmentManagerDep) -> ShipmentRetryResponse:
    results = await manager.retry_failed_shipments()
    return ShipmentRetryResponse.model_validate(results)


@router.get(
    "/intervention",
    response_model=list[InterventionOrder],
    dependencies=[OperatorAccess],
    summary="Orders needing manual shipment",
)
async def intervention_orders(manager: ShipmentManagerDep) -> list[InterventionOrder]:
    orders = await manager.orders_needing_intervention()
    return [InterventionOrder.model_validate(order) for order in orders]


@router.get(
    "/{order_id}/tracking",
    response_model=TrackingResponse,
    summary="Track an order's shipment",
)
async def track_shipment(order_id: UUID, manager: ShipmentManagerDep) -> TrackingResponse:
    """
    Raises:
        HTTPException: 404 unknown order, 409 no courier shipment,
            502 courier tracking failed
    """
    try:
        result = await manager.track(order_id)
        if not result.success:
            raise UpstreamUnavailableError(
                result.error or "Tracking unavailable",
                code="TRACKING_FAILED",
                order_id=str(order_id),
            )
    except PayshipError as e:
        raise_http_error(e)

    return TrackingResponse(
        order_id=str(order_id),
        waybill=result.waybill,
        status=result.status.value,
        raw_status=result.raw_status,
        location=result.location,
        expected_delivery=result.expected_delivery,
        history=result.history,
    )
