"""
Order placement and summary endpoints.
"""

from uuid import UUID

from fastapi import APIRouter, status

from payship.api.deps import OrderServiceDep, raise_http_error
from payship.core.exceptions import PayshipError
from payship.core.logging import get_logger
from payship.schemas.orders import OrderSummaryResponse, PlaceOrderRequest, PlaceOrderResponse
from payship.services.inventory.stock_ledger import StockLine

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["Orders"])


@router.post(
    "",
    response_model=PlaceOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place order",
    description="Price the basket, quote delivery, reserve stock and open a gateway order",
)
async def place_order(request: PlaceOrderRequest, service: OrderServiceDep) -> PlaceOrderResponse:
    """
    Place an order.

    Raises:
        HTTPException: 400 invalid input, 404 unknown address or item,
            409 stock or delivery conflict, 502 gateway unavailable
    """
    logger.info(
        "Placing order",
        customer_id=str(request.customer_id),
        lines=len(request.items),
    )
    try:
        placed = await service.place_order(
            customer_id=request.customer_id,
            address_id=request.address_id,
            lines=[StockLine(line.item_id, line.quantity) for line in request.items],
            requested_provider=request.delivery_provider,
        )
    except PayshipError as e:
        logger.warning("Order placement rejected", code=e.code, error=e.message)
        raise_http_error(e)

    return PlaceOrderResponse.model_validate(placed.to_dict())


@router.get(
    "/{order_id}",
    response_model=OrderSummaryResponse,
    summary="Get order summary",
)
async def get_order(order_id: UUID, service: OrderServiceDep) -> OrderSummaryResponse:
    try:
        summary = await service.get_order_summary(order_id)
    except PayshipError as e:
        raise_http_error(e)
    return OrderSummaryResponse.model_validate(summary)
