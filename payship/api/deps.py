"""
FastAPI dependencies: database session, service assembly and operator auth.
"""

import secrets
from typing import Annotated, NoReturn, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from payship.core.config import get_settings
from payship.core.exceptions import PayshipError
from payship.core.logging import get_logger
from payship.database.connection import get_db
from payship.services.delivery.router import DeliveryPricingRouter, get_delivery_router
from payship.services.inventory.stock_ledger import StockLedger
from payship.services.orders.repository import OrderRepository
from payship.services.orders.service import OrderService, build_order_service
from payship.services.payments.gateway_client import PaymentGatewayClient, get_gateway_client
from payship.services.payments.reconciler import OrderPaymentReconciler, build_reconciler
from payship.services.shipments.manager import ShipmentLifecycleManager, build_shipment_manager
from payship.services.shipments.tasks import enqueue_shipment

logger = get_logger(__name__)

DatabaseSession = Annotated[AsyncSession, Depends(get_db)]


def get_gateway() -> PaymentGatewayClient:
    return get_gateway_client()


def get_router() -> DeliveryPricingRouter:
    return get_delivery_router()


def get_order_service(
    db: DatabaseSession,
    gateway: Annotated[PaymentGatewayClient, Depends(get_gateway)],
    router: Annotated[DeliveryPricingRouter, Depends(get_router)],
) -> OrderService:
    return build_order_service(
        repository=OrderRepository(db),
        ledger=StockLedger(db),
        router=router,
        gateway=gateway,
    )


def get_reconciler(
    db: DatabaseSession,
    gateway: Annotated[PaymentGatewayClient, Depends(get_gateway)],
) -> OrderPaymentReconciler:
    return build_reconciler(
        repository=OrderRepository(db),
        ledger=StockLedger(db),
        gateway=gateway,
        shipment_dispatcher=enqueue_shipment,
    )


def get_shipment_manager(db: DatabaseSession) -> ShipmentLifecycleManager:
    return build_shipment_manager(OrderRepository(db))


async def require_operator(
    x_operator_key: Annotated[Optional[str], Header(alias="X-Operator-Key")] = None,
) -> None:
    """
    Guard operator-only endpoints with the shared operator key.

    Raises:
        HTTPException: 503 if no key is configured, 401 if the header is wrong
    """
    expected = get_settings().operator_api_key
    if not expected:
        logger.error("Operator endpoint called but no operator key is configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"message": "Operator access is not configured", "code": "OPERATOR_DISABLED"},
        )
    if not x_operator_key or not secrets.compare_digest(x_operator_key, expected):
        logger.warning("Operator authentication failed")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Invalid operator key", "code": "UNAUTHORIZED"},
        )


def raise_http_error(exc: PayshipError) -> NoReturn:
    """Translate a service error into an HTTP error carrying its detail."""
    raise HTTPException(status_code=exc.http_status, detail=exc.to_detail()) from exc


OrderServiceDep = Annotated[OrderService, Depends(get_order_service)]
ReconcilerDep = Annotated[OrderPaymentReconciler, Depends(get_reconciler)]
RouterDep = Annotated[DeliveryPricingRouter, Depends(get_router)]
ShipmentManagerDep = Annotated[ShipmentLifecycleManager, Depends(get_shipment_manager)]
OperatorAccess = Depends(require_operator)
