"""
Payment reconciliation endpoints.

Every channel ends up in the same reconciler; these handlers only translate
HTTP to calls and service errors to status codes.
"""

from uuid import UUID

from fastapi import APIRouter, Request, status

from payship.api.deps import OperatorAccess, ReconcilerDep, raise_http_error
from payship.api.limiter import PAYMENT_RATE_LIMIT, limiter
from payship.core.config import get_settings
from payship.core.exceptions import PayshipError
from payship.core.logging import get_logger
from payship.schemas.payments import (
    CancelPaymentRequest,
    CleanupResponse,
    ReconciliationResponse,
    RepairResponse,
    VerifyPaymentRequest,
    WebhookResponse,
)
from payship.services.payments.reconciler import (
    WebhookConfigurationError,
    WebhookSignatureError,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post(
    "/verify",
    response_model=ReconciliationResponse,
    summary="Verify checkout payment",
    description="Verify the checkout signature and apply the gateway's payment status",
)
@limiter.limit(PAYMENT_RATE_LIMIT)
async def verify_payment(
    request: Request,
    body: VerifyPaymentRequest,
    reconciler: ReconcilerDep,
) -> ReconciliationResponse:
    """
    Reconcile the checkout callback.

    Raises:
        HTTPException: 400 bad signature or mismatched payment, 404 unknown
            order, 502 gateway unavailable
    """
    try:
        result = await reconciler.verify_client_payment(
            order_id=body.order_id,
            gateway_order_id=body.gateway_order_id,
            gateway_payment_id=body.gateway_payment_id,
            signature=body.signature,
        )
    except PayshipError as e:
        raise_http_error(e)
    return ReconciliationResponse.model_validate(result.to_dict())


@router.post(
    "/cancel",
    response_model=ReconciliationResponse,
    summary="Cancel unpaid order",
)
@limiter.limit(PAYMENT_RATE_LIMIT)
async def cancel_payment(
    request: Request,
    body: CancelPaymentRequest,
    reconciler: ReconcilerDep,
) -> ReconciliationResponse:
    """
    Raises:
        HTTPException: 404 unknown order, 409 order already paid
    """
    try:
        result = await reconciler.cancel(body.order_id, reason=body.reason)
    except PayshipError as e:
        raise_http_error(e)
    return ReconciliationResponse.model_validate(result.to_dict())


@router.post(
    "/webhook",
    response_model=WebhookResponse,
    status_code=status.HTTP_200_OK,
    summary="Gateway webhook",
    description="Signed push notifications from the payment gateway",
)
@limiter.exempt
async def payment_webhook(request: Request, reconciler: ReconcilerDep) -> WebhookResponse:
    """
    Handle a gateway webhook.

    Anything past signature verification is acknowledged with 200 so the
    gateway stops redelivering it.

    Raises:
        HTTPException: 400 invalid signature, 500 webhook secret missing
    """
    raw_body = await request.body()
    signature = request.headers.get(get_settings().gateway_signature_header)

    try:
        result = await reconciler.handle_webhook(raw_body, signature)
    except (WebhookSignatureError, WebhookConfigurationError) as e:
        raise_http_error(e)

    return WebhookResponse.model_validate(result.to_dict())


@router.post(
    "/{order_id}/confirm",
    response_model=ReconciliationResponse,
    summary="Re-check payment with the gateway",
)
async def confirm_payment(order_id: UUID, reconciler: ReconcilerDep) -> ReconciliationResponse:
    """
    Raises:
        HTTPException: 404 unknown order, 409 nothing captured to apply,
            502 gateway unavailable
    """
    try:
        result = await reconciler.confirm_manually(order_id)
    except PayshipError as e:
        raise_http_error(e)
    return ReconciliationResponse.model_validate(result.to_dict())


@router.post(
    "/repair",
    response_model=RepairResponse,
    dependencies=[OperatorAccess],
    summary="Repair inconsistent orders",
)
async def repair_orders(reconciler: ReconcilerDep) -> RepairResponse:
    report = await reconciler.repair_inconsistent_orders()
    return RepairResponse.model_validate(report.to_dict())


@router.post(
    "/cleanup",
    response_model=CleanupResponse,
    dependencies=[OperatorAccess],
    summary="Clean up stale orders",
)
async def cleanup_orders(reconciler: ReconcilerDep) -> CleanupResponse:
    report = await reconciler.cleanup_stale_orders()
    return CleanupResponse.model_validate(report.to_dict())
