"""
Order payment reconciler.

Four channels can report on the same payment: the browser callback after
checkout, the gateway webhook, an operator-triggered manual re-check and a
customer cancellation. All of them funnel into the same transition rule:

1. An order that is already paid is a successful no-op.
2. The signal is authenticated with the scheme of its channel.
3. The outcome is applied with a compare-and-swap on ``payment_status`` and
   recorded in the attempt log in the same transaction.

A capture on a courier order hands the order to the shipment dispatcher
without waiting for it.
"""

import asyncio
import json
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from payship.core.config import Settings, get_settings
from payship.core.exceptions import (
    AuthenticityError,
    BusinessConflictError,
    ConfigurationError,
    RepositoryError,
)
from payship.core.logging import bind_order_id, get_logger
from payship.database.models.order import (
    AttemptSource,
    AttemptStatus,
    DeliveryProvider,
    Order,
    OrderStatus,
    PaymentAttempt,
    PaymentStatus,
)
from payship.services.inventory.stock_ledger import StockLedger, StockLine
from payship.services.orders.repository import OrderNotFoundError, OrderRepository
from payship.services.orders.state_machine import (
    project_order_status,
    project_payment_status,
)
from payship.services.payments.gateway_client import (
    GatewayPayment,
    PaymentGatewayClient,
    get_gateway_client,
)
from payship.services.payments.signature import (
    verify_checkout_signature,
    verify_webhook_signature,
)

logger = get_logger(__name__)

HANDLED_WEBHOOK_EVENTS = frozenset({"payment.captured", "payment.failed"})
DEFAULT_CANCEL_REASON = "User cancelled payment"

ShipmentDispatcher = Callable[[uuid.UUID], Any]


class PaymentSignatureError(AuthenticityError):
    default_code = "INVALID_PAYMENT_SIGNATURE"


class WebhookSignatureError(AuthenticityError):
    default_code = "INVALID_WEBHOOK_SIGNATURE"


class PaymentMismatchError(AuthenticityError):
    """The gateway's payment does not belong to this order or amount."""

    default_code = "PAYMENT_MISMATCH"


class PaymentConflictError(BusinessConflictError):
    default_code = "PAYMENT_CONFLICT"


class MissingPaymentReferenceError(BusinessConflictError):
    """No attempt on the order carries a gateway payment id to check."""

    default_code = "MISSING_PAYMENT_REFERENCE"


class PaymentNotCapturedError(BusinessConflictError):
    default_code = "PAYMENT_NOT_CAPTURED"


class WebhookConfigurationError(ConfigurationError):
    default_code = "WEBHOOK_NOT_CONFIGURED"


@dataclass(frozen=True)
class ReconcilerConfig:
    key_secret: str
    webhook_secret: Optional[str]
    stale_order_ttl: timedelta
    release_stock_on_expiry: bool = True

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ReconcilerConfig":
        settings = settings or get_settings()
        return cls(
            key_secret=settings.gateway_key_secret,
            webhook_secret=settings.gateway_webhook_secret,
            stale_order_ttl=timedelta(hours=settings.stale_order_ttl_hours),
            release_stock_on_expiry=settings.release_stock_on_expiry,
        )


@dataclass(frozen=True)
class ReconciliationResult:
    """
    Outcome of one payment signal.

    ``applied`` is True only for the call that performed the transition;
    ``already_processed`` marks a replay against a settled order.
    """

    order_id: uuid.UUID
    payment_status: PaymentStatus
    status: OrderStatus
    applied: bool
    already_processed: bool
    message: str
    gateway_payment_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": str(self.order_id),
            "payment_status": self.payment_status.value,
            "status": self.status.value,
            "applied": self.applied,
            "already_processed": self.already_processed,
            "message": self.message,
            "gateway_payment_id": self.gateway_payment_id,
        }


@dataclass(frozen=True)
class WebhookResult:
    handled: bool
    event: Optional[str]
    message: str
    order_id: Optional[uuid.UUID] = None
    applied: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "handled": self.handled,
            "event": self.event,
            "message": self.message,
            "order_id": str(self.order_id) if self.order_id else None,
            "applied": self.applied,
        }


@dataclass
class RepairReport:
    scanned: int = 0
    resolved_paid: int = 0
    resolved_unpaid: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class CleanupReport:
    deleted: int = 0
    stock_released: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _stock_lines(order: Order) -> list[StockLine]:
    return [StockLine(item.item_id, item.quantity) for item in order.items]


class OrderPaymentReconciler:
    """
    Converges payment signals from every channel to one payment verdict.

    Attributes:
        repository: Order data access with conditional updates
        gateway: Payment gateway client used to fetch the real payment status
        ledger: Stock ledger sharing the repository's session
        config: Secrets and retention settings
        shipment_dispatcher: Called in a worker thread with the order id after a
            courier capture
    """

    def __init__(
        self,
        repository: OrderRepository,
        gateway: PaymentGatewayClient,
        ledger: StockLedger,
        config: ReconcilerConfig,
        shipment_dispatcher: Optional[ShipmentDispatcher] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.repository = repository
        self.gateway = gateway
        self.ledger = ledger
        self.config = config
        self.shipment_dispatcher = shipment_dispatcher
        self.clock = clock

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    async def verify_client_payment(
        self,
        order_id: uuid.UUID,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
    ) -> ReconciliationResult:
        """
        Reconcile the browser callback that follows checkout.

        The signature only proves the client saw real gateway identifiers, so
        the payment itself is fetched from the gateway before anything is
        applied.

        Args:
            order_id: Local order id
            gateway_order_id: Gateway order id returned by checkout
            gateway_payment_id: Gateway payment id returned by checkout
            signature: Checkout signature returned by checkout

        Returns:
            Reconciliation result

        Raises:
            OrderNotFoundError: If the order does not exist
            PaymentSignatureError: If the signature does not verify
            PaymentMismatchError: If the payment belongs to another order or amount
            GatewayError: If the gateway cannot be reached
        """
        bind_order_id(order_id)
        order = await self.repository.get_or_raise(order_id)
        if order.payment_status == PaymentStatus.PAID:
            return self._already_paid(order)

        if gateway_order_id != order.gateway_order_id:
            logger.warning(
                "Callback gateway order does not match order",
                order_id=str(order_id),
                claimed_gateway_order_id=gateway_order_id,
            )
            raise PaymentMismatchError(
                "Payment does not belong to this order",
                order_id=str(order_id),
            )

        if not verify_checkout_signature(
            gateway_order_id, gateway_payment_id, signature, self.config.key_secret
        ):
            logger.warning(
                "Checkout signature verification failed",
                order_id=str(order_id),
                gateway_payment_id=gateway_payment_id,
            )
            raise PaymentSignatureError(
                "Payment signature verification failed",
                order_id=str(order_id),
            )

        payment = await self.gateway.fetch_payment(gateway_payment_id)
        self._check_payment_matches(order, payment)

        if payment.is_captured:
            return await self._capture(order, AttemptSource.CLIENT_CALLBACK, payment, True)
        if payment.is_failed:
            return await self._fail(order, AttemptSource.CLIENT_CALLBACK, payment, True)

        await self.repository.append_attempt(
            self._attempt(order, AttemptSource.CLIENT_CALLBACK, AttemptStatus.SIGNATURE_VERIFIED, payment, True)
        )
        logger.info(
            "Payment verified but not captured yet",
            order_id=str(order_id),
            gateway_payment_id=payment.id,
            gateway_status=payment.status,
        )
        return ReconciliationResult(
            order_id=order.id,
            payment_status=order.payment_status,
            status=order.status,
            applied=False,
            already_processed=False,
            message=f"Payment is {payment.status}, not captured yet",
            gateway_payment_id=payment.id,
        )

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> WebhookResult:
        """
        Reconcile a gateway webhook delivery.

        The whole body is authenticated before any field is read. Anything
        after that is acknowledged, including events for unknown orders, so
        the gateway does not keep redelivering them.

        Args:
            raw_body: Request body exactly as received
            signature: Signature header value

        Returns:
            What was done with the event

        Raises:
            WebhookConfigurationError: If no webhook secret is configured
            WebhookSignatureError: If the body signature does not verify
        """
        if not self.config.webhook_secret:
            logger.error("Webhook received but no webhook secret is configured")
            raise WebhookConfigurationError("Webhook secret is not configured")

        if not verify_webhook_signature(raw_body, signature, self.config.webhook_secret):
            logger.warning("Webhook signature verification failed", body_bytes=len(raw_body))
            raise WebhookSignatureError("Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
            event = payload["event"]
        except (ValueError, TypeError, KeyError) as e:
            logger.warning("Malformed webhook payload", error=str(e))
            return WebhookResult(handled=False, event=None, message="Malformed payload")

        if event not in HANDLED_WEBHOOK_EVENTS:
            logger.info("Ignoring webhook event", webhook_event=event)
            return WebhookResult(handled=False, event=event, message="Event ignored")

        try:
            payment = GatewayPayment.from_api(payload["payload"]["payment"]["entity"])
        except (ValueError, TypeError, KeyError) as e:
            logger.warning("Malformed webhook payment entity", webhook_event=event, error=str(e))
            return WebhookResult(handled=False, event=event, message="Malformed payload")

        order = None
        if payment.order_id:
            order = await self.repository.get_by_gateway_order_id(payment.order_id)
        if order is None:
            logger.info(
                "Webhook for unknown order acknowledged",
                webhook_event=event,
                gateway_order_id=payment.order_id,
                gateway_payment_id=payment.id,
            )
            return WebhookResult(handled=False, event=event, message="Order not found")

        bind_order_id(order.id)
        if order.payment_status == PaymentStatus.PAID:
            logger.info(
                "Webhook replay for paid order",
                order_id=str(order.id),
                webhook_event=event,
            )
            return WebhookResult(
                handled=True,
                event=event,
                message="Already processed",
                order_id=order.id,
            )

        if event == "payment.captured":
            if payment.amount != order.total_amount:
                logger.warning(
                    "Webhook capture amount mismatch",
                    order_id=str(order.id),
                    gateway_payment_id=payment.id,
                    expected_amount=order.total_amount,
                    received_amount=payment.amount,
                )
                return WebhookResult(
                    handled=False,
                    event=event,
                    message="Amount mismatch",
                    order_id=order.id,
                )
            result = await self._capture(order, AttemptSource.WEBHOOK, payment, True)
        else:
            result = await self._fail(order, AttemptSource.WEBHOOK, payment, True)

        return WebhookResult(
            handled=True,
            event=event,
            message=result.message,
            order_id=order.id,
            applied=result.applied,
        )

    async def confirm_manually(self, order_id: uuid.UUID) -> ReconciliationResult:
        """
        Re-check the latest known payment of an order with the gateway.

        Recovers orders whose webhook was lost. Only a captured payment is
        applied.

        Raises:
            OrderNotFoundError: If the order does not exist
            MissingPaymentReferenceError: If no attempt carries a payment id
            PaymentNotCapturedError: If the gateway reports anything but captured
            PaymentMismatchError: If the payment belongs to another order or amount
            GatewayError: If the gateway cannot be reached
        """
        bind_order_id(order_id)
        order = await self.repository.get_or_raise(order_id)
        if order.payment_status == PaymentStatus.PAID:
            return self._already_paid(order)

        reference = next(
            (a for a in reversed(order.payment_attempts) if a.gateway_payment_id),
            None,
        )
        if reference is None:
            raise MissingPaymentReferenceError(
                "No payment found to verify for this order",
                order_id=str(order_id),
            )

        payment = await self.gateway.fetch_payment(reference.gateway_payment_id)
        self._check_payment_matches(order, payment)

        if not payment.is_captured:
            logger.info(
                "Manual check found no capture",
                order_id=str(order_id),
                gateway_payment_id=payment.id,
                gateway_status=payment.status,
            )
            raise PaymentNotCapturedError(
                f"Payment is {payment.status}, not captured",
                order_id=str(order_id),
                gateway_status=payment.status,
            )

        return await self._capture(order, AttemptSource.MANUAL_CHECK, payment, False)

    async def cancel(
        self,
        order_id: uuid.UUID,
        reason: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Cancel an unpaid order on the customer's request and return its stock.

        Raises:
            OrderNotFoundError: If the order does not exist
            PaymentConflictError: If the order has been paid
        """
        bind_order_id(order_id)
        order = await self.repository.get_or_raise(order_id)
        if order.payment_status == PaymentStatus.PAID:
            raise self._cancel_conflict(order)
        if order.payment_status == PaymentStatus.CANCELLED:
            return ReconciliationResult(
                order_id=order.id,
                payment_status=order.payment_status,
                status=order.status,
                applied=False,
                already_processed=True,
                message="Order already cancelled",
            )

        now = self.clock()
        attempt = PaymentAttempt(
            source=AttemptSource.CLIENT_CANCEL,
            status=AttemptStatus.CANCELLED,
            gateway_order_id=order.gateway_order_id,
            amount=order.total_amount,
            error_reason=reason or DEFAULT_CANCEL_REASON,
        )
        lines = _stock_lines(order)

        applied = await self.repository.transition_payment(
            order.id, PaymentStatus.CANCELLED, attempt, now, commit=False
        )
        if not applied:
            current = await self.repository.get_or_raise(order.id)
            if current.payment_status == PaymentStatus.PAID:
                raise self._cancel_conflict(current)
            return ReconciliationResult(
                order_id=current.id,
                payment_status=current.payment_status,
                status=current.status,
                applied=False,
                already_processed=current.payment_status == PaymentStatus.CANCELLED,
                message=f"Order is {current.payment_status.value}",
            )

        released = await self._release_stock(order.id, lines, PaymentStatus.CANCELLED, now)
        await self.repository.commit()

        logger.info(
            "Order cancelled",
            order_id=str(order.id),
            reason=attempt.error_reason,
            stock_released=released,
        )
        return ReconciliationResult(
            order_id=order.id,
            payment_status=PaymentStatus.CANCELLED,
            status=OrderStatus.CANCELLED,
            applied=True,
            already_processed=False,
            message="Order cancelled",
        )

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def repair_inconsistent_orders(self) -> RepairReport:
        """
        Re-project orders carrying both confirmation and cancellation times.

        The attempt log decides: a paid record keeps the confirmation,
        anything else keeps the cancellation.
        """
        report = RepairReport()
        orders = await self.repository.list_inconsistent()
        report.scanned = len(orders)

        for order in orders:
            verdict = project_payment_status(order.payment_attempts)
            if verdict == PaymentStatus.PAID:
                keep = "confirmed"
            else:
                keep = "cancelled"
                if verdict == PaymentStatus.PENDING:
                    verdict = PaymentStatus.CANCELLED
            status = project_order_status(verdict, order.status)
            order_id = order.id

            try:
                repaired = await self.repository.apply_repair(order_id, verdict, status, keep)
            except RepositoryError as e:
                logger.error("Order repair failed", order_id=str(order_id), error=str(e))
                continue

            if not repaired:
                continue
            if verdict == PaymentStatus.PAID:
                report.resolved_paid += 1
            else:
                report.resolved_unpaid += 1
            logger.info(
                "Inconsistent order repaired",
                order_id=str(order_id),
                payment_status=verdict.value,
                status=status.value,
            )

        logger.info("Repair sweep finished", **report.to_dict())
        return report

    async def cleanup_stale_orders(self, now: Optional[datetime] = None) -> CleanupReport:
        """
        Purge orders that never left pending and free stock of old failures.

        Pending orders older than the retention window are deleted; their
        stock is returned first when release on expiry is enabled. Failed
        orders past the window keep their record but give their stock back.

        Args:
            now: Reference time, defaults to the reconciler clock

        Returns:
            Counts of deleted orders and stock releases
        """
        now = now or self.clock()
        cutoff = now - self.config.stale_order_ttl
        report = CleanupReport()

        stale = [(o.id, _stock_lines(o)) for o in await self.repository.list_stale_pending(cutoff)]
        for order_id, lines in stale:
            try:
                released = False
                if self.config.release_stock_on_expiry:
                    released = await self._release_stock(
                        order_id, lines, PaymentStatus.PENDING, now, created_before=cutoff
                    )
                if not await self.repository.delete_if_pending(order_id):
                    # Paid or cancelled since the scan.
                    await self.repository.rollback()
                    continue
                await self.repository.commit()
            except RepositoryError as e:
                logger.error("Stale order cleanup failed", order_id=str(order_id), error=str(e))
                continue

            report.deleted += 1
            if released:
                report.stock_released += 1
            logger.info("Stale order deleted", order_id=str(order_id), stock_released=released)

        if self.config.release_stock_on_expiry:
            failed = [
                (o.id, _stock_lines(o))
                for o in await self.repository.list_unreleased_failed(cutoff)
            ]
            for order_id, lines in failed:
                try:
                    released = await self._release_stock(
                        order_id, lines, PaymentStatus.FAILED, now, created_before=cutoff
                    )
                    await self.repository.commit()
                except RepositoryError as e:
                    logger.error("Failed order stock release failed", order_id=str(order_id), error=str(e))
                    continue
                if released:
                    report.stock_released += 1

        logger.info("Cleanup sweep finished", cutoff=cutoff.isoformat(), **report.to_dict())
        return report

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _capture(
        self,
        order: Order,
        source: AttemptSource,
        payment: GatewayPayment,
        signature_verified: bool,
    ) -> ReconciliationResult:
        order_id = order.id
        is_courier = order.delivery_provider == DeliveryProvider.COURIER
        was_released = order.stock_released_at is not None

        attempt = self._attempt(order, source, AttemptStatus.PAID, payment, signature_verified)
        applied = await self.repository.transition_payment(
            order_id, PaymentStatus.PAID, attempt, self.clock()
        )

        if not applied:
            current = await self.repository.get_or_raise(order_id)
            if current.payment_status == PaymentStatus.PAID:
                return self._already_paid(current)
            raise PaymentConflictError(
                "Payment could not be applied to the order",
                order_id=str(order_id),
                payment_status=current.payment_status.value,
            )

        logger.info(
            "Payment captured",
            order_id=str(order_id),
            source=source.value,
            gateway_payment_id=payment.id,
            amount=payment.amount,
        )
        if was_released:
            logger.warning(
                "Capture on an order whose stock was already released",
                order_id=str(order_id),
            )
        if is_courier:
            await self._dispatch_shipment(order_id)

        return ReconciliationResult(
            order_id=order_id,
            payment_status=PaymentStatus.PAID,
            status=OrderStatus.CONFIRMED,
            applied=True,
            already_processed=False,
            message="Payment captured",
            gateway_payment_id=payment.id,
        )

    async def _fail(
        self,
        order: Order,
        source: AttemptSource,
        payment: GatewayPayment,
        signature_verified: bool,
    ) -> ReconciliationResult:
        order_id = order.id
        attempt = self._attempt(order, source, AttemptStatus.FAILED, payment, signature_verified)
        attempt.error_reason = payment.error_description

        applied = await self.repository.transition_payment(
            order_id, PaymentStatus.FAILED, attempt, self.clock()
        )
        if applied:
            logger.info(
                "Payment failed",
                order_id=str(order_id),
                source=source.value,
                gateway_payment_id=payment.id,
                reason=payment.error_description,
            )
            return ReconciliationResult(
                order_id=order_id,
                payment_status=PaymentStatus.FAILED,
                status=OrderStatus.FAILED,
                applied=True,
                already_processed=False,
                message="Payment failed",
                gateway_payment_id=payment.id,
            )

        current = await self.repository.get_or_raise(order_id)
        if current.payment_status == PaymentStatus.PAID:
            logger.info("Stale failure ignored for paid order", order_id=str(order_id))
            return self._already_paid(current)
        return ReconciliationResult(
            order_id=order_id,
            payment_status=current.payment_status,
            status=current.status,
            applied=False,
            already_processed=current.payment_status == PaymentStatus.FAILED,
            message=f"Order is {current.payment_status.value}",
            gateway_payment_id=payment.id,
        )

    async def _release_stock(
        self,
        order_id: uuid.UUID,
        lines: list[StockLine],
        payment_status: PaymentStatus,
        now: datetime,
        created_before: Optional[datetime] = None,
    ) -> bool:
        """Claim the order's one stock release and return its units. Does not commit."""
        claimed = await self.repository.claim_stock_release(
            order_id, now, payment_status, created_before=created_before
        )
        if not claimed:
            return False
        if lines:
            await self.ledger.release(lines)
        return True

    async def _dispatch_shipment(self, order_id: uuid.UUID) -> None:
        if self.shipment_dispatcher is None:
            return
        try:
            # Broker publishes are blocking; keep them off the event loop.
            await asyncio.to_thread(self.shipment_dispatcher, order_id)
            logger.info("Shipment creation enqueued", order_id=str(order_id))
        except Exception as e:
            # The retry sweep picks up confirmed courier orders without a waybill.
            logger.error(
                "Failed to enqueue shipment creation",
                order_id=str(order_id),
                error=str(e),
                error_type=type(e).__name__,
            )

    @staticmethod
    def _attempt(
        order: Order,
        source: AttemptSource,
        status: AttemptStatus,
        payment: GatewayPayment,
        signature_verified: bool,
    ) -> PaymentAttempt:
        return PaymentAttempt(
            order_id=order.id,
            source=source,
            status=status,
            gateway_order_id=payment.order_id or order.gateway_order_id,
            gateway_payment_id=payment.id,
            amount=payment.amount,
            method=payment.method,
            signature_verified=signature_verified,
        )

    @staticmethod
    def _check_payment_matches(order: Order, payment: GatewayPayment) -> None:
        if payment.order_id != order.gateway_order_id or payment.amount != order.total_amount:
            logger.warning(
                "Gateway payment does not match order",
                order_id=str(order.id),
                gateway_payment_id=payment.id,
                payment_gateway_order_id=payment.order_id,
                expected_amount=order.total_amount,
                received_amount=payment.amount,
            )
            raise PaymentMismatchError(
                "Payment does not match this order",
                order_id=str(order.id),
                gateway_payment_id=payment.id,
            )

    @staticmethod
    def _already_paid(order: Order) -> ReconciliationResult:
        return ReconciliationResult(
            order_id=order.id,
            payment_status=order.payment_status,
            status=order.status,
            applied=False,
            already_processed=True,
            message="Payment already processed",
        )

    @staticmethod
    def _cancel_conflict(order: Order) -> PaymentConflictError:
        logger.warning("Cancellation refused for paid order", order_id=str(order.id))
        return PaymentConflictError(
            "Order has already been paid and cannot be cancelled",
            order_id=str(order.id),
        )


def build_reconciler(
    repository: OrderRepository,
    ledger: StockLedger,
    gateway: Optional[PaymentGatewayClient] = None,
    shipment_dispatcher: Optional[ShipmentDispatcher] = None,
    settings: Optional[Settings] = None,
) -> OrderPaymentReconciler:
    """Assemble a reconciler from application settings."""
    settings = settings or get_settings()
    return OrderPaymentReconciler(
        repository=repository,
        gateway=gateway or get_gateway_client(settings),
        ledger=ledger,
        config=ReconcilerConfig.from_settings(settings),
        shipment_dispatcher=shipment_dispatcher,
    )


__all__ = [
    "CleanupReport",
    "DEFAULT_CANCEL_REASON",
    "MissingPaymentReferenceError",
    "OrderNotFoundError",
    "OrderPaymentReconciler",
    "PaymentConflictError",
    "PaymentMismatchError",
    "PaymentNotCapturedError",
    "PaymentSignatureError",
    "ReconcilerConfig",
    "ReconciliationResult",
    "RepairReport",
    "WebhookConfigurationError",
    "WebhookResult",
    "WebhookSignatureError",
    "build_reconciler",
]
