"""
Order placement and order summaries.

Placing an order prices the basket, quotes delivery for the customer's
address, opens a gateway order for the grand total and then, in one
transaction, reserves stock and stores the order with its item snapshot and
its first payment attempt.
"""

import time
import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Optional

from payship.core.config import Settings, get_settings
from payship.core.exceptions import BusinessConflictError, NotFoundError, ValidationFailedError
from payship.core.logging import bind_order_id, get_logger, log_performance
from payship.database.models.order import (
    AttemptSource,
    AttemptStatus,
    DeliveryProvider,
    Order,
    OrderItem,
    OrderStatus,
    PaymentAttempt,
    PaymentStatus,
)
from payship.services.delivery.adapters import DeliveryQuote
from payship.services.delivery.router import DeliveryPricingRouter
from payship.services.delivery.zones import normalize_postal_code
from payship.services.inventory.stock_ledger import StockLedger, StockLine, merge_lines
from payship.services.orders.repository import OrderRepository
from payship.services.payments.gateway_client import PaymentGatewayClient

logger = get_logger(__name__)

CENT = Decimal("0.01")


class AddressNotFoundError(NotFoundError):
    default_code = "ADDRESS_NOT_FOUND"


class ItemNotFoundError(NotFoundError):
    default_code = "ITEM_NOT_FOUND"


class DeliveryNotServiceableError(BusinessConflictError):
    """The destination cannot be delivered to by its provider."""

    default_code = "DELIVERY_NOT_SERVICEABLE"


@dataclass(frozen=True)
class OrderTotals:
    """
    Order amounts.

    ``total_amount`` is in minor currency units and is the amount charged.
    """

    subtotal: Decimal
    tax_amount: Decimal
    delivery_charge: Decimal
    total_amount: int

    @property
    def grand_total(self) -> Decimal:
        return (Decimal(self.total_amount) / 100).quantize(CENT)

    def to_dict(self) -> dict[str, Any]:
        return {
            "subtotal": str(self.subtotal),
            "tax_amount": str(self.tax_amount),
            "delivery_charge": str(self.delivery_charge),
            "grand_total": str(self.grand_total),
            "total_amount": self.total_amount,
        }


@dataclass(frozen=True)
class PlacedOrder:
    order_id: uuid.UUID
    gateway_order_id: str
    amount: int
    currency: str
    key_id: str
    totals: OrderTotals
    delivery: DeliveryQuote

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": str(self.order_id),
            "gateway_order_id": self.gateway_order_id,
            "amount": self.amount,
            "currency": self.currency,
            "key_id": self.key_id,
            "totals": self.totals.to_dict(),
            "delivery": self.delivery.to_dict(),
        }


def calculate_totals(
    lines: Iterable[tuple[Decimal, int]],
    delivery_charge: Decimal,
    tax_rate: Decimal,
) -> OrderTotals:
    """
    Price a basket.

    Tax applies to the item subtotal only, never to delivery.

    Args:
        lines: (unit price, quantity) pairs
        delivery_charge: Quoted delivery charge
        tax_rate: Fractional tax rate, e.g. ``Decimal("0.05")``

    Returns:
        Totals with the grand total in minor units
    """
    subtotal = sum((price * qty for price, qty in lines), Decimal("0")).quantize(CENT)
    tax_amount = (subtotal * tax_rate).quantize(CENT, rounding=ROUND_HALF_UP)
    delivery = Decimal(delivery_charge).quantize(CENT)
    total_amount = int(
        ((subtotal + tax_amount + delivery) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )
    return OrderTotals(
        subtotal=subtotal,
        tax_amount=tax_amount,
        delivery_charge=delivery,
        total_amount=total_amount,
    )


def new_receipt() -> str:
    return f"rcpt_{int(time.time() * 1000)}"


class OrderService:
    """
    Order placement and read-side summaries.

    Attributes:
        repository: Order data access
        ledger: Stock ledger on the same session as the repository
        router: Delivery pricing router
        gateway: Payment gateway client
    """

    def __init__(
        self,
        repository: OrderRepository,
        ledger: StockLedger,
        router: DeliveryPricingRouter,
        gateway: PaymentGatewayClient,
        tax_rate: Decimal = Decimal("0.05"),
        currency: str = "INR",
    ):
        self.repository = repository
        self.ledger = ledger
        self.router = router
        self.gateway = gateway
        self.tax_rate = tax_rate
        self.currency = currency

    async def place_order(
        self,
        customer_id: uuid.UUID,
        address_id: uuid.UUID,
        lines: Iterable[StockLine],
        requested_provider: Optional[DeliveryProvider] = None,
    ) -> PlacedOrder:
        """
        Place an order and open its gateway order.

        Args:
            customer_id: Customer placing the order
            address_id: One of the customer's saved addresses
            lines: Requested items and quantities
            requested_provider: Provider the client expects, checked against the zone

        Returns:
            What the client needs to open checkout

        Raises:
            ValidationFailedError: For an empty basket or bad quantity
            AddressNotFoundError: If the address is not the customer's
            ItemNotFoundError: If an item is unknown or inactive
            InvalidPostalCodeError: If the address has a malformed postal code
            DeliveryProviderMismatchError: If the requested provider is wrong
            DeliveryNotServiceableError: If the destination cannot be served
            GatewayError: If the gateway order cannot be created
            InsufficientStockError: If any line is out of stock
        """
        merged = merge_lines(lines)
        if not merged:
            raise ValidationFailedError("At least one item is required", code="EMPTY_ORDER")

        address = await self.repository.get_address(customer_id, address_id)
        if address is None:
            raise AddressNotFoundError(
                "Delivery address not found",
                customer_id=str(customer_id),
                address_id=str(address_id),
            )
        postal_code = normalize_postal_code(address.postal_code)

        items = await self.repository.get_items(line.item_id for line in merged)
        missing = [str(line.item_id) for line in merged if line.item_id not in items]
        if missing:
            raise ItemNotFoundError("Items not available", item_ids=missing)

        weight_grams = sum(items[line.item_id].weight_grams * line.quantity for line in merged)

        if requested_provider is not None:
            self.router.validate_provider(postal_code, requested_provider)

        quote = await self.router.quote(postal_code, weight_grams)
        if not quote.serviceable:
            raise DeliveryNotServiceableError(
                quote.message or "Delivery is not available for this pincode",
                postal_code=postal_code,
                provider=quote.provider.value,
            )

        totals = calculate_totals(
            ((items[line.item_id].unit_price, line.quantity) for line in merged),
            quote.charge,
            self.tax_rate,
        )

        gateway_order = await self.gateway.create_order(
            amount=totals.total_amount,
            currency=self.currency,
            receipt=new_receipt(),
            notes={"customer_id": str(customer_id)},
        )

        order = Order(
            id=uuid.uuid4(),
            customer_id=customer_id,
            address_id=address.id,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            delivery_provider=quote.provider,
            delivery_charge=totals.delivery_charge,
            subtotal=totals.subtotal,
            tax_amount=totals.tax_amount,
            total_amount=totals.total_amount,
            currency=self.currency,
            total_weight_grams=weight_grams,
            gateway_order_id=gateway_order.id,
            pricing_breakdown=quote.to_dict(),
            shipment_attempts=0,
        )
        order.items = [
            OrderItem(
                item_id=line.item_id,
                position=position,
                name=items[line.item_id].name,
                quantity=line.quantity,
                unit_price=items[line.item_id].unit_price,
                weight_grams=items[line.item_id].weight_grams,
            )
            for position, line in enumerate(merged)
        ]
        order.payment_attempts = [
            PaymentAttempt(
                source=AttemptSource.ORDER_CREATED,
                status=AttemptStatus.CREATED,
                gateway_order_id=gateway_order.id,
                amount=totals.total_amount,
            )
        ]

        try:
            with log_performance(logger, "place_order_transaction", customer_id=str(customer_id)):
                await self.ledger.reserve(merged)
                await self.repository.add(order)
                await self.repository.commit()
        except Exception:
            await self.repository.rollback()
            logger.warning(
                "Order placement rolled back",
                customer_id=str(customer_id),
                gateway_order_id=gateway_order.id,
            )
            raise

        bind_order_id(order.id)
        logger.info(
            "Order placed",
            order_id=str(order.id),
            gateway_order_id=gateway_order.id,
            total_amount=totals.total_amount,
            delivery_provider=quote.provider.value,
            postal_code=postal_code,
        )

        return PlacedOrder(
            order_id=order.id,
            gateway_order_id=gateway_order.id,
            amount=totals.total_amount,
            currency=self.currency,
            key_id=self.gateway.key_id,
            totals=totals,
            delivery=quote,
        )

    async def get_order_summary(self, order_id: uuid.UUID) -> dict[str, Any]:
        """
        Order with its items, totals, attempt log and delivery address.

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        order = await self.repository.get_or_raise(order_id)
        address = order.address
        totals = OrderTotals(
            subtotal=order.subtotal,
            tax_amount=order.tax_amount,
            delivery_charge=order.delivery_charge,
            total_amount=order.total_amount,
        )

        return {
            "id": str(order.id),
            "customer_id": str(order.customer_id),
            "status": order.status.value,
            "payment_status": order.payment_status.value,
            "delivery_provider": order.delivery_provider.value,
            "delivery_status": order.delivery_status.value if order.delivery_status else None,
            "gateway_order_id": order.gateway_order_id,
            "waybill": order.waybill,
            "currency": order.currency,
            "totals": totals.to_dict(),
            "pricing_breakdown": order.pricing_breakdown,
            "items": [
                {
                    "item_id": str(item.item_id),
                    "name": item.name,
                    "quantity": item.quantity,
                    "unit_price": str(item.unit_price),
                    "line_total": str(item.line_total),
                }
                for item in order.items
            ],
            "payment_attempts": [
                {
                    "id": attempt.id,
                    "source": attempt.source.value,
                    "status": attempt.status.value,
                    "gateway_payment_id": attempt.gateway_payment_id,
                    "amount": attempt.amount,
                    "signature_verified": attempt.signature_verified,
                    "error_reason": attempt.error_reason,
                    "recorded_at": attempt.recorded_at.isoformat() if attempt.recorded_at else None,
                }
                for attempt in order.payment_attempts
            ],
            "address": {
                "name": address.full_name,
                "street": address.street,
                "city": address.city,
                "state": address.state,
                "postal_code": address.postal_code,
                "phone": address.phone,
            }
            if address is not None
            else None,
            "confirmed_at": order.confirmed_at.isoformat() if order.confirmed_at else None,
            "cancelled_at": order.cancelled_at.isoformat() if order.cancelled_at else None,
            "created_at": order.created_at.isoformat() if order.created_at else None,
        }


def build_order_service(
    repository: OrderRepository,
    ledger: StockLedger,
    router: DeliveryPricingRouter,
    gateway: PaymentGatewayClient,
    settings: Optional[Settings] = None,
) -> OrderService:
    settings = settings or get_settings()
    return OrderService(
        repository=repository,
        ledger=ledger,
        router=router,
        gateway=gateway,
        tax_rate=Decimal(str(settings.tax_rate)),
        currency=settings.currency,
    )
