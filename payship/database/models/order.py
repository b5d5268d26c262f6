"""
Order, order item snapshot and payment attempt models.

An order carries two status axes: ``status`` (fulfilment) and
``payment_status`` (money). ``payment_status`` is a cached projection of the
append-only ``payment_attempts`` log and is only ever changed through the
conditional updates in ``OrderRepository``.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Any

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payship.database.base import Base, BaseModel


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class OrderStatus(str, Enum):
    """
    Fulfilment status of an order.

    Attributes:
        PENDING: Created, awaiting payment
        CONFIRMED: Payment captured
        SHIPPED: Handed to the courier or out with a rider
        DELIVERED: Received by the customer
        CANCELLED: Cancelled by the customer before payment
        FAILED: Payment failed
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    """Payment verdict of an order."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class DeliveryProvider(str, Enum):
    """Who physically delivers the order."""

    SELF = "self"
    COURIER = "courier"


class DeliveryStatus(str, Enum):
    """Courier tracking vocabulary."""

    PENDING = "PENDING"
    SHIPMENT_CREATED = "SHIPMENT_CREATED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    RTO = "RTO"


class AttemptSource(str, Enum):
    """Channel that produced a payment attempt record."""

    ORDER_CREATED = "order_created"
    CLIENT_CALLBACK = "client_callback"
    WEBHOOK = "webhook"
    MANUAL_CHECK = "manual_check"
    CLIENT_CANCEL = "client_cancel"


class AttemptStatus(str, Enum):
    """Outcome recorded by a payment attempt."""

    CREATED = "created"
    SIGNATURE_VERIFIED = "signature_verified"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Order(BaseModel):
    """
    Customer order, the unit of payment reconciliation.

    Amounts: ``subtotal``, ``tax_amount`` and ``delivery_charge`` are decimal
    rupees for display; ``total_amount`` is the integer paise amount sent to
    the gateway and checked against every captured payment.
    """

    __tablename__ = "orders"

    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("customers.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    address_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("customer_addresses.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Delivery address, resolved from the customer's address book",
    )

    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(OrderStatus, name="order_status", values_callable=_enum_values),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
    )

    payment_status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus, name="payment_status", values_callable=_enum_values),
        nullable=False,
        default=PaymentStatus.PENDING,
        index=True,
    )

    delivery_provider: Mapped[DeliveryProvider] = mapped_column(
        SQLEnum(DeliveryProvider, name="delivery_provider", values_callable=_enum_values),
        nullable=False,
        comment="Assigned at quote time, never changed",
    )

    delivery_charge: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    total_amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Grand total in minor currency units",
    )

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    total_weight_grams: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    gateway_order_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        unique=True,
        comment="Payment gateway order reference",
    )

    pricing_breakdown: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )

    waybill: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    delivery_status: Mapped[Optional[DeliveryStatus]] = mapped_column(
        SQLEnum(DeliveryStatus, name="delivery_status", values_callable=_enum_values),
        nullable=True,
    )

    shipment_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )

    shipment_last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    stock_released_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
    )

    payment_attempts: Mapped[list["PaymentAttempt"]] = relationship(
        "PaymentAttempt",
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="PaymentAttempt.id",
    )

    customer: Mapped["Customer"] = relationship("Customer", lazy="selectin")
    address: Mapped["CustomerAddress"] = relationship("CustomerAddress", lazy="selectin")

    __table_args__ = (
        Index("ix_orders_status_payment_status", "status", "payment_status"),
        Index(
            "ix_orders_shipment_pending",
            "delivery_provider",
            "shipment_attempts",
            postgresql_where=text("waybill IS NULL"),
        ),
        CheckConstraint("total_amount > 0", name="ck_orders_total_amount_positive"),
        CheckConstraint("shipment_attempts >= 0", name="ck_orders_shipment_attempts"),
        {"comment": "Customer orders with payment and delivery state"},
    )

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, status={self.status.value}, "
            f"payment_status={self.payment_status.value}, total_amount={self.total_amount})>"
        )

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items)


class OrderItem(BaseModel):
    """Snapshot of a catalog item at the time the order was placed."""

    __tablename__ = "order_items"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    item_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("items.id", ondelete="RESTRICT"),
        nullable=False,
    )

    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    weight_grams: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="ck_order_items_unit_price"),
    )

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class PaymentAttempt(Base):
    """
    Immutable record of one payment signal.

    Rows are only ever inserted. The identity column gives the log its order.
    """

    __tablename__ = "payment_attempts"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    source: Mapped[AttemptSource] = mapped_column(
        SQLEnum(AttemptSource, name="attempt_source", values_callable=_enum_values),
        nullable=False,
    )

    status: Mapped[AttemptStatus] = mapped_column(
        SQLEnum(AttemptStatus, name="attempt_status", values_callable=_enum_values),
        nullable=False,
    )

    gateway_order_id: Mapped[Optional[str]] = mapped_column(String(64))
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    amount: Mapped[Optional[int]] = mapped_column(BigInteger, comment="Claimed amount, minor units")
    method: Mapped[Optional[str]] = mapped_column(String(32))
    signature_verified: Mapped[bool] = mapped_column(default=False, nullable=False)
    error_reason: Mapped[Optional[str]] = mapped_column(Text)

    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    order: Mapped["Order"] = relationship("Order", back_populates="payment_attempts")
