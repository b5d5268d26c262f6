"""
Database models package initialization.

Importing this package registers every model with ``Base.metadata`` so that
relationships resolve and Alembic sees the full schema.
"""

from payship.database.base import Base, BaseModel, TimestampMixin, UUIDMixin
from payship.database.models.catalog import Item
from payship.database.models.customer import Customer, CustomerAddress
from payship.database.models.order import (
    AttemptSource,
    AttemptStatus,
    DeliveryProvider,
    DeliveryStatus,
    Order,
    OrderItem,
    OrderStatus,
    PaymentAttempt,
    PaymentStatus,
)

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "UUIDMixin",
    "Item",
    "Customer",
    "CustomerAddress",
    "Order",
    "OrderItem",
    "PaymentAttempt",
    "OrderStatus",
    "PaymentStatus",
    "DeliveryProvider",
    "DeliveryStatus",
    "AttemptSource",
    "AttemptStatus",
]
