"""
Order placement request and response schemas.
"""

from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from payship.database.models.order import DeliveryProvider


class OrderLineRequest(BaseModel):
    item_id: UUID = Field(..., description="Catalog item id")
    quantity: int = Field(..., gt=0, le=1000, description="Units ordered")


class PlaceOrderRequest(BaseModel):
    """Request schema for placing an order."""

    customer_id: UUID = Field(..., description="Customer placing the order")
    address_id: UUID = Field(..., description="One of the customer's saved addresses")
    items: list[OrderLineRequest] = Field(..., min_length=1, max_length=100)
    delivery_provider: Optional[DeliveryProvider] = Field(
        None,
        description="Provider the client expects; rejected if it does not serve the address",
    )

    @field_validator("items")
    @classmethod
    def validate_items(cls, v: list[OrderLineRequest]) -> list[OrderLineRequest]:
        if not v:
            raise ValueError("At least one item is required")
        return v


class OrderTotalsResponse(BaseModel):
    subtotal: str
    tax_amount: str
    delivery_charge: str
    grand_total: str
    total_amount: int = Field(..., description="Grand total in minor units")


class PlaceOrderResponse(BaseModel):
    """What the client needs to open the gateway checkout."""

    order_id: UUID
    gateway_order_id: str
    amount: int
    currency: str
    key_id: str
    totals: OrderTotalsResponse
    delivery: dict[str, Any]


class OrderSummaryResponse(BaseModel):
    id: UUID
    customer_id: UUID
    status: str
    payment_status: str
    delivery_provider: str
    delivery_status: Optional[str] = None
    gateway_order_id: Optional[str] = None
    waybill: Optional[str] = None
    currency: str
    totals: OrderTotalsResponse
    pricing_breakdown: dict[str, Any] = Field(default_factory=dict)
    items: list[dict[str, Any]]
    payment_attempts: list[dict[str, Any]]
    address: Optional[dict[str, Any]] = None
    confirmed_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    created_at: Optional[str] = None
