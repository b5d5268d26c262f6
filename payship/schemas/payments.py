"""
Payment reconciliation request and response schemas.
"""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class VerifyPaymentRequest(BaseModel):
    """Checkout callback payload forwarded by the client."""

    order_id: UUID = Field(..., description="Local order id")
    gateway_order_id: str = Field(..., min_length=1, max_length=64)
    gateway_payment_id: str = Field(..., min_length=1, max_length=64)
    signature: str = Field(..., min_length=1, max_length=256)

    @field_validator("gateway_order_id", "gateway_payment_id", "signature")
    @classmethod
    def strip_value(cls, v: str) -> str:
        value = v.strip()
        if not value:
            raise ValueError("Value cannot be blank")
        return value


class CancelPaymentRequest(BaseModel):
    order_id: UUID
    reason: Optional[str] = Field(None, max_length=500)


class ReconciliationResponse(BaseModel):
    order_id: UUID
    payment_status: str
    status: str
    applied: bool
    already_processed: bool
    message: str
    gateway_payment_id: Optional[str] = None


class WebhookResponse(BaseModel):
    handled: bool
    event: Optional[str] = None
    message: str
    order_id: Optional[UUID] = None
    applied: bool = False


class RepairResponse(BaseModel):
    scanned: int
    resolved_paid: int
    resolved_unpaid: int


class CleanupResponse(BaseModel):
    deleted: int
    stock_released: int
