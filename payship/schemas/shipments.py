"""
Shipment administration and tracking schemas.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


class ShipmentRetryResponse(BaseModel):
    total: int
    success: int
    failed: int


class InterventionOrder(BaseModel):
    order_id: str
    attempts: int
    last_error: Optional[str] = None
    confirmed_at: Optional[str] = None
    total_amount: int


class TrackingResponse(BaseModel):
    order_id: str
    waybill: str
    status: str
    raw_status: Optional[str] = None
    location: Optional[str] = None
    expected_delivery: Optional[str] = None
    history: list[Any] = Field(default_factory=list)
