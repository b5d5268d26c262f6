"""
Delivery quote and provider validation schemas.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from payship.database.models.order import DeliveryProvider
from payship.services.delivery.zones import POSTAL_CODE_PATTERN


class DeliveryQuoteResponse(BaseModel):
    provider: DeliveryProvider
    pricing_source: Optional[str] = None
    charge: Optional[str] = None
    eta: Optional[str] = None
    breakdown: dict[str, Any] = Field(default_factory=dict)
    distance_km: Optional[float] = None
    serviceable: bool
    message: Optional[str] = None


class ValidateProviderRequest(BaseModel):
    postal_code: str = Field(..., description="Six-digit destination pincode")
    provider: DeliveryProvider

    @field_validator("postal_code")
    @classmethod
    def validate_postal_code(cls, v: str) -> str:
        value = v.strip()
        if not POSTAL_CODE_PATTERN.match(value):
            raise ValueError("Valid 6-digit pincode required")
        return value


class ValidateProviderResponse(BaseModel):
    postal_code: str
    provider: DeliveryProvider
    valid: bool = True
