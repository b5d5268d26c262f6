"""
Delivery zone configuration and postal code checks.

The local zone is the set of postal codes our own riders serve. Every other
valid postal code is courier territory; there is no overlap and no third
option.
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import FrozenSet, Optional

from payship.core.config import Settings, get_settings
from payship.core.exceptions import ValidationFailedError

POSTAL_CODE_PATTERN = re.compile(r"[0-9]{6}")


class InvalidPostalCodeError(ValidationFailedError):
    default_code = "INVALID_POSTAL_CODE"

    def __init__(self, postal_code: object):
        super().__init__(
            "Valid 6-digit pincode required",
            postal_code=str(postal_code),
        )


def normalize_postal_code(postal_code: object) -> str:
    """
    Strip whitespace and check the six-digit format.

    Raises:
        InvalidPostalCodeError: If the value is not six digits
    """
    value = str(postal_code).strip() if postal_code is not None else ""
    if not POSTAL_CODE_PATTERN.fullmatch(value):
        raise InvalidPostalCodeError(postal_code)
    return value


def billable_kg(weight_grams: int) -> int:
    """Weight rounded up to whole kilograms."""
    if weight_grams < 0:
        raise ValidationFailedError(
            "Weight cannot be negative",
            code="INVALID_WEIGHT",
            weight_grams=weight_grams,
        )
    return -(-weight_grams // 1000)


@dataclass(frozen=True)
class SelfDeliveryRates:
    base_rate: Decimal
    per_km_rate: Decimal
    per_kg_rate: Decimal
    free_distance_km: Decimal
    fallback_distance_km: Decimal
    eta: str


@dataclass(frozen=True)
class DeliveryZoneConfig:
    """
    Everything the router needs to know about where and how we deliver.

    Built once from settings and passed to the router and adapters.
    """

    local_postal_codes: FrozenSet[str]
    base_postal_code: str
    self_rates: SelfDeliveryRates
    courier_eta: str

    def is_local(self, postal_code: str) -> bool:
        return postal_code in self.local_postal_codes

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "DeliveryZoneConfig":
        settings = settings or get_settings()
        return cls(
            local_postal_codes=frozenset(settings.local_postal_codes),
            base_postal_code=settings.base_postal_code,
            self_rates=SelfDeliveryRates(
                base_rate=Decimal(str(settings.self_base_rate)),
                per_km_rate=Decimal(str(settings.self_per_km_rate)),
                per_kg_rate=Decimal(str(settings.self_per_kg_rate)),
                free_distance_km=Decimal(str(settings.self_free_distance_km)),
                fallback_distance_km=Decimal(str(settings.self_fallback_distance_km)),
                eta=settings.self_delivery_eta,
            ),
            courier_eta=settings.courier_eta,
        )
