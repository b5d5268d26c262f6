"""
Delivery provider adapters and the normalized quote they produce.

Each adapter declares the provider it stands for and the set of operations
it supports. Self delivery can only quote; shipment creation and tracking
exist on the courier adapter alone, so there is no code path that could ask
our own riders for a waybill.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, ClassVar, FrozenSet, Optional

from payship.core.exceptions import BusinessConflictError, PayshipError
from payship.core.logging import get_logger
from payship.database.models.order import DeliveryProvider
from payship.services.delivery.courier_client import (
    CourierClient,
    ShipmentRequest,
    ShipmentResult,
    TrackingResult,
)
from payship.services.delivery.distance import DistanceEstimator
from payship.services.delivery.zones import (
    DeliveryZoneConfig,
    SelfDeliveryRates,
    billable_kg,
)

logger = get_logger(__name__)


class PricingSource(str, Enum):
    COURIER_REAL = "COURIER_REAL"
    SELF_DISTANCE = "SELF_DISTANCE"


class ProviderCapability(str, Enum):
    QUOTE = "quote"
    CREATE_SHIPMENT = "create_shipment"
    TRACK = "track"


class DeliveryProviderMismatchError(BusinessConflictError):
    """A provider was asked to serve a postal code outside its territory."""

    default_code = "DELIVERY_PROVIDER_MISMATCH"

    def __init__(self, message: str, postal_code: str, provider: DeliveryProvider):
        super().__init__(message, postal_code=postal_code, provider=provider.value)
        self.postal_code = postal_code
        self.provider = provider


class QuoteIntegrityError(PayshipError):
    """A quote claimed a courier price it never received."""

    default_code = "QUOTE_INTEGRITY_ERROR"


@dataclass(frozen=True)
class DeliveryQuote:
    """
    Provider-neutral delivery quote.

    A serviceable courier quote must carry the courier's own non-zero
    ``total_amount`` in its breakdown; construction fails otherwise.
    """

    provider: DeliveryProvider
    pricing_source: Optional[PricingSource]
    charge: Optional[Decimal]
    eta: Optional[str]
    breakdown: dict[str, Any] = field(default_factory=dict)
    distance_km: Optional[float] = None
    serviceable: bool = True
    message: Optional[str] = None

    def __post_init__(self) -> None:
        if self.pricing_source == PricingSource.COURIER_REAL:
            total = self.breakdown.get("total_amount")
            try:
                valid = total is not None and Decimal(str(total)) > 0
            except ArithmeticError:
                valid = False
            if not valid:
                raise QuoteIntegrityError(
                    "Courier pricing without a courier-supplied total amount",
                    provider=self.provider.value,
                )
        if self.serviceable and (self.charge is None or self.pricing_source is None):
            raise QuoteIntegrityError("Serviceable quote without a price", provider=self.provider.value)

    @classmethod
    def not_serviceable(cls, provider: DeliveryProvider, message: str) -> "DeliveryQuote":
        return cls(
            provider=provider,
            pricing_source=None,
            charge=None,
            eta=None,
            serviceable=False,
            message=message,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider.value,
            "pricing_source": self.pricing_source.value if self.pricing_source else None,
            "charge": str(self.charge) if self.charge is not None else None,
            "eta": self.eta,
            "breakdown": self.breakdown,
            "distance_km": self.distance_km,
            "serviceable": self.serviceable,
            "message": self.message,
        }


def price_self_delivery(
    rates: SelfDeliveryRates,
    distance_km: Decimal,
    weight_grams: int,
) -> tuple[Decimal, dict[str, str]]:
    """
    Distance and weight based self-delivery charge.

    The free distance and the first kilogram cost nothing beyond the base
    rate. The total is rounded half-up to whole rupees.

    Returns:
        The charge and its breakdown
    """
    distance_rate = max(Decimal("0"), (distance_km - rates.free_distance_km) * rates.per_km_rate)
    weight_rate = max(Decimal("0"), (billable_kg(weight_grams) - 1) * rates.per_kg_rate)
    charge = (rates.base_rate + distance_rate + weight_rate).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    breakdown = {
        "base_rate": str(rates.base_rate),
        "distance_rate": str(distance_rate),
        "weight_rate": str(weight_rate),
        "total": str(charge),
    }
    return charge, breakdown


class DeliveryAdapter(ABC):
    """Common shape of every provider adapter."""

    provider: ClassVar[DeliveryProvider]
    capabilities: ClassVar[FrozenSet[ProviderCapability]]

    def __init__(self, zone: DeliveryZoneConfig):
        self.zone = zone

    def supports(self, capability: ProviderCapability) -> bool:
        return capability in self.capabilities

    @abstractmethod
    def serves(self, postal_code: str) -> bool:
        """Whether this provider may deliver to the postal code."""

    @abstractmethod
    async def quote(self, postal_code: str, weight_grams: int) -> DeliveryQuote:
        """Price a delivery to a postal code the provider serves."""

    def _ensure_serves(self, postal_code: str) -> None:
        if not self.serves(postal_code):
            raise DeliveryProviderMismatchError(
                f"{self.provider.value} delivery does not serve pincode {postal_code}",
                postal_code=postal_code,
                provider=self.provider,
            )


class SelfDeliveryAdapter(DeliveryAdapter):
    """Our own riders, local zone only, priced by distance and weight."""

    provider = DeliveryProvider.SELF
    capabilities = frozenset({ProviderCapability.QUOTE})

    def __init__(self, zone: DeliveryZoneConfig, distance_estimator: DistanceEstimator):
        super().__init__(zone)
        self.distance_estimator = distance_estimator

    def serves(self, postal_code: str) -> bool:
        return self.zone.is_local(postal_code)

    async def quote(self, postal_code: str, weight_grams: int) -> DeliveryQuote:
        self._ensure_serves(postal_code)
        rates = self.zone.self_rates

        distance = await self.distance_estimator.estimate(self.zone.base_postal_code, postal_code)
        if distance is None:
            distance = float(rates.fallback_distance_km)
            logger.info(
                "Using fallback distance for self delivery",
                postal_code=postal_code,
                distance_km=distance,
            )

        charge, breakdown = price_self_delivery(rates, Decimal(str(distance)), weight_grams)
        return DeliveryQuote(
            provider=self.provider,
            pricing_source=PricingSource.SELF_DISTANCE,
            charge=charge,
            eta=rates.eta,
            breakdown=breakdown,
            distance_km=distance,
        )


class CourierAdapter(DeliveryAdapter):
    """Third-party courier for every postal code outside the local zone."""

    provider = DeliveryProvider.COURIER
    capabilities = frozenset(
        {
            ProviderCapability.QUOTE,
            ProviderCapability.CREATE_SHIPMENT,
            ProviderCapability.TRACK,
        }
    )

    def __init__(
        self,
        zone: DeliveryZoneConfig,
        client: CourierClient,
        distance_estimator: Optional[DistanceEstimator] = None,
    ):
        super().__init__(zone)
        self.client = client
        self.distance_estimator = distance_estimator

    def serves(self, postal_code: str) -> bool:
        return not self.zone.is_local(postal_code)

    async def quote(self, postal_code: str, weight_grams: int) -> DeliveryQuote:
        self._ensure_serves(postal_code)

        rate = await self.client.get_rate(postal_code, weight_grams)
        if not rate.serviceable or rate.total_amount is None:
            return DeliveryQuote.not_serviceable(self.provider, rate.message or "Pincode not serviceable")

        # Shown to the customer only; the courier's amount is the price.
        distance = None
        if self.distance_estimator is not None:
            distance = await self.distance_estimator.estimate(self.zone.base_postal_code, postal_code)

        breakdown = dict(rate.raw)
        breakdown["total_amount"] = str(rate.total_amount)
        return DeliveryQuote(
            provider=self.provider,
            pricing_source=PricingSource.COURIER_REAL,
            charge=rate.total_amount,
            eta=self.zone.courier_eta,
            breakdown=breakdown,
            distance_km=distance,
        )

    async def create_shipment(self, request: ShipmentRequest) -> ShipmentResult:
        return await self.client.create_shipment(request)

    async def track(self, waybill: str) -> TrackingResult:
        return await self.client.track(waybill)
