"""
Delivery pricing router.

Chooses the provider for a postal code, asks that provider for a quote, and
guards the boundary between the two: a local-zone order can never be routed
to the courier and an out-of-zone order can never be handed to our riders.
"""

from typing import Any, Optional

from payship.core.config import Settings, get_settings
from payship.core.exceptions import ValidationFailedError
from payship.core.logging import get_logger
from payship.database.models.order import DeliveryProvider, OrderStatus, PaymentStatus
from payship.services.delivery.adapters import (
    CourierAdapter,
    DeliveryAdapter,
    DeliveryProviderMismatchError,
    DeliveryQuote,
    SelfDeliveryAdapter,
)
from payship.services.delivery.courier_client import get_courier_client
from payship.services.delivery.distance import get_distance_estimator
from payship.services.delivery.zones import DeliveryZoneConfig, normalize_postal_code

logger = get_logger(__name__)


class DeliveryPricingRouter:
    """
    Routes quotes to the self-delivery or courier adapter by postal code.
    """

    def __init__(
        self,
        zone: DeliveryZoneConfig,
        self_adapter: SelfDeliveryAdapter,
        courier_adapter: CourierAdapter,
    ):
        self.zone = zone
        self.self_adapter = self_adapter
        self.courier_adapter = courier_adapter

    def provider_for(self, postal_code: str) -> DeliveryProvider:
        """
        Provider responsible for a postal code.

        Raises:
            InvalidPostalCodeError: If the postal code is malformed
        """
        code = normalize_postal_code(postal_code)
        return DeliveryProvider.SELF if self.zone.is_local(code) else DeliveryProvider.COURIER

    def adapter_for(self, provider: DeliveryProvider) -> DeliveryAdapter:
        if provider == DeliveryProvider.SELF:
            return self.self_adapter
        return self.courier_adapter

    async def quote(self, postal_code: str, weight_grams: int) -> DeliveryQuote:
        """
        Quote a delivery.

        Args:
            postal_code: Destination postal code
            weight_grams: Total shipment weight

        Returns:
            A quote from the responsible provider; courier destinations it
            cannot price come back as non-serviceable quotes

        Raises:
            InvalidPostalCodeError: If the postal code is malformed
            ValidationFailedError: If the weight is negative
        """
        code = normalize_postal_code(postal_code)
        if weight_grams is None or weight_grams < 0:
            raise ValidationFailedError(
                "Weight must be zero or more grams",
                code="INVALID_WEIGHT",
                weight_grams=weight_grams,
            )

        provider = self.provider_for(code)
        quote = await self.adapter_for(provider).quote(code, weight_grams)

        logger.info(
            "Delivery quoted",
            postal_code=code,
            provider=provider.value,
            serviceable=quote.serviceable,
            charge=str(quote.charge) if quote.charge is not None else None,
        )
        return quote

    def validate_provider(self, postal_code: str, provider: DeliveryProvider) -> None:
        """
        Reject a provider that does not own the postal code.

        Raises:
            InvalidPostalCodeError: If the postal code is malformed
            DeliveryProviderMismatchError: If the provider is the wrong one
        """
        expected = self.provider_for(postal_code)
        if provider != expected:
            logger.warning(
                "Delivery provider mismatch",
                postal_code=postal_code,
                requested=provider.value,
                expected=expected.value,
            )
            if provider == DeliveryProvider.SELF:
                message = f"Self delivery is only available in the local zone, not {postal_code}"
            else:
                message = f"Pincode {postal_code} is served by self delivery, not the courier"
            raise DeliveryProviderMismatchError(message, postal_code=postal_code, provider=provider)


def should_create_shipment(order: Any) -> bool:
    """True for a paid, confirmed courier order that has no waybill yet."""
    return (
        order.delivery_provider == DeliveryProvider.COURIER
        and order.payment_status == PaymentStatus.PAID
        and order.status == OrderStatus.CONFIRMED
        and not order.waybill
    )


def get_delivery_router(settings: Optional[Settings] = None) -> DeliveryPricingRouter:
    """Build the router and its adapters from application settings."""
    settings = settings or get_settings()
    zone = DeliveryZoneConfig.from_settings(settings)
    distance = get_distance_estimator(settings)
    return DeliveryPricingRouter(
        zone=zone,
        self_adapter=SelfDeliveryAdapter(zone, distance),
        courier_adapter=CourierAdapter(zone, get_courier_client(settings), distance),
    )
