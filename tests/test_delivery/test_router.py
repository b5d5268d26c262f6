"""
Tests for provider routing and delivery quoting.
"""

from decimal import Decimal

import pytest

from payship.core.exceptions import ValidationFailedError
from payship.database.models import DeliveryProvider, OrderStatus, PaymentStatus
from payship.services.delivery.adapters import (
    CourierAdapter,
    DeliveryProviderMismatchError,
    PricingSource,
    SelfDeliveryAdapter,
)
from payship.services.delivery.courier_client import CourierRate
from payship.services.delivery.router import DeliveryPricingRouter, should_create_shipment
from payship.services.delivery.zones import InvalidPostalCodeError, billable_kg, normalize_postal_code

from conftest import make_order


@pytest.fixture
def pricing_router(zone, mock_distance, mock_courier_client) -> DeliveryPricingRouter:
    return DeliveryPricingRouter(
        zone=zone,
        self_adapter=SelfDeliveryAdapter(zone, mock_distance),
        courier_adapter=CourierAdapter(zone, mock_courier_client, mock_distance),
    )


# ============================================================================
# Postal codes
# ============================================================================


class TestPostalCodes:
    """Test postal code normalization and weight rounding."""

    def test_whitespace_stripped(self) -> None:
        assert normalize_postal_code(" 273001 ") == "273001"

    @pytest.mark.parametrize(
        "value", ["27300", "2730011", "27300A", "", None, "273 001", "२७३००१", "２７３００１", "273001\n1"]
    )
    def test_malformed_rejected(self, value) -> None:
        with pytest.raises(InvalidPostalCodeError) as exc_info:
            normalize_postal_code(value)

        assert exc_info.value.code == "INVALID_POSTAL_CODE"
        assert exc_info.value.http_status == 400

    @pytest.mark.parametrize("grams,kg", [(0, 0), (1, 1), (1000, 1), (1001, 2), (2500, 3)])
    def test_billable_kg(self, grams, kg) -> None:
        assert billable_kg(grams) == kg


# ============================================================================
# Routing
# ============================================================================


class TestProviderFor:
    """Test provider selection by zone."""

    def test_local_is_self(self, pricing_router) -> None:
        assert pricing_router.provider_for("273002") == DeliveryProvider.SELF

    def test_remote_is_courier(self, pricing_router) -> None:
        assert pricing_router.provider_for("110001") == DeliveryProvider.COURIER

    def test_malformed_rejected(self, pricing_router) -> None:
        with pytest.raises(InvalidPostalCodeError):
            pricing_router.provider_for("ABCDEF")


class TestQuote:
    """Test routed quotes."""

    @pytest.mark.asyncio
    async def test_local_quote_never_calls_courier(
        self, pricing_router, mock_courier_client
    ) -> None:
        quote = await pricing_router.quote("273001", 800)

        assert quote.provider == DeliveryProvider.SELF
        assert quote.pricing_source == PricingSource.SELF_DISTANCE
        assert quote.charge == Decimal("30")
        mock_courier_client.get_rate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_remote_quote_uses_courier_price(
        self, pricing_router, mock_courier_client, mock_distance
    ) -> None:
        mock_distance.estimate.return_value = 640.12
        mock_courier_client.get_rate.return_value = CourierRate(
            serviceable=True, total_amount=Decimal("120"), raw={"total_amount": 120}
        )

        quote = await pricing_router.quote("110001", 3000)

        assert quote.provider == DeliveryProvider.COURIER
        assert quote.pricing_source == PricingSource.COURIER_REAL
        assert quote.charge == Decimal("120")
        assert quote.distance_km == 640.12

    @pytest.mark.asyncio
    async def test_base_rate_within_free_allowances(self, pricing_router, mock_distance) -> None:
        mock_distance.estimate.return_value = 2.0

        quote = await pricing_router.quote("273010", 1000)

        assert quote.charge == Decimal("30")

    @pytest.mark.asyncio
    async def test_fallback_distance_when_geocoding_fails(
        self, pricing_router, mock_distance
    ) -> None:
        mock_distance.estimate.return_value = None

        quote = await pricing_router.quote("273002", 1000)

        assert quote.charge == Decimal("45")

    @pytest.mark.asyncio
    async def test_charge_grows_with_weight(self, pricing_router, mock_distance) -> None:
        mock_distance.estimate.return_value = 4.0

        light = await pricing_router.quote("273002", 1000)
        heavy = await pricing_router.quote("273002", 5000)

        assert heavy.charge > light.charge

    @pytest.mark.asyncio
    async def test_negative_weight_rejected(self, pricing_router) -> None:
        with pytest.raises(ValidationFailedError) as exc_info:
            await pricing_router.quote("273001", -1)

        assert exc_info.value.code == "INVALID_WEIGHT"

    @pytest.mark.asyncio
    async def test_malformed_postal_code(self, pricing_router) -> None:
        with pytest.raises(InvalidPostalCodeError):
            await pricing_router.quote("12345", 1000)


class TestValidateProvider:
    """Test provider checks against the zone."""

    def test_matching_providers_pass(self, pricing_router) -> None:
        pricing_router.validate_provider("273001", DeliveryProvider.SELF)
        pricing_router.validate_provider("110001", DeliveryProvider.COURIER)

    def test_courier_for_local_rejected(self, pricing_router) -> None:
        with pytest.raises(DeliveryProviderMismatchError) as exc_info:
            pricing_router.validate_provider("273001", DeliveryProvider.COURIER)

        assert exc_info.value.http_status == 409
        assert exc_info.value.provider == DeliveryProvider.COURIER

    def test_self_for_remote_rejected(self, pricing_router) -> None:
        with pytest.raises(DeliveryProviderMismatchError) as exc_info:
            pricing_router.validate_provider("110001", DeliveryProvider.SELF)

        assert "local zone" in exc_info.value.message


class TestShouldCreateShipment:
    """Test the shipment eligibility predicate."""

    def test_paid_confirmed_courier_order(self) -> None:
        order = make_order(
            provider=DeliveryProvider.COURIER,
            status=OrderStatus.CONFIRMED,
            payment_status=PaymentStatus.PAID,
        )

        assert should_create_shipment(order) is True

    def test_self_delivery_order(self) -> None:
        order = make_order(
            provider=DeliveryProvider.SELF,
            status=OrderStatus.CONFIRMED,
            payment_status=PaymentStatus.PAID,
        )

        assert should_create_shipment(order) is False

    def test_already_has_waybill(self) -> None:
        order = make_order(
            provider=DeliveryProvider.COURIER,
            status=OrderStatus.CONFIRMED,
            payment_status=PaymentStatus.PAID,
            waybill="WB1",
        )

        assert should_create_shipment(order) is False

    def test_unpaid_order(self) -> None:
        order = make_order(provider=DeliveryProvider.COURIER)

        assert should_create_shipment(order) is False
