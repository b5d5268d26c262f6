"""
Tests for delivery adapters, quote integrity and self-delivery pricing.
"""

from decimal import Decimal

import pytest

from payship.database.models import DeliveryProvider
from payship.services.delivery.adapters import (
    CourierAdapter,
    DeliveryProviderMismatchError,
    DeliveryQuote,
    PricingSource,
    ProviderCapability,
    QuoteIntegrityError,
    SelfDeliveryAdapter,
    price_self_delivery,
)
from payship.services.delivery.courier_client import CourierRate, ShipmentResult


class TestDeliveryQuote:
    """Test quote construction invariants."""

    def test_courier_quote_requires_courier_total(self) -> None:
        with pytest.raises(QuoteIntegrityError):
            DeliveryQuote(
                provider=DeliveryProvider.COURIER,
                pricing_source=PricingSource.COURIER_REAL,
                charge=Decimal("50"),
                eta="1-3 business days",
                breakdown={},
            )

    def test_courier_quote_rejects_zero_total(self) -> None:
        with pytest.raises(QuoteIntegrityError):
            DeliveryQuote(
                provider=DeliveryProvider.COURIER,
                pricing_source=PricingSource.COURIER_REAL,
                charge=Decimal("0"),
                eta=None,
                breakdown={"total_amount": "0"},
            )

    def test_serviceable_quote_requires_charge(self) -> None:
        with pytest.raises(QuoteIntegrityError):
            DeliveryQuote(
                provider=DeliveryProvider.SELF,
                pricing_source=PricingSource.SELF_DISTANCE,
                charge=None,
                eta="1-2 hours",
            )

    def test_not_serviceable_quote(self) -> None:
        quote = DeliveryQuote.not_serviceable(DeliveryProvider.COURIER, "Pincode not serviceable")

        assert quote.serviceable is False
        assert quote.to_dict()["charge"] is None
        assert quote.to_dict()["pricing_source"] is None


class TestPriceSelfDelivery:
    """Test the distance and weight formula."""

    @pytest.mark.parametrize(
        "distance_km,weight_grams,expected",
        [
            ("1.5", 800, Decimal("30")),
            ("2", 1000, Decimal("30")),
            ("0", 0, Decimal("30")),
            ("5", 1000, Decimal("45")),
            ("6.3", 2500, Decimal("72")),
            ("2.1", 1000, Decimal("31")),
        ],
    )
    def test_charge(self, zone, distance_km, weight_grams, expected) -> None:
        charge, breakdown = price_self_delivery(zone.self_rates, Decimal(distance_km), weight_grams)

        assert charge == expected
        assert breakdown["total"] == str(expected)

    def test_breakdown_components(self, zone) -> None:
        _, breakdown = price_self_delivery(zone.self_rates, Decimal("6.3"), 2500)

        assert Decimal(breakdown["base_rate"]) == Decimal("30")
        assert Decimal(breakdown["distance_rate"]) == Decimal("21.5")
        assert Decimal(breakdown["weight_rate"]) == Decimal("20")

    def test_charge_never_decreases(self, zone) -> None:
        charges = [
            price_self_delivery(zone.self_rates, Decimal(km), grams)[0]
            for km, grams in [("1", 500), ("3", 500), ("3", 1500), ("8", 1500), ("8", 4000)]
        ]

        assert charges == sorted(charges)


class TestSelfDeliveryAdapter:
    """Test the self-delivery adapter."""

    def test_capabilities(self, zone, mock_distance) -> None:
        adapter = SelfDeliveryAdapter(zone, mock_distance)

        assert adapter.supports(ProviderCapability.QUOTE)
        assert not adapter.supports(ProviderCapability.CREATE_SHIPMENT)
        assert not adapter.supports(ProviderCapability.TRACK)
        assert not hasattr(adapter, "create_shipment")

    @pytest.mark.asyncio
    async def test_quote_uses_estimated_distance(self, zone, mock_distance) -> None:
        mock_distance.estimate.return_value = 6.3

        quote = await SelfDeliveryAdapter(zone, mock_distance).quote("273002", 2500)

        assert quote.charge == Decimal("72")
        assert quote.pricing_source == PricingSource.SELF_DISTANCE
        assert quote.distance_km == 6.3
        mock_distance.estimate.assert_awaited_once_with("273001", "273002")

    @pytest.mark.asyncio
    async def test_quote_uses_fallback_distance(self, zone, mock_distance) -> None:
        mock_distance.estimate.return_value = None

        quote = await SelfDeliveryAdapter(zone, mock_distance).quote("273010", 1000)

        assert quote.charge == Decimal("45")
        assert quote.distance_km == 5.0

    @pytest.mark.asyncio
    async def test_refuses_remote_pincode(self, zone, mock_distance) -> None:
        with pytest.raises(DeliveryProviderMismatchError):
            await SelfDeliveryAdapter(zone, mock_distance).quote("110001", 1000)

        mock_distance.estimate.assert_not_awaited()


class TestCourierAdapter:
    """Test the courier adapter."""

    def test_capabilities(self, zone, mock_courier_client) -> None:
        adapter = CourierAdapter(zone, mock_courier_client)

        assert adapter.supports(ProviderCapability.CREATE_SHIPMENT)
        assert adapter.supports(ProviderCapability.TRACK)

    @pytest.mark.asyncio
    async def test_quote_carries_courier_total(self, zone, mock_courier_client) -> None:
        mock_courier_client.get_rate.return_value = CourierRate(
            serviceable=True, total_amount=Decimal("85.50"), raw={"total_amount": 85.5}
        )

        quote = await CourierAdapter(zone, mock_courier_client).quote("110001", 1000)

        assert quote.charge == Decimal("85.50")
        assert quote.breakdown["total_amount"] == "85.50"
        assert quote.eta == "1-3 business days"
        assert quote.distance_km is None

    @pytest.mark.asyncio
    async def test_unserviceable(self, zone, mock_courier_client) -> None:
        mock_courier_client.get_rate.return_value = CourierRate(
            serviceable=False, message="Pincode not serviceable"
        )

        quote = await CourierAdapter(zone, mock_courier_client).quote("799001", 1000)

        assert quote.serviceable is False
        assert quote.charge is None

    @pytest.mark.asyncio
    async def test_refuses_local_pincode(self, zone, mock_courier_client) -> None:
        with pytest.raises(DeliveryProviderMismatchError):
            await CourierAdapter(zone, mock_courier_client).quote("273001", 1000)

        mock_courier_client.get_rate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_shipment_delegates(self, zone, mock_courier_client) -> None:
        mock_courier_client.create_shipment.return_value = ShipmentResult(
            success=True, waybill="WB1"
        )
        request = object()

        result = await CourierAdapter(zone, mock_courier_client).create_shipment(request)

        assert result.waybill == "WB1"
        mock_courier_client.create_shipment.assert_awaited_once_with(request)
