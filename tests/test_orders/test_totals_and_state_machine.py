"""
Tests for order totals and the order/payment state machine.
"""

from decimal import Decimal

import pytest

from payship.database.models import AttemptSource, AttemptStatus, OrderStatus, PaymentStatus
from payship.services.orders.service import calculate_totals
from payship.services.orders.state_machine import (
    allowed_order_sources,
    allowed_payment_sources,
    payment_transition_values,
    project_order_status,
    project_payment_status,
)

from conftest import FIXED_NOW, make_attempt


# ============================================================================
# Totals
# ============================================================================


class TestCalculateTotals:
    """Test basket pricing."""

    def test_reference_basket(self) -> None:
        totals = calculate_totals([(Decimal("125.00"), 2)], Decimal("30"), Decimal("0.05"))

        assert totals.subtotal == Decimal("250.00")
        assert totals.tax_amount == Decimal("12.50")
        assert totals.delivery_charge == Decimal("30.00")
        assert totals.total_amount == 29250
        assert totals.grand_total == Decimal("292.50")

    def test_mixed_basket(self) -> None:
        totals = calculate_totals(
            [(Decimal("100"), 2), (Decimal("50"), 1)], Decimal("30"), Decimal("0.05")
        )

        assert totals.subtotal == Decimal("250.00")
        assert totals.tax_amount == Decimal("12.50")
        assert totals.grand_total == Decimal("292.50")

    def test_tax_rounds_half_up(self) -> None:
        totals = calculate_totals([(Decimal("99.99"), 1)], Decimal("0"), Decimal("0.05"))

        # 4.9995 rounds up
        assert totals.tax_amount == Decimal("5.00")
        assert totals.total_amount == 10499

    def test_delivery_not_taxed(self) -> None:
        without_delivery = calculate_totals([(Decimal("100"), 1)], Decimal("0"), Decimal("0.05"))
        with_delivery = calculate_totals([(Decimal("100"), 1)], Decimal("50"), Decimal("0.05"))

        assert with_delivery.tax_amount == without_delivery.tax_amount
        assert with_delivery.total_amount - without_delivery.total_amount == 5000

    def test_multiple_lines(self) -> None:
        totals = calculate_totals(
            [(Decimal("10.10"), 3), (Decimal("0.05"), 7)], Decimal("30"), Decimal("0.05")
        )

        assert totals.subtotal == Decimal("30.65")
        assert totals.tax_amount == Decimal("1.53")
        assert totals.total_amount == 6218

    def test_to_dict_uses_strings(self) -> None:
        data = calculate_totals([(Decimal("125.00"), 2)], Decimal("30"), Decimal("0.05")).to_dict()

        assert data == {
            "subtotal": "250.00",
            "tax_amount": "12.50",
            "delivery_charge": "30.00",
            "grand_total": "292.50",
            "total_amount": 29250,
        }


# ============================================================================
# Transitions
# ============================================================================


class TestPaymentTransitions:
    """Test the payment transition table."""

    @pytest.mark.parametrize(
        "current,target,allowed",
        [
            (PaymentStatus.PENDING, PaymentStatus.PAID, True),
            (PaymentStatus.PENDING, PaymentStatus.FAILED, True),
            (PaymentStatus.PENDING, PaymentStatus.CANCELLED, True),
            (PaymentStatus.FAILED, PaymentStatus.PAID, True),
            (PaymentStatus.CANCELLED, PaymentStatus.PAID, True),
            (PaymentStatus.PAID, PaymentStatus.FAILED, False),
            (PaymentStatus.PAID, PaymentStatus.CANCELLED, False),
            (PaymentStatus.CANCELLED, PaymentStatus.FAILED, False),
            (PaymentStatus.PAID, PaymentStatus.PENDING, False),
        ],
    )
    def test_transition(self, current, target, allowed) -> None:
        assert (current in allowed_payment_sources(target)) is allowed

    def test_allowed_sources(self) -> None:
        assert allowed_payment_sources(PaymentStatus.PAID) == {
            PaymentStatus.PENDING,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
        }
        assert allowed_payment_sources(PaymentStatus.FAILED) == {PaymentStatus.PENDING}
        assert allowed_payment_sources(PaymentStatus.CANCELLED) == {
            PaymentStatus.PENDING,
            PaymentStatus.FAILED,
        }
        assert allowed_payment_sources(PaymentStatus.PENDING) == frozenset()

    def test_paid_values_clear_cancellation(self) -> None:
        values = payment_transition_values(PaymentStatus.PAID, FIXED_NOW)

        assert values["status"] == OrderStatus.CONFIRMED
        assert values["confirmed_at"] == FIXED_NOW
        assert values["cancelled_at"] is None

    def test_cancelled_values_clear_confirmation(self) -> None:
        values = payment_transition_values(PaymentStatus.CANCELLED, FIXED_NOW)

        assert values["status"] == OrderStatus.CANCELLED
        assert values["cancelled_at"] == FIXED_NOW
        assert values["confirmed_at"] is None

    def test_failed_values_touch_no_timestamps(self) -> None:
        values = payment_transition_values(PaymentStatus.FAILED, FIXED_NOW)

        assert "confirmed_at" not in values
        assert "cancelled_at" not in values

    def test_pending_is_not_a_target(self) -> None:
        with pytest.raises(ValueError):
            payment_transition_values(PaymentStatus.PENDING, FIXED_NOW)


class TestOrderTransitions:
    """Test the order transition table."""

    @pytest.mark.parametrize(
        "current,target,allowed",
        [
            (OrderStatus.PENDING, OrderStatus.CONFIRMED, True),
            (OrderStatus.CONFIRMED, OrderStatus.SHIPPED, True),
            (OrderStatus.SHIPPED, OrderStatus.DELIVERED, True),
            (OrderStatus.CONFIRMED, OrderStatus.CANCELLED, False),
            (OrderStatus.DELIVERED, OrderStatus.SHIPPED, False),
            (OrderStatus.PENDING, OrderStatus.SHIPPED, False),
        ],
    )
    def test_transition(self, current, target, allowed) -> None:
        assert (current in allowed_order_sources(target)) is allowed


# ============================================================================
# Projection
# ============================================================================


class TestProjection:
    """Test deriving statuses from the attempt log."""

    def test_no_outcomes_is_pending(self) -> None:
        attempts = [make_attempt(AttemptSource.ORDER_CREATED, AttemptStatus.CREATED)]

        assert project_payment_status(attempts) == PaymentStatus.PENDING

    def test_any_paid_wins(self) -> None:
        attempts = [
            make_attempt(AttemptSource.CLIENT_CALLBACK, AttemptStatus.PAID, "pay_1"),
            make_attempt(AttemptSource.WEBHOOK, AttemptStatus.FAILED, "pay_2"),
            make_attempt(AttemptSource.CLIENT_CANCEL, AttemptStatus.CANCELLED),
        ]

        assert project_payment_status(attempts) == PaymentStatus.PAID

    def test_latest_terminal_decides(self) -> None:
        attempts = [
            make_attempt(AttemptSource.WEBHOOK, AttemptStatus.FAILED, "pay_1"),
            make_attempt(AttemptSource.CLIENT_CANCEL, AttemptStatus.CANCELLED),
        ]

        assert project_payment_status(attempts) == PaymentStatus.CANCELLED

    def test_signature_verified_is_not_paid(self) -> None:
        attempts = [
            make_attempt(AttemptSource.CLIENT_CALLBACK, AttemptStatus.SIGNATURE_VERIFIED, "pay_1")
        ]

        assert project_payment_status(attempts) == PaymentStatus.PENDING

    def test_paid_keeps_fulfilment_status(self) -> None:
        assert project_order_status(PaymentStatus.PAID, OrderStatus.SHIPPED) == OrderStatus.SHIPPED
        assert project_order_status(PaymentStatus.PAID, OrderStatus.CANCELLED) == OrderStatus.CONFIRMED
        assert project_order_status(PaymentStatus.CANCELLED) == OrderStatus.CANCELLED

