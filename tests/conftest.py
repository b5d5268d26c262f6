"""
Pytest configuration and shared test fixtures.

Provides order factories, an in-memory order repository that honours the
same conditional-update contract as ``OrderRepository``, and mocked gateway,
ledger and delivery components.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional
from unittest.mock import AsyncMock, Mock

import pytest

from payship.database.models import (
    AttemptSource,
    AttemptStatus,
    Customer,
    CustomerAddress,
    DeliveryProvider,
    DeliveryStatus,
    Order,
    OrderItem,
    OrderStatus,
    PaymentAttempt,
    PaymentStatus,
)
from payship.services.delivery.courier_client import CourierClient
from payship.services.delivery.distance import DistanceEstimator
from payship.services.delivery.zones import DeliveryZoneConfig, SelfDeliveryRates
from payship.services.inventory.stock_ledger import StockLedger
from payship.services.orders.repository import OrderNotFoundError
from payship.services.orders.state_machine import (
    allowed_payment_sources,
    payment_transition_values,
)
from payship.services.payments.gateway_client import GatewayPayment, PaymentGatewayClient
from payship.services.payments.reconciler import OrderPaymentReconciler, ReconcilerConfig
from payship.services.payments.signature import compute_signature

FIXED_NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"
GATEWAY_ORDER_ID = "order_test_123"
LOCAL_POSTAL_CODE = "273001"
REMOTE_POSTAL_CODE = "110001"


# ============================================================================
# Factories
# ============================================================================


def make_order(
    *,
    provider: DeliveryProvider = DeliveryProvider.SELF,
    status: OrderStatus = OrderStatus.PENDING,
    payment_status: PaymentStatus = PaymentStatus.PENDING,
    total_amount: int = 29250,
    gateway_order_id: str = GATEWAY_ORDER_ID,
    created_at: Optional[datetime] = None,
    postal_code: Optional[str] = None,
    attempts: Optional[list[PaymentAttempt]] = None,
    **overrides: Any,
) -> Order:
    """
    Build a transient order: two units of one item, 250.00 + 12.50 tax + 30.00 delivery.
    """
    customer = Customer(
        id=uuid.uuid4(),
        name="Asha Verma",
        email="asha@example.com",
        phone="9876543210",
    )
    if postal_code is None:
        postal_code = LOCAL_POSTAL_CODE if provider == DeliveryProvider.SELF else REMOTE_POSTAL_CODE
    address = CustomerAddress(
        id=uuid.uuid4(),
        customer_id=customer.id,
        first_name="Asha",
        last_name="Verma",
        street="12 Civil Lines",
        city="Gorakhpur" if provider == DeliveryProvider.SELF else "New Delhi",
        state="Uttar Pradesh" if provider == DeliveryProvider.SELF else "Delhi",
        postal_code=postal_code,
        phone="+91 98765 43210",
    )

    order = Order(
        id=uuid.uuid4(),
        customer_id=customer.id,
        address_id=address.id,
        status=status,
        payment_status=payment_status,
        delivery_provider=provider,
        delivery_charge=Decimal("30.00"),
        subtotal=Decimal("250.00"),
        tax_amount=Decimal("12.50"),
        total_amount=total_amount,
        currency="INR",
        total_weight_grams=1000,
        gateway_order_id=gateway_order_id,
        pricing_breakdown={},
        waybill=None,
        delivery_status=None,
        shipment_attempts=0,
        shipment_last_error=None,
        confirmed_at=None,
        cancelled_at=None,
        stock_released_at=None,
        created_at=created_at or FIXED_NOW - timedelta(hours=1),
    )
    for key, value in overrides.items():
        setattr(order, key, value)

    order.customer = customer
    order.address = address
    order.items = [
        OrderItem(
            id=uuid.uuid4(),
            item_id=uuid.UUID("00000000-0000-0000-0000-00000000a001"),
            position=0,
            name="Paneer Tikka",
            quantity=2,
            unit_price=Decimal("125.00"),
            weight_grams=500,
        )
    ]
    order.payment_attempts = attempts if attempts is not None else [
        make_attempt(AttemptSource.ORDER_CREATED, AttemptStatus.CREATED, attempt_id=1)
    ]
    return order


def make_attempt(
    source: AttemptSource,
    status: AttemptStatus,
    gateway_payment_id: Optional[str] = None,
    attempt_id: Optional[int] = None,
    amount: int = 29250,
) -> PaymentAttempt:
    return PaymentAttempt(
        id=attempt_id,
        source=source,
        status=status,
        gateway_order_id=GATEWAY_ORDER_ID,
        gateway_payment_id=gateway_payment_id,
        amount=amount,
        signature_verified=False,
        recorded_at=FIXED_NOW - timedelta(minutes=30),
    )


def make_payment(
    status: str = "captured",
    payment_id: str = "pay_test_456",
    order_id: Optional[str] = GATEWAY_ORDER_ID,
    amount: int = 29250,
    error_description: Optional[str] = None,
) -> GatewayPayment:
    return GatewayPayment(
        id=payment_id,
        order_id=order_id,
        amount=amount,
        currency="INR",
        status=status,
        method="upi",
        error_description=error_description,
    )


def checkout_signature(
    gateway_order_id: str = GATEWAY_ORDER_ID,
    gateway_payment_id: str = "pay_test_456",
    secret: str = KEY_SECRET,
) -> str:
    return compute_signature(f"{gateway_order_id}|{gateway_payment_id}", secret)


# ============================================================================
# In-memory repository
# ============================================================================


class FakeOrderRepository:
    """
    In-memory stand-in for ``OrderRepository``.

    Conditional writes check their expected state and apply in one step, the
    way the real UPDATE ... WHERE statements do. Reads yield to the event
    loop first so concurrent callers interleave.
    """

    def __init__(self, orders: Iterable[Order] = ()):
        self.orders: dict[uuid.UUID, Order] = {order.id: order for order in orders}
        self.addresses: dict[uuid.UUID, CustomerAddress] = {}
        self.items: dict[uuid.UUID, Any] = {}
        self.commits = 0
        self.rollbacks = 0
        self._attempt_ids = 100

    def put(self, order: Order) -> Order:
        self.orders[order.id] = order
        return order

    async def commit(self) -> None:
        self.commits += 1

    async def rollback(self) -> None:
        self.rollbacks += 1

    async def get_by_id(self, order_id: uuid.UUID) -> Optional[Order]:
        await asyncio.sleep(0)
        return self.orders.get(order_id)

    async def get_or_raise(self, order_id: uuid.UUID) -> Order:
        order = await self.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def get_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Order]:
        await asyncio.sleep(0)
        return next(
            (o for o in self.orders.values() if o.gateway_order_id == gateway_order_id),
            None,
        )

    async def get_address(self, customer_id: uuid.UUID, address_id: uuid.UUID):
        address = self.addresses.get(address_id)
        if address is None or address.customer_id != customer_id:
            return None
        return address

    async def get_items(self, item_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, Any]:
        return {item_id: self.items[item_id] for item_id in item_ids if item_id in self.items}

    async def add(self, order: Order) -> Order:
        return self.put(order)

    async def append_attempt(self, attempt: PaymentAttempt, commit: bool = True) -> None:
        self._attempt_ids += 1
        attempt.id = self._attempt_ids
        if attempt.signature_verified is None:
            attempt.signature_verified = False
        if attempt.recorded_at is None:
            attempt.recorded_at = FIXED_NOW
        self.orders[attempt.order_id].payment_attempts.append(attempt)
        if commit:
            await self.commit()

    async def transition_payment(
        self,
        order_id: uuid.UUID,
        target: PaymentStatus,
        attempt: PaymentAttempt,
        now: datetime,
        commit: bool = True,
    ) -> bool:
        order = self.orders.get(order_id)
        if order is None or order.payment_status not in allowed_payment_sources(target):
            return False
        for key, value in payment_transition_values(target, now).items():
            setattr(order, key, value)
        attempt.order_id = order_id
        await self.append_attempt(attempt, commit=commit)
        return True

    async def claim_stock_release(
        self,
        order_id: uuid.UUID,
        now: datetime,
        payment_status: PaymentStatus,
        created_before: Optional[datetime] = None,
    ) -> bool:
        order = self.orders.get(order_id)
        if (
            order is None
            or order.stock_released_at is not None
            or order.payment_status != payment_status
            or (created_before is not None and not order.created_at < created_before)
        ):
            return False
        order.stock_released_at = now
        return True

    async def delete_if_pending(self, order_id: uuid.UUID) -> bool:
        order = self.orders.get(order_id)
        if (
            order is None
            or order.status != OrderStatus.PENDING
            or order.payment_status != PaymentStatus.PENDING
        ):
            return False
        del self.orders[order_id]
        return True

    async def apply_repair(
        self,
        order_id: uuid.UUID,
        payment_status: PaymentStatus,
        status: OrderStatus,
        keep: str,
    ) -> bool:
        order = self.orders.get(order_id)
        if order is None or order.confirmed_at is None or order.cancelled_at is None:
            return False
        order.payment_status = payment_status
        order.status = status
        if keep == "confirmed":
            order.cancelled_at = None
        else:
            order.confirmed_at = None
        await self.commit()
        return True

    def _awaiting_shipment(self, order: Order) -> bool:
        return (
            order.delivery_provider == DeliveryProvider.COURIER
            and order.payment_status == PaymentStatus.PAID
            and order.status == OrderStatus.CONFIRMED
            and order.waybill is None
        )

    async def list_shipment_candidates(self, max_attempts: int) -> list[Order]:
        return [
            o
            for o in self.orders.values()
            if self._awaiting_shipment(o) and o.shipment_attempts < max_attempts
        ]

    async def list_needing_intervention(self, max_attempts: int) -> list[Order]:
        return [
            o
            for o in self.orders.values()
            if self._awaiting_shipment(o) and o.shipment_attempts >= max_attempts
        ]

    async def list_inconsistent(self) -> list[Order]:
        return [
            o
            for o in self.orders.values()
            if o.confirmed_at is not None and o.cancelled_at is not None
        ]

    async def list_stale_pending(self, cutoff: datetime) -> list[Order]:
        return [
            o
            for o in self.orders.values()
            if o.status == OrderStatus.PENDING
            and o.payment_status == PaymentStatus.PENDING
            and o.created_at < cutoff
        ]

    async def list_unreleased_failed(self, cutoff: datetime) -> list[Order]:
        return [
            o
            for o in self.orders.values()
            if o.payment_status == PaymentStatus.FAILED
            and o.stock_released_at is None
            and o.created_at < cutoff
        ]

    async def mark_shipment_created(self, order_id: uuid.UUID, waybill: str) -> bool:
        order = self.orders.get(order_id)
        if order is None or not self._awaiting_shipment(order):
            return False
        order.waybill = waybill
        order.status = OrderStatus.SHIPPED
        order.delivery_status = DeliveryStatus.SHIPMENT_CREATED
        order.shipment_attempts += 1
        order.shipment_last_error = None
        await self.commit()
        return True

    async def record_shipment_failure(self, order_id: uuid.UUID, error: str) -> None:
        order = self.orders.get(order_id)
        if order is not None and order.waybill is None:
            order.shipment_attempts += 1
            order.shipment_last_error = error[:1000]
        await self.commit()

    async def update_delivery_status(
        self, order_id: uuid.UUID, delivery_status: DeliveryStatus
    ) -> None:
        order = self.orders[order_id]
        order.delivery_status = delivery_status
        if delivery_status == DeliveryStatus.DELIVERED and order.status == OrderStatus.SHIPPED:
            order.status = OrderStatus.DELIVERED
        await self.commit()


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def repository() -> FakeOrderRepository:
    return FakeOrderRepository()


@pytest.fixture
def mock_gateway() -> AsyncMock:
    """Gateway client mock; ``fetch_payment`` reports a captured payment by default."""
    gateway = AsyncMock(spec=PaymentGatewayClient)
    gateway.key_id = "rzp_test_key"
    gateway.fetch_payment.return_value = make_payment()
    return gateway


@pytest.fixture
def mock_ledger() -> AsyncMock:
    ledger = AsyncMock(spec=StockLedger)
    ledger.release.return_value = 1
    return ledger


@pytest.fixture
def shipment_dispatcher() -> Mock:
    return Mock()


@pytest.fixture
def reconciler_config() -> ReconcilerConfig:
    return ReconcilerConfig(
        key_secret=KEY_SECRET,
        webhook_secret=WEBHOOK_SECRET,
        stale_order_ttl=timedelta(hours=24),
        release_stock_on_expiry=True,
    )


@pytest.fixture
def reconciler(
    repository: FakeOrderRepository,
    mock_gateway: AsyncMock,
    mock_ledger: AsyncMock,
    reconciler_config: ReconcilerConfig,
    shipment_dispatcher: Mock,
) -> OrderPaymentReconciler:
    return OrderPaymentReconciler(
        repository=repository,
        gateway=mock_gateway,
        ledger=mock_ledger,
        config=reconciler_config,
        shipment_dispatcher=shipment_dispatcher,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def zone() -> DeliveryZoneConfig:
    return DeliveryZoneConfig(
        local_postal_codes=frozenset({"273001", "273002", "273010"}),
        base_postal_code="273001",
        self_rates=SelfDeliveryRates(
            base_rate=Decimal("30"),
            per_km_rate=Decimal("5"),
            per_kg_rate=Decimal("10"),
            free_distance_km=Decimal("2"),
            fallback_distance_km=Decimal("5"),
            eta="1-2 hours",
        ),
        courier_eta="1-3 business days",
    )


@pytest.fixture
def mock_distance() -> AsyncMock:
    estimator = AsyncMock(spec=DistanceEstimator)
    estimator.estimate.return_value = 1.5
    return estimator


@pytest.fixture
def mock_courier_client() -> AsyncMock:
    return AsyncMock(spec=CourierClient)


@pytest.fixture
def api_client():
    """
    Synchronous test client with the rate limiter reset and overrides cleared.

    Yields:
        TestClient bound to the application
    """
    from fastapi.testclient import TestClient

    from payship.api.limiter import limiter
    from payship.main import app

    limiter.reset()
    client = TestClient(app, raise_server_exceptions=False)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture
def override(api_client):
    """Register a dependency override: ``override(get_reconciler, mock)``."""
    from payship.main import app

    def _override(dependency, value) -> None:
        app.dependency_overrides[dependency] = lambda: value

    return _override


@pytest.fixture
def operator_key(monkeypatch) -> str:
    """Configure an operator key on the cached settings."""
    from payship.core.config import get_settings

    monkeypatch.setattr(get_settings(), "operator_api_key", "test-operator-key")
    return "test-operator-key"
