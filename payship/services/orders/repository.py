"""
Order repository with conditional (compare-and-swap) updates.

Every write that depends on the current payment or shipment state is issued
as a single ``UPDATE ... WHERE <expected state>`` and reports whether it
matched. Callers never read a status and then write unconditionally, so two
racing payment signals cannot both win and a stale failure cannot overwrite
a capture.
"""

import uuid
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from payship.core.exceptions import NotFoundError, RepositoryError
from payship.core.logging import get_logger
from payship.database.models.catalog import Item
from payship.database.models.customer import CustomerAddress
from payship.database.models.order import (
    DeliveryProvider,
    DeliveryStatus,
    Order,
    OrderStatus,
    PaymentAttempt,
    PaymentStatus,
)
from payship.services.orders.state_machine import (
    allowed_order_sources,
    allowed_payment_sources,
    payment_transition_values,
)

logger = get_logger(__name__)


class OrderNotFoundError(NotFoundError):
    """Raised when an order cannot be found."""

    default_code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: Any):
        super().__init__(f"Order {order_id} not found", order_id=str(order_id))


class OrderRepository:
    """
    Data access for orders, their attempt log and the rows they reference.

    Methods that change state commit by default. Pass ``commit=False`` to
    compose several writes into one transaction and finish it with
    ``commit()`` or ``rollback()``.

    Attributes:
        session: Async database session for executing queries
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Order transaction commit failed", error=str(e))
            raise RepositoryError("Failed to commit order changes", error=str(e)) from e

    async def rollback(self) -> None:
        await self.session.rollback()

    async def _execute(self, statement: Any, operation: str, **context: Any) -> Any:
        try:
            return await self.session.execute(statement)
        except IntegrityError as e:
            await self.session.rollback()
            logger.error("Order integrity error", operation=operation, error=str(e), **context)
            raise RepositoryError(
                f"Integrity error during {operation}", code="INTEGRITY_ERROR", **context
            ) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Order query failed", operation=operation, error=str(e), **context)
            raise RepositoryError(f"Database error during {operation}", **context) from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_by_id(self, order_id: uuid.UUID) -> Optional[Order]:
        """Load an order with items and attempts, refreshing any cached copy."""
        result = await self._execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True),
            "get_by_id",
            order_id=str(order_id),
        )
        return result.scalar_one_or_none()

    async def get_or_raise(self, order_id: uuid.UUID) -> Order:
        order = await self.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def get_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Order]:
        result = await self._execute(
            select(Order)
            .where(Order.gateway_order_id == gateway_order_id)
            .execution_options(populate_existing=True),
            "get_by_gateway_order_id",
            gateway_order_id=gateway_order_id,
        )
        return result.scalar_one_or_none()

    async def get_address(
        self, customer_id: uuid.UUID, address_id: uuid.UUID
    ) -> Optional[CustomerAddress]:
        """Resolve an address only if it belongs to the customer."""
        result = await self._execute(
            select(CustomerAddress).where(
                CustomerAddress.id == address_id,
                CustomerAddress.customer_id == customer_id,
            ),
            "get_address",
            address_id=str(address_id),
        )
        return result.scalar_one_or_none()

    async def get_items(self, item_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, Item]:
        ids = list(item_ids)
        result = await self._execute(
            select(Item).where(Item.id.in_(ids), Item.is_active.is_(True)),
            "get_items",
            count=len(ids),
        )
        return {item.id: item for item in result.scalars().all()}

    async def list_shipment_candidates(self, max_attempts: int) -> Sequence[Order]:
        """Paid, confirmed courier orders without a waybill and below the retry cap."""
        result = await self._execute(
            select(Order)
            .where(self._awaiting_shipment(), Order.shipment_attempts < max_attempts)
            .order_by(Order.confirmed_at),
            "list_shipment_candidates",
        )
        return result.scalars().all()

    async def list_needing_intervention(self, max_attempts: int) -> Sequence[Order]:
        result = await self._execute(
            select(Order)
            .where(self._awaiting_shipment(), Order.shipment_attempts >= max_attempts)
            .order_by(Order.confirmed_at),
            "list_needing_intervention",
        )
        return result.scalars().all()

    async def list_inconsistent(self) -> Sequence[Order]:
        """Orders carrying both a confirmation and a cancellation timestamp."""
        result = await self._execute(
            select(Order).where(
                Order.confirmed_at.is_not(None),
                Order.cancelled_at.is_not(None),
            ),
            "list_inconsistent",
        )
        return result.scalars().all()

    async def list_stale_pending(self, cutoff: datetime) -> Sequence[Order]:
        result = await self._execute(
            select(Order).where(
                Order.status == OrderStatus.PENDING,
                Order.payment_status == PaymentStatus.PENDING,
                Order.created_at < cutoff,
            ),
            "list_stale_pending",
        )
        return result.scalars().all()

    async def list_unreleased_failed(self, cutoff: datetime) -> Sequence[Order]:
        result = await self._execute(
            select(Order).where(
                Order.payment_status == PaymentStatus.FAILED,
                Order.stock_released_at.is_(None),
                Order.created_at < cutoff,
            ),
            "list_unreleased_failed",
        )
        return result.scalars().all()

    @staticmethod
    def _awaiting_shipment() -> Any:
        return and_(
            Order.delivery_provider == DeliveryProvider.COURIER,
            Order.payment_status == PaymentStatus.PAID,
            Order.status == OrderStatus.CONFIRMED,
            Order.waybill.is_(None),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add(self, order: Order) -> Order:
        """Stage a new order with its items and attempts. Does not commit."""
        self.session.add(order)
        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Failed to insert order", error=str(e))
            raise RepositoryError("Failed to create order", error=str(e)) from e
        return order

    async def append_attempt(self, attempt: PaymentAttempt, commit: bool = True) -> None:
        """Append an attempt record without changing any status."""
        self.session.add(attempt)
        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError("Failed to append payment attempt", error=str(e)) from e
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
        """
        Move the payment status to ``target`` if the current status allows it.

        The status check and the write are one UPDATE statement. The attempt
        record is inserted only when that statement matched, in the same
        transaction.

        Args:
            order_id: Order to transition
            target: Desired payment status
            attempt: Record describing the signal that caused the transition
            now: Timestamp for confirmed_at/cancelled_at
            commit: Commit when the transition applied

        Returns:
            True if this call performed the transition, False if the order was
            not in an allowed source state (including when it does not exist)
        """
        sources = allowed_payment_sources(target)
        result = await self._execute(
            update(Order)
            .where(Order.id == order_id, Order.payment_status.in_(sources))
            .values(**payment_transition_values(target, now))
            .execution_options(synchronize_session=False),
            "transition_payment",
            order_id=str(order_id),
            target=target.value,
        )

        if result.rowcount != 1:
            logger.info(
                "Payment transition not applied",
                order_id=str(order_id),
                target=target.value,
            )
            return False

        attempt.order_id = order_id
        await self.append_attempt(attempt, commit=commit)
        logger.info("Payment transition applied", order_id=str(order_id), target=target.value)
        return True

    async def claim_stock_release(
        self,
        order_id: uuid.UUID,
        now: datetime,
        payment_status: PaymentStatus,
        created_before: Optional[datetime] = None,
    ) -> bool:
        """
        Mark an order's stock as released, once. Does not commit.

        Args:
            order_id: Order whose stock is being released
            now: Release timestamp
            payment_status: Payment status the order must still be in
            created_before: When given, only claim orders older than this

        Returns:
            True if the caller now owns the release
        """
        conditions = [
            Order.id == order_id,
            Order.stock_released_at.is_(None),
            Order.payment_status == payment_status,
        ]
        if created_before is not None:
            conditions.append(Order.created_at < created_before)

        result = await self._execute(
            update(Order)
            .where(*conditions)
            .values(stock_released_at=now)
            .execution_options(synchronize_session=False),
            "claim_stock_release",
            order_id=str(order_id),
        )
        return result.rowcount == 1

    async def delete_if_pending(self, order_id: uuid.UUID) -> bool:
        """Delete an order only while it is still pending/pending. Does not commit."""
        result = await self._execute(
            delete(Order)
            .where(
                Order.id == order_id,
                Order.status == OrderStatus.PENDING,
                Order.payment_status == PaymentStatus.PENDING,
            )
            .execution_options(synchronize_session=False),
            "delete_if_pending",
            order_id=str(order_id),
        )
        return result.rowcount == 1

    async def apply_repair(
        self,
        order_id: uuid.UUID,
        payment_status: PaymentStatus,
        status: OrderStatus,
        keep: str,
    ) -> bool:
        """
        Resolve a both-timestamps order, keeping one of the two timestamps.

        Args:
            order_id: Order to repair
            payment_status: Projected payment status
            status: Projected order status
            keep: ``"confirmed"`` to clear cancelled_at, ``"cancelled"`` to
                clear confirmed_at

        Returns:
            True if the order was still inconsistent and has been fixed
        """
        values: dict[str, Any] = {"payment_status": payment_status, "status": status}
        if keep == "confirmed":
            values["cancelled_at"] = None
        else:
            values["confirmed_at"] = None

        result = await self._execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.confirmed_at.is_not(None),
                Order.cancelled_at.is_not(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False),
            "apply_repair",
            order_id=str(order_id),
        )
        await self.commit()
        return result.rowcount == 1

    async def mark_shipment_created(self, order_id: uuid.UUID, waybill: str) -> bool:
        """Record a waybill and ship the order if it is still awaiting one."""
        result = await self._execute(
            update(Order)
            .where(Order.id == order_id, self._awaiting_shipment())
            .values(
                waybill=waybill,
                status=OrderStatus.SHIPPED,
                delivery_status=DeliveryStatus.SHIPMENT_CREATED,
                shipment_attempts=Order.shipment_attempts + 1,
                shipment_last_error=None,
            )
            .execution_options(synchronize_session=False),
            "mark_shipment_created",
            order_id=str(order_id),
        )
        await self.commit()
        return result.rowcount == 1

    async def record_shipment_failure(self, order_id: uuid.UUID, error: str) -> None:
        await self._execute(
            update(Order)
            .where(Order.id == order_id, Order.waybill.is_(None))
            .values(
                shipment_attempts=Order.shipment_attempts + 1,
                shipment_last_error=error[:1000],
            )
            .execution_options(synchronize_session=False),
            "record_shipment_failure",
            order_id=str(order_id),
        )
        await self.commit()

    async def update_delivery_status(
        self, order_id: uuid.UUID, delivery_status: DeliveryStatus
    ) -> None:
        """Store the courier tracking status, delivering a shipped order when it lands."""
        await self._execute(
            update(Order)
            .where(Order.id == order_id)
            .values(delivery_status=delivery_status)
            .execution_options(synchronize_session=False),
            "update_delivery_status",
            order_id=str(order_id),
        )
        if delivery_status == DeliveryStatus.DELIVERED:
            await self._execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.status.in_(allowed_order_sources(OrderStatus.DELIVERED)),
                )
                .values(status=OrderStatus.DELIVERED)
                .execution_options(synchronize_session=False),
                "mark_delivered",
                order_id=str(order_id),
            )
        await self.commit()
