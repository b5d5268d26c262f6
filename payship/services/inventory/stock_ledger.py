"""
Stock ledger for per-item available quantity.

Stock is committed when an order is placed, before payment. Each line is
decremented with a single conditional UPDATE so two orders racing for the
last unit cannot both succeed, and the whole reservation runs inside a
savepoint so a shortfall on any line leaves every other line untouched.
"""

import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from payship.core.exceptions import (
    BusinessConflictError,
    RepositoryError,
    ValidationFailedError,
)
from payship.core.logging import get_logger
from payship.database.models.catalog import Item

logger = get_logger(__name__)


class InsufficientStockError(BusinessConflictError):
    """Raised when a line asks for more units than are on hand."""

    def __init__(self, item_id: uuid.UUID, requested: int, available: Optional[int]):
        super().__init__(
            f"Insufficient stock for item {item_id}",
            code="INSUFFICIENT_STOCK",
            item_id=str(item_id),
            requested=requested,
            available=available,
        )
        self.item_id = item_id


@dataclass(frozen=True)
class StockLine:
    """Quantity of one catalog item."""

    item_id: uuid.UUID
    quantity: int


def merge_lines(lines: Iterable[StockLine]) -> list[StockLine]:
    """
    Combine duplicate item lines and sort by item id.

    Sorting gives every transaction the same lock order, so two orders touching
    the same items cannot deadlock each other.

    Raises:
        ValidationFailedError: If a quantity is not a positive integer
    """
    totals: "OrderedDict[uuid.UUID, int]" = OrderedDict()
    for line in lines:
        quantity = line.quantity
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationFailedError(
                "Quantity must be a positive integer",
                code="INVALID_QUANTITY",
                item_id=str(line.item_id),
                quantity=line.quantity,
            )
        totals[line.item_id] = totals.get(line.item_id, 0) + line.quantity

    return [StockLine(item_id, qty) for item_id, qty in sorted(totals.items(), key=lambda kv: str(kv[0]))]


class StockLedger:
    """
    Atomic stock decrements and releases.

    The ledger never commits; the caller owns the surrounding transaction so
    that the reservation lands together with the order that caused it.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def reserve(self, lines: Iterable[StockLine]) -> list[StockLine]:
        """
        Decrement stock for every line, all or nothing.

        Args:
            lines: Requested quantities, duplicates allowed

        Returns:
            The merged lines that were reserved

        Raises:
            InsufficientStockError: If any line cannot be satisfied
            ValidationFailedError: If a quantity is invalid
            RepositoryError: If the database operation fails
        """
        merged = merge_lines(lines)
        if not merged:
            raise ValidationFailedError("No items to reserve", code="EMPTY_RESERVATION")

        try:
            async with self.session.begin_nested():
                for line in merged:
                    result = await self.session.execute(
                        update(Item)
                        .where(Item.id == line.item_id, Item.stock_qty >= line.quantity)
                        .values(stock_qty=Item.stock_qty - line.quantity)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        available = await self.available(line.item_id)
                        logger.warning(
                            "Stock reservation refused",
                            item_id=str(line.item_id),
                            requested=line.quantity,
                            available=available,
                        )
                        raise InsufficientStockError(line.item_id, line.quantity, available)
        except SQLAlchemyError as e:
            logger.error("Stock reservation failed", error=str(e), exc_info=True)
            raise RepositoryError("Failed to reserve stock", error=str(e)) from e

        logger.info(
            "Stock reserved",
            lines=len(merged),
            units=sum(line.quantity for line in merged),
        )
        return merged

    async def release(self, lines: Iterable[StockLine]) -> int:
        """
        Return previously reserved units to stock.

        Args:
            lines: Quantities to give back

        Returns:
            Number of item rows updated
        """
        merged = merge_lines(lines)
        released = 0

        try:
            for line in merged:
                result = await self.session.execute(
                    update(Item)
                    .where(Item.id == line.item_id)
                    .values(stock_qty=Item.stock_qty + line.quantity)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    released += 1
                else:
                    logger.warning(
                        "Stock release skipped for missing item",
                        item_id=str(line.item_id),
                    )
        except SQLAlchemyError as e:
            logger.error("Stock release failed", error=str(e), exc_info=True)
            raise RepositoryError("Failed to release stock", error=str(e)) from e

        logger.info("Stock released", lines=released)
        return released

    async def available(self, item_id: uuid.UUID) -> Optional[int]:
        """Current on-hand quantity, or None if the item does not exist."""
        result = await self.session.execute(select(Item.stock_qty).where(Item.id == item_id))
        return result.scalar_one_or_none()
