"""
Tests for the stock ledger.

The session is mocked; each UPDATE reports its rowcount the way the
database would for a guarded decrement.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from payship.core.exceptions import RepositoryError, ValidationFailedError
from payship.services.inventory.stock_ledger import (
    InsufficientStockError,
    StockLedger,
    StockLine,
    merge_lines,
)

ITEM_A = uuid.UUID("00000000-0000-0000-0000-0000000000aa")
ITEM_B = uuid.UUID("00000000-0000-0000-0000-0000000000bb")


class Savepoint:
    """Async context manager standing in for ``session.begin_nested()``."""

    def __init__(self):
        self.rolled_back = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.rolled_back = exc_type is not None
        return False


def rowcount(n: int) -> MagicMock:
    result = MagicMock()
    result.rowcount = n
    return result


def scalar(value) -> MagicMock:
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    return result


def statement_item_ids(session: AsyncMock) -> list[uuid.UUID]:
    ids = []
    for call in session.execute.await_args_list:
        params = call.args[0].compile().params
        ids.extend(value for value in params.values() if isinstance(value, uuid.UUID))
    return ids


@pytest.fixture
def savepoint() -> Savepoint:
    return Savepoint()


@pytest.fixture
def session(savepoint) -> AsyncMock:
    mock = AsyncMock(spec=AsyncSession)
    mock.begin_nested = MagicMock(return_value=savepoint)
    return mock


class TestMergeLines:
    """Test line merging."""

    def test_duplicates_summed_and_sorted(self) -> None:
        merged = merge_lines([StockLine(ITEM_B, 1), StockLine(ITEM_A, 2), StockLine(ITEM_B, 3)])

        assert merged == [StockLine(ITEM_A, 2), StockLine(ITEM_B, 4)]

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, True, False])
    def test_bad_quantity(self, quantity) -> None:
        with pytest.raises(ValidationFailedError) as exc_info:
            merge_lines([StockLine(ITEM_A, quantity)])

        assert exc_info.value.code == "INVALID_QUANTITY"


class TestReserve:
    """Test all-or-nothing reservation."""

    @pytest.mark.asyncio
    async def test_reserves_every_line(self, session, savepoint) -> None:
        session.execute.side_effect = [rowcount(1), rowcount(1)]

        reserved = await StockLedger(session).reserve([StockLine(ITEM_B, 1), StockLine(ITEM_A, 2)])

        assert reserved == [StockLine(ITEM_A, 2), StockLine(ITEM_B, 1)]
        assert session.execute.await_count == 2
        assert statement_item_ids(session) == [ITEM_A, ITEM_B]
        assert savepoint.rolled_back is False
        session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_shortfall_rolls_back_savepoint(self, session, savepoint) -> None:
        session.execute.side_effect = [rowcount(1), rowcount(0), scalar(1)]

        with pytest.raises(InsufficientStockError) as exc_info:
            await StockLedger(session).reserve([StockLine(ITEM_A, 1), StockLine(ITEM_B, 5)])

        error = exc_info.value
        assert error.item_id == ITEM_B
        assert error.code == "INSUFFICIENT_STOCK"
        assert error.context["requested"] == 5
        assert error.context["available"] == 1
        assert savepoint.rolled_back is True

    @pytest.mark.asyncio
    async def test_empty_reservation(self, session) -> None:
        with pytest.raises(ValidationFailedError) as exc_info:
            await StockLedger(session).reserve([])

        assert exc_info.value.code == "EMPTY_RESERVATION"

    @pytest.mark.asyncio
    async def test_database_error_wrapped(self, session) -> None:
        session.execute.side_effect = OperationalError("UPDATE items", {}, Exception("gone"))

        with pytest.raises(RepositoryError):
            await StockLedger(session).reserve([StockLine(ITEM_A, 1)])


class TestRelease:
    """Test stock release."""

    @pytest.mark.asyncio
    async def test_release_counts_rows(self, session) -> None:
        session.execute.side_effect = [rowcount(1), rowcount(0)]

        released = await StockLedger(session).release([StockLine(ITEM_A, 2), StockLine(ITEM_B, 1)])

        assert released == 1
        session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_available(self, session) -> None:
        session.execute.return_value = scalar(7)

        assert await StockLedger(session).available(ITEM_A) == 7
