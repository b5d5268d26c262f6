"""
Catalog item model.

Catalog maintenance lives elsewhere; this service only reads prices and
weights and changes ``stock_qty`` through ``StockLedger``.
"""

from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from payship.database.base import BaseModel


class Item(BaseModel):
    """Sellable catalog entry with its on-hand stock."""

    __tablename__ = "items"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    stock_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    weight_grams: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=500,
        comment="Shipping weight of one unit",
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("stock_qty >= 0", name="ck_items_stock_non_negative"),
        CheckConstraint("unit_price >= 0", name="ck_items_unit_price_non_negative"),
    )
