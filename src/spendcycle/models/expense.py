"""Ledger entries produced by the generation engine."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import ClassVar, Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class Expense(SQLModel, table=True):
    """A dated expense materialized from an obligation.

    ``origin_type``/``origin_id`` point back at the obligation; ``period_key``
    identifies the billing period so each origin yields at most one row per period.
    """

    __tablename__: ClassVar[str] = "expense"
    __table_args__ = (
        UniqueConstraint("origin_type", "origin_id", "period_key", name="uq_expense_origin_period"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: int = Field(foreign_key="user.id", nullable=False, index=True)
    expense_date: date = Field(nullable=False, index=True)
    description: str = Field(nullable=False, max_length=255)
    amount_ars: Optional[float] = Field(default=None)
    amount_usd: Optional[float] = Field(default=None)
    origin_currency: str = Field(default="ARS", max_length=3)
    exchange_rate: Optional[float] = Field(default=None)
    origin_type: str = Field(nullable=False, max_length=32, index=True)
    origin_id: int = Field(nullable=False, index=True)
    period_key: str = Field(nullable=False, max_length=32)
    installment_number: Optional[int] = Field(default=None)
    category_id: Optional[int] = Field(default=None, foreign_key="category.id")
    importance_id: Optional[int] = Field(default=None, foreign_key="importance.id")
    payment_method_id: Optional[int] = Field(default=None, foreign_key="payment_method.id")
    card_id: Optional[int] = Field(default=None, foreign_key="card.id")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
