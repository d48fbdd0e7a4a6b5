"""Obligation tables: the four kinds of payment the engine materializes into expenses."""

from __future__ import annotations

from datetime import date
from enum import Enum
from typing import ClassVar, Optional

from sqlmodel import Field, SQLModel


class ObligationKind(str, Enum):
    """Discriminator used to pick a strategy and tag generated expenses."""

    ONE_TIME = "one_time"
    RECURRING = "recurring"
    AUTOMATIC_DEBIT = "automatic_debit"
    INSTALLMENT = "installment"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    BIMONTHLY = "bimonthly"
    QUARTERLY = "quarterly"
    SEMIANNUAL = "semiannual"
    ANNUAL = "annual"


class ObligationBase(SQLModel):
    """Fields shared by every obligation kind."""

    owner_id: int = Field(foreign_key="user.id", nullable=False, index=True)
    description: str = Field(nullable=False, max_length=255)
    amount: float = Field(nullable=False, description="Amount in the origin currency")
    currency: str = Field(default="ARS", max_length=3, description="Origin currency code")
    category_id: Optional[int] = Field(default=None, foreign_key="category.id")
    importance_id: Optional[int] = Field(default=None, foreign_key="importance.id")
    payment_method_id: Optional[int] = Field(default=None, foreign_key="payment_method.id")
    card_id: Optional[int] = Field(default=None, foreign_key="card.id")


class OneTimeExpense(ObligationBase, table=True):
    """Single expense; generated once, at creation time."""

    __tablename__: ClassVar[str] = "one_time_expense"

    id: Optional[int] = Field(default=None, primary_key=True)
    expense_date: date = Field(nullable=False)
    processed: bool = Field(default=False, nullable=False, index=True)
    amount_ars: Optional[float] = Field(default=None)
    amount_usd: Optional[float] = Field(default=None)
    exchange_rate: Optional[float] = Field(default=None)


class RecurringExpense(ObligationBase, table=True):
    """Monthly (or annual, when ``payment_month`` is set) expense on a fixed day."""

    __tablename__: ClassVar[str] = "recurring_expense"

    id: Optional[int] = Field(default=None, primary_key=True)
    active: bool = Field(default=True, nullable=False, index=True)
    payment_day: int = Field(nullable=False, ge=1, le=31)
    payment_month: Optional[int] = Field(default=None, ge=1, le=12)
    start_date: Optional[date] = Field(default=None)
    last_generated_date: Optional[date] = Field(default=None)
    # Refreshed daily by the exchange-rate job, outside this engine
    amount_ars: Optional[float] = Field(default=None)
    amount_usd: Optional[float] = Field(default=None)
    reference_rate: Optional[float] = Field(default=None)


class AutomaticDebit(ObligationBase, table=True):
    """Debit charged automatically by a provider; tolerant to weekend drift."""

    __tablename__: ClassVar[str] = "automatic_debit"

    id: Optional[int] = Field(default=None, primary_key=True)
    active: bool = Field(default=True, nullable=False, index=True)
    frequency: str = Field(default=Frequency.MONTHLY.value, nullable=False, max_length=16)
    payment_day: int = Field(nullable=False, ge=1, le=31)
    payment_month: Optional[int] = Field(default=None, ge=1, le=12)
    start_date: Optional[date] = Field(default=None)
    end_date: Optional[date] = Field(default=None)
    last_generated_date: Optional[date] = Field(default=None)
    amount_ars: Optional[float] = Field(default=None)
    amount_usd: Optional[float] = Field(default=None)
    reference_rate: Optional[float] = Field(default=None)


class InstallmentPurchase(ObligationBase, table=True):
    """Purchase paid in ``installment_count`` equal monthly installments.

    ``amount`` mirrors ``total_amount`` so the shared base columns stay populated.
    """

    __tablename__: ClassVar[str] = "installment_purchase"

    id: Optional[int] = Field(default=None, primary_key=True)
    total_amount: float = Field(nullable=False)
    installment_count: int = Field(default=1, nullable=False, ge=1, le=60)
    purchase_date: date = Field(nullable=False)
    pending: bool = Field(default=True, nullable=False, index=True)
    last_installment_date: Optional[date] = Field(default=None)


OBLIGATION_MODELS: dict[ObligationKind, type[ObligationBase]] = {
    ObligationKind.ONE_TIME: OneTimeExpense,
    ObligationKind.RECURRING: RecurringExpense,
    ObligationKind.AUTOMATIC_DEBIT: AutomaticDebit,
    ObligationKind.INSTALLMENT: InstallmentPurchase,
}
