"""Catalog rows that obligations reference: category, importance, payment method."""

from __future__ import annotations

from typing import ClassVar, Optional

from sqlmodel import Field, SQLModel


class Category(SQLModel, table=True):
    """Expense category used for reporting."""

    __tablename__: ClassVar[str] = "category"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, nullable=False, max_length=64)


class Importance(SQLModel, table=True):
    """How essential an expense is (essential, nice to have, ...)."""

    __tablename__: ClassVar[str] = "importance"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(nullable=False, max_length=64)


class PaymentMethod(SQLModel, table=True):
    """Cash, debit, credit, transfer."""

    __tablename__: ClassVar[str] = "payment_method"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(nullable=False, max_length=64)
    allows_installments: bool = Field(default=False, nullable=False)
