"""Payment cards and their billing-cycle configuration."""

from __future__ import annotations

from enum import Enum
from typing import ClassVar, Optional

from sqlmodel import Field, SQLModel


class CardType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class Card(SQLModel, table=True):
    """A debit or credit card. Credit cards carry closing and due days."""

    __tablename__: ClassVar[str] = "card"

    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: int = Field(foreign_key="user.id", nullable=False, index=True)
    name: str = Field(nullable=False, max_length=64)
    card_type: str = Field(default=CardType.CREDIT.value, nullable=False, max_length=16)
    closing_day: Optional[int] = Field(default=None, ge=1, le=31)
    due_day: Optional[int] = Field(default=None, ge=1, le=31)

    @property
    def is_credit(self) -> bool:
        return self.card_type == CardType.CREDIT.value
