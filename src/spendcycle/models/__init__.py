"""SQLModel table exports."""

from .card import Card, CardType
from .catalog import Category, Importance, PaymentMethod
from .expense import Expense
from .obligation import (
    OBLIGATION_MODELS,
    AutomaticDebit,
    Frequency,
    InstallmentPurchase,
    ObligationBase,
    ObligationKind,
    OneTimeExpense,
    RecurringExpense,
)
from .user import User

__all__ = [
    "AutomaticDebit",
    "Card",
    "CardType",
    "Category",
    "Expense",
    "Frequency",
    "Importance",
    "InstallmentPurchase",
    "OBLIGATION_MODELS",
    "ObligationBase",
    "ObligationKind",
    "OneTimeExpense",
    "PaymentMethod",
    "RecurringExpense",
    "User",
]
