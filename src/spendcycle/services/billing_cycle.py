"""Credit-card billing-cycle date math.

A purchase made on or before the card's closing date is billed in that cycle and
falls due on ``due_day`` of the following month. A purchase made after the
closing date rolls into the next cycle and falls due one month later. Days that
do not exist in a month (31 in April, 30 in February) clip to the month's last
day.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date
from typing import Protocol

from ..exceptions import CardConfigurationError
from ..logging_config import get_logger

logger = get_logger("services.billing_cycle")


class CycleCard(Protocol):
    """Anything carrying closing/due days (the ``Card`` model satisfies this)."""

    closing_day: int | None
    due_day: int | None


@dataclass(slots=True)
class CardValidation:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CycleInfo:
    """Where ``today`` sits inside a card's billing cycle."""

    phase: str  # pre-closing | post-closing
    next_closing: date
    next_due: date
    days_until_closing: int
    days_until_due: int


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def clip_day(year: int, month: int, day: int) -> date:
    """Build a date, clipping ``day`` to the month's length."""

    return date(year, month, min(day, days_in_month(year, month)))


def add_months(value: date, months: int, *, day: int | None = None) -> date:
    """Shift ``value`` by ``months`` calendar months, landing on ``day`` (clipped)."""

    index = value.year * 12 + (value.month - 1) + months
    year, month = divmod(index, 12)
    return clip_day(year, month + 1, day if day is not None else value.day)


def closing_date_for_month(reference_date: date, closing_day: int) -> date:
    """Closing date within ``reference_date``'s month."""

    return clip_day(reference_date.year, reference_date.month, closing_day)


def _require_days(card: CycleCard) -> tuple[int, int]:
    result = validate_card_config(card)
    if not result.is_valid:
        raise CardConfigurationError("; ".join(result.errors))
    return int(card.closing_day), int(card.due_day)  # type: ignore[arg-type]


def first_installment_due_date(purchase_date: date, card: CycleCard) -> date:
    """Due date of the first installment for a purchase on ``purchase_date``."""

    closing_day, due_day = _require_days(card)
    closing = closing_date_for_month(purchase_date, closing_day)
    if purchase_date <= closing:
        return add_months(closing, 1, day=due_day)
    return add_months(closing, 2, day=due_day)


def due_date_for_installment(purchase_date: date, card: CycleCard, installment_index: int) -> date:
    """Due date of installment ``installment_index`` (0-based)."""

    if installment_index < 0:
        raise ValueError("installment_index must be >= 0")
    first_due = first_installment_due_date(purchase_date, card)
    return add_months(first_due, installment_index, day=int(card.due_day))  # type: ignore[arg-type]


def is_due_today(purchase_date: date, card: CycleCard, installment_index: int, today: date) -> bool:
    due = due_date_for_installment(purchase_date, card, installment_index)
    logger.debug(
        "Checking installment due date",
        extra={
            "purchase_date": purchase_date.isoformat(),
            "installment_index": installment_index,
            "due_date": due.isoformat(),
            "today": today.isoformat(),
        },
    )
    return due == today


def upcoming_due_dates(
    purchase_date: date, card: CycleCard, installment_count: int, generated: int = 0
) -> list[tuple[int, date]]:
    """Return ``(installment_number, due_date)`` for every installment not yet generated."""

    return [
        (index + 1, due_date_for_installment(purchase_date, card, index))
        for index in range(generated, installment_count)
    ]


def validate_card_config(card: CycleCard) -> CardValidation:
    """Check closing/due days. Unusual-but-legal setups only produce warnings."""

    result = CardValidation(is_valid=True)
    for label, value in (("closing_day", card.closing_day), ("due_day", card.due_day)):
        if value is None:
            result.errors.append(f"{label} is not configured")
        elif not 1 <= value <= 31:
            result.errors.append(f"{label} must be between 1 and 31")

    if not result.errors:
        if card.due_day <= card.closing_day:  # type: ignore[operator]
            result.warnings.append("due_day on or before closing_day is unusual")
        if card.closing_day > 28:  # type: ignore[operator]
            result.warnings.append("closing_day > 28 is clipped in short months")
        if card.due_day > 28:  # type: ignore[operator]
            result.warnings.append("due_day > 28 is clipped in short months")

    result.is_valid = not result.errors
    return result


def current_cycle_info(card: CycleCard, today: date) -> CycleInfo:
    """Describe the cycle ``today`` belongs to: next closing and next due date."""

    closing_day, due_day = _require_days(card)
    closing_this_month = closing_date_for_month(today, closing_day)

    if today > closing_this_month:
        phase = "post-closing"
        next_closing = add_months(closing_this_month, 1, day=closing_day)
    else:
        phase = "pre-closing"
        next_closing = closing_this_month
    # Charges made today fall due with the next closing
    next_due = add_months(next_closing, 1, day=due_day)

    return CycleInfo(
        phase=phase,
        next_closing=next_closing,
        next_due=next_due,
        days_until_closing=(next_closing - today).days,
        days_until_due=(next_due - today).days,
    )
