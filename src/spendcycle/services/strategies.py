"""Generation strategies: one per obligation kind.

Each strategy answers two questions for a single obligation: should an expense
be generated today (``should_generate``, side-effect free) and, if so, write it
(``generate``). ``generate`` re-reads the obligation inside the caller's unit of
work and re-checks eligibility there, so the "already generated" check and the
state update share one transaction.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date
from typing import Any, ClassVar, Optional

from sqlmodel import Session

from ..domain.repositories.generation import GenerationStore
from ..exceptions import (
    CardConfigurationError,
    CurrencyConversionError,
    SpendCycleError,
    ValidationFailure,
)
from ..logging_config import get_logger
from ..models.card import Card
from ..models.expense import Expense
from ..models.obligation import (
    AutomaticDebit,
    Frequency,
    InstallmentPurchase,
    ObligationBase,
    ObligationKind,
    OneTimeExpense,
    RecurringExpense,
)
from .billing_cycle import days_in_month, due_date_for_installment, validate_card_config
from .currency import ConvertedAmount, CurrencyConverter, round2

logger = get_logger("services.strategies")

MANDATORY_REFERENCES = ("category_id", "importance_id", "payment_method_id")

BASE_TOLERANCE_DAYS: dict[Frequency, int] = {
    Frequency.DAILY: 0,
    Frequency.WEEKLY: 1,
    Frequency.BIWEEKLY: 1,
    Frequency.MONTHLY: 2,
    Frequency.BIMONTHLY: 3,
    Frequency.QUARTERLY: 3,
    Frequency.SEMIANNUAL: 5,
    Frequency.ANNUAL: 5,
}

CYCLE_MONTHS: dict[Frequency, int] = {
    Frequency.BIMONTHLY: 2,
    Frequency.QUARTERLY: 3,
    Frequency.SEMIANNUAL: 6,
}


def missing_references(obligation: ObligationBase) -> list[str]:
    """Names of mandatory foreign keys that are unset on ``obligation``."""

    return [name for name in MANDATORY_REFERENCES if getattr(obligation, name, None) is None]


def clamp_payment_day(payment_day: int, today: date) -> int:
    return min(payment_day, days_in_month(today.year, today.month))


def tolerance_for(frequency: Frequency, today: date) -> int:
    """Tolerance window in days; weekends add one day except for daily debits."""

    base = BASE_TOLERANCE_DAYS[frequency]
    if frequency is not Frequency.DAILY and today.weekday() >= 5:
        return base + 1
    return base


class GenerationStrategy(ABC):
    """Common template for all strategies."""

    kind: ClassVar[ObligationKind]

    def __init__(self, store: GenerationStore, converter: CurrencyConverter):
        self.store = store
        self.converter = converter

    @abstractmethod
    async def should_generate(
        self, obligation: Any, today: date, *, session: Optional[Session] = None
    ) -> bool:
        """Side-effect free eligibility check."""

    @abstractmethod
    async def _write(self, obligation: Any, today: date, session: Session) -> Expense:
        """Create the ledger entry and update generation state inside ``session``."""

    def validate_source(self, obligation: ObligationBase) -> None:
        """Raise ``ValidationFailure`` when the obligation cannot be generated as stored."""

        missing = missing_references(obligation)
        if missing:
            raise ValidationFailure(
                f"Missing required references: {', '.join(missing)}", missing_fields=missing
            )
        if obligation.amount is None or obligation.amount <= 0:
            raise ValidationFailure(f"Invalid amount: {obligation.amount!r}")

    async def generate(
        self, obligation: ObligationBase, session: Session, today: date
    ) -> Optional[Expense]:
        """Write one ledger entry for ``obligation`` or return ``None`` if not warranted."""

        self.validate_source(obligation)
        current = self.store.get_obligation(self.kind, obligation.id, session=session)
        if current is None:
            raise ValidationFailure(f"{self.kind.value} #{obligation.id} no longer exists")

        if not await self.should_generate(current, today, session=session):
            logger.debug(
                "Generation not warranted on re-check",
                extra={"kind": self.kind.value, "obligation_id": current.id},
            )
            return None

        expense = await self._write(current, today, session)
        logger.info(
            "Expense generated",
            extra={
                "kind": self.kind.value,
                "obligation_id": current.id,
                "expense_id": expense.id,
                "amount_ars": expense.amount_ars,
                "amount_usd": expense.amount_usd,
                "period_key": expense.period_key,
            },
        )
        return expense

    async def _convert(self, amount: float, currency: str) -> ConvertedAmount:
        try:
            return await self.converter.convert_amount(amount, currency)
        except SpendCycleError:
            raise
        except Exception as exc:
            raise CurrencyConversionError(f"Conversion of {amount} {currency} failed: {exc}") from exc

    def _entry_data(
        self,
        obligation: ObligationBase,
        *,
        expense_date: date,
        amounts: ConvertedAmount,
        period_key: str,
        **extra: Any,
    ) -> dict[str, Any]:
        data = {
            "owner_id": obligation.owner_id,
            "expense_date": expense_date,
            "description": obligation.description,
            "amount_ars": amounts.ars,
            "amount_usd": amounts.usd,
            "origin_currency": obligation.currency,
            "exchange_rate": amounts.rate_used,
            "origin_type": self.kind.value,
            "origin_id": obligation.id,
            "period_key": period_key,
            "category_id": obligation.category_id,
            "importance_id": obligation.importance_id,
            "payment_method_id": obligation.payment_method_id,
            "card_id": obligation.card_id,
        }
        data.update(extra)
        return data


class ImmediateStrategy(GenerationStrategy):
    """One-time expenses: generated once, dated on the expense's own date."""

    kind = ObligationKind.ONE_TIME

    def validate_source(self, obligation: OneTimeExpense) -> None:
        super().validate_source(obligation)
        if obligation.expense_date is None:
            raise ValidationFailure("One-time expense has no date")

    async def should_generate(
        self, obligation: OneTimeExpense, today: date, *, session: Optional[Session] = None
    ) -> bool:
        return not obligation.processed

    async def _write(self, obligation: OneTimeExpense, today: date, session: Session) -> Expense:
        if obligation.amount_ars is not None:
            amounts = ConvertedAmount(
                ars=obligation.amount_ars,
                usd=obligation.amount_usd,  # type: ignore[arg-type]
                rate_used=obligation.exchange_rate,  # type: ignore[arg-type]
            )
        else:
            amounts = await self._convert(obligation.amount, obligation.currency)

        expense = self.store.create_ledger_entry(
            self._entry_data(
                obligation,
                expense_date=obligation.expense_date,
                amounts=amounts,
                period_key="once",
            ),
            session,
        )
        self.store.update_generation_state(obligation, {"processed": True}, session)
        return expense


class _ScheduledStrategy(GenerationStrategy):
    """Shared rules for recurring expenses and automatic debits."""

    def validate_source(self, obligation: Any) -> None:
        super().validate_source(obligation)
        if not 1 <= (obligation.payment_day or 0) <= 31:
            raise ValidationFailure(f"Invalid payment_day: {obligation.payment_day!r}")

    async def should_generate(
        self, obligation: Any, today: date, *, session: Optional[Session] = None
    ) -> bool:
        if not obligation.active:
            return False
        if not self.within_date_bounds(obligation, today):
            return False
        if self.already_generated(obligation, today):
            return False
        return self.matches_schedule(obligation, today)

    def within_date_bounds(self, obligation: Any, today: date) -> bool:
        return obligation.start_date is None or today >= obligation.start_date

    @abstractmethod
    def matches_schedule(self, obligation: Any, today: date) -> bool:
        """Whether ``today`` is a payment day for the obligation."""

    @abstractmethod
    def already_generated(self, obligation: Any, today: date) -> bool:
        """Whether the current period already has an expense."""

    @abstractmethod
    def period_key(self, obligation: Any, today: date) -> str:
        """Billing-period identifier used for idempotency."""

    async def _amounts(self, obligation: Any) -> ConvertedAmount:
        """Prefer the pre-converted amounts; convert on the fly only when they are missing."""

        if obligation.amount_ars is not None:
            return ConvertedAmount(
                ars=obligation.amount_ars,
                usd=obligation.amount_usd,
                rate_used=obligation.reference_rate,
            )
        logger.warning(
            "Pre-converted amounts missing, converting on the generation path",
            extra={"kind": self.kind.value, "obligation_id": obligation.id},
        )
        return await self._convert(obligation.amount, obligation.currency)

    async def _write(self, obligation: Any, today: date, session: Session) -> Expense:
        amounts = await self._amounts(obligation)
        expense = self.store.create_ledger_entry(
            self._entry_data(
                obligation,
                expense_date=today,
                amounts=amounts,
                period_key=self.period_key(obligation, today),
            ),
            session,
        )
        self.store.update_generation_state(obligation, {"last_generated_date": today}, session)
        return expense


class RecurringStrategy(_ScheduledStrategy):
    """Recurring expenses: exact payment day, monthly or annual."""

    kind = ObligationKind.RECURRING

    def matches_schedule(self, obligation: RecurringExpense, today: date) -> bool:
        if obligation.payment_month and obligation.payment_month != today.month:
            return False
        return today.day == clamp_payment_day(obligation.payment_day, today)

    def already_generated(self, obligation: RecurringExpense, today: date) -> bool:
        return obligation.last_generated_date == today

    def period_key(self, obligation: RecurringExpense, today: date) -> str:
        if obligation.payment_month:
            return f"{today.year:04d}"
        return f"{today.year:04d}-{today.month:02d}"


class AutomaticDebitStrategy(_ScheduledStrategy):
    """Automatic debits: frequency-aware schedule with a tolerance window."""

    kind = ObligationKind.AUTOMATIC_DEBIT

    def within_date_bounds(self, obligation: AutomaticDebit, today: date) -> bool:
        if not super().within_date_bounds(obligation, today):
            return False
        return obligation.end_date is None or today <= obligation.end_date

    def _frequency(self, obligation: AutomaticDebit) -> Frequency:
        try:
            return Frequency(obligation.frequency)
        except ValueError as exc:
            raise ValidationFailure(f"Unsupported frequency: {obligation.frequency!r}") from exc

    def matches_schedule(self, obligation: AutomaticDebit, today: date) -> bool:
        frequency = self._frequency(obligation)
        tolerance = tolerance_for(frequency, today)

        if frequency is Frequency.DAILY:
            return True
        if frequency is Frequency.WEEKLY:
            target = (obligation.payment_day - 1) % 7 + 1
            distance = abs(today.isoweekday() - target)
            return min(distance, 7 - distance) <= tolerance
        if frequency is Frequency.BIWEEKLY:
            return self._biweekly_offset(obligation, today) <= tolerance
        if frequency in CYCLE_MONTHS:
            anchor_month = self._anchor_month(obligation)
            if (today.month - anchor_month) % CYCLE_MONTHS[frequency] != 0:
                return False
        if frequency is Frequency.ANNUAL and obligation.payment_month:
            if obligation.payment_month != today.month:
                return False

        target_day = clamp_payment_day(obligation.payment_day, today)
        return abs(today.day - target_day) <= tolerance

    def _anchor_month(self, obligation: AutomaticDebit) -> int:
        if obligation.start_date:
            return obligation.start_date.month
        return obligation.payment_month or 1

    def _biweekly_offset(self, obligation: AutomaticDebit, today: date) -> int:
        """Distance in days to the nearest biweekly payment date."""

        if obligation.start_date:
            offset = (today - obligation.start_date).days % 14
            return min(offset, 14 - offset)
        # Without an anchor the debit lands on the 1st and the 15th
        return min(abs(today.day - 1), abs(today.day - 15))

    def already_generated(self, obligation: AutomaticDebit, today: date) -> bool:
        last = obligation.last_generated_date
        if last is None:
            return False
        if last == today:
            return True
        frequency = self._frequency(obligation)
        if self.period_key(obligation, last) == self.period_key(obligation, today):
            return True
        # A tolerance window may straddle two periods; one hit per window
        window = 2 * BASE_TOLERANCE_DAYS[frequency] + 1
        return frequency is not Frequency.DAILY and 0 <= (today - last).days <= window

    def period_key(self, obligation: AutomaticDebit, today: date) -> str:
        frequency = self._frequency(obligation)
        if frequency is Frequency.DAILY:
            return today.isoformat()
        if frequency is Frequency.WEEKLY:
            iso = today.isocalendar()
            return f"{iso[0]:04d}-W{iso[1]:02d}"
        if frequency is Frequency.BIWEEKLY:
            if obligation.start_date:
                cycle = round((today - obligation.start_date).days / 14)
                return f"C{cycle:04d}"
            half = 1 if today.day <= 8 else 2
            return f"{today.year:04d}-{today.month:02d}-H{half}"
        if frequency is Frequency.ANNUAL:
            return f"{today.year:04d}"
        return f"{today.year:04d}-{today.month:02d}"


class InstallmentStrategy(GenerationStrategy):
    """Installment purchases: one installment per month until ``installment_count``."""

    kind = ObligationKind.INSTALLMENT

    def validate_source(self, obligation: InstallmentPurchase) -> None:
        missing = missing_references(obligation)
        if missing:
            raise ValidationFailure(
                f"Missing required references: {', '.join(missing)}", missing_fields=missing
            )
        if obligation.total_amount is None or obligation.total_amount <= 0:
            raise ValidationFailure(f"Invalid total amount: {obligation.total_amount!r}")
        if not 1 <= (obligation.installment_count or 0) <= 60:
            raise ValidationFailure(f"Invalid installment count: {obligation.installment_count!r}")
        if obligation.purchase_date is None:
            raise ValidationFailure("Installment purchase has no purchase date")

    def credit_card(
        self, purchase: InstallmentPurchase, *, session: Optional[Session] = None
    ) -> Optional[Card]:
        """The purchase's credit card, ``None`` for non-card or debit-card payments."""

        if purchase.card_id is None:
            return None
        card = self.store.get_card(purchase.card_id, session=session)
        if card is None:
            raise ValidationFailure(
                f"Card #{purchase.card_id} not found", missing_fields=["card_id"]
            )
        if not card.is_credit:
            return None

        validation = validate_card_config(card)
        if not validation.is_valid:
            raise CardConfigurationError(
                f"Card #{card.id} is misconfigured: {'; '.join(validation.errors)}"
            )
        return card

    @staticmethod
    def _card_due_today(
        purchase: InstallmentPurchase, card: Card, generated: int, today: date
    ) -> bool:
        # Due on the card's due day of any month on or after the scheduled date,
        # so a missed due date is picked up the following month.
        if today.day != clamp_payment_day(int(card.due_day), today):  # type: ignore[arg-type]
            return False
        return today >= due_date_for_installment(purchase.purchase_date, card, generated)

    @staticmethod
    def installment_amount(purchase: InstallmentPurchase) -> float:
        return round2(purchase.total_amount / purchase.installment_count)

    async def should_generate(
        self, purchase: InstallmentPurchase, today: date, *, session: Optional[Session] = None
    ) -> bool:
        if not purchase.pending:
            return False

        generated = self.store.count_generated_installments(purchase.id, session=session)
        if generated >= purchase.installment_count:
            return False

        card = self.credit_card(purchase, session=session)

        if purchase.installment_count == 1:
            if purchase.last_installment_date is not None:
                return False
            if card is not None:
                return self._card_due_today(purchase, card, 0, today)
            return today >= purchase.purchase_date

        last = purchase.last_installment_date
        if last is not None and (last.year, last.month) == (today.year, today.month):
            return False
        if card is not None:
            return self._card_due_today(purchase, card, generated, today)
        if today < purchase.purchase_date:
            return False
        return today.day == clamp_payment_day(purchase.purchase_date.day, today)

    async def _write(self, purchase: InstallmentPurchase, today: date, session: Session) -> Expense:
        number = self.store.count_generated_installments(purchase.id, session=session) + 1
        card = self.credit_card(purchase, session=session)
        if card is not None:
            for warning in validate_card_config(card).warnings:
                logger.warning(
                    "Unusual credit card configuration",
                    extra={"card_id": card.id, "purchase_id": purchase.id, "warning": warning},
                )
        amounts = await self._convert(self.installment_amount(purchase), purchase.currency)

        expense = self.store.create_ledger_entry(
            self._entry_data(
                purchase,
                expense_date=today,
                amounts=amounts,
                period_key=f"installment-{number}",
                description=f"{purchase.description} - Installment {number}/{purchase.installment_count}",
                installment_number=number,
            ),
            session,
        )

        patch: dict[str, Any] = {"last_installment_date": today}
        if number >= purchase.installment_count:
            patch["pending"] = False
        self.store.update_generation_state(purchase, patch, session)
        return expense


def build_strategies(
    store: GenerationStore, converter: CurrencyConverter
) -> dict[ObligationKind, GenerationStrategy]:
    """Strategy registry keyed by obligation kind."""

    return {
        strategy.kind: strategy
        for strategy in (
            ImmediateStrategy(store, converter),
            RecurringStrategy(store, converter),
            AutomaticDebitStrategy(store, converter),
            InstallmentStrategy(store, converter),
        )
    }
