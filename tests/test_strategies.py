"""Tests for the per-kind generation strategies."""

from __future__ import annotations

import logging
from datetime import date

import pytest

from spendcycle.exceptions import (
    CardConfigurationError,
    CurrencyConversionError,
    DuplicateGenerationError,
    ValidationFailure,
)
from spendcycle.models import CardType, Frequency, ObligationKind
from spendcycle.services.strategies import (
    AutomaticDebitStrategy,
    InstallmentStrategy,
    tolerance_for,
)


async def _generate(store, strategy, obligation, today):
    with store.unit_of_work() as session:
        return await strategy.generate(obligation, session, today)


# =============================================================================
# One-time
# =============================================================================


@pytest.mark.asyncio
async def test_one_time_generates_once_on_its_own_date(store, strategies, one_time_factory, expenses):
    strategy = strategies[ObligationKind.ONE_TIME]
    obligation = one_time_factory(amount=2500.0, currency="ARS")

    assert await strategy.should_generate(obligation, date(2024, 3, 20))
    expense = await _generate(store, strategy, obligation, date(2024, 3, 20))

    assert expense.expense_date == date(2024, 3, 14)
    assert expense.amount_ars == 2500.0
    assert expense.amount_usd == 2.5
    assert expense.period_key == "once"

    refreshed = store.get_obligation(ObligationKind.ONE_TIME, obligation.id)
    assert refreshed.processed is True
    assert not await strategy.should_generate(refreshed, date(2024, 3, 20))
    assert await _generate(store, strategy, obligation, date(2024, 3, 20)) is None
    assert len(expenses()) == 1


@pytest.mark.asyncio
async def test_one_time_usd_is_converted(store, strategies, one_time_factory):
    obligation = one_time_factory(amount=10.0, currency="USD")
    expense = await _generate(store, strategies[ObligationKind.ONE_TIME], obligation, date(2024, 3, 15))
    assert expense.amount_ars == 10000.0
    assert expense.amount_usd == 10.0
    assert expense.origin_currency == "USD"


def test_missing_references_are_reported(strategies, one_time_factory):
    obligation = one_time_factory(category_id=None, importance_id=None)
    with pytest.raises(ValidationFailure) as excinfo:
        strategies[ObligationKind.ONE_TIME].validate_source(obligation)
    assert excinfo.value.missing_fields == ["category_id", "importance_id"]


def test_non_positive_amount_is_rejected(strategies, recurring_factory):
    obligation = recurring_factory(amount=0.0)
    with pytest.raises(ValidationFailure):
        strategies[ObligationKind.RECURRING].validate_source(obligation)


# =============================================================================
# Recurring
# =============================================================================


@pytest.mark.asyncio
async def test_recurring_matches_exact_payment_day(strategies, recurring_factory):
    strategy = strategies[ObligationKind.RECURRING]
    obligation = recurring_factory(payment_day=15)
    assert await strategy.should_generate(obligation, date(2024, 3, 15))
    assert not await strategy.should_generate(obligation, date(2024, 3, 14))
    assert not await strategy.should_generate(obligation, date(2024, 3, 16))


@pytest.mark.asyncio
async def test_recurring_payment_day_clamps_to_month_end(strategies, recurring_factory):
    strategy = strategies[ObligationKind.RECURRING]
    obligation = recurring_factory(payment_day=31)
    assert await strategy.should_generate(obligation, date(2024, 2, 29))
    assert await strategy.should_generate(obligation, date(2024, 4, 30))
    assert not await strategy.should_generate(obligation, date(2024, 2, 28))


@pytest.mark.asyncio
async def test_recurring_respects_start_date_and_active(strategies, recurring_factory):
    strategy = strategies[ObligationKind.RECURRING]
    future = recurring_factory(start_date=date(2024, 4, 1))
    inactive = recurring_factory(active=False)
    assert not await strategy.should_generate(future, date(2024, 3, 15))
    assert await strategy.should_generate(future, date(2024, 4, 15))
    assert not await strategy.should_generate(inactive, date(2024, 3, 15))


@pytest.mark.asyncio
async def test_recurring_annual_requires_payment_month(strategies, recurring_factory):
    strategy = strategies[ObligationKind.RECURRING]
    obligation = recurring_factory(payment_day=10, payment_month=6)
    assert not await strategy.should_generate(obligation, date(2024, 3, 10))
    assert await strategy.should_generate(obligation, date(2024, 6, 10))
    assert strategy.period_key(obligation, date(2024, 6, 10)) == "2024"


@pytest.mark.asyncio
async def test_recurring_not_eligible_after_generation_same_day(store, strategies, recurring_factory):
    strategy = strategies[ObligationKind.RECURRING]
    obligation = recurring_factory()
    today = date(2024, 3, 15)

    expense = await _generate(store, strategy, obligation, today)
    assert expense.expense_date == today
    assert expense.amount_ars == 15000.0
    assert expense.exchange_rate == 1000.0
    assert expense.period_key == "2024-03"

    refreshed = store.get_obligation(ObligationKind.RECURRING, obligation.id)
    assert refreshed.last_generated_date == today
    assert not await strategy.should_generate(refreshed, today)


@pytest.mark.asyncio
async def test_recurring_converts_when_preconverted_amounts_missing(store, strategies, recurring_factory):
    obligation = recurring_factory(amount=20.0, currency="USD", amount_ars=None, amount_usd=None, reference_rate=None)
    expense = await _generate(store, strategies[ObligationKind.RECURRING], obligation, date(2024, 3, 15))
    assert expense.amount_ars == 20000.0
    assert expense.amount_usd == 20.0


@pytest.mark.asyncio
async def test_duplicate_period_is_rejected_by_store(store, strategies, recurring_factory):
    strategy = strategies[ObligationKind.RECURRING]
    obligation = recurring_factory()
    await _generate(store, strategy, obligation, date(2024, 3, 15))

    # Simulate a stale read: state says nothing was generated this period
    with store.unit_of_work() as session:
        current = store.get_obligation(ObligationKind.RECURRING, obligation.id, session=session)
        current.last_generated_date = None
        session.add(current)

    with pytest.raises(DuplicateGenerationError):
        await _generate(store, strategy, obligation, date(2024, 3, 15))


# =============================================================================
# Automatic debit
# =============================================================================


@pytest.mark.parametrize(
    "frequency, today, expected",
    [
        (Frequency.DAILY, date(2024, 3, 16), 0),  # Saturday, daily never widens
        (Frequency.WEEKLY, date(2024, 3, 13), 1),
        (Frequency.MONTHLY, date(2024, 3, 13), 2),
        (Frequency.MONTHLY, date(2024, 3, 16), 3),
        (Frequency.QUARTERLY, date(2024, 3, 13), 3),
        (Frequency.ANNUAL, date(2024, 3, 17), 6),  # Sunday
    ],
)
def test_tolerance_table(frequency, today, expected):
    assert tolerance_for(frequency, today) == expected


@pytest.mark.asyncio
async def test_monthly_debit_tolerance_window(strategies, debit_factory):
    strategy = strategies[ObligationKind.AUTOMATIC_DEBIT]
    obligation = debit_factory(payment_day=15)
    # Wednesday 2024-03-13 is two days early: inside the window
    assert await strategy.should_generate(obligation, date(2024, 3, 13))
    # Tuesday 2024-03-12 is three days early on a weekday: outside
    assert not await strategy.should_generate(obligation, date(2024, 3, 12))
    # Monday 2024-03-18 is three days late on a weekday: outside
    assert not await strategy.should_generate(obligation, date(2024, 3, 18))


@pytest.mark.asyncio
async def test_weekend_widens_tolerance(strategies, debit_factory):
    strategy = strategies[ObligationKind.AUTOMATIC_DEBIT]
    obligation = debit_factory(payment_day=13)
    # Saturday 2024-03-16 is three days late: allowed only thanks to the weekend
    assert await strategy.should_generate(obligation, date(2024, 3, 16))
    # Sunday 2024-03-17 is four days late: outside
    assert not await strategy.should_generate(obligation, date(2024, 3, 17))


@pytest.mark.asyncio
async def test_debit_not_eligible_after_end_date(strategies, debit_factory):
    strategy = strategies[ObligationKind.AUTOMATIC_DEBIT]
    obligation = debit_factory(payment_day=15, end_date=date(2024, 3, 1))
    assert not await strategy.should_generate(obligation, date(2024, 3, 15))


@pytest.mark.asyncio
async def test_debit_generates_once_per_period(store, strategies, debit_factory, expenses):
    strategy = strategies[ObligationKind.AUTOMATIC_DEBIT]
    obligation = debit_factory(payment_day=15)

    assert await _generate(store, strategy, obligation, date(2024, 3, 14)) is not None
    refreshed = store.get_obligation(ObligationKind.AUTOMATIC_DEBIT, obligation.id)
    assert not await strategy.should_generate(refreshed, date(2024, 3, 15))
    assert not await strategy.should_generate(refreshed, date(2024, 3, 16))
    assert await strategy.should_generate(refreshed, date(2024, 4, 15))
    assert [e.period_key for e in expenses()] == ["2024-03"]


@pytest.mark.asyncio
async def test_daily_debit_matches_every_day(store, strategies, debit_factory):
    strategy = strategies[ObligationKind.AUTOMATIC_DEBIT]
    obligation = debit_factory(frequency="daily", payment_day=1)
    expense = await _generate(store, strategy, obligation, date(2024, 3, 20))
    assert expense.period_key == "2024-03-20"
    refreshed = store.get_obligation(ObligationKind.AUTOMATIC_DEBIT, obligation.id)
    assert not await strategy.should_generate(refreshed, date(2024, 3, 20))
    assert await strategy.should_generate(refreshed, date(2024, 3, 21))


@pytest.mark.asyncio
async def test_weekly_debit_uses_iso_weekday(strategies, debit_factory):
    strategy: AutomaticDebitStrategy = strategies[ObligationKind.AUTOMATIC_DEBIT]
    obligation = debit_factory(frequency="weekly", payment_day=1)  # Monday
    assert await strategy.should_generate(obligation, date(2024, 3, 18))  # Monday
    assert await strategy.should_generate(obligation, date(2024, 3, 19))  # Tuesday
    assert not await strategy.should_generate(obligation, date(2024, 3, 21))  # Thursday
    assert strategy.period_key(obligation, date(2024, 3, 18)) == "2024-W12"


@pytest.mark.asyncio
async def test_weekly_window_straddling_weeks_generates_once(strategies, debit_factory):
    strategy = strategies[ObligationKind.AUTOMATIC_DEBIT]
    # Generated on Sunday (ISO week 11) for a Monday debit
    obligation = debit_factory(
        frequency="weekly", payment_day=1, last_generated_date=date(2024, 3, 17)
    )
    assert not await strategy.should_generate(obligation, date(2024, 3, 18))
    assert await strategy.should_generate(obligation, date(2024, 3, 25))


@pytest.mark.asyncio
async def test_quarterly_debit_only_in_cycle_months(strategies, debit_factory):
    strategy = strategies[ObligationKind.AUTOMATIC_DEBIT]
    obligation = debit_factory(frequency="quarterly", payment_day=10, start_date=date(2024, 1, 10))
    assert await strategy.should_generate(obligation, date(2024, 4, 10))
    assert not await strategy.should_generate(obligation, date(2024, 5, 10))
    assert await strategy.should_generate(obligation, date(2024, 7, 9))


@pytest.mark.asyncio
async def test_annual_debit_requires_payment_month(strategies, debit_factory):
    strategy = strategies[ObligationKind.AUTOMATIC_DEBIT]
    obligation = debit_factory(frequency="annual", payment_day=20, payment_month=8)
    assert not await strategy.should_generate(obligation, date(2024, 3, 20))
    assert await strategy.should_generate(obligation, date(2024, 8, 22))


@pytest.mark.asyncio
async def test_biweekly_debit_anchored_on_start_date(strategies, debit_factory):
    strategy = strategies[ObligationKind.AUTOMATIC_DEBIT]
    obligation = debit_factory(frequency="biweekly", payment_day=1, start_date=date(2024, 3, 4))
    assert await strategy.should_generate(obligation, date(2024, 3, 18))
    assert not await strategy.should_generate(obligation, date(2024, 3, 11))


@pytest.mark.asyncio
async def test_unknown_frequency_is_a_validation_failure(strategies, debit_factory):
    obligation = debit_factory(frequency="fortnightly")
    with pytest.raises(ValidationFailure):
        await strategies[ObligationKind.AUTOMATIC_DEBIT].should_generate(obligation, date(2024, 3, 15))


# =============================================================================
# Installments
# =============================================================================


@pytest.mark.asyncio
async def test_credit_card_installments_follow_due_dates(store, strategies, installment_factory, card_factory, expenses):
    strategy: InstallmentStrategy = strategies[ObligationKind.INSTALLMENT]
    card = card_factory(closing_day=10, due_day=10)
    purchase = installment_factory(total_amount=300.0, installment_count=3, card_id=card.id)

    assert not await strategy.should_generate(purchase, date(2024, 3, 10))
    for month in (4, 5, 6):
        today = date(2024, month, 10)
        current = store.get_obligation(ObligationKind.INSTALLMENT, purchase.id)
        assert await strategy.should_generate(current, today)
        await _generate(store, strategy, current, today)

    rows = expenses()
    assert [row.amount_ars for row in rows] == [100.0, 100.0, 100.0]
    assert [row.expense_date for row in rows] == [date(2024, 4, 10), date(2024, 5, 10), date(2024, 6, 10)]
    assert rows[2].description == "Laptop - Installment 3/3"
    assert [row.installment_number for row in rows] == [1, 2, 3]

    final = store.get_obligation(ObligationKind.INSTALLMENT, purchase.id)
    assert final.pending is False
    assert not await strategy.should_generate(final, date(2024, 7, 10))


@pytest.mark.asyncio
async def test_missed_first_due_date_is_picked_up_next_month(store, strategies, installment_factory, card_factory, expenses):
    strategy = strategies[ObligationKind.INSTALLMENT]
    card = card_factory(closing_day=10, due_day=10)
    purchase = installment_factory(total_amount=300.0, installment_count=3, card_id=card.id)

    # 2024-04-10 is never processed
    assert not await strategy.should_generate(purchase, date(2024, 5, 9))
    assert await strategy.should_generate(purchase, date(2024, 5, 10))
    await _generate(store, strategy, purchase, date(2024, 5, 10))

    current = store.get_obligation(ObligationKind.INSTALLMENT, purchase.id)
    assert not await strategy.should_generate(current, date(2024, 5, 10))
    assert await strategy.should_generate(current, date(2024, 6, 10))
    assert [row.installment_number for row in expenses()] == [1]


@pytest.mark.asyncio
async def test_missed_later_due_date_is_picked_up_next_month(store, strategies, installment_factory, card_factory, expenses):
    strategy = strategies[ObligationKind.INSTALLMENT]
    card = card_factory(closing_day=10, due_day=31)
    purchase = installment_factory(total_amount=300.0, installment_count=3, card_id=card.id)

    await _generate(store, strategy, purchase, date(2024, 4, 30))
    # 2024-05-31 is never processed; June's due day clips to the 30th
    current = store.get_obligation(ObligationKind.INSTALLMENT, purchase.id)
    assert not await strategy.should_generate(current, date(2024, 6, 29))
    assert await strategy.should_generate(current, date(2024, 6, 30))
    await _generate(store, strategy, current, date(2024, 6, 30))

    rows = expenses()
    assert [(row.expense_date, row.installment_number) for row in rows] == [
        (date(2024, 4, 30), 1),
        (date(2024, 6, 30), 2),
    ]


@pytest.mark.asyncio
async def test_unusual_card_warning_logged_once_per_generation(store, strategies, installment_factory, card_factory, caplog):
    caplog.set_level(logging.WARNING, logger="spendcycle")
    strategy = strategies[ObligationKind.INSTALLMENT]
    card = card_factory(closing_day=10, due_day=10)
    purchase = installment_factory(card_id=card.id)

    assert await strategy.should_generate(purchase, date(2024, 4, 10))
    assert await strategy.should_generate(purchase, date(2024, 4, 10))
    assert "Unusual credit card configuration" not in caplog.text

    await _generate(store, strategy, purchase, date(2024, 4, 10))
    warnings = [r for r in caplog.records if r.getMessage() == "Unusual credit card configuration"]
    assert len(warnings) == 1


@pytest.mark.asyncio
async def test_installment_without_card_uses_purchase_day(store, strategies, installment_factory):
    strategy = strategies[ObligationKind.INSTALLMENT]
    purchase = installment_factory(purchase_date=date(2024, 1, 31), installment_count=2)
    assert await strategy.should_generate(purchase, date(2024, 1, 31))
    await _generate(store, strategy, purchase, date(2024, 1, 31))

    current = store.get_obligation(ObligationKind.INSTALLMENT, purchase.id)
    assert not await strategy.should_generate(current, date(2024, 1, 31))
    assert await strategy.should_generate(current, date(2024, 2, 29))


@pytest.mark.asyncio
async def test_single_installment_debit_card_generates_on_purchase(store, strategies, installment_factory, card_factory):
    strategy = strategies[ObligationKind.INSTALLMENT]
    card = card_factory(closing_day=None, due_day=None, card_type=CardType.DEBIT)
    purchase = installment_factory(installment_count=1, card_id=card.id, purchase_date=date(2024, 3, 5))
    assert not await strategy.should_generate(purchase, date(2024, 3, 4))
    assert await strategy.should_generate(purchase, date(2024, 3, 15))

    expense = await _generate(store, strategy, purchase, date(2024, 3, 15))
    assert expense.amount_ars == 300.0
    assert store.get_obligation(ObligationKind.INSTALLMENT, purchase.id).pending is False


@pytest.mark.asyncio
async def test_single_installment_credit_card_waits_for_first_due(strategies, installment_factory, card_factory):
    strategy = strategies[ObligationKind.INSTALLMENT]
    card = card_factory(closing_day=10, due_day=10)
    purchase = installment_factory(installment_count=1, card_id=card.id, purchase_date=date(2024, 3, 12))
    assert not await strategy.should_generate(purchase, date(2024, 4, 10))
    assert await strategy.should_generate(purchase, date(2024, 5, 10))


@pytest.mark.asyncio
async def test_misconfigured_credit_card(strategies, installment_factory, card_factory):
    card = card_factory(closing_day=None, due_day=10)
    purchase = installment_factory(card_id=card.id)
    with pytest.raises(CardConfigurationError):
        await strategies[ObligationKind.INSTALLMENT].should_generate(purchase, date(2024, 4, 10))


def test_installment_amount_rounds_half_up(installment_factory):
    purchase = installment_factory(total_amount=100.0, installment_count=3)
    assert InstallmentStrategy.installment_amount(purchase) == 33.33
    purchase = installment_factory(total_amount=0.05, installment_count=2)
    assert InstallmentStrategy.installment_amount(purchase) == 0.03


@pytest.mark.asyncio
async def test_converter_failure_is_wrapped(store, installment_factory):
    class BrokenConverter:
        async def convert_amount(self, amount, origin_currency):
            raise RuntimeError("rate service down")

    strategy = InstallmentStrategy(store, BrokenConverter())
    purchase = installment_factory(purchase_date=date(2024, 3, 15))
    with pytest.raises(CurrencyConversionError):
        await _generate(store, strategy, purchase, date(2024, 3, 15))
