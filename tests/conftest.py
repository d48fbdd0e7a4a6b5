"""Pytest configuration and shared fixtures for spendcycle tests.

Provides a temporary SQLite database per test, the generation store, a fixed
clock and factories for owners, catalogs, cards and every obligation kind.
"""

from __future__ import annotations

import tempfile
from datetime import date, datetime
from pathlib import Path
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest
from sqlmodel import Session, SQLModel, create_engine, select

from spendcycle.infra.repositories import SQLModelGenerationStore
from spendcycle.models import (
    AutomaticDebit,
    Card,
    CardType,
    Category,
    Expense,
    Importance,
    InstallmentPurchase,
    OneTimeExpense,
    PaymentMethod,
    RecurringExpense,
    User,
)
from spendcycle.services.currency import StaticRateConverter
from spendcycle.services.orchestrator import GenerationOrchestrator
from spendcycle.services.strategies import build_strategies

TZ = ZoneInfo("America/Argentina/Buenos_Aires")


class FixedClock:
    """Callable clock frozen at ``now``; tests move it with ``set``."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, day: date, hour: int = 0, minute: int = 5) -> None:
        self.now = datetime(day.year, day.month, day.day, hour, minute, tzinfo=TZ)


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture(scope="function")
def db_engine():
    """Create an isolated temporary SQLite database for each test.

    Yields:
        Engine: SQLModel engine connected to test database
    """
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    engine = create_engine(
        f"sqlite:///{db_path}", echo=False, connect_args={"check_same_thread": False}
    )
    SQLModel.metadata.create_all(engine)

    yield engine

    engine.dispose()
    db_path.unlink(missing_ok=True)


@pytest.fixture(scope="function")
def session_factory(db_engine):
    """Factory returning fresh sessions, as the store expects."""

    def factory() -> Session:
        return Session(db_engine, expire_on_commit=False)

    return factory


@pytest.fixture
def store(session_factory) -> SQLModelGenerationStore:
    return SQLModelGenerationStore(session_factory)


@pytest.fixture
def converter() -> StaticRateConverter:
    return StaticRateConverter(1000)


@pytest.fixture
def strategies(store, converter):
    return build_strategies(store, converter)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 3, 15, 0, 5, tzinfo=TZ))


@pytest.fixture
def orchestrator(store, strategies, clock) -> GenerationOrchestrator:
    return GenerationOrchestrator(store, strategies, clock=clock, batch_size=10)


def _persist(session_factory, row):
    with session_factory() as session:
        session.add(row)
        session.commit()
        session.refresh(row)
    return row


# =============================================================================
# Test Data Factories
# =============================================================================


@pytest.fixture
def owner(session_factory) -> User:
    return _persist(session_factory, User(username="tester"))


@pytest.fixture
def catalog(session_factory):
    """Category, importance and payment method rows, plus their ids as kwargs."""

    category = _persist(session_factory, Category(name="Services"))
    importance = _persist(session_factory, Importance(name="Essential"))
    payment_method = _persist(
        session_factory, PaymentMethod(name="Credit card", allows_installments=True)
    )
    return SimpleNamespace(
        category=category,
        importance=importance,
        payment_method=payment_method,
        refs={
            "category_id": category.id,
            "importance_id": importance.id,
            "payment_method_id": payment_method.id,
        },
    )


@pytest.fixture
def card_factory(session_factory, owner):
    def _create_card(
        closing_day: int | None = 10,
        due_day: int | None = 10,
        card_type: CardType = CardType.CREDIT,
        name: str = "Visa",
    ) -> Card:
        return _persist(
            session_factory,
            Card(
                owner_id=owner.id,
                name=name,
                card_type=card_type.value,
                closing_day=closing_day,
                due_day=due_day,
            ),
        )

    return _create_card


@pytest.fixture
def recurring_factory(session_factory, owner, catalog):
    def _create_recurring(**overrides) -> RecurringExpense:
        fields = {
            "owner_id": owner.id,
            "description": "Internet",
            "amount": 15000.0,
            "payment_day": 15,
            "amount_ars": 15000.0,
            "amount_usd": 15.0,
            "reference_rate": 1000.0,
            **catalog.refs,
        }
        fields.update(overrides)
        return _persist(session_factory, RecurringExpense(**fields))

    return _create_recurring


@pytest.fixture
def debit_factory(session_factory, owner, catalog):
    def _create_debit(**overrides) -> AutomaticDebit:
        fields = {
            "owner_id": owner.id,
            "description": "Streaming",
            "amount": 5000.0,
            "frequency": "monthly",
            "payment_day": 15,
            "amount_ars": 5000.0,
            "amount_usd": 5.0,
            "reference_rate": 1000.0,
            **catalog.refs,
        }
        fields.update(overrides)
        return _persist(session_factory, AutomaticDebit(**fields))

    return _create_debit


@pytest.fixture
def installment_factory(session_factory, owner, catalog):
    def _create_installment(**overrides) -> InstallmentPurchase:
        total = overrides.get("total_amount", 300.0)
        fields = {
            "owner_id": owner.id,
            "description": "Laptop",
            "amount": total,
            "total_amount": total,
            "installment_count": 3,
            "purchase_date": date(2024, 3, 5),
            **catalog.refs,
        }
        fields.update(overrides)
        return _persist(session_factory, InstallmentPurchase(**fields))

    return _create_installment


@pytest.fixture
def one_time_factory(session_factory, owner, catalog):
    def _create_one_time(**overrides) -> OneTimeExpense:
        fields = {
            "owner_id": owner.id,
            "description": "Dinner",
            "amount": 2500.0,
            "expense_date": date(2024, 3, 14),
            **catalog.refs,
        }
        fields.update(overrides)
        return _persist(session_factory, OneTimeExpense(**fields))

    return _create_one_time


@pytest.fixture
def expenses(session_factory):
    """Callable returning every ledger entry, ordered by id."""

    def _list() -> list[Expense]:
        with session_factory() as session:
            return list(session.exec(select(Expense).order_by(Expense.id)).all())

    return _list
