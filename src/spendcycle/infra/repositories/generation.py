"""SQLModel implementation of the generation store."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import date
from typing import Any, Callable, Iterator, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, select

from ...exceptions import DuplicateGenerationError, TransientStorageError, ValidationFailure
from ...logging_config import get_logger
from ...models.card import Card
from ...models.catalog import Category, Importance, PaymentMethod
from ...models.expense import Expense
from ...models.obligation import OBLIGATION_MODELS, ObligationBase, ObligationKind

logger = get_logger("infra.generation_store")

REFERENCE_MODELS = {
    "category_id": Category,
    "importance_id": Importance,
    "payment_method_id": PaymentMethod,
    "card_id": Card,
}


class SQLModelGenerationStore:
    """SQLModel-based store used by the orchestrator and strategies."""

    def __init__(self, session_factory: Callable[[], Session]):
        """Initialize with a factory returning fresh ``Session`` objects."""
        self.session_factory = session_factory

    @contextmanager
    def unit_of_work(self, session: Optional[Session] = None) -> Iterator[Session]:
        """Transactional scope: commit on success, roll back on any exception.

        A caller-supplied session is joined as-is; its owner commits or rolls back.
        """
        if session is not None:
            yield session
            return

        own = self.session_factory()
        try:
            yield own
            own.commit()
        except OperationalError as exc:
            own.rollback()
            raise TransientStorageError(str(exc.orig or exc)) from exc
        except Exception:
            own.rollback()
            raise
        finally:
            own.close()

    @contextmanager
    def _reading(self, session: Optional[Session]) -> Iterator[Session]:
        if session is not None:
            yield session
            return
        try:
            with self.session_factory() as own:
                yield own
                own.expunge_all()
        except OperationalError as exc:
            raise TransientStorageError(str(exc.orig or exc)) from exc

    def find_ready_obligations(
        self, kind: ObligationKind, *, today: date, owner_id: Optional[int] = None
    ) -> list[ObligationBase]:
        """Obligations structurally ready for generation, in id order."""
        model: Any = OBLIGATION_MODELS[kind]
        statement = select(model)
        if kind is ObligationKind.ONE_TIME:
            statement = statement.where(model.processed == False)  # noqa: E712
        elif kind is ObligationKind.INSTALLMENT:
            statement = statement.where(model.pending == True)  # noqa: E712
        else:
            statement = statement.where(model.active == True).where(  # noqa: E712
                or_(model.last_generated_date == None, model.last_generated_date != today)  # noqa: E711
            )
        if owner_id is not None:
            statement = statement.where(model.owner_id == owner_id)
        statement = statement.order_by(model.id)

        with self._reading(None) as session:
            rows = list(session.exec(statement).all())
        logger.debug(
            "Fetched ready obligations",
            extra={"kind": kind.value, "count": len(rows), "owner_id": owner_id},
        )
        return rows

    def get_obligation(
        self, kind: ObligationKind, obligation_id: int, *, session: Optional[Session] = None
    ) -> Optional[ObligationBase]:
        with self._reading(session) as active:
            return active.get(OBLIGATION_MODELS[kind], obligation_id)

    def get_card(self, card_id: int, *, session: Optional[Session] = None) -> Optional[Card]:
        with self._reading(session) as active:
            return active.get(Card, card_id)

    def count_generated_installments(
        self, obligation_id: int, *, session: Optional[Session] = None
    ) -> int:
        statement = (
            select(func.count())
            .select_from(Expense)
            .where(Expense.origin_type == ObligationKind.INSTALLMENT.value)
            .where(Expense.origin_id == obligation_id)
        )
        with self._reading(session) as active:
            return int(active.exec(statement).one())

    def create_ledger_entry(self, data: dict[str, Any], session: Session) -> Expense:
        """Insert the entry and flush so the id is available before commit."""
        expense = Expense(**data)
        session.add(expense)
        try:
            session.flush()
        except IntegrityError as exc:
            message = str(exc.orig or exc)
            if "unique" in message.lower():
                raise DuplicateGenerationError(
                    f"{data.get('origin_type')} #{data.get('origin_id')} already generated "
                    f"for period {data.get('period_key')}"
                ) from exc
            raise ValidationFailure(message) from exc
        except OperationalError as exc:
            raise TransientStorageError(str(exc.orig or exc)) from exc
        return expense

    def update_generation_state(
        self, obligation: ObligationBase, patch: dict[str, Any], session: Session
    ) -> None:
        for key, value in patch.items():
            setattr(obligation, key, value)
        session.add(obligation)

    def reference_exists(
        self, field_name: str, value: int, *, session: Optional[Session] = None
    ) -> bool:
        model = REFERENCE_MODELS[field_name]
        with self._reading(session) as active:
            return active.get(model, value) is not None
