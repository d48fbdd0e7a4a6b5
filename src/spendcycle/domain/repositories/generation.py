"""Storage contract the generation engine depends on."""

from __future__ import annotations

from datetime import date
from typing import Any, ContextManager, Optional, Protocol

from sqlmodel import Session

from ...models.card import Card
from ...models.expense import Expense
from ...models.obligation import ObligationBase, ObligationKind


class GenerationStore(Protocol):
    """Reads obligations, writes ledger entries and generation state."""

    def unit_of_work(self, session: Optional[Session] = None) -> ContextManager[Session]:
        """Begin a transaction, or join ``session`` when the caller already owns one."""
        ...

    def find_ready_obligations(
        self, kind: ObligationKind, *, today: date, owner_id: Optional[int] = None
    ) -> list[ObligationBase]:
        """Obligations structurally ready for generation (active/pending, not generated today)."""
        ...

    def get_obligation(
        self, kind: ObligationKind, obligation_id: int, *, session: Optional[Session] = None
    ) -> Optional[ObligationBase]:
        """Fetch one obligation by kind and id."""
        ...

    def get_card(self, card_id: int, *, session: Optional[Session] = None) -> Optional[Card]:
        """Fetch a card by id."""
        ...

    def count_generated_installments(
        self, obligation_id: int, *, session: Optional[Session] = None
    ) -> int:
        """Number of ledger entries already generated for an installment purchase."""
        ...

    def create_ledger_entry(self, data: dict[str, Any], session: Session) -> Expense:
        """Insert a ledger entry inside ``session``."""
        ...

    def update_generation_state(
        self, obligation: ObligationBase, patch: dict[str, Any], session: Session
    ) -> None:
        """Apply generation-state fields to ``obligation`` inside ``session``."""
        ...

    def reference_exists(
        self, field_name: str, value: int, *, session: Optional[Session] = None
    ) -> bool:
        """Whether the row referenced by a foreign-key field exists."""
        ...
