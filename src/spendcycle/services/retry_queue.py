"""Bounded in-memory queue of generation work that failed with a retryable error."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterator, Optional

from ..logging_config import get_logger
from ..models.obligation import ObligationKind

logger = get_logger("services.retry_queue")

FULL_GENERATION = "full_generation"


@dataclass(slots=True)
class RetryItem:
    """One unit of retryable work.

    ``kind``/``obligation_id`` are ``None`` for a whole-pass retry.
    """

    key: str
    kind: Optional[ObligationKind]
    obligation_id: Optional[int]
    enqueued_at: datetime
    last_error: str
    attempts: int = 0
    max_attempts: int = 3

    @property
    def is_full_generation(self) -> bool:
        return self.key == FULL_GENERATION

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


def item_key(kind: Optional[ObligationKind], obligation_id: Optional[int]) -> str:
    if kind is None:
        return FULL_GENERATION
    return f"{kind.value}:{obligation_id}"


class RetryQueue:
    """FIFO of retry items keyed by origin; re-enqueueing an item refreshes it in place.

    When ``max_size`` is reached the oldest item is evicted.
    """

    def __init__(self, max_size: int = 500, max_attempts: int = 3):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self.max_attempts = max_attempts
        self._items: OrderedDict[str, RetryItem] = OrderedDict()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[RetryItem]:
        return iter(list(self._items.values()))

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def enqueue(
        self,
        kind: Optional[ObligationKind],
        obligation_id: Optional[int],
        error: str,
        *,
        now: datetime,
    ) -> RetryItem:
        key = item_key(kind, obligation_id)
        existing = self._items.get(key)
        if existing is not None:
            existing.last_error = error
            return existing

        if len(self._items) >= self.max_size:
            evicted_key, evicted = self._items.popitem(last=False)
            logger.warning(
                "Retry queue full, evicting oldest item",
                extra={"retry_key": evicted_key, "attempts": evicted.attempts},
            )

        item = RetryItem(
            key=key,
            kind=kind,
            obligation_id=obligation_id,
            enqueued_at=now,
            last_error=error,
            max_attempts=self.max_attempts,
        )
        self._items[key] = item
        logger.info("Queued for retry", extra={"retry_key": key, "error": error})
        return item

    def enqueue_full_generation(self, error: str, *, now: datetime) -> RetryItem:
        return self.enqueue(None, None, error, now=now)

    def remove(self, key: str) -> Optional[RetryItem]:
        return self._items.pop(key, None)

    def drain(self) -> list[RetryItem]:
        """Snapshot of the current items in insertion order; the queue is left intact."""
        return list(self._items.values())

    def prune_older_than(self, age: timedelta, now: datetime) -> int:
        """Drop items enqueued more than ``age`` ago; returns how many were dropped."""
        cutoff = now - age
        stale = [key for key, item in self._items.items() if item.enqueued_at < cutoff]
        for key in stale:
            del self._items[key]
        if stale:
            logger.info("Pruned stale retry items", extra={"pruned": len(stale)})
        return len(stale)

    def clear(self) -> None:
        self._items.clear()
