"""Pre-pass context analysis: calendar and load heuristics that tune a generation pass."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import date
from typing import Callable, Optional

from ..logging_config import get_logger
from .billing_cycle import days_in_month

logger = get_logger("services.run_context")

DEFAULT_BATCH_SIZE = 10
MONTH_BOUNDARY_BATCH_SIZE = 20
HIGH_LOAD_BATCH_SIZE = 5
HIGH_LOAD_THRESHOLD = 0.8


@dataclass(frozen=True)
class FixedHoliday:
    """Holiday falling on the same month/day every year."""

    name: str
    month: int
    day: int

    def matches(self, target_date: date) -> bool:
        return self.month == target_date.month and self.day == target_date.day


# National fixed-date holidays; movable ones shift every year and are not tracked
FIXED_HOLIDAYS: tuple[FixedHoliday, ...] = (
    FixedHoliday("Año Nuevo", 1, 1),
    FixedHoliday("Día de la Memoria", 3, 24),
    FixedHoliday("Malvinas", 4, 2),
    FixedHoliday("Día del Trabajador", 5, 1),
    FixedHoliday("Revolución de Mayo", 5, 25),
    FixedHoliday("Paso a la Inmortalidad de Belgrano", 6, 20),
    FixedHoliday("Día de la Independencia", 7, 9),
    FixedHoliday("Inmaculada Concepción", 12, 8),
    FixedHoliday("Navidad", 12, 25),
)


def is_holiday(target_date: date, holidays: tuple[FixedHoliday, ...] = FIXED_HOLIDAYS) -> bool:
    return any(holiday.matches(target_date) for holiday in holidays)


def is_month_boundary(target_date: date) -> bool:
    """First three or last two days of the month, when most obligations fall due."""

    last_day = days_in_month(target_date.year, target_date.month)
    return target_date.day <= 3 or target_date.day >= last_day - 1


def system_load() -> Optional[float]:
    """One-minute load average normalised by CPU count, ``None`` where unavailable."""

    if not hasattr(os, "getloadavg"):
        return None
    try:
        one_minute, _, _ = os.getloadavg()
    except OSError:
        return None
    return one_minute / (os.cpu_count() or 1)


@dataclass(frozen=True)
class RunContext:
    today: date
    is_weekend: bool
    is_holiday: bool
    is_month_boundary: bool
    high_load: bool
    batch_size: int
    parallel: bool
    immediate_retry: bool

    def as_log_extra(self) -> dict:
        return {
            "today": self.today.isoformat(),
            "weekend": self.is_weekend,
            "holiday": self.is_holiday,
            "month_boundary": self.is_month_boundary,
            "high_load": self.high_load,
            "batch_size": self.batch_size,
            "parallel": self.parallel,
            "immediate_retry": self.immediate_retry,
        }


def analyze_run_context(
    today: date,
    *,
    default_batch_size: int = DEFAULT_BATCH_SIZE,
    load_provider: Callable[[], Optional[float]] = system_load,
) -> RunContext:
    """Pick batch size, parallelism and immediate-retry policy for a pass on ``today``.

    High load wins over everything else: small sequential batches, no
    immediate retries. Otherwise month boundaries get larger batches.
    """

    load = load_provider()
    high_load = load is not None and load >= HIGH_LOAD_THRESHOLD
    boundary = is_month_boundary(today)

    if high_load:
        batch_size = min(default_batch_size, HIGH_LOAD_BATCH_SIZE)
    elif boundary:
        batch_size = max(default_batch_size, MONTH_BOUNDARY_BATCH_SIZE)
    else:
        batch_size = default_batch_size

    context = RunContext(
        today=today,
        is_weekend=today.weekday() >= 5,
        is_holiday=is_holiday(today),
        is_month_boundary=boundary,
        high_load=high_load,
        batch_size=batch_size,
        parallel=not high_load,
        immediate_retry=not high_load,
    )
    logger.debug("Run context analyzed", extra=context.as_log_extra())
    return context
