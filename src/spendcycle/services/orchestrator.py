"""Generation orchestrator: runs every strategy over its ready obligations in batches."""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Iterable, Optional
from zoneinfo import ZoneInfo

from ..domain.repositories.generation import GenerationStore
from ..exceptions import (
    DuplicateGenerationError,
    SpendCycleError,
    StrategyLogicError,
    ValidationFailure,
    WholePassFailure,
)
from ..logging_config import get_logger
from ..models.obligation import ObligationBase, ObligationKind
from .strategies import MANDATORY_REFERENCES, GenerationStrategy

logger = get_logger("services.orchestrator")

Clock = Callable[[], datetime]

SCHEDULED_KINDS = (
    ObligationKind.AUTOMATIC_DEBIT,
    ObligationKind.RECURRING,
    ObligationKind.INSTALLMENT,
)


def zoned_clock(timezone: str) -> Clock:
    """Clock returning the current time in ``timezone``."""

    zone = ZoneInfo(timezone)

    def now() -> datetime:
        return datetime.now(zone)

    return now


@dataclass(slots=True)
class SuccessItem:
    kind: str
    expense_id: Optional[int]
    source_id: int
    amount: Optional[float]
    description: str


@dataclass(slots=True)
class ErrorItem:
    kind: str
    source_id: Optional[int]
    message: str
    error_type: str
    retryable: bool
    timestamp: str


@dataclass(slots=True)
class KindBreakdown:
    processed: int = 0
    generated: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class GenerationReport:
    """Outcome of one pass. Every processed obligation lands in exactly one counter."""

    today: Optional[date] = None
    success: list[SuccessItem] = field(default_factory=list)
    errors: list[ErrorItem] = field(default_factory=list)
    breakdown: dict[ObligationKind, KindBreakdown] = field(default_factory=dict)
    processing_time_ms: float = 0.0

    def for_kind(self, kind: ObligationKind) -> KindBreakdown:
        return self.breakdown.setdefault(kind, KindBreakdown())

    @property
    def total_processed(self) -> int:
        return sum(item.processed for item in self.breakdown.values())

    @property
    def total_generated(self) -> int:
        return sum(item.generated for item in self.breakdown.values())

    @property
    def total_failed(self) -> int:
        return sum(item.failed for item in self.breakdown.values())

    @property
    def retryable_errors(self) -> list[ErrorItem]:
        return [error for error in self.errors if error.retryable]

    def merge(self, other: GenerationReport) -> GenerationReport:
        merged = GenerationReport(
            today=self.today or other.today,
            success=[*self.success, *other.success],
            errors=[*self.errors, *other.errors],
            processing_time_ms=self.processing_time_ms + other.processing_time_ms,
        )
        for source in (self, other):
            for kind, counts in source.breakdown.items():
                target = merged.for_kind(kind)
                target.processed += counts.processed
                target.generated += counts.generated
                target.skipped += counts.skipped
                target.failed += counts.failed
        return merged

    def to_dict(self) -> dict[str, Any]:
        return {
            "today": self.today.isoformat() if self.today else None,
            "success": [asdict(item) for item in self.success],
            "errors": [asdict(item) for item in self.errors],
            "summary": {
                "totalProcessed": self.total_processed,
                "processingTimeMs": round(self.processing_time_ms, 2),
                "breakdown": {kind.value: asdict(counts) for kind, counts in self.breakdown.items()},
            },
        }


class GenerationOrchestrator:
    """Drive the strategies over ready obligations.

    Each obligation is generated inside its own unit of work; a failure is
    recorded in the report and never escapes its batch. Only a failure to
    fetch candidates aborts the pass (``WholePassFailure``).

    Store calls are synchronous, so items in a parallel batch only interleave
    at converter awaits. Batching bounds how much work runs before the pass
    yields to the event loop, which lets other scheduler jobs run between
    batches.
    """

    def __init__(
        self,
        store: GenerationStore,
        strategies: dict[ObligationKind, GenerationStrategy],
        *,
        clock: Optional[Clock] = None,
        timezone: str = "America/Argentina/Buenos_Aires",
        batch_size: int = 10,
        parallel: bool = True,
    ):
        self.store = store
        self.strategies = strategies
        self.clock = clock or zoned_clock(timezone)
        self.batch_size = batch_size
        self.parallel = parallel

    def configure(self, *, batch_size: Optional[int] = None, parallel: Optional[bool] = None) -> None:
        """Adjust batching; called by the scheduler before each pass."""
        if batch_size is not None:
            if batch_size < 1:
                raise ValueError("batch_size must be >= 1")
            self.batch_size = batch_size
        if parallel is not None:
            self.parallel = parallel
        logger.debug(
            "Orchestrator configured",
            extra={"batch_size": self.batch_size, "parallel": self.parallel},
        )

    def today(self) -> date:
        return self.clock().date()

    async def run_scheduled_pass(self, owner_id: Optional[int] = None) -> GenerationReport:
        """Automatic debits, then recurring expenses, then installments."""
        return await self._run(SCHEDULED_KINDS, owner_id, self.today())

    async def run_pending_one_time(self, owner_id: Optional[int] = None) -> GenerationReport:
        """Catch-up for one-time expenses whose creation-time generation did not happen."""
        return await self._run((ObligationKind.ONE_TIME,), owner_id, self.today())

    async def run_full_pass(self, owner_id: Optional[int] = None) -> GenerationReport:
        today = self.today()
        scheduled = await self._run(SCHEDULED_KINDS, owner_id, today)
        pending = await self._run((ObligationKind.ONE_TIME,), owner_id, today)
        return scheduled.merge(pending)

    async def generate_one_time(self, obligation_id: int) -> GenerationReport:
        """Generate a one-time expense right after it was created."""
        return await self.retry_obligation(ObligationKind.ONE_TIME, obligation_id)

    async def retry_obligation(self, kind: ObligationKind, obligation_id: int) -> GenerationReport:
        """Re-run a single obligation; used by the retry queue."""
        started = time.perf_counter()
        today = self.today()
        report = GenerationReport(today=today)

        try:
            obligation = self.store.get_obligation(kind, obligation_id)
        except Exception as exc:
            raise WholePassFailure(f"Could not load {kind.value} #{obligation_id}: {exc}") from exc

        if obligation is None:
            counts = report.for_kind(kind)
            counts.processed += 1
            counts.failed += 1
            self._record_failure(
                report,
                kind,
                obligation_id,
                ValidationFailure(f"{kind.value} #{obligation_id} does not exist"),
            )
        else:
            await self._process_one(kind, obligation, today, report)

        report.processing_time_ms = (time.perf_counter() - started) * 1000
        return report

    def validate_foreign_keys(self, obligation: ObligationBase) -> list[str]:
        """Names of mandatory references that are unset or point at missing rows."""
        problems: list[str] = []
        for name in MANDATORY_REFERENCES:
            value = getattr(obligation, name, None)
            if value is None or not self.store.reference_exists(name, value):
                problems.append(name)
        card_id = getattr(obligation, "card_id", None)
        if card_id is not None and not self.store.reference_exists("card_id", card_id):
            problems.append("card_id")
        return problems

    async def _run(
        self, kinds: Iterable[ObligationKind], owner_id: Optional[int], today: date
    ) -> GenerationReport:
        started = time.perf_counter()
        report = GenerationReport(today=today)
        logger.info(
            "Generation pass started",
            extra={
                "kinds": [kind.value for kind in kinds],
                "today": today.isoformat(),
                "owner_id": owner_id,
                "batch_size": self.batch_size,
                "parallel": self.parallel,
            },
        )

        for kind in kinds:
            try:
                obligations = self.store.find_ready_obligations(kind, today=today, owner_id=owner_id)
            except Exception as exc:
                logger.error(
                    "Could not fetch candidates",
                    extra={"kind": kind.value, "owner_id": owner_id},
                    exc_info=True,
                )
                raise WholePassFailure(f"Fetching {kind.value} candidates failed: {exc}") from exc
            await self._process_kind(kind, obligations, today, report)

        report.processing_time_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Generation pass finished",
            extra={
                "total_processed": report.total_processed,
                "generated": report.total_generated,
                "failed": report.total_failed,
                "processing_time_ms": round(report.processing_time_ms, 2),
            },
        )
        return report

    async def _process_kind(
        self,
        kind: ObligationKind,
        obligations: list[ObligationBase],
        today: date,
        report: GenerationReport,
    ) -> None:
        report.for_kind(kind)
        for start in range(0, len(obligations), self.batch_size):
            batch = obligations[start : start + self.batch_size]
            if self.parallel:
                await asyncio.gather(
                    *(self._process_one(kind, obligation, today, report) for obligation in batch)
                )
            else:
                for obligation in batch:
                    await self._process_one(kind, obligation, today, report)
            await asyncio.sleep(0)

    async def _process_one(
        self,
        kind: ObligationKind,
        obligation: ObligationBase,
        today: date,
        report: GenerationReport,
    ) -> None:
        counts = report.for_kind(kind)
        counts.processed += 1
        strategy = self.strategies[kind]
        source_id = getattr(obligation, "id", None)

        try:
            if kind is ObligationKind.INSTALLMENT:
                missing = self.validate_foreign_keys(obligation)
                if missing:
                    raise ValidationFailure(
                        f"Invalid references: {', '.join(missing)}", missing_fields=missing
                    )
            if not await strategy.should_generate(obligation, today):
                counts.skipped += 1
                return
            with self.store.unit_of_work() as session:
                expense = await strategy.generate(obligation, session, today)
        except DuplicateGenerationError as exc:
            counts.skipped += 1
            logger.info(
                "Already generated for this period",
                extra={"kind": kind.value, "obligation_id": source_id, "detail": str(exc)},
            )
            return
        except SpendCycleError as exc:
            counts.failed += 1
            self._record_failure(report, kind, source_id, exc)
            return
        except Exception as exc:
            counts.failed += 1
            logger.exception(
                "Unexpected error in strategy",
                extra={"kind": kind.value, "obligation_id": source_id},
            )
            wrapped = StrategyLogicError(f"{type(exc).__name__}: {exc}")
            wrapped.__cause__ = exc
            self._record_failure(report, kind, source_id, wrapped)
            return

        if expense is None:
            counts.skipped += 1
            return

        counts.generated += 1
        report.success.append(
            SuccessItem(
                kind=kind.value,
                expense_id=expense.id,
                source_id=source_id,
                amount=expense.amount_ars,
                description=expense.description,
            )
        )

    def _record_failure(
        self,
        report: GenerationReport,
        kind: ObligationKind,
        source_id: Optional[int],
        exc: SpendCycleError,
    ) -> None:
        if not isinstance(exc, StrategyLogicError):
            logger.warning(
                "Generation failed",
                extra={
                    "kind": kind.value,
                    "obligation_id": source_id,
                    "error_type": type(exc).__name__,
                    "detail": str(exc),
                },
            )
        report.errors.append(
            ErrorItem(
                kind=kind.value,
                source_id=source_id,
                message=str(exc),
                error_type=type(exc).__name__,
                retryable=exc.retryable,
                timestamp=self.clock().isoformat(),
            )
        )
