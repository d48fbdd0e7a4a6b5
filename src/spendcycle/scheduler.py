"""Periodic driver for the generation engine.

Wraps an APScheduler ``AsyncIOScheduler`` with five jobs: the main generation
pass, the retry drain, a performance monitor, the adaptive interval tuner and
daily maintenance. All state lives on the ``GenerationScheduler`` instance.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .config import SchedulerSettings
from .exceptions import ConfigurationError
from .logging_config import get_logger
from .models.obligation import ObligationKind
from .services.orchestrator import Clock, GenerationOrchestrator, GenerationReport, zoned_clock
from .services.retry_queue import RetryQueue
from .services.run_context import RunContext, analyze_run_context, system_load

logger = get_logger("scheduler")

MAIN_JOB_ID = "expense_generation"
RETRY_JOB_ID = "retry_drain"
MONITOR_JOB_ID = "performance_monitor"
TUNER_JOB_ID = "adaptive_tuner"
MAINTENANCE_JOB_ID = "maintenance"
STARTUP_JOB_ID = "startup_generation"

MIN_RUNS_FOR_MONITOR = 5
LOW_SUCCESS_RATE = 0.7
RECOVERY_SUCCESS_RATE = 0.9
NARROWING_SUCCESS_RATE = 0.95
BACKOFF_FAILURE_STREAK = 3


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass
class SchedulerMetrics:
    """Rolling counters over whole passes (item-level failures do not fail a pass)."""

    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    consecutive_failures: int = 0
    total_execution_time_ms: float = 0.0
    last_execution: Optional[datetime] = None
    last_success: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    @property
    def average_execution_time_ms(self) -> float:
        if not self.total_runs:
            return 0.0
        return self.total_execution_time_ms / self.total_runs

    @property
    def success_rate(self) -> Optional[float]:
        if not self.total_runs:
            return None
        return self.successful_runs / self.total_runs

    def record_success(self, duration_ms: float, now: datetime) -> None:
        self.total_runs += 1
        self.successful_runs += 1
        self.consecutive_failures = 0
        self.total_execution_time_ms += duration_ms
        self.last_execution = now
        self.last_success = now

    def record_failure(self, duration_ms: float, now: datetime, error: str) -> None:
        self.total_runs += 1
        self.failed_runs += 1
        self.consecutive_failures += 1
        self.total_execution_time_ms += duration_ms
        self.last_execution = now
        self.last_error = error
        self.last_error_at = now

    def reset(self) -> None:
        for name, value in asdict(SchedulerMetrics()).items():
            setattr(self, name, value)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("last_execution", "last_success", "last_error_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        data["average_execution_time_ms"] = round(self.average_execution_time_ms, 2)
        data["success_rate"] = self.success_rate
        return data


class GenerationScheduler:
    """Runs generation passes on a schedule and keeps the retry queue moving."""

    def __init__(
        self,
        orchestrator: GenerationOrchestrator,
        settings: Optional[SchedulerSettings] = None,
        *,
        clock: Optional[Clock] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        load_provider: Callable[[], Optional[float]] = system_load,
    ):
        self.orchestrator = orchestrator
        self.settings = settings or SchedulerSettings()
        try:
            self.timezone = ZoneInfo(self.settings.timezone)
        except (KeyError, ValueError) as exc:
            raise ConfigurationError(f"Unknown timezone: {self.settings.timezone!r}") from exc
        self._cron_trigger()  # fail fast on a bad expression

        self.clock = clock or zoned_clock(self.settings.timezone)
        self.load_provider = load_provider
        self.metrics = SchedulerMetrics()
        self.retry_queue = RetryQueue(
            max_size=self.settings.retry_queue_max_size,
            max_attempts=self.settings.retry_max_attempts,
        )
        self.current_interval_minutes = self.settings.baseline_interval_minutes
        self.state = SchedulerState.STOPPED
        self.last_context: Optional[RunContext] = None
        self._scheduler = scheduler
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self.state is SchedulerState.RUNNING

    def _cron_trigger(self) -> CronTrigger:
        try:
            return CronTrigger.from_crontab(self.settings.cron, timezone=self.timezone)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid cron expression {self.settings.cron!r}: {exc}") from exc

    def start(self) -> None:
        """Register all jobs and start the underlying scheduler."""
        if self.is_running:
            logger.warning("Scheduler already running")
            return
        if not self.settings.enabled:
            logger.info("Generation scheduler disabled by configuration")
            return

        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(timezone=self.timezone)

        self._scheduler.add_job(
            self._scheduled_pass,
            trigger=self._main_trigger(),
            id=MAIN_JOB_ID,
            name="Expense generation",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if self.settings.retry_enabled:
            self._scheduler.add_job(
                self.drain_retry_queue,
                trigger=IntervalTrigger(minutes=self.settings.retry_interval_minutes, timezone=self.timezone),
                id=RETRY_JOB_ID,
                name="Retry queue drain",
                replace_existing=True,
            )
        self._scheduler.add_job(
            self.monitor_performance,
            trigger=IntervalTrigger(hours=1, timezone=self.timezone),
            id=MONITOR_JOB_ID,
            name="Performance monitor",
            replace_existing=True,
        )
        if self.settings.adaptive_scheduling:
            self._scheduler.add_job(
                self.adjust_interval,
                trigger=IntervalTrigger(hours=self.settings.tuner_interval_hours, timezone=self.timezone),
                id=TUNER_JOB_ID,
                name="Adaptive tuner",
                replace_existing=True,
            )
        self._scheduler.add_job(
            self.run_maintenance,
            trigger=CronTrigger(hour=3, minute=30, timezone=self.timezone),
            id=MAINTENANCE_JOB_ID,
            name="Maintenance",
            replace_existing=True,
        )
        if self.settings.run_on_startup:
            run_at = self.clock() + timedelta(seconds=self.settings.startup_delay_seconds)
            self._scheduler.add_job(
                self._scheduled_pass,
                trigger=DateTrigger(run_date=run_at, timezone=self.timezone),
                id=STARTUP_JOB_ID,
                name="Startup generation",
                replace_existing=True,
            )

        self._scheduler.start()
        self.state = SchedulerState.RUNNING
        logger.info(
            "Generation scheduler started",
            extra={
                "cron": self.settings.cron,
                "timezone": self.settings.timezone,
                "run_on_startup": self.settings.run_on_startup,
            },
        )

    def stop(self) -> None:
        """Stop triggering new work; a pass already running is left to finish."""
        if not self.is_running:
            logger.debug("Scheduler not running")
            return
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
        self.state = SchedulerState.STOPPED
        logger.info("Generation scheduler stopped")

    def _main_trigger(self) -> CronTrigger | IntervalTrigger:
        if self.current_interval_minutes == self.settings.baseline_interval_minutes:
            return self._cron_trigger()
        return IntervalTrigger(minutes=self.current_interval_minutes, timezone=self.timezone)

    async def _scheduled_pass(self) -> None:
        await self._execute_pass(source="scheduled")

    async def run_manual_pass(self, owner_id: Optional[int] = None) -> Optional[GenerationReport]:
        """Run a pass now, outside the schedule.

        Returns ``None`` when another pass is in progress or the pass itself failed
        (the failure is then queued for retry and reflected in the metrics).
        """
        return await self._execute_pass(owner_id=owner_id, source="manual")

    async def _execute_pass(
        self, *, owner_id: Optional[int] = None, source: str
    ) -> Optional[GenerationReport]:
        if self._lock.locked():
            logger.warning("Generation pass already in progress, skipping", extra={"source": source})
            return None

        async with self._lock:
            now = self.clock()
            context = analyze_run_context(
                now.date(),
                default_batch_size=self.settings.batch_size,
                load_provider=self.load_provider,
            )
            self.last_context = context
            self.orchestrator.configure(batch_size=context.batch_size, parallel=context.parallel)

            started = time.perf_counter()
            try:
                report = await self.orchestrator.run_scheduled_pass(owner_id=owner_id)
            except Exception as exc:
                duration_ms = (time.perf_counter() - started) * 1000
                self.metrics.record_failure(duration_ms, now, str(exc))
                logger.error(
                    "Generation pass failed",
                    extra={"source": source, "owner_id": owner_id, **context.as_log_extra()},
                    exc_info=True,
                )
                if self.settings.retry_enabled:
                    self.retry_queue.enqueue_full_generation(str(exc), now=now)
                if self.settings.adaptive_scheduling:
                    self.adjust_interval()
                return None

            duration_ms = (time.perf_counter() - started) * 1000
            self.metrics.record_success(duration_ms, now)
            logger.info(
                "Generation pass completed",
                extra={
                    "source": source,
                    "generated": report.total_generated,
                    "failed": report.total_failed,
                    "execution_time_ms": round(duration_ms, 2),
                },
            )
            await self._handle_item_errors(report, context, now)
            return report

    async def _handle_item_errors(
        self, report: GenerationReport, context: RunContext, now: datetime
    ) -> None:
        for error in report.retryable_errors:
            if error.source_id is None:
                continue
            kind = ObligationKind(error.kind)
            message = error.message

            if context.immediate_retry:
                try:
                    retry_report = await self.orchestrator.retry_obligation(kind, error.source_id)
                except Exception as exc:
                    message = str(exc)
                else:
                    if not retry_report.retryable_errors:
                        logger.info(
                            "Immediate retry settled obligation",
                            extra={"kind": kind.value, "obligation_id": error.source_id},
                        )
                        continue
                    message = retry_report.retryable_errors[0].message

            if self.settings.retry_enabled:
                self.retry_queue.enqueue(kind, error.source_id, message, now=now)

        if len(self.retry_queue) > self.settings.retry_queue_warn_size:
            logger.warning("Retry queue is growing", extra={"queue_size": len(self.retry_queue)})

    async def drain_retry_queue(self) -> dict[str, int]:
        """Re-run every queued item once; drop settled and exhausted ones."""
        outcome = {"resolved": 0, "abandoned": 0, "remaining": len(self.retry_queue)}
        if not self.retry_queue:
            return outcome
        if self._lock.locked():
            logger.info("Pass in progress, postponing retry drain")
            return outcome

        async with self._lock:
            now = self.clock()
            for item in self.retry_queue.drain():
                item.attempts += 1
                try:
                    if item.is_full_generation:
                        report = await self.orchestrator.run_full_pass()
                        for error in report.retryable_errors:
                            if error.source_id is not None:
                                self.retry_queue.enqueue(
                                    ObligationKind(error.kind), error.source_id, error.message, now=now
                                )
                        settled = True
                    else:
                        report = await self.orchestrator.retry_obligation(item.kind, item.obligation_id)
                        settled = not report.retryable_errors
                        if not settled:
                            item.last_error = report.retryable_errors[0].message
                except Exception as exc:
                    settled = False
                    item.last_error = str(exc)

                if settled:
                    self.retry_queue.remove(item.key)
                    outcome["resolved"] += 1
                elif item.exhausted:
                    self.retry_queue.remove(item.key)
                    outcome["abandoned"] += 1
                    logger.error(
                        "Giving up on retry item",
                        extra={"retry_key": item.key, "attempts": item.attempts, "error": item.last_error},
                    )

        outcome["remaining"] = len(self.retry_queue)
        logger.info("Retry queue drained", extra=outcome)
        return outcome

    def monitor_performance(self) -> list[str]:
        """Log a warning for each health threshold currently breached."""
        warnings: list[str] = []
        rate = self.metrics.success_rate
        if rate is not None and self.metrics.total_runs >= MIN_RUNS_FOR_MONITOR and rate < LOW_SUCCESS_RATE:
            warnings.append(f"success rate {rate:.0%} below {LOW_SUCCESS_RATE:.0%}")
        if self.metrics.average_execution_time_ms > self.settings.latency_ceiling_ms:
            warnings.append(
                f"average execution time {self.metrics.average_execution_time_ms:.0f}ms "
                f"above {self.settings.latency_ceiling_ms}ms"
            )
        if len(self.retry_queue) > self.settings.retry_queue_warn_size:
            warnings.append(f"retry queue holds {len(self.retry_queue)} items")

        for warning in warnings:
            logger.warning("Performance degraded: %s", warning)
        return warnings

    def adjust_interval(self) -> int:
        """Back off on failures, recover to baseline, narrow when consistently healthy."""
        settings = self.settings
        metrics = self.metrics
        current = self.current_interval_minutes
        baseline = settings.baseline_interval_minutes
        rate = metrics.success_rate

        if metrics.consecutive_failures >= BACKOFF_FAILURE_STREAK or (
            rate is not None and rate < LOW_SUCCESS_RATE
        ):
            new_interval = min(int(current * settings.backoff_multiplier), settings.max_interval_minutes)
        elif current > baseline and metrics.consecutive_failures == 0 and rate is not None and rate > RECOVERY_SUCCESS_RATE:
            new_interval = baseline
        elif (
            current <= baseline
            and metrics.failed_runs == 0
            and rate is not None
            and rate >= NARROWING_SUCCESS_RATE
        ):
            new_interval = max(int(current / settings.backoff_multiplier), settings.min_interval_minutes)
        else:
            new_interval = current

        if new_interval != current:
            self.current_interval_minutes = new_interval
            logger.info(
                "Generation interval adjusted",
                extra={
                    "previous_minutes": current,
                    "interval_minutes": new_interval,
                    "consecutive_failures": metrics.consecutive_failures,
                    "success_rate": rate,
                },
            )
            if self.is_running and self._scheduler is not None:
                self._scheduler.reschedule_job(MAIN_JOB_ID, trigger=self._main_trigger())
        return new_interval

    def run_maintenance(self) -> None:
        now = self.clock()
        self.retry_queue.prune_older_than(timedelta(hours=self.settings.retry_max_age_hours), now)
        last = self.metrics.last_execution
        if last is not None and now - last > timedelta(days=self.settings.idle_reset_days):
            self.metrics.reset()
            logger.info("Metrics reset after idle period", extra={"idle_since": last.isoformat()})

    def get_status(self) -> dict[str, Any]:
        next_run = None
        if self.is_running and self._scheduler is not None:
            job = self._scheduler.get_job(MAIN_JOB_ID)
            if job is not None and job.next_run_time is not None:
                next_run = job.next_run_time.isoformat()
        return {
            "state": self.state.value,
            "running": self.is_running,
            "cron": self.settings.cron,
            "timezone": self.settings.timezone,
            "interval_minutes": self.current_interval_minutes,
            "next_run": next_run,
            "pass_in_progress": self._lock.locked(),
            "retry_queue_size": len(self.retry_queue),
            "total_runs": self.metrics.total_runs,
            "success_rate": self.metrics.success_rate,
        }

    def get_detailed_metrics(self) -> dict[str, Any]:
        return {
            "metrics": self.metrics.to_dict(),
            "interval_minutes": self.current_interval_minutes,
            "last_context": self.last_context.as_log_extra() if self.last_context else None,
            "retry_queue": [
                {
                    "key": item.key,
                    "attempts": item.attempts,
                    "max_attempts": item.max_attempts,
                    "enqueued_at": item.enqueued_at.isoformat(),
                    "last_error": item.last_error,
                }
                for item in self.retry_queue
            ],
            "settings": asdict(self.settings),
        }


def create_scheduler(
    orchestrator: GenerationOrchestrator,
    settings: Optional[SchedulerSettings] = None,
    *,
    auto_start: bool = False,
    **kwargs: Any,
) -> GenerationScheduler:
    """Create and optionally start a generation scheduler."""
    scheduler = GenerationScheduler(orchestrator, settings, **kwargs)
    if auto_start:
        scheduler.start()
    return scheduler
