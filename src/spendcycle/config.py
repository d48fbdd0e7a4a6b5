"""Application configuration objects and helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    """Interpret environment variable values as booleans."""

    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return int(value)


@dataclass(frozen=True)
class SchedulerSettings:
    """Knobs for the generation scheduler and its adaptive tuner."""

    enabled: bool = True
    cron: str = "5 0 * * *"
    timezone: str = "America/Argentina/Buenos_Aires"
    run_on_startup: bool = False
    startup_delay_seconds: int = 5
    retry_enabled: bool = True
    adaptive_scheduling: bool = True
    batch_size: int = 10
    retry_max_attempts: int = 3
    retry_interval_minutes: int = 15
    retry_queue_max_size: int = 500
    retry_queue_warn_size: int = 50
    retry_max_age_hours: int = 24
    tuner_interval_hours: int = 4
    baseline_interval_minutes: int = 24 * 60
    min_interval_minutes: int = 6 * 60
    max_interval_minutes: int = 7 * 24 * 60
    backoff_multiplier: float = 2.0
    latency_ceiling_ms: int = 30_000
    idle_reset_days: int = 7


class BaseConfig:
    """Base configuration shared across environments."""

    APP_NAME = "spendcycle"
    DB_FILENAME = "spendcycle.db"
    SQLITE_PRAGMAS = {"journal_mode": "wal", "foreign_keys": "on"}

    def __init__(self) -> None:
        self.DATA_DIR = self._resolve_data_dir()
        self.DEV_MODE = _env_bool("SPENDCYCLE_DEV_MODE", default=True)
        self.DATABASE_URL = os.getenv("SPENDCYCLE_DATABASE_URL", self._build_sqlite_url())
        self.TIMEZONE = os.getenv("SPENDCYCLE_TIMEZONE", "America/Argentina/Buenos_Aires")
        self.USD_RATE = os.getenv("SPENDCYCLE_USD_RATE", "1000")
        self.SCHEDULER_ENABLED = _env_bool("SPENDCYCLE_SCHEDULER_ENABLED", default=True)
        self.SCHEDULER_CRON = os.getenv("SPENDCYCLE_SCHEDULER_CRON", "5 0 * * *")
        self.RUN_ON_STARTUP = _env_bool("SPENDCYCLE_RUN_ON_STARTUP", default=False)
        self.RETRY_ENABLED = _env_bool("SPENDCYCLE_RETRY_ENABLED", default=True)
        self.ADAPTIVE_SCHEDULING = _env_bool("SPENDCYCLE_ADAPTIVE_SCHEDULING", default=True)
        self.RETRY_MAX_ATTEMPTS = _env_int("SPENDCYCLE_RETRY_MAX_ATTEMPTS", 3)
        self.BATCH_SIZE = _env_int("SPENDCYCLE_BATCH_SIZE", 10)

    def _resolve_data_dir(self) -> Path:
        """Return the directory where the SQLite file and logs live."""

        data_root = os.getenv("SPENDCYCLE_DATA_DIR", "instance")
        path = Path(data_root).expanduser().resolve()
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _build_sqlite_url(self) -> str:
        return f"sqlite:///{self.DATA_DIR / self.DB_FILENAME}"

    def sqlalchemy_engine_options(self) -> dict[str, Any]:
        """Expose engine kwargs for SQLModel to consume."""

        if self.DATABASE_URL.startswith("sqlite"):
            return {"connect_args": {"check_same_thread": False, "timeout": 30}}
        return {"pool_pre_ping": True}

    def scheduler_settings(self) -> SchedulerSettings:
        """Build the scheduler settings from environment-backed attributes."""

        return SchedulerSettings(
            enabled=self.SCHEDULER_ENABLED,
            cron=self.SCHEDULER_CRON,
            timezone=self.TIMEZONE,
            run_on_startup=self.RUN_ON_STARTUP,
            retry_enabled=self.RETRY_ENABLED,
            adaptive_scheduling=self.ADAPTIVE_SCHEDULING,
            batch_size=self.BATCH_SIZE,
            retry_max_attempts=self.RETRY_MAX_ATTEMPTS,
        )


class DevConfig(BaseConfig):
    """Development configuration using local SQLite."""

    DEBUG = True
    TESTING = False


class TestConfig(BaseConfig):
    """Configuration used by the test-suite; the scheduler never fires on its own."""

    DEBUG = False
    TESTING = True

    def __init__(self) -> None:
        super().__init__()
        self.SCHEDULER_ENABLED = False
        self.RUN_ON_STARTUP = False
