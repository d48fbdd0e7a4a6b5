"""spendcycle: materializes recurring obligations into dated expenses."""

from __future__ import annotations

from .config import BaseConfig, DevConfig, SchedulerSettings
from .context import create_engine_context

__version__ = "0.1.0"

__all__ = ["BaseConfig", "DevConfig", "SchedulerSettings", "create_engine_context"]
