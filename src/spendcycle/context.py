"""Engine context for dependency injection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session

from .config import BaseConfig
from .infra.database import bootstrap_database
from .infra.repositories import SQLModelGenerationStore
from .services.currency import CurrencyConverter, StaticRateConverter
from .services.orchestrator import Clock, GenerationOrchestrator, zoned_clock
from .services.strategies import build_strategies


@dataclass
class EngineContext:
    """Everything a generation pass needs, wired once per process."""

    config: BaseConfig
    engine: Engine
    session_factory: Callable[[], Session]
    store: SQLModelGenerationStore
    converter: CurrencyConverter
    orchestrator: GenerationOrchestrator
    clock: Clock


def create_engine_context(
    config: Optional[BaseConfig] = None,
    *,
    converter: Optional[CurrencyConverter] = None,
    clock: Optional[Clock] = None,
) -> EngineContext:
    """Create the database, store, strategies and orchestrator from configuration."""

    if config is None:
        config = BaseConfig()

    engine, session_factory = bootstrap_database(config)

    store = SQLModelGenerationStore(session_factory)
    converter = converter or StaticRateConverter(config.USD_RATE)
    clock = clock or zoned_clock(config.TIMEZONE)
    settings = config.scheduler_settings()

    orchestrator = GenerationOrchestrator(
        store,
        build_strategies(store, converter),
        clock=clock,
        batch_size=settings.batch_size,
    )

    return EngineContext(
        config=config,
        engine=engine,
        session_factory=session_factory,
        store=store,
        converter=converter,
        orchestrator=orchestrator,
        clock=clock,
    )
