"""Database engine bootstrap and session helpers."""

from __future__ import annotations

from typing import Callable, Tuple

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from ..config import BaseConfig


def create_db_engine(config: BaseConfig) -> Engine:
    """Create SQLModel engine from configuration."""
    engine = create_engine(config.DATABASE_URL, **config.sqlalchemy_engine_options())

    if engine.dialect.name == "sqlite":
        pragmas = dict(config.SQLITE_PRAGMAS)

        @event.listens_for(engine, "connect")
        def _apply_pragmas(dbapi_connection, _record) -> None:  # pragma: no cover - driver hook
            cursor = dbapi_connection.cursor()
            for name, value in pragmas.items():
                cursor.execute(f"PRAGMA {name}={value}")
            cursor.close()

    return engine


def init_database(engine: Engine) -> None:
    """Create all tables."""
    from .. import models  # noqa: F401  # register tables with SQLModel metadata

    SQLModel.metadata.create_all(engine)


def create_session_factory(engine: Engine) -> Callable[[], Session]:
    """Return a factory of plain sessions; callers decide commit/rollback."""

    def factory() -> Session:
        return Session(engine, expire_on_commit=False)

    return factory


def bootstrap_database(config: BaseConfig | None = None) -> Tuple[Engine, Callable[[], Session]]:
    """Engine + session factory with schema initialized.

    Used by the CLI and the scheduler entry point. Returns (engine, session_factory).
    """
    cfg = config or BaseConfig()
    engine = create_db_engine(cfg)
    init_database(engine)
    return engine, create_session_factory(engine)
