"""
Engine and session factory helpers for blocking and asyncio stores.

Responsibilities:
- Create engines from configuration.
- Create session factories with the defaults data contexts rely on.
- Create missing tables for a metadata collection ("ensure created").
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, MetaData, create_engine
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import Session, sessionmaker

from dalcore.core.config import BaseConfig, get_config

log = logging.getLogger(__name__)

_SESSION_FACTORY: sessionmaker[Session] | None = None
_ASYNC_SESSION_FACTORY: async_sessionmaker[AsyncSession] | None = None


def create_engine_from_config(config: type[BaseConfig] | BaseConfig | None = None) -> Engine:
    """Build the blocking engine described by ``config.DATABASE_URL``."""
    cfg = config or get_config()
    # pool_pre_ping helps detect stale connections in long-lived processes.
    return create_engine(cfg.DATABASE_URL, echo=cfg.SQLALCHEMY_ECHO, pool_pre_ping=True)


def create_async_engine_from_config(
    config: type[BaseConfig] | BaseConfig | None = None,
) -> AsyncEngine:
    """Build the asyncio engine described by ``config.ASYNC_DATABASE_URL``."""
    cfg = config or get_config()
    return create_async_engine(
        cfg.ASYNC_DATABASE_URL, echo=cfg.SQLALCHEMY_ECHO, pool_pre_ping=True
    )


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    # expire_on_commit=False keeps committed entities readable after the context ends.
    return sessionmaker(bind=engine, expire_on_commit=False, autoflush=True)


def create_async_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=True)


def get_session_factory() -> sessionmaker[Session]:
    """Return the process-wide session factory, building it from configuration once."""
    global _SESSION_FACTORY
    if _SESSION_FACTORY is None:
        _SESSION_FACTORY = create_session_factory(create_engine_from_config())
    return _SESSION_FACTORY


def get_async_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the process-wide async session factory, building it from configuration once."""
    global _ASYNC_SESSION_FACTORY
    if _ASYNC_SESSION_FACTORY is None:
        _ASYNC_SESSION_FACTORY = create_async_session_factory(create_async_engine_from_config())
    return _ASYNC_SESSION_FACTORY


def ensure_schema(engine: Engine, metadata: MetaData) -> None:
    """Create the tables of ``metadata`` that do not exist yet.

    :param engine: Engine bound to the target database.
    :type engine: :class:`sqlalchemy.Engine`
    :param metadata: Metadata collecting the mapped tables.
    :type metadata: :class:`sqlalchemy.MetaData`
    """
    log.debug("Ensuring schema for %d table(s)", len(metadata.tables))
    metadata.create_all(engine, checkfirst=True)


async def ensure_schema_async(engine: AsyncEngine, metadata: MetaData) -> None:
    """Asyncio counterpart of :func:`ensure_schema`."""
    log.debug("Ensuring schema for %d table(s)", len(metadata.tables))
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all, checkfirst=True)


__all__ = [
    "create_engine_from_config",
    "create_async_engine_from_config",
    "create_session_factory",
    "create_async_session_factory",
    "ensure_schema",
    "ensure_schema_async",
    "get_async_session_factory",
    "get_session_factory",
]
