"""Pytest fixtures configuring an isolated file-backed database per test.

Each test gets its own SQLite file under ``tmp_path`` so data contexts opened
side by side own separate connections, which is what transaction visibility
tests need. Blocking tests use pysqlite; asyncio tests use aiosqlite against
the same file.
"""

from __future__ import annotations

import os

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import create_async_engine

from dalcore.core.config import ENV_VAR, TestingConfig
from dalcore.core.database import create_async_session_factory, create_session_factory
from dalcore.uow import AsyncDataContext, DataContext
from tests.helpers.models import ModelBase

# Ensure env-based config does not leak into tests
os.environ[ENV_VAR] = "testing"
os.environ.pop("ISOLATION_LEVEL", None)


@pytest.fixture()
def db_path(tmp_path):
    """Return the SQLite file backing the current test."""
    return tmp_path / "dalcore.db"


@pytest.fixture()
def engine(db_path):
    """Create a blocking engine with every test table in place.

    Yields
    ------
    sqlalchemy.Engine
        Engine bound to the per-test SQLite file; disposed afterwards.
    """
    eng = create_engine(f"sqlite:///{db_path}")
    ModelBase.metadata.create_all(eng)
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture()
def seed_session(session_factory):
    """Provide a session, outside any data context, used to seed committed rows."""
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def open_context(session_factory):
    """Return a callable opening data contexts that are closed at teardown.

    Examples
    --------
    >>> ctx = open_context(454)
    >>> ctx.repository_for(Invoice).find_many_by()
    """
    opened: list[DataContext] = []

    def _open(tenant_id=None, **kwargs):
        kwargs.setdefault("config", TestingConfig)
        ctx = DataContext(session_factory, tenant_id, **kwargs)
        opened.append(ctx)
        return ctx

    yield _open
    for ctx in opened:
        ctx.close()


@pytest_asyncio.fixture()
async def async_engine(db_path, engine):
    """Create an aiosqlite engine over the same file as :func:`engine`."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    try:
        yield eng
    finally:
        await eng.dispose()


@pytest.fixture()
def async_session_factory(async_engine):
    return create_async_session_factory(async_engine)


@pytest_asyncio.fixture()
async def open_async_context(async_session_factory):
    """Asyncio counterpart of :func:`open_context`; contexts come back begun."""
    opened: list[AsyncDataContext] = []

    async def _open(tenant_id=None, **kwargs):
        kwargs.setdefault("config", TestingConfig)
        ctx = await AsyncDataContext.open(async_session_factory, tenant_id, **kwargs)
        opened.append(ctx)
        return ctx

    yield _open
    for ctx in opened:
        await ctx.close()


@pytest.fixture(scope="session")
def faker():
    """Provide a :class:`faker.Faker` instance seeded for deterministic tests."""
    from faker import Faker

    fk = Faker()
    Faker.seed(1337)
    return fk


# -- Hook up Factory Boy to the seeding session --------------------------------
@pytest.fixture(autouse=True)
def _factories_session(seed_session):
    """Wire Factory Boy's session helper to the seeding session fixture."""
    from tests.factories import SQLAlchemySession

    SQLAlchemySession.set(seed_session)
    yield
    SQLAlchemySession.set(None)
