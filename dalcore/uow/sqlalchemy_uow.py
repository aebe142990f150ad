"""
SQLAlchemy implementations of the Unit of Work (data contexts).

A data context owns one session and the single transaction it begins at
construction, with a configurable isolation level and a fixed tenant identity.
Repositories created through the context share both.

Lifecycle
---------
``OPEN`` → ``COMMITTED`` | ``ROLLED_BACK`` → ``DISPOSED``.

Once the transaction is finalized the context installs session listeners that
refuse any further flush, statement or attach, so a finished context can never
silently start a second transaction. A new context must be opened instead.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from sqlalchemy import Engine, MetaData, event
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import Session, sessionmaker

from dalcore.core.config import BaseConfig, get_config
from dalcore.core.database import (
    create_async_session_factory,
    create_session_factory,
    ensure_schema as create_missing_tables,
    ensure_schema_async as create_missing_tables_async,
    get_async_session_factory,
    get_session_factory,
)
from dalcore.core.errors import DataAccessError, TransactionClosedError, translate_exception
from dalcore.core.logger import new_context_id
from dalcore.repositories.async_base import AsyncBaseRepository
from dalcore.repositories.base import BaseRepository
from dalcore.uow.base import AsyncUnitOfWork, ContextState, IsolationLevel, UnitOfWork

log = logging.getLogger(__name__)

R = TypeVar("R", bound=BaseRepository[Any])
AR = TypeVar("AR", bound=AsyncBaseRepository[Any])

_KNOWN_ISOLATION_LEVELS = frozenset(level.value for level in IsolationLevel)


def normalize_isolation_level(level: IsolationLevel | str | None) -> str | None:
    """Return the canonical ``"READ COMMITTED"`` style name for ``level``.

    :raises ValueError: For ``AUTOCOMMIT``, which cannot hold a transaction.
    """
    if level is None:
        return None
    raw = level.value if isinstance(level, IsolationLevel) else str(level)
    iso = raw.replace("_", " ").upper().strip()
    if not iso:
        return None
    if iso == "AUTOCOMMIT":
        raise ValueError("AUTOCOMMIT cannot be used for a data context transaction.")
    if iso not in _KNOWN_ISOLATION_LEVELS:
        log.warning("Unknown isolation_level '%s'; attempting as-is.", iso)
    return iso


class _ContextLifecycle:
    """State machine, guards and logging shared by both data contexts."""

    def __init__(self, *, tenant_id: int | None, isolation_level: IsolationLevel | str | None) -> None:
        self.context_id = new_context_id()
        self._tenant_id = tenant_id
        self.isolation_level = normalize_isolation_level(isolation_level)
        self._state = ContextState.OPEN
        self._outcome: ContextState | None = None
        self._guards_installed = False

    @property
    def tenant_id(self) -> int | None:
        """Tenant identity for the context lifetime; ``None`` means unscoped."""
        return self._tenant_id

    @property
    def state(self) -> ContextState:
        return self._state

    @property
    def outcome(self) -> ContextState | None:
        """``COMMITTED`` or ``ROLLED_BACK`` once the transaction is finalized."""
        return self._outcome

    def _log_extra(self, **extra: Any) -> dict[str, Any]:
        return {
            "context_id": self.context_id,
            "tenant_id": self._tenant_id,
            "isolation_level": self.isolation_level,
            **extra,
        }

    def _ensure_open(self, operation: str) -> None:
        if self._state is not ContextState.OPEN:
            raise TransactionClosedError(state=self._state.value, operation=operation)

    def _report_failure(self, operation: str, exc: SQLAlchemyError) -> Exception:
        translated = translate_exception(exc)
        log.warning(
            "Data context %s failed: %s",
            operation,
            type(translated).__name__,
            extra=self._log_extra(),
        )
        return translated

    def _finalize(self, outcome: ContextState, session: Session, started: float | None = None) -> None:
        self._state = outcome
        self._outcome = outcome
        self._install_guards(session)
        extra = self._log_extra()
        if started is not None:
            extra["elapsed_ms"] = round((time.perf_counter() - started) * 1000, 3)
        log.debug("Data context %s", outcome.value, extra=extra)

    # ----------------------------- Guards & Listeners --------------------------

    def _install_guards(self, session: Session) -> None:
        """Install session listeners rejecting work on a finalized context."""
        if self._guards_installed:
            return

        def _closed(operation: str) -> TransactionClosedError:
            return TransactionClosedError(state=self._state.value, operation=operation)

        # 1) Block ORM flushes carrying new/dirty/deleted objects.
        def _before_flush(sess, flush_context, instances):
            raise _closed("save")

        # 2) Block every statement executed through the session (reads included).
        def _do_orm_execute(orm_execute_state):
            raise _closed("execute")

        # 3) Block staging of new instances.
        def _before_attach(sess, instance):
            raise _closed("stage")

        event.listen(session, "before_flush", _before_flush)
        event.listen(session, "do_orm_execute", _do_orm_execute)
        event.listen(session, "before_attach", _before_attach)
        self._guards_installed = True


# ------------------------------ Blocking context -----------------------------


class DataContext(_ContextLifecycle, UnitOfWork):
    """
    Blocking data context backed by a SQLAlchemy :class:`~sqlalchemy.orm.Session`.

    Parameters
    ----------
    bind:
        Engine or session factory. ``None`` uses the process-wide factory built
        from configuration.
    tenant_id:
        Tenant for the context lifetime. ``None`` disables tenant filtering.
    isolation_level:
        Transaction isolation, e.g. ``"READ COMMITTED"``. ``None`` uses
        ``ISOLATION_LEVEL`` from configuration, then the engine default. Levels
        the dialect rejects fall back to the engine default with a warning.
    metadata:
        Tables to create when schema ensuring is enabled.
    ensure_schema:
        Create missing tables before beginning; defaults to ``ENSURE_SCHEMA``.

    Notes
    -----
    Subclasses typically expose repositories as attributes::

        class ShopContext(DataContext):
            def __init__(self, *args, **kwargs):
                super().__init__(*args, **kwargs)
                self.invoices = self.repository(InvoiceRepository)
    """

    def __init__(
        self,
        bind: Engine | sessionmaker[Session] | None = None,
        tenant_id: int | None = None,
        isolation_level: IsolationLevel | str | None = None,
        *,
        metadata: MetaData | None = None,
        ensure_schema: bool | None = None,
        config: type[BaseConfig] | BaseConfig | None = None,
    ) -> None:
        cfg = config or get_config()
        super().__init__(
            tenant_id=tenant_id,
            isolation_level=isolation_level if isolation_level is not None else cfg.ISOLATION_LEVEL,
        )
        factory = self._resolve_factory(bind)
        if metadata is not None and (cfg.ENSURE_SCHEMA if ensure_schema is None else ensure_schema):
            try:
                create_missing_tables(factory.kw["bind"], metadata)
            except SQLAlchemyError as exc:
                translated = translate_exception(exc)
                if translated is exc:
                    raise
                raise translated from exc
        self.session: Session = factory()
        self._begin()

    @staticmethod
    def _resolve_factory(bind: Engine | sessionmaker[Session] | None) -> sessionmaker[Session]:
        if bind is None:
            return get_session_factory()
        if isinstance(bind, Engine):
            return create_session_factory(bind)
        return bind

    def _begin(self) -> None:
        """Begin the context transaction and pin its connection."""
        self.session.begin()
        try:
            self._acquire_connection()
        except SQLAlchemyError as exc:
            translated = self._report_failure("begin", exc)
            self.session.close()
            self._state = ContextState.DISPOSED
            if translated is exc:
                raise
            raise translated from exc
        log.debug("Data context opened", extra=self._log_extra())

    def _acquire_connection(self) -> None:
        if not self.isolation_level:
            self.session.connection()
            return
        try:
            self.session.connection(execution_options={"isolation_level": self.isolation_level})
        except ArgumentError as exc:
            log.warning(
                "Isolation level '%s' rejected by dialect (%s). Falling back to engine default.",
                self.isolation_level,
                exc,
                extra=self._log_extra(),
            )
            self.isolation_level = None
            self.session.connection()

    # ----------------------------- Repositories -------------------------------

    def repository(self, repository_cls: type[R], model: type[Any] | None = None) -> R:
        """Create a repository bound to this context's session and tenant."""
        return repository_cls(self.session, self._tenant_id, model=model)

    def repository_for(self, model: type[Any]) -> BaseRepository[Any]:
        """Create a generic repository for ``model`` without a dedicated subclass."""
        return BaseRepository(self.session, self._tenant_id, model=model)

    # ----------------------------- Context Manager -----------------------------

    def __enter__(self) -> DataContext:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        """Roll back on error when still open, then release resources.

        Leaving the block cleanly without :meth:`commit` discards the work.
        """
        try:
            if exc_type is not None and self._state is ContextState.OPEN:
                try:
                    self.rollback()
                except DataAccessError:
                    log.error("Rollback on exit failed", exc_info=True, extra=self._log_extra())
        finally:
            self.close()

    # ----------------------------- Public API ---------------------------------

    def save(self) -> None:
        """Flush staged inserts, updates and deletes into the open transaction.

        :raises TransactionClosedError: If the context is no longer open.
        :raises DataAccessError: Translated store failure; the context is then
            rolled back.
        """
        self._ensure_open("save")
        try:
            self.session.flush()
        except SQLAlchemyError as exc:
            translated = self._abort("save", exc)
            if translated is exc:
                raise
            raise translated from exc

    def commit(self) -> None:
        """Commit the transaction, making saved effects durable."""
        self._ensure_open("commit")
        started = time.perf_counter()
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            translated = self._abort("commit", exc)
            if translated is exc:
                raise
            raise translated from exc
        self._finalize(ContextState.COMMITTED, self.session, started)

    def rollback(self) -> None:
        """Discard staged and saved effects. A no-op when already rolled back."""
        if self._state is ContextState.ROLLED_BACK:
            return
        self._ensure_open("rollback")
        started = time.perf_counter()
        try:
            self.session.rollback()
        except SQLAlchemyError as exc:
            translated = self._report_failure("rollback", exc)
            if translated is exc:
                raise
            raise translated from exc
        finally:
            self._finalize(ContextState.ROLLED_BACK, self.session, started)

    def close(self) -> None:
        """Release the session. Safe after commit or rollback and when repeated."""
        if self._state is ContextState.DISPOSED:
            return
        if self._state is ContextState.OPEN:
            # closing an open session discards the transaction
            self._outcome = ContextState.ROLLED_BACK
            self._install_guards(self.session)
        try:
            self.session.close()
        except SQLAlchemyError:
            log.error("Failed to release data context resources", exc_info=True, extra=self._log_extra())
        finally:
            self._state = ContextState.DISPOSED
            log.debug("Data context disposed", extra=self._log_extra(outcome=self._outcome))

    def _abort(self, operation: str, exc: SQLAlchemyError) -> Exception:
        translated = self._report_failure(operation, exc)
        try:
            self.session.rollback()
        except SQLAlchemyError:
            log.error("Rollback after failed %s raised", operation, exc_info=True, extra=self._log_extra())
        self._finalize(ContextState.ROLLED_BACK, self.session)
        return translated


# ------------------------------ Asyncio context ------------------------------


class AsyncDataContext(_ContextLifecycle, AsyncUnitOfWork):
    """
    Asyncio data context backed by :class:`~sqlalchemy.ext.asyncio.AsyncSession`.

    Accepts the same parameters as :class:`DataContext`. The transaction is
    begun by :meth:`open` or on ``async with`` entry, since constructors cannot
    await::

        async with AsyncDataContext(engine, tenant_id=454) as ctx:
            ...
            await ctx.save()
            await ctx.commit()

    Lifecycle calls on one context are serialized with an :class:`asyncio.Lock`.
    Repositories it creates run their I/O under the same lock, and a
    repository used before :meth:`begin` begins the transaction itself.
    """

    def __init__(
        self,
        bind: AsyncEngine | async_sessionmaker[AsyncSession] | None = None,
        tenant_id: int | None = None,
        isolation_level: IsolationLevel | str | None = None,
        *,
        metadata: MetaData | None = None,
        ensure_schema: bool | None = None,
        config: type[BaseConfig] | BaseConfig | None = None,
    ) -> None:
        cfg = config or get_config()
        super().__init__(
            tenant_id=tenant_id,
            isolation_level=isolation_level if isolation_level is not None else cfg.ISOLATION_LEVEL,
        )
        factory = self._resolve_factory(bind)
        self._engine: AsyncEngine = factory.kw["bind"]
        ensure = cfg.ENSURE_SCHEMA if ensure_schema is None else ensure_schema
        self._schema = metadata if ensure else None
        self.session: AsyncSession = factory()
        self._lock = asyncio.Lock()
        self._begun = False

    @classmethod
    async def open(cls, *args: Any, **kwargs: Any) -> AsyncDataContext:
        """Construct a context and begin its transaction."""
        ctx = cls(*args, **kwargs)
        await ctx.begin()
        return ctx

    @staticmethod
    def _resolve_factory(
        bind: AsyncEngine | async_sessionmaker[AsyncSession] | None,
    ) -> async_sessionmaker[AsyncSession]:
        if bind is None:
            return get_async_session_factory()
        if isinstance(bind, AsyncEngine):
            return create_async_session_factory(bind)
        return bind

    async def begin(self) -> None:
        """Begin the context transaction. Idempotent."""
        if self._begun:
            return
        self._ensure_open("begin")
        try:
            if self._schema is not None:
                await create_missing_tables_async(self._engine, self._schema)
            if not self.session.in_transaction():
                await self.session.begin()
            await self._acquire_connection()
        except SQLAlchemyError as exc:
            translated = self._report_failure("begin", exc)
            await self.session.close()
            self._state = ContextState.DISPOSED
            if translated is exc:
                raise
            raise translated from exc
        self._begun = True
        log.debug("Data context opened", extra=self._log_extra())

    async def _acquire_connection(self) -> None:
        if not self.isolation_level:
            await self.session.connection()
            return
        try:
            await self.session.connection(
                execution_options={"isolation_level": self.isolation_level}
            )
        except ArgumentError as exc:
            log.warning(
                "Isolation level '%s' rejected by dialect (%s). Falling back to engine default.",
                self.isolation_level,
                exc,
                extra=self._log_extra(),
            )
            self.isolation_level = None
            await self.session.connection()

    # ----------------------------- Repositories -------------------------------

    def repository(self, repository_cls: type[AR], model: type[Any] | None = None) -> AR:
        """Create an async repository bound to this context's session, tenant and lock."""
        return repository_cls(self.session, self._tenant_id, model=model, gate=self._io)

    def repository_for(self, model: type[Any]) -> AsyncBaseRepository[Any]:
        return AsyncBaseRepository(self.session, self._tenant_id, model=model, gate=self._io)

    @asynccontextmanager
    async def _io(self) -> AsyncIterator[None]:
        async with self._lock:
            self._ensure_open("repository access")
            await self.begin()
            yield

    # ----------------------------- Context Manager -----------------------------

    async def __aenter__(self) -> AsyncDataContext:
        await self.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is not None and self._state is ContextState.OPEN:
                try:
                    await self.rollback()
                except DataAccessError:
                    log.error("Rollback on exit failed", exc_info=True, extra=self._log_extra())
        finally:
            await self.close()

    # ----------------------------- Public API ---------------------------------

    async def save(self) -> None:
        """Asyncio counterpart of :meth:`DataContext.save`."""
        async with self._lock:
            self._ensure_open("save")
            await self.begin()
            try:
                await self.session.flush()
            except SQLAlchemyError as exc:
                translated = await self._abort("save", exc)
                if translated is exc:
                    raise
                raise translated from exc

    async def commit(self) -> None:
        """Asyncio counterpart of :meth:`DataContext.commit`."""
        async with self._lock:
            self._ensure_open("commit")
            await self.begin()
            started = time.perf_counter()
            try:
                await self.session.commit()
            except SQLAlchemyError as exc:
                translated = await self._abort("commit", exc)
                if translated is exc:
                    raise
                raise translated from exc
            self._finalize(ContextState.COMMITTED, self.session.sync_session, started)

    async def rollback(self) -> None:
        """Asyncio counterpart of :meth:`DataContext.rollback`."""
        async with self._lock:
            if self._state is ContextState.ROLLED_BACK:
                return
            self._ensure_open("rollback")
            started = time.perf_counter()
            try:
                await self.session.rollback()
            except SQLAlchemyError as exc:
                translated = self._report_failure("rollback", exc)
                if translated is exc:
                    raise
                raise translated from exc
            finally:
                self._finalize(ContextState.ROLLED_BACK, self.session.sync_session, started)

    async def close(self) -> None:
        """Asyncio counterpart of :meth:`DataContext.close`."""
        async with self._lock:
            if self._state is ContextState.DISPOSED:
                return
            if self._state is ContextState.OPEN:
                self._outcome = ContextState.ROLLED_BACK
                self._install_guards(self.session.sync_session)
            try:
                await self.session.close()
            except SQLAlchemyError:
                log.error(
                    "Failed to release data context resources",
                    exc_info=True,
                    extra=self._log_extra(),
                )
            finally:
                self._state = ContextState.DISPOSED
                log.debug("Data context disposed", extra=self._log_extra(outcome=self._outcome))

    async def _abort(self, operation: str, exc: SQLAlchemyError) -> Exception:
        translated = self._report_failure(operation, exc)
        try:
            await self.session.rollback()
        except SQLAlchemyError:
            log.error("Rollback after failed %s raised", operation, exc_info=True, extra=self._log_extra())
        self._finalize(ContextState.ROLLED_BACK, self.session.sync_session)
        return translated
