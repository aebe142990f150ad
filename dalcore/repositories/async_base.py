"""Asyncio repository mirroring :class:`~dalcore.repositories.base.BaseRepository`.

Every statement is built by :class:`~dalcore.repositories.base.RepositoryCore`,
so reads and filtered deletes compose exactly the same predicates as the
blocking surface. I/O goes through :class:`sqlalchemy.ext.asyncio.AsyncSession`
on an async driver; nothing is dispatched to a thread pool.

Each public coroutine runs its I/O inside the ``gate`` handed over by the data
context, which serializes it with the context's own lifecycle calls and opens
the transaction on first use. ``insert`` never touches the database and stays
synchronous, as ``AsyncSession.add`` does.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Callable, Iterable, Sequence
from contextlib import AbstractAsyncContextManager
from typing import Any, TypeVar

from sqlalchemy import inspect as sa_inspect
from sqlalchemy import text
from sqlalchemy.engine import Result
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dalcore.repositories.base import RepositoryCore

E = TypeVar("E")

Gate = Callable[[], AbstractAsyncContextManager[Any]]

log = logging.getLogger(__name__)


class AsyncBaseRepository(RepositoryCore[E]):
    """Generic, persistence-only asyncio repository for a single entity type.

    Subclasses MUST define ``model``. The repository holds only the async
    session, the tenant identity and the I/O gate of the data context that
    created it. Without a gate, I/O runs unguarded.
    """

    def __init__(
        self,
        session: AsyncSession,
        tenant_id: int | None = None,
        *,
        model: type[E] | None = None,
        gate: Gate | None = None,
    ) -> None:
        super().__init__(tenant_id, model=model)
        self._session = session
        self._gate: Gate = gate or contextlib.nullcontext

    @property
    def session(self) -> AsyncSession:
        """Return the async session bound to the owning data context."""
        return self._session

    # ------------------------------ Reads ------------------------------------

    async def find_one_by(
        self,
        predicate: Any = None,
        *,
        read_only: bool = False,
        prevent_deletion_management: bool = False,
    ) -> E | None:
        """Asyncio counterpart of :meth:`BaseRepository.find_one_by`."""
        async with self._gate():
            return await self._first(
                predicate,
                read_only=read_only,
                prevent_deletion_management=prevent_deletion_management,
            )

    async def find_many_by(
        self,
        predicate: Any = None,
        *,
        read_only: bool = False,
        prevent_deletion_management: bool = False,
    ) -> list[E]:
        """Asyncio counterpart of :meth:`BaseRepository.find_many_by`."""
        async with self._gate():
            return await self._all(
                predicate,
                read_only=read_only,
                prevent_deletion_management=prevent_deletion_management,
            )

    # ------------------------------ Writes -----------------------------------

    def insert(self, entities: E | Iterable[E]) -> None:
        items = self._as_list(entities)
        for entity in items:
            self._assign_tenant(entity)
        self.session.add_all(items)

    async def update(self, entities: E | Iterable[E]) -> None:
        """Asyncio counterpart of :meth:`BaseRepository.update`.

        A coroutine because untracked tenant-scoped instances are matched
        against their stored row first.
        """
        async with self._gate():
            for entity in self._as_list(entities):
                self._check_tenant(entity)
                await self._owned(entity)
                self._stage_update(self.session.sync_session, entity)

    async def delete(self, entities: E | Iterable[E]) -> None:
        async with self._gate():
            for entity in self._as_list(entities):
                self._check_tenant(entity)
                if sa_inspect(entity).pending:
                    self.session.expunge(entity)
                    continue
                if not await self._owned(entity):
                    log.debug(
                        "delete matched no stored row", extra={"entity": self.model.__name__}
                    )
                    continue
                await self.session.delete(self._tracked(self.session.sync_session, entity))

    async def delete_by_id(self, entity_id: int) -> None:
        """Asyncio counterpart of :meth:`BaseRepository.delete_by_id`."""
        async with self._gate():
            held = self._held(self.session.sync_session, entity_id)
            if held is not None:
                self._check_tenant(held)
                await self.session.delete(held)
                return
            if not self._stub_delete_allowed():
                await self._delete_first(
                    lambda m: m.id == entity_id, prevent_deletion_management=True
                )
                return
            stub = self._stub(entity_id)
            self.session.add(stub)
            await self.session.delete(stub)

    async def delete_by(
        self, predicate: Any, *, prevent_deletion_management: bool = False
    ) -> None:
        async with self._gate():
            await self._delete_first(
                predicate, prevent_deletion_management=prevent_deletion_management
            )

    async def delete_many_by(
        self, predicate: Any, *, prevent_deletion_management: bool = False
    ) -> None:
        async with self._gate():
            entities = await self._all(
                predicate, prevent_deletion_management=prevent_deletion_management
            )
            for entity in entities:
                await self.session.delete(entity)

    # ------------------------------ Internals --------------------------------
    # Ungated; callers already hold the gate, which is not re-entrant.

    async def _execute(self, statement: Any, params: Any = None) -> Result[Any]:
        try:
            return await self.session.execute(statement, params)
        except SQLAlchemyError as exc:
            self._reraise(exc)

    async def _first(
        self,
        predicate: Any,
        *,
        read_only: bool = False,
        prevent_deletion_management: bool = False,
    ) -> E | None:
        stmt = self._select(
            predicate,
            read_only=read_only,
            prevent_deletion_management=prevent_deletion_management,
        ).limit(1)
        return self._one(await self._execute(stmt), read_only=read_only)

    async def _all(
        self,
        predicate: Any,
        *,
        read_only: bool = False,
        prevent_deletion_management: bool = False,
    ) -> list[E]:
        stmt = self._select(
            predicate,
            read_only=read_only,
            prevent_deletion_management=prevent_deletion_management,
        )
        return self._many(await self._execute(stmt), read_only=read_only)

    async def _owned(self, entity: E) -> bool:
        if not self._needs_owner_check(self.session.sync_session, entity):
            return True
        owner = (await self._execute(self._owner_select(entity))).scalar_one_or_none()
        return self._confirm_owner(entity, owner)

    async def _delete_first(self, predicate: Any, *, prevent_deletion_management: bool) -> None:
        entity = await self._first(
            predicate, prevent_deletion_management=prevent_deletion_management
        )
        if entity is None:
            log.debug("delete_by matched nothing", extra={"entity": self.model.__name__})
            return
        await self.session.delete(entity)

    # ------------------------------ Raw SQL ----------------------------------

    async def _execute_raw(
        self, statement: str, params: dict[str, Any] | Sequence[dict[str, Any]] | None = None
    ) -> Result[Any]:
        """Execute a raw SQL statement inside the context transaction."""
        async with self._gate():
            return await self._execute(text(statement), params or {})


__all__ = ["AsyncBaseRepository"]
