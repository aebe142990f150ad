"""
Abstract Unit of Work contracts.
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from typing import Protocol


class ContextState(str, enum.Enum):
    """Lifecycle of a data context.

    ``OPEN`` moves to ``COMMITTED`` or ``ROLLED_BACK`` (terminal for the
    transaction), and any state moves to ``DISPOSED`` once resources are
    released.
    """

    OPEN = "open"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    DISPOSED = "disposed"


class IsolationLevel(str, enum.Enum):
    READ_UNCOMMITTED = "READ UNCOMMITTED"
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"


class SupportsCommit(Protocol):
    def save(self) -> None: ...
    def commit(self) -> None: ...
    def rollback(self) -> None: ...


class UnitOfWork(ABC):
    """
    Owns one transaction for the lifetime of a data context.

    Responsibilities:
    - Provide repositories bound to the same session/transaction and tenant.
    - Flush staged changes on save, finalize on commit or rollback.
    """

    @property
    @abstractmethod
    def tenant_id(self) -> int | None: ...
    @property
    @abstractmethod
    def state(self) -> ContextState: ...
    @abstractmethod
    def __enter__(self) -> UnitOfWork: ...
    @abstractmethod
    def __exit__(self, exc_type, exc, tb) -> None: ...
    @abstractmethod
    def save(self) -> None: ...
    @abstractmethod
    def commit(self) -> None: ...
    @abstractmethod
    def rollback(self) -> None: ...
    @abstractmethod
    def close(self) -> None: ...

    # Concrete implementations expose repository attributes per entity type.


class AsyncUnitOfWork(ABC):
    """Asyncio counterpart of :class:`UnitOfWork`."""

    @property
    @abstractmethod
    def tenant_id(self) -> int | None: ...
    @property
    @abstractmethod
    def state(self) -> ContextState: ...
    @abstractmethod
    async def __aenter__(self) -> AsyncUnitOfWork: ...
    @abstractmethod
    async def __aexit__(self, exc_type, exc, tb) -> None: ...
    @abstractmethod
    async def save(self) -> None: ...
    @abstractmethod
    async def commit(self) -> None: ...
    @abstractmethod
    async def rollback(self) -> None: ...
    @abstractmethod
    async def close(self) -> None: ...
