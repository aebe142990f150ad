"""Unit of Work abstractions and concrete implementations.

This package re-exports the SQLAlchemy-backed data contexts alongside the
abstract contracts that service layers depend on.
"""

from .base import AsyncUnitOfWork, ContextState, IsolationLevel, SupportsCommit, UnitOfWork
from .sqlalchemy_uow import AsyncDataContext, DataContext, normalize_isolation_level

__all__ = [
    "AsyncDataContext",
    "AsyncUnitOfWork",
    "ContextState",
    "DataContext",
    "IsolationLevel",
    "SupportsCommit",
    "UnitOfWork",
    "normalize_isolation_level",
]
