"""Tenant-aware repositories and data contexts over SQLAlchemy.

Typical use::

    from dalcore import DataContext

    with DataContext(engine, tenant_id=454) as ctx:
        invoices = ctx.repository_for(Invoice)
        invoices.insert(Invoice(number="F-1"))
        ctx.save()
        ctx.commit()
"""

from __future__ import annotations

from dalcore.core.errors import (
    ConcurrencyConflict,
    ConnectionFailure,
    ConstraintViolation,
    DataAccessError,
    EntityNotPersistedError,
    TenantMismatchError,
    TransactionClosedError,
)
from dalcore.models import (
    Capability,
    EntityMixin,
    SoftDeletableMixin,
    TenantScopedMixin,
    capability_of,
)
from dalcore.repositories import AsyncBaseRepository, BaseRepository, compose_filter
from dalcore.uow import (
    AsyncDataContext,
    ContextState,
    DataContext,
    IsolationLevel,
)

__version__ = "0.1.0"

__all__ = [
    "AsyncBaseRepository",
    "AsyncDataContext",
    "BaseRepository",
    "Capability",
    "ConcurrencyConflict",
    "ConnectionFailure",
    "ConstraintViolation",
    "ContextState",
    "DataAccessError",
    "DataContext",
    "EntityMixin",
    "EntityNotPersistedError",
    "IsolationLevel",
    "SoftDeletableMixin",
    "TenantMismatchError",
    "TenantScopedMixin",
    "TransactionClosedError",
    "capability_of",
    "compose_filter",
]
