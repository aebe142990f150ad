"""
Data-access exceptions raised by data contexts and repositories.

These exceptions are **driver-agnostic** contracts for callers: SQLAlchemy and
DBAPI errors raised while flushing, committing or reading are translated by
:func:`translate_exception` into one of the kinds below, with the original
exception chained as ``__cause__``.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
)
from sqlalchemy.orm.exc import StaleDataError

# SQLSTATE codes reported by PostgreSQL/MySQL drivers for retryable conflicts
_CONFLICT_SQLSTATES = frozenset({"40001", "40P01"})

_CONFLICT_MARKERS = (
    "deadlock",
    "could not serialize",
    "serialization failure",
    "database is locked",
    "lock wait timeout",
)


def violates(exc: IntegrityError, constraint_name: str) -> bool:
    """
    Check whether an IntegrityError originates from a specific constraint.

    Parameters
    ----------
    exc : IntegrityError
        The exception raised by SQLAlchemy during flush/commit.
    constraint_name : str
        The name of the database constraint to match (e.g., 'uq_users_email').

    Returns
    -------
    bool
        True if the IntegrityError matches the given constraint.
    """
    # Some dialects (PostgreSQL) include constraint name in the error message
    message = str(exc.orig).lower() if exc.orig else ""
    return constraint_name.lower() in message


# --------------------------------------------------------------------------- #
# Base types
# --------------------------------------------------------------------------- #


class DataAccessError(Exception):
    """
    Base class for all errors surfaced by the data-access layer.

    Notes
    -----
    - Store failures are translated to a subclass; the driver exception is kept
      as ``__cause__``.
    - Misuse of a data context (operating after commit/rollback) is reported
      through :class:`TransactionClosedError`.
    """

    pass


# --------------------------------------------------------------------------- #
# Store failures
# --------------------------------------------------------------------------- #


class ConnectionFailure(DataAccessError):
    """Raised when the store is unreachable or the connection was lost."""

    def __init__(self, message: str = "Connection to the store failed") -> None:
        super().__init__(message)


@dataclass(slots=True)
class ConstraintViolation(DataAccessError):
    """
    Raised when a flush or commit breaks a database constraint.

    :param detail: Driver message describing the violation.
    :type detail: str
    :param constraint: Constraint name when the driver reports one.
    :type constraint: str | None
    """

    detail: str
    constraint: str | None = None

    def __str__(self) -> str:  # pragma: no cover
        if self.constraint:
            return f"Constraint {self.constraint} violated: {self.detail}"
        return f"Constraint violated: {self.detail}"


class ConcurrencyConflict(DataAccessError):
    """Raised on isolation conflicts: deadlocks, serialization failures, stale rows."""

    def __init__(self, message: str = "Concurrent modification conflict") -> None:
        super().__init__(message)


# --------------------------------------------------------------------------- #
# Usage errors
# --------------------------------------------------------------------------- #


@dataclass(slots=True)
class TransactionClosedError(DataAccessError):
    """
    Raised when a data context is used after its transaction was finalized.

    :param state: Name of the state the context is in (e.g. ``"committed"``).
    :type state: str
    :param operation: Operation that was attempted.
    :type operation: str
    """

    state: str
    operation: str

    def __str__(self) -> str:  # pragma: no cover
        return f"Cannot {self.operation}: data context is {self.state}"


@dataclass(slots=True)
class EntityNotPersistedError(DataAccessError):
    """
    Raised when an entity without an ``id`` is passed where a stored row is required.

    :param entity: Mapped class name.
    :type entity: str
    """

    entity: str

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.entity} has no id; insert it before updating"


@dataclass(slots=True)
class TenantMismatchError(DataAccessError):
    """
    Raised when a tenant-scoped context is asked to mutate another tenant's entity.

    :param entity: Mapped class name.
    :type entity: str
    :param tenant_id: Tenant carried by the entity.
    :type tenant_id: int
    :param expected: Tenant of the data context.
    :type expected: int
    """

    entity: str
    tenant_id: int
    expected: int

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.entity} belongs to tenant {self.tenant_id}, context is tenant {self.expected}"


# --------------------------------------------------------------------------- #
# Translation
# --------------------------------------------------------------------------- #


def _constraint_name(exc: IntegrityError) -> str | None:
    diag = getattr(exc.orig, "diag", None)
    return getattr(diag, "constraint_name", None)


def _is_conflict(exc: DBAPIError) -> bool:
    code = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
    if code in _CONFLICT_SQLSTATES:
        return True
    message = str(exc.orig).lower() if exc.orig else ""
    return any(marker in message for marker in _CONFLICT_MARKERS)


def translate_exception(exc: Exception) -> Exception:
    """
    Map SQLAlchemy/DBAPI errors to data-access errors.

    :param exc: Exception raised while talking to the store.
    :type exc: Exception
    :returns: Translated exception ready to be raised ``from exc``, or ``exc``
              itself when it has no data-access meaning.
    :rtype: Exception
    """
    if isinstance(exc, DataAccessError):
        return exc

    if isinstance(exc, IntegrityError):
        return ConstraintViolation(
            detail=str(exc.orig) if exc.orig else str(exc),
            constraint=_constraint_name(exc),
        )

    if isinstance(exc, StaleDataError):
        return ConcurrencyConflict(str(exc))

    if isinstance(exc, DBAPIError) and _is_conflict(exc):
        return ConcurrencyConflict(str(exc.orig))

    if isinstance(exc, DisconnectionError):
        return ConnectionFailure(str(exc))

    if isinstance(exc, (OperationalError, InterfaceError)):
        return ConnectionFailure(str(exc.orig) if exc.orig else str(exc))

    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return ConnectionFailure(str(exc))

    # Fallback: return untouched
    return exc


__all__ = [
    "DataAccessError",
    "ConnectionFailure",
    "ConstraintViolation",
    "ConcurrencyConflict",
    "TransactionClosedError",
    "EntityNotPersistedError",
    "TenantMismatchError",
    "translate_exception",
    "violates",
]
