"""Predicate composition for tenant scoping and soft-delete visibility.

Every repository read and filtered delete goes through :func:`compose_filter`,
which ANDs three parts in a fixed order:

1. deletion visibility (hide ``is_deleted`` rows of soft-deletable entities),
2. tenant scope (restrict tenant-scoped entities to the context tenant),
3. the caller's filter.

Parts that do not apply collapse to the identity and are left out of the SQL.
The result is a SQL boolean expression evaluated by the store, so logical AND
semantics hold regardless of the order the engine evaluates terms in.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeAlias, TypeVar

from sqlalchemy import ColumnElement, and_, true

from dalcore.models.base import Capability

E = TypeVar("E")

#: A caller filter: ``None`` (match all), a SQL boolean expression, or a
#: callable receiving the mapped class and returning one.
Filter: TypeAlias = "ColumnElement[bool] | Callable[[type[Any]], ColumnElement[bool]] | None"


def resolve_filter(model: type[E], predicate: Any) -> ColumnElement[bool] | None:
    """Turn a caller filter into a SQL expression bound to ``model``.

    :param model: Mapped class the filter applies to.
    :type model: type
    :param predicate: ``None``, a boolean expression, or ``callable(model)``.
    :returns: Boolean expression, or ``None`` when the caller filters nothing.
    :raises TypeError: If the callable returns ``None``.
    """
    if predicate is None:
        return None
    if callable(predicate) and not isinstance(predicate, ColumnElement):
        clause = predicate(model)
        if clause is None:
            raise TypeError("filter callable returned None; expected a SQL expression")
        return clause
    return predicate


def deletion_clause(
    model: type[E], capability: Capability, *, deletion_management: bool
) -> ColumnElement[bool] | None:
    if not deletion_management or not capability.soft_deletable:
        return None
    # IS NOT true keeps rows whose flag is NULL visible
    return model.is_deleted.is_not(True)  # type: ignore[attr-defined]


def tenant_clause(
    model: type[E], capability: Capability, *, tenant_id: int | None
) -> ColumnElement[bool] | None:
    if tenant_id is None or not capability.tenant_scoped:
        return None
    return model.tenant_id == tenant_id  # type: ignore[attr-defined]


def compose_filter(
    model: type[E],
    capability: Capability,
    predicate: Any = None,
    *,
    tenant_id: int | None,
    deletion_management: bool = True,
) -> ColumnElement[bool]:
    """Build the effective filter for a repository call.

    :param model: Mapped class being queried.
    :type model: type
    :param capability: Capability tag resolved for ``model``.
    :type capability: Capability
    :param predicate: Caller filter (see :data:`Filter`).
    :param tenant_id: Context tenant; ``None`` disables tenant scoping.
    :type tenant_id: int | None
    :param deletion_management: Hide soft-deleted rows when ``True``.
    :type deletion_management: bool
    :returns: A single boolean expression; ``true()`` when nothing applies.
    :rtype: :class:`sqlalchemy.ColumnElement`
    """
    parts = [
        deletion_clause(model, capability, deletion_management=deletion_management),
        tenant_clause(model, capability, tenant_id=tenant_id),
        resolve_filter(model, predicate),
    ]
    clauses = [p for p in parts if p is not None]
    if not clauses:
        return true()
    if len(clauses) == 1:
        return clauses[0]
    return and_(*clauses)


__all__ = [
    "Filter",
    "compose_filter",
    "deletion_clause",
    "resolve_filter",
    "tenant_clause",
]
