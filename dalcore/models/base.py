"""Entity capability mixins shared by mapped models (typed 2.0).

A mapped class opts into optional capabilities by picking one of the mixins
below and combining it with the application's own ``DeclarativeBase``::

    class Invoice(TenantScopedMixin, Base):
        __tablename__ = "invoices"
        number: Mapped[str] = mapped_column(String(32))

The capability is carried as a class-level :class:`Capability` tag so
repositories resolve it once, at construction, instead of inspecting every
row's type.
"""

from __future__ import annotations

import enum
from typing import Any

from sqlalchemy import Boolean, Integer, event, false
from sqlalchemy.orm import Mapped, mapped_column


class Capability(enum.Enum):
    """Closed set of entity archetypes understood by repositories."""

    PLAIN = "plain"
    SOFT_DELETABLE = "soft_deletable"
    TENANT_SCOPED = "tenant_scoped"

    @property
    def soft_deletable(self) -> bool:
        # Tenant-scoped entities are always soft-deletable as well.
        return self in (Capability.SOFT_DELETABLE, Capability.TENANT_SCOPED)

    @property
    def tenant_scoped(self) -> bool:
        return self is Capability.TENANT_SCOPED


class EntityMixin:
    """Expose an integer surrogate primary key column named ``id``.

    Attributes
    ----------
    id:
        Auto-incrementing integer primary key assigned by the database on
        insert; ``None`` until the entity is flushed.
    """

    __capability__ = Capability.PLAIN

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    def __repr__(self) -> str:
        """Return a short and useful string representation.

        :returns: Debug-friendly ``<ClassName id=...>``.
        :rtype: str
        """
        cls = self.__class__.__name__
        key = getattr(self, "id", None)
        return f"<{cls} id={key}>"


class SoftDeletableMixin(EntityMixin):
    """Add the ``is_deleted`` flag hiding rows from default repository reads.

    Attributes
    ----------
    is_deleted:
        ``False`` on construction. While ``True`` the row is only returned when
        deletion management is explicitly suppressed.
    """

    __capability__ = Capability.SOFT_DELETABLE

    is_deleted: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
    )


class TenantScopedMixin(SoftDeletableMixin):
    """Add the owning ``tenant_id``; implies soft-delete support.

    Attributes
    ----------
    tenant_id:
        Owning tenant. ``0`` means unset; repositories opened under a tenant
        assign their tenant on insert.
    """

    __capability__ = Capability.TENANT_SCOPED

    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0, index=True)


@event.listens_for(SoftDeletableMixin, "init", propagate=True)
def _init_soft_delete_flag(target: Any, args: tuple[Any, ...], kwargs: dict[str, Any]) -> None:
    kwargs.setdefault("is_deleted", False)


@event.listens_for(TenantScopedMixin, "init", propagate=True)
def _init_tenant(target: Any, args: tuple[Any, ...], kwargs: dict[str, Any]) -> None:
    kwargs.setdefault("tenant_id", 0)


def capability_of(model: type[Any]) -> Capability:
    """Return the capability tag of a mapped class.

    :param model: Mapped class deriving from one of the entity mixins.
    :type model: type
    :returns: The class-level :class:`Capability` tag.
    :rtype: Capability
    :raises TypeError: If ``model`` is not an entity (no ``id`` or no tag).
    """
    capability = getattr(model, "__capability__", None)
    if not isinstance(capability, Capability) or not hasattr(model, "id"):
        raise TypeError(f"{model!r} does not derive from EntityMixin")
    return capability
