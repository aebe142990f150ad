"""Generic tenant-aware repository for SQLAlchemy 2.x.

This module centralizes the persistence concerns shared by all repositories:
- Predicate composition on every read and filtered delete (soft-delete
  visibility, then tenant scope, then the caller filter).
- Tenant auto-assignment on insert.
- Read-only projections that are never attached to the session.
- Stub deletes by primary key without a prior read.
- No commit/rollback: the data context owns the transaction.

Design decisions
----------------
* The entity capability (plain, soft-deletable, tenant-scoped) is resolved
  once in ``__init__`` from the mapped class tag; calls never inspect row types.
* Staging operations (insert/update/delete) never flush; ``save()`` on the
  data context does.
* ``delete_by``/``delete_many_by`` with zero matches are explicit no-ops.
* The blocking and asyncio repositories share every statement builder here so
  both surfaces produce the same SQL.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any, Generic, NoReturn, Protocol, TypeVar, cast

from sqlalchemy import ColumnElement, Row, Select, select, text
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.engine import Result
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, make_transient_to_detached
from sqlalchemy.orm.attributes import flag_modified, set_committed_value

from dalcore.core.errors import EntityNotPersistedError, TenantMismatchError, translate_exception
from dalcore.models.base import Capability, capability_of
from dalcore.repositories.predicates import compose_filter

E = TypeVar("E")  # SQLAlchemy mapped entity type

log = logging.getLogger(__name__)


# ------------------------------ Contract -------------------------------------


class RepositoryContract(Protocol[E]):
    """Blocking repository surface every data context exposes per entity type."""

    def find_one_by(
        self,
        predicate: Any = None,
        *,
        read_only: bool = False,
        prevent_deletion_management: bool = False,
    ) -> E | None: ...

    def find_many_by(
        self,
        predicate: Any = None,
        *,
        read_only: bool = False,
        prevent_deletion_management: bool = False,
    ) -> list[E]: ...

    def insert(self, entities: E | Iterable[E]) -> None: ...
    def update(self, entities: E | Iterable[E]) -> None: ...
    def delete(self, entities: E | Iterable[E]) -> None: ...
    def delete_by_id(self, entity_id: int) -> None: ...
    def delete_by(self, predicate: Any, *, prevent_deletion_management: bool = False) -> None: ...

    def delete_many_by(
        self, predicate: Any, *, prevent_deletion_management: bool = False
    ) -> None: ...


# ------------------------------ Shared core ----------------------------------


class RepositoryCore(Generic[E]):
    """Statement builders and staging helpers shared by both repository surfaces.

    Subclasses MUST define:

    * ``model``: the SQLAlchemy mapped class (or pass ``model=`` to ``__init__``).

    This class NEVER opens, commits or rolls back transactions.
    """

    #: SQLAlchemy mapped model (must be set by subclasses)
    model: type[E]

    def __init__(self, tenant_id: int | None = None, *, model: type[E] | None = None) -> None:
        if model is not None:
            self.model = model
        if getattr(self, "model", None) is None:
            raise TypeError(f"{type(self).__name__} requires a mapped 'model'")
        self._tenant_id = tenant_id
        self._capability = capability_of(self.model)
        mapper = self._mapper = sa_inspect(self.model)
        self._column_keys: tuple[str, ...] = tuple(attr.key for attr in mapper.column_attrs)
        self._pk_keys = frozenset(mapper.get_property_by_column(c).key for c in mapper.primary_key)

    # ------------------------------ Introspection ----------------------------

    @property
    def tenant_id(self) -> int | None:
        """Tenant identity of the owning context; ``None`` means unscoped."""
        return self._tenant_id

    @property
    def capability(self) -> Capability:
        return self._capability

    # ------------------------------ Statements -------------------------------

    def _where(self, predicate: Any, *, prevent_deletion_management: bool) -> ColumnElement[bool]:
        return compose_filter(
            self.model,
            self._capability,
            predicate,
            tenant_id=self._tenant_id,
            deletion_management=not prevent_deletion_management,
        )

    def _select(
        self,
        predicate: Any,
        *,
        read_only: bool,
        prevent_deletion_management: bool,
    ) -> Select[Any]:
        """Build the ``SELECT`` for a find call.

        Read-only selects fetch plain columns so no instance enters the
        session's identity map.
        """
        where = self._where(predicate, prevent_deletion_management=prevent_deletion_management)
        if read_only:
            columns = [getattr(self.model, key) for key in self._column_keys]
            return select(*columns).where(where)
        return select(self.model).where(where)

    def _project(self, row: Row[Any]) -> E:
        """Materialize a column row into a transient, untracked instance."""
        instance = cast(E, sa_inspect(self.model).class_manager.new_instance())
        for key, value in zip(self._column_keys, row, strict=True):
            set_committed_value(instance, key, value)
        return instance

    def _one(self, result: Result[Any], *, read_only: bool) -> E | None:
        if read_only:
            row = result.first()
            return None if row is None else self._project(row)
        return cast(E | None, result.scalars().first())

    def _many(self, result: Result[Any], *, read_only: bool) -> list[E]:
        if read_only:
            return [self._project(row) for row in result.all()]
        return cast(list[E], list(result.scalars().all()))

    # ------------------------------ Staging ----------------------------------

    def _as_list(self, entities: E | Iterable[E]) -> list[E]:
        if isinstance(entities, self.model):
            return [cast(E, entities)]
        return list(cast(Iterable[E], entities))

    def _assign_tenant(self, entity: E) -> None:
        """Stamp the context tenant on a tenant-scoped entity with no tenant yet."""
        if self._tenant_id is None or not self._capability.tenant_scoped:
            return
        if not getattr(entity, "tenant_id", None):
            entity.tenant_id = self._tenant_id  # type: ignore[attr-defined]

    def _check_tenant(self, entity: E) -> None:
        """Refuse to mutate a tenant-scoped entity owned by another tenant.

        :raises TenantMismatchError: If the entity carries a different non-zero tenant.
        """
        if self._tenant_id is None or not self._capability.tenant_scoped:
            return
        owner = getattr(entity, "tenant_id", None)
        if owner and owner != self._tenant_id:
            raise TenantMismatchError(
                entity=type(entity).__name__, tenant_id=owner, expected=self._tenant_id
            )

    def _needs_owner_check(self, session: Session, entity: E) -> bool:
        """Whether ``entity`` must be matched against its stored row's tenant.

        Instances the session does not track (read-only projections, detached
        or hand-built instances carrying an ``id``) have an in-memory tenant
        that proves nothing about the stored row they would overwrite.
        """
        if self._tenant_id is None or not self._capability.tenant_scoped:
            return False
        if entity in session:
            return False
        return getattr(entity, "id", None) is not None

    def _owner_select(self, entity: E) -> Select[Any]:
        """Select the stored tenant of ``entity``'s row, bypassing every filter."""
        model = cast(Any, self.model)
        return select(model.tenant_id).where(model.id == entity.id)  # type: ignore[attr-defined]

    def _confirm_owner(self, entity: E, owner: int | None) -> bool:
        """Check the stored ``owner`` of ``entity`` against the context tenant.

        :returns: ``False`` when no row carries the entity ``id``.
        :raises TenantMismatchError: If the stored row belongs to another tenant.
        """
        if owner is None:
            return False
        if owner != self._tenant_id:
            raise TenantMismatchError(
                entity=type(entity).__name__, tenant_id=owner, expected=cast(int, self._tenant_id)
            )
        self._assign_tenant(entity)
        return True

    def _tracked(self, session: Session, entity: E) -> E:
        """Return the instance ``session`` tracks for ``entity``, attaching it if needed.

        Transient instances carrying an ``id`` (read-only projections, stubs)
        are turned into detached ones first. When the session already holds a
        different instance with the same identity, that instance is returned.

        :raises EntityNotPersistedError: If a transient entity has no ``id``.
        """
        state = sa_inspect(entity)
        if state.pending or state.persistent:
            return entity
        if state.transient:
            if not getattr(entity, "id", None):
                raise EntityNotPersistedError(entity=type(entity).__name__)
            make_transient_to_detached(entity)
        held = session.identity_map.get(state.key)
        if held is not None and held is not entity:
            return cast(E, held)
        session.add(entity)
        return entity

    def _stage_update(self, session: Session, entity: E) -> E:
        """Attach ``entity`` and mark every loaded column as modified."""
        self._check_tenant(entity)
        self._assign_tenant(entity)
        target = self._tracked(session, entity)
        state = sa_inspect(entity)
        if target is not entity:
            # copy the caller's values onto the instance the session tracks
            for key in self._column_keys:
                if key in state.dict and key not in self._pk_keys:
                    setattr(target, key, state.dict[key])
        target_state = sa_inspect(target)
        if target_state.pending:
            return target
        for key in self._column_keys:
            if key in target_state.dict and key not in self._pk_keys:
                flag_modified(target, key)
        return target

    def _stub(self, entity_id: int) -> E:
        """Build a detached instance carrying only its primary key."""
        stub = cast(E, sa_inspect(self.model).class_manager.new_instance())
        set_committed_value(stub, "id", entity_id)
        make_transient_to_detached(stub)
        return stub

    def _held(self, session: Session, entity_id: int) -> E | None:
        """Return the instance with ``entity_id`` from the session's local state, if any."""
        key = self._mapper.identity_key_from_primary_key((entity_id,))
        return cast(E | None, session.identity_map.get(key))

    def _stub_delete_allowed(self) -> bool:
        # Stub deletes cannot carry the tenant predicate; scoped contexts read first.
        return self._tenant_id is None or not self._capability.tenant_scoped

    @staticmethod
    def _reraise(exc: SQLAlchemyError) -> NoReturn:
        """Raise the data-access translation of ``exc``, chained to it."""
        translated = translate_exception(exc)
        if translated is exc:
            raise exc
        raise translated from exc


# ------------------------------ Blocking repository --------------------------


class BaseRepository(RepositoryCore[E]):
    """Generic, persistence-only repository for a single entity type.

    Subclasses MUST define:

    * ``model``: the SQLAlchemy mapped class.

    Repositories hold only the session and the tenant identity of the data
    context that created them. Services orchestrate use cases and own
    transaction boundaries through the context.
    """

    def __init__(
        self,
        session: Session,
        tenant_id: int | None = None,
        *,
        model: type[E] | None = None,
    ) -> None:
        """Initialise the repository with the context session.

        :param session: Session shared across the data context scope.
        :type session: :class:`sqlalchemy.orm.Session`
        :param tenant_id: Tenant of the context; ``None`` disables scoping.
        :type tenant_id: int | None
        :param model: Mapped class, when not set on the subclass.
        :type model: type | None
        """
        super().__init__(tenant_id, model=model)
        self._session = session

    @property
    def session(self) -> Session:
        """Return the session bound to the owning data context."""
        return self._session

    # ------------------------------ Reads ------------------------------------

    def find_one_by(
        self,
        predicate: Any = None,
        *,
        read_only: bool = False,
        prevent_deletion_management: bool = False,
    ) -> E | None:
        """Return the first entity matching the effective filter.

        :param predicate: Caller filter (expression or ``callable(model)``).
        :param read_only: Return an instance detached from change tracking.
        :type read_only: bool
        :param prevent_deletion_management: Include soft-deleted rows.
        :type prevent_deletion_management: bool
        :returns: Entity or ``None``; zero matches never raises.
        :rtype: E | None
        """
        stmt = self._select(
            predicate,
            read_only=read_only,
            prevent_deletion_management=prevent_deletion_management,
        ).limit(1)
        return self._one(self._execute(stmt), read_only=read_only)

    def find_many_by(
        self,
        predicate: Any = None,
        *,
        read_only: bool = False,
        prevent_deletion_management: bool = False,
    ) -> list[E]:
        """Return every entity matching the effective filter, in store order.

        :param predicate: Caller filter (expression or ``callable(model)``).
        :param read_only: Return instances detached from change tracking.
        :type read_only: bool
        :param prevent_deletion_management: Include soft-deleted rows.
        :type prevent_deletion_management: bool
        :returns: List of entities (possibly empty).
        :rtype: list[E]
        """
        stmt = self._select(
            predicate,
            read_only=read_only,
            prevent_deletion_management=prevent_deletion_management,
        )
        return self._many(self._execute(stmt), read_only=read_only)

    # ------------------------------ Writes -----------------------------------

    def insert(self, entities: E | Iterable[E]) -> None:
        """Stage new entities for creation, assigning the context tenant when unset.

        :param entities: One entity or an iterable of entities.
        """
        items = self._as_list(entities)
        for entity in items:
            self._assign_tenant(entity)
        self.session.add_all(items)

    def update(self, entities: E | Iterable[E]) -> None:
        """Stage entities as modified in full.

        In a tenant-scoped context, untracked instances are first matched
        against the tenant of the stored row they carry the ``id`` of.

        :param entities: Tracked instances, or instances carrying an ``id``.
        :raises EntityNotPersistedError: If an entity has no ``id``.
        :raises TenantMismatchError: If the entity or its stored row belongs to
            another tenant.
        """
        for entity in self._as_list(entities):
            self._check_tenant(entity)
            # a missing row is still staged; the store reports it at save
            self._owned(entity)
            self._stage_update(self.session, entity)

    def delete(self, entities: E | Iterable[E]) -> None:
        """Stage physical removal; soft deletes go through :meth:`update`.

        Entities that were inserted but never saved are simply unstaged.

        :param entities: One entity or an iterable of entities.
        :raises TenantMismatchError: If an entity or its stored row belongs to
            another tenant.
        """
        for entity in self._as_list(entities):
            self._check_tenant(entity)
            if sa_inspect(entity).pending:
                self.session.expunge(entity)
                continue
            if not self._owned(entity):
                log.debug("delete matched no stored row", extra={"entity": self.model.__name__})
                continue
            self.session.delete(self._tracked(self.session, entity))

    def delete_by_id(self, entity_id: int) -> None:
        """Stage removal of the row with ``entity_id`` without reading it first.

        The tracked instance is used when the session holds one; otherwise a
        stub carrying only the key is deleted. In a tenant-scoped context an
        untracked row is located through the tenant filter instead, and a miss
        is a logged no-op.

        :param entity_id: Primary-key value.
        :type entity_id: int
        """
        held = self._held(self.session, entity_id)
        if held is not None:
            self._check_tenant(held)
            self.session.delete(held)
            return
        if not self._stub_delete_allowed():
            self._delete_first(lambda m: m.id == entity_id, prevent_deletion_management=True)
            return
        stub = self._stub(entity_id)
        self.session.add(stub)
        self.session.delete(stub)

    def delete_by(self, predicate: Any, *, prevent_deletion_management: bool = False) -> None:
        """Stage removal of the first entity matching the effective filter.

        :param predicate: Caller filter (expression or ``callable(model)``).
        :param prevent_deletion_management: Also match soft-deleted rows.
        :type prevent_deletion_management: bool
        """
        self._delete_first(predicate, prevent_deletion_management=prevent_deletion_management)

    def delete_many_by(
        self, predicate: Any, *, prevent_deletion_management: bool = False
    ) -> None:
        """Stage removal of every entity matching the effective filter."""
        entities = self.find_many_by(
            predicate, prevent_deletion_management=prevent_deletion_management
        )
        for entity in entities:
            self.session.delete(entity)

    # ------------------------------ Internals --------------------------------

    def _execute(self, statement: Any, params: Any = None) -> Result[Any]:
        try:
            return self.session.execute(statement, params)
        except SQLAlchemyError as exc:
            self._reraise(exc)

    def _owned(self, entity: E) -> bool:
        """Confirm an untracked tenant-scoped ``entity`` is stored under the context tenant."""
        if not self._needs_owner_check(self.session, entity):
            return True
        owner = self._execute(self._owner_select(entity)).scalar_one_or_none()
        return self._confirm_owner(entity, owner)

    def _delete_first(self, predicate: Any, *, prevent_deletion_management: bool) -> None:
        entity = self.find_one_by(
            predicate, prevent_deletion_management=prevent_deletion_management
        )
        if entity is None:
            log.debug("delete_by matched nothing", extra={"entity": self.model.__name__})
            return
        self.session.delete(entity)

    # ------------------------------ Raw SQL ----------------------------------

    def _execute_raw(
        self, statement: str, params: dict[str, Any] | Sequence[dict[str, Any]] | None = None
    ) -> Result[Any]:
        """Execute a raw SQL statement inside the context transaction.

        No tenant or soft-delete filtering applies; callers own the statement.
        """
        return self._execute(text(statement), params or {})


__all__ = ["BaseRepository", "RepositoryContract", "RepositoryCore"]
