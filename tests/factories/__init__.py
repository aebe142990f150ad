"""Factory Boy helpers wired to the seeding SQLAlchemy session."""

from __future__ import annotations

import factory

from tests.helpers.models import Invoice, Note, Widget


class SQLAlchemySession:
    """Store the session provided by the pytest fixture layer."""

    _session = None

    @classmethod
    def set(cls, session):
        """Register the SQLAlchemy session used to persist factory objects."""
        cls._session = session

    @classmethod
    def get(cls):
        """Return the registered SQLAlchemy session.

        Raises
        ------
        RuntimeError
            If factories are used without the ``seed_session`` fixture wiring.
        """
        if cls._session is None:
            raise RuntimeError("Factories session not set. Did you pass the 'seed_session' fixture?")
        return cls._session


class BaseFactory(factory.alchemy.SQLAlchemyModelFactory):
    """Base class configuring Factory Boy for the seeding session.

    ``create()`` commits, so seeded rows are visible to every data context
    opened afterwards. ``build()`` returns transient instances to stage
    through repositories.
    """

    class Meta:
        abstract = True
        sqlalchemy_session_factory = SQLAlchemySession.get
        sqlalchemy_session_persistence = "commit"


class WidgetFactory(BaseFactory):
    class Meta:
        model = Widget

    id = None  # let autoincrement handle it
    name = factory.Faker("word")
    sku = factory.Sequence(lambda n: f"SKU-{n:05d}")


class NoteFactory(BaseFactory):
    class Meta:
        model = Note

    id = None
    title = factory.Faker("sentence", nb_words=4)


class InvoiceFactory(BaseFactory):
    """Build :class:`Invoice` rows.

    Notes
    -----
    ``tenant_id`` is left unset so the owning context assigns it on insert;
    pass it explicitly to seed rows of another tenant.
    """

    class Meta:
        model = Invoice

    id = None
    number = factory.Sequence(lambda n: f"F-{n:06d}")
    amount = factory.Faker("pyint", min_value=1, max_value=10_000)
