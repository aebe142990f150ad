"""
Unit tests for DataContext (blocking unit of work), using factories.
"""

from __future__ import annotations

import logging

import pytest
from sqlalchemy import create_engine
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from dalcore.core.config import TestingConfig
from dalcore.core.errors import ConnectionFailure, ConstraintViolation, TransactionClosedError
from dalcore.uow import ContextState, DataContext, IsolationLevel, normalize_isolation_level
from tests.factories import InvoiceFactory, WidgetFactory
from tests.helpers.models import Invoice, ModelBase, Widget
from tests.helpers.repositories import InvoiceRepository, WidgetRepository
from tests.helpers.utils import count_rows

TENANT_ID = 454


class ShopContext(DataContext):
    """Context exposing repositories as attributes, the way applications do."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.invoices = self.repository(InvoiceRepository)
        self.widgets = self.repository(WidgetRepository)


class TestDataContextLifecycle:
    def test_new_context_is_open(self, open_context):
        ctx = open_context(TENANT_ID)
        assert ctx.state is ContextState.OPEN
        assert ctx.outcome is None
        assert ctx.tenant_id == TENANT_ID
        assert len(ctx.context_id) == 32

    def test_commit_finalizes(self, open_context):
        ctx = open_context()
        ctx.commit()
        assert ctx.state is ContextState.COMMITTED
        assert ctx.outcome is ContextState.COMMITTED

    @pytest.mark.parametrize("operation", ["save", "commit", "rollback"])
    def test_operations_after_commit_are_rejected(self, open_context, operation):
        ctx = open_context()
        ctx.commit()
        with pytest.raises(TransactionClosedError) as err:
            getattr(ctx, operation)()
        assert err.value.state == "committed"

    def test_rollback_is_idempotent(self, open_context):
        ctx = open_context()
        ctx.rollback()
        ctx.rollback()
        assert ctx.state is ContextState.ROLLED_BACK

    @pytest.mark.parametrize("operation", ["save", "commit"])
    def test_operations_after_rollback_are_rejected(self, open_context, operation):
        ctx = open_context()
        ctx.rollback()
        with pytest.raises(TransactionClosedError):
            getattr(ctx, operation)()

    def test_repository_reads_after_commit_are_rejected(self, open_context):
        """
        GIVEN a committed context
        WHEN one of its repositories reads
        THEN the read is refused instead of starting a new transaction.
        """
        ctx = open_context()
        repo = ctx.repository(WidgetRepository)
        ctx.commit()
        with pytest.raises(TransactionClosedError):
            repo.find_many_by()

    def test_staging_after_rollback_is_rejected(self, open_context):
        ctx = open_context()
        repo = ctx.repository(WidgetRepository)
        ctx.rollback()
        with pytest.raises(TransactionClosedError):
            repo.insert(Widget(name="late"))

    def test_close_is_idempotent(self, open_context):
        ctx = open_context()
        ctx.commit()
        ctx.close()
        ctx.close()
        assert ctx.state is ContextState.DISPOSED
        assert ctx.outcome is ContextState.COMMITTED

    def test_close_while_open_discards_work(self, open_context, engine):
        ctx = open_context()
        ctx.repository(WidgetRepository).insert(Widget(name="lost"))
        ctx.save()
        ctx.close()

        assert ctx.outcome is ContextState.ROLLED_BACK
        assert count_rows(engine, Widget) == 0
        with pytest.raises(TransactionClosedError):
            ctx.save()


class TestDataContextManager:
    def test_commit_inside_block_persists(self, session_factory, engine):
        """
        GIVEN a context used as a context manager
        WHEN work is saved and committed inside the block
        THEN the row is visible afterwards and the context is disposed.
        """
        with ShopContext(session_factory, TENANT_ID, config=TestingConfig) as ctx:
            ctx.invoices.insert(InvoiceFactory.build())
            ctx.save()
            ctx.commit()

        assert ctx.state is ContextState.DISPOSED
        assert count_rows(engine, Invoice) == 1

    def test_leaving_without_commit_discards(self, session_factory, engine):
        with ShopContext(session_factory, TENANT_ID, config=TestingConfig) as ctx:
            ctx.invoices.insert(InvoiceFactory.build())
            ctx.save()

        assert ctx.outcome is ContextState.ROLLED_BACK
        assert count_rows(engine, Invoice) == 0

    def test_exception_rolls_back(self, session_factory, engine):
        with pytest.raises(RuntimeError), ShopContext(
            session_factory, TENANT_ID, config=TestingConfig
        ) as ctx:
            ctx.invoices.insert(InvoiceFactory.build())
            ctx.save()
            raise RuntimeError("boom")

        assert ctx.outcome is ContextState.ROLLED_BACK
        assert count_rows(engine, Invoice) == 0

    def test_engine_can_be_passed_directly(self, engine):
        with DataContext(engine, config=TestingConfig) as ctx:
            ctx.repository_for(Widget).insert(Widget(name="direct"))
            ctx.save()
            ctx.commit()

        assert count_rows(engine, Widget) == 1


class TestDataContextFailures:
    def test_constraint_violation_is_translated_and_rolls_back(self, open_context, engine):
        """
        GIVEN two widgets sharing a unique sku
        WHEN the context saves
        THEN a ConstraintViolation is raised, chained to the driver error,
        and the context is rolled back.
        """
        WidgetFactory.create(sku="SKU-DUP")
        ctx = open_context()
        ctx.repository(WidgetRepository).insert(Widget(name="copy", sku="SKU-DUP"))

        with pytest.raises(ConstraintViolation) as err:
            ctx.save()

        assert isinstance(err.value.__cause__, IntegrityError)
        assert ctx.state is ContextState.ROLLED_BACK
        assert count_rows(engine, Widget) == 1

    def test_failed_commit_rolls_back(self, open_context, engine):
        WidgetFactory.create(sku="SKU-DUP")
        ctx = open_context()
        ctx.repository(WidgetRepository).insert(
            [Widget(name="ok", sku="SKU-NEW"), Widget(name="copy", sku="SKU-DUP")]
        )

        with pytest.raises(ConstraintViolation):
            ctx.commit()

        assert ctx.outcome is ContextState.ROLLED_BACK
        assert count_rows(engine, Widget) == 1

    def test_close_failure_after_commit_keeps_outcome(self, open_context, engine, monkeypatch, caplog):
        """
        GIVEN a committed context whose session fails to close
        WHEN the context is closed
        THEN the failure is logged, the context is disposed as committed
        and the committed row stays.
        """
        ctx = open_context()
        ctx.repository(WidgetRepository).insert(Widget(name="kept"))
        ctx.save()
        ctx.commit()

        def failing_close():
            raise SQLAlchemyError("connection already gone")

        monkeypatch.setattr(ctx.session, "close", failing_close)
        with caplog.at_level(logging.ERROR, logger="dalcore.uow.sqlalchemy_uow"):
            ctx.close()

        assert ctx.outcome is ContextState.COMMITTED
        assert ctx.state is ContextState.DISPOSED
        assert any(r.levelno == logging.ERROR for r in caplog.records)
        monkeypatch.undo()
        ctx.session.close()
        assert count_rows(engine, Widget) == 1

    def test_repository_read_failure_is_translated(self, tmp_path):
        """A read against a missing table surfaces as a data-access error."""
        engine = create_engine(f"sqlite:///{tmp_path / 'bare.db'}")
        try:
            with DataContext(
                engine, metadata=ModelBase.metadata, ensure_schema=False, config=TestingConfig
            ) as ctx:
                with pytest.raises(ConnectionFailure) as err:
                    ctx.repository(WidgetRepository).find_many_by()
            assert isinstance(err.value.__cause__, SQLAlchemyError)
        finally:
            engine.dispose()

    def test_raw_statement_failure_is_translated(self, open_context):
        repo = open_context().repository(WidgetRepository)
        with pytest.raises(ConnectionFailure):
            repo._execute_raw("SELECT * FROM nowhere")


class TestIsolationLevel:
    def test_supported_level_is_kept(self, open_context):
        ctx = open_context(isolation_level=IsolationLevel.SERIALIZABLE)
        assert ctx.isolation_level == "SERIALIZABLE"

    def test_level_rejected_by_dialect_falls_back(self, open_context, caplog):
        """SQLite has no READ COMMITTED; the engine default is used instead."""
        with caplog.at_level(logging.WARNING, logger="dalcore.uow.sqlalchemy_uow"):
            ctx = open_context(isolation_level="read_committed")

        assert ctx.isolation_level is None
        assert ctx.state is ContextState.OPEN
        assert "READ COMMITTED" in caplog.text

    def test_level_from_config(self, session_factory):
        class SerializableConfig(TestingConfig):
            ISOLATION_LEVEL = "SERIALIZABLE"

        with DataContext(session_factory, config=SerializableConfig) as ctx:
            assert ctx.isolation_level == "SERIALIZABLE"

    def test_autocommit_is_refused(self, session_factory):
        with pytest.raises(ValueError):
            DataContext(session_factory, isolation_level="AUTOCOMMIT", config=TestingConfig)

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            (None, None),
            ("", None),
            ("repeatable_read", "REPEATABLE READ"),
            (IsolationLevel.READ_UNCOMMITTED, "READ UNCOMMITTED"),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_isolation_level(raw) == expected


class TestEnsureSchema:
    def test_tables_created_on_open(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'fresh.db'}")
        try:
            with DataContext(
                engine, metadata=ModelBase.metadata, ensure_schema=True, config=TestingConfig
            ):
                pass
            assert sa_inspect(engine).has_table("invoices")
        finally:
            engine.dispose()

    def test_disabled_ensure_schema_leaves_database_alone(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'bare.db'}")
        try:
            with DataContext(
                engine, metadata=ModelBase.metadata, ensure_schema=False, config=TestingConfig
            ):
                pass
            assert not sa_inspect(engine).has_table("invoices")
        finally:
            engine.dispose()
