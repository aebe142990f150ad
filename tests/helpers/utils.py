"""Tiny helpers shared across test modules."""

from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy import Engine, func, select

from dalcore.core.database import create_session_factory


@contextmanager
def not_raises(exception: type[BaseException]):
    """Context manager asserting that an exception is *not* raised.

    Parameters
    ----------
    exception: type[BaseException]
        Exception type that should not be raised within the context.

    Yields
    ------
    None
        Control enters the managed block when the exception is absent.
    """
    try:
        yield
    except exception as exc:  # pragma: no cover
        raise AssertionError(f"Did raise {exception}: {exc}") from exc


def count_rows(engine: Engine, model: type) -> int:
    """Count committed rows of ``model`` through a throwaway session.

    Bypasses repositories, so tenant and soft-delete filters do not apply.
    """
    with create_session_factory(engine)() as sess:
        return sess.execute(select(func.count()).select_from(model)).scalar_one()


def stored_row(engine: Engine, model: type, entity_id: int):
    """Return the committed row of ``model`` with ``entity_id`` as a mapping, or ``None``."""
    table = model.__table__  # type: ignore[attr-defined]
    with create_session_factory(engine)() as sess:
        return sess.execute(select(table).where(table.c.id == entity_id)).mappings().one_or_none()
