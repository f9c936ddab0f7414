"""Database helpers for Huddle."""

from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import scoped_session, sessionmaker

from .config import settings


def use_immediate_transactions(target: Engine) -> None:
    """Make every SQLite transaction take the write lock when it begins.

    pysqlite defers ``BEGIN`` until the first write, so two requests could
    both read the same RSVP count before either inserts. Emitting
    ``BEGIN IMMEDIATE`` serializes them; ``FOR UPDATE`` is a no-op on SQLite.
    """

    @event.listens_for(target, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(target, "begin")
    def _begin_immediate(connection):
        if connection.get_execution_options().get("isolation_level") == "AUTOCOMMIT":
            return
        connection.exec_driver_sql("BEGIN IMMEDIATE")


DATABASE_URL = settings.resolved_database_url
_connect_args = (
    {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
)
engine = create_engine(DATABASE_URL, connect_args=_connect_args, future=True)
if engine.dialect.name == "sqlite":
    use_immediate_transactions(engine)
SessionLocal = scoped_session(
    sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )
)


@contextmanager
def get_session():
    """Context manager returning a SQLAlchemy session."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
