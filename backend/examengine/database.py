"""Database engine and helpers.

This module configures the SQLModel/SQLAlchemy engine (a local SQLite file
by default, see `DATABASE_URL`) and provides small helpers used by the
application, the import script and tests.
"""

from sqlmodel import SQLModel, create_engine, Session
from sqlalchemy.engine import Engine

from . import models  # noqa: F401  (registers tables on the metadata)
from .config import settings


def build_engine(url: str) -> Engine:
    """Create an engine for `url`; SQLite connections may cross threads."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=False, connect_args=connect_args)


engine = build_engine(settings.DATABASE_URL)


def create_db_and_tables(target: Engine = None):
    """Create database tables using SQLModel metadata.

    This function is intended for local development and lightweight
    scripts; production deployments should rely on a proper migration
    tool (alembic) instead.
    """
    target = target or engine
    SQLModel.metadata.create_all(target)


def get_session():
    """Yield a database `Session` for FastAPI dependency injection.

    The generator yields a session and ensures it is closed when the
    request scope finishes.
    """
    with Session(engine) as session:
        yield session
