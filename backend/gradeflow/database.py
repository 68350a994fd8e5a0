"""Database engine and session helpers.

The engine is built from `settings.DATABASE_URL`, a SQLite file next to
the package by default. SQLite connections are shared across the request
threads and the background grading threads, hence `check_same_thread`.
"""

from sqlmodel import SQLModel, create_engine, Session

from .config import settings

DB_URL = settings.DATABASE_URL
_connect_args = {"check_same_thread": False} if DB_URL.startswith("sqlite") else {}
engine = create_engine(DB_URL, echo=False, connect_args=_connect_args)


def create_db_and_tables():
    """Create any missing tables, including the approved-definition index.

    Existing tables are left as they are; schema changes to a live
    database need a migration tool such as alembic.
    """
    from . import models  # noqa: F401  registers the tables

    SQLModel.metadata.create_all(engine)


def get_session():
    """FastAPI dependency: one `Session` per request, closed afterwards."""
    with Session(engine) as session:
        yield session
