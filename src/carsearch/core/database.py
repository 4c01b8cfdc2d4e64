"""SQLAlchemy engine and session factory for the governance tables.

Provides:
- Base: Declarative base for all tables (deals, approvals, audit log, ...)
- create_db_engine(): Engine for a database URL (SQLite gets a shared
  in-memory pool so tests can use ``sqlite://``)
- make_session_factory(): Bound sessionmaker handed to repositories
- init_db(): Create all tables if they don't exist

Governance runs synchronously from batch orchestration, so the engine is a
plain (non-async) one.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    """Base class for all persistence models."""


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Create a synchronous engine for ``database_url``.

    SQLite file databases get their parent directory created. In-memory
    SQLite uses a StaticPool so every session sees the same database.
    """
    url = make_url(database_url)
    kwargs: dict[str, Any] = {"echo": echo}

    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        else:
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, **kwargs)

    if url.get_backend_name() == "sqlite":
        # Enforce foreign keys; SQLite leaves them off per connection
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_conn: Any, connection_record: Any) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a sessionmaker bound to ``engine``."""
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables if they don't exist."""
    # Import models so they register on Base.metadata
    import src.carsearch.deals.models  # noqa: F401

    Base.metadata.create_all(engine)
