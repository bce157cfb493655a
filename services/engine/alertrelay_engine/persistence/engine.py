"""Database engine and session factory helpers."""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from functools import lru_cache

import sqlalchemy as sa
from sqlalchemy.orm import Session, sessionmaker

from alertrelay_engine.persistence.models import Base


def get_database_url() -> str:
    """Return the database URL from the environment (SQLite file when unset)."""
    return os.environ.get("DATABASE_URL", "sqlite:///alertrelay.db")


@lru_cache(maxsize=1)
def get_engine() -> sa.Engine:
    """Create and cache a SQLAlchemy engine for the configured URL."""
    url = get_database_url()
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return sa.create_engine(url, future=True, connect_args=connect_args)


def create_session_factory(engine: sa.Engine, create_tables: bool = False) -> sessionmaker[Session]:
    """Return a session factory bound to ``engine``, optionally creating tables."""
    if create_tables:
        Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    """Run a block in one transaction: commit on success, roll back on error."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
