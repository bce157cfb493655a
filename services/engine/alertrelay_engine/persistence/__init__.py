"""Persistence layer."""

from alertrelay_engine.persistence.engine import (
    create_session_factory,
    get_database_url,
    get_engine,
    session_scope,
)
from alertrelay_engine.persistence.repository import RelayRepository, as_utc

__all__ = [
    "RelayRepository",
    "as_utc",
    "create_session_factory",
    "get_database_url",
    "get_engine",
    "session_scope",
]
