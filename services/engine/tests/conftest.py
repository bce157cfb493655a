import json
import os
import sys
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add engine root to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]

if str(PROJECT_ROOT) not in sys.path:  # pragma: no cover
    sys.path.append(str(PROJECT_ROOT))

from alertrelay_engine.models.signal import Configuration  # noqa: E402
from alertrelay_engine.persistence.engine import create_session_factory  # noqa: E402
from alertrelay_engine.persistence.repository import RelayRepository  # noqa: E402

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)  # a Monday


class FakeClock:
    """Settable UTC clock shared by the components under test."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_factory() -> sessionmaker[Session]:
    """In-memory SQLite shared across threads through a single connection."""
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    return create_session_factory(engine, create_tables=True)


@pytest.fixture
def file_session_factory(tmp_path: Path) -> sessionmaker[Session]:
    """File-backed SQLite for tests that use several threads at once."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'relay.db'}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    return create_session_factory(engine, create_tables=True)


@pytest.fixture
def in_memory_db(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Single session on the in-memory database."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def btc() -> Configuration:
    return Configuration(symbol="BTCUSDT", timeframe="1h", strategy="breakout")


@pytest.fixture
def seed(session_factory: sessionmaker[Session]) -> Callable[..., Any]:
    """Run ``fn(repo)`` in its own committed transaction and return its result."""

    def _seed(fn: Callable[[RelayRepository], Any]) -> Any:
        session = session_factory()
        try:
            result = fn(RelayRepository(session))
            session.commit()
            return result
        finally:
            session.close()

    return _seed


@pytest.fixture
def add_condition(seed: Callable[..., Any], btc: Configuration) -> Callable[..., str]:
    """Store a condition (bound to ``btc`` unless ``configuration`` is given) and return its id."""

    def _add(configuration: Configuration | None = None, **values: Any) -> str:
        values.setdefault("name", "test condition")
        values.setdefault("condition_type", "price")

        def _insert(repo: RelayRepository) -> str:
            config_row = repo.get_or_create_configuration(configuration or btc)
            return str(repo.add_condition(configuration_id=config_row.id, **values).id)

        return seed(_insert)

    return _add


def _webhook(**fields: Any) -> str:
    body = {"symbol": "BTCUSDT", "timeframe": "1h", "strategy": "breakout"}
    body.update(fields)
    return json.dumps(body)


@pytest.fixture
def webhook() -> Callable[..., str]:
    """Build a JSON webhook body with BTCUSDT/1h/breakout defaults."""
    return _webhook


@pytest.fixture(autouse=True)
def clean_config_env() -> Generator[None, None, None]:
    """Ensure ALERTRELAY_* env vars do not interfere with tests unless explicitly set."""
    original_env = {}
    keys_to_clear = [
        "ALERTRELAY_CONFIG_PATH",
        "ALERTRELAY_WEBHOOK_SECRET",
        "ALERTRELAY_DEDUP_WINDOW_SECONDS",
        "ALERTRELAY_LEDGER_MAX_OPEN_TRADES",
        "ALERTRELAY_DISPATCH_MAX_ATTEMPTS",
        "ALERTRELAY_DISPATCH_MAX_DELAY_SECONDS",
        "ALERTRELAY_TELEGRAM_BOT_TOKEN",
        "ALERTRELAY_MARKET_DATA_URL",
        "ALERTRELAY_METRICS_PORT",
        "REDIS_URL",
        "SENTRY_DSN",
        "MAX_SWEEPS",
    ]

    for key in keys_to_clear:
        if key in os.environ:
            original_env[key] = os.environ[key]
            os.environ.pop(key, None)

    yield

    for key, value in original_env.items():
        os.environ[key] = value
