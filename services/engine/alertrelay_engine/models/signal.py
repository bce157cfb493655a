"""Signal models for inbound trading events."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Direction(str, Enum):
    """Trade direction."""

    LONG = "long"
    SHORT = "short"


class SignalKind(str, Enum):
    """Accepted inbound signal kinds."""

    ENTRY_LONG = "entry-long"
    ENTRY_SHORT = "entry-short"
    TAKE_PROFIT_HIT = "take-profit-hit"
    STOP_LOSS_HIT = "stop-loss-hit"

    @property
    def is_entry(self) -> bool:
        return self in (SignalKind.ENTRY_LONG, SignalKind.ENTRY_SHORT)

    @property
    def entry_direction(self) -> Direction | None:
        """Direction opened by an entry signal, None for exits."""
        if self is SignalKind.ENTRY_LONG:
            return Direction.LONG
        if self is SignalKind.ENTRY_SHORT:
            return Direction.SHORT
        return None

    @property
    def exit_reason(self) -> str | None:
        """Exit reason recorded on a trade closed by this signal."""
        if self is SignalKind.TAKE_PROFIT_HIT:
            return "take_profit"
        if self is SignalKind.STOP_LOSS_HIT:
            return "stop_loss"
        return None


@dataclass(frozen=True)
class Configuration:
    """The (symbol, timeframe, strategy) triple scoping trades and conditions."""

    symbol: str
    timeframe: str
    strategy: str

    def __post_init__(self) -> None:
        if not self.symbol or not self.timeframe or not self.strategy:
            raise ValueError("symbol, timeframe and strategy are all required")

    @property
    def key(self) -> str:
        """Stable string key, e.g. ``BTCUSDT|1h|breakout``."""
        return f"{self.symbol}|{self.timeframe}|{self.strategy}"

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class Signal:
    """One validated inbound event. Never mutated after creation."""

    id: str
    configuration: Configuration
    kind: SignalKind
    price: float
    timestamp: datetime
    idempotency_key: str
    source: str = "tradingview"
    take_profit: float | None = None
    stop_loss: float | None = None
    direction: Direction | None = None  # exit signals only
    trade_number: int | None = None  # exit signals targeting one trade
    duplicate: bool = False
    duplicate_of: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate signal data."""
        if self.price <= 0:
            raise ValueError("Signal price must be positive")
        if self.take_profit is not None and self.take_profit <= 0:
            raise ValueError("Take profit price must be positive")
        if self.stop_loss is not None and self.stop_loss <= 0:
            raise ValueError("Stop loss price must be positive")

    @property
    def symbol(self) -> str:
        return self.configuration.symbol
