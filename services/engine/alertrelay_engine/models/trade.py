"""Trade model and realized P&L math."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from alertrelay_engine.models.signal import Configuration, Direction


class TradeStatus(str, Enum):
    """Trade lifecycle status."""

    OPEN = "open"
    CLOSED = "closed"
    REPLACED = "replaced"


@dataclass(frozen=True)
class Trade:
    """
    Snapshot of one tracked position.

    Trades are owned by the ledger; this is a read-only view of a stored row.
    """

    configuration: Configuration
    trade_number: int
    direction: Direction
    entry_price: float
    status: TradeStatus
    opened_at: datetime
    take_profit: float | None = None
    stop_loss: float | None = None
    exit_price: float | None = None
    exit_reason: str | None = None
    closed_at: datetime | None = None
    pnl_amount: float | None = None
    pnl_percent: float | None = None
    replaced_by: int | None = None
    entry_signal_id: str | None = None
    exit_signal_id: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status is TradeStatus.OPEN


def compute_pnl(direction: Direction, entry_price: float, exit_price: float) -> tuple[float, float]:
    """
    Realized P&L for one unit of a position.

    Long: exit - entry. Short: entry - exit. Percent is relative to the entry
    price and rounded to 2 decimals.

    Args:
        direction: Trade direction
        entry_price: Entry price (must be positive)
        exit_price: Exit price

    Returns:
        Tuple of (amount, percent)
    """
    if entry_price <= 0:
        raise ValueError("Entry price must be positive")
    if direction is Direction.LONG:
        amount = exit_price - entry_price
    else:
        amount = entry_price - exit_price
    percent = amount / entry_price * 100.0
    return round(amount, 8), round(percent, 2)
