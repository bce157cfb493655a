"""Trade ledger: sequential numbering, replacement, capacity and realized P&L.

Each signal is applied in a single database transaction. The configuration
row carries an optimistic version that every mutation bumps with a
compare-and-set, and trades are only updated while still ``open``, so two
workers racing on the same configuration can never both win. Inside one
process a per-configuration lock serializes workers up front.
"""

import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from alertrelay_engine.config.models import LedgerConfig
from alertrelay_engine.errors import (
    AlertRelayError,
    CapacityExceeded,
    ConcurrentModification,
    DuplicateSignal,
    OrphanExit,
    PersistenceError,
)
from alertrelay_engine.ledger.state import (
    ConfigurationState,
    derive_state,
    state_after_entry,
    state_after_exit,
)
from alertrelay_engine.models.delivery import DeliveryPriority
from alertrelay_engine.models.events import EventType, TriggerEvent
from alertrelay_engine.models.signal import Configuration, Direction, Signal
from alertrelay_engine.models.trade import Trade, TradeStatus, compute_pnl
from alertrelay_engine.persistence.engine import session_scope
from alertrelay_engine.persistence.models import Trade as TradeRecord
from alertrelay_engine.persistence.models import TradeConfiguration
from alertrelay_engine.persistence.repository import RelayRepository, as_utc, to_trade

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerOutcome:
    """Result of applying one signal."""

    action: str  # opened | replaced | closed | noop
    state: ConfigurationState
    trade: Trade | None = None
    replaced: Trade | None = None
    events: list[TriggerEvent] = field(default_factory=list)


class TradeLedger:
    """Owns every Trade; the only component that mutates trade rows."""

    def __init__(
        self,
        config: LedgerConfig,
        session_factory: sessionmaker[Session],
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize ledger.

        Args:
            config: Ledger configuration (capacity, retry policy)
            session_factory: SQLAlchemy session factory
            clock: Time source (defaults to UTC wall clock)
            sleep: Sleep function used between persistence retries
        """
        self.config = config
        self.session_factory = session_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, configuration: Configuration) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(configuration.key)
            if lock is None:
                lock = self._locks[configuration.key] = threading.Lock()
            return lock

    def apply(self, signal: Signal) -> LedgerOutcome:
        """
        Apply an entry or exit signal to its configuration.

        Args:
            signal: Validated, stored signal

        Returns:
            LedgerOutcome describing the mutation (``noop`` on replay)

        Raises:
            DuplicateSignal: Signal is a dedup marker, not an original
            CapacityExceeded: Entry rejected, configuration at capacity
            OrphanExit: Exit with no matching open trade
            PersistenceError: Store kept failing after bounded retries
        """
        if signal.duplicate:
            raise DuplicateSignal(signal.idempotency_key, signal.duplicate_of or "")

        attempts = self.config.persistence_retries
        with self._lock_for(signal.configuration):
            for attempt in range(1, attempts + 1):
                try:
                    outcome, rejection = self._apply_once(signal)
                except (ConcurrentModification, SQLAlchemyError) as exc:
                    if attempt >= attempts:
                        logger.error(
                            f"❌ Ledger mutation for {signal.configuration} failed after "
                            f"{attempts} attempts: {exc}"
                        )
                        raise PersistenceError(
                            f"ledger mutation failed for {signal.configuration}: {exc}"
                        ) from exc
                    delay = self.config.retry_base_delay_seconds * (2 ** (attempt - 1))
                    logger.warning(
                        f"Ledger conflict for {signal.configuration} "
                        f"(attempt {attempt}/{attempts}), retrying in {delay:.3f}s: {exc}"
                    )
                    self._sleep(delay)
                    continue
                if rejection is not None:
                    raise rejection
                return outcome
        raise PersistenceError(f"ledger mutation failed for {signal.configuration}")  # pragma: no cover

    def _apply_once(self, signal: Signal) -> tuple[LedgerOutcome, AlertRelayError | None]:
        now = self._clock()
        with session_scope(self.session_factory) as session:
            repo = RelayRepository(session)
            record = repo.get_signal(signal.id)
            config_row = repo.get_or_create_configuration(signal.configuration)
            open_rows = repo.open_trades(config_row.id)
            state = derive_state(Direction(row.direction) for row in open_rows)

            if record is not None and record.ledger_applied_at is not None:
                logger.info(f"Signal {signal.id} already applied to ledger, skipping")
                return LedgerOutcome(action="noop", state=state), None

            if signal.kind.is_entry:
                outcome, rejection = self._enter(repo, signal, config_row, open_rows, state)
            else:
                outcome, rejection = self._exit(repo, signal, config_row, open_rows, state)

            if record is not None and not repo.mark_ledger_applied(record.id, now):
                raise ConcurrentModification(f"signal {signal.id} applied concurrently")
            return outcome, rejection

    def _enter(
        self,
        repo: RelayRepository,
        signal: Signal,
        config_row: TradeConfiguration,
        open_rows: list[TradeRecord],
        state: ConfigurationState,
    ) -> tuple[LedgerOutcome, AlertRelayError | None]:
        direction = signal.kind.entry_direction
        assert direction is not None
        configuration = signal.configuration
        same = [row for row in open_rows if row.direction == direction.value]

        if not same and len(open_rows) >= self.config.max_open_trades:
            logger.warning(
                f"🚧 Capacity reached for {configuration}: "
                f"{len(open_rows)}/{self.config.max_open_trades} open trades"
            )
            repo.append_event(
                "trade.capacity_rejected",
                "WARN",
                {
                    "signal_id": signal.id,
                    "configuration": configuration.key,
                    "direction": direction.value,
                    "open_trades": len(open_rows),
                    "capacity": self.config.max_open_trades,
                },
                symbol=configuration.symbol,
            )
            rejection = CapacityExceeded(
                configuration.key, len(open_rows), self.config.max_open_trades
            )
            return LedgerOutcome(action="noop", state=state), rejection

        number = config_row.next_trade_number
        if not repo.advance_configuration(config_row.id, config_row.version, number + 1):
            raise ConcurrentModification(f"configuration {configuration} changed concurrently")

        replaced_snapshot = None
        if same:
            # Only one open trade per direction can exist; take the newest regardless
            previous = max(same, key=lambda row: row.trade_number)
            if not repo.update_open_trade(
                config_row.id,
                previous.trade_number,
                status=TradeStatus.REPLACED.value,
                exit_reason="replaced",
                replaced_at=signal.timestamp,
                replaced_by=number,
            ):
                raise ConcurrentModification(f"trade #{previous.trade_number} closed concurrently")
            replaced_snapshot = Trade(
                configuration=configuration,
                trade_number=previous.trade_number,
                direction=direction,
                entry_price=float(previous.entry_price),
                status=TradeStatus.REPLACED,
                opened_at=as_utc(previous.opened_at),
                exit_reason="replaced",
                closed_at=signal.timestamp,
                replaced_by=number,
                entry_signal_id=str(previous.entry_signal_id) if previous.entry_signal_id else None,
            )

        row = repo.insert_trade(
            configuration_id=config_row.id,
            trade_number=number,
            direction=direction.value,
            status=TradeStatus.OPEN.value,
            entry_price=signal.price,
            take_profit_price=signal.take_profit,
            stop_price=signal.stop_loss,
            opened_at=signal.timestamp,
            entry_signal_id=_signal_uuid(signal),
        )
        trade = to_trade(row, configuration)

        payload = _trade_payload(trade)
        if replaced_snapshot is not None:
            event_type = EventType.TRADE_REPLACED
            payload["replaced_trade_number"] = replaced_snapshot.trade_number
            payload["replaced_entry_price"] = replaced_snapshot.entry_price
            action = "replaced"
            logger.warning(
                f"🔁 {configuration}: trade #{replaced_snapshot.trade_number} replaced by "
                f"#{number} ({direction.value}) - possible false signal"
            )
        else:
            event_type = EventType.TRADE_OPENED
            action = "opened"
            logger.info(
                f"📈 {configuration}: opened trade #{number} {direction.value} @ {signal.price}"
            )

        repo.append_event(event_type.value, "INFO", payload, symbol=configuration.symbol, trade_id=row.id)
        event = TriggerEvent(
            event_type=event_type,
            configuration=configuration,
            payload=payload,
            priority=DeliveryPriority.HIGH,
            urgent=True,
        )
        return (
            LedgerOutcome(
                action=action,
                state=state_after_entry(state, direction),
                trade=trade,
                replaced=replaced_snapshot,
                events=[event],
            ),
            None,
        )

    def _exit(
        self,
        repo: RelayRepository,
        signal: Signal,
        config_row: TradeConfiguration,
        open_rows: list[TradeRecord],
        state: ConfigurationState,
    ) -> tuple[LedgerOutcome, AlertRelayError | None]:
        configuration = signal.configuration
        target = _match_exit(open_rows, signal.direction, signal.trade_number)

        if target is None:
            logger.warning(
                f"👻 Orphan {signal.kind.value} for {configuration} "
                f"(direction={signal.direction.value if signal.direction else 'any'}, "
                f"trade_number={signal.trade_number})"
            )
            repo.append_event(
                "trade.orphan_exit",
                "WARN",
                {
                    "signal_id": signal.id,
                    "configuration": configuration.key,
                    "kind": signal.kind.value,
                    "direction": signal.direction.value if signal.direction else None,
                    "trade_number": signal.trade_number,
                    "price": signal.price,
                },
                symbol=configuration.symbol,
            )
            rejection = OrphanExit(
                configuration.key, signal.direction.value if signal.direction else None
            )
            return LedgerOutcome(action="noop", state=state), rejection

        direction = Direction(target.direction)
        amount, percent = compute_pnl(direction, float(target.entry_price), signal.price)

        if not repo.advance_configuration(
            config_row.id, config_row.version, config_row.next_trade_number
        ):
            raise ConcurrentModification(f"configuration {configuration} changed concurrently")
        if not repo.update_open_trade(
            config_row.id,
            target.trade_number,
            status=TradeStatus.CLOSED.value,
            exit_price=signal.price,
            exit_reason=signal.kind.exit_reason,
            pnl_amount=amount,
            pnl_percent=percent,
            closed_at=signal.timestamp,
            exit_signal_id=_signal_uuid(signal),
        ):
            raise ConcurrentModification(f"trade #{target.trade_number} closed concurrently")

        trade = Trade(
            configuration=configuration,
            trade_number=target.trade_number,
            direction=direction,
            entry_price=float(target.entry_price),
            status=TradeStatus.CLOSED,
            opened_at=as_utc(target.opened_at),
            take_profit=float(target.take_profit_price) if target.take_profit_price is not None else None,
            stop_loss=float(target.stop_price) if target.stop_price is not None else None,
            exit_price=signal.price,
            exit_reason=signal.kind.exit_reason,
            closed_at=signal.timestamp,
            pnl_amount=amount,
            pnl_percent=percent,
            entry_signal_id=str(target.entry_signal_id) if target.entry_signal_id else None,
            exit_signal_id=signal.id,
        )
        remaining = sum(
            1 for row in open_rows
            if row.direction == direction.value and row.trade_number != target.trade_number
        )
        emoji = "🟢" if amount >= 0 else "🔴"
        logger.info(
            f"{emoji} {configuration}: closed trade #{trade.trade_number} {direction.value} "
            f"({trade.exit_reason}) P&L {amount:+.2f} ({percent:+.2f}%)"
        )

        payload = _trade_payload(trade)
        repo.append_event(
            EventType.TRADE_CLOSED.value, "INFO", payload, symbol=configuration.symbol, trade_id=target.id
        )
        event = TriggerEvent(
            event_type=EventType.TRADE_CLOSED,
            configuration=configuration,
            payload=payload,
            priority=DeliveryPriority.HIGH,
            urgent=True,
        )
        return (
            LedgerOutcome(
                action="closed",
                state=state_after_exit(state, direction, remaining),
                trade=trade,
                events=[event],
            ),
            None,
        )

    def snapshot(self, configuration: Configuration) -> list[Trade]:
        """
        All trades of a configuration ordered by trade number.

        Args:
            configuration: Configuration triple

        Returns:
            Trade snapshots (empty when the configuration is unknown)
        """
        with session_scope(self.session_factory) as session:
            repo = RelayRepository(session)
            config_row = repo.get_configuration(configuration)
            if config_row is None:
                return []
            return [to_trade(row, configuration) for row in repo.list_trades(config_row.id)]

    def state(self, configuration: Configuration) -> ConfigurationState:
        """Current state of a configuration."""
        return derive_state(
            trade.direction for trade in self.snapshot(configuration) if trade.is_open
        )


def _match_exit(
    open_rows: list[TradeRecord], direction: Direction | None, trade_number: int | None
) -> TradeRecord | None:
    """Pick the open trade an exit signal closes (LIFO by trade number)."""
    candidates = open_rows
    if trade_number is not None:
        candidates = [row for row in candidates if row.trade_number == trade_number]
    if direction is not None:
        candidates = [row for row in candidates if row.direction == direction.value]
    if not candidates:
        return None
    return max(candidates, key=lambda row: row.trade_number)


def _signal_uuid(signal: Signal) -> uuid.UUID | None:
    try:
        return uuid.UUID(signal.id)
    except ValueError:
        return None


def _trade_payload(trade: Trade) -> dict:
    return {
        "symbol": trade.configuration.symbol,
        "timeframe": trade.configuration.timeframe,
        "strategy": trade.configuration.strategy,
        "trade_number": trade.trade_number,
        "direction": trade.direction.value,
        "status": trade.status.value,
        "entry_price": trade.entry_price,
        "take_profit": trade.take_profit,
        "stop_loss": trade.stop_loss,
        "exit_price": trade.exit_price,
        "exit_reason": trade.exit_reason,
        "pnl_amount": trade.pnl_amount,
        "pnl_percent": trade.pnl_percent,
    }
