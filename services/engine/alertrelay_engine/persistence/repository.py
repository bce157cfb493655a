"""Relay repository for database persistence operations."""

import json
import uuid
from datetime import datetime, time, timezone
from decimal import Decimal
from typing import Any

import sqlalchemy as sa
from sqlalchemy.orm import Session

from alertrelay_engine.models.condition import (
    AlertCondition,
    ConditionPriority,
    ConditionState,
    ConditionType,
    TimeWindow,
    TriggerPolicy,
)
from alertrelay_engine.models.delivery import (
    TERMINAL_STATUSES,
    DeliveryPriority,
    DeliveryStatus,
    DeliveryTask,
)
from alertrelay_engine.models.signal import Configuration, Direction
from alertrelay_engine.models.trade import Trade, TradeStatus
from alertrelay_engine.persistence.models import (
    AlertConditionRecord,
    DeliveryTaskRecord,
    Event,
    SignalRecord,
    Subscription,
    TradeConfiguration,
)
from alertrelay_engine.persistence.models import Trade as TradeRecord


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize a stored datetime to aware UTC (SQLite returns naive values)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _float(value: Decimal | float | None) -> float | None:
    return float(value) if value is not None else None


def _parse_time(value: str | None) -> time | None:
    return time.fromisoformat(value) if value else None


def to_configuration(row: TradeConfiguration) -> Configuration:
    return Configuration(symbol=row.symbol, timeframe=row.timeframe, strategy=row.strategy)


def to_trade(row: TradeRecord, configuration: Configuration) -> Trade:
    """Map a trade row to the read-only domain snapshot."""
    return Trade(
        configuration=configuration,
        trade_number=row.trade_number,
        direction=Direction(row.direction),
        entry_price=float(row.entry_price),
        status=TradeStatus(row.status),
        opened_at=as_utc(row.opened_at),  # type: ignore[arg-type]
        take_profit=_float(row.take_profit_price),
        stop_loss=_float(row.stop_price),
        exit_price=_float(row.exit_price),
        exit_reason=row.exit_reason,
        closed_at=as_utc(row.closed_at) or as_utc(row.replaced_at),
        pnl_amount=_float(row.pnl_amount),
        pnl_percent=_float(row.pnl_percent),
        replaced_by=row.replaced_by,
        entry_signal_id=str(row.entry_signal_id) if row.entry_signal_id else None,
        exit_signal_id=str(row.exit_signal_id) if row.exit_signal_id else None,
    )


def to_condition(row: AlertConditionRecord, configuration: Configuration) -> AlertCondition:
    """Map a condition row (definition + runtime state) to the domain model."""
    window = None
    if row.time_window:
        window = TimeWindow(
            start=_parse_time(row.time_window.get("start")),
            end=_parse_time(row.time_window.get("end")),
            days_of_week=tuple(int(d) for d in row.time_window.get("days_of_week") or ()),
            timezone=row.time_window.get("timezone") or "UTC",
        )
    return AlertCondition(
        id=str(row.id),
        name=row.name,
        configuration=configuration,
        condition_type=ConditionType(row.condition_type),
        params=dict(row.params or {}),
        policy=TriggerPolicy(
            check_interval_seconds=row.check_interval_seconds,
            cooldown_seconds=row.cooldown_seconds,
            max_triggers_per_day=row.max_triggers_per_day,
            window=window,
            auto_disable_after_triggers=row.auto_disable_after_triggers,
            expires_at=as_utc(row.expires_at),
        ),
        priority=ConditionPriority(row.priority),
        is_active=row.is_active,
        is_paused=row.is_paused,
        status=row.status,
        state=ConditionState(
            last_triggered_at=as_utc(row.last_triggered_at),
            triggers_today=row.triggers_today,
            trigger_day=row.trigger_day,
            total_triggers=row.total_triggers,
            last_value=row.last_value,
            next_check_at=as_utc(row.next_check_at),
            version=row.version,
        ),
    )


def to_delivery_task(row: DeliveryTaskRecord) -> DeliveryTask:
    return DeliveryTask(
        id=str(row.id),
        subscription_id=str(row.subscription_id) if row.subscription_id else None,
        channel_id=row.channel_id,
        recipient_address=row.recipient_address,
        body=row.body,
        parse_mode=row.parse_mode,
        priority=DeliveryPriority(row.priority),
        status=DeliveryStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        next_attempt_at=as_utc(row.next_attempt_at),
        last_retry_delay=row.last_retry_delay_seconds,
        last_error=row.last_error,
        event_type=row.event_type,
        event_id=row.event_id,
        enqueued_at=as_utc(row.enqueued_at),
        sent_at=as_utc(row.sent_at),
        delivered_at=as_utc(row.delivered_at),
    )


class RelayRepository:
    """Repository wrapping database operations for the relay pipeline.

    Methods flush but never commit; the caller owns the transaction
    (see ``session_scope``), so a ledger mutation and its audit events land
    atomically.
    """

    def __init__(self, session: Session):
        """
        Initialize repository with database session.

        Args:
            session: SQLAlchemy session
        """
        self.session = session

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def add_signal(self, **values: Any) -> SignalRecord:
        """
        Insert a signal row.

        Args:
            **values: Column values for ``SignalRecord``

        Returns:
            The flushed row (id assigned)
        """
        record = SignalRecord(**values)
        self.session.add(record)
        self.session.flush()
        return record

    def get_signal(self, signal_id: str | uuid.UUID) -> SignalRecord | None:
        return self.session.get(SignalRecord, _to_uuid(signal_id))

    def find_original_signal(self, idempotency_key: str, since: datetime) -> SignalRecord | None:
        """
        Find the most recent non-duplicate signal with this key received after ``since``.

        Args:
            idempotency_key: Hash of source + normalized payload
            since: Start of the dedup window

        Returns:
            Original signal row or None
        """
        return (
            self.session.query(SignalRecord)
            .filter(
                SignalRecord.idempotency_key == idempotency_key,
                SignalRecord.duplicate_of.is_(None),
                SignalRecord.received_at >= since,
            )
            .order_by(SignalRecord.received_at.desc())
            .first()
        )

    def mark_signal(
        self,
        signal_id: str | uuid.UUID,
        status: str,
        reason: str | None = None,
        error: str | None = None,
    ) -> None:
        """Record the processing outcome on a signal row."""
        values: dict[str, Any] = {"status": status, "result_reason": reason}
        if error is not None:
            values["processing_error"] = error
        self.session.execute(
            sa.update(SignalRecord).where(SignalRecord.id == _to_uuid(signal_id)).values(**values)
        )

    def mark_ledger_applied(self, signal_id: str | uuid.UUID, applied_at: datetime) -> bool:
        """Set ``ledger_applied_at`` once; False if it was already set."""
        result = self.session.execute(
            sa.update(SignalRecord)
            .where(
                SignalRecord.id == _to_uuid(signal_id),
                SignalRecord.ledger_applied_at.is_(None),
            )
            .values(ledger_applied_at=applied_at)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Configurations and trades
    # ------------------------------------------------------------------

    def get_configuration(self, configuration: Configuration) -> TradeConfiguration | None:
        return (
            self.session.query(TradeConfiguration)
            .filter(
                TradeConfiguration.symbol == configuration.symbol,
                TradeConfiguration.timeframe == configuration.timeframe,
                TradeConfiguration.strategy == configuration.strategy,
            )
            .first()
        )

    def get_configuration_by_id(self, configuration_id: str | uuid.UUID) -> TradeConfiguration | None:
        return self.session.get(TradeConfiguration, _to_uuid(configuration_id))

    def get_or_create_configuration(
        self, configuration: Configuration, plans: list[str] | None = None
    ) -> TradeConfiguration:
        """Return the stored configuration row, inserting it on first use."""
        row = self.get_configuration(configuration)
        if row is None:
            row = TradeConfiguration(
                symbol=configuration.symbol,
                timeframe=configuration.timeframe,
                strategy=configuration.strategy,
                name=configuration.key,
                next_trade_number=1,
                version=0,
                plans=list(plans or []),
            )
            self.session.add(row)
            self.session.flush()
        return row

    def advance_configuration(
        self, configuration_id: uuid.UUID, expected_version: int, next_trade_number: int
    ) -> bool:
        """
        Compare-and-set the configuration version.

        Args:
            configuration_id: Configuration row id
            expected_version: Version read at the start of the mutation
            next_trade_number: New value for the numbering counter

        Returns:
            True if this writer won; False if another writer got there first
        """
        result = self.session.execute(
            sa.update(TradeConfiguration)
            .where(
                TradeConfiguration.id == configuration_id,
                TradeConfiguration.version == expected_version,
            )
            .values(version=expected_version + 1, next_trade_number=next_trade_number)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def open_trades(self, configuration_id: uuid.UUID) -> list[TradeRecord]:
        """Open trades of a configuration, oldest first."""
        return (
            self.session.query(TradeRecord)
            .filter(
                TradeRecord.configuration_id == configuration_id,
                TradeRecord.status == TradeStatus.OPEN.value,
            )
            .order_by(TradeRecord.trade_number.asc())
            .all()
        )

    def count_open_trades(self) -> int:
        """Open trades across every configuration."""
        return (
            self.session.query(sa.func.count(TradeRecord.id))
            .filter(TradeRecord.status == TradeStatus.OPEN.value)
            .scalar()
            or 0
        )

    def list_trades(self, configuration_id: uuid.UUID) -> list[TradeRecord]:
        return (
            self.session.query(TradeRecord)
            .filter(TradeRecord.configuration_id == configuration_id)
            .order_by(TradeRecord.trade_number.asc())
            .all()
        )

    def insert_trade(self, **values: Any) -> TradeRecord:
        trade = TradeRecord(**values)
        self.session.add(trade)
        self.session.flush()
        return trade

    def update_open_trade(
        self, configuration_id: uuid.UUID, trade_number: int, **values: Any
    ) -> bool:
        """Update a trade only while it is still open; False if it no longer is."""
        result = self.session.execute(
            sa.update(TradeRecord)
            .where(
                TradeRecord.configuration_id == configuration_id,
                TradeRecord.trade_number == trade_number,
                TradeRecord.status == TradeStatus.OPEN.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Alert conditions
    # ------------------------------------------------------------------

    def add_condition(self, **values: Any) -> AlertConditionRecord:
        row = AlertConditionRecord(**values)
        self.session.add(row)
        self.session.flush()
        return row

    def get_condition(self, condition_id: str | uuid.UUID) -> AlertConditionRecord | None:
        return self.session.get(AlertConditionRecord, _to_uuid(condition_id))

    def conditions_for_configuration(self, configuration_id: uuid.UUID) -> list[AlertConditionRecord]:
        """Active, unpaused conditions bound to a configuration."""
        return (
            self.session.query(AlertConditionRecord)
            .filter(
                AlertConditionRecord.configuration_id == configuration_id,
                AlertConditionRecord.is_active.is_(True),
                AlertConditionRecord.is_paused.is_(False),
                AlertConditionRecord.status == "active",
            )
            .order_by(AlertConditionRecord.created_at.asc())
            .all()
        )

    def due_conditions(self, now: datetime, limit: int) -> list[AlertConditionRecord]:
        """Active conditions whose next check time has elapsed."""
        return (
            self.session.query(AlertConditionRecord)
            .filter(
                AlertConditionRecord.is_active.is_(True),
                AlertConditionRecord.is_paused.is_(False),
                AlertConditionRecord.status == "active",
                sa.or_(
                    AlertConditionRecord.next_check_at.is_(None),
                    AlertConditionRecord.next_check_at <= now,
                ),
            )
            .order_by(AlertConditionRecord.next_check_at.asc())
            .limit(limit)
            .all()
        )

    def update_condition(
        self, condition_id: str | uuid.UUID, expected_version: int | None = None, **values: Any
    ) -> bool:
        """
        Update a condition row, optionally guarded by its version.

        When ``expected_version`` is given the version is bumped and the update
        only applies if nobody else recorded a trigger in between.
        """
        query = sa.update(AlertConditionRecord).where(
            AlertConditionRecord.id == _to_uuid(condition_id)
        )
        if expected_version is not None:
            query = query.where(AlertConditionRecord.version == expected_version)
            values["version"] = expected_version + 1
        result = self.session.execute(
            query.values(**values).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def add_subscription(self, **values: Any) -> Subscription:
        row = Subscription(**values)
        self.session.add(row)
        self.session.flush()
        return row

    def get_subscription(self, subscription_id: str | uuid.UUID) -> Subscription | None:
        return self.session.get(Subscription, _to_uuid(subscription_id))

    def subscriptions_for(self, configuration: TradeConfiguration, now: datetime) -> list[Subscription]:
        """
        Active, unexpired subscriptions reaching a configuration.

        Includes subscriptions bound directly to the configuration plus
        "all configurations" subscriptions whose plan includes it.

        Args:
            configuration: Stored configuration row
            now: Current time (expiry check)

        Returns:
            Subscription rows, bound ones first
        """
        plans = list(configuration.plans or [])
        scope = Subscription.configuration_id == configuration.id
        if plans:
            scope = sa.or_(
                scope,
                sa.and_(Subscription.configuration_id.is_(None), Subscription.plan.in_(plans)),
            )
        return (
            self.session.query(Subscription)
            .filter(
                scope,
                Subscription.status == "active",
                sa.or_(Subscription.expires_at.is_(None), Subscription.expires_at > now),
            )
            .order_by(Subscription.configuration_id.is_(None), Subscription.created_at.asc())
            .all()
        )

    def update_subscription(self, subscription_id: str | uuid.UUID, **values: Any) -> None:
        self.session.execute(
            sa.update(Subscription)
            .where(Subscription.id == _to_uuid(subscription_id))
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------
    # Delivery tasks
    # ------------------------------------------------------------------

    def enqueue_task(self, **values: Any) -> DeliveryTaskRecord:
        row = DeliveryTaskRecord(**values)
        self.session.add(row)
        self.session.flush()
        return row

    def get_task(self, task_id: str | uuid.UUID) -> DeliveryTaskRecord | None:
        return self.session.get(DeliveryTaskRecord, _to_uuid(task_id))

    def claimable_tasks(self, now: datetime, limit: int) -> list[DeliveryTaskRecord]:
        """Pending tasks due now and unleased, by priority then enqueue time."""
        return (
            self.session.query(DeliveryTaskRecord)
            .filter(
                DeliveryTaskRecord.status == DeliveryStatus.PENDING.value,
                DeliveryTaskRecord.next_attempt_at <= now,
                sa.or_(
                    DeliveryTaskRecord.claimed_by.is_(None),
                    DeliveryTaskRecord.lease_expires_at < now,
                ),
            )
            .order_by(DeliveryTaskRecord.priority.desc(), DeliveryTaskRecord.enqueued_at.asc())
            .limit(limit)
            .all()
        )

    def claim_task(
        self, task_id: uuid.UUID, worker_id: str, now: datetime, lease_until: datetime
    ) -> bool:
        """Take the lease on a task; False if another worker holds it."""
        result = self.session.execute(
            sa.update(DeliveryTaskRecord)
            .where(
                DeliveryTaskRecord.id == task_id,
                DeliveryTaskRecord.status == DeliveryStatus.PENDING.value,
                sa.or_(
                    DeliveryTaskRecord.claimed_by.is_(None),
                    DeliveryTaskRecord.lease_expires_at < now,
                ),
            )
            .values(claimed_by=worker_id, lease_expires_at=lease_until)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def renew_lease(self, task_id: str | uuid.UUID, worker_id: str, lease_until: datetime) -> bool:
        """Extend a lease still held by ``worker_id`` on a pending task."""
        result = self.session.execute(
            sa.update(DeliveryTaskRecord)
            .where(
                DeliveryTaskRecord.id == _to_uuid(task_id),
                DeliveryTaskRecord.status == DeliveryStatus.PENDING.value,
                DeliveryTaskRecord.claimed_by == worker_id,
            )
            .values(lease_expires_at=lease_until)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def update_task(
        self, task_id: str | uuid.UUID, holder: str | None = None, **values: Any
    ) -> bool:
        """Update a task; when ``holder`` is given only that lease holder may write."""
        query = sa.update(DeliveryTaskRecord).where(DeliveryTaskRecord.id == _to_uuid(task_id))
        if holder is not None:
            query = query.where(DeliveryTaskRecord.claimed_by == holder)
        result = self.session.execute(
            query.values(**values).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def delivery_counts(self, since: datetime | None = None) -> dict[str, int]:
        """Task counts by status, optionally limited to tasks enqueued since ``since``."""
        query = sa.select(DeliveryTaskRecord.status, sa.func.count()).group_by(
            DeliveryTaskRecord.status
        )
        if since is not None:
            query = query.where(DeliveryTaskRecord.enqueued_at >= since)
        return {status: int(count) for status, count in self.session.execute(query).all()}

    def purge_tasks(self, older_than: datetime) -> int:
        """Delete terminal tasks finished before ``older_than``."""
        result = self.session.execute(
            sa.delete(DeliveryTaskRecord)
            .where(
                DeliveryTaskRecord.status.in_([status.value for status in TERMINAL_STATUSES]),
                DeliveryTaskRecord.finished_at < older_than,
            )
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def append_event(
        self,
        event_type: str,
        level: str,
        payload: dict[str, Any],
        symbol: str | None = None,
        trade_id: uuid.UUID | None = None,
    ) -> int:
        """
        Append an event to the events table.

        Args:
            event_type: Event type (e.g., "trade.opened", "delivery.failed")
            level: Log level (INFO, WARN, ERROR)
            payload: Event payload as dictionary
            symbol: Symbol the event relates to
            trade_id: Trade row the event relates to

        Returns:
            Event sequence number
        """
        def _json_serial(obj: Any) -> Any:
            if isinstance(obj, Decimal):
                return float(obj)
            if isinstance(obj, datetime):
                return obj.isoformat()
            return str(obj)

        # Ensure payload is JSON serializable
        safe_payload = json.loads(json.dumps(payload, default=_json_serial))

        event_kwargs: dict[str, Any] = {
            "type": event_type,
            "level": level,
            "payload": safe_payload,
            "symbol": symbol,
            "trade_id": trade_id,
            "public_safe": False,
            "ts": datetime.now(timezone.utc),
        }

        # No Identity column (SQLite); allocate seq from the current max
        max_seq = self.session.query(sa.func.max(Event.seq)).scalar() or 0
        event_kwargs["seq"] = max_seq + 1

        event = Event(**event_kwargs)
        self.session.add(event)
        self.session.flush()
        seq: int = event.seq
        return seq

    def list_events(self, event_type: str | None = None, limit: int = 100) -> list[Event]:
        """Events ordered by seq ascending, optionally filtered by type."""
        query = self.session.query(Event)
        if event_type is not None:
            query = query.filter(Event.type == event_type)
        return query.order_by(Event.seq.asc()).limit(limit).all()


def day_key(now: datetime) -> str:
    """UTC calendar day used for daily counters."""
    return now.astimezone(timezone.utc).strftime("%Y-%m-%d")
