"""Database models for the relay engine (PostgreSQL in production, SQLite in tests)."""

import uuid
import datetime as dt
from decimal import Decimal
from typing import Any

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Generic JSON for SQLite compatibility (SQLAlchemy handles mapping)
JSON_TYPE = sa.JSON().with_variant(JSONB, "postgresql")
NUMERIC_24_10 = sa.Numeric(24, 10)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""
    pass


class SignalRecord(Base):
    """Every inbound signal, including duplicate markers."""
    __tablename__ = "signals"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    source: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    symbol: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    timeframe: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    strategy: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    kind: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    price: Mapped[Decimal] = mapped_column(NUMERIC_24_10, nullable=False)
    take_profit: Mapped[Decimal | None] = mapped_column(NUMERIC_24_10, nullable=True)
    stop_loss: Mapped[Decimal | None] = mapped_column(NUMERIC_24_10, nullable=True)
    direction: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    trade_number: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    signal_ts: Mapped[dt.datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    received_at: Mapped[dt.datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, nullable=False
    )
    # Not unique: duplicate markers share the key of their original
    idempotency_key: Mapped[str] = mapped_column(sa.Text(), nullable=False, index=True)
    duplicate_of: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    status: Mapped[str] = mapped_column(sa.Text(), nullable=False, default="received")
    result_reason: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    processing_error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    ledger_applied_at: Mapped[dt.datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSON_TYPE, nullable=True)


class TradeConfiguration(Base):
    """One (symbol, timeframe, strategy) triple and its numbering state."""
    __tablename__ = "trade_configurations"
    __table_args__ = (sa.UniqueConstraint("symbol", "timeframe", "strategy"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    symbol: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    timeframe: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    strategy: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    name: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    next_trade_number: Mapped[int] = mapped_column(sa.Integer(), default=1, nullable=False)
    version: Mapped[int] = mapped_column(sa.Integer(), default=0, nullable=False)
    # Subscription plans that include this configuration ("all within plan")
    plans: Mapped[list[str]] = mapped_column(JSON_TYPE, default=list, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, nullable=False
    )


class Trade(Base):
    """Tracked position opened by an entry signal."""
    __tablename__ = "trades"
    __table_args__ = (sa.UniqueConstraint("configuration_id", "trade_number"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    configuration_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("trade_configurations.id", ondelete="CASCADE"),
        nullable=False,
    )
    trade_number: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    direction: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    status: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    entry_price: Mapped[Decimal] = mapped_column(NUMERIC_24_10, nullable=False)
    take_profit_price: Mapped[Decimal | None] = mapped_column(NUMERIC_24_10, nullable=True)
    stop_price: Mapped[Decimal | None] = mapped_column(NUMERIC_24_10, nullable=True)
    exit_price: Mapped[Decimal | None] = mapped_column(NUMERIC_24_10, nullable=True)
    exit_reason: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    pnl_amount: Mapped[Decimal | None] = mapped_column(NUMERIC_24_10, nullable=True)
    pnl_percent: Mapped[Decimal | None] = mapped_column(sa.Numeric(12, 2), nullable=True)
    opened_at: Mapped[dt.datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    closed_at: Mapped[dt.datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    replaced_at: Mapped[dt.datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    replaced_by: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    entry_signal_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True, unique=True
    )
    exit_signal_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)


class AlertConditionRecord(Base):
    """Alert condition definition plus its runtime trigger state."""
    __tablename__ = "alert_conditions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    configuration_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("trade_configurations.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    condition_type: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    params: Mapped[dict[str, Any]] = mapped_column(JSON_TYPE, default=dict, nullable=False)
    priority: Mapped[str] = mapped_column(sa.Text(), default="medium", nullable=False)

    check_interval_seconds: Mapped[int] = mapped_column(sa.Integer(), default=60, nullable=False)
    cooldown_seconds: Mapped[int] = mapped_column(sa.Integer(), default=300, nullable=False)
    max_triggers_per_day: Mapped[int] = mapped_column(sa.Integer(), default=50, nullable=False)
    # {"start": "HH:MM", "end": "HH:MM", "days_of_week": [0..6], "timezone": "UTC"}
    time_window: Mapped[dict[str, Any] | None] = mapped_column(JSON_TYPE, nullable=True)
    auto_disable_after_triggers: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    expires_at: Mapped[dt.datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    is_active: Mapped[bool] = mapped_column(
        sa.Boolean(), server_default=sa.text("true"), default=True, nullable=False
    )
    is_paused: Mapped[bool] = mapped_column(
        sa.Boolean(), server_default=sa.text("false"), default=False, nullable=False
    )
    status: Mapped[str] = mapped_column(sa.Text(), default="active", nullable=False)

    last_triggered_at: Mapped[dt.datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    triggers_today: Mapped[int] = mapped_column(sa.Integer(), default=0, nullable=False)
    trigger_day: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    total_triggers: Mapped[int] = mapped_column(sa.Integer(), default=0, nullable=False)
    last_value: Mapped[float | None] = mapped_column(sa.Float(), nullable=True)
    next_check_at: Mapped[dt.datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True, index=True
    )
    version: Mapped[int] = mapped_column(sa.Integer(), default=0, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, nullable=False
    )


class Subscription(Base):
    """A recipient's subscription to one configuration or to a whole plan."""
    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    channel_id: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    address: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    plan: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    # NULL means "all configurations within plan"
    configuration_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("trade_configurations.id", ondelete="CASCADE"),
        nullable=True,
    )
    status: Mapped[str] = mapped_column(sa.Text(), default="active", nullable=False)
    expires_at: Mapped[dt.datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    preferences: Mapped[dict[str, Any]] = mapped_column(JSON_TYPE, default=dict, nullable=False)
    last_notified_at: Mapped[dt.datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    notified_today: Mapped[int] = mapped_column(sa.Integer(), default=0, nullable=False)
    notified_day: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    deactivated_reason: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, nullable=False
    )


class DeliveryTaskRecord(Base):
    """Queued outbound notification."""
    __tablename__ = "delivery_tasks"
    __table_args__ = (sa.Index("ix_delivery_tasks_claim", "status", "priority", "enqueued_at"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
    )
    channel_id: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    recipient_address: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    body: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    parse_mode: Mapped[str] = mapped_column(sa.Text(), default="Markdown", nullable=False)
    priority: Mapped[int] = mapped_column(sa.Integer(), default=2, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text(), default="pending", nullable=False)
    attempts: Mapped[int] = mapped_column(sa.Integer(), default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(sa.Integer(), default=3, nullable=False)
    next_attempt_at: Mapped[dt.datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, nullable=False
    )
    last_retry_delay_seconds: Mapped[float] = mapped_column(sa.Float(), default=0.0, nullable=False)
    claimed_by: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    lease_expires_at: Mapped[dt.datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    event_type: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    event_id: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    message_id: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    enqueued_at: Mapped[dt.datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, nullable=False
    )
    sent_at: Mapped[dt.datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[dt.datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    finished_at: Mapped[dt.datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)


class Event(Base):
    """Append-only audit / event stream."""
    __tablename__ = "events"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    seq: Mapped[int] = mapped_column(sa.BigInteger(), default=0, nullable=False)  # SQLite: no Identity
    ts: Mapped[dt.datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    level: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    type: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    symbol: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    trade_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("trades.id", ondelete="SET NULL"),
        nullable=True,
    )
    payload: Mapped[dict[str, Any]] = mapped_column(JSON_TYPE, nullable=False)
    public_safe: Mapped[bool] = mapped_column(
        sa.Boolean(), server_default=sa.text("false"), nullable=False
    )
