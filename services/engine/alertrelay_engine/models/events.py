"""Trigger events emitted by the ledger and the condition evaluator."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from alertrelay_engine.models.delivery import DeliveryPriority
from alertrelay_engine.models.signal import Configuration


class EventType(str, Enum):
    TRADE_OPENED = "trade.opened"
    TRADE_CLOSED = "trade.closed"
    TRADE_REPLACED = "trade.replaced"
    CONDITION_TRIGGERED = "condition.triggered"


@dataclass(frozen=True)
class TriggerEvent:
    """A notification-worthy event, recipient agnostic."""

    event_type: EventType
    configuration: Configuration
    payload: dict[str, Any] = field(default_factory=dict)
    priority: DeliveryPriority = DeliveryPriority.NORMAL
    urgent: bool = True
    condition_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
