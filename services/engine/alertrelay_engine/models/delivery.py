"""Delivery task models."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum, IntEnum


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


TERMINAL_STATUSES = (DeliveryStatus.SENT, DeliveryStatus.DELIVERED, DeliveryStatus.FAILED)


class DeliveryPriority(IntEnum):
    """Dispatch priority; higher values go first."""

    LOW = 1
    NORMAL = 2
    HIGH = 3
    CRITICAL = 4


@dataclass(frozen=True)
class DeliveryTask:
    """One unit of outbound notification work."""

    id: str
    subscription_id: str | None
    channel_id: str
    recipient_address: str
    body: str
    parse_mode: str = "Markdown"
    priority: DeliveryPriority = DeliveryPriority.NORMAL
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    next_attempt_at: datetime | None = None
    last_retry_delay: float = 0.0
    last_error: str | None = None
    event_type: str | None = None
    event_id: str | None = None
    enqueued_at: datetime | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None


@dataclass(frozen=True)
class SendResult:
    """What a channel reports for one successful send."""

    message_id: str | None = None
    delivered: bool = False  # channel confirmed receipt
