"""Domain models for the relay engine."""

from alertrelay_engine.models.condition import (
    AlertCondition,
    ConditionPriority,
    ConditionState,
    ConditionType,
    EvaluationResult,
    MarketSample,
    NewsItem,
    Operator,
    TimeWindow,
    TriggerPolicy,
)
from alertrelay_engine.models.delivery import (
    DeliveryPriority,
    DeliveryStatus,
    DeliveryTask,
    SendResult,
)
from alertrelay_engine.models.events import EventType, TriggerEvent
from alertrelay_engine.models.signal import Configuration, Direction, Signal, SignalKind
from alertrelay_engine.models.trade import Trade, TradeStatus, compute_pnl

__all__ = [
    "AlertCondition",
    "ConditionPriority",
    "ConditionState",
    "ConditionType",
    "Configuration",
    "DeliveryPriority",
    "DeliveryStatus",
    "DeliveryTask",
    "Direction",
    "EvaluationResult",
    "EventType",
    "MarketSample",
    "NewsItem",
    "Operator",
    "SendResult",
    "Signal",
    "SignalKind",
    "TimeWindow",
    "Trade",
    "TradeStatus",
    "TriggerEvent",
    "TriggerPolicy",
    "compute_pnl",
]
