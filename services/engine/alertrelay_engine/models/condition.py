"""Alert condition definitions and market samples."""

from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import Any

from alertrelay_engine.models.signal import Configuration


class ConditionType(str, Enum):
    """Predicate families."""

    PRICE = "price"
    VOLUME = "volume"
    TECHNICAL = "technical"
    NEWS = "news"
    CUSTOM = "custom"


class Operator(str, Enum):
    """Comparison operators shared by price, volume and technical conditions."""

    GT = ">"
    LT = "<"
    GTE = ">="
    LTE = "<="
    EQ = "=="
    NEQ = "!="
    BETWEEN = "between"
    OUTSIDE = "outside"
    CROSSES_ABOVE = "crosses_above"
    CROSSES_BELOW = "crosses_below"
    SPIKE = "spike"


class ConditionPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class TimeWindow:
    """Time-of-day / day-of-week restriction.

    ``days_of_week`` uses Python weekday numbering (Monday=0 .. Sunday=6);
    an empty tuple allows every day. ``start > end`` is an overnight range.
    """

    start: time | None = None
    end: time | None = None
    days_of_week: tuple[int, ...] = ()
    timezone: str = "UTC"


@dataclass(frozen=True)
class TriggerPolicy:
    """When and how often a condition may fire."""

    check_interval_seconds: int = 60
    cooldown_seconds: int = 300
    max_triggers_per_day: int = 50
    window: TimeWindow | None = None
    auto_disable_after_triggers: int | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class ConditionState:
    """Runtime state kept on the stored condition row."""

    last_triggered_at: datetime | None = None
    triggers_today: int = 0
    trigger_day: str | None = None  # YYYY-MM-DD (UTC)
    total_triggers: int = 0
    last_value: float | None = None
    next_check_at: datetime | None = None
    version: int = 0


@dataclass(frozen=True)
class AlertCondition:
    """A named rule bound to a configuration."""

    id: str
    name: str
    configuration: Configuration
    condition_type: ConditionType
    params: dict[str, Any] = field(default_factory=dict)
    policy: TriggerPolicy = field(default_factory=TriggerPolicy)
    priority: ConditionPriority = ConditionPriority.MEDIUM
    is_active: bool = True
    is_paused: bool = False
    status: str = "active"  # active | auto_disabled
    state: ConditionState = field(default_factory=ConditionState)


@dataclass(frozen=True)
class NewsItem:
    """One item from the sentiment feed."""

    title: str
    source: str
    sentiment: str = "neutral"  # positive | negative | neutral
    score: float = 0.0  # confidence 0..1
    keywords: tuple[str, ...] = ()
    url: str | None = None
    published_at: datetime | None = None


@dataclass(frozen=True)
class MarketSample:
    """Current market snapshot for a symbol and timeframe."""

    symbol: str
    timeframe: str
    price: float | None = None
    volume: float | None = None
    average_volume: float | None = None
    change: float | None = None
    change_percent: float | None = None
    indicators: dict[str, float] = field(default_factory=dict)
    news: tuple[NewsItem, ...] = ()
    timestamp: datetime | None = None

    def variables(self) -> dict[str, float]:
        """Numeric variables exposed to custom expressions."""
        values: dict[str, float] = {}
        for name in ("price", "volume", "average_volume", "change", "change_percent"):
            value = getattr(self, name)
            if value is not None:
                values[name] = float(value)
        for name, value in self.indicators.items():
            values[name] = float(value)
        return values


@dataclass(frozen=True)
class EvaluationResult:
    """Outcome of one condition evaluation.

    ``reason`` is a short code explaining a non-match (gate or predicate),
    used for logging and metrics only.
    """

    met: bool
    data: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None
