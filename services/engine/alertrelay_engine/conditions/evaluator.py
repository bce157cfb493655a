"""Condition evaluation against market samples, with trigger bookkeeping."""

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from alertrelay_engine.conditions.expression import SafeExpression
from alertrelay_engine.conditions.gates import TriggerGate
from alertrelay_engine.config.models import ConditionsConfig
from alertrelay_engine.errors import ExpressionError
from alertrelay_engine.models.condition import (
    AlertCondition,
    ConditionPriority,
    ConditionType,
    EvaluationResult,
    MarketSample,
    Operator,
)
from alertrelay_engine.models.delivery import DeliveryPriority
from alertrelay_engine.models.events import EventType, TriggerEvent
from alertrelay_engine.models.signal import Configuration
from alertrelay_engine.persistence.engine import session_scope
from alertrelay_engine.persistence.repository import (
    RelayRepository,
    day_key,
    to_condition,
    to_configuration,
)

logger = logging.getLogger(__name__)

EQUALITY_TOLERANCE = 1e-4

PRIORITY_MAP = {
    ConditionPriority.LOW: DeliveryPriority.LOW,
    ConditionPriority.MEDIUM: DeliveryPriority.NORMAL,
    ConditionPriority.HIGH: DeliveryPriority.HIGH,
    ConditionPriority.CRITICAL: DeliveryPriority.CRITICAL,
}

PRICE_FIELDS = ("price", "change", "change_percent")

COMPOUND_TYPES = (ConditionType.PRICE, ConditionType.VOLUME, ConditionType.TECHNICAL)
MAX_SUB_CONDITIONS = 5
LOGICAL_OPERATORS = ("AND", "OR")


def compare(
    op: Operator,
    current: float,
    value: float,
    value2: float | None = None,
    previous: float | None = None,
) -> bool:
    """
    Apply a comparison operator.

    Args:
        op: Operator
        current: Current observed value
        value: Threshold (lower or upper bound for range operators)
        value2: Second bound for ``between`` / ``outside``
        previous: Previously observed value, needed by cross operators

    Returns:
        True when the comparison holds
    """
    if op is Operator.GT:
        return current > value
    if op is Operator.LT:
        return current < value
    if op is Operator.GTE:
        return current >= value
    if op is Operator.LTE:
        return current <= value
    if op is Operator.EQ:
        return abs(current - value) <= EQUALITY_TOLERANCE
    if op is Operator.NEQ:
        return abs(current - value) > EQUALITY_TOLERANCE
    if op in (Operator.BETWEEN, Operator.OUTSIDE):
        if value2 is None:
            raise ValueError(f"Operator {op.value} needs two bounds")
        low, high = sorted((value, value2))
        inside = low <= current <= high
        return inside if op is Operator.BETWEEN else not inside
    if op is Operator.CROSSES_ABOVE:
        return previous is not None and previous <= value < current
    if op is Operator.CROSSES_BELOW:
        return previous is not None and previous >= value > current
    raise ValueError(f"Operator {op.value} is not a comparison")


def _float_param(params: dict[str, Any], name: str) -> float | None:
    value = params.get(name)
    return float(value) if value is not None else None


class ConditionEvaluator:
    """Evaluates alert conditions and records their triggers.

    ``evaluate`` is pure. ``evaluate_and_record`` is the shared entry point of
    the scheduler and signal paths: it reloads the condition, evaluates it and
    records the trigger under an optimistic version check.
    """

    def __init__(
        self,
        config: ConditionsConfig,
        session_factory: sessionmaker[Session],
        gate: TriggerGate | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        self.session_factory = session_factory
        self.gate = gate or TriggerGate()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._expressions: dict[str, SafeExpression] = {}

    # ------------------------------------------------------------------
    # Pure evaluation
    # ------------------------------------------------------------------

    def evaluate(
        self, condition: AlertCondition, sample: MarketSample, now: datetime | None = None
    ) -> EvaluationResult:
        """
        Evaluate one condition: gates first, then the typed predicate.

        Args:
            condition: Condition definition and state
            sample: Current market sample for the condition's configuration
            now: Evaluation time (defaults to the clock)

        Returns:
            EvaluationResult; ``reason`` names the gate or predicate miss
        """
        now = now or self._clock()
        allowed, reason = self.gate.check(condition, now)
        if not allowed:
            return EvaluationResult(met=False, reason=reason)

        handlers = {
            ConditionType.PRICE: self._evaluate_price,
            ConditionType.VOLUME: self._evaluate_volume,
            ConditionType.TECHNICAL: self._evaluate_technical,
            ConditionType.NEWS: self._evaluate_news,
            ConditionType.CUSTOM: self._evaluate_custom,
        }
        handler = handlers[condition.condition_type]
        try:
            if "conditions" in condition.params and condition.condition_type in COMPOUND_TYPES:
                return self._evaluate_compound(condition, sample, handler)
            return handler(condition, sample)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning(f"Condition {condition.id} ({condition.name}) misconfigured: {exc}")
            return EvaluationResult(met=False, reason="invalid_params")

    def _evaluate_compound(
        self,
        condition: AlertCondition,
        sample: MarketSample,
        handler: Callable[[AlertCondition, MarketSample], EvaluationResult],
    ) -> EvaluationResult:
        """
        Evaluate 1-5 sub-conditions joined by ``logical_operator``.

        Each entry of ``params["conditions"]`` is a params dict for the same
        condition type; keys outside the list (e.g. ``indicator``) are shared
        defaults. Every sub-condition is evaluated so the trigger payload
        shows which ones matched.
        """
        params = condition.params
        parts = params["conditions"]
        if not isinstance(parts, list) or not 1 <= len(parts) <= MAX_SUB_CONDITIONS:
            raise ValueError(f"conditions must hold 1 to {MAX_SUB_CONDITIONS} sub-conditions")
        logical = str(params.get("logical_operator", "AND")).upper()
        if logical not in LOGICAL_OPERATORS:
            raise ValueError(f"unknown logical operator {logical!r}")

        shared = {k: v for k, v in params.items() if k not in ("conditions", "logical_operator")}
        results = []
        for part in parts:
            if not isinstance(part, dict):
                raise TypeError(f"sub-condition must be an object, got {type(part).__name__}")
            merged = {**shared, **part}
            # Only one value per condition is tracked between evaluations
            if merged.get("operator") in (Operator.CROSSES_ABOVE.value, Operator.CROSSES_BELOW.value):
                raise ValueError("cross operators are not allowed in sub-conditions")
            results.append(handler(replace(condition, params=merged), sample))

        matched = sum(1 for result in results if result.met)
        met = matched == len(results) if logical == "AND" else matched > 0
        reason = None
        if not met:
            reason = next(result.reason for result in results if not result.met)
        data = {
            "logical_operator": logical,
            "matched": matched,
            "conditions": [{**result.data, "met": result.met} for result in results],
        }
        return EvaluationResult(met=met, data=data, reason=reason)

    def _compare_value(
        self, condition: AlertCondition, current: float, field: str
    ) -> EvaluationResult:
        params = condition.params
        op = Operator(params.get("operator", ">"))
        value = float(params["value"])
        value2 = _float_param(params, "value2")
        previous = condition.state.last_value
        met = compare(op, current, value, value2=value2, previous=previous)
        data = {
            "field": field,
            "current": current,
            "operator": op.value,
            "value": value,
            "value2": value2,
            "previous": previous,
        }
        return EvaluationResult(met=met, data=data, reason=None if met else "not_met")

    def _evaluate_price(self, condition: AlertCondition, sample: MarketSample) -> EvaluationResult:
        field = condition.params.get("field", "price")
        if field not in PRICE_FIELDS:
            raise ValueError(f"unknown price field {field!r}")
        current = getattr(sample, field)
        if current is None:
            return EvaluationResult(met=False, reason="no_data")
        return self._compare_value(condition, float(current), field)

    def _evaluate_volume(self, condition: AlertCondition, sample: MarketSample) -> EvaluationResult:
        if sample.volume is None:
            return EvaluationResult(met=False, reason="no_data")
        params = condition.params
        if params.get("operator") != Operator.SPIKE.value:
            return self._compare_value(condition, float(sample.volume), "volume")

        average = sample.average_volume
        if not average or average <= 0:
            return EvaluationResult(met=False, reason="no_average_volume")
        threshold = float(params.get("threshold", 2.0))
        if threshold <= 0:
            raise ValueError("spike threshold must be positive")
        direction = params.get("direction", "up")
        ratio = sample.volume / average
        if direction == "up":
            met = sample.volume >= average * threshold
        elif direction == "down":
            met = sample.volume <= average / threshold
        else:
            raise ValueError(f"unknown spike direction {direction!r}")
        data = {
            "field": "volume",
            "current": float(sample.volume),
            "average_volume": float(average),
            "ratio": round(ratio, 4),
            "threshold": threshold,
            "direction": direction,
        }
        return EvaluationResult(met=met, data=data, reason=None if met else "not_met")

    def _evaluate_technical(
        self, condition: AlertCondition, sample: MarketSample
    ) -> EvaluationResult:
        indicator = condition.params["indicator"]
        value = sample.indicators.get(indicator)
        if value is None:
            return EvaluationResult(met=False, reason="indicator_unavailable")
        result = self._compare_value(condition, float(value), indicator)
        return EvaluationResult(
            met=result.met, data={**result.data, "indicator": indicator}, reason=result.reason
        )

    def _evaluate_news(self, condition: AlertCondition, sample: MarketSample) -> EvaluationResult:
        params = condition.params
        keywords = [str(k).lower() for k in params.get("keywords") or []]
        sources = {str(s).lower() for s in params.get("sources") or []}
        sentiment = str(params.get("sentiment", "any")).lower()
        if sentiment not in ("positive", "negative", "neutral", "any"):
            raise ValueError(f"unknown sentiment {sentiment!r}")
        min_score = float(params.get("min_score", 0.5))

        matches = []
        for item in sample.news:
            if keywords:
                haystack = item.title.lower()
                tags = {k.lower() for k in item.keywords}
                if not any(k in haystack or k in tags for k in keywords):
                    continue
            if sources and item.source.lower() not in sources:
                continue
            if sentiment != "any" and item.sentiment.lower() != sentiment:
                continue
            if item.score < min_score:
                continue
            matches.append(item)

        if not matches:
            return EvaluationResult(met=False, reason="no_matching_news")
        return EvaluationResult(
            met=True,
            data={
                "matches": len(matches),
                "headline": matches[0].title,
                "source": matches[0].source,
                "sentiment": matches[0].sentiment,
                "score": matches[0].score,
                "url": matches[0].url,
            },
        )

    def _evaluate_custom(self, condition: AlertCondition, sample: MarketSample) -> EvaluationResult:
        source = condition.params["expression"]
        constants = {k: float(v) for k, v in (condition.params.get("variables") or {}).items()}
        variables = {**sample.variables(), **constants}
        try:
            expression = self._expressions.get(source)
            if expression is None:
                expression = SafeExpression(
                    source,
                    max_length=self.config.max_expression_length,
                    max_nodes=self.config.max_expression_nodes,
                )
                self._expressions[source] = expression
            value = expression.evaluate(variables)
        except ExpressionError as exc:
            logger.warning(f"Condition {condition.id} expression rejected: {exc}")
            return EvaluationResult(met=False, reason="expression_error", data={"error": str(exc)})
        met = bool(value)
        return EvaluationResult(
            met=met,
            data={"expression": source, "result": value},
            reason=None if met else "not_met",
        )

    # ------------------------------------------------------------------
    # Evaluation with trigger bookkeeping
    # ------------------------------------------------------------------

    def evaluate_and_record(
        self, condition_id: str, sample: MarketSample, now: datetime | None = None
    ) -> tuple[EvaluationResult, TriggerEvent | None]:
        """
        Reload, evaluate and record one condition.

        Args:
            condition_id: Stored condition id
            sample: Current market sample
            now: Evaluation time (defaults to the clock)

        Returns:
            Tuple of (result, trigger event or None). A trigger lost to a
            concurrent writer comes back as ``met=False, reason="conflict"``.
        """
        now = now or self._clock()
        with session_scope(self.session_factory) as session:
            repo = RelayRepository(session)
            row = repo.get_condition(condition_id)
            if row is None:
                return EvaluationResult(met=False, reason="not_found"), None
            config_row = repo.get_configuration_by_id(row.configuration_id)
            assert config_row is not None
            condition = to_condition(row, to_configuration(config_row))
            result = self.evaluate(condition, sample, now)

            tracked = result.data.get("current")
            if not result.met:
                if result.reason == "expired":
                    repo.update_condition(condition.id, status="auto_disabled")
                    logger.info(f"⏹️ Condition {condition.name} expired, auto-disabled")
                elif tracked is not None:
                    repo.update_condition(condition.id, last_value=float(tracked))
                return result, None

            today = day_key(now)
            state = condition.state
            triggers_today = (state.triggers_today if state.trigger_day == today else 0) + 1
            total = state.total_triggers + 1
            values: dict[str, Any] = {
                "last_triggered_at": now,
                "triggers_today": triggers_today,
                "trigger_day": today,
                "total_triggers": total,
            }
            if tracked is not None:
                values["last_value"] = float(tracked)
            limit = condition.policy.auto_disable_after_triggers
            if limit is not None and total >= limit:
                values["status"] = "auto_disabled"

            if not repo.update_condition(condition.id, expected_version=state.version, **values):
                logger.info(f"Condition {condition.name} trigger lost to a concurrent writer")
                return EvaluationResult(met=False, data=result.data, reason="conflict"), None

            event = self._trigger_event(condition, result, now)
            repo.append_event(
                EventType.CONDITION_TRIGGERED.value,
                "INFO",
                event.payload,
                symbol=condition.configuration.symbol,
            )
            if values.get("status") == "auto_disabled":
                logger.info(f"⏹️ Condition {condition.name} auto-disabled after {total} triggers")

        logger.info(f"🔔 Condition triggered: {condition.name} ({condition.configuration})")
        return result, event

    def evaluate_for_configuration(
        self, configuration: Configuration, sample: MarketSample, now: datetime | None = None
    ) -> list[TriggerEvent]:
        """Evaluate every active condition bound to a configuration (signal path)."""
        now = now or self._clock()
        with session_scope(self.session_factory) as session:
            repo = RelayRepository(session)
            config_row = repo.get_configuration(configuration)
            if config_row is None:
                return []
            ids = [str(row.id) for row in repo.conditions_for_configuration(config_row.id)]

        events = []
        for condition_id in ids:
            _, event = self.evaluate_and_record(condition_id, sample, now)
            if event is not None:
                events.append(event)
        return events

    @staticmethod
    def _trigger_event(
        condition: AlertCondition, result: EvaluationResult, now: datetime
    ) -> TriggerEvent:
        payload = {
            "condition_id": condition.id,
            "condition_name": condition.name,
            "condition_type": condition.condition_type.value,
            "priority": condition.priority.value,
            "symbol": condition.configuration.symbol,
            "timeframe": condition.configuration.timeframe,
            "strategy": condition.configuration.strategy,
            **result.data,
        }
        return TriggerEvent(
            event_type=EventType.CONDITION_TRIGGERED,
            configuration=condition.configuration,
            payload=payload,
            priority=PRIORITY_MAP[condition.priority],
            urgent=condition.priority in (ConditionPriority.HIGH, ConditionPriority.CRITICAL),
            condition_id=condition.id,
            timestamp=now,
        )
