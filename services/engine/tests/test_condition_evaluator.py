"""Tests for condition evaluation and trigger bookkeeping."""

import uuid
from datetime import timedelta

import pytest

from alertrelay_engine.conditions.evaluator import ConditionEvaluator, compare
from alertrelay_engine.config.models import ConditionsConfig
from alertrelay_engine.models.condition import (
    AlertCondition,
    ConditionPriority,
    ConditionState,
    ConditionType,
    MarketSample,
    NewsItem,
    Operator,
)
from alertrelay_engine.models.delivery import DeliveryPriority
from alertrelay_engine.models.events import EventType
from alertrelay_engine.models.signal import Configuration
from alertrelay_engine.persistence.models import AlertConditionRecord
from alertrelay_engine.persistence.repository import RelayRepository, as_utc

BTC = Configuration("BTCUSDT", "1h", "breakout")


def condition(condition_type: ConditionType, params: dict, **overrides) -> AlertCondition:
    return AlertCondition(
        id="c-1",
        name="test",
        configuration=BTC,
        condition_type=condition_type,
        params=params,
        **overrides,
    )


def sample(**fields) -> MarketSample:
    return MarketSample(symbol="BTCUSDT", timeframe="1h", **fields)


@pytest.fixture
def evaluator(session_factory, clock) -> ConditionEvaluator:
    return ConditionEvaluator(ConditionsConfig(), session_factory, clock=clock)


@pytest.mark.parametrize(
    ("op", "current", "value", "value2", "previous", "expected"),
    [
        (Operator.GT, 101, 100, None, None, True),
        (Operator.GT, 100, 100, None, None, False),
        (Operator.GTE, 100, 100, None, None, True),
        (Operator.LT, 99, 100, None, None, True),
        (Operator.LTE, 101, 100, None, None, False),
        (Operator.EQ, 100.00005, 100, None, None, True),
        (Operator.NEQ, 100.5, 100, None, None, True),
        (Operator.BETWEEN, 5, 10, 1, None, True),
        (Operator.OUTSIDE, 5, 1, 10, None, False),
        (Operator.CROSSES_ABOVE, 101, 100, None, 99, True),
        (Operator.CROSSES_ABOVE, 101, 100, None, 100.5, False),
        (Operator.CROSSES_ABOVE, 101, 100, None, None, False),
        (Operator.CROSSES_BELOW, 99, 100, None, 100, True),
    ],
)
def test_compare(op, current, value, value2, previous, expected):
    assert compare(op, current, value, value2=value2, previous=previous) is expected


def test_range_operator_needs_two_bounds():
    with pytest.raises(ValueError, match="two bounds"):
        compare(Operator.BETWEEN, 1, 2)


class TestEvaluatePrice:
    def test_threshold_met(self, evaluator):
        result = evaluator.evaluate(
            condition(ConditionType.PRICE, {"operator": ">", "value": 100}), sample(price=105.0)
        )
        assert result.met is True
        assert result.data["current"] == 105.0
        assert result.data["field"] == "price"

    def test_change_percent_field(self, evaluator):
        result = evaluator.evaluate(
            condition(ConditionType.PRICE, {"field": "change_percent", "operator": "<=", "value": -5}),
            sample(price=1.0, change_percent=-7.5),
        )
        assert result.met is True

    def test_no_data(self, evaluator):
        result = evaluator.evaluate(
            condition(ConditionType.PRICE, {"operator": ">", "value": 1}), sample()
        )
        assert (result.met, result.reason) == (False, "no_data")

    @pytest.mark.parametrize(
        "params",
        [
            {"field": "bid", "operator": ">", "value": 1},
            {"operator": "~", "value": 1},
            {"operator": ">"},
            {"operator": "between", "value": 1},
        ],
    )
    def test_misconfigured(self, evaluator, params):
        result = evaluator.evaluate(condition(ConditionType.PRICE, params), sample(price=5.0))
        assert (result.met, result.reason) == (False, "invalid_params")

    def test_cross_uses_last_value(self, evaluator):
        crossing = condition(
            ConditionType.PRICE,
            {"operator": "crosses_above", "value": 100},
            state=ConditionState(last_value=98.0),
        )
        assert evaluator.evaluate(crossing, sample(price=101.0)).met is True

    def test_gate_checked_first(self, evaluator):
        paused = condition(ConditionType.PRICE, {"operator": ">", "value": 1}, is_paused=True)
        assert evaluator.evaluate(paused, sample(price=5.0)).reason == "paused"


class TestEvaluateVolume:
    def test_spike_up(self, evaluator):
        spike = condition(ConditionType.VOLUME, {"operator": "spike", "threshold": 2})
        result = evaluator.evaluate(spike, sample(volume=250.0, average_volume=100.0))
        assert result.met is True
        assert result.data["ratio"] == 2.5

    def test_spike_below_threshold(self, evaluator):
        spike = condition(ConditionType.VOLUME, {"operator": "spike", "threshold": 3})
        assert evaluator.evaluate(spike, sample(volume=250.0, average_volume=100.0)).met is False

    def test_spike_down(self, evaluator):
        drop = condition(ConditionType.VOLUME, {"operator": "spike", "threshold": 4, "direction": "down"})
        assert evaluator.evaluate(drop, sample(volume=20.0, average_volume=100.0)).met is True

    def test_spike_without_average(self, evaluator):
        spike = condition(ConditionType.VOLUME, {"operator": "spike"})
        result = evaluator.evaluate(spike, sample(volume=250.0))
        assert result.reason == "no_average_volume"

    def test_plain_comparison(self, evaluator):
        above = condition(ConditionType.VOLUME, {"operator": ">=", "value": 1000})
        assert evaluator.evaluate(above, sample(volume=1000.0)).met is True


class TestEvaluateTechnical:
    def test_indicator_comparison(self, evaluator):
        oversold = condition(ConditionType.TECHNICAL, {"indicator": "rsi", "operator": "<", "value": 30})
        result = evaluator.evaluate(oversold, sample(indicators={"rsi": 25.0}))
        assert result.met is True
        assert result.data["indicator"] == "rsi"

    def test_indicator_unavailable(self, evaluator):
        oversold = condition(ConditionType.TECHNICAL, {"indicator": "rsi", "operator": "<", "value": 30})
        result = evaluator.evaluate(oversold, sample(indicators={"macd": 1.0}))
        assert (result.met, result.reason) == (False, "indicator_unavailable")


class TestCompoundConditions:
    BAND = [{"operator": ">", "value": 100}, {"operator": "<", "value": 110}]

    @pytest.mark.parametrize(
        ("price", "logical", "met", "matched"),
        [
            (105.0, "AND", True, 2),
            (115.0, "AND", False, 1),
            (115.0, "OR", True, 1),
            (95.0, "or", True, 1),
        ],
    )
    def test_price_sub_conditions(self, evaluator, price, logical, met, matched):
        rule = condition(ConditionType.PRICE, {"conditions": self.BAND, "logical_operator": logical})

        result = evaluator.evaluate(rule, sample(price=price))

        assert result.met is met
        assert result.data["logical_operator"] == logical.upper()
        assert result.data["matched"] == matched
        assert [part["met"] for part in result.data["conditions"]] == [price > 100, price < 110]
        assert result.reason == (None if met else "not_met")

    def test_or_fails_only_when_nothing_matches(self, evaluator):
        rule = condition(
            ConditionType.PRICE,
            {
                "logical_operator": "OR",
                "conditions": [
                    {"operator": ">", "value": 200},
                    {"field": "change_percent", "operator": ">=", "value": 5},
                ],
            },
        )
        result = evaluator.evaluate(rule, sample(price=105.0, change_percent=1.5))
        assert (result.met, result.data["matched"]) == (False, 0)

    def test_and_defaults_and_reports_first_miss(self, evaluator):
        rule = condition(
            ConditionType.VOLUME,
            {
                "conditions": [
                    {"operator": ">", "value": 1000},
                    {"operator": "spike", "threshold": 2.0},
                ]
            },
        )
        result = evaluator.evaluate(rule, sample(volume=1500.0))
        assert result.data["logical_operator"] == "AND"
        assert (result.met, result.reason) == (False, "no_average_volume")

        result = evaluator.evaluate(rule, sample(volume=1500.0, average_volume=500.0))
        assert result.met is True

    def test_technical_sub_conditions_share_indicator(self, evaluator):
        neutral = condition(
            ConditionType.TECHNICAL,
            {
                "indicator": "rsi",
                "conditions": [{"operator": ">", "value": 40}, {"operator": "<", "value": 60}],
            },
        )
        result = evaluator.evaluate(neutral, sample(indicators={"rsi": 50.0, "macd": -1.0}))
        assert result.met is True
        assert {part["indicator"] for part in result.data["conditions"]} == {"rsi"}

        mixed = condition(
            ConditionType.TECHNICAL,
            {
                "logical_operator": "AND",
                "conditions": [
                    {"indicator": "rsi", "operator": "<", "value": 30},
                    {"indicator": "macd", "operator": ">", "value": 0},
                ],
            },
        )
        assert evaluator.evaluate(mixed, sample(indicators={"rsi": 25.0, "macd": -1.0})).met is False
        assert evaluator.evaluate(mixed, sample(indicators={"rsi": 25.0, "macd": 0.5})).met is True

    @pytest.mark.parametrize(
        "params",
        [
            {"conditions": []},
            {"conditions": [{"operator": ">", "value": n} for n in range(6)]},
            {"conditions": {"operator": ">", "value": 1}},
            {"conditions": ["> 1"]},
            {"conditions": [{"operator": ">", "value": 1}], "logical_operator": "XOR"},
            {"conditions": [{"operator": "crosses_above", "value": 100}]},
        ],
    )
    def test_malformed_sub_conditions(self, evaluator, params):
        result = evaluator.evaluate(condition(ConditionType.PRICE, params), sample(price=105.0))
        assert (result.met, result.reason) == (False, "invalid_params")

    def test_trigger_payload_lists_sub_conditions(self, evaluator, add_condition, clock):
        condition_id = add_condition(
            name="BTC in band",
            params={"conditions": self.BAND, "logical_operator": "AND"},
        )

        result, event = evaluator.evaluate_and_record(condition_id, sample(price=105.0), clock.now)

        assert result.met is True
        assert event.payload["matched"] == 2
        assert [part["operator"] for part in event.payload["conditions"]] == [">", "<"]


class TestEvaluateNews:
    NEWS = (
        NewsItem(title="ETF inflows hit record", source="CoinDesk", sentiment="positive", score=0.9),
        NewsItem(title="Exchange hack rumours", source="Twitter", sentiment="negative", score=0.4),
        NewsItem(title="Quiet weekend", source="CoinDesk", keywords=("btc",), score=0.7),
    )

    @pytest.mark.parametrize(
        ("params", "met", "headline"),
        [
            ({"keywords": ["etf"]}, True, "ETF inflows hit record"),
            ({"sentiment": "negative"}, False, None),
            ({"sentiment": "negative", "min_score": 0.3}, True, "Exchange hack rumours"),
            ({"keywords": ["BTC"], "sources": ["coindesk"]}, True, "Quiet weekend"),
            ({"sources": ["reuters"]}, False, None),
        ],
    )
    def test_filters(self, evaluator, params, met, headline):
        result = evaluator.evaluate(condition(ConditionType.NEWS, params), sample(news=self.NEWS))
        assert result.met is met
        assert result.data.get("headline") == headline

    def test_unknown_sentiment_is_misconfiguration(self, evaluator):
        result = evaluator.evaluate(
            condition(ConditionType.NEWS, {"sentiment": "bullish"}), sample(news=self.NEWS)
        )
        assert result.reason == "invalid_params"


class TestEvaluateCustom:
    def test_expression_with_constants(self, evaluator):
        custom = condition(
            ConditionType.CUSTOM,
            {"expression": "price > level and volume > average_volume", "variables": {"level": 100}},
        )
        result = evaluator.evaluate(custom, sample(price=101.0, volume=20.0, average_volume=10.0))
        assert result.met is True
        assert result.data["result"] is True

    def test_expression_error_is_not_met(self, evaluator):
        custom = condition(ConditionType.CUSTOM, {"expression": "__import__('os')"})
        result = evaluator.evaluate(custom, sample(price=1.0))
        assert (result.met, result.reason) == (False, "expression_error")

    def test_missing_variable_is_expression_error(self, evaluator):
        custom = condition(ConditionType.CUSTOM, {"expression": "rsi < 30"})
        assert evaluator.evaluate(custom, sample(price=1.0)).reason == "expression_error"


class TestEvaluateAndRecord:
    def _row(self, session_factory, condition_id) -> AlertConditionRecord:
        with session_factory() as session:
            row = RelayRepository(session).get_condition(condition_id)
            session.expunge(row)
            return row

    def test_trigger_records_state_and_event(self, evaluator, add_condition, session_factory, clock):
        condition_id = add_condition(
            name="BTC > 100", params={"operator": ">", "value": 100}, priority="high"
        )

        result, event = evaluator.evaluate_and_record(condition_id, sample(price=110.0), clock.now)

        assert result.met is True
        assert event is not None
        assert event.event_type is EventType.CONDITION_TRIGGERED
        assert event.condition_id == condition_id
        assert event.priority is DeliveryPriority.HIGH
        assert event.urgent is True
        assert event.payload["condition_name"] == "BTC > 100"

        row = self._row(session_factory, condition_id)
        assert as_utc(row.last_triggered_at) == clock.now
        assert row.triggers_today == 1
        assert row.trigger_day == "2026-03-02"
        assert row.total_triggers == 1
        assert row.last_value == 110.0
        assert row.version == 1

        with session_factory() as session:
            events = RelayRepository(session).list_events("condition.triggered")
            assert len(events) == 1
            assert events[0].payload["condition_id"] == condition_id

    def test_low_priority_is_not_urgent(self, evaluator, add_condition, clock):
        condition_id = add_condition(params={"operator": ">", "value": 1}, priority="low")
        _, event = evaluator.evaluate_and_record(condition_id, sample(price=5.0), clock.now)
        assert event.priority is DeliveryPriority.LOW
        assert event.urgent is False

    def test_cooldown_blocks_retrigger(self, evaluator, add_condition, clock):
        condition_id = add_condition(params={"operator": ">", "value": 100})
        evaluator.evaluate_and_record(condition_id, sample(price=110.0), clock.now)

        result, event = evaluator.evaluate_and_record(
            condition_id, sample(price=111.0), clock.advance(seconds=299)
        )
        assert (result.reason, event) == ("cooldown", None)

        result, event = evaluator.evaluate_and_record(
            condition_id, sample(price=112.0), clock.advance(seconds=1)
        )
        assert result.met is True
        assert event is not None

    def test_daily_counter_accumulates(self, evaluator, add_condition, session_factory, clock):
        condition_id = add_condition(params={"operator": ">", "value": 1}, cooldown_seconds=0)
        for _ in range(3):
            evaluator.evaluate_and_record(condition_id, sample(price=2.0), clock.advance(minutes=1))
        row = self._row(session_factory, condition_id)
        assert (row.triggers_today, row.total_triggers) == (3, 3)

    def test_auto_disable_after_triggers(self, evaluator, add_condition, session_factory, clock):
        condition_id = add_condition(
            params={"operator": ">", "value": 1}, auto_disable_after_triggers=1
        )
        _, event = evaluator.evaluate_and_record(condition_id, sample(price=2.0), clock.now)
        assert event is not None
        assert self._row(session_factory, condition_id).status == "auto_disabled"

        result, event = evaluator.evaluate_and_record(
            condition_id, sample(price=2.0), clock.advance(hours=1)
        )
        assert (result.reason, event) == ("auto_disabled", None)

    def test_expired_condition_is_disabled(self, evaluator, add_condition, session_factory, clock):
        condition_id = add_condition(
            params={"operator": ">", "value": 1}, expires_at=clock.now - timedelta(seconds=1)
        )
        result, event = evaluator.evaluate_and_record(condition_id, sample(price=2.0), clock.now)
        assert (result.reason, event) == ("expired", None)
        assert self._row(session_factory, condition_id).status == "auto_disabled"

    def test_miss_tracks_last_value_for_crossing(self, evaluator, add_condition, clock):
        condition_id = add_condition(params={"operator": "crosses_above", "value": 100})

        result, _ = evaluator.evaluate_and_record(condition_id, sample(price=95.0), clock.now)
        assert result.met is False

        result, event = evaluator.evaluate_and_record(
            condition_id, sample(price=105.0), clock.advance(minutes=1)
        )
        assert result.met is True
        assert event.payload["previous"] == 95.0

    def test_unknown_condition(self, evaluator):
        result, event = evaluator.evaluate_and_record(str(uuid.uuid4()), sample(price=1.0))
        assert (result.reason, event) == ("not_found", None)


class TestEvaluateForConfiguration:
    def test_returns_triggered_events_only(self, evaluator, add_condition, clock):
        hit = add_condition(name="hit", params={"operator": ">", "value": 100})
        add_condition(name="miss", params={"operator": "<", "value": 100})
        add_condition(name="paused", params={"operator": ">", "value": 100}, is_paused=True)

        events = evaluator.evaluate_for_configuration(BTC, sample(price=110.0), clock.now)

        assert [event.condition_id for event in events] == [hit]

    def test_unknown_configuration(self, evaluator, clock):
        other = Configuration("ETHUSDT", "4h", "breakout")
        assert evaluator.evaluate_for_configuration(other, sample(price=1.0), clock.now) == []

    def test_priority_mapping(self, evaluator, add_condition, clock):
        add_condition(params={"operator": ">", "value": 1}, priority=ConditionPriority.CRITICAL.value)
        (event,) = evaluator.evaluate_for_configuration(BTC, sample(price=2.0), clock.now)
        assert event.priority is DeliveryPriority.CRITICAL
