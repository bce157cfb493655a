"""Unit tests for inbound signal validation."""

import hashlib
import hmac
import json
import uuid

import pytest

from alertrelay_engine.config.models import ValidatorConfig
from alertrelay_engine.errors import SignalValidationError
from alertrelay_engine.ingestion.validator import (
    SignalValidator,
    compute_idempotency_key,
    parse_payload,
    verify_signature,
)
from alertrelay_engine.models.signal import Direction, SignalKind
from alertrelay_engine.persistence.models import SignalRecord
from alertrelay_engine.persistence.repository import RelayRepository

SECRET = "s3cret"


def sign(body: str, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


class TestVerifySignature:
    def test_valid_hex_signature(self):
        body = b'{"a": 1}'
        assert verify_signature(body, sign(body.decode()), SECRET) is True

    def test_prefixed_signature(self):
        body = b'{"a": 1}'
        assert verify_signature(body, "sha256=" + sign(body.decode()), SECRET) is True

    def test_missing_signature_is_mismatch(self):
        assert verify_signature(b"{}", None, SECRET) is False

    def test_wrong_secret(self):
        body = b'{"a": 1}'
        assert verify_signature(body, sign(body.decode(), "other"), SECRET) is False


class TestParsePayload:
    def test_minimal_entry(self):
        normalized = parse_payload(
            {"symbol": "btcusdt", "timeframe": "1h", "strategy": "breakout", "signal": "BUY", "price": "100.5"}
        )
        assert normalized == {
            "symbol": "BTCUSDT",
            "timeframe": "1h",
            "strategy": "breakout",
            "kind": "entry-long",
            "price": 100.5,
        }

    @pytest.mark.parametrize(
        ("raw", "kind"),
        [
            ("entry-long", SignalKind.ENTRY_LONG),
            ("LONG", SignalKind.ENTRY_LONG),
            ("sell", SignalKind.ENTRY_SHORT),
            ("SHORT", SignalKind.ENTRY_SHORT),
            ("TP_HIT", SignalKind.TAKE_PROFIT_HIT),
            ("sl_hit", SignalKind.STOP_LOSS_HIT),
            ("stop-loss-hit", SignalKind.STOP_LOSS_HIT),
        ],
    )
    def test_kind_aliases(self, raw, kind):
        normalized = parse_payload(
            {"ticker": "ETHUSDT", "interval": "4h", "strategy": "s", "action": raw, "price": 10}
        )
        assert normalized["kind"] == kind.value

    def test_original_webhook_field_names(self):
        normalized = parse_payload(
            {
                "symbol": "BTCUSDT",
                "timeframe": "1h",
                "strategy": "s",
                "signal": "TP_HIT",
                "price": 110,
                "takeProfitPrice": 110,
                "stopLossPrice": 95,
                "tradeNumber": "3",
                "direction": "LONG",
            }
        )
        assert normalized["take_profit"] == 110.0
        assert normalized["stop_loss"] == 95.0
        assert normalized["trade_number"] == 3
        assert normalized["direction"] == "long"

    def test_epoch_millis_timestamp(self):
        normalized = parse_payload(
            {"symbol": "X", "timeframe": "1h", "strategy": "s", "signal": "buy", "price": 1,
             "timestamp": 1772452800000}
        )
        assert normalized["timestamp"] == "2026-03-02T12:00:00+00:00"

    @pytest.mark.parametrize(
        ("payload", "field"),
        [
            ({"timeframe": "1h", "strategy": "s", "signal": "buy", "price": 1}, "symbol"),
            ({"symbol": "X", "strategy": "s", "signal": "buy", "price": 1}, "timeframe"),
            ({"symbol": "X", "timeframe": "1h", "signal": "buy", "price": 1}, "strategy"),
            ({"symbol": "X", "timeframe": "1h", "strategy": "s", "price": 1}, "signal"),
            ({"symbol": "X", "timeframe": "1h", "strategy": "s", "signal": "buy"}, "price"),
            ({"symbol": "X", "timeframe": "1h", "strategy": "s", "signal": "buy", "price": -1}, "price"),
            ({"symbol": "X", "timeframe": "1h", "strategy": "s", "signal": "buy", "price": "abc"}, "price"),
            ({"symbol": "X", "timeframe": "1h", "strategy": "s", "signal": "buy", "price": True}, "price"),
            ({"symbol": "X", "timeframe": "1h", "strategy": "s", "signal": "hold", "price": 1}, "signal"),
            ({"symbol": "X", "timeframe": "1h", "strategy": "s", "signal": "buy", "price": 1,
              "direction": "long"}, "direction"),
            ({"symbol": "X", "timeframe": "1h", "strategy": "s", "signal": "tp_hit", "price": 1,
              "trade_number": 0}, "trade_number"),
            ({"symbol": "X", "timeframe": "1h", "strategy": "s", "signal": "buy", "price": 1,
              "metadata": [1]}, "metadata"),
        ],
    )
    def test_invalid_fields(self, payload, field):
        with pytest.raises(SignalValidationError) as exc_info:
            parse_payload(payload)
        assert exc_info.value.field == field

    @pytest.mark.parametrize(
        ("name", "value"),
        [
            ("symbol", ["BTC"]),
            ("symbol", {"a": 1}),
            ("symbol", 12345),
            ("timeframe", 60),
            ("strategy", True),
        ],
    )
    def test_wrong_typed_required_fields(self, name, value):
        payload = {"symbol": "BTCUSDT", "timeframe": "1h", "strategy": "s", "signal": "buy", "price": 1}
        payload[name] = value
        with pytest.raises(SignalValidationError, match="must be a string") as exc_info:
            parse_payload(payload)
        assert exc_info.value.field == name

    def test_wrong_typed_kind(self):
        with pytest.raises(SignalValidationError) as exc_info:
            parse_payload({"symbol": "X", "timeframe": "1h", "strategy": "s", "signal": 1, "price": 1})
        assert exc_info.value.field == "signal"

    @pytest.mark.parametrize("timestamp", [1e20, -1e20, 10**30, float("nan"), "99999999999999999999999"])
    def test_out_of_range_timestamp(self, timestamp):
        with pytest.raises(SignalValidationError) as exc_info:
            parse_payload(
                {"symbol": "X", "timeframe": "1h", "strategy": "s", "signal": "buy", "price": 1,
                 "timestamp": timestamp}
            )
        assert exc_info.value.field == "timestamp"

    @pytest.mark.parametrize(
        ("field", "value"), [("price", 10**400), ("trade_number", float("inf")), ("trade_number", True)]
    )
    def test_unconvertible_numbers(self, field, value):
        payload = {"symbol": "X", "timeframe": "1h", "strategy": "s", "signal": "tp_hit", "price": 1}
        payload[field] = value
        with pytest.raises(SignalValidationError) as exc_info:
            parse_payload(payload)
        assert exc_info.value.field == field


def test_idempotency_key_ignores_key_order():
    a = compute_idempotency_key("tv", {"symbol": "X", "price": 1.0})
    b = compute_idempotency_key("tv", {"price": 1.0, "symbol": "X"})
    c = compute_idempotency_key("other", {"symbol": "X", "price": 1.0})
    assert a == b
    assert a != c


class TestSignalValidator:
    @pytest.fixture
    def validator(self, session_factory, clock):
        return SignalValidator(ValidatorConfig(), session_factory, clock=clock)

    def test_validate_persists_signal(self, validator, session_factory, webhook, clock):
        signal = validator.validate(webhook(signal="buy", price=100, take_profit=110, stop_loss=95))

        assert signal.kind is SignalKind.ENTRY_LONG
        assert signal.price == 100.0
        assert signal.take_profit == 110.0
        assert signal.duplicate is False
        assert signal.timestamp == clock.now

        with session_factory() as session:
            row = session.get(SignalRecord, uuid.UUID(signal.id))
            assert row is not None
            assert row.status == "received"
            assert row.idempotency_key == signal.idempotency_key

    def test_exit_direction_parsed(self, validator, webhook):
        signal = validator.validate(webhook(signal="SL_HIT", price=95, direction="short"))
        assert signal.kind is SignalKind.STOP_LOSS_HIT
        assert signal.direction is Direction.SHORT

    def test_duplicate_inside_window(self, validator, session_factory, webhook, clock):
        body = webhook(signal="buy", price=100)
        first = validator.validate(body)
        clock.advance(seconds=60)
        second = validator.validate(body)

        assert second.duplicate is True
        assert second.duplicate_of == first.id
        assert second.id != first.id
        with session_factory() as session:
            events = RelayRepository(session).list_events("signal.duplicate")
            assert len(events) == 1
            assert events[0].payload["original_id"] == first.id

    def test_same_payload_after_window_is_new(self, validator, webhook, clock):
        body = webhook(signal="buy", price=100)
        validator.validate(body)
        clock.advance(seconds=301)
        assert validator.validate(body).duplicate is False

    def test_invalid_json(self, validator):
        with pytest.raises(SignalValidationError, match="not valid JSON"):
            validator.validate(b"{nope")

    def test_non_object_json(self, validator):
        with pytest.raises(SignalValidationError, match="JSON object"):
            validator.validate(json.dumps([1, 2]))

    def test_signature_required_when_secret_set(self, session_factory, webhook):
        validator = SignalValidator(ValidatorConfig(shared_secret=SECRET), session_factory)
        body = webhook(signal="buy", price=100)

        with pytest.raises(SignalValidationError) as exc_info:
            validator.validate(body, None)
        assert exc_info.value.field == "signature"

        assert validator.validate(body, sign(body)).kind is SignalKind.ENTRY_LONG

    def test_rejected_signal_not_persisted(self, validator, session_factory, webhook):
        with pytest.raises(SignalValidationError):
            validator.validate(webhook(signal="buy"))
        with session_factory() as session:
            assert session.query(SignalRecord).count() == 0
