"""Inbound webhook signal validation, deduplication and persistence."""

import hashlib
import hmac
import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from alertrelay_engine.config.models import ValidatorConfig
from alertrelay_engine.errors import SignalValidationError
from alertrelay_engine.models.signal import Configuration, Direction, Signal, SignalKind
from alertrelay_engine.persistence.engine import session_scope
from alertrelay_engine.persistence.repository import RelayRepository, as_utc

logger = logging.getLogger(__name__)

KIND_ALIASES: dict[str, SignalKind] = {
    "entry-long": SignalKind.ENTRY_LONG,
    "entry_long": SignalKind.ENTRY_LONG,
    "buy": SignalKind.ENTRY_LONG,
    "long": SignalKind.ENTRY_LONG,
    "entry-short": SignalKind.ENTRY_SHORT,
    "entry_short": SignalKind.ENTRY_SHORT,
    "sell": SignalKind.ENTRY_SHORT,
    "short": SignalKind.ENTRY_SHORT,
    "take-profit-hit": SignalKind.TAKE_PROFIT_HIT,
    "take_profit_hit": SignalKind.TAKE_PROFIT_HIT,
    "tp_hit": SignalKind.TAKE_PROFIT_HIT,
    "stop-loss-hit": SignalKind.STOP_LOSS_HIT,
    "stop_loss_hit": SignalKind.STOP_LOSS_HIT,
    "sl_hit": SignalKind.STOP_LOSS_HIT,
}

SIGNATURE_PREFIX = "sha256="


def verify_signature(raw_payload: bytes, signature: str | None, secret: str) -> bool:
    """
    Check an HMAC-SHA256 webhook signature in constant time.

    Args:
        raw_payload: Exact request body bytes
        signature: Header value, ``<hex>`` or ``sha256=<hex>``
        secret: Shared secret

    Returns:
        True when the signature matches
    """
    if not signature:
        return False
    provided = signature.strip()
    if provided.lower().startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]
    expected = hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, provided.lower())


def compute_idempotency_key(source: str, normalized: dict[str, Any]) -> str:
    """SHA-256 of source + canonical JSON of the normalized payload."""
    canonical = json.dumps(normalized, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(f"{source}:{canonical}".encode("utf-8")).hexdigest()


def _required_str(data: dict[str, Any], *names: str) -> str:
    for name in names:
        value = data.get(name)
        if value is None:
            continue
        if not isinstance(value, str):
            raise SignalValidationError(f"{names[0]} must be a string", field=names[0])
        if value.strip():
            return value.strip()
    raise SignalValidationError(f"Missing required field: {names[0]}", field=names[0])


def _price(value: Any, field: str, required: bool = False) -> float | None:
    if value is None or value == "":
        if required:
            raise SignalValidationError(f"Missing required field: {field}", field=field)
        return None
    if isinstance(value, bool):
        raise SignalValidationError(f"{field} must be a number", field=field)
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        raise SignalValidationError(f"{field} must be a number", field=field) from None
    if number != number or number <= 0 or number == float("inf"):
        raise SignalValidationError(f"{field} must be a positive number", field=field)
    return number


def _timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601 or epoch seconds / milliseconds."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            seconds = value / 1000.0 if value > 1e11 else float(value)
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise SignalValidationError("timestamp is out of range", field="timestamp") from None
    text = str(value).strip()
    if text.isdigit():
        return _timestamp(int(text))
    try:
        return as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except OverflowError:
        raise SignalValidationError("timestamp is out of range", field="timestamp") from None
    except ValueError:
        raise SignalValidationError("timestamp must be ISO-8601 or epoch", field="timestamp") from None


def parse_payload(data: dict[str, Any]) -> dict[str, Any]:
    """
    Validate structure and normalize a decoded webhook payload.

    Only fields present in the payload appear in the result, so the
    idempotency key of a resent alert is stable.

    Args:
        data: Decoded JSON object

    Returns:
        Normalized field dictionary

    Raises:
        SignalValidationError: On any missing or malformed field
    """
    symbol = _required_str(data, "symbol", "ticker").upper()
    timeframe = _required_str(data, "timeframe", "interval")
    strategy = _required_str(data, "strategy")
    raw_kind = _required_str(data, "signal", "kind", "action")
    kind = KIND_ALIASES.get(raw_kind.lower())
    if kind is None:
        raise SignalValidationError(f"Unknown signal kind: {raw_kind}", field="signal")

    normalized: dict[str, Any] = {
        "symbol": symbol,
        "timeframe": timeframe,
        "strategy": strategy,
        "kind": kind.value,
        "price": _price(data.get("price"), "price", required=True),
    }

    take_profit = _price(data.get("take_profit", data.get("takeProfitPrice")), "take_profit")
    stop_loss = _price(data.get("stop_loss", data.get("stopLossPrice")), "stop_loss")
    if take_profit is not None:
        normalized["take_profit"] = take_profit
    if stop_loss is not None:
        normalized["stop_loss"] = stop_loss

    direction = data.get("direction")
    if direction not in (None, ""):
        if kind.is_entry:
            raise SignalValidationError("direction is only accepted on exit signals", field="direction")
        try:
            normalized["direction"] = Direction(str(direction).lower()).value
        except ValueError:
            raise SignalValidationError(f"Unknown direction: {direction}", field="direction") from None

    trade_number = data.get("trade_number", data.get("tradeNumber"))
    if trade_number not in (None, ""):
        if isinstance(trade_number, bool):
            raise SignalValidationError("trade_number must be an integer", field="trade_number")
        try:
            number = int(trade_number)
        except (TypeError, ValueError, OverflowError):
            raise SignalValidationError("trade_number must be an integer", field="trade_number") from None
        if number < 1:
            raise SignalValidationError("trade_number must be >= 1", field="trade_number")
        normalized["trade_number"] = number

    timestamp = _timestamp(data.get("timestamp"))
    if timestamp is not None:
        normalized["timestamp"] = timestamp.isoformat()

    metadata = data.get("metadata")
    if metadata is not None:
        if not isinstance(metadata, dict):
            raise SignalValidationError("metadata must be an object", field="metadata")
        normalized["metadata"] = metadata

    return normalized


class SignalValidator:
    """
    Authenticates, validates, deduplicates and persists inbound signals.

    Every accepted signal (including duplicates, as markers pointing at the
    original) is stored before ``validate`` returns.
    """

    def __init__(
        self,
        config: ValidatorConfig,
        session_factory: sessionmaker[Session],
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize validator.

        Args:
            config: Validator configuration
            session_factory: SQLAlchemy session factory
            clock: Time source (defaults to UTC wall clock)
        """
        self.config = config
        self.session_factory = session_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def validate(self, raw_payload: bytes | str, signature: str | None = None) -> Signal:
        """
        Validate one inbound webhook body.

        Args:
            raw_payload: Raw request body
            signature: Signature header value, if any

        Returns:
            Stored Signal (``duplicate=True`` when seen inside the dedup window)

        Raises:
            SignalValidationError: Bad signature, bad JSON or invalid fields
        """
        body = raw_payload.encode("utf-8") if isinstance(raw_payload, str) else raw_payload

        if self.config.shared_secret and not verify_signature(
            body, signature, self.config.shared_secret
        ):
            logger.warning("🚫 Rejected signal with invalid signature")
            raise SignalValidationError("Invalid webhook signature", field="signature")

        try:
            data = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise SignalValidationError("Payload is not valid JSON") from None
        if not isinstance(data, dict):
            raise SignalValidationError("Payload must be a JSON object")

        normalized = parse_payload(data)
        source = self.config.source
        key = compute_idempotency_key(source, normalized)
        now = self._clock()

        configuration = Configuration(
            symbol=normalized["symbol"],
            timeframe=normalized["timeframe"],
            strategy=normalized["strategy"],
        )
        kind = SignalKind(normalized["kind"])
        timestamp = (
            datetime.fromisoformat(normalized["timestamp"]) if "timestamp" in normalized else now
        )
        direction = Direction(normalized["direction"]) if "direction" in normalized else None

        with session_scope(self.session_factory) as session:
            repo = RelayRepository(session)
            window_start = now - timedelta(seconds=self.config.dedup_window_seconds)
            original = (
                repo.find_original_signal(key, window_start)
                if self.config.dedup_window_seconds > 0
                else None
            )
            record = repo.add_signal(
                source=source,
                symbol=configuration.symbol,
                timeframe=configuration.timeframe,
                strategy=configuration.strategy,
                kind=kind.value,
                price=normalized["price"],
                take_profit=normalized.get("take_profit"),
                stop_loss=normalized.get("stop_loss"),
                direction=direction.value if direction else None,
                trade_number=normalized.get("trade_number"),
                signal_ts=timestamp,
                received_at=now,
                idempotency_key=key,
                duplicate_of=original.id if original else None,
                status="duplicate" if original else "received",
                meta=normalized.get("metadata"),
            )
            if original is not None:
                repo.append_event(
                    "signal.duplicate",
                    "INFO",
                    {"signal_id": str(record.id), "original_id": str(original.id), "key": key},
                    symbol=configuration.symbol,
                )
            signal_id = str(record.id)
            duplicate_of = str(original.id) if original else None

        if duplicate_of:
            logger.info(f"♻️ Duplicate signal for {configuration} (original={duplicate_of})")
        else:
            logger.info(f"📥 Accepted {kind.value} signal for {configuration} @ {normalized['price']}")

        return Signal(
            id=signal_id,
            configuration=configuration,
            kind=kind,
            price=normalized["price"],
            timestamp=timestamp,
            idempotency_key=key,
            source=source,
            take_profit=normalized.get("take_profit"),
            stop_loss=normalized.get("stop_loss"),
            direction=direction,
            trade_number=normalized.get("trade_number"),
            duplicate=duplicate_of is not None,
            duplicate_of=duplicate_of,
            metadata=dict(normalized.get("metadata") or {}),
        )
