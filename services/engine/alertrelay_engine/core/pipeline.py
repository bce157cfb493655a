"""Signal pipeline: validation -> ledger -> conditions -> fan-out.

``ingest_signal`` validates and stores the signal on the caller's thread,
then hands processing to a worker pool and waits up to the configured
deadline. Work that misses the deadline keeps running in the background
and the caller gets ``status="processing"``.
"""

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session, sessionmaker

from alertrelay_engine.conditions.evaluator import ConditionEvaluator
from alertrelay_engine.config.models import RelayConfig
from alertrelay_engine.core.events import EventBus
from alertrelay_engine.errors import CapacityExceeded, DuplicateSignal, OrphanExit
from alertrelay_engine.ingestion.validator import SignalValidator
from alertrelay_engine.ledger.trade_ledger import TradeLedger
from alertrelay_engine.models.condition import MarketSample
from alertrelay_engine.models.delivery import DeliveryStatus
from alertrelay_engine.models.events import EventType, TriggerEvent
from alertrelay_engine.models.signal import Configuration, Signal
from alertrelay_engine.models.trade import Trade
from alertrelay_engine.monitoring.metrics import MetricsService
from alertrelay_engine.monitoring.sentry_service import get_sentry
from alertrelay_engine.persistence.engine import session_scope
from alertrelay_engine.persistence.repository import RelayRepository
from alertrelay_engine.subscribers.resolver import SubscriberResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    """Acknowledgement returned to the ingestion caller.

    Attributes:
        tracking_id: Stored signal id
        duplicate: True when the signal repeated one inside the dedup window
        status: "processed", "rejected", "failed", "processing" or "duplicate"
        reason: Rejection or failure reason, or the ledger action when processed
    """

    tracking_id: str
    duplicate: bool
    status: str
    reason: str | None = None


class SignalPipeline:
    """Wires validator, ledger, evaluator and resolver behind one facade."""

    def __init__(
        self,
        config: RelayConfig,
        session_factory: sessionmaker[Session],
        bus: EventBus | None = None,
        metrics: MetricsService | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize pipeline.

        Args:
            config: Root relay configuration
            session_factory: SQLAlchemy session factory
            bus: Event bus receiving every trigger event
            metrics: Optional metrics service
            clock: Time source shared by every component (defaults to UTC wall clock)
        """
        self.config = config
        self.session_factory = session_factory
        self.bus = bus or EventBus()
        self.metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.validator = SignalValidator(config.validator, session_factory, clock=self._clock)
        self.ledger = TradeLedger(config.ledger, session_factory, clock=self._clock)
        self.evaluator = ConditionEvaluator(config.conditions, session_factory, clock=self._clock)
        self.resolver = SubscriberResolver(
            session_factory,
            max_attempts=config.dispatch.max_attempts,
            parse_modes={config.telegram.channel_id: config.telegram.parse_mode},
            clock=self._clock,
            persistence_retries=config.ledger.persistence_retries,
            retry_base_delay_seconds=config.ledger.retry_base_delay_seconds,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=config.pipeline.workers, thread_name_prefix="alertrelay-signal"
        )

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest_signal(self, payload: bytes | str, signature: str | None = None) -> IngestResult:
        """
        Validate, store and process one inbound signal.

        Args:
            payload: Raw webhook body
            signature: Signature header value, if any

        Returns:
            IngestResult; ``status="processing"`` when the deadline passed first

        Raises:
            SignalValidationError: Bad signature or malformed payload
        """
        signal = self.validator.validate(payload, signature)
        if signal.duplicate:
            self._record_signal_metric("duplicate")
            return IngestResult(
                tracking_id=signal.id,
                duplicate=True,
                status="duplicate",
                reason=f"duplicate_of:{signal.duplicate_of}",
            )

        future = self._executor.submit(self.process_signal, signal)
        try:
            return future.result(timeout=self.config.pipeline.processing_deadline_seconds)
        except FutureTimeout:
            logger.info(f"⏳ Signal {signal.id} still processing after deadline, acknowledging")
            return IngestResult(tracking_id=signal.id, duplicate=False, status="processing")

    def process_signal(self, signal: Signal) -> IngestResult:
        """
        Apply a stored signal to the ledger, evaluate bound conditions and fan out.

        Never raises: the outcome is recorded on the signal row and returned.

        Args:
            signal: Validated, stored signal

        Returns:
            IngestResult with the processing outcome
        """
        events: list[TriggerEvent] = []
        status, reason = "processed", None
        try:
            outcome = self.ledger.apply(signal)
            events.extend(outcome.events)
            reason = outcome.action
        except DuplicateSignal as exc:
            self._record_signal_metric("duplicate")
            return IngestResult(
                tracking_id=signal.id,
                duplicate=True,
                status="duplicate",
                reason=f"duplicate_of:{exc.original_id}",
            )
        except (CapacityExceeded, OrphanExit) as exc:
            status = "rejected"
            reason = "capacity_exceeded" if isinstance(exc, CapacityExceeded) else "orphan_exit"
        except Exception as exc:
            return self._fail(signal, exc, phase="ledger")

        sentry = get_sentry()
        if sentry and status == "processed":
            sentry.add_breadcrumb("ledger", f"{reason} {signal.configuration}", {"signal_id": signal.id})

        try:
            if self.metrics is not None and status == "processed" and reason != "noop":
                with session_scope(self.session_factory) as session:
                    self.metrics.set_open_trades(RelayRepository(session).count_open_trades())
            if self.config.conditions.evaluate_on_signal:
                events.extend(self._evaluate_conditions(signal))
            while events:
                self._fan_out(events[0])
                events.pop(0)
        except Exception as exc:
            return self._fail(signal, exc, phase="fan_out", unsent=events)

        with session_scope(self.session_factory) as session:
            RelayRepository(session).mark_signal(signal.id, status, reason=reason)
        self._record_signal_metric("accepted" if status == "processed" else status)
        return IngestResult(tracking_id=signal.id, duplicate=False, status=status, reason=reason)

    def _evaluate_conditions(self, signal: Signal) -> list[TriggerEvent]:
        sample = MarketSample(
            symbol=signal.configuration.symbol,
            timeframe=signal.configuration.timeframe,
            price=signal.price,
            timestamp=signal.timestamp,
        )
        return self.evaluator.evaluate_for_configuration(signal.configuration, sample, self._clock())

    def _fan_out(self, event: TriggerEvent) -> None:
        if self.metrics is not None:
            if event.event_type is EventType.CONDITION_TRIGGERED:
                self.metrics.record_condition_trigger(
                    str(event.payload.get("condition_type", "unknown"))
                )
            else:
                self.metrics.record_trade(event.event_type.value)
        self.resolver.resolve(event)
        self.bus.publish(event)

    def _fail(
        self,
        signal: Signal,
        error: Exception,
        phase: str,
        unsent: list[TriggerEvent] | None = None,
    ) -> IngestResult:
        logger.exception(f"❌ Processing failed for signal {signal.id} ({phase})")
        message = f"{type(error).__name__}: {error}"
        with session_scope(self.session_factory) as session:
            repo = RelayRepository(session)
            repo.mark_signal(signal.id, "failed", reason=phase, error=message)
            repo.append_event(
                "signal.processing_failed",
                "ERROR",
                {
                    "signal_id": signal.id,
                    "configuration": signal.configuration.key,
                    "kind": signal.kind.value,
                    "phase": phase,
                    "error": message,
                    # Trigger events that never reached the delivery queue
                    "unsent_events": [
                        {"id": event.id, "type": event.event_type.value} for event in unsent or []
                    ],
                },
                symbol=signal.configuration.symbol,
            )
        sentry = get_sentry()
        if sentry:
            sentry.capture_signal_failure(error, signal.id, signal.configuration.key, phase)
        self._record_signal_metric("failed")
        return IngestResult(tracking_id=signal.id, duplicate=False, status="failed", reason=phase)

    def _record_signal_metric(self, result: str) -> None:
        if self.metrics is not None:
            self.metrics.record_signal(result)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_trade_ledger_snapshot(self, configuration: Configuration) -> list[Trade]:
        """All trades of a configuration ordered by trade number."""
        return self.ledger.snapshot(configuration)

    def get_delivery_stats(self, window: timedelta | None = None) -> dict[str, int]:
        """
        Delivery task counts by status.

        Args:
            window: Only count tasks enqueued within this window (all when None)

        Returns:
            Mapping of every delivery status to its task count
        """
        since = self._clock() - window if window is not None else None
        with session_scope(self.session_factory) as session:
            counts = RelayRepository(session).delivery_counts(since)
        return {status.value: counts.get(status.value, 0) for status in DeliveryStatus}

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work; with ``wait`` finish signals still in flight."""
        self._executor.shutdown(wait=wait)
        logger.info("🛑 Signal pipeline stopped")
