"""Periodic sweeps: condition checks and delivery queue draining.

The two sweeps run as independent asyncio tasks and share nothing but the
store, so either can be stopped and restarted without touching the other.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session, sessionmaker

from alertrelay_engine.conditions.evaluator import ConditionEvaluator
from alertrelay_engine.config.models import SchedulerConfig
from alertrelay_engine.delivery.dispatcher import DeliveryDispatcher
from alertrelay_engine.market_data.provider import MarketDataProvider
from alertrelay_engine.models.condition import MarketSample
from alertrelay_engine.models.events import TriggerEvent
from alertrelay_engine.monitoring.metrics import MetricsService
from alertrelay_engine.monitoring.sentry_service import get_sentry
from alertrelay_engine.persistence.engine import session_scope
from alertrelay_engine.persistence.repository import RelayRepository
from alertrelay_engine.subscribers.resolver import SubscriberResolver

logger = logging.getLogger(__name__)

CONDITION_SWEEP = "conditions"
DISPATCH_SWEEP = "dispatch"


@dataclass(frozen=True)
class _DueCondition:
    id: str
    name: str
    symbol: str
    timeframe: str
    check_interval_seconds: int


class RelayScheduler:
    """Runs the condition sweep and the dispatch sweep on their own intervals."""

    def __init__(
        self,
        config: SchedulerConfig,
        session_factory: sessionmaker[Session],
        evaluator: ConditionEvaluator,
        resolver: SubscriberResolver,
        dispatcher: DeliveryDispatcher,
        provider: MarketDataProvider,
        on_event: Callable[[TriggerEvent], None] | None = None,
        metrics: MetricsService | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize scheduler.

        Args:
            config: Sweep intervals and batch size
            session_factory: SQLAlchemy session factory
            evaluator: Condition evaluator (owns gating and trigger bookkeeping)
            resolver: Subscriber resolver for triggered conditions
            dispatcher: Delivery dispatcher drained by the dispatch sweep
            provider: Market-data collaborator
            on_event: Callback for every trigger event (event bus publish)
            metrics: Optional metrics service
            clock: Time source (defaults to UTC wall clock)
        """
        self.config = config
        self.session_factory = session_factory
        self.evaluator = evaluator
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.provider = provider
        self.on_event = on_event
        self.metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._stops: dict[str, asyncio.Event] = {}
        self._last_purge: datetime | None = None
        self.sweeps: dict[str, int] = {CONDITION_SWEEP: 0, DISPATCH_SWEEP: 0}

    # ------------------------------------------------------------------
    # Single sweeps
    # ------------------------------------------------------------------

    async def run_condition_sweep(self, now: datetime | None = None) -> list[TriggerEvent]:
        """
        Check every due condition once.

        Each due condition is rescheduled to ``now + check_interval`` whether
        it triggered, missed, had no market data or failed.

        Returns:
            Trigger events produced by this sweep
        """
        now = now or self._clock()
        due = self._load_due(now)
        events: list[TriggerEvent] = []
        samples: dict[tuple[str, str], MarketSample | None] = {}

        for condition in due:
            try:
                key = (condition.symbol, condition.timeframe)
                if key not in samples:
                    samples[key] = await self.provider.get_sample(*key)
                sample = samples[key]
                if sample is None:
                    logger.debug(f"No market data for {key}, skipping {condition.name}")
                    continue
                _, event = self.evaluator.evaluate_and_record(condition.id, sample, now)
                if event is not None:
                    events.append(event)
                    self._fan_out(event, now)
            except Exception as e:
                logger.exception(f"Condition sweep failed for {condition.name}")
                self._capture(e, {"phase": "condition_sweep", "condition_id": condition.id})
            finally:
                self._reschedule(condition, now)

        self.sweeps[CONDITION_SWEEP] += 1
        if due:
            logger.info(f"🔍 Condition sweep: {len(due)} checked, {len(events)} triggered")
        return events

    async def run_dispatch_sweep(self, now: datetime | None = None) -> dict[str, int]:
        """Drain one dispatcher batch and purge expired tasks when the purge interval elapsed."""
        now = now or self._clock()
        outcomes = await self.dispatcher.dispatch_once()
        purge_due = self._last_purge is None or now - self._last_purge >= timedelta(
            seconds=self.config.purge_interval_seconds
        )
        if purge_due:
            self.dispatcher.purge()
            self._last_purge = now
        self.sweeps[DISPATCH_SWEEP] += 1
        return outcomes

    def _load_due(self, now: datetime) -> list[_DueCondition]:
        with session_scope(self.session_factory) as session:
            repo = RelayRepository(session)
            due = []
            for row in repo.due_conditions(now, self.config.condition_batch_size):
                config_row = repo.get_configuration_by_id(row.configuration_id)
                if config_row is None:
                    continue
                due.append(
                    _DueCondition(
                        id=str(row.id),
                        name=row.name,
                        symbol=config_row.symbol,
                        timeframe=config_row.timeframe,
                        check_interval_seconds=row.check_interval_seconds,
                    )
                )
            return due

    def _reschedule(self, condition: _DueCondition, now: datetime) -> None:
        next_check = now + timedelta(seconds=condition.check_interval_seconds)
        with session_scope(self.session_factory) as session:
            RelayRepository(session).update_condition(condition.id, next_check_at=next_check)

    def _fan_out(self, event: TriggerEvent, now: datetime) -> None:
        if self.metrics is not None:
            self.metrics.record_condition_trigger(str(event.payload.get("condition_type", "unknown")))
        self.resolver.resolve(event, now)
        if self.on_event is not None:
            self.on_event(event)

    @staticmethod
    def _capture(error: Exception, context: dict[str, str]) -> None:
        sentry = get_sentry()
        if sentry:
            sentry.capture_error(error, context=context)

    # ------------------------------------------------------------------
    # Background loops
    # ------------------------------------------------------------------

    def start(self, name: str | None = None) -> None:
        """Start one sweep (``"conditions"`` / ``"dispatch"``) or both when ``name`` is None."""
        sweeps: dict[str, tuple[Callable[[], Awaitable[object]], float]] = {
            CONDITION_SWEEP: (self.run_condition_sweep, self.config.condition_sweep_seconds),
            DISPATCH_SWEEP: (self.run_dispatch_sweep, self.config.dispatch_sweep_seconds),
        }
        names = [name] if name else list(sweeps)
        for sweep_name in names:
            if sweep_name not in sweeps:
                raise ValueError(f"Unknown sweep {sweep_name!r}")
            if self.is_running(sweep_name):
                continue
            sweep, interval = sweeps[sweep_name]
            stop = asyncio.Event()
            self._stops[sweep_name] = stop
            self._tasks[sweep_name] = asyncio.create_task(
                self._loop(sweep_name, sweep, interval, stop), name=f"alertrelay-{sweep_name}"
            )
            logger.info(f"▶️  {sweep_name} sweep started (every {interval}s)")

    async def stop(self, name: str | None = None) -> None:
        """Stop one sweep or both; waits for the running iteration to finish."""
        names = [name] if name else list(self._tasks)
        for sweep_name in names:
            stop = self._stops.pop(sweep_name, None)
            task = self._tasks.pop(sweep_name, None)
            if stop is not None:
                stop.set()
            if task is not None:
                await task
                logger.info(f"⏹️ {sweep_name} sweep stopped")

    def is_running(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    async def _loop(
        self,
        name: str,
        sweep: Callable[[], Awaitable[object]],
        interval: float,
        stop: asyncio.Event,
    ) -> None:
        while not stop.is_set():
            try:
                await sweep()
            except Exception as e:
                logger.exception(f"{name} sweep failed")
                self._capture(e, {"phase": f"{name}_sweep"})
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def run(self, max_sweeps: int | None = None) -> None:
        """
        Run both sweeps until stopped, or until the dispatch sweep ran ``max_sweeps`` times.

        Args:
            max_sweeps: Dispatch sweeps to run before returning (None = forever)
        """
        self.start()
        try:
            while max_sweeps is None or self.sweeps[DISPATCH_SWEEP] < max_sweeps:
                if not self._tasks:
                    break
                await asyncio.sleep(self.config.dispatch_sweep_seconds)
        finally:
            await self.stop()
