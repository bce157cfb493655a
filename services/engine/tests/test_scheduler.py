"""Tests for the condition and dispatch sweeps."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from alertrelay_engine.conditions.evaluator import ConditionEvaluator
from alertrelay_engine.config.models import ConditionsConfig, SchedulerConfig
from alertrelay_engine.market_data import StaticMarketDataProvider
from alertrelay_engine.models.condition import MarketSample
from alertrelay_engine.models.signal import Configuration
from alertrelay_engine.persistence.models import DeliveryTaskRecord
from alertrelay_engine.persistence.repository import RelayRepository, as_utc
from alertrelay_engine.scheduler.scheduler import CONDITION_SWEEP, DISPATCH_SWEEP, RelayScheduler
from alertrelay_engine.subscribers.resolver import SubscriberResolver

FAST = SchedulerConfig(
    condition_sweep_seconds=0.01, dispatch_sweep_seconds=0.01, purge_interval_seconds=3600
)


@pytest.fixture
def provider() -> StaticMarketDataProvider:
    return StaticMarketDataProvider([MarketSample("BTCUSDT", "1h", price=110.0)])


@pytest.fixture
def dispatcher() -> MagicMock:
    dispatcher = MagicMock()
    dispatcher.dispatch_once = AsyncMock(return_value={"sent": 1})
    dispatcher.purge.return_value = 0
    return dispatcher


@pytest.fixture
def published() -> list:
    return []


@pytest.fixture
def make_scheduler(session_factory, dispatcher, provider, published, clock):
    def _make(config: SchedulerConfig = FAST, provider=provider) -> RelayScheduler:
        return RelayScheduler(
            config,
            session_factory,
            evaluator=ConditionEvaluator(ConditionsConfig(), session_factory, clock=clock),
            resolver=SubscriberResolver(session_factory, clock=clock),
            dispatcher=dispatcher,
            provider=provider,
            on_event=published.append,
            clock=clock,
        )

    return _make


def next_check(session_factory, condition_id):
    with session_factory() as session:
        return as_utc(RelayRepository(session).get_condition(condition_id).next_check_at)


class TestConditionSweep:
    @pytest.mark.asyncio
    async def test_trigger_fans_out(self, make_scheduler, add_condition, seed, btc, session_factory, published, clock):
        condition_id = add_condition(params={"operator": ">", "value": 100})
        add_condition(name="miss", params={"operator": "<", "value": 100})
        seed(
            lambda repo: repo.add_subscription(
                channel_id="telegram",
                address="111",
                configuration_id=repo.get_or_create_configuration(btc).id,
            )
        )
        scheduler = make_scheduler()

        events = await scheduler.run_condition_sweep(clock.now)

        assert [event.condition_id for event in events] == [condition_id]
        assert published == events
        with session_factory() as session:
            assert session.query(DeliveryTaskRecord).count() == 1
        assert next_check(session_factory, condition_id) == clock.now + timedelta(seconds=60)
        assert scheduler.sweeps[CONDITION_SWEEP] == 1

    @pytest.mark.asyncio
    async def test_rescheduled_condition_waits_for_interval(
        self, make_scheduler, add_condition, clock
    ):
        add_condition(params={"operator": ">", "value": 100}, check_interval_seconds=30, cooldown_seconds=0)
        scheduler = make_scheduler()

        assert len(await scheduler.run_condition_sweep(clock.now)) == 1
        assert await scheduler.run_condition_sweep(clock.advance(seconds=29)) == []
        assert len(await scheduler.run_condition_sweep(clock.advance(seconds=1))) == 1

    @pytest.mark.asyncio
    async def test_missing_market_data_skips_but_reschedules(
        self, make_scheduler, add_condition, session_factory, clock
    ):
        other = add_condition(
            configuration=Configuration("ETHUSDT", "4h", "breakout"),
            params={"operator": ">", "value": 1},
        )
        scheduler = make_scheduler(provider=StaticMarketDataProvider())

        assert await scheduler.run_condition_sweep(clock.now) == []
        assert next_check(session_factory, other) == clock.now + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_failure_isolated_per_condition(self, make_scheduler, add_condition, session_factory, clock):
        first = add_condition(name="a", params={"operator": ">", "value": 100})
        second = add_condition(name="b", params={"operator": ">", "value": 100})
        flaky = MagicMock()
        flaky.get_sample = AsyncMock(
            side_effect=[RuntimeError("feed down"), MarketSample("BTCUSDT", "1h", price=110.0)]
        )
        scheduler = make_scheduler(provider=flaky)

        events = await scheduler.run_condition_sweep(clock.now)

        assert len(events) == 1
        for condition_id in (first, second):
            assert next_check(session_factory, condition_id) == clock.now + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_sample_fetched_once_per_symbol(self, make_scheduler, add_condition, clock):
        add_condition(name="a", params={"operator": ">", "value": 100})
        add_condition(name="b", params={"operator": "<", "value": 100})
        provider = MagicMock()
        provider.get_sample = AsyncMock(return_value=MarketSample("BTCUSDT", "1h", price=110.0))
        scheduler = make_scheduler(provider=provider)

        await scheduler.run_condition_sweep(clock.now)

        provider.get_sample.assert_awaited_once_with("BTCUSDT", "1h")


class TestDispatchSweep:
    @pytest.mark.asyncio
    async def test_purge_runs_on_interval(self, make_scheduler, dispatcher, clock):
        scheduler = make_scheduler()

        assert await scheduler.run_dispatch_sweep(clock.now) == {"sent": 1}
        await scheduler.run_dispatch_sweep(clock.advance(minutes=30))
        await scheduler.run_dispatch_sweep(clock.advance(minutes=30))

        assert dispatcher.dispatch_once.await_count == 3
        assert dispatcher.purge.call_count == 2
        assert scheduler.sweeps[DISPATCH_SWEEP] == 3


class TestLoops:
    @pytest.mark.asyncio
    async def test_start_and_stop_independently(self, make_scheduler):
        scheduler = make_scheduler()

        scheduler.start()
        await asyncio.sleep(0.05)
        assert scheduler.is_running(CONDITION_SWEEP)
        assert scheduler.is_running(DISPATCH_SWEEP)

        await scheduler.stop(CONDITION_SWEEP)
        assert not scheduler.is_running(CONDITION_SWEEP)
        assert scheduler.is_running(DISPATCH_SWEEP)
        conditions_ran = scheduler.sweeps[CONDITION_SWEEP]

        await asyncio.sleep(0.05)
        assert scheduler.sweeps[CONDITION_SWEEP] == conditions_ran

        scheduler.start(CONDITION_SWEEP)
        assert scheduler.is_running(CONDITION_SWEEP)
        await scheduler.stop()
        assert not scheduler.is_running(DISPATCH_SWEEP)

    def test_unknown_sweep(self, make_scheduler):
        with pytest.raises(ValueError, match="Unknown sweep"):
            make_scheduler().start("reports")

    @pytest.mark.asyncio
    async def test_loop_survives_sweep_errors(self, make_scheduler, dispatcher):
        calls = []

        async def _flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("db down")
            return {}

        dispatcher.dispatch_once.side_effect = _flaky
        scheduler = make_scheduler()

        scheduler.start(DISPATCH_SWEEP)
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert dispatcher.dispatch_once.await_count >= 2

    @pytest.mark.asyncio
    async def test_run_until_max_sweeps(self, make_scheduler, dispatcher):
        scheduler = make_scheduler()

        await asyncio.wait_for(scheduler.run(max_sweeps=3), timeout=5)

        assert scheduler.sweeps[DISPATCH_SWEEP] >= 3
        assert not scheduler.is_running(CONDITION_SWEEP)
        assert not scheduler.is_running(DISPATCH_SWEEP)
