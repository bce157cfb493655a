"""Main entry point for the relay engine."""

import asyncio
import logging
import os

from alertrelay_engine.config.loader import load_config
from alertrelay_engine.config.models import RelayConfig
from alertrelay_engine.core.events import ALL_EVENTS
from alertrelay_engine.core.pipeline import SignalPipeline
from alertrelay_engine.delivery.channel import ChannelRegistry
from alertrelay_engine.delivery.dispatcher import DeliveryDispatcher
from alertrelay_engine.delivery.rate_limit import build_rate_limiter
from alertrelay_engine.delivery.telegram import TelegramChannel
from alertrelay_engine.market_data import build_market_data_provider
from alertrelay_engine.monitoring.metrics import MetricsConfig, init_metrics
from alertrelay_engine.monitoring.sentry_service import SentryConfig, get_sentry, init_sentry
from alertrelay_engine.persistence.engine import create_session_factory, get_database_url, get_engine
from alertrelay_engine.scheduler.scheduler import RelayScheduler

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def _report(error: Exception, phase: str) -> None:
    sentry = get_sentry()
    if sentry:
        sentry.capture_error(error, context={"phase": phase})
        sentry.flush()


def build_channels(config: RelayConfig) -> ChannelRegistry:
    """Register every channel that has credentials configured."""
    registry = ChannelRegistry()
    if config.telegram.bot_token:
        registry.register(TelegramChannel(config.telegram))
        logger.info(f"✅ Channel registered: {config.telegram.channel_id}")
    else:
        logger.info("⚠️ Telegram not configured (set ALERTRELAY_TELEGRAM_BOT_TOKEN to enable)")
    return registry


async def run(config: RelayConfig, max_sweeps: int | None) -> None:
    """Build the runtime and run the scheduler until interrupted."""
    metrics_port = os.environ.get("ALERTRELAY_METRICS_PORT")
    metrics = init_metrics(MetricsConfig(enabled=metrics_port is not None, port=int(metrics_port or 9090)))
    metrics.start_server()

    database_url = get_database_url()
    logger.info(f"📊 Connecting to database: {database_url.split('@')[0]}...")
    session_factory = create_session_factory(get_engine(), create_tables=True)
    logger.info("✅ Database connected")

    pipeline = SignalPipeline(config, session_factory, metrics=metrics)
    pipeline.bus.subscribe(
        ALL_EVENTS, lambda event: logger.debug(f"Event {event.event_type.value}: {event.id}")
    )
    channels = build_channels(config)
    provider = build_market_data_provider(config.market_data)
    dispatcher = DeliveryDispatcher(
        config.dispatch,
        session_factory,
        channels,
        build_rate_limiter(config.rate_limit),
        metrics=metrics,
    )
    scheduler = RelayScheduler(
        config.scheduler,
        session_factory,
        evaluator=pipeline.evaluator,
        resolver=pipeline.resolver,
        dispatcher=dispatcher,
        provider=provider,
        on_event=pipeline.bus.publish,
        metrics=metrics,
    )
    logger.info(f"▶️  Starting scheduler (max_sweeps={max_sweeps})")
    try:
        await scheduler.run(max_sweeps=max_sweeps)
    finally:
        pipeline.shutdown()
        await channels.close()
        await provider.close()


def main() -> int:
    """Main entry point for the relay engine."""
    logger.info("🚀 AlertRelay engine starting...")

    sentry_config = SentryConfig.from_env()
    if sentry_config:
        init_sentry(sentry_config)
        logger.info(f"✅ Sentry initialized (env={sentry_config.environment})")
    else:
        logger.info("⚠️ Sentry not configured (set SENTRY_DSN to enable)")

    try:
        config = load_config()
        logger.info(
            f"✅ Configuration loaded: max_open_trades={config.ledger.max_open_trades}, "
            f"max_attempts={config.dispatch.max_attempts}"
        )
    except Exception as e:
        logger.error(f"❌ Failed to load configuration: {e}")
        _report(e, "config_load")
        return 1

    max_sweeps_env = os.environ.get("MAX_SWEEPS")
    max_sweeps = int(max_sweeps_env) if max_sweeps_env else None

    try:
        asyncio.run(run(config, max_sweeps))
    except KeyboardInterrupt:
        logger.info("⏸️  Shutdown requested by user")
    except Exception as e:
        logger.error(f"❌ Engine error: {e}", exc_info=True)
        _report(e, "scheduler")
        return 1
    finally:
        sentry = get_sentry()
        if sentry:
            sentry.flush()
        logger.info("🛑 Engine stopped")

    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
