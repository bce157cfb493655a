"""Delivery queue dispatch, channels, rate limiting and retry backoff."""

from alertrelay_engine.delivery.backoff import retry_delay
from alertrelay_engine.delivery.channel import ChannelRegistry, NotificationChannel
from alertrelay_engine.delivery.dispatcher import DeliveryDispatcher
from alertrelay_engine.delivery.rate_limit import (
    InMemoryRateLimiter,
    RateLimiter,
    RedisRateLimiter,
    build_rate_limiter,
)
from alertrelay_engine.delivery.telegram import TelegramChannel

__all__ = [
    "ChannelRegistry",
    "DeliveryDispatcher",
    "InMemoryRateLimiter",
    "NotificationChannel",
    "RateLimiter",
    "RedisRateLimiter",
    "TelegramChannel",
    "build_rate_limiter",
    "retry_delay",
]
