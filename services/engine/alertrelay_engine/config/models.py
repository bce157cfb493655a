"""Pydantic configuration models with type safety and validation."""

from typing import Literal

from pydantic import BaseModel, Field, model_validator


class ValidatorConfig(BaseModel):
    """Inbound signal validation settings."""

    shared_secret: str | None = Field(
        default=None,
        description="HMAC-SHA256 webhook secret. When unset, signatures are not checked",
    )
    source: str = Field(
        default="tradingview",
        min_length=1,
        description="Source tag mixed into the idempotency key",
    )
    dedup_window_seconds: int = Field(
        default=300,
        ge=0,
        description="Window in which a repeated idempotency key is treated as a duplicate",
    )


class LedgerConfig(BaseModel):
    """Trade ledger capacity and persistence retry settings."""

    max_open_trades: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum open trades per configuration (symbol+timeframe+strategy)",
    )
    persistence_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for a ledger mutation before surfacing PersistenceError",
    )
    retry_base_delay_seconds: float = Field(
        default=0.05,
        ge=0.0,
        le=5.0,
        description="Base delay for exponential backoff between ledger retries",
    )


class ConditionsConfig(BaseModel):
    """Alert condition evaluation settings."""

    evaluate_on_signal: bool = Field(
        default=True,
        description="Evaluate conditions bound to a configuration whenever a signal arrives",
    )
    max_expression_length: int = Field(
        default=1000,
        ge=10,
        le=10000,
        description="Maximum length of a custom condition expression",
    )
    max_expression_nodes: int = Field(
        default=100,
        ge=5,
        le=1000,
        description="Maximum AST node count of a custom condition expression",
    )


class DispatchConfig(BaseModel):
    """Delivery queue retry, lease and retention settings."""

    max_attempts: int = Field(default=3, ge=1, le=10, description="Send attempts per task")
    base_delay_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="First retry delay; doubles on every further attempt",
    )
    max_delay_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="Upper bound of any retry delay",
    )
    jitter_ratio: float = Field(
        default=0.25,
        ge=0.0,
        le=1.0,
        description="Random extra delay as a fraction of the base backoff (<= 1 keeps delays monotonic)",
    )
    send_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Per-send timeout; a timed out send counts as a transient failure",
    )
    lease_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="How long a claimed task stays reserved for one worker",
    )
    batch_size: int = Field(default=50, ge=1, le=1000, description="Tasks claimed per sweep")
    concurrency: int = Field(default=10, ge=1, le=100, description="Concurrent sends per sweep")
    rate_limit_defer_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Deferral applied to a task whose channel is over its rate limit",
    )
    retention_days: int = Field(
        default=7,
        ge=1,
        description="Terminal tasks older than this are purged",
    )

    @model_validator(mode="after")
    def _base_le_cap(self) -> "DispatchConfig":
        if self.base_delay_seconds > self.max_delay_seconds:
            raise ValueError(
                f"base_delay_seconds ({self.base_delay_seconds}) must not exceed "
                f"max_delay_seconds ({self.max_delay_seconds})"
            )
        return self

    @model_validator(mode="after")
    def _lease_outlives_send(self) -> "DispatchConfig":
        # The lease is renewed right before each send and must cover the whole send
        if self.lease_seconds <= self.send_timeout_seconds:
            raise ValueError(
                f"lease_seconds ({self.lease_seconds}) must be greater than "
                f"send_timeout_seconds ({self.send_timeout_seconds})"
            )
        return self


class RateLimitConfig(BaseModel):
    """Per-channel outbound rate limits."""

    per_minute: int = Field(default=20, ge=1, description="Messages per channel per minute")
    per_hour: int = Field(default=300, ge=1, description="Messages per channel per hour")
    redis_url: str | None = Field(
        default=None,
        description="Redis URL for shared counters; in-memory counters when unset",
    )


class SchedulerConfig(BaseModel):
    """Sweep intervals for the scheduler."""

    condition_sweep_seconds: float = Field(default=5.0, gt=0.0)
    dispatch_sweep_seconds: float = Field(default=1.0, gt=0.0)
    purge_interval_seconds: float = Field(default=3600.0, gt=0.0)
    condition_batch_size: int = Field(default=100, ge=1, le=10000)


class PipelineConfig(BaseModel):
    """Ingestion pipeline worker settings."""

    processing_deadline_seconds: float = Field(
        default=0.5,
        ge=0.0,
        description="How long ingest_signal waits for processing before acknowledging async",
    )
    workers: int = Field(default=4, ge=1, le=64, description="Signal processing threads")


class TelegramChannelConfig(BaseModel):
    """Telegram bot channel settings."""

    bot_token: str | None = Field(default=None, description="Bot API token")
    channel_id: str = Field(default="telegram", min_length=1)
    parse_mode: Literal["Markdown", "HTML"] = Field(default="Markdown")
    disable_web_page_preview: bool = Field(default=True)


class MarketDataConfig(BaseModel):
    """Market-data / sentiment collaborator settings."""

    provider: Literal["static", "http"] = Field(default="static")
    base_url: str | None = Field(default=None, description="Base URL of the market-data service")
    timeout_seconds: float = Field(default=5.0, gt=0.0)

    @model_validator(mode="after")
    def _http_needs_url(self) -> "MarketDataConfig":
        if self.provider == "http" and not self.base_url:
            raise ValueError("market_data.base_url is required when provider is 'http'")
        return self


class RelayConfig(BaseModel):
    """Root configuration of the relay engine."""

    validator: ValidatorConfig = Field(default_factory=ValidatorConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    conditions: ConditionsConfig = Field(default_factory=ConditionsConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    telegram: TelegramChannelConfig = Field(default_factory=TelegramChannelConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
