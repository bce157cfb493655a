"""Configuration loader with JSON file and environment variable support."""

import json
import logging
import os
from pathlib import Path
from typing import Any

from .models import RelayConfig

logger = logging.getLogger(__name__)


def load_config(config_path: str | None = None) -> RelayConfig:
    """
    Load configuration from JSON file with environment variable overrides.

    Priority: env vars > config file > defaults

    Args:
        config_path: Path to JSON config file. If None, uses ALERTRELAY_CONFIG_PATH env var
                     or defaults to 'config.json' in engine service root. A missing
                     default file falls back to built-in defaults; a missing explicit
                     file is an error.

    Returns:
        Validated RelayConfig instance

    Raises:
        FileNotFoundError: If an explicitly requested config file doesn't exist
        json.JSONDecodeError: If config file has invalid JSON
        pydantic.ValidationError: If config values are invalid
    """
    explicit = config_path is not None or "ALERTRELAY_CONFIG_PATH" in os.environ
    if config_path is None:
        config_path = os.environ.get("ALERTRELAY_CONFIG_PATH", "config.json")

    config_file = Path(config_path)
    if not config_file.is_absolute():
        # Resolve relative to engine service root
        engine_root = Path(__file__).parent.parent.parent
        config_file = engine_root / config_file

    config_data: dict[str, Any] = {}
    if config_file.exists():
        with open(config_file) as f:
            config_data = json.load(f)
    elif explicit:
        raise FileNotFoundError(f"Config file not found: {config_file}")
    else:
        logger.info("No config file at %s, using defaults", config_file)

    # Apply environment variable overrides
    # Format: ALERTRELAY_WEBHOOK_SECRET, ALERTRELAY_LEDGER_MAX_OPEN_TRADES, etc.
    if secret := os.environ.get("ALERTRELAY_WEBHOOK_SECRET"):
        config_data.setdefault("validator", {})["shared_secret"] = secret

    if dedup := os.environ.get("ALERTRELAY_DEDUP_WINDOW_SECONDS"):
        config_data.setdefault("validator", {})["dedup_window_seconds"] = int(dedup)

    if max_open := os.environ.get("ALERTRELAY_LEDGER_MAX_OPEN_TRADES"):
        config_data.setdefault("ledger", {})["max_open_trades"] = int(max_open)

    if max_attempts := os.environ.get("ALERTRELAY_DISPATCH_MAX_ATTEMPTS"):
        config_data.setdefault("dispatch", {})["max_attempts"] = int(max_attempts)

    if max_delay := os.environ.get("ALERTRELAY_DISPATCH_MAX_DELAY_SECONDS"):
        config_data.setdefault("dispatch", {})["max_delay_seconds"] = float(max_delay)

    if token := os.environ.get("ALERTRELAY_TELEGRAM_BOT_TOKEN"):
        config_data.setdefault("telegram", {})["bot_token"] = token

    if redis_url := os.environ.get("REDIS_URL"):
        config_data.setdefault("rate_limit", {})["redis_url"] = redis_url

    if market_url := os.environ.get("ALERTRELAY_MARKET_DATA_URL"):
        market = config_data.setdefault("market_data", {})
        market["provider"] = "http"
        market["base_url"] = market_url

    return RelayConfig(**config_data)
