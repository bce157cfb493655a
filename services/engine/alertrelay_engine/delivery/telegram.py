"""Telegram Bot API notification channel.

Maps Bot API responses onto the channel error taxonomy:

- 200 ``ok`` -> SendResult(message_id)
- 403 (bot blocked / kicked) and 400 "chat not found" -> ChannelPermanentError
- any other 400 (e.g. "can't parse entities") -> ChannelRejectedError
- 429 -> ChannelTransientError with ``retry_after`` from the response
- 5xx, other 4xx, timeouts and network errors -> ChannelTransientError
"""

import logging
from typing import Any

import httpx

from alertrelay_engine.config.models import TelegramChannelConfig
from alertrelay_engine.errors import (
    ChannelPermanentError,
    ChannelRejectedError,
    ChannelTransientError,
)
from alertrelay_engine.models.delivery import SendResult

logger = logging.getLogger(__name__)

PERMANENT_400_MARKERS = ("chat not found", "user is deactivated", "peer_id_invalid")


class TelegramChannel:
    """Sends messages through one Telegram bot.

    Example:
        >>> channel = TelegramChannel(TelegramChannelConfig(bot_token="xxx"))
        >>> await channel.send("123456", "*hello*")
    """

    TELEGRAM_API_BASE = "https://api.telegram.org"

    def __init__(
        self,
        config: TelegramChannelConfig,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize channel.

        Args:
            config: Telegram channel configuration
            client: Optional preconfigured client (tests inject a MockTransport)
        """
        if not config.bot_token:
            raise ValueError("TelegramChannel requires a bot token")
        self.config = config
        self.channel_id = config.channel_id
        self._client = client or httpx.AsyncClient(timeout=30.0)

    async def __aenter__(self) -> "TelegramChannel":
        """Async context manager entry."""
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def send(self, address: str, text: str, parse_mode: str = "Markdown") -> SendResult:
        """Send a message to a chat.

        Args:
            address: Telegram chat id
            text: Message text
            parse_mode: "Markdown" or "HTML"

        Returns:
            SendResult with the Telegram message id

        Raises:
            ChannelPermanentError: Recipient blocked the bot or chat is gone
            ChannelTransientError: Anything that may succeed on retry
        """
        url = f"{self.TELEGRAM_API_BASE}/bot{self.config.bot_token}/sendMessage"
        payload = {
            "chat_id": address,
            "text": text,
            "parse_mode": parse_mode,
            "disable_web_page_preview": self.config.disable_web_page_preview,
        }

        try:
            response = await self._client.post(url, json=payload)
        except httpx.TimeoutException as exc:
            raise ChannelTransientError(f"telegram timeout: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ChannelTransientError(f"telegram transport error: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        description = str(body.get("description", ""))
        status = response.status_code

        if status == 200 and body.get("ok"):
            message_id = (body.get("result") or {}).get("message_id")
            return SendResult(message_id=str(message_id) if message_id is not None else None)

        if status == 403 or (
            status == 400 and any(m in description.lower() for m in PERMANENT_400_MARKERS)
        ):
            logger.warning(f"Telegram rejected chat {address} permanently: {description}")
            raise ChannelPermanentError(f"telegram {status} for chat {address}: {description}")
        if status == 400:
            # The same body would be refused again
            logger.warning(f"Telegram refused message to chat {address}: {description}")
            raise ChannelRejectedError(f"telegram 400: {description}")
        if status == 429:
            retry_after = (body.get("parameters") or {}).get("retry_after")
            raise ChannelTransientError(
                f"telegram rate limited: {description}",
                retry_after=float(retry_after) if retry_after is not None else None,
            )
        raise ChannelTransientError(f"telegram HTTP {status}: {description}")
