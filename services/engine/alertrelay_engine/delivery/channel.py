"""Notification channel protocol and registry."""

from typing import Protocol

from alertrelay_engine.models.delivery import SendResult


class NotificationChannel(Protocol):
    """Point-to-point message sender (one bot / provider)."""

    channel_id: str

    async def send(self, address: str, text: str, parse_mode: str = "Markdown") -> SendResult:
        """Send ``text`` to ``address``.

        Raises:
            ChannelTransientError: The send may succeed if retried.
            ChannelPermanentError: The recipient can never be reached.
            ChannelRejectedError: This message will never be accepted.
        """
        ...

    async def close(self) -> None:
        """Release transport resources."""
        ...


class ChannelRegistry:
    """Maps channel ids to channel objects; each channel owns its transport."""

    def __init__(self, channels: list[NotificationChannel] | None = None) -> None:
        self._channels: dict[str, NotificationChannel] = {}
        for channel in channels or []:
            self.register(channel)

    def register(self, channel: NotificationChannel) -> None:
        if channel.channel_id in self._channels:
            raise ValueError(f"Channel {channel.channel_id!r} already registered")
        self._channels[channel.channel_id] = channel

    def get(self, channel_id: str) -> NotificationChannel | None:
        return self._channels.get(channel_id)

    def ids(self) -> list[str]:
        return sorted(self._channels)

    async def close(self) -> None:
        """Close every registered channel."""
        for channel in self._channels.values():
            await channel.close()
