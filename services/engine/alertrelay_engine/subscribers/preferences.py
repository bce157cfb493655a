"""Subscriber notification preferences stored as JSON on the subscription row."""

import logging
from datetime import datetime, time, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, ValidationError, field_validator

from alertrelay_engine.conditions.gates import in_time_range
from alertrelay_engine.models.events import EventType

logger = logging.getLogger(__name__)


class QuietHours(BaseModel):
    """Local time range in which only urgent notifications get through."""

    enabled: bool = True
    start: time = Field(description="Start of quiet period (local time)")
    end: time = Field(description="End of quiet period; earlier than start means overnight")
    timezone: str = Field(default="UTC")

    @field_validator("timezone")
    @classmethod
    def _known_zone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone {value!r}") from None
        return value

    def contains(self, now: datetime) -> bool:
        if not self.enabled:
            return False
        local = now.astimezone(ZoneInfo(self.timezone)).time().replace(second=0, microsecond=0)
        return in_time_range(local, self.start, self.end)


class SubscriberPreferences(BaseModel):
    """Per-subscription delivery preferences."""

    event_types: list[EventType] = Field(
        default_factory=list, description="Enabled event kinds; empty means all"
    )
    quiet_hours: QuietHours | None = None
    cooldown_seconds: int | None = Field(
        default=None,
        ge=0,
        description="Minimum gap between condition notifications for this subscriber",
    )
    max_per_day: int | None = Field(default=None, ge=1, description="Daily notification cap")

    @classmethod
    def from_raw(cls, raw: dict[str, Any] | None) -> "SubscriberPreferences":
        """Parse stored preferences, falling back to defaults when malformed."""
        try:
            return cls.model_validate(raw or {})
        except ValidationError as exc:
            logger.warning(f"Ignoring malformed subscriber preferences: {exc.error_count()} error(s)")
            return cls()

    def wants(self, event_type: EventType) -> bool:
        return not self.event_types or event_type in self.event_types

    def in_quiet_hours(self, now: datetime) -> bool:
        return self.quiet_hours is not None and self.quiet_hours.contains(now.astimezone(timezone.utc))
