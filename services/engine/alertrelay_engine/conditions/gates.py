"""Trigger gates: lifecycle, cooldown, daily cap and time-of-day window."""

import logging
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from alertrelay_engine.models.condition import AlertCondition, TimeWindow

logger = logging.getLogger(__name__)


def in_time_range(current: time, start: time, end: time) -> bool:
    """True when ``current`` lies in [start, end]; ``start > end`` wraps midnight."""
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def _zone(name: str) -> ZoneInfo | timezone:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, falling back to UTC")
        return timezone.utc


class TriggerGate:
    """Decides whether a condition is allowed to fire at a given time.

    Gates are checked before the predicate so a blocked condition never
    touches market data.
    """

    def check(self, condition: AlertCondition, now: datetime) -> tuple[bool, str | None]:
        """Check every gate in order.

        Args:
            condition: Condition with its runtime state.
            now: Current time (aware).

        Returns:
            Tuple of (allowed, rejection_reason).
        """
        if not condition.is_active:
            return False, "inactive"
        if condition.is_paused:
            return False, "paused"
        if condition.status == "auto_disabled":
            return False, "auto_disabled"

        policy = condition.policy
        if policy.expires_at is not None and now >= policy.expires_at:
            return False, "expired"

        allowed, reason = self.check_cooldown(condition, now)
        if not allowed:
            return allowed, reason

        allowed, reason = self.check_daily_cap(condition, now)
        if not allowed:
            return allowed, reason

        if policy.window is not None:
            return self.check_window(policy.window, now)
        return True, None

    def check_cooldown(self, condition: AlertCondition, now: datetime) -> tuple[bool, str | None]:
        """Block while ``now - last_triggered < cooldown``."""
        last = condition.state.last_triggered_at
        cooldown = condition.policy.cooldown_seconds
        if last is None or cooldown <= 0:
            return True, None
        cooldown_end = last + timedelta(seconds=cooldown)
        if now < cooldown_end:
            return False, "cooldown"
        return True, None

    def check_daily_cap(self, condition: AlertCondition, now: datetime) -> tuple[bool, str | None]:
        """Block once the condition has fired ``max_triggers_per_day`` times this UTC day."""
        today = now.astimezone(timezone.utc).strftime("%Y-%m-%d")
        fired = condition.state.triggers_today if condition.state.trigger_day == today else 0
        if fired >= condition.policy.max_triggers_per_day:
            return False, "daily_cap"
        return True, None

    def check_window(self, window: TimeWindow, now: datetime) -> tuple[bool, str | None]:
        """Day-of-week (Monday=0) and time-of-day restriction in the window's timezone."""
        local = now.astimezone(_zone(window.timezone))
        if window.days_of_week and local.weekday() not in window.days_of_week:
            return False, "outside_days"
        if window.start is not None and window.end is not None:
            current = local.time().replace(second=0, microsecond=0)
            if not in_time_range(current, window.start, window.end):
                return False, "outside_hours"
        return True, None
