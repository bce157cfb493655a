"""Subscriber resolution: the single place where recipient fan-out happens."""

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from alertrelay_engine.errors import PersistenceError
from alertrelay_engine.models.delivery import DeliveryPriority, DeliveryTask
from alertrelay_engine.models.events import EventType, TriggerEvent
from alertrelay_engine.persistence.engine import session_scope
from alertrelay_engine.persistence.models import Subscription
from alertrelay_engine.persistence.repository import (
    RelayRepository,
    as_utc,
    day_key,
    to_delivery_task,
)
from alertrelay_engine.subscribers.preferences import SubscriberPreferences
from alertrelay_engine.subscribers.templates import MessageRenderer

logger = logging.getLogger(__name__)


class SubscriberResolver:
    """Turns one trigger event into per-recipient delivery tasks."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        max_attempts: int = 3,
        renderer: MessageRenderer | None = None,
        parse_modes: dict[str, str] | None = None,
        clock: Callable[[], datetime] | None = None,
        persistence_retries: int = 3,
        retry_base_delay_seconds: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize resolver.

        Args:
            session_factory: SQLAlchemy session factory
            max_attempts: Attempt budget stamped on every new task
            renderer: Message renderer
            parse_modes: Formatting mode per channel id (default Markdown)
            clock: Time source (defaults to UTC wall clock)
            persistence_retries: Attempts for one fan-out transaction
            retry_base_delay_seconds: Base delay for exponential backoff between attempts
            sleep: Blocking sleep used between attempts
        """
        self.session_factory = session_factory
        self.max_attempts = max_attempts
        self.renderer = renderer or MessageRenderer()
        self.parse_modes = parse_modes or {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.persistence_retries = persistence_retries
        self.retry_base_delay_seconds = retry_base_delay_seconds
        self._sleep = sleep

    def resolve(self, event: TriggerEvent, now: datetime | None = None) -> list[DeliveryTask]:
        """
        Resolve eligible recipients and enqueue one task each.

        Args:
            event: Trigger event from the ledger or the condition evaluator
            now: Resolution time (defaults to the clock)

        Returns:
            Enqueued delivery tasks

        Raises:
            PersistenceError: The store kept failing after bounded retries
        """
        now = now or self._clock()
        attempts = self.persistence_retries
        for attempt in range(1, attempts + 1):
            try:
                return self._resolve_once(event, now)
            except SQLAlchemyError as exc:
                if attempt >= attempts:
                    logger.error(
                        f"❌ Fan-out of {event.event_type.value} for {event.configuration} failed "
                        f"after {attempts} attempts: {exc}"
                    )
                    raise PersistenceError(
                        f"fan-out failed for {event.configuration}: {exc}"
                    ) from exc
                delay = self.retry_base_delay_seconds * (2 ** (attempt - 1))
                logger.warning(
                    f"Fan-out conflict for {event.configuration} "
                    f"(attempt {attempt}/{attempts}), retrying in {delay:.3f}s: {exc}"
                )
                self._sleep(delay)
        raise PersistenceError(f"fan-out failed for {event.configuration}")  # pragma: no cover

    def _resolve_once(self, event: TriggerEvent, now: datetime) -> list[DeliveryTask]:
        today = day_key(now)
        tasks: list[DeliveryTask] = []
        skipped: dict[str, int] = {}

        with session_scope(self.session_factory) as session:
            repo = RelayRepository(session)
            config_row = repo.get_configuration(event.configuration)
            if config_row is None:
                logger.warning(f"No stored configuration for {event.configuration}, nothing to fan out")
                return []

            seen: set[tuple[str, str]] = set()
            rendered: dict[str, str] = {}
            for sub in repo.subscriptions_for(config_row, now):
                recipient = (sub.channel_id, sub.address)
                if recipient in seen:
                    continue
                seen.add(recipient)

                prefs = SubscriberPreferences.from_raw(sub.preferences)
                priority, reason = self._filter(sub, prefs, event, now, today)
                if priority is None:
                    skipped[reason or "filtered"] = skipped.get(reason or "filtered", 0) + 1
                    continue

                parse_mode = self.parse_modes.get(sub.channel_id, "Markdown")
                if parse_mode not in rendered:
                    rendered[parse_mode] = self.renderer.render(event, parse_mode)

                row = repo.enqueue_task(
                    subscription_id=sub.id,
                    channel_id=sub.channel_id,
                    recipient_address=sub.address,
                    body=rendered[parse_mode],
                    parse_mode=parse_mode,
                    priority=int(priority),
                    status="pending",
                    attempts=0,
                    max_attempts=self.max_attempts,
                    next_attempt_at=now,
                    enqueued_at=now,
                    event_type=event.event_type.value,
                    event_id=event.id,
                )
                notified = (sub.notified_today if sub.notified_day == today else 0) + 1
                repo.update_subscription(
                    sub.id, last_notified_at=now, notified_today=notified, notified_day=today
                )
                tasks.append(to_delivery_task(row))

        if skipped:
            logger.debug(f"Skipped recipients for {event.event_type.value}: {skipped}")
        logger.info(
            f"📬 {event.event_type.value} for {event.configuration}: {len(tasks)} task(s) enqueued"
        )
        return tasks

    def _filter(
        self,
        sub: Subscription,
        prefs: SubscriberPreferences,
        event: TriggerEvent,
        now: datetime,
        today: str,
    ) -> tuple[DeliveryPriority | None, str | None]:
        """Return the task priority, or (None, reason) when the recipient is filtered out."""
        if not prefs.wants(event.event_type):
            return None, "event_type"

        if prefs.max_per_day is not None:
            sent_today = sub.notified_today if sub.notified_day == today else 0
            if sent_today >= prefs.max_per_day:
                return None, "daily_cap"

        if event.event_type is EventType.CONDITION_TRIGGERED and prefs.cooldown_seconds:
            last = as_utc(sub.last_notified_at)
            if last is not None and now - last < timedelta(seconds=prefs.cooldown_seconds):
                return None, "cooldown"

        if prefs.in_quiet_hours(now):
            if not event.urgent:
                return None, "quiet_hours"
            return DeliveryPriority.LOW, None

        return event.priority, None
