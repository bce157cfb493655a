"""Delivery dispatcher: claim, rate-limit, send, and record outcomes.

Task lifecycle::

    pending --send ok--> sent --confirmed--> delivered
    pending --transient failure, attempts < max--> pending (next_attempt_at pushed)
    pending --transient failure, attempts == max--> failed
    pending --permanent failure--> failed (subscription deactivated)
    pending --message rejected--> failed (subscription kept)

Claims take a lease with a compare-and-set update, so exactly one worker
holds a task at a time; an expired lease makes the task claimable again.
Each lease is renewed right before its send, and outcomes are written only
while the lease is still held. A worker that lost its lease leaves the task
to the new holder and reports ``lease_lost``.
"""

import asyncio
import logging
import random
import socket
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from alertrelay_engine.config.models import DispatchConfig
from alertrelay_engine.delivery.backoff import retry_delay
from alertrelay_engine.delivery.channel import ChannelRegistry
from alertrelay_engine.delivery.rate_limit import RateLimiter
from alertrelay_engine.errors import (
    ChannelPermanentError,
    ChannelRejectedError,
    ChannelTransientError,
)
from alertrelay_engine.models.delivery import DeliveryStatus, DeliveryTask, SendResult
from alertrelay_engine.monitoring.metrics import MetricsService
from alertrelay_engine.monitoring.sentry_service import get_sentry
from alertrelay_engine.persistence.engine import session_scope
from alertrelay_engine.persistence.repository import RelayRepository, to_delivery_task

logger = logging.getLogger(__name__)


class DeliveryDispatcher:
    """Drains the delivery queue with bounded concurrency."""

    def __init__(
        self,
        config: DispatchConfig,
        session_factory: sessionmaker[Session],
        channels: ChannelRegistry,
        rate_limiter: RateLimiter,
        metrics: MetricsService | None = None,
        clock: Callable[[], datetime] | None = None,
        rand: Callable[[], float] = random.random,
        worker_id: str | None = None,
    ) -> None:
        """
        Initialize dispatcher.

        Args:
            config: Dispatch configuration (retries, lease, concurrency)
            session_factory: SQLAlchemy session factory
            channels: Registry of notification channels
            rate_limiter: Per-channel rate limiter
            metrics: Optional metrics service
            clock: Time source (defaults to UTC wall clock)
            rand: Uniform [0, 1) source for backoff jitter
            worker_id: Lease owner name (defaults to host + random suffix)
        """
        self.config = config
        self.session_factory = session_factory
        self.channels = channels
        self.rate_limiter = rate_limiter
        self.metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._rand = rand
        self.worker_id = worker_id or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"

    async def dispatch_once(self) -> dict[str, int]:
        """
        Claim one batch of due tasks and send them concurrently.

        Returns:
            Outcome counts for the batch (sent, delivered, retry, failed,
            deferred, lease_lost)
        """
        outcomes: dict[str, int] = {}
        tasks, deferred = self._claim_batch(self._clock())
        if deferred:
            outcomes["deferred"] = deferred
        if not tasks:
            return outcomes

        semaphore = asyncio.Semaphore(self.config.concurrency)

        async def _run(task: DeliveryTask) -> str:
            async with semaphore:
                return await self._deliver(task)

        results = await asyncio.gather(*(_run(task) for task in tasks))
        for outcome in results:
            outcomes[outcome] = outcomes.get(outcome, 0) + 1
        logger.info(f"📤 Dispatch batch of {len(tasks)}: {outcomes}")
        return outcomes

    def _claim_batch(self, now: datetime) -> tuple[list[DeliveryTask], int]:
        claimed: list[DeliveryTask] = []
        deferred = 0
        lease_until = now + timedelta(seconds=self.config.lease_seconds)
        with session_scope(self.session_factory) as session:
            repo = RelayRepository(session)
            for row in repo.claimable_tasks(now, self.config.batch_size):
                if not repo.claim_task(row.id, self.worker_id, now, lease_until):
                    continue
                if not self.rate_limiter.allow(f"{row.channel_id}:{row.recipient_address}"):
                    # Over the limit: push back without consuming an attempt
                    repo.update_task(
                        row.id,
                        holder=self.worker_id,
                        claimed_by=None,
                        lease_expires_at=None,
                        next_attempt_at=now + timedelta(seconds=self.config.rate_limit_defer_seconds),
                    )
                    deferred += 1
                    continue
                claimed.append(to_delivery_task(row))
        return claimed, deferred

    def _renew_lease(self, task: DeliveryTask) -> bool:
        lease_until = self._clock() + timedelta(seconds=self.config.lease_seconds)
        with session_scope(self.session_factory) as session:
            renewed = RelayRepository(session).renew_lease(task.id, self.worker_id, lease_until)
        if not renewed:
            logger.warning(f"Task {task.id} lease lost before send, leaving it to its new holder")
        return renewed

    def _lease_lost(self, task: DeliveryTask, outcome: str) -> str:
        logger.warning(
            f"Task {task.id} lease lost before its {outcome} outcome was recorded, "
            f"leaving it to its new holder"
        )
        return self._record("lease_lost")

    async def _deliver(self, task: DeliveryTask) -> str:
        if not self._renew_lease(task):
            return self._record("lease_lost")

        channel = self.channels.get(task.channel_id)
        if channel is None:
            return self._record_permanent(task, f"unknown channel {task.channel_id!r}", deactivate=False)

        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                channel.send(task.recipient_address, task.body, task.parse_mode),
                timeout=self.config.send_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return self._record_transient(
                task, f"send timed out after {self.config.send_timeout_seconds}s", None
            )
        except ChannelPermanentError as exc:
            return self._record_permanent(task, str(exc), deactivate=True)
        except ChannelRejectedError as exc:
            return self._record_permanent(task, str(exc), deactivate=False)
        except ChannelTransientError as exc:
            return self._record_transient(task, str(exc), exc.retry_after)
        except Exception as exc:
            logger.exception(f"Unexpected error sending task {task.id}")
            return self._record_transient(task, f"{type(exc).__name__}: {exc}", None)
        finally:
            if self.metrics is not None:
                self.metrics.observe_send_latency(time.perf_counter() - started)

        return self._record_success(task, result)

    def _record(self, outcome: str) -> str:
        if self.metrics is not None:
            self.metrics.record_delivery(outcome)
        return outcome

    def _record_success(self, task: DeliveryTask, result: SendResult) -> str:
        now = self._clock()
        status = DeliveryStatus.DELIVERED if result.delivered else DeliveryStatus.SENT
        values: dict[str, Any] = {
            "status": status.value,
            "attempts": task.attempts + 1,
            "message_id": result.message_id,
            "sent_at": now,
            "finished_at": now,
            "claimed_by": None,
            "lease_expires_at": None,
            "last_error": None,
        }
        if result.delivered:
            values["delivered_at"] = now
        with session_scope(self.session_factory) as session:
            updated = RelayRepository(session).update_task(task.id, holder=self.worker_id, **values)
        if not updated:
            return self._lease_lost(task, status.value)
        logger.debug(f"Task {task.id} {status.value} to {task.channel_id}:{task.recipient_address}")
        return self._record(status.value)

    def _record_transient(self, task: DeliveryTask, error: str, retry_after: float | None) -> str:
        now = self._clock()
        attempts = min(task.attempts + 1, task.max_attempts)
        with session_scope(self.session_factory) as session:
            repo = RelayRepository(session)
            if attempts >= task.max_attempts:
                if not repo.update_task(
                    task.id,
                    holder=self.worker_id,
                    status=DeliveryStatus.FAILED.value,
                    attempts=attempts,
                    last_error=error,
                    finished_at=now,
                    claimed_by=None,
                    lease_expires_at=None,
                ):
                    return self._lease_lost(task, DeliveryStatus.FAILED.value)
                repo.append_event(
                    "delivery.failed",
                    "ERROR",
                    {
                        "task_id": task.id,
                        "channel_id": task.channel_id,
                        "recipient": task.recipient_address,
                        "attempts": attempts,
                        "error": error,
                        "event_type": task.event_type,
                    },
                )
                logger.error(f"❌ Task {task.id} failed after {attempts} attempts: {error}")
                sentry = get_sentry()
                if sentry:
                    sentry.capture_delivery_failure(task.id, task.channel_id, attempts, error)
                return self._record(DeliveryStatus.FAILED.value)

            delay = retry_delay(
                attempts,
                self.config.base_delay_seconds,
                self.config.max_delay_seconds,
                jitter_ratio=self.config.jitter_ratio,
                retry_after=retry_after,
                previous_delay=task.last_retry_delay,
                rand=self._rand,
            )
            if not repo.update_task(
                task.id,
                holder=self.worker_id,
                attempts=attempts,
                last_error=error,
                last_retry_delay_seconds=delay,
                next_attempt_at=now + timedelta(seconds=delay),
                claimed_by=None,
                lease_expires_at=None,
            ):
                return self._lease_lost(task, "retry")
        logger.warning(
            f"Task {task.id} attempt {attempts}/{task.max_attempts} failed, retry in {delay:.1f}s: {error}"
        )
        return self._record("retry")

    def _record_permanent(self, task: DeliveryTask, error: str, deactivate: bool) -> str:
        now = self._clock()
        with session_scope(self.session_factory) as session:
            repo = RelayRepository(session)
            if not repo.update_task(
                task.id,
                holder=self.worker_id,
                status=DeliveryStatus.FAILED.value,
                attempts=min(task.attempts + 1, task.max_attempts),
                last_error=error,
                finished_at=now,
                claimed_by=None,
                lease_expires_at=None,
            ):
                return self._lease_lost(task, DeliveryStatus.FAILED.value)
            if deactivate and task.subscription_id:
                repo.update_subscription(
                    task.subscription_id, status="inactive", deactivated_reason=error
                )
                repo.append_event(
                    "subscription.deactivated",
                    "WARN",
                    {
                        "subscription_id": task.subscription_id,
                        "channel_id": task.channel_id,
                        "recipient": task.recipient_address,
                        "reason": error,
                    },
                )
        logger.warning(f"🚫 Task {task.id} permanently failed: {error}")
        return self._record(DeliveryStatus.FAILED.value)

    def confirm_delivery(self, task_id: str) -> bool:
        """
        Mark a sent task as delivered once the channel confirms receipt.

        Args:
            task_id: Delivery task id

        Returns:
            True if the task moved from ``sent`` to ``delivered``
        """
        now = self._clock()
        with session_scope(self.session_factory) as session:
            repo = RelayRepository(session)
            row = repo.get_task(task_id)
            if row is None or row.status != DeliveryStatus.SENT.value:
                return False
            return repo.update_task(
                task_id, status=DeliveryStatus.DELIVERED.value, delivered_at=now
            )

    def purge(self, older_than: datetime | None = None) -> int:
        """
        Delete terminal tasks finished before ``older_than``.

        Args:
            older_than: Cutoff (defaults to now - retention_days)

        Returns:
            Number of deleted tasks
        """
        cutoff = older_than or self._clock() - timedelta(days=self.config.retention_days)
        with session_scope(self.session_factory) as session:
            deleted = RelayRepository(session).purge_tasks(cutoff)
        if deleted:
            logger.info(f"🧹 Purged {deleted} delivery task(s) finished before {cutoff.isoformat()}")
        return deleted

    def get_delivery_stats(self, window: timedelta | None = None) -> dict[str, int]:
        """Task counts by status, for tasks enqueued within ``window`` (all when None)."""
        since = self._clock() - window if window is not None else None
        with session_scope(self.session_factory) as session:
            counts = RelayRepository(session).delivery_counts(since)
        return {status.value: counts.get(status.value, 0) for status in DeliveryStatus}
