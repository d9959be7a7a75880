"""Periodic sweep for notifications whose queue message was lost.

A PENDING row whose publish failed, or a RETRY row whose delayed message
never came back, has no message in flight. The sweep re-publishes both from
the stored row and dead-letters PENDING rows that have been stuck too long.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, ContextManager, List
from uuid import uuid4

from sqlalchemy.orm import Session

from notifier.domain.models import Notification, NotificationMessage
from notifier.logging import get_logger
from notifier.logging.context import log_context
from notifier.messaging.exceptions import PublishError
from notifier.messaging.publisher import ChannelPublisher
from notifier.persistence.database import get_session
from notifier.persistence.exceptions import ConcurrentUpdateError, PersistenceError
from notifier.persistence.repositories import NotificationRepository
from notifier.utils.timestamps import utc_now

from .retry import RetryHandler

logger = get_logger(__name__, component="reconciler")


@dataclass
class ReconciliationResult:
    """
    Outcome of one reconciliation sweep.

    Attributes:
        started_at: UTC timestamp when the sweep began
        finished_at: UTC timestamp when the sweep completed
        pending_republished: Stale PENDING rows put back on their queue
        pending_dead_lettered: PENDING rows older than the maximum age
        retries_republished: Overdue RETRY rows put back on their queue
        publish_failures: Rows that could not be re-published
        errors: Rows skipped because of storage errors
        skipped: Whether the sweep was skipped (previous sweep still running)
    """

    started_at: datetime
    finished_at: datetime
    pending_republished: int = 0
    pending_dead_lettered: int = 0
    retries_republished: int = 0
    publish_failures: int = 0
    errors: int = 0
    skipped: bool = False

    @property
    def total_recovered(self) -> int:
        return self.pending_republished + self.retries_republished


class Reconciler:
    """Re-publishes or dead-letters notifications with no message in flight.

    Args:
        publisher: Publisher for re-published messages
        retry_handler: Used to dead-letter stuck PENDING rows
        pending_threshold: Age of updated_at after which a PENDING row is stale
        pending_max_age: Age of created_at after which a PENDING row is dead-lettered
        retry_grace: How long past next_retry_at a RETRY row may stay unconsumed
        batch_size: Maximum rows of each kind handled per sweep
    """

    def __init__(
        self,
        publisher: ChannelPublisher,
        retry_handler: RetryHandler,
        pending_threshold: timedelta = timedelta(minutes=5),
        pending_max_age: timedelta = timedelta(hours=24),
        retry_grace: timedelta = timedelta(minutes=5),
        batch_size: int = 100,
        session_factory: Callable[[], ContextManager[Session]] = get_session,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.publisher = publisher
        self.retry_handler = retry_handler
        self.pending_threshold = pending_threshold
        self.pending_max_age = pending_max_age
        self.retry_grace = retry_grace
        self.batch_size = batch_size
        self.session_factory = session_factory
        self.clock = clock
        self._lock = threading.Lock()

    def run_once(self) -> ReconciliationResult:
        """
        Execute one sweep over stale PENDING and overdue RETRY rows.

        Returns:
            ReconciliationResult with per-category counts

        Raises:
            No exceptions are raised for per-row failures; they are counted in
            the result. A failure to query the store is logged and counted.
        """
        started_at = self.clock()

        if not self._lock.acquire(blocking=False):
            logger.warning(
                "Reconciliation skipped: previous sweep still in progress",
                extra={"event": "reconciler.skipped", "reason": "lock_held"},
            )
            return ReconciliationResult(started_at=started_at, finished_at=self.clock(), skipped=True)

        result = ReconciliationResult(started_at=started_at, finished_at=started_at)
        try:
            with log_context(sweep_id=uuid4().hex):
                self._sweep_pending(started_at, result)
                self._sweep_retries(started_at, result)

                result.finished_at = self.clock()
                logger.info(
                    "Reconciliation sweep completed",
                    extra={
                        "event": "reconciler.completed",
                        "pending_republished": result.pending_republished,
                        "pending_dead_lettered": result.pending_dead_lettered,
                        "retries_republished": result.retries_republished,
                        "publish_failures": result.publish_failures,
                        "errors": result.errors,
                    },
                )
                return result
        finally:
            self._lock.release()

    def _sweep_pending(self, now: datetime, result: ReconciliationResult) -> None:
        stale = self._query(
            lambda repo: repo.find_stale_pending(now - self.pending_threshold, self.batch_size),
            "stale pending",
            result,
        )
        max_age_cutoff = now - self.pending_max_age

        for notification in stale:
            if notification.created_at is not None and notification.created_at < max_age_cutoff:
                self._dead_letter(notification, result)
            elif self._republish(notification, now, result):
                result.pending_republished += 1

    def _sweep_retries(self, now: datetime, result: ReconciliationResult) -> None:
        overdue = self._query(
            lambda repo: repo.find_ready_for_retry(now - self.retry_grace, self.batch_size),
            "overdue retry",
            result,
        )
        for notification in overdue:
            if self._republish(notification, now, result):
                result.retries_republished += 1

    def _query(self, fetch, description: str, result: ReconciliationResult) -> List[Notification]:
        try:
            with self.session_factory() as session:
                return fetch(NotificationRepository(session))
        except PersistenceError as e:
            logger.error(
                f"Could not query {description} notifications: {e}",
                extra={"event": "reconciler.query_failed"},
            )
            result.errors += 1
            return []

    def _republish(self, notification: Notification, now: datetime, result: ReconciliationResult) -> bool:
        try:
            with self.session_factory() as session:
                claimed = NotificationRepository(session).touch_if_unchanged(notification, now)
        except PersistenceError as e:
            logger.error(
                f"Could not claim notification {notification.id}: {e}",
                extra={"event": "reconciler.claim_failed", "notification_id": notification.id},
            )
            result.errors += 1
            return False

        if not claimed:
            logger.debug(
                f"Notification {notification.id} changed since it was read; leaving it",
                extra={"event": "reconciler.row_moved", "notification_id": notification.id},
            )
            return False

        message = NotificationMessage.from_notification(notification)
        try:
            self.publisher.publish(message)
        except PublishError as e:
            logger.error(
                f"Could not re-publish notification {notification.id}: {e}",
                extra={"event": "reconciler.publish_failed", "notification_id": notification.id},
            )
            result.publish_failures += 1
            return False

        logger.info(
            f"Re-published {notification.status.value} notification {notification.id}",
            extra={
                "event": "reconciler.republished",
                "notification_id": notification.id,
                "channel": notification.channel.value,
                "status": notification.status.value,
                "retry_count": notification.retry_count,
            },
        )
        return True

    def _dead_letter(self, notification: Notification, result: ReconciliationResult) -> None:
        age = self.clock() - notification.created_at
        reason = f"Stuck in PENDING: not dispatched within {int(age.total_seconds())}s"
        try:
            self.retry_handler.move_to_dlq(notification, reason)
        except ConcurrentUpdateError as e:
            logger.info(
                f"Notification {notification.id} moved on before it could be dead-lettered: {e}",
                extra={"event": "reconciler.row_moved", "notification_id": notification.id},
            )
            return
        except PersistenceError as e:
            logger.error(
                f"Could not dead-letter notification {notification.id}: {e}",
                extra={"event": "reconciler.dead_letter_failed", "notification_id": notification.id},
            )
            result.errors += 1
            return
        result.pending_dead_lettered += 1
