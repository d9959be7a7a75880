"""Retry and dead-letter decisions for failed deliveries.

A failed attempt either schedules another one (RETRY with exponential
backoff, re-published through a delay queue) or ends the notification in the
dead-letter store. The row update and the dead-letter insert share one
transaction, so a notification is never terminal without its entry or the
other way round.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, ContextManager, Optional

from sqlalchemy.orm import Session

from notifier.domain.models import (
    DeadLetterEntry,
    ErrorType,
    Notification,
    NotificationMessage,
    NotificationStatus,
)
from notifier.logging import get_logger
from notifier.messaging.exceptions import PublishError
from notifier.messaging.publisher import ChannelPublisher
from notifier.persistence.database import get_session
from notifier.persistence.repositories import DeadLetterRepository, NotificationRepository
from notifier.utils.timestamps import add_milliseconds, utc_now

logger = get_logger(__name__, component="retry")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff parameters.

    Attributes:
        max_attempts: Retries allowed before the notification is dead-lettered
        initial_backoff_ms: Delay before the first retry
        multiplier: Growth factor per retry
        max_backoff_ms: Upper bound on any single delay
    """

    max_attempts: int = 10
    initial_backoff_ms: int = 1000
    multiplier: float = 2.0
    max_backoff_ms: int = 3_600_000

    def backoff_delay_ms(self, retry_count: int) -> int:
        """Delay before the next attempt, given retries already consumed.

        Example:
            >>> RetryPolicy().backoff_delay_ms(5)
            32000
        """
        try:
            delay = self.initial_backoff_ms * (self.multiplier ** max(0, retry_count))
        except OverflowError:
            return self.max_backoff_ms
        return int(min(delay, self.max_backoff_ms))


def backoff_delay_ms(retry_count: int, policy: Optional[RetryPolicy] = None) -> int:
    return (policy or RetryPolicy()).backoff_delay_ms(retry_count)


class RetryHandler:
    """Applies delivery outcomes to notifications.

    Args:
        publisher: Used to re-publish retries onto delay queues
        policy: Backoff and attempt limits
        session_factory: Context manager yielding a transactional session
        clock: Source of "now" (tests pin it)
    """

    def __init__(
        self,
        publisher: ChannelPublisher,
        policy: Optional[RetryPolicy] = None,
        session_factory: Callable[[], ContextManager[Session]] = get_session,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.publisher = publisher
        self.policy = policy or RetryPolicy()
        self.session_factory = session_factory
        self.clock = clock

    def handle_success(
        self,
        notification: Notification,
        external_id: Optional[str],
        provider_response: Optional[str],
    ) -> Notification:
        """Mark a notification DELIVERED and persist it.

        Raises:
            ConcurrentUpdateError: If the row is already terminal
        """
        notification.mark_delivered(external_id, provider_response, now=self.clock())

        with self.session_factory() as session:
            saved = NotificationRepository(session).save_if_current(notification)

        logger.info(
            f"Notification {notification.id} delivered",
            extra={
                "event": "delivery.succeeded",
                "notification_id": notification.id,
                "channel": notification.channel.value,
                "external_id": external_id,
                "retry_count": notification.retry_count,
            },
        )
        return saved

    def handle_failure(
        self,
        notification: Notification,
        message: Optional[NotificationMessage],
        error_message: str,
        error_code: Optional[str],
        error_type: ErrorType,
        provider_response: Optional[str] = None,
    ) -> bool:
        """Decide between retry and dead-letter for a failed attempt.

        Args:
            notification: Current persisted state (mutated and saved here)
            message: The consumed message, if any. Retries are always re-published
                from the notification, not from this copy.
            error_message: Failure description stored on the row
            error_code: Provider or pipeline error code
            error_type: Classification of the failure
            provider_response: Raw provider body, kept on the row and its
                dead-letter entry

        Returns:
            True if another attempt was scheduled, False if dead-lettered

        Raises:
            ConcurrentUpdateError: If the row was finalized or retried since it
                was loaded. Nothing is written or published.
        """
        notification.record_error(error_message, error_code, provider_response)

        if message is not None and message.retry_count != notification.retry_count:
            logger.debug(
                f"Message retry_count {message.retry_count} differs from stored "
                f"{notification.retry_count}; using stored state",
                extra={"event": "delivery.retry_count_mismatch", "notification_id": notification.id},
            )

        if ErrorType(error_type) == ErrorType.PERMANENT:
            self.move_to_dlq(notification, f"Permanent error: {error_message}")
            return False

        if notification.retry_count >= self.policy.max_attempts:
            self.move_to_dlq(
                notification, f"Max retry attempts reached. Last error: {error_message}"
            )
            return False

        now = self.clock()
        loaded_retry_count = notification.retry_count
        delay_ms = self.policy.backoff_delay_ms(loaded_retry_count)
        notification.schedule_retry(add_milliseconds(now, delay_ms), now=now)

        with self.session_factory() as session:
            NotificationRepository(session).save_if_current(
                notification, expected_retry_count=loaded_retry_count
            )

        logger.info(
            f"Notification {notification.id} scheduled for retry "
            f"{notification.retry_count}/{self.policy.max_attempts} in {delay_ms}ms",
            extra={
                "event": "delivery.retry_scheduled",
                "notification_id": notification.id,
                "channel": notification.channel.value,
                "retry_count": notification.retry_count,
                "delay_ms": delay_ms,
                "error_code": error_code,
            },
        )

        retry_message = NotificationMessage.from_notification(notification)
        try:
            self.publisher.publish_delayed(retry_message, delay_ms)
        except PublishError as e:
            # Row stays RETRY with next_retry_at; the reconciler re-publishes it
            logger.error(
                f"Failed to re-publish notification {notification.id} for retry: {e}",
                extra={
                    "event": "delivery.retry_publish_failed",
                    "notification_id": notification.id,
                },
            )

        return True

    def move_to_dlq(self, notification: Notification, reason: str) -> Notification:
        """Terminally fail a notification and record its dead-letter entry.

        Status is FAILED_MAX_RETRY when retries are exhausted, otherwise
        FAILED_PERMANENT. The row update only applies while the stored row is
        non-terminal with the same retry_count, so at most one entry is ever
        written per notification.

        Raises:
            ConcurrentUpdateError: If the row was finalized or retried since it
                was loaded
        """
        now = self.clock()
        status = (
            NotificationStatus.FAILED_MAX_RETRY
            if notification.retry_count >= self.policy.max_attempts
            else NotificationStatus.FAILED_PERMANENT
        )
        notification.mark_failed(status, now=now)

        with self.session_factory() as session:
            saved = NotificationRepository(session).save_if_current(
                notification, expected_retry_count=notification.retry_count
            )
            DeadLetterRepository(session).add(
                DeadLetterEntry.from_notification(notification, reason, now=now)
            )

        logger.warning(
            f"Notification {notification.id} moved to dead-letter store: {reason}",
            extra={
                "event": "dlq.added",
                "notification_id": notification.id,
                "channel": notification.channel.value,
                "status": status.value,
                "retry_count": notification.retry_count,
                "error_code": notification.error_code,
            },
        )
        return saved
