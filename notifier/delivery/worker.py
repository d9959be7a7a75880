"""Queue consumers that hand notifications to providers.

One NotificationWorker class serves every channel; it is parameterized by the
channel's Provider. Each worker owns its broker connection and runs in its
own thread, so a slow provider on one channel never holds up another.

Every consumed message is acknowledged or rejected exactly once. Rejected
messages go to the broker's dead-letter exchange.
"""

import math
import threading
from datetime import datetime
from enum import Enum
from typing import Callable, ContextManager, Dict, Iterable, List, Optional

from kombu import Connection
from kombu.mixins import ConsumerMixin
from sqlalchemy.orm import Session

from notifier.domain.models import (
    Channel,
    ErrorType,
    Notification,
    NotificationMessage,
    NotificationStatus,
)
from notifier.logging import get_logger
from notifier.logging.context import log_context
from notifier.messaging.exceptions import MessageDecodeError, PublishError
from notifier.messaging.publisher import decode_message
from notifier.messaging.topology import QueueTopology
from notifier.persistence.database import get_session
from notifier.persistence.exceptions import ConcurrentUpdateError, PersistenceError
from notifier.persistence.repositories import NotificationRepository
from notifier.providers.base import Provider
from notifier.utils.timestamps import milliseconds_until, utc_now

from .classifier import build_error_message
from .retry import RetryHandler

logger = get_logger(__name__, component="worker")

PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
PROCESSING_ERROR = "PROCESSING_ERROR"


class Outcome(str, Enum):
    """What happened to one consumed message."""

    DELIVERED = "delivered"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    REDELAYED = "redelayed"
    DROPPED_MISSING = "dropped_missing"
    DROPPED_TERMINAL = "dropped_terminal"
    DROPPED_STALE = "dropped_stale"
    REJECTED = "rejected"

    @property
    def acknowledge(self) -> bool:
        return self is not Outcome.REJECTED


class NotificationWorker(ConsumerMixin):
    """Consumes one channel queue and dispatches to that channel's provider.

    Args:
        connection: Dedicated kombu connection for this worker
        topology: Queue layout
        channel: Channel whose queue this worker consumes
        provider: Provider for the channel (None behaves as unavailable)
        retry_handler: Applies success/failure outcomes
        prefetch_count: Unacknowledged messages this worker may hold
        early_tolerance_ms: Slack before an early RETRY arrival is re-delayed
        redelay_step_ms: Re-delays are rounded up to a multiple of this, which
            bounds how many distinct delay queues early arrivals create
    """

    def __init__(
        self,
        connection: Connection,
        topology: QueueTopology,
        channel: Channel,
        provider: Optional[Provider],
        retry_handler: RetryHandler,
        prefetch_count: int = 1,
        early_tolerance_ms: int = 500,
        redelay_step_ms: int = 1000,
        session_factory: Callable[[], ContextManager[Session]] = get_session,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.connection = connection
        self.topology = topology
        self.channel = Channel(channel)
        self.provider = provider
        self.retry_handler = retry_handler
        self.prefetch_count = prefetch_count
        self.early_tolerance_ms = early_tolerance_ms
        self.redelay_step_ms = max(1, redelay_step_ms)
        self.session_factory = session_factory
        self.clock = clock

    def get_consumers(self, Consumer, channel):
        return [
            Consumer(
                queues=[self.topology.queue_for(self.channel)],
                callbacks=[self.on_message],
                accept=["json"],
                prefetch_count=self.prefetch_count,
            )
        ]

    def on_message(self, body, message) -> None:
        """kombu callback: process, then ack or reject."""
        try:
            notification_message = decode_message(body)
        except MessageDecodeError as e:
            logger.error(
                f"Rejecting undecodable message on {self.channel.value}: {e}",
                extra={"event": "worker.message.undecodable", "channel": self.channel.value},
            )
            message.reject(requeue=False)
            return

        outcome = self.process(notification_message)

        if outcome.acknowledge:
            message.ack()
        else:
            message.reject(requeue=False)

    def process(self, message: NotificationMessage) -> Outcome:
        """Run one delivery attempt for a decoded message."""
        with log_context(
            notification_id=message.notification_id,
            channel=self.channel.value,
            user_id=message.user_id,
            retry_count=message.retry_count,
        ):
            try:
                notification = self._load(message.notification_id)
            except PersistenceError as e:
                logger.error(
                    f"Could not load notification {message.notification_id}: {e}",
                    extra={"event": "worker.load_failed"},
                )
                return Outcome.REJECTED

            skip = self._skip_reason(notification, message)
            if skip is not None:
                return skip

            try:
                return self._attempt(notification, message)
            except ConcurrentUpdateError as e:
                return self._superseded(message, e)
            except Exception as e:
                logger.error(
                    f"Unexpected error processing notification {message.notification_id}: {e}",
                    extra={"event": "worker.processing_error", "error_type": type(e).__name__},
                    exc_info=True,
                )
                return self._recover(message, e)

    def _load(self, notification_id: int) -> Optional[Notification]:
        with self.session_factory() as session:
            return NotificationRepository(session).get_by_id(notification_id)

    def _skip_reason(
        self, notification: Optional[Notification], message: NotificationMessage
    ) -> Optional[Outcome]:
        if notification is None:
            logger.warning(
                f"Notification {message.notification_id} not found; dropping message",
                extra={"event": "worker.message.missing"},
            )
            return Outcome.DROPPED_MISSING

        if notification.is_terminal:
            logger.info(
                f"Notification {notification.id} already {notification.status.value}; dropping duplicate",
                extra={"event": "worker.message.duplicate", "status": notification.status.value},
            )
            return Outcome.DROPPED_TERMINAL

        if message.retry_count < notification.retry_count:
            logger.info(
                f"Stale message for notification {notification.id} "
                f"(message retry {message.retry_count} < stored {notification.retry_count})",
                extra={"event": "worker.message.stale"},
            )
            return Outcome.DROPPED_STALE

        if notification.status == NotificationStatus.RETRY:
            remaining_ms = milliseconds_until(notification.next_retry_at, now=self.clock())
            if remaining_ms > self.early_tolerance_ms:
                return self._redelay(notification, remaining_ms)

        return None

    def _redelay(self, notification: Notification, remaining_ms: int) -> Outcome:
        delay_ms = math.ceil(remaining_ms / self.redelay_step_ms) * self.redelay_step_ms
        try:
            self.retry_handler.publisher.publish_delayed(
                NotificationMessage.from_notification(notification), delay_ms
            )
        except PublishError as e:
            logger.error(
                f"Could not re-delay early notification {notification.id}: {e}",
                extra={"event": "worker.redelay_failed"},
            )
            return Outcome.REJECTED

        logger.info(
            f"Notification {notification.id} arrived {remaining_ms}ms early; re-delayed {delay_ms}ms",
            extra={
                "event": "worker.message.redelayed",
                "remaining_ms": remaining_ms,
                "delay_ms": delay_ms,
            },
        )
        return Outcome.REDELAYED

    def _attempt(self, notification: Notification, message: NotificationMessage) -> Outcome:
        loaded_retry_count = notification.retry_count
        notification.mark_processing(now=self.clock())
        with self.session_factory() as session:
            NotificationRepository(session).save_if_current(
                notification, expected_retry_count=loaded_retry_count
            )

        if self.provider is None or not self.provider.is_enabled():
            logger.warning(
                f"No enabled provider for {self.channel.value}",
                extra={"event": "worker.provider_unavailable"},
            )
            retried = self.retry_handler.handle_failure(
                notification,
                message,
                "Provider not available",
                PROVIDER_UNAVAILABLE,
                ErrorType.RETRIABLE,
            )
            return Outcome.RETRY_SCHEDULED if retried else Outcome.DEAD_LETTERED

        logger.debug(
            f"Dispatching notification {notification.id} to {self.provider.name}",
            extra={"event": "worker.dispatching", "provider": self.provider.name},
        )
        response = self.provider.send(message)

        if response.success:
            self.retry_handler.handle_success(
                notification, response.message_id, response.raw_response
            )
            return Outcome.DELIVERED

        retried = self.retry_handler.handle_failure(
            notification,
            message,
            response.error_message or "Unknown provider error",
            response.error_code,
            response.error_type or ErrorType.RETRIABLE,
            provider_response=response.raw_response,
        )
        return Outcome.RETRY_SCHEDULED if retried else Outcome.DEAD_LETTERED

    def _recover(self, message: NotificationMessage, error: Exception) -> Outcome:
        """Turn an unexpected exception into a retry decision on fresh state."""
        try:
            notification = self._load(message.notification_id)
            if notification is None or notification.is_terminal:
                return Outcome.DROPPED_TERMINAL if notification else Outcome.DROPPED_MISSING

            retried = self.retry_handler.handle_failure(
                notification,
                message,
                build_error_message(error),
                PROCESSING_ERROR,
                ErrorType.RETRIABLE,
            )
            return Outcome.RETRY_SCHEDULED if retried else Outcome.DEAD_LETTERED

        except ConcurrentUpdateError as e:
            return self._superseded(message, e)
        except Exception as recovery_error:
            logger.critical(
                f"Failed to record processing error for notification "
                f"{message.notification_id}: {recovery_error}",
                extra={
                    "event": "worker.recovery_failed",
                    "error_type": type(recovery_error).__name__,
                },
                exc_info=True,
            )
            return Outcome.REJECTED

    def _superseded(self, message: NotificationMessage, error: ConcurrentUpdateError) -> Outcome:
        logger.info(
            f"Notification {message.notification_id} changed while in flight; dropping message: {error}",
            extra={"event": "worker.message.superseded"},
        )
        return Outcome.DROPPED_STALE


class WorkerPool:
    """Starts and stops consumer threads for the enabled channels.

    Args:
        connection_factory: Returns a new kombu connection per worker
        topology: Queue layout
        providers: Provider per channel
        retry_handler: Shared retry handler
        channels: Channels to consume
        consumers_per_channel: Worker threads per channel
        prefetch_count: Unacknowledged messages per worker
    """

    def __init__(
        self,
        connection_factory: Callable[[], Connection],
        topology: QueueTopology,
        providers: Dict[Channel, Provider],
        retry_handler: RetryHandler,
        channels: Iterable[Channel],
        consumers_per_channel: int = 1,
        prefetch_count: int = 1,
    ):
        self.connection_factory = connection_factory
        self.topology = topology
        self.providers = providers
        self.retry_handler = retry_handler
        self.channels = [Channel(channel) for channel in channels]
        self.consumers_per_channel = consumers_per_channel
        self.prefetch_count = prefetch_count
        self.workers: List[NotificationWorker] = []
        self.threads: List[threading.Thread] = []

    def start(self) -> None:
        for channel in self.channels:
            for index in range(self.consumers_per_channel):
                worker = NotificationWorker(
                    connection=self.connection_factory(),
                    topology=self.topology,
                    channel=channel,
                    provider=self.providers.get(channel),
                    retry_handler=self.retry_handler,
                    prefetch_count=self.prefetch_count,
                )
                thread = threading.Thread(
                    target=worker.run,
                    name=f"worker-{channel.value.lower()}-{index}",
                    daemon=True,
                )
                self.workers.append(worker)
                self.threads.append(thread)
                thread.start()

        logger.info(
            f"Started {len(self.workers)} workers",
            extra={
                "event": "worker_pool.started",
                "channels": [channel.value for channel in self.channels],
                "consumers_per_channel": self.consumers_per_channel,
                "prefetch_count": self.prefetch_count,
            },
        )

    def stop(self, timeout: float = 10.0) -> None:
        logger.info("Stopping workers", extra={"event": "worker_pool.stopping"})

        for worker in self.workers:
            worker.should_stop = True

        for thread in self.threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning(
                    f"Worker thread {thread.name} did not stop within {timeout}s",
                    extra={"event": "worker_pool.stop_timeout", "thread_name": thread.name},
                )

        for worker in self.workers:
            worker.connection.release()

        self.workers.clear()
        self.threads.clear()
        logger.info("Workers stopped", extra={"event": "worker_pool.stopped"})

    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self.threads)
