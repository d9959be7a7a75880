"""Publishing notification messages onto channel queues.

One ChannelPublisher serves every channel; routing comes from the topology
lookup table. Messages are persistent JSON with the notification's priority
and a small set of headers for broker-side inspection.
"""

import json
from typing import Any, Dict

from kombu import Connection
from kombu.exceptions import KombuError
from kombu.pools import producers
from pydantic import ValidationError

from notifier.domain.models import NotificationMessage
from notifier.logging import get_logger
from notifier.utils.timestamps import format_timestamp

from .exceptions import MessageDecodeError, PublishError
from .topology import QueueTopology

logger = get_logger(__name__, component="publisher")


def build_headers(message: NotificationMessage) -> Dict[str, Any]:
    return {
        "x-channel": message.channel.value,
        "x-notification-id": message.notification_id,
        "x-user-id": message.user_id,
        "x-priority": message.priority,
        "x-retry-count": message.retry_count,
    }


def decode_message(body: Any) -> NotificationMessage:
    """Turn a consumed message body into a NotificationMessage.

    Raises:
        MessageDecodeError: If the body is not valid JSON or misses fields
    """
    try:
        if isinstance(body, (bytes, bytearray)):
            body = body.decode("utf-8")
        if isinstance(body, str):
            body = json.loads(body)
        if not isinstance(body, dict):
            raise MessageDecodeError(f"Expected a JSON object, got {type(body).__name__}")
        return NotificationMessage.from_payload(body)
    except MessageDecodeError:
        raise
    except (ValueError, ValidationError) as e:
        raise MessageDecodeError(f"Invalid notification message: {e}") from e


class ChannelPublisher:
    """Publishes NotificationMessages to the live or delayed channel queues.

    Args:
        connection: kombu connection (producers are pooled per connection)
        topology: Queue/exchange layout
        acquire_timeout: Seconds to wait for a pooled producer
    """

    def __init__(
        self,
        connection: Connection,
        topology: QueueTopology,
        acquire_timeout: float = 10.0,
    ):
        self.connection = connection
        self.topology = topology
        self.acquire_timeout = acquire_timeout

    def publish(self, message: NotificationMessage) -> None:
        """Route a message onto its channel's live queue.

        Raises:
            PublishError: If the broker rejects or cannot be reached
        """
        queue = self.topology.queue_for(message.channel)
        self._publish(
            message,
            exchange=self.topology.exchange,
            routing_key=queue.routing_key,
            declare=[queue],
            headers=build_headers(message),
        )

        logger.info(
            f"Published notification {message.notification_id} to {queue.name}",
            extra={
                "event": "publisher.published",
                "notification_id": message.notification_id,
                "channel": message.channel.value,
                "routing_key": queue.routing_key,
                "retry_count": message.retry_count,
            },
        )

    def publish_delayed(self, message: NotificationMessage, delay_ms: int) -> None:
        """Stage a message so it reaches its channel queue after delay_ms.

        A non-positive delay publishes straight to the live queue.

        Raises:
            PublishError: If the broker rejects or cannot be reached
        """
        if delay_ms <= 0:
            self.publish(message)
            return

        delay_queue = self.topology.delay_queue_for(message.channel, delay_ms)
        headers = build_headers(message)
        headers["x-delay-ms"] = int(delay_ms)
        headers["x-next-retry-at"] = format_timestamp(message.next_retry_at)

        self._publish(
            message,
            exchange=self.topology.delay_exchange,
            routing_key=delay_queue.routing_key,
            # The live queue must exist before the delay queue dead-letters into it
            declare=[self.topology.queue_for(message.channel), delay_queue],
            headers=headers,
        )

        logger.info(
            f"Scheduled notification {message.notification_id} for redelivery in {delay_ms}ms",
            extra={
                "event": "publisher.delayed",
                "notification_id": message.notification_id,
                "channel": message.channel.value,
                "delay_ms": int(delay_ms),
                "delay_queue": delay_queue.name,
                "retry_count": message.retry_count,
            },
        )

    def _publish(
        self,
        message: NotificationMessage,
        exchange,
        routing_key: str,
        declare: list,
        headers: Dict[str, Any],
    ) -> None:
        errors = (KombuError, OSError) + tuple(self.connection.connection_errors) + tuple(
            self.connection.channel_errors
        )
        try:
            with producers[self.connection].acquire(
                block=True, timeout=self.acquire_timeout
            ) as producer:
                producer.publish(
                    message.to_payload(),
                    exchange=exchange,
                    routing_key=routing_key,
                    serializer="json",
                    delivery_mode="persistent",
                    priority=message.priority,
                    headers=headers,
                    declare=declare,
                    retry=False,
                )
        except errors as e:
            logger.error(
                f"Failed to publish notification {message.notification_id}: {e}",
                extra={
                    "event": "publisher.failed",
                    "notification_id": message.notification_id,
                    "routing_key": routing_key,
                    "error_type": type(e).__name__,
                },
            )
            raise PublishError(
                f"Failed to publish notification {message.notification_id}: {e}",
                notification_id=message.notification_id,
                routing_key=routing_key,
            ) from e
