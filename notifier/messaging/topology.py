"""Broker topology: exchanges, per-channel queues, dead-letter and delay queues.

Layout (defaults):

    notification.exchange (direct)
        notification.email.queue    <- notification.email
        notification.sms.queue      <- notification.sms
        notification.whatsapp.queue <- notification.whatsapp
        notification.push.queue     <- notification.push
        notification.inapp.queue    <- notification.inapp

    notification.dlx (direct)
        notification.dlq            <- notification.dlq

    notification.delay (direct)
        notification.<folder>.delay.<ms>   (declared on first use)

Channel queues dead-letter rejected messages to notification.dlx. Delay queues
have no consumers: each holds messages for its TTL and then dead-letters them
back onto the live channel queue. A delay queue is deleted by the broker once it
has gone unused for its delay plus DELAY_QUEUE_EXPIRY_MARGIN_MS, so one-off
delays do not leave queues behind.
"""

from dataclasses import dataclass
from typing import Dict, List

from kombu import Connection, Exchange, Queue

from notifier.domain.models import Channel
from notifier.logging import get_logger

logger = get_logger(__name__, component="topology")

DELAY_QUEUE_EXPIRY_MARGIN_MS = 60_000


@dataclass(frozen=True)
class ChannelRoute:
    """Queue and routing names for one channel."""

    channel: Channel
    folder: str

    @property
    def queue_name(self) -> str:
        return f"notification.{self.folder}.queue"

    @property
    def routing_key(self) -> str:
        return f"notification.{self.folder}"

    def delay_queue_name(self, delay_ms: int) -> str:
        return f"notification.{self.folder}.delay.{delay_ms}"

    def delay_routing_key(self, delay_ms: int) -> str:
        return f"notification.{self.folder}.delay.{delay_ms}"


CHANNEL_ROUTES: Dict[Channel, ChannelRoute] = {
    Channel.EMAIL: ChannelRoute(Channel.EMAIL, "email"),
    Channel.SMS: ChannelRoute(Channel.SMS, "sms"),
    Channel.WHATSAPP: ChannelRoute(Channel.WHATSAPP, "whatsapp"),
    Channel.PUSH: ChannelRoute(Channel.PUSH, "push"),
    Channel.IN_APP: ChannelRoute(Channel.IN_APP, "inapp"),
}


class QueueTopology:
    """Builds kombu entities for the notification queues."""

    def __init__(
        self,
        exchange_name: str = "notification.exchange",
        dlx_exchange_name: str = "notification.dlx",
        dlq_name: str = "notification.dlq",
        dlq_routing_key: str = "notification.dlq",
        delay_exchange_name: str = "notification.delay",
        max_priority: int = 10,
    ):
        self.exchange = Exchange(exchange_name, type="direct", durable=True)
        self.dlx_exchange = Exchange(dlx_exchange_name, type="direct", durable=True)
        self.delay_exchange = Exchange(delay_exchange_name, type="direct", durable=True)
        self.dlq_name = dlq_name
        self.dlq_routing_key = dlq_routing_key
        self.max_priority = max_priority

    @staticmethod
    def route_for(channel: Channel) -> ChannelRoute:
        return CHANNEL_ROUTES[Channel(channel)]

    def queue_for(self, channel: Channel) -> Queue:
        """Live work queue for a channel."""
        route = self.route_for(channel)
        return Queue(
            route.queue_name,
            exchange=self.exchange,
            routing_key=route.routing_key,
            durable=True,
            queue_arguments={
                "x-dead-letter-exchange": self.dlx_exchange.name,
                "x-dead-letter-routing-key": self.dlq_routing_key,
                "x-max-priority": self.max_priority,
            },
        )

    def dead_letter_queue(self) -> Queue:
        return Queue(
            self.dlq_name,
            exchange=self.dlx_exchange,
            routing_key=self.dlq_routing_key,
            durable=True,
        )

    def delay_queue_for(self, channel: Channel, delay_ms: int) -> Queue:
        """Staging queue that releases messages to the channel queue after delay_ms."""
        if delay_ms <= 0:
            raise ValueError(f"delay_ms must be positive, got {delay_ms}")
        route = self.route_for(channel)
        return Queue(
            route.delay_queue_name(delay_ms),
            exchange=self.delay_exchange,
            routing_key=route.delay_routing_key(delay_ms),
            durable=True,
            queue_arguments={
                "x-message-ttl": int(delay_ms),
                # Publishing redeclares the queue, so it outlives its last message
                "x-expires": int(delay_ms) + DELAY_QUEUE_EXPIRY_MARGIN_MS,
                "x-dead-letter-exchange": self.exchange.name,
                "x-dead-letter-routing-key": route.routing_key,
            },
        )

    def all_queues(self) -> List[Queue]:
        return [self.queue_for(channel) for channel in Channel] + [self.dead_letter_queue()]

    def declare(self, connection: Connection) -> None:
        """Declare exchanges and every channel queue plus the DLQ."""
        channel = connection.channel()
        try:
            for exchange in (self.exchange, self.dlx_exchange, self.delay_exchange):
                exchange(channel).declare()
            for queue in self.all_queues():
                queue(channel).declare()
        finally:
            channel.close()

        logger.info(
            "Broker topology declared",
            extra={
                "event": "topology.declared",
                "exchange": self.exchange.name,
                "queues": [route.queue_name for route in CHANNEL_ROUTES.values()],
            },
        )
