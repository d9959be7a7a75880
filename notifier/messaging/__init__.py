"""Queue topology and publishing over kombu (RabbitMQ in production)."""

from .exceptions import MessageDecodeError, MessagingError, PublishError
from .publisher import ChannelPublisher, decode_message
from .topology import CHANNEL_ROUTES, ChannelRoute, QueueTopology

__all__ = [
    "ChannelPublisher",
    "decode_message",
    "QueueTopology",
    "ChannelRoute",
    "CHANNEL_ROUTES",
    "MessagingError",
    "PublishError",
    "MessageDecodeError",
]
