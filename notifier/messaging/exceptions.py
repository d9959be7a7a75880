"""Messaging layer exceptions."""


class MessagingError(Exception):
    """Base exception for broker interaction failures."""

    pass


class PublishError(MessagingError):
    """Raised when a message cannot be handed to the broker.

    The publisher does not retry; callers decide what happens to the row.
    """

    def __init__(self, message: str, notification_id=None, routing_key=None):
        self.notification_id = notification_id
        self.routing_key = routing_key
        super().__init__(message)


class MessageDecodeError(MessagingError):
    """Raised when a queue payload is not a valid notification message."""

    pass
