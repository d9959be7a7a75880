"""Domain models for the notification delivery pipeline."""

from .exceptions import InvalidStatusTransition
from .models import (
    TERMINAL_STATUSES,
    Channel,
    DeadLetterEntry,
    ErrorType,
    Notification,
    NotificationMessage,
    NotificationRequest,
    NotificationStatus,
    ProviderResponse,
    RecipientDetails,
)

__all__ = [
    "Channel",
    "NotificationStatus",
    "ErrorType",
    "TERMINAL_STATUSES",
    "RecipientDetails",
    "NotificationRequest",
    "Notification",
    "NotificationMessage",
    "DeadLetterEntry",
    "ProviderResponse",
    "InvalidStatusTransition",
]
