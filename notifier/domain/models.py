"""Core domain models for notifications, queue messages, and dead letters.

This module defines the data structures used throughout the delivery pipeline:
- Channel / NotificationStatus / ErrorType: closed enumerations
- RecipientDetails: per-channel addresses supplied by the caller
- NotificationRequest: caller intent, fanned out into one Notification per channel
- Notification: persisted record of a single channel send and its lifecycle
- NotificationMessage: JSON payload carried on the channel queues
- DeadLetterEntry: append-only snapshot of a terminally failed notification
- ProviderResponse: outcome of a single provider send attempt
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from notifier.utils.timestamps import ensure_utc, utc_now

from .exceptions import InvalidStatusTransition


class Channel(str, Enum):
    """Delivery channels supported by the pipeline."""

    EMAIL = "EMAIL"
    SMS = "SMS"
    WHATSAPP = "WHATSAPP"
    PUSH = "PUSH"
    IN_APP = "IN_APP"


class NotificationStatus(str, Enum):
    """Lifecycle status of a persisted notification."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    RETRY = "RETRY"
    DELIVERED = "DELIVERED"
    FAILED_PERMANENT = "FAILED_PERMANENT"
    FAILED_MAX_RETRY = "FAILED_MAX_RETRY"


TERMINAL_STATUSES = frozenset(
    {
        NotificationStatus.DELIVERED,
        NotificationStatus.FAILED_PERMANENT,
        NotificationStatus.FAILED_MAX_RETRY,
    }
)


class ErrorType(str, Enum):
    """Classification of a delivery failure."""

    RETRIABLE = "RETRIABLE"
    PERMANENT = "PERMANENT"


class RecipientDetails(BaseModel):
    """Per-channel recipient addresses for a single user."""

    email: Optional[str] = None
    phone: Optional[str] = None
    whatsapp_number: Optional[str] = None
    fcm_token: Optional[str] = None
    device_token: Optional[str] = None

    @field_validator("email", "phone", "whatsapp_number", "fcm_token", "device_token")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        """Treat whitespace-only addresses as absent."""
        if v is None:
            return None
        stripped = v.strip()
        return stripped or None

    def recipient_for(self, channel: Channel) -> Optional[str]:
        """Resolve the address to use for a channel.

        WhatsApp falls back to the phone number and push falls back to the
        device token. In-app notifications have no external recipient.
        """
        channel = Channel(channel)
        if channel == Channel.EMAIL:
            return self.email
        if channel == Channel.SMS:
            return self.phone
        if channel == Channel.WHATSAPP:
            return self.whatsapp_number or self.phone
        if channel == Channel.PUSH:
            return self.fcm_token or self.device_token
        return None


class NotificationRequest(BaseModel):
    """Caller intent to notify one user on one or more channels."""

    user_id: int = Field(..., gt=0, description="Target user identifier")
    channels: List[Channel] = Field(..., min_length=1, description="Channels to deliver on")
    template_code: str = Field(..., description="Template identifier, e.g. 'otp'")
    recipient: RecipientDetails = Field(default_factory=RecipientDetails)
    template_data: Dict[str, Any] = Field(default_factory=dict)
    subject: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(5, ge=0, le=10, description="Queue priority (0-10)")
    skip_rate_limit: bool = False

    @field_validator("template_code")
    @classmethod
    def strip_template_code(cls, v: str) -> str:
        """Reject blank template codes."""
        if not v or not v.strip():
            raise ValueError("template_code cannot be empty or whitespace-only")
        return v.strip()

    @field_validator("channels")
    @classmethod
    def dedupe_channels(cls, v: List[Channel]) -> List[Channel]:
        """Collapse repeated channels while keeping request order."""
        seen = []
        for channel in v:
            if channel not in seen:
                seen.append(channel)
        return seen

    model_config = {"json_schema_extra": {"example": {
        "user_id": 42,
        "channels": ["EMAIL", "SMS"],
        "template_code": "otp",
        "recipient": {"email": "user@example.com", "phone": "+15551234567"},
        "template_data": {"otp": "123456", "expiry_minutes": 5},
        "priority": 8,
    }}}


class Notification(BaseModel):
    """A single channel send and its delivery lifecycle.

    Status transitions are applied through the mark_* methods, which refuse to
    modify a notification that has already reached a terminal status. The
    persisted row is the source of truth; queue messages are derived from it.
    """

    id: Optional[int] = None
    user_id: int
    channel: Channel
    template_code: str
    recipient: Optional[str] = None
    subject: Optional[str] = None
    rendered_content: Optional[str] = None
    template_data: Optional[str] = Field(None, description="Template data as JSON text")
    metadata: Optional[str] = Field(None, description="Caller metadata as JSON text")
    priority: int = 5

    status: NotificationStatus = NotificationStatus.PENDING
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    external_id: Optional[str] = None
    provider_response: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None

    is_read: bool = False
    read_at: Optional[datetime] = None

    @field_validator(
        "next_retry_at", "created_at", "updated_at", "sent_at",
        "delivered_at", "failed_at", "read_at",
    )
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Ensure datetime is timezone-aware and in UTC."""
        return ensure_utc(v)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _guard(self, target: NotificationStatus) -> None:
        if self.is_terminal:
            raise InvalidStatusTransition(
                f"Notification {self.id} is {self.status.value}; cannot move to {target.value}"
            )

    def touch(self, now: Optional[datetime] = None) -> None:
        self.updated_at = now or utc_now()

    def mark_processing(self, now: Optional[datetime] = None) -> None:
        """PENDING/RETRY -> PROCESSING on dequeue."""
        self._guard(NotificationStatus.PROCESSING)
        self.status = NotificationStatus.PROCESSING
        self.next_retry_at = None
        self.touch(now or utc_now())

    def mark_delivered(
        self,
        external_id: Optional[str],
        provider_response: Optional[str],
        now: Optional[datetime] = None,
    ) -> None:
        """Record a successful provider send."""
        self._guard(NotificationStatus.DELIVERED)
        now = now or utc_now()
        self.status = NotificationStatus.DELIVERED
        self.external_id = external_id
        self.provider_response = provider_response
        self.next_retry_at = None
        self.sent_at = now
        self.delivered_at = now
        self.touch(now)

    def schedule_retry(self, next_retry_at: datetime, now: Optional[datetime] = None) -> None:
        """Move to RETRY, consuming one retry attempt."""
        self._guard(NotificationStatus.RETRY)
        self.status = NotificationStatus.RETRY
        self.retry_count += 1
        self.next_retry_at = ensure_utc(next_retry_at)
        self.touch(now or utc_now())

    def mark_failed(self, status: NotificationStatus, now: Optional[datetime] = None) -> None:
        """Move to one of the two terminal failure statuses."""
        if status not in (NotificationStatus.FAILED_PERMANENT, NotificationStatus.FAILED_MAX_RETRY):
            raise ValueError(f"Not a failure status: {status}")
        self._guard(status)
        now = now or utc_now()
        self.status = status
        self.next_retry_at = None
        self.failed_at = now
        self.touch(now)

    def record_error(
        self,
        error_message: Optional[str],
        error_code: Optional[str],
        provider_response: Optional[str] = None,
    ) -> None:
        """Keep the latest failure. A raw provider response replaces the stored one when given."""
        self.error_message = error_message
        self.error_code = error_code
        if provider_response is not None:
            self.provider_response = provider_response

    def mark_read(self, now: Optional[datetime] = None) -> bool:
        """Flag an in-app notification as read. Returns False if already read."""
        if self.is_read:
            return False
        self.is_read = True
        self.read_at = now or utc_now()
        return True


class NotificationMessage(BaseModel):
    """Queue payload for one notification delivery attempt.

    The message is a cache of the persisted Notification and can always be
    rebuilt from it with from_notification().
    """

    notification_id: int
    user_id: int
    channel: Channel
    template_code: str
    recipient: Optional[str] = None
    subject: Optional[str] = None
    rendered_content: Optional[str] = None
    template_data: Optional[str] = None
    retry_count: int = 0
    priority: int = 5
    next_retry_at: Optional[datetime] = None

    @field_validator("next_retry_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Ensure datetime is timezone-aware and in UTC."""
        return ensure_utc(v)

    @classmethod
    def from_notification(cls, notification: Notification) -> "NotificationMessage":
        if notification.id is None:
            raise ValueError("Cannot build a message for an unsaved notification")
        return cls(
            notification_id=notification.id,
            user_id=notification.user_id,
            channel=notification.channel,
            template_code=notification.template_code,
            recipient=notification.recipient,
            subject=notification.subject,
            rendered_content=notification.rendered_content,
            template_data=notification.template_data,
            retry_count=notification.retry_count,
            priority=notification.priority,
            next_retry_at=notification.next_retry_at,
        )

    def to_payload(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return self.model_dump(mode="json")

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "NotificationMessage":
        return cls.model_validate(payload)


class DeadLetterEntry(BaseModel):
    """Append-only record of a notification that will never be delivered."""

    id: Optional[int] = None
    notification_id: int
    user_id: int
    channel: Channel
    template_code: str
    recipient: Optional[str] = None
    template_data: Optional[str] = None
    retry_count: int = 0
    failure_reason: str
    last_error_code: Optional[str] = None
    last_provider_response: Optional[str] = None
    original_created_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @field_validator("original_created_at", "created_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Ensure datetime is timezone-aware and in UTC."""
        return ensure_utc(v)

    @classmethod
    def from_notification(
        cls,
        notification: Notification,
        failure_reason: str,
        now: Optional[datetime] = None,
    ) -> "DeadLetterEntry":
        """Snapshot a failed notification for the dead-letter store."""
        return cls(
            notification_id=notification.id,
            user_id=notification.user_id,
            channel=notification.channel,
            template_code=notification.template_code,
            recipient=notification.recipient,
            template_data=notification.template_data,
            retry_count=notification.retry_count,
            failure_reason=failure_reason,
            last_error_code=notification.error_code,
            last_provider_response=notification.provider_response,
            original_created_at=notification.created_at,
            created_at=now or utc_now(),
        )


@dataclass
class ProviderResponse:
    """Result of a single provider send attempt.

    Attributes:
        success: Whether the provider accepted the message
        message_id: Provider-assigned identifier (success only)
        raw_response: Raw provider payload for auditing
        error_message: Human-readable failure reason (failure only)
        error_code: Provider or transport error code (failure only)
        error_type: RETRIABLE or PERMANENT (failure only)
    """

    success: bool
    message_id: Optional[str] = None
    raw_response: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    error_type: Optional[ErrorType] = None

    @classmethod
    def ok(cls, message_id: str, raw_response: Optional[str] = None) -> "ProviderResponse":
        return cls(success=True, message_id=message_id, raw_response=raw_response)

    @classmethod
    def failure(
        cls,
        error_message: str,
        error_code: Optional[str],
        error_type: ErrorType,
        raw_response: Optional[str] = None,
    ) -> "ProviderResponse":
        return cls(
            success=False,
            error_message=error_message,
            error_code=error_code,
            error_type=ErrorType(error_type),
            raw_response=raw_response,
        )

    @classmethod
    def retriable_failure(
        cls, error_message: str, error_code: Optional[str] = None, raw_response: Optional[str] = None
    ) -> "ProviderResponse":
        return cls.failure(error_message, error_code, ErrorType.RETRIABLE, raw_response)

    @classmethod
    def permanent_failure(
        cls, error_message: str, error_code: Optional[str] = None, raw_response: Optional[str] = None
    ) -> "ProviderResponse":
        return cls.failure(error_message, error_code, ErrorType.PERMANENT, raw_response)

    @property
    def is_retriable(self) -> bool:
        return not self.success and self.error_type == ErrorType.RETRIABLE
