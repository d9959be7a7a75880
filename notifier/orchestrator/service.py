"""Notification service: the entry point for sending notifications.

This module provides the NotificationService class that turns a caller's
NotificationRequest into one persisted, queued Notification per channel:
rate-limit check, recipient resolution, template rendering, persistence,
rate-limit accounting and publishing. It also serves the read-side queries
used by the in-app inbox.
"""

import json
import logging
from datetime import datetime
from typing import Any, Callable, ContextManager, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError
from sqlalchemy.orm import Session

from notifier.domain.models import (
    Channel,
    Notification,
    NotificationMessage,
    NotificationRequest,
    RecipientDetails,
)
from notifier.logging import get_logger
from notifier.logging.context import log_context
from notifier.messaging.exceptions import PublishError
from notifier.messaging.publisher import ChannelPublisher
from notifier.persistence.database import get_session
from notifier.persistence.exceptions import PersistenceError
from notifier.persistence.repositories import DEFAULT_PAGE_SIZE, NotificationRepository
from notifier.ratelimit.exceptions import RateLimiterError
from notifier.ratelimit.limiter import RateLimiter
from notifier.templates.exceptions import RenderError
from notifier.templates.renderer import TemplateRenderer
from notifier.utils.redaction import mask_identifier
from notifier.utils.timestamps import utc_now

from .exceptions import RequestValidationError

logger = get_logger(__name__, component="orchestrator")

# In-app notifications are realized by the row itself
RECIPIENT_REQUIRED = frozenset({Channel.EMAIL, Channel.SMS, Channel.WHATSAPP, Channel.PUSH})

OTP_TEMPLATE = "otp"
MAGIC_LINK_TEMPLATE = "magic_link"
WELCOME_TEMPLATE = "welcome"

AUTH_PRIORITY = 9


def build_request(data: Union[NotificationRequest, Mapping[str, Any]]) -> NotificationRequest:
    """Validate raw request data into a NotificationRequest.

    Raises:
        RequestValidationError: If the data does not describe a valid request
    """
    if isinstance(data, NotificationRequest):
        return data
    try:
        return NotificationRequest.model_validate(data)
    except ValidationError as e:
        raise RequestValidationError(f"Invalid notification request: {e}", errors=e.errors()) from e


def _dump_json(value: Mapping[str, Any]) -> Optional[str]:
    if not value:
        return None
    return json.dumps(value, default=str, sort_keys=True)


class NotificationService:
    """Service for submitting notifications to the delivery pipeline.

    Coordinates the per-channel submission flow:
    1. Check the channel's rate limit (unless the request skips it)
    2. Resolve the channel's recipient address
    3. Render the channel template
    4. Persist a PENDING notification
    5. Record the rate-limit attempt
    6. Publish the queue message

    A channel that fails any step is skipped; the others continue. A row whose
    publish failed stays PENDING and is picked up by the reconciler.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        renderer: TemplateRenderer,
        publisher: ChannelPublisher,
        session_factory: Callable[[], ContextManager[Session]] = get_session,
        clock: Callable[[], datetime] = utc_now,
        logger_instance: Optional[logging.Logger] = None,
    ):
        """Initialize notification service.

        Args:
            rate_limiter: Per-user, per-channel limiter
            renderer: Channel template renderer
            publisher: Publisher for the channel queues
            session_factory: Context manager yielding a transactional session
            clock: Source of "now"
            logger_instance: Logger instance (uses module logger if None)
        """
        self.rate_limiter = rate_limiter
        self.renderer = renderer
        self.publisher = publisher
        self.session_factory = session_factory
        self.clock = clock
        self.logger = logger_instance or logger

    def send(self, request: Union[NotificationRequest, Mapping[str, Any]]) -> List[int]:
        """Fan a request out into one queued notification per channel.

        Args:
            request: NotificationRequest, or a mapping validated into one

        Returns:
            Ids of the notifications that were persisted and published, in
            request channel order. Skipped channels are absent.

        Raises:
            RequestValidationError: If a mapping fails validation
        """
        request = build_request(request)
        notification_ids: List[int] = []

        with log_context(user_id=request.user_id, template_code=request.template_code):
            for channel in request.channels:
                with log_context(channel=channel.value):
                    notification_id = self._send_channel(request, channel)
                if notification_id is not None:
                    notification_ids.append(notification_id)

            self.logger.info(
                f"Queued {len(notification_ids)} of {len(request.channels)} notifications "
                f"for user {request.user_id}",
                extra={
                    "event": "notification.request.completed",
                    "requested_channels": [c.value for c in request.channels],
                    "queued_count": len(notification_ids),
                    "notification_ids": notification_ids,
                },
            )

        return notification_ids

    def _send_channel(self, request: NotificationRequest, channel: Channel) -> Optional[int]:
        if not request.skip_rate_limit and not self._rate_limit_allows(request.user_id, channel):
            return None

        recipient = request.recipient.recipient_for(channel)
        if channel in RECIPIENT_REQUIRED and not recipient:
            self.logger.warning(
                f"No recipient for {channel.value}; skipping channel",
                extra={"event": "notification.skip", "reason": "recipient_missing"},
            )
            return None

        try:
            content = self.renderer.render(channel, request.template_code, request.template_data)
        except RenderError as e:
            self.logger.error(
                f"Could not render {request.template_code} for {channel.value}: {e}",
                extra={"event": "notification.skip", "reason": "render_failed"},
            )
            return None

        now = self.clock()
        notification = Notification(
            user_id=request.user_id,
            channel=channel,
            template_code=request.template_code,
            recipient=recipient,
            subject=request.subject,
            rendered_content=content,
            template_data=_dump_json(request.template_data),
            metadata=_dump_json(request.metadata),
            priority=request.priority,
            created_at=now,
            updated_at=now,
        )

        try:
            with self.session_factory() as session:
                notification = NotificationRepository(session).create(notification)
        except PersistenceError as e:
            self.logger.error(
                f"Could not persist {channel.value} notification: {e}",
                extra={"event": "notification.skip", "reason": "persistence_failed"},
            )
            return None

        if not request.skip_rate_limit:
            self._record_attempt(request.user_id, channel)

        try:
            self.publisher.publish(NotificationMessage.from_notification(notification))
        except PublishError as e:
            self.logger.error(
                f"Notification {notification.id} persisted but not published; "
                f"left PENDING for reconciliation: {e}",
                extra={
                    "event": "notification.publish_failed",
                    "notification_id": notification.id,
                },
            )
            return None

        self.logger.info(
            f"Queued {channel.value} notification {notification.id} "
            f"to {mask_identifier(recipient)}",
            extra={
                "event": "notification.queued",
                "notification_id": notification.id,
                "priority": notification.priority,
            },
        )
        return notification.id

    def _rate_limit_allows(self, user_id: int, channel: Channel) -> bool:
        try:
            allowed = self.rate_limiter.is_allowed(user_id, channel)
        except RateLimiterError as e:
            # Unknown quota counts as exhausted
            self.logger.error(
                f"Rate limiter unavailable; skipping {channel.value}: {e}",
                extra={"event": "notification.skip", "reason": "rate_limiter_error"},
            )
            return False

        if not allowed:
            self.logger.warning(
                f"Rate limit exceeded for user {user_id} on {channel.value}; skipping channel",
                extra={"event": "notification.skip", "reason": "rate_limited"},
            )
        return allowed

    def _record_attempt(self, user_id: int, channel: Channel) -> None:
        try:
            self.rate_limiter.record_attempt(user_id, channel)
        except RateLimiterError as e:
            self.logger.warning(
                f"Could not record rate-limit attempt for {channel.value}: {e}",
                extra={"event": "rate_limit.record_failed"},
            )

    # Single-channel helpers

    def _send_single(
        self,
        user_id: int,
        channel: Channel,
        template_code: str,
        recipient: RecipientDetails,
        template_data: Optional[Dict[str, Any]] = None,
        subject: Optional[str] = None,
        priority: int = 5,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        request = build_request(
            {
                "user_id": user_id,
                "channels": [channel],
                "template_code": template_code,
                "recipient": recipient,
                "template_data": template_data or {},
                "subject": subject,
                "priority": priority,
                "metadata": metadata or {},
            }
        )
        ids = self.send(request)
        return ids[0] if ids else None

    def send_email(
        self,
        user_id: int,
        email: str,
        template_code: str,
        template_data: Optional[Dict[str, Any]] = None,
        subject: Optional[str] = None,
        priority: int = 5,
    ) -> Optional[int]:
        """Queue one email. Returns the notification id, or None if skipped."""
        return self._send_single(
            user_id, Channel.EMAIL, template_code, RecipientDetails(email=email),
            template_data, subject, priority,
        )

    def send_sms(
        self,
        user_id: int,
        phone: str,
        template_code: str,
        template_data: Optional[Dict[str, Any]] = None,
        priority: int = 5,
    ) -> Optional[int]:
        return self._send_single(
            user_id, Channel.SMS, template_code, RecipientDetails(phone=phone),
            template_data, priority=priority,
        )

    def send_whatsapp(
        self,
        user_id: int,
        whatsapp_number: str,
        template_code: str,
        template_data: Optional[Dict[str, Any]] = None,
        priority: int = 5,
    ) -> Optional[int]:
        return self._send_single(
            user_id, Channel.WHATSAPP, template_code,
            RecipientDetails(whatsapp_number=whatsapp_number),
            template_data, priority=priority,
        )

    def send_push(
        self,
        user_id: int,
        fcm_token: str,
        template_code: str,
        template_data: Optional[Dict[str, Any]] = None,
        title: Optional[str] = None,
        priority: int = 5,
    ) -> Optional[int]:
        """Queue one push notification; title is used when the template sets none."""
        return self._send_single(
            user_id, Channel.PUSH, template_code, RecipientDetails(fcm_token=fcm_token),
            template_data, title, priority,
        )

    def send_in_app(
        self,
        user_id: int,
        template_code: str,
        template_data: Optional[Dict[str, Any]] = None,
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        return self._send_single(
            user_id, Channel.IN_APP, template_code, RecipientDetails(),
            template_data, subject, metadata=metadata,
        )

    def send_otp_email(
        self, user_id: int, email: str, otp: str, expiry_minutes: int = 5
    ) -> Optional[int]:
        """Queue a one-time-password email for an authentication flow.

        Raises:
            RateLimitExceededError: If the user's email quota is exhausted, so
                the auth flow can tell the user when to try again
        """
        self.rate_limiter.check(user_id, Channel.EMAIL)
        return self.send_email(
            user_id,
            email,
            OTP_TEMPLATE,
            {"otp": otp, "expiry_minutes": expiry_minutes},
            subject="Your verification code",
            priority=AUTH_PRIORITY,
        )

    def send_magic_link_email(
        self, user_id: int, email: str, magic_link: str, expiry_minutes: int = 15
    ) -> Optional[int]:
        """Queue a sign-in link email. Raises like send_otp_email."""
        self.rate_limiter.check(user_id, Channel.EMAIL)
        return self.send_email(
            user_id,
            email,
            MAGIC_LINK_TEMPLATE,
            {"magic_link": magic_link, "expiry_minutes": expiry_minutes},
            subject="Your sign-in link",
            priority=AUTH_PRIORITY,
        )

    def send_welcome(self, user_id: int, recipient: RecipientDetails, name: Optional[str] = None) -> List[int]:
        """Greet a new user by email and in-app (plus push when a token is known)."""
        channels = [Channel.EMAIL, Channel.IN_APP]
        if recipient.recipient_for(Channel.PUSH):
            channels.append(Channel.PUSH)
        return self.send(
            NotificationRequest(
                user_id=user_id,
                channels=channels,
                template_code=WELCOME_TEMPLATE,
                recipient=recipient,
                template_data={"name": name} if name else {},
                subject="Welcome!",
            )
        )

    # Read side

    def get_user_notifications(
        self,
        user_id: int,
        channel: Optional[Channel] = None,
        page: int = 0,
        size: int = DEFAULT_PAGE_SIZE,
    ) -> List[Notification]:
        """Page through a user's notifications, newest first."""
        with self.session_factory() as session:
            repo = NotificationRepository(session)
            if channel is not None:
                return repo.find_by_user_and_channel(user_id, Channel(channel), page, size)
            return repo.find_by_user(user_id, page, size)

    def get_unread_notifications(self, user_id: int) -> List[Notification]:
        with self.session_factory() as session:
            return NotificationRepository(session).find_unread_in_app(user_id)

    def get_notification(self, notification_id: int, user_id: int) -> Optional[Notification]:
        """Fetch a notification only if it belongs to the user."""
        with self.session_factory() as session:
            return NotificationRepository(session).get_by_id_and_user(notification_id, user_id)

    def get_unread_count(self, user_id: int) -> int:
        with self.session_factory() as session:
            return NotificationRepository(session).count_unread(user_id)

    def mark_as_read(self, notification_id: int, user_id: int) -> bool:
        """Mark one of the user's notifications read.

        Returns:
            False if the notification does not exist, belongs to someone else,
            or was already read
        """
        with self.session_factory() as session:
            repo = NotificationRepository(session)
            notification = repo.get_by_id_and_user(notification_id, user_id)
            if notification is None or not notification.mark_read(now=self.clock()):
                return False
            repo.save(notification)

        self.logger.debug(
            f"Notification {notification_id} marked read",
            extra={"event": "notification.read", "notification_id": notification_id},
        )
        return True

    def mark_all_as_read(self, user_id: int) -> int:
        with self.session_factory() as session:
            updated = NotificationRepository(session).mark_all_read(user_id, now=self.clock())

        self.logger.info(
            f"Marked {updated} notifications read for user {user_id}",
            extra={"event": "notification.read_all", "user_id": user_id, "count": updated},
        )
        return updated
