"""Email delivery over SMTP."""

import html
import json
import re
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Optional

from email_validator import EmailNotValidError, validate_email

from notifier.delivery.classifier import ErrorClassifier
from notifier.domain.models import Channel, NotificationMessage, ProviderResponse
from notifier.logging import get_logger
from notifier.utils.redaction import mask_identifier

from .base import INVALID_RECIPIENT, TRANSPORT_ERROR, Provider
from .smtp_client import SMTPClient, SMTPDeliveryError

logger = get_logger(__name__, component="provider.email")

DEFAULT_SUBJECT = "Notification"

_TAG_RE = re.compile(r"<[^>]+>")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")


def html_to_text(content: str) -> str:
    """Crude plain-text fallback for an HTML body."""
    text = _TAG_RE.sub("", content)
    text = html.unescape(text)
    return _BLANK_LINES_RE.sub("\n\n", text).strip()


class EmailProvider(Provider):
    """Sends rendered HTML email through an SMTPClient.

    SMTP 550-554 replies are permanent; 4xx replies and network failures are
    retried. The generated Message-ID is the external id.
    """

    channel = Channel.EMAIL
    permanent_error_codes = frozenset({"550", "551", "552", "553", "554", INVALID_RECIPIENT})

    def __init__(
        self,
        smtp_client: Optional[SMTPClient],
        enabled: bool = True,
        classifier: Optional[ErrorClassifier] = None,
    ):
        super().__init__(enabled=enabled, classifier=classifier)
        self.smtp_client = smtp_client

    def is_enabled(self) -> bool:
        return self.enabled and self.smtp_client is not None

    def build_message(self, message: NotificationMessage, recipient: str) -> EmailMessage:
        settings = self.smtp_client.settings
        body = message.rendered_content or ""

        email = EmailMessage()
        email["Subject"] = (message.subject or DEFAULT_SUBJECT).replace("\n", " ").strip()
        email["From"] = settings.formatted_sender
        email["To"] = recipient
        email["Message-ID"] = make_msgid(domain=settings.from_address.rpartition("@")[2] or None)
        email["X-Notification-Id"] = str(message.notification_id)

        email.set_content(html_to_text(body) or body)
        email.add_alternative(body, subtype="html")
        return email

    def _send(self, message: NotificationMessage) -> ProviderResponse:
        try:
            recipient = validate_email(message.recipient or "", check_deliverability=False).normalized
        except EmailNotValidError as e:
            return self.failure(f"Invalid recipient email address: {e}", INVALID_RECIPIENT)

        email = self.build_message(message, recipient)
        message_id = email["Message-ID"]

        try:
            self.smtp_client.send(email)
        except SMTPDeliveryError as e:
            code = str(e.smtp_code) if e.smtp_code is not None else TRANSPORT_ERROR
            return self.failure(str(e), code, exception=e.__cause__)

        logger.info(
            f"Email sent to {mask_identifier(recipient)}",
            extra={
                "event": "provider.email.sent",
                "notification_id": message.notification_id,
                "message_id": message_id,
            },
        )
        return ProviderResponse.ok(
            message_id,
            json.dumps({"message_id": message_id, "status": "accepted"}),
        )
