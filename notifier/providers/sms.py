"""SMS delivery through the Twilio REST API."""

import json
from typing import Optional

import requests
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client as TwilioClient

from notifier.delivery.classifier import ErrorClassifier
from notifier.domain.models import Channel, NotificationMessage, ProviderResponse
from notifier.logging import get_logger
from notifier.utils.redaction import mask_identifier

from .base import INVALID_RECIPIENT, TRANSPORT_ERROR, Provider

logger = get_logger(__name__, component="provider.twilio")

# Invalid 'To', unreachable, not SMS-capable, region not permitted, opted out,
# and carrier rejections (blocked, unknown, landline, violation)
TWILIO_PERMANENT_CODES = frozenset({
    "21211", "21612", "21614", "21408", "21610",
    "30004", "30005", "30006", "30007",
})


class TwilioMessagingProvider(Provider):
    """Shared Twilio send path for SMS and WhatsApp.

    Subclasses set the channel and an address prefix ("" for SMS,
    "whatsapp:" for WhatsApp). The Twilio message SID is the external id.
    """

    address_prefix = ""
    permanent_error_codes = TWILIO_PERMANENT_CODES | {INVALID_RECIPIENT}

    def __init__(
        self,
        client: Optional[TwilioClient],
        from_number: Optional[str],
        enabled: bool = True,
        status_callback_url: Optional[str] = None,
        classifier: Optional[ErrorClassifier] = None,
    ):
        super().__init__(enabled=enabled, classifier=classifier)
        self.client = client
        self.from_number = from_number
        self.status_callback_url = status_callback_url

    def is_enabled(self) -> bool:
        return self.enabled and self.client is not None and bool(self.from_number)

    def format_address(self, number: str) -> str:
        number = number.strip()
        if self.address_prefix and not number.startswith(self.address_prefix):
            return f"{self.address_prefix}{number}"
        return number

    def _send(self, message: NotificationMessage) -> ProviderResponse:
        if not message.recipient:
            return self.failure("No recipient phone number", INVALID_RECIPIENT)

        params = {
            "to": self.format_address(message.recipient),
            "from_": self.format_address(self.from_number),
            "body": message.rendered_content or "",
        }
        if self.status_callback_url:
            params["status_callback"] = self.status_callback_url

        try:
            sent = self.client.messages.create(**params)
        except TwilioRestException as e:
            code = str(e.code) if e.code is not None else str(e.status)
            raw = json.dumps({"code": e.code, "status": e.status, "message": e.msg})
            return self.failure(f"Twilio error {code}: {e.msg}", code, exception=e, raw_response=raw)
        except (requests.exceptions.RequestException, OSError) as e:
            return self.failure(f"Twilio transport error: {e}", TRANSPORT_ERROR, exception=e)
        except TwilioException as e:
            return self.failure(f"Twilio client error: {e}", TRANSPORT_ERROR, exception=e)

        logger.info(
            f"{self.channel.value} sent to {mask_identifier(message.recipient)}",
            extra={
                "event": "provider.twilio.sent",
                "notification_id": message.notification_id,
                "sid": sent.sid,
                "twilio_status": getattr(sent, "status", None),
            },
        )
        return ProviderResponse.ok(
            sent.sid,
            json.dumps({"sid": sent.sid, "status": getattr(sent, "status", None)}),
        )


class SmsProvider(TwilioMessagingProvider):
    channel = Channel.SMS
