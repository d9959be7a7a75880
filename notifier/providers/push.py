"""Push delivery through the Firebase Cloud Messaging HTTP v1 API.

Requests go through an authorized requests session (google-auth service
account credentials), so token refresh is handled by the session.
"""

import json
from typing import Any, Dict, Optional, Tuple

import requests
from google.auth.exceptions import GoogleAuthError

from notifier.delivery.classifier import ErrorClassifier
from notifier.domain.models import Channel, NotificationMessage, ProviderResponse
from notifier.logging import get_logger
from notifier.utils.redaction import mask_identifier

from .base import INVALID_RECIPIENT, TRANSPORT_ERROR, Provider

logger = get_logger(__name__, component="provider.fcm")

FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
FCM_ERROR_TYPE = "type.googleapis.com/google.firebase.fcm.v1.FcmError"

DEFAULT_TITLE = "Notification"


def parse_push_content(
    rendered_content: Optional[str], subject: Optional[str]
) -> Tuple[str, str, Dict[str, str]]:
    """Split rendered push content into (title, body, data).

    Content that is a JSON object may carry "title", "body" and "data";
    anything else is used verbatim as the body.

    Example:
        >>> parse_push_content('{"title": "Hi", "body": "Code 1234"}', None)
        ('Hi', 'Code 1234', {})
    """
    title = subject or DEFAULT_TITLE
    body = rendered_content or ""
    data: Dict[str, str] = {}

    try:
        parsed = json.loads(body) if body else None
    except ValueError:
        parsed = None

    if isinstance(parsed, dict):
        title = str(parsed.get("title") or title)
        body = str(parsed.get("body") or "")
        raw_data = parsed.get("data")
        if isinstance(raw_data, dict):
            # FCM data values must be strings
            data = {str(key): str(value) for key, value in raw_data.items()}

    return title, body, data


def extract_fcm_error(response: requests.Response) -> Tuple[str, str]:
    """Pull (error_code, message) out of an FCM error response.

    The FcmError detail's errorCode (e.g. UNREGISTERED) wins over the
    top-level status (e.g. NOT_FOUND).
    """
    try:
        error = response.json().get("error", {})
    except ValueError:
        return f"HTTP_{response.status_code}", response.text or response.reason or ""

    details = [d for d in error.get("details") or [] if d.get("errorCode")]
    details.sort(key=lambda d: d.get("@type") != FCM_ERROR_TYPE)

    code = details[0]["errorCode"] if details else error.get("status")
    code = code or f"HTTP_{response.status_code}"

    return code, error.get("message") or response.reason or ""


class FcmPushProvider(Provider):
    """Sends push notifications to a single device token."""

    channel = Channel.PUSH
    permanent_error_codes = frozenset({
        "UNREGISTERED", "INVALID_ARGUMENT", "SENDER_ID_MISMATCH", INVALID_RECIPIENT,
    })

    def __init__(
        self,
        session: Optional[requests.Session],
        project_id: Optional[str],
        enabled: bool = True,
        timeout_seconds: float = 10.0,
        classifier: Optional[ErrorClassifier] = None,
    ):
        super().__init__(enabled=enabled, classifier=classifier)
        self.session = session
        self.project_id = project_id
        self.timeout_seconds = timeout_seconds

    def is_enabled(self) -> bool:
        return self.enabled and self.session is not None and bool(self.project_id)

    @property
    def send_url(self) -> str:
        return FCM_SEND_URL.format(project_id=self.project_id)

    def build_payload(self, message: NotificationMessage) -> Dict[str, Any]:
        title, body, data = parse_push_content(message.rendered_content, message.subject)
        data["notificationId"] = str(message.notification_id)
        data["templateCode"] = message.template_code
        return {
            "message": {
                "token": message.recipient,
                "notification": {"title": title, "body": body},
                "data": data,
            }
        }

    def _send(self, message: NotificationMessage) -> ProviderResponse:
        if not message.recipient:
            return self.failure("No device token", INVALID_RECIPIENT)

        token = mask_identifier(message.recipient, visible=6)

        try:
            response = self.session.post(
                self.send_url,
                json=self.build_payload(message),
                timeout=self.timeout_seconds,
            )
        except GoogleAuthError as e:
            logger.error(
                f"FCM credentials rejected: {e}",
                extra={"event": "provider.fcm.auth_failed", "error_type": type(e).__name__},
            )
            return ProviderResponse.retriable_failure(f"FCM authentication error: {e}", "AUTH_ERROR")
        except requests.exceptions.RequestException as e:
            return self.failure(f"FCM transport error: {e}", TRANSPORT_ERROR, exception=e)

        if response.ok:
            message_id = response.json().get("name")
            logger.info(
                f"Push sent to token {token}",
                extra={
                    "event": "provider.fcm.sent",
                    "notification_id": message.notification_id,
                    "message_id": message_id,
                },
            )
            return ProviderResponse.ok(message_id, response.text)

        code, error_message = extract_fcm_error(response)
        logger.debug(
            f"FCM rejected push to token {token}: {code}",
            extra={"event": "provider.fcm.rejected", "status_code": response.status_code},
        )
        return self.failure(
            f"FCM error {code}: {error_message}", code, raw_response=response.text
        )
