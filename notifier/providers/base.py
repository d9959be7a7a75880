"""Provider contract shared by every delivery channel."""

from abc import ABC, abstractmethod
from typing import FrozenSet, Optional

from notifier.delivery.classifier import ErrorClassifier
from notifier.domain.models import Channel, ErrorType, NotificationMessage, ProviderResponse
from notifier.logging import get_logger

logger = get_logger(__name__, component="provider")

PROVIDER_DISABLED = "PROVIDER_DISABLED"
INVALID_RECIPIENT = "INVALID_RECIPIENT"
TRANSPORT_ERROR = "TRANSPORT_ERROR"


class Provider(ABC):
    """Sends one NotificationMessage through an external transport.

    Subclasses implement _send() and declare the error codes they consider
    permanent. Codes a provider does not own fall through to the shared
    ErrorClassifier. send() never raises for transport failures; every
    outcome is a ProviderResponse.
    """

    channel: Channel
    permanent_error_codes: FrozenSet[str] = frozenset()

    def __init__(self, enabled: bool = True, classifier: Optional[ErrorClassifier] = None):
        self.enabled = enabled
        self.classifier = classifier or ErrorClassifier()

    @property
    def name(self) -> str:
        return type(self).__name__

    def is_enabled(self) -> bool:
        return self.enabled

    def send(self, message: NotificationMessage) -> ProviderResponse:
        if not self.is_enabled():
            logger.warning(
                f"{self.name} is disabled; rejecting notification {message.notification_id}",
                extra={"event": "provider.disabled", "provider": self.name},
            )
            return ProviderResponse.permanent_failure(
                f"Provider {self.name} is disabled", PROVIDER_DISABLED
            )
        return self._send(message)

    @abstractmethod
    def _send(self, message: NotificationMessage) -> ProviderResponse:
        """Perform the transport call for an enabled provider."""

    def classify(
        self,
        error_code: Optional[str],
        error_message: Optional[str],
        exception: Optional[BaseException] = None,
    ) -> ErrorType:
        if error_code is not None and str(error_code).upper() in self.permanent_error_codes:
            return ErrorType.PERMANENT
        return self.classifier.classify(error_code, error_message, exception)

    def failure(
        self,
        error_message: str,
        error_code: Optional[str] = None,
        exception: Optional[BaseException] = None,
        raw_response: Optional[str] = None,
    ) -> ProviderResponse:
        """Build a failure response classified by this provider's rules."""
        error_type = self.classify(error_code, error_message, exception)
        logger.warning(
            f"{self.name} send failed: {error_message}",
            extra={
                "event": "provider.send.failed",
                "provider": self.name,
                "error_code": error_code,
                "error_type": error_type.value,
            },
        )
        return ProviderResponse.failure(error_message, error_code, error_type, raw_response)
