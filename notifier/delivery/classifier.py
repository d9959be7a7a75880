"""Classification of delivery failures into retriable and permanent errors.

The classifier is the single decision point that sends a failed notification
either back onto its queue (RETRIABLE) or straight to the dead-letter store
(PERMANENT). Decision order:

1. Error code in the permanent-code set (case-insensitive) -> PERMANENT
2. Message contains a permanent phrase -> PERMANENT
3. Network/timeout exception, or message contains a transient phrase -> RETRIABLE
4. Anything else -> RETRIABLE
"""

import socket
from typing import FrozenSet, Iterable, Optional

import requests

from notifier.domain.models import ErrorType
from notifier.logging import get_logger

logger = get_logger(__name__, component="classifier")

PERMANENT_ERROR_CODES: FrozenSet[str] = frozenset({
    # Twilio: invalid 'To', unreachable, not mobile, region not permitted, opted out
    "21211", "21612", "21614", "21408", "21610",
    # Twilio carrier: blocked, unknown destination, landline, carrier violation
    "30004", "30005", "30006", "30007",
    # SMTP mailbox / policy rejections
    "550", "551", "552", "553", "554",
    # FCM
    "INVALID_ARGUMENT", "NOT_FOUND", "UNREGISTERED", "SENDER_ID_MISMATCH",
    # Generic
    "INVALID_RECIPIENT", "BLOCKED", "UNSUBSCRIBED",
})

PERMANENT_ERROR_PHRASES = (
    "invalid",
    "not found",
    "blocked",
    "unsubscribed",
    "blacklisted",
    "opt-out",
    "unregistered",
    "does not exist",
    "permission denied",
)

RETRIABLE_ERROR_PHRASES = (
    "rate limit",
    "too many requests",
    "timeout",
    "timed out",
    "connection",
    "temporarily unavailable",
)

RETRIABLE_EXCEPTIONS = (
    TimeoutError,
    ConnectionError,
    socket.timeout,
    socket.gaierror,
    OSError,
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
)


class ErrorClassifier:
    """Maps (error code, message, exception) to an ErrorType.

    Providers may pass extra permanent codes of their own; those are merged
    with the shared set.
    """

    def __init__(self, extra_permanent_codes: Optional[Iterable[str]] = None):
        self.permanent_codes = PERMANENT_ERROR_CODES | frozenset(
            str(code).upper() for code in (extra_permanent_codes or ())
        )

    def classify(
        self,
        error_code: Optional[str],
        error_message: Optional[str],
        exception: Optional[BaseException] = None,
    ) -> ErrorType:
        if error_code is not None and str(error_code).strip().upper() in self.permanent_codes:
            logger.debug(
                f"Classified as PERMANENT by error code {error_code}",
                extra={"event": "classifier.permanent.code", "error_code": str(error_code)},
            )
            return ErrorType.PERMANENT

        message = error_message
        if message is None and exception is not None:
            message = str(exception)
        lower_message = (message or "").lower()

        for phrase in PERMANENT_ERROR_PHRASES:
            if phrase in lower_message:
                logger.debug(
                    f"Classified as PERMANENT by message phrase '{phrase}'",
                    extra={"event": "classifier.permanent.phrase", "phrase": phrase},
                )
                return ErrorType.PERMANENT

        if exception is not None and is_retriable_exception(exception):
            reason = "exception"
        elif any(phrase in lower_message for phrase in RETRIABLE_ERROR_PHRASES):
            reason = "phrase"
        else:
            reason = "default"

        logger.debug(
            f"Classified as RETRIABLE ({reason})",
            extra={"event": "classifier.retriable", "reason": reason},
        )
        return ErrorType.RETRIABLE


def is_retriable_exception(exception: BaseException) -> bool:
    """True for network, timeout, and I/O failures."""
    return isinstance(exception, RETRIABLE_EXCEPTIONS)


def build_error_message(
    exception: Optional[BaseException], provider_response: Optional[str] = None
) -> str:
    """Combine an exception and a raw provider response into one message.

    Example:
        >>> build_error_message(TimeoutError("read timed out"), '{"status": 504}')
        'TimeoutError: read timed out | Provider response: {"status": 504}'
    """
    parts = []
    if exception is not None:
        parts.append(f"{type(exception).__name__}: {exception}")
    if provider_response:
        if parts:
            parts.append(" | Provider response: ")
        parts.append(provider_response)
    return "".join(parts) or "Unknown error"


_default_classifier = ErrorClassifier()


def classify_error(
    error_code: Optional[str],
    error_message: Optional[str],
    exception: Optional[BaseException] = None,
) -> ErrorType:
    """Classify with the shared permanent-code set."""
    return _default_classifier.classify(error_code, error_message, exception)
