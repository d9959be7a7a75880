"""SMTP client wrapper for email delivery.

This module provides a thin wrapper around Python's smtplib with support
for TLS/SSL, authentication, bounded timeouts, and proper connection
lifecycle management.
"""

import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class SMTPSettings:
    """Connection settings for the outbound mail server."""

    host: str
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    use_tls: bool = True
    timeout_seconds: float = 10.0
    sender_name: str = "Notifications"
    sender_address: Optional[str] = None

    @property
    def from_address(self) -> str:
        """Bare sender address: explicit address, else the SMTP user, else noreply@host."""
        if self.sender_address:
            return self.sender_address
        if self.username and "@" in self.username:
            return self.username
        return f"noreply@{self.host}"

    @property
    def formatted_sender(self) -> str:
        return f"{self.sender_name} <{self.from_address}>"


class SMTPDeliveryError(Exception):
    """Raised when the SMTP conversation fails.

    Attributes:
        smtp_code: Server reply code when the server answered (e.g. 550), else None
    """

    def __init__(self, message: str, smtp_code: Optional[int] = None):
        self.smtp_code = smtp_code
        super().__init__(message)


def _extract_smtp_code(error: smtplib.SMTPException) -> Optional[int]:
    if isinstance(error, smtplib.SMTPRecipientsRefused):
        for code, _ in error.recipients.values():
            return code
        return None
    return getattr(error, "smtp_code", None)


class SMTPClient:
    """Wrapper around smtplib for sending email messages.

    Handles connection lifecycle, TLS/SSL negotiation, and authentication.
    The smtplib constructors are injectable for tests.
    """

    def __init__(
        self,
        settings: SMTPSettings,
        smtp_factory: Optional[Callable] = None,
        smtp_ssl_factory: Optional[Callable] = None,
    ):
        """Initialize SMTP client.

        Args:
            settings: Server, credential and timeout settings
            smtp_factory: Factory for SMTP instances (for mocking)
            smtp_ssl_factory: Factory for SMTP_SSL instances (for mocking)
        """
        self.settings = settings
        self.smtp_factory = smtp_factory or smtplib.SMTP
        self.smtp_ssl_factory = smtp_ssl_factory or smtplib.SMTP_SSL

    def send(self, message: EmailMessage) -> None:
        """Send an email message via SMTP.

        Args:
            message: Fully constructed EmailMessage to send

        Raises:
            SMTPDeliveryError: If message delivery fails
        """
        settings = self.settings
        smtp = None
        try:
            if settings.port == 465:
                # Implicit TLS
                logger.debug(f"Connecting to {settings.host}:{settings.port} with implicit TLS")
                smtp = self.smtp_ssl_factory(
                    settings.host,
                    settings.port,
                    timeout=settings.timeout_seconds,
                    context=ssl.create_default_context(),
                )
            else:
                logger.debug(f"Connecting to {settings.host}:{settings.port}")
                smtp = self.smtp_factory(
                    settings.host, settings.port, timeout=settings.timeout_seconds
                )

                if settings.use_tls:
                    logger.debug("Upgrading connection with STARTTLS")
                    smtp.starttls(context=ssl.create_default_context())

            if settings.username and settings.password:
                logger.debug(f"Authenticating as {settings.username}")
                smtp.login(settings.username, settings.password)

            smtp.send_message(message)
            logger.debug("Message accepted by SMTP server")

        except smtplib.SMTPException as e:
            code = _extract_smtp_code(e)
            raise SMTPDeliveryError(f"SMTP error during message delivery: {e}", smtp_code=code) from e
        except OSError as e:
            raise SMTPDeliveryError(f"Network error during SMTP connection: {e}") from e
        finally:
            if smtp is not None:
                try:
                    smtp.quit()
                except (smtplib.SMTPException, OSError) as e:
                    logger.warning(f"Error closing SMTP connection: {e}")
