"""Delivery providers: one transport adapter per channel."""

from .base import INVALID_RECIPIENT, PROVIDER_DISABLED, TRANSPORT_ERROR, Provider
from .email import EmailProvider
from .exceptions import ProviderConfigurationError, ProviderError
from .factory import build_providers
from .in_app import InAppProvider
from .push import FcmPushProvider
from .sms import SmsProvider, TwilioMessagingProvider
from .smtp_client import SMTPClient, SMTPDeliveryError, SMTPSettings
from .whatsapp import WhatsAppProvider

__all__ = [
    "Provider",
    "EmailProvider",
    "SmsProvider",
    "WhatsAppProvider",
    "TwilioMessagingProvider",
    "FcmPushProvider",
    "InAppProvider",
    "SMTPClient",
    "SMTPSettings",
    "SMTPDeliveryError",
    "build_providers",
    "ProviderError",
    "ProviderConfigurationError",
    "PROVIDER_DISABLED",
    "INVALID_RECIPIENT",
    "TRANSPORT_ERROR",
]
