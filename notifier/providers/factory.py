"""Builds the provider for each consumed channel from configuration.

Transport clients (SMTP settings, Twilio REST client, FCM authorized session)
are created once here and handed to the providers.
"""

from typing import Dict, Optional

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import AuthorizedSession
from google.oauth2 import service_account
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client as TwilioClient

from notifier.config.environment import EnvironmentConfig
from notifier.config.models import AppConfig, TwilioProviderConfig
from notifier.delivery.classifier import ErrorClassifier
from notifier.domain.models import Channel
from notifier.logging import get_logger

from .base import Provider
from .email import EmailProvider
from .exceptions import ProviderConfigurationError
from .in_app import InAppProvider
from .push import FCM_SCOPE, FcmPushProvider
from .sms import SmsProvider
from .smtp_client import SMTPClient, SMTPSettings
from .whatsapp import WhatsAppProvider

logger = get_logger(__name__, component="provider.factory")


def build_providers(
    app_config: AppConfig,
    env_config: EnvironmentConfig,
    classifier: Optional[ErrorClassifier] = None,
) -> Dict[Channel, Provider]:
    """Create providers for every channel in app_config.channels.

    A provider disabled in configuration is still built (without a transport
    client) so its messages fail through the normal retry path.

    Raises:
        ProviderConfigurationError: If an enabled provider lacks required settings
    """
    classifier = classifier or ErrorClassifier()
    providers: Dict[Channel, Provider] = {}

    for channel in app_config.channels:
        if channel == Channel.EMAIL:
            providers[channel] = _build_email(app_config, env_config, classifier)
        elif channel == Channel.SMS:
            providers[channel] = _build_twilio(
                SmsProvider, app_config.providers.sms, env_config, classifier
            )
        elif channel == Channel.WHATSAPP:
            providers[channel] = _build_twilio(
                WhatsAppProvider, app_config.providers.whatsapp, env_config, classifier
            )
        elif channel == Channel.PUSH:
            providers[channel] = _build_push(app_config, env_config, classifier)
        else:
            providers[channel] = InAppProvider(classifier=classifier)

        logger.info(
            f"Provider for {channel.value}: {providers[channel].name} "
            f"({'enabled' if providers[channel].is_enabled() else 'disabled'})",
            extra={
                "event": "provider.configured",
                "channel": channel.value,
                "provider": providers[channel].name,
                "enabled": providers[channel].is_enabled(),
            },
        )

    return providers


def _build_email(
    app_config: AppConfig, env_config: EnvironmentConfig, classifier: ErrorClassifier
) -> EmailProvider:
    settings = app_config.providers.email
    if not settings.enabled:
        return EmailProvider(None, enabled=False, classifier=classifier)

    if not env_config.smtp_host:
        raise ProviderConfigurationError("Email provider is enabled but SMTP_HOST is not set")

    client = SMTPClient(
        SMTPSettings(
            host=env_config.smtp_host,
            port=env_config.smtp_port,
            username=env_config.smtp_user,
            password=env_config.smtp_pass,
            use_tls=settings.use_tls,
            timeout_seconds=settings.timeout_seconds,
            sender_name=env_config.smtp_sender_name,
            sender_address=env_config.smtp_sender_address,
        )
    )
    return EmailProvider(client, classifier=classifier)


def _build_twilio(
    provider_class,
    settings: TwilioProviderConfig,
    env_config: EnvironmentConfig,
    classifier: ErrorClassifier,
):
    if not settings.enabled:
        return provider_class(None, None, enabled=False, classifier=classifier)

    channel = provider_class.channel.value
    if not env_config.has_twilio_credentials:
        raise ProviderConfigurationError(
            f"{channel} provider is enabled but TWILIO_ACCOUNT_SID/TWILIO_AUTH_TOKEN are not set"
        )
    if not settings.from_number:
        raise ProviderConfigurationError(
            f"{channel} provider is enabled but providers.{channel.lower()}.from_number is not set"
        )

    client = TwilioClient(
        env_config.twilio_account_sid,
        env_config.twilio_auth_token,
        http_client=TwilioHttpClient(timeout=settings.timeout_seconds),
    )
    return provider_class(
        client,
        settings.from_number,
        status_callback_url=settings.status_callback_url,
        classifier=classifier,
    )


def _build_push(
    app_config: AppConfig, env_config: EnvironmentConfig, classifier: ErrorClassifier
) -> FcmPushProvider:
    settings = app_config.providers.push
    if not settings.enabled:
        return FcmPushProvider(None, None, enabled=False, classifier=classifier)

    if not env_config.fcm_credentials_file:
        raise ProviderConfigurationError("Push provider is enabled but FCM_CREDENTIALS_FILE is not set")

    try:
        credentials = service_account.Credentials.from_service_account_file(
            env_config.fcm_credentials_file, scopes=[FCM_SCOPE]
        )
    except (GoogleAuthError, ValueError, OSError) as e:
        raise ProviderConfigurationError(f"Could not load FCM service account credentials: {e}") from e

    project_id = env_config.fcm_project_id or credentials.project_id
    if not project_id:
        raise ProviderConfigurationError(
            "Push provider is enabled but no FCM project id is available "
            "(set FCM_PROJECT_ID or use a credentials file that names one)"
        )

    return FcmPushProvider(
        AuthorizedSession(credentials),
        project_id,
        timeout_seconds=settings.timeout_seconds,
        classifier=classifier,
    )
