"""Configuration management module for the notifier."""

from .duration import DurationParseError, parse_duration, parse_timedelta
from .environment import EnvironmentConfig, load_environment_config
from .exceptions import ConfigurationError
from .loader import load_config
from .models import (
    AppConfig,
    EmailProviderConfig,
    LogFormat,
    LoggingConfig,
    LogLevel,
    ProvidersConfig,
    PushProviderConfig,
    QueueConfig,
    RateLimitConfig,
    ReconciliationConfig,
    RetryConfig,
    TemplatesConfig,
    TwilioProviderConfig,
)

__all__ = [
    # Main loader functions
    "load_config",
    "load_environment_config",
    "parse_duration",
    "parse_timedelta",
    # Configuration models
    "AppConfig",
    "RateLimitConfig",
    "RetryConfig",
    "QueueConfig",
    "ProvidersConfig",
    "EmailProviderConfig",
    "TwilioProviderConfig",
    "PushProviderConfig",
    "TemplatesConfig",
    "ReconciliationConfig",
    "LoggingConfig",
    "EnvironmentConfig",
    # Enums
    "LogLevel",
    "LogFormat",
    # Exceptions
    "ConfigurationError",
    "DurationParseError",
]
