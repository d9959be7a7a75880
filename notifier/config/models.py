"""Configuration schema models using Pydantic."""

from datetime import timedelta
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from notifier.domain.models import Channel

from .duration import DurationParseError, parse_duration, validate_duration_range


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    KEY_VALUE = "key-value"


class RateLimitConfig(BaseModel):
    """Fixed-window limit for one channel."""

    max_requests: int = Field(..., ge=1, description="Attempts allowed per window")
    window_seconds: int = Field(3600, ge=1, le=86400, description="Window length in seconds")


DEFAULT_RATE_LIMIT_CONFIG: Dict[Channel, RateLimitConfig] = {
    Channel.EMAIL: RateLimitConfig(max_requests=50),
    Channel.SMS: RateLimitConfig(max_requests=10),
    Channel.WHATSAPP: RateLimitConfig(max_requests=20),
    Channel.PUSH: RateLimitConfig(max_requests=100),
    Channel.IN_APP: RateLimitConfig(max_requests=200),
}


class RetryConfig(BaseModel):
    """Retry attempts and exponential backoff."""

    max_attempts: int = Field(10, ge=0, le=50, description="Retries before dead-lettering")
    initial_backoff_ms: int = Field(1000, ge=1, description="Delay before the first retry")
    multiplier: float = Field(2.0, ge=1.0, le=10.0, description="Backoff growth factor")
    max_backoff_ms: int = Field(3_600_000, ge=1, description="Cap on any single delay")

    @model_validator(mode="after")
    def validate_backoff_bounds(self):
        if self.max_backoff_ms < self.initial_backoff_ms:
            raise ValueError(
                f"max_backoff_ms ({self.max_backoff_ms}) must be >= "
                f"initial_backoff_ms ({self.initial_backoff_ms})"
            )
        return self


class QueueConfig(BaseModel):
    """Broker names and consumer settings."""

    exchange: str = "notification.exchange"
    dlx_exchange: str = "notification.dlx"
    dlq_queue: str = "notification.dlq"
    dlq_routing_key: str = "notification.dlq"
    delay_exchange: str = "notification.delay"
    prefetch_count: int = Field(1, ge=1, le=100, description="Unacked messages per consumer")
    consumers_per_channel: int = Field(1, ge=1, le=32, description="Worker threads per channel")
    max_priority: int = Field(10, ge=1, le=255, description="x-max-priority of channel queues")

    @field_validator("exchange", "dlx_exchange", "dlq_queue", "dlq_routing_key", "delay_exchange")
    @classmethod
    def strip_name(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("Queue and exchange names cannot be empty")
        return stripped


class EmailProviderConfig(BaseModel):
    """SMTP delivery settings (credentials come from the environment)."""

    enabled: bool = True
    timeout_seconds: float = Field(10.0, gt=0, le=120)
    use_tls: bool = Field(True, description="Use STARTTLS (port 465 always uses SSL)")


class TwilioProviderConfig(BaseModel):
    """SMS / WhatsApp delivery settings."""

    enabled: bool = True
    timeout_seconds: float = Field(10.0, gt=0, le=120)
    from_number: Optional[str] = Field(None, description="Sender number in E.164 format")
    status_callback_url: Optional[str] = None

    @field_validator("from_number", "status_callback_url")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None


class PushProviderConfig(BaseModel):
    """FCM delivery settings (project and credentials come from the environment)."""

    enabled: bool = True
    timeout_seconds: float = Field(10.0, gt=0, le=120)


class ProvidersConfig(BaseModel):
    email: EmailProviderConfig = Field(default_factory=EmailProviderConfig)
    sms: TwilioProviderConfig = Field(default_factory=TwilioProviderConfig)
    whatsapp: TwilioProviderConfig = Field(default_factory=TwilioProviderConfig)
    push: PushProviderConfig = Field(default_factory=PushProviderConfig)


class TemplatesConfig(BaseModel):
    directory: Optional[str] = Field(
        None, description="Directory searched before the bundled templates"
    )


class ReconciliationConfig(BaseModel):
    """Sweep for notifications with no message in flight."""

    enabled: bool = True
    interval: str = Field("1m", description="Time between sweeps")
    pending_threshold: str = Field("5m", description="Age at which a PENDING row is re-published")
    pending_max_age: str = Field("24h", description="Age at which a PENDING row is dead-lettered")
    retry_grace: str = Field("5m", description="Overdue time before a RETRY row is re-published")
    batch_size: int = Field(100, ge=1, le=10000)

    @field_validator("interval", "pending_threshold", "pending_max_age", "retry_grace")
    @classmethod
    def validate_duration(cls, v: str) -> str:
        try:
            parse_duration(v)
        except DurationParseError as e:
            raise ValueError(str(e)) from e
        return v

    @model_validator(mode="after")
    def validate_ranges(self):
        try:
            validate_duration_range(
                parse_duration(self.interval), "Reconciliation interval", 10, 3600
            )
        except DurationParseError as e:
            raise ValueError(str(e)) from e

        if parse_duration(self.pending_max_age) <= parse_duration(self.pending_threshold):
            raise ValueError("pending_max_age must be longer than pending_threshold")
        return self

    @property
    def interval_seconds(self) -> int:
        return parse_duration(self.interval)

    def as_timedelta(self, field_name: str) -> timedelta:
        return timedelta(seconds=parse_duration(getattr(self, field_name)))


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = Field(LogLevel.INFO, description="Log level")
    format: LogFormat = Field(
        LogFormat.KEY_VALUE, description="Log output format (json or key-value)"
    )

    model_config = {"use_enum_values": True}


class AppConfig(BaseModel):
    """Root configuration object for the notifier."""

    channels: List[Channel] = Field(
        default_factory=lambda: list(Channel), description="Channels to consume"
    )
    rate_limits: Dict[Channel, RateLimitConfig] = Field(default_factory=dict)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    templates: TemplatesConfig = Field(default_factory=TemplatesConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("channels", mode="before")
    @classmethod
    def normalize_channels(cls, v):
        """Accept channel names in any case and drop duplicates."""
        if not isinstance(v, list):
            return v
        normalized = []
        for item in v:
            name = item.strip().upper() if isinstance(item, str) else item
            if name not in normalized:
                normalized.append(name)
        return normalized

    @field_validator("rate_limits", mode="before")
    @classmethod
    def normalize_rate_limit_keys(cls, v):
        if not isinstance(v, dict):
            return v
        return {(k.strip().upper() if isinstance(k, str) else k): limit for k, limit in v.items()}

    @model_validator(mode="after")
    def validate_channels(self):
        if not self.channels:
            raise ValueError("At least one channel must be enabled")
        return self

    def effective_rate_limits(self) -> Dict[Channel, RateLimitConfig]:
        """Configured limits merged over the defaults."""
        merged = dict(DEFAULT_RATE_LIMIT_CONFIG)
        merged.update(self.rate_limits)
        return merged
