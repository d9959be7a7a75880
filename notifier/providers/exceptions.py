"""Provider layer exceptions."""


class ProviderError(Exception):
    """Base exception for provider construction and transport failures."""

    pass


class ProviderConfigurationError(ProviderError):
    """Raised at startup when an enabled provider is missing required settings."""

    pass
