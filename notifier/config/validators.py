"""Additional validation utilities for configuration."""

import warnings
from typing import Any, Dict, List

from .duration import DurationParseError, parse_duration


def check_for_warnings(config_dict: Dict[str, Any]) -> List[str]:
    """
    Check configuration for potential issues and return warnings.

    Args:
        config_dict: Raw configuration dictionary

    Returns:
        List of warning messages
    """
    warning_messages = []

    providers = config_dict.get("providers") or {}
    if isinstance(providers, dict):
        for name, settings in providers.items():
            if isinstance(settings, dict) and settings.get("enabled") is False:
                warning_messages.append(
                    f"Provider '{name}' is disabled; its notifications will be retried "
                    "until max_attempts and then dead-lettered"
                )

    retry = config_dict.get("retry") or {}
    if isinstance(retry, dict):
        max_attempts = retry.get("max_attempts")
        if max_attempts == 0:
            warning_messages.append("retry.max_attempts is 0; every failure is dead-lettered")
        elif isinstance(max_attempts, int) and max_attempts > 20:
            warning_messages.append(
                f"High retry.max_attempts ({max_attempts}) keeps failing notifications alive for a long time"
            )

    queue = config_dict.get("queue") or {}
    if isinstance(queue, dict):
        prefetch = queue.get("prefetch_count")
        if isinstance(prefetch, int) and prefetch > 10:
            warning_messages.append(
                f"Large queue.prefetch_count ({prefetch}) lets one consumer hold many messages"
            )

    reconciliation = config_dict.get("reconciliation") or {}
    if isinstance(reconciliation, dict):
        if reconciliation.get("enabled") is False:
            warning_messages.append(
                "Reconciliation is disabled; notifications whose publish failed stay PENDING"
            )
        threshold = reconciliation.get("pending_threshold")
        if threshold is not None:
            try:
                if parse_duration(threshold) < 60:
                    warning_messages.append(
                        f"Short reconciliation.pending_threshold ({threshold}) may re-publish "
                        "notifications that are still queued"
                    )
            except DurationParseError:
                pass  # reported by model validation

    rate_limits = config_dict.get("rate_limits") or {}
    if isinstance(rate_limits, dict):
        for channel, limit in rate_limits.items():
            if isinstance(limit, dict) and limit.get("max_requests", 1) > 10000:
                warning_messages.append(
                    f"Rate limit for {channel} ({limit['max_requests']}) is effectively unlimited"
                )

    return warning_messages


def emit_warnings(warning_messages: List[str]) -> None:
    """
    Emit warning messages using Python's warnings module.

    Args:
        warning_messages: List of warning messages to emit
    """
    for message in warning_messages:
        warnings.warn(message, UserWarning, stacklevel=2)
