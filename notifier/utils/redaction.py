"""Helpers for keeping recipient identifiers out of log output."""

from typing import Optional


def mask_identifier(value: Optional[str], visible: int = 4) -> str:
    """Mask all but the last few characters of an address or token.

    Args:
        value: Email address, phone number, or device token
        visible: Number of trailing characters to keep

    Returns:
        Masked string safe for logging (e.g. "***4567")

    Example:
        >>> mask_identifier("+15551234567")
        '***4567'
    """
    if not value:
        return "<none>"

    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:1]}***@{domain}"

    if len(value) <= visible:
        return "***"

    return f"***{value[-visible:]}"
