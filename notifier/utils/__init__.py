"""Utility functions for time handling and log redaction."""

from .redaction import mask_identifier
from .timestamps import (
    add_milliseconds,
    ensure_utc,
    format_timestamp,
    milliseconds_until,
    parse_iso_datetime,
    utc_now,
)

__all__ = [
    # Timestamps
    "utc_now",
    "ensure_utc",
    "parse_iso_datetime",
    "format_timestamp",
    "add_milliseconds",
    "milliseconds_until",
    # Redaction
    "mask_identifier",
]
