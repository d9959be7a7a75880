"""Duration parsing utilities for configuration."""

import re
from datetime import timedelta

UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}

_ISO_PATTERN = re.compile(r"^P(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:(\d+(?:\.\d+)?)S)?)?$")
_HUMAN_PART = re.compile(r"(\d+)\s*([smhd])")


class DurationParseError(ValueError):
    """Raised when a duration string cannot be parsed."""

    pass


def parse_duration(value) -> int:
    """
    Parse a duration to whole seconds.

    Accepts plain integers (seconds), human-readable strings ("30s", "5m",
    "1h30m", "2d") and ISO-8601 durations ("PT5M", "P1D").

    Raises:
        DurationParseError: If the value is empty, malformed or zero

    Examples:
        >>> parse_duration("5m")
        300
        >>> parse_duration("PT1H30M")
        5400
        >>> parse_duration(45)
        45
    """
    if isinstance(value, bool):
        raise DurationParseError(f"Invalid duration: {value!r}")
    if isinstance(value, int):
        seconds = value
    else:
        text = str(value).strip()
        if not text:
            raise DurationParseError("Duration string cannot be empty")
        if text.isdigit():
            seconds = int(text)
        elif text.upper().startswith("P"):
            seconds = _parse_iso8601(text.upper())
        else:
            seconds = _parse_human(text.lower())

    if seconds <= 0:
        raise DurationParseError(f"Duration must be positive: {value!r}")
    return seconds


def parse_timedelta(value) -> timedelta:
    """parse_duration() as a timedelta."""
    return timedelta(seconds=parse_duration(value))


def _parse_iso8601(text: str) -> int:
    match = _ISO_PATTERN.match(text)
    if not match or text in ("P", "PT"):
        raise DurationParseError(
            f"Invalid ISO-8601 duration format: '{text}'. "
            "Expected format like 'P1D', 'PT1H30M' or 'PT30S'"
        )

    days, hours, minutes, seconds = match.groups()
    return (
        int(days or 0) * UNIT_SECONDS["d"]
        + int(hours or 0) * UNIT_SECONDS["h"]
        + int(minutes or 0) * UNIT_SECONDS["m"]
        + int(float(seconds or 0))
    )


def _parse_human(text: str) -> int:
    parts = _HUMAN_PART.findall(text)
    # Every character must belong to a number+unit pair
    if not parts or "".join(f"{n}{u}" for n, u in parts) != re.sub(r"\s+", "", text):
        raise DurationParseError(
            f"Invalid duration format: '{text}'. "
            "Use digits with units s, m, h or d, e.g. '30s', '5m', '1h30m'"
        )
    return sum(int(number) * UNIT_SECONDS[unit] for number, unit in parts)


def validate_duration_range(seconds: int, name: str, min_seconds: int, max_seconds: int) -> None:
    """
    Check that a parsed duration lies within [min_seconds, max_seconds].

    Raises:
        DurationParseError: If the duration is out of range
    """
    if seconds < min_seconds:
        raise DurationParseError(
            f"{name} too short: {humanize_seconds(seconds)}. Minimum is {humanize_seconds(min_seconds)}."
        )
    if seconds > max_seconds:
        raise DurationParseError(
            f"{name} too long: {humanize_seconds(seconds)}. Maximum is {humanize_seconds(max_seconds)}."
        )


def humanize_seconds(seconds: int) -> str:
    """Largest whole unit, e.g. 5400 -> '1 hour'."""
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds >= size:
            count = seconds // size
            return f"{count} {unit}{'s' if count != 1 else ''}"
    return f"{seconds} second{'s' if seconds != 1 else ''}"
