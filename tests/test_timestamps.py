"""Tests for timestamp and redaction utilities."""

from datetime import datetime, timedelta, timezone

import pytest

from notifier.utils.redaction import mask_identifier
from notifier.utils.timestamps import (
    add_milliseconds,
    ensure_utc,
    format_timestamp,
    milliseconds_until,
    parse_iso_datetime,
    utc_now,
)

START = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
PLUS_TWO = timezone(timedelta(hours=2))


class TestUtcNow:
    def test_timezone_aware(self):
        now = utc_now()
        assert now.tzinfo == timezone.utc

    def test_recent(self):
        before = datetime.now(timezone.utc)
        now = utc_now()
        assert before <= now <= datetime.now(timezone.utc)


class TestEnsureUtc:
    def test_none(self):
        assert ensure_utc(None) is None

    def test_naive_treated_as_utc(self):
        assert ensure_utc(datetime(2025, 1, 1, 12)) == START
        assert ensure_utc(datetime(2025, 1, 1, 12)).tzinfo == timezone.utc

    def test_other_timezone_converted(self):
        converted = ensure_utc(datetime(2025, 1, 1, 14, tzinfo=PLUS_TWO))
        assert converted.hour == 12
        assert converted.tzinfo == timezone.utc


class TestParseIsoDatetime:
    """Tests for ISO 8601 parsing of broker headers and stored values."""

    def test_z_suffix(self):
        assert parse_iso_datetime("2025-01-01T12:00:00.000000Z") == START

    def test_offset(self):
        assert parse_iso_datetime("2025-01-01T14:00:00+02:00") == START

    def test_naive(self):
        assert parse_iso_datetime("2025-01-01T12:00:00") == START

    def test_surrounding_whitespace(self):
        assert parse_iso_datetime("  2025-01-01T12:00:00Z ") == START

    @pytest.mark.parametrize("value", [None, "", "   ", "not a date", "2025-13-45"])
    def test_unparseable(self, value):
        assert parse_iso_datetime(value) is None


class TestFormatTimestamp:
    def test_microseconds_and_z(self):
        dt = START.replace(microsecond=123456)
        assert format_timestamp(dt) == "2025-01-01T12:00:00.123456Z"

    def test_converted_to_utc(self):
        assert format_timestamp(datetime(2025, 1, 1, 14, tzinfo=PLUS_TWO)) == "2025-01-01T12:00:00.000000Z"

    def test_none(self):
        assert format_timestamp(None) is None

    def test_parse_inverse(self):
        dt = START + timedelta(milliseconds=4321)
        assert parse_iso_datetime(format_timestamp(dt)) == dt


class TestMilliseconds:
    def test_add(self):
        assert add_milliseconds(START, 1500) == START + timedelta(seconds=1.5)

    def test_add_naive(self):
        assert add_milliseconds(datetime(2025, 1, 1, 12), 1000).tzinfo == timezone.utc

    def test_until_future(self):
        assert milliseconds_until(START + timedelta(seconds=2), now=START) == 2000

    def test_until_past_is_zero(self):
        assert milliseconds_until(START - timedelta(seconds=2), now=START) == 0

    def test_until_none(self):
        assert milliseconds_until(None, now=START) == 0

    def test_until_defaults_to_now(self):
        remaining = milliseconds_until(utc_now() + timedelta(minutes=1))
        assert 55_000 < remaining <= 60_000


class TestMaskIdentifier:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("+15551234567", "***4567"),
            ("user@example.com", "u***@example.com"),
            ("abc", "***"),
            (None, "<none>"),
            ("", "<none>"),
        ],
    )
    def test_masking(self, value, expected):
        assert mask_identifier(value) == expected

    def test_visible_characters(self):
        assert mask_identifier("fcm-device-token-abcdef", visible=6) == "***abcdef"
