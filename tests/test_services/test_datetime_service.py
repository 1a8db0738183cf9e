"""Tests for datetime parsing service."""

from datetime import datetime, timedelta, timezone

from stui.services.datetime_service import (
    format_datetime,
    now_utc,
    parse_event_time,
    parse_mod_time,
)


class TestEventTimeParsing:
    def test_parse_nanosecond_precision(self) -> None:
        result = parse_event_time("2025-01-01T12:00:00.123456789+01:00")
        assert result.year == 2025
        assert result.hour == 12
        assert result.utcoffset() == timedelta(hours=1)

    def test_parse_zulu(self) -> None:
        result = parse_event_time("2025-03-04T05:06:07Z")
        assert result == datetime(2025, 3, 4, 5, 6, 7, tzinfo=timezone.utc)

    def test_garbage_falls_back_to_now(self) -> None:
        before = now_utc()
        result = parse_event_time("definitely not a time")
        assert result >= before

    def test_empty_falls_back_to_now(self) -> None:
        before = now_utc()
        assert parse_event_time("") >= before
        assert parse_event_time(None) >= before


class TestModTimeParsing:
    def test_parse_mod_time(self) -> None:
        result = parse_mod_time("2024-06-01T08:30:00+02:00")
        assert result is not None
        assert result.month == 6

    def test_missing_or_invalid(self) -> None:
        assert parse_mod_time(None) is None
        assert parse_mod_time("") is None
        assert parse_mod_time("yesterday-ish") is None


class TestFormatting:
    def test_format_datetime(self) -> None:
        dt = datetime(2026, 2, 2, 22, 21, 29, tzinfo=timezone.utc)
        result = format_datetime(dt)
        assert len(result) == len("2026-02-02 22:21:29")
        assert result[4] == "-"

    def test_format_missing(self) -> None:
        assert format_datetime(None) == "-"

    def test_now_utc(self) -> None:
        result = now_utc()
        assert result.tzinfo is not None
