"""Tests for datetime parsing service."""

from datetime import datetime, timedelta, timezone

from backend.services.datetime_service import format_iso, from_timestamp, now_utc, parse_datetime


class TestDatetimeParsing:
    def test_parse_iso_with_offset(self) -> None:
        result = parse_datetime("2026-02-02T22:21:29+00:00")
        assert result.year == 2026
        assert result.month == 2
        assert result.day == 2
        assert result.hour == 22
        assert result.minute == 21

    def test_parse_git_author_date(self) -> None:
        result = parse_datetime("2026-02-02T22:21:29+01:00")
        assert result.utcoffset() == timedelta(hours=1)

    def test_parse_date_only(self) -> None:
        result = parse_datetime("2026-02-02")
        assert result.year == 2026
        assert result.hour == 0
        assert result.tzinfo is not None

    def test_parse_with_default_timezone(self) -> None:
        result = parse_datetime("2026-02-02 10:30", default_tz="America/New_York")
        assert result.hour == 10
        assert result.utcoffset() == timedelta(hours=-5)

    def test_parse_datetime_object(self) -> None:
        dt = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert parse_datetime(dt) == dt

    def test_parse_datetime_naive_adds_tz(self) -> None:
        result = parse_datetime(datetime(2026, 1, 1, 12, 0), default_tz="UTC")
        assert result.tzinfo is not None


class TestFormatting:
    def test_format_iso_round_trips(self) -> None:
        dt = datetime(2026, 2, 2, 22, 21, 29, 975359, tzinfo=timezone.utc)
        assert parse_datetime(format_iso(dt)) == dt

    def test_format_iso_assumes_utc_for_naive(self) -> None:
        assert format_iso(datetime(2026, 1, 1)).endswith("+00:00")

    def test_from_timestamp_is_utc(self) -> None:
        result = from_timestamp(0)
        assert result == datetime(1970, 1, 1, tzinfo=timezone.utc)

    def test_now_utc(self) -> None:
        assert now_utc().tzinfo is not None
