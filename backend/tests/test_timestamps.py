"""Tests for chatkpi.ingestion.timestamps: lenient UTC timestamp parsing."""

from datetime import datetime, timedelta, timezone

import pytest

from chatkpi.ingestion.timestamps import ensure_utc, from_iso, parse_timestamp, to_iso


class TestParseTimestamp:
    """parse_timestamp accepts the formats found in chat exports."""

    def test_iso_with_z_suffix(self):
        result = parse_timestamp("2024-01-15T10:30:00Z")
        assert result == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)

    def test_iso_with_offset_converted_to_utc(self):
        result = parse_timestamp("2024-01-15T12:30:00+02:00")
        assert result == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
        assert result.tzinfo == timezone.utc

    def test_naive_string_read_as_utc(self):
        """'2025-03-24 08:39:41' has no zone and is taken as UTC."""
        result = parse_timestamp("2025-03-24 08:39:41")
        assert result == datetime(2025, 3, 24, 8, 39, 41, tzinfo=timezone.utc)

    def test_epoch_milliseconds(self):
        result = parse_timestamp(1705314600000)
        assert result == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)

    def test_datetime_passthrough(self):
        naive = datetime(2024, 1, 15, 10, 30)
        assert parse_timestamp(naive) == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)

    def test_epoch_milliseconds_as_text(self):
        """A CSV cell holding epoch milliseconds reads like the JSON number."""
        assert parse_timestamp("1705314600000") == parse_timestamp(1705314600000)
        assert parse_timestamp(" 1705314600000 ") == datetime(
            2024, 1, 15, 10, 30, tzinfo=timezone.utc
        )

    def test_compact_iso_date_not_epoch(self):
        assert parse_timestamp("20240115") == datetime(2024, 1, 15, tzinfo=timezone.utc)

    def test_date_only(self):
        assert parse_timestamp("2024-01-15") == datetime(2024, 1, 15, tzinfo=timezone.utc)

    def test_full_date_in_words(self):
        result = parse_timestamp("March 24, 2025 10:00")
        assert result == datetime(2025, 3, 24, 10, 0, tzinfo=timezone.utc)

    def test_slash_date_with_time(self):
        result = parse_timestamp("01/15/2024 10:30")
        assert result == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", "   ", "not-a-date", True, float("nan")])
    def test_unparseable_returns_none(self, value):
        assert parse_timestamp(value) is None

    @pytest.mark.parametrize("value", ["Tuesday", "10", "March", "10:30", "March 24", "2pm"])
    def test_partial_dates_rejected(self, value):
        """Text missing a year, month or day is not completed from today's date."""
        assert parse_timestamp(value) is None


class TestIsoRendering:
    """to_iso renders fixed-width UTC strings that sort chronologically."""

    def test_fixed_width_format(self):
        dt = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
        assert to_iso(dt) == "2024-01-15T10:30:00.000000+00:00"

    def test_text_order_matches_time_order(self):
        base = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
        later = base + timedelta(microseconds=500)
        assert to_iso(base) < to_iso(later)

    def test_from_iso_inverts_to_iso(self):
        dt = datetime(2024, 1, 15, 10, 30, 5, 123456, tzinfo=timezone.utc)
        assert from_iso(to_iso(dt)) == dt

    def test_ensure_utc_converts_aware(self):
        plus_two = timezone(timedelta(hours=2))
        dt = ensure_utc(datetime(2024, 1, 15, 12, 0, tzinfo=plus_two))
        assert dt.hour == 10
        assert dt.tzinfo == timezone.utc
