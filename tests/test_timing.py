"""Tests for time helpers."""

from datetime import datetime, timedelta, timezone

from crm_sync.utils.timing import (
    format_duration,
    format_iso,
    parse_timestamp,
    start_of_day_utc,
    to_epoch_millis,
)


class TestFormatIso:
    """Tests for format_iso."""

    def test_millisecond_precision_with_z(self):
        """Test output carries milliseconds and a Z suffix."""
        value = datetime(2024, 3, 15, 14, 32, 7, 123456, tzinfo=timezone.utc)
        assert format_iso(value) == "2024-03-15T14:32:07.123Z"

    def test_converts_offsets_to_utc(self):
        """Test non-UTC datetimes are converted."""
        value = datetime(2024, 3, 15, 2, 0, tzinfo=timezone(timedelta(hours=2)))
        assert format_iso(value) == "2024-03-15T00:00:00.000Z"

    def test_naive_treated_as_utc(self):
        """Test naive datetimes are assumed UTC."""
        assert format_iso(datetime(2024, 1, 1)) == "2024-01-01T00:00:00.000Z"


class TestParseTimestamp:
    """Tests for parse_timestamp."""

    def test_iso_with_z(self):
        """Test ISO strings with Z parse as UTC."""
        parsed = parse_timestamp("2024-03-15T14:32:07Z")
        assert parsed == datetime(2024, 3, 15, 14, 32, 7, tzinfo=timezone.utc)

    def test_iso_with_offset(self):
        """Test explicit offsets are normalized to UTC."""
        parsed = parse_timestamp("2024-03-15T16:32:07+02:00")
        assert parsed == datetime(2024, 3, 15, 14, 32, 7, tzinfo=timezone.utc)

    def test_short_and_long_fractions(self):
        """Test fractional seconds of unusual precision still parse."""
        assert parse_timestamp("2024-03-15T14:32:07.12Z") == datetime(
            2024, 3, 15, 14, 32, 7, 120000, tzinfo=timezone.utc
        )
        assert parse_timestamp("2024-03-15T14:32:07.1234567Z") == datetime(
            2024, 3, 15, 14, 32, 7, 123456, tzinfo=timezone.utc
        )
        assert parse_timestamp("2024-03-15T16:32:07.5+02:00") == datetime(
            2024, 3, 15, 14, 32, 7, 500000, tzinfo=timezone.utc
        )

    def test_epoch_millis_string(self):
        """Test digit strings are read as epoch milliseconds."""
        parsed = parse_timestamp("1710513127000")
        assert parsed == datetime(2024, 3, 15, 14, 32, 7, tzinfo=timezone.utc)

    def test_epoch_millis_number(self):
        """Test numbers are read as epoch milliseconds."""
        parsed = parse_timestamp(1710513127000)
        assert parsed == datetime(2024, 3, 15, 14, 32, 7, tzinfo=timezone.utc)

    def test_empty_and_garbage(self):
        """Test empty or unparseable input gives None."""
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None
        assert parse_timestamp("not a date") is None


class TestStartOfDayUtc:
    """Tests for start_of_day_utc."""

    def test_rounds_down_to_midnight(self):
        """Test the cutoff rounding used by incremental sync."""
        value = datetime(2024, 3, 15, 14, 32, 7, tzinfo=timezone.utc)
        assert format_iso(start_of_day_utc(value)) == "2024-03-15T00:00:00.000Z"

    def test_uses_utc_calendar_day(self):
        """Test the day is taken in UTC, not in the value's own offset."""
        value = datetime(2024, 3, 16, 1, 0, tzinfo=timezone(timedelta(hours=5)))
        assert format_iso(start_of_day_utc(value)) == "2024-03-15T00:00:00.000Z"


class TestToEpochMillis:
    """Tests for to_epoch_millis."""

    def test_midnight(self):
        """Test conversion of a known instant."""
        value = datetime(2024, 3, 15, tzinfo=timezone.utc)
        assert to_epoch_millis(value) == 1710460800000


class TestFormatDuration:
    """Tests for format_duration."""

    def test_seconds_only(self):
        assert format_duration(45_000) == "45s"

    def test_minutes_and_seconds(self):
        assert format_duration(303_000) == "5m 3s"

    def test_hours(self):
        assert format_duration(3_723_000) == "1h 2m 3s"

    def test_sub_second(self):
        assert format_duration(250) == "0s"
