"""
Tests for the day-first date and time parser.
"""

from datetime import date, datetime, time, timezone

import pytest

from ledgerline.pipeline.date_parser import (
    combine_date_time,
    expand_two_digit_year,
    parse_date_ke,
    parse_time,
    to_statement_local,
)


class TestParseDateKe:
    """Test day-first date parsing."""

    def test_short_statement_date(self):
        result = parse_date_ke("15/1/25")
        assert result.parsed_date == date(2025, 1, 15)
        assert result.format_detected == "D/M/YY"
        assert not result.is_ambiguous

    def test_full_year(self):
        result = parse_date_ke("25/06/2024")
        assert result.parsed_date == date(2024, 6, 25)
        assert result.confidence >= 0.90

    def test_ambiguous_date_flagged(self):
        result = parse_date_ke("5/6/2024")
        assert result.parsed_date == date(2024, 6, 5)
        assert result.is_ambiguous
        assert result.confidence < 0.90

    def test_iso_format(self):
        result = parse_date_ke("2024-03-15")
        assert result.parsed_date == date(2024, 3, 15)

    def test_named_month(self):
        result = parse_date_ke("15 Jan 2024")
        assert result.parsed_date == date(2024, 1, 15)
        assert not result.is_ambiguous

    def test_ordinal_named_month(self):
        result = parse_date_ke("1st Jan 2024")
        assert result.parsed_date == date(2024, 1, 1)

    def test_named_month_two_digit_year(self):
        result = parse_date_ke("3 Feb 24")
        assert result.parsed_date == date(2024, 2, 3)

    def test_impossible_day(self):
        result = parse_date_ke("32/01/2024")
        assert result.parsed_date is None
        assert result.format_detected == "UNKNOWN"

    def test_unparseable_returns_none(self):
        result = parse_date_ke("not a date")
        assert result.parsed_date is None
        assert result.confidence == 0.0


class TestTwoDigitYears:

    @pytest.mark.parametrize("yy,expected", [(25, 2025), (50, 2050), (51, 1951), (99, 1999), (0, 2000)])
    def test_pivot(self, yy, expected):
        assert expand_two_digit_year(yy) == expected


class TestParseTime:

    def test_pm(self):
        assert parse_time("3:04 PM") == time(15, 4)

    def test_no_space_before_meridiem(self):
        assert parse_time("9:15AM") == time(9, 15)

    def test_midnight_and_noon(self):
        assert parse_time("12:05 AM") == time(0, 5)
        assert parse_time("12:30 PM") == time(12, 30)

    def test_24_hour(self):
        assert parse_time("14:30") == time(14, 30)

    def test_invalid(self):
        assert parse_time("13:00 PM") is None
        assert parse_time("25:00") is None
        assert parse_time(None) is None


class TestCombineDateTime:

    def test_with_time(self):
        assert combine_date_time("15/1/25", "3:04 PM") == datetime(2025, 1, 15, 15, 4)

    def test_date_only_is_midnight(self):
        assert combine_date_time("15/1/25") == datetime(2025, 1, 15, 0, 0)

    def test_missing_or_bad_date(self):
        assert combine_date_time(None, "3:04 PM") is None
        assert combine_date_time("yesterday") is None


class TestStatementLocal:
    """Aware datetimes become naive Nairobi wall-clock time."""

    def test_utc_converted(self):
        assert to_statement_local(datetime(2025, 1, 20, 0, 0, tzinfo=timezone.utc)) == datetime(2025, 1, 20, 3, 0)

    def test_naive_unchanged(self):
        assert to_statement_local(datetime(2025, 1, 20, 9, 30)) == datetime(2025, 1, 20, 9, 30)

    def test_none(self):
        assert to_statement_local(None) is None
