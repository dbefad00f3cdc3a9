"""
Tests for date helpers
"""

from datetime import date, datetime

from microloan.dates import (
    to_date, add_days, days_between, days_overdue, is_same_day,
    format_iso, format_indian_date, compact_stamp
)


class TestDateArithmetic:
    """Test calendar-day arithmetic"""

    def test_add_days_crosses_month_and_leap_day(self):
        """Test shifting across month ends and 29 February"""
        assert add_days(date(2024, 1, 30), 2) == date(2024, 2, 1)
        assert add_days(date(2024, 2, 28), 1) == date(2024, 2, 29)
        assert add_days(date(2024, 3, 1), -1) == date(2024, 2, 29)

    def test_datetime_is_truncated_to_midnight(self):
        """Test time components are ignored"""
        assert to_date(datetime(2024, 5, 6, 23, 59)) == date(2024, 5, 6)
        assert add_days(datetime(2024, 5, 6, 18, 0), 1) == date(2024, 5, 7)
        assert is_same_day(datetime(2024, 5, 6, 1, 0), date(2024, 5, 6))

    def test_days_between_is_signed(self):
        """Test signed difference"""
        assert days_between(date(2024, 1, 1), date(2024, 1, 31)) == 30
        assert days_between(date(2024, 1, 31), date(2024, 1, 1)) == -30

    def test_days_overdue_never_negative(self):
        """Test future due dates are zero days overdue"""
        assert days_overdue(date(2024, 1, 10), date(2024, 1, 5)) == 0
        assert days_overdue(date(2024, 1, 10), date(2024, 1, 10)) == 0
        assert days_overdue(date(2024, 1, 10), date(2024, 1, 13)) == 3


class TestDateFormatting:
    """Test date display formats"""

    def test_formats(self):
        """Test ISO, Indian and compact formats"""
        value = date(2024, 3, 5)
        assert format_iso(value) == "2024-03-05"
        assert format_indian_date(value) == "05/03/2024"
        assert compact_stamp(value) == "20240305"
