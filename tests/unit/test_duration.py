"""Unit tests for the Duration model."""

from datetime import datetime, timezone

import pytest

from task_scheduler.models.duration import Duration


class TestAddTo:
    def test_month_end_clamps(self):
        start = datetime(2025, 1, 31, 9, 0, tzinfo=timezone.utc)
        assert Duration(months=1).add_to(start) == datetime(2025, 2, 28, 9, 0, tzinfo=timezone.utc)

    def test_leap_year_clamps_to_29th(self):
        start = datetime(2024, 1, 31, tzinfo=timezone.utc)
        assert Duration(months=1).add_to(start) == datetime(2024, 2, 29, tzinfo=timezone.utc)

    def test_mixed_units(self):
        start = datetime(2025, 1, 1, 8, 0, tzinfo=timezone.utc)
        result = Duration(days=2, hours=3, minutes=15).add_to(start)
        assert result == datetime(2025, 1, 3, 11, 15, tzinfo=timezone.utc)

    def test_zero_duration_is_identity(self):
        start = datetime(2025, 6, 1, tzinfo=timezone.utc)
        assert Duration().add_to(start) == start


class TestBetween:
    def test_splits_into_units(self):
        start = datetime(2025, 1, 1, tzinfo=timezone.utc)
        end = datetime(2025, 1, 2, 2, 30, tzinfo=timezone.utc)

        assert Duration.between(start, end) == Duration(days=1, hours=2, minutes=30)

    def test_uses_thirty_day_months(self):
        start = datetime(2025, 1, 1, tzinfo=timezone.utc)
        end = datetime(2025, 2, 5, tzinfo=timezone.utc)

        assert Duration.between(start, end) == Duration(months=1, days=5)

    @pytest.mark.parametrize("end_hour", [12, 11])
    def test_end_not_after_start_raises(self, end_hour):
        start = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        end = datetime(2025, 1, 1, end_hour, 0, tzinfo=timezone.utc)

        with pytest.raises(ValueError, match="End date must be after start date"):
            Duration.between(start, end)


class TestMinutes:
    def test_from_minutes(self):
        assert Duration.from_minutes(90) == Duration(hours=1, minutes=30)

    def test_from_non_positive_minutes_is_zero(self):
        assert Duration.from_minutes(0).is_zero()
        assert Duration.from_minutes(-5).is_zero()

    def test_to_minutes(self):
        assert Duration(days=1, hours=1, minutes=1).to_minutes() == 1440 + 60 + 1

    def test_year_uses_365_days(self):
        assert Duration(years=1).to_minutes() == 365 * 1440


class TestFormat:
    def test_verbose(self):
        assert Duration(days=1, hours=2).format() == "1 day, 2 hours"

    def test_compact(self):
        assert Duration(days=1, hours=2).format(compact=True) == "1d 2h"

    def test_max_units(self):
        duration = Duration(years=1, months=2, days=3, hours=4)
        assert duration.format(max_units=2) == "1 year, 2 months"

    def test_zero(self):
        assert Duration().format() == ""
        assert Duration().format(include_zero=True) == "0 years"


class TestValidateBounds:
    def test_valid_duration(self):
        assert Duration(hours=2).validate_bounds() == []

    def test_unit_limits(self):
        errors = Duration(hours=24, minutes=60).validate_bounds()

        assert "Hours cannot exceed 23" in errors
        assert "Minutes cannot exceed 59" in errors

    def test_zero_is_rejected(self):
        assert Duration().validate_bounds() == ["Duration must have at least one positive value"]

    def test_negative_units_are_rejected_on_construction(self):
        with pytest.raises(ValueError):
            Duration(days=-1)
