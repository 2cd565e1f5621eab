from datetime import datetime, time, timezone

import pytest

from growthdesk.core.scheduling import calculate_next_step_time, parse_time_of_day
from growthdesk.models import DelayType

JAN_1 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestCalculateNextStepTime:

    def test_days_without_preferred_time(self):
        assert calculate_next_step_time(JAN_1, "days", 2) == datetime(2024, 1, 3, tzinfo=timezone.utc)

    def test_preferred_time_overrides_time_of_day(self):
        result = calculate_next_step_time(JAN_1, "days", 2, "14:30")
        assert result == datetime(2024, 1, 3, 14, 30, tzinfo=timezone.utc)

    def test_preferred_time_is_not_rolled_forward(self):
        # 20:00 + 1 day with 09:00 preferred lands on the morning of the next day, not two days out
        start = datetime(2024, 1, 1, 20, 0, tzinfo=timezone.utc)
        result = calculate_next_step_time(start, DelayType.DAYS, 1, "09:00")
        assert result == datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)

    def test_immediate_ignores_delay_and_preferred_time(self):
        start = datetime(2024, 1, 1, 8, 15, 42, tzinfo=timezone.utc)
        assert calculate_next_step_time(start, "immediate", 5, "14:30") == start

    def test_hours_and_weeks(self):
        assert calculate_next_step_time(JAN_1, "HOURS", 36) == datetime(2024, 1, 2, 12, tzinfo=timezone.utc)
        assert calculate_next_step_time(JAN_1, DelayType.WEEKS, 2) == datetime(2024, 1, 15, tzinfo=timezone.utc)

    def test_preferred_time_zeroes_seconds(self):
        start = datetime(2024, 1, 1, 10, 5, 33, 120, tzinfo=timezone.utc)
        result = calculate_next_step_time(start, "hours", 1, "11:45")
        assert result == datetime(2024, 1, 1, 11, 45, tzinfo=timezone.utc)

    def test_unknown_delay_type(self):
        with pytest.raises(ValueError):
            calculate_next_step_time(JAN_1, "fortnights", 1)

    def test_negative_delay(self):
        with pytest.raises(ValueError):
            calculate_next_step_time(JAN_1, "days", -1)


class TestParseTimeOfDay:

    @pytest.mark.parametrize("raw,expected", [
        ("14:30", time(14, 30)),
        ("9:05", time(9, 5)),
        (" 00:00 ", time(0, 0)),
        ("23:59", time(23, 59)),
    ])
    def test_valid(self, raw, expected):
        assert parse_time_of_day(raw) == expected

    @pytest.mark.parametrize("raw", ["24:00", "12:60", "noon", "1430", ""])
    def test_invalid(self, raw):
        with pytest.raises(ValueError):
            parse_time_of_day(raw)
