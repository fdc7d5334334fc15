"""
Tests for Schedule Expander Tool
Tests expansion of recurring schedule definitions into dose obligations
"""

import pytest
from datetime import datetime, date, time, timedelta
from types import SimpleNamespace

from exceptions import InvalidScheduleError
from tools.scheduler import (
    ObligationKey,
    parse_clock_time,
    catalog_weekday,
    is_active_on,
    expand_schedule,
    expand_for_dates,
    recent_dates,
)


# =============================================================================
# Test Fixtures
# =============================================================================

def make_schedule(schedule_id=1, scheduled_time="08:00", days_of_week=None):
    return SimpleNamespace(id=schedule_id, scheduled_time=scheduled_time, days_of_week=days_of_week)


MONDAY = date(2024, 6, 3)
TUESDAY = date(2024, 6, 4)


# =============================================================================
# Clock Time Parsing
# =============================================================================

class TestParseClockTime:

    @pytest.mark.unit
    def test_parses_hh_mm(self):
        assert parse_clock_time("08:00") == time(8, 0)
        assert parse_clock_time("23:59") == time(23, 59)

    @pytest.mark.unit
    def test_accepts_time_objects(self):
        assert parse_clock_time(time(7, 30, 15)) == time(7, 30)

    @pytest.mark.unit
    def test_tolerates_zero_seconds(self):
        assert parse_clock_time("20:15:00") == time(20, 15)

    @pytest.mark.unit
    @pytest.mark.parametrize("value", ["25:00", "8am", "8:00", "", "08:60", None, 800])
    def test_rejects_malformed(self, value):
        with pytest.raises(InvalidScheduleError):
            parse_clock_time(value)


# =============================================================================
# Expansion
# =============================================================================

class TestExpandSchedule:

    @pytest.mark.unit
    def test_empty_weekday_set_means_every_day(self):
        assert is_active_on([], MONDAY)
        assert is_active_on(None, TUESDAY)

    @pytest.mark.unit
    def test_weekday_filter(self):
        # Catalog numbering: Sunday is 0, Monday is 1
        assert is_active_on([1, 3, 5], MONDAY)
        assert not is_active_on([1, 3, 5], TUESDAY)

    @pytest.mark.unit
    def test_sunday_is_zero(self):
        sunday = MONDAY - timedelta(days=1)
        saturday = MONDAY + timedelta(days=5)

        assert catalog_weekday(sunday) == 0
        assert catalog_weekday(MONDAY) == 1
        assert catalog_weekday(saturday) == 6
        assert expand_schedule(make_schedule(days_of_week=[0]), sunday) == ObligationKey(1, datetime(2024, 6, 2, 8, 0))
        assert expand_schedule(make_schedule(days_of_week=[0]), MONDAY) is None

    @pytest.mark.unit
    def test_expands_to_natural_key(self):
        key = expand_schedule(make_schedule(5, "08:00"), MONDAY)

        assert key == ObligationKey(5, datetime(2024, 6, 3, 8, 0))

    @pytest.mark.unit
    def test_excluded_day_yields_nothing(self):
        assert expand_schedule(make_schedule(days_of_week=[2]), MONDAY) is None

    @pytest.mark.unit
    def test_expansion_is_deterministic(self):
        schedule = make_schedule(3, "21:30", [1])
        assert expand_schedule(schedule, MONDAY) == expand_schedule(schedule, MONDAY)

    @pytest.mark.unit
    def test_invalid_time_raises(self):
        with pytest.raises(InvalidScheduleError):
            expand_schedule(make_schedule(scheduled_time="8:00pm"), MONDAY)

    @pytest.mark.unit
    def test_expand_for_dates_skips_invalid_schedules(self):
        schedules = [make_schedule(1, "08:00"), make_schedule(2, "bad"), make_schedule(3, "20:00", [2])]

        keys = [key for _, key in expand_for_dates(schedules, [MONDAY, TUESDAY])]

        assert keys == [
            ObligationKey(1, datetime(2024, 6, 3, 8, 0)),
            ObligationKey(1, datetime(2024, 6, 4, 8, 0)),
            ObligationKey(3, datetime(2024, 6, 4, 20, 0)),
        ]

    @pytest.mark.unit
    def test_recent_dates_oldest_first(self):
        assert recent_dates(datetime(2024, 6, 3, 0, 15), days_back=1) == [date(2024, 6, 2), MONDAY]
