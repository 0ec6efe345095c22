"""
Tests for the cron parser and schedule evaluation.

Covers field parsing, next fire time calculation, day-of-month/day-of-week
OR semantics and the daylight-saving policy.
"""

from datetime import UTC, datetime
from zoneinfo import ZoneInfo

import pytest

from filepoll.service.cron_parser import CronParseError, _parse_field, next_fire_time_cron, parse_cron
from filepoll.service.schedule import is_due, next_run, validate_schedule


class TestCronParsing:
    """Tests for cron expression parsing."""

    def test_parse_star(self):
        assert _parse_field("*", min_v=0, max_v=59) == set(range(60))

    def test_parse_list(self):
        assert _parse_field("0,15,30,45", min_v=0, max_v=59) == {0, 15, 30, 45}

    def test_parse_range(self):
        assert _parse_field("1-5", min_v=1, max_v=31) == {1, 2, 3, 4, 5}

    def test_parse_step(self):
        assert _parse_field("*/15", min_v=0, max_v=59) == {0, 15, 30, 45}

    def test_parse_range_with_step(self):
        assert _parse_field("0-30/10", min_v=0, max_v=59) == {0, 10, 20, 30}

    def test_day_of_week_7_is_sunday(self):
        assert _parse_field("7", min_v=0, max_v=6, allow_7_as_0=True) == {0}
        assert _parse_field("5-7", min_v=0, max_v=6, allow_7_as_0=True) == {5, 6, 0}

    def test_seven_in_hour_range_is_not_sunday(self):
        assert _parse_field("1-7", min_v=0, max_v=23) == {1, 2, 3, 4, 5, 6, 7}

    @pytest.mark.parametrize("expr", ["", "* * * *", "* * * * * *", "60 * * * *", "* 24 * * *", "*/0 * * * *", "5-1 * * * *", "a * * * *"])
    def test_invalid_expressions(self, expr):
        with pytest.raises(CronParseError):
            parse_cron(expr)


class TestNextFireTime:
    """Tests for next_fire_time_cron()."""

    def test_daily(self):
        now = datetime(2026, 2, 23, 6, 0, tzinfo=UTC)
        assert next_fire_time_cron("0 6 * * *", now=now) == datetime(2026, 2, 24, 6, 0, tzinfo=UTC)

    def test_strictly_after_now(self):
        now = datetime(2026, 2, 23, 5, 59, 59, tzinfo=UTC)
        assert next_fire_time_cron("0 6 * * *", now=now) == datetime(2026, 2, 23, 6, 0, tzinfo=UTC)

    def test_every_fifteen_minutes(self):
        now = datetime(2026, 2, 23, 6, 7, tzinfo=UTC)
        assert next_fire_time_cron("*/15 * * * *", now=now) == datetime(2026, 2, 23, 6, 15, tzinfo=UTC)

    def test_dom_or_dow_semantics(self):
        # 1st of the month OR Monday; 2026-02-23 is a Monday
        now = datetime(2026, 2, 20, 0, 0, tzinfo=UTC)
        assert next_fire_time_cron("0 0 1 * 1", now=now) == datetime(2026, 2, 23, 0, 0, tzinfo=UTC)

    def test_leap_day_schedule(self):
        now = datetime(2026, 3, 1, tzinfo=UTC)
        assert next_fire_time_cron("0 0 29 2 *", now=now) == datetime(2028, 2, 29, tzinfo=UTC)

    def test_never_firing_expression(self):
        with pytest.raises(CronParseError):
            next_fire_time_cron("0 0 31 2 *", now=datetime(2026, 1, 1, tzinfo=UTC))

    def test_result_in_requested_timezone(self):
        now = datetime(2026, 2, 23, 12, 0, tzinfo=UTC)
        result = next_fire_time_cron("0 9 * * *", now=now, timezone="America/New_York")
        assert result.tzinfo is not None
        assert result.hour == 9
        assert result.astimezone(UTC) == datetime(2026, 2, 23, 14, 0, tzinfo=UTC)


class TestDaylightSaving:
    """Spring-forward gaps and fall-back repeats."""

    def test_time_in_gap_fires_at_transition(self):
        # 2026-03-08 02:30 does not exist in New York
        ny = ZoneInfo("America/New_York")
        now = datetime(2026, 3, 8, 0, 0, tzinfo=ny)
        result = next_fire_time_cron("30 2 * * *", now=now, timezone="America/New_York")
        assert result.astimezone(UTC) == datetime(2026, 3, 8, 7, 0, tzinfo=UTC)
        assert (result.hour, result.minute) == (3, 0)

    def test_repeated_hour_fires_once(self):
        # 2026-11-01 01:30 happens twice in New York; only the first counts
        now = datetime(2026, 11, 1, 4, 0, tzinfo=UTC)
        first = next_fire_time_cron("30 1 * * *", now=now, timezone="America/New_York")
        assert first.astimezone(UTC) == datetime(2026, 11, 1, 5, 30, tzinfo=UTC)

        second = next_fire_time_cron("30 1 * * *", now=first, timezone="America/New_York")
        assert second.astimezone(UTC) == datetime(2026, 11, 2, 6, 30, tzinfo=UTC)


class TestScheduleHelpers:
    """Tests for next_run(), is_due() and validate_schedule()."""

    def test_next_run_returns_utc(self):
        after = datetime(2026, 2, 23, 12, 0, tzinfo=UTC)
        result = next_run("0 9 * * *", "Europe/London", after)
        assert result.tzinfo == UTC
        assert result == datetime(2026, 2, 24, 9, 0, tzinfo=UTC)

    def test_next_run_naive_after_is_utc(self):
        assert next_run("0 6 * * *", "UTC", datetime(2026, 2, 23, 7, 0)) == datetime(2026, 2, 24, 6, 0, tzinfo=UTC)

    def test_never_run_is_due(self):
        assert is_due("0 6 * * *", "UTC", None, datetime(2026, 2, 23, 0, 0, tzinfo=UTC)) is True

    def test_due_after_fire_time(self):
        last = datetime(2026, 2, 22, 6, 0, tzinfo=UTC)
        assert is_due("0 6 * * *", "UTC", last, datetime(2026, 2, 23, 6, 0, tzinfo=UTC)) is True
        assert is_due("0 6 * * *", "UTC", last, datetime(2026, 2, 23, 5, 59, tzinfo=UTC)) is False

    def test_valid_schedule(self):
        assert validate_schedule("0 6 * * 1-5", "America/Chicago") == []

    def test_unknown_timezone(self):
        errors = validate_schedule("0 6 * * *", "Mars/Olympus")
        assert any("timezone" in e for e in errors)

    def test_bad_cron(self):
        errors = validate_schedule("every day", "UTC")
        assert any("cron" in e for e in errors)

    def test_never_firing_cron(self):
        errors = validate_schedule("0 0 30 2 *", "UTC")
        assert any("never fires" in e for e in errors)
