"""Tests for cron matching, validation and the once-per-minute guard."""

from datetime import datetime, timedelta, timezone

import pytest

from wallet_cron.errors import CronSyntaxError
from wallet_cron.scheduler.cron import (
    is_valid_expression,
    match_field,
    matches,
    same_minute,
    should_run,
    validate_expression,
)


def at(hour=12, minute=0, second=0, day=1):
    # 2024-01-01 is a Monday
    return datetime(2024, 1, day, hour, minute, second)


class TestMatches:
    @pytest.mark.parametrize("minute", [0, 15, 30, 45])
    def test_step_from_star_matches_multiples(self, minute):
        assert matches("*/15 * * * *", at(minute=minute))

    @pytest.mark.parametrize("minute", [1, 7, 14, 59])
    def test_step_from_star_rejects_others(self, minute):
        assert not matches("*/15 * * * *", at(minute=minute))

    def test_ranged_step(self):
        assert [m for m in range(60) if matches("0-10/5 * * * *", at(minute=m))] == [0, 5, 10]

    def test_ranged_step_offset_from_range_start(self):
        assert [m for m in range(60) if matches("3-20/7 * * * *", at(minute=m))] == [3, 10, 17]

    def test_exact_and_range(self):
        assert matches("30 9-17 * * *", at(hour=9, minute=30))
        assert not matches("30 9-17 * * *", at(hour=18, minute=30))

    def test_list(self):
        assert matches("1,3,5 * * * *", at(minute=3))
        assert not matches("1,3,5 * * * *", at(minute=4))

    def test_day_of_week_sunday_is_zero(self):
        sunday = datetime(2024, 1, 7, 8, 0)
        assert matches("0 8 * * 0", sunday)
        assert matches("0 8 * * 1", at(hour=8))

    def test_day_of_week_seven_never_matches(self):
        sunday = datetime(2024, 1, 7, 8, 0)
        assert not matches("0 8 * * 7", sunday)
        validate_expression("0 8 * * 7")

    def test_step_counts_from_zero_on_day_of_month(self):
        # */2 on a 1-based field means even days, not every other day from the 1st
        assert matches("0 0 */2 * *", datetime(2024, 1, 2, 0, 0))
        assert not matches("0 0 */2 * *", datetime(2024, 1, 1, 0, 0))
        assert not matches("0 0 */2 * *", datetime(2024, 1, 31, 0, 0))

    def test_day_and_month(self):
        assert matches("0 0 1 1 *", datetime(2024, 1, 1, 0, 0))
        assert not matches("0 0 1 2 *", datetime(2024, 1, 1, 0, 0))

    @pytest.mark.parametrize(
        "expression",
        ["* * * *", "* * * * * *", "", "abc * * * *", "*/0 * * * *", "*/x * * * *", "5- * * * *"],
    )
    def test_malformed_never_matches(self, expression):
        assert not matches(expression, at())

    def test_aware_datetime_is_converted_to_local(self):
        now = datetime.now().astimezone()
        expression = f"{now.minute} {now.hour} * * *"
        assert matches(expression, now.astimezone(timezone.utc))


class TestMatchField:
    def test_star(self):
        assert match_field("*", 42)

    def test_zero_step_is_false(self):
        assert match_field("*/0", 0) is False

    def test_unknown_syntax_is_false(self):
        assert match_field("L", 1) is False


class TestValidation:
    @pytest.mark.parametrize(
        "expression",
        ["* * * * *", "*/15 * * * *", "0-10/5 0 1 1 0", "0 9-17 * * 1-5", "0,30 * * * *"],
    )
    def test_valid(self, expression):
        validate_expression(expression)
        assert is_valid_expression(expression)

    @pytest.mark.parametrize(
        "expression",
        [
            "* * * *",
            "60 * * * *",
            "* 24 * * *",
            "* * 0 * *",
            "* * * 13 *",
            "* * * * 8",
            "10-5 * * * *",
            "*/0 * * * *",
            "a * * * *",
            "1,x * * * *",
        ],
    )
    def test_invalid(self, expression):
        with pytest.raises(CronSyntaxError):
            validate_expression(expression)
        assert not is_valid_expression(expression)

    @pytest.mark.parametrize("expression", ["² * * * *", "*/² * * * *", "1,³ * * * *", "١-5 * * * *"])
    def test_non_ascii_digits_are_rejected(self, expression):
        with pytest.raises(CronSyntaxError):
            validate_expression(expression)
        assert not is_valid_expression(expression)
        assert not matches(expression, at(minute=2))

    def test_syntax_error_is_a_value_error(self):
        with pytest.raises(ValueError):
            validate_expression("nope")


class TestGuard:
    def test_never_run_job_runs_when_due(self):
        assert should_run("* * * * *", None, at())

    def test_not_due_does_not_run(self):
        assert not should_run("5 * * * *", None, at(minute=4))

    def test_second_tick_in_same_minute_is_suppressed(self):
        first = at(12, 0, 0)
        assert should_run("* * * * *", None, first)
        assert not should_run("* * * * *", first, at(12, 0, 30))
        assert should_run("* * * * *", first, at(12, 1, 5))

    def test_same_minute_on_another_day_is_not_suppressed(self):
        assert should_run("0 12 * * *", at(12, 0, day=1), at(12, 0, day=2))

    def test_same_minute_compares_calendar_fields(self):
        assert same_minute(at(12, 0, 0), at(12, 0, 59))
        assert not same_minute(at(12, 0, 59), at(12, 1, 0))

    def test_same_minute_with_aware_datetimes(self):
        a = datetime(2024, 1, 1, 12, 0, 5, tzinfo=timezone.utc)
        assert same_minute(a, a + timedelta(seconds=30))

    def test_defaults_to_current_time(self):
        assert should_run("* * * * *", None)
