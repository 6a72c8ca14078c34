from datetime import datetime, timezone

import pytest

from newsrelay.cron import CronError, next_fire_time, resolve_timezone, validate_cron


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_daily_fire_rolls_to_next_day():
    assert next_fire_time("0 8 * * *", "UTC", _utc(2024, 1, 1, 9, 0)) == _utc(2024, 1, 2, 8, 0)


def test_next_fire_is_strictly_after_reference():
    assert next_fire_time("0 8 * * *", "UTC", _utc(2024, 1, 1, 8, 0)) == _utc(2024, 1, 2, 8, 0)
    assert next_fire_time("*/15 * * * *", "UTC", _utc(2024, 1, 1, 8, 7, 30)) == _utc(
        2024, 1, 1, 8, 15
    )


def test_schedule_timezone_is_applied():
    # 08:00 in Berlin during winter is 07:00 UTC.
    assert next_fire_time("0 8 * * *", "Europe/Berlin", _utc(2024, 1, 1, 9, 0)) == _utc(
        2024, 1, 2, 7, 0
    )


def test_naive_reference_is_treated_as_utc():
    assert next_fire_time("0 8 * * *", "UTC", datetime(2024, 1, 1, 9, 0)) == _utc(2024, 1, 2, 8, 0)


@pytest.mark.parametrize("weekday", ["0", "7", "sun"])
def test_sunday_accepts_zero_seven_and_name(weekday):
    # 2024-01-03 is a Wednesday.
    fire = next_fire_time(f"0 9 * * {weekday}", "UTC", _utc(2024, 1, 3, 12, 0))
    assert fire == _utc(2024, 1, 7, 9, 0)


def test_weekday_range_uses_cron_numbering():
    # 1-5 is Monday to Friday; from Friday evening the next fire is Monday.
    fire = next_fire_time("0 9 * * 1-5", "UTC", _utc(2024, 1, 5, 18, 0))
    assert fire == _utc(2024, 1, 8, 9, 0)


def test_day_of_month_or_day_of_week():
    # "on the 1st or on Mondays": from Wed 2024-01-31 the 1st of February comes first.
    fire = next_fire_time("0 12 1 * 1", "UTC", _utc(2024, 1, 31, 13, 0))
    assert fire == _utc(2024, 2, 1, 12, 0)
    fire = next_fire_time("0 12 1 * 1", "UTC", fire)
    assert fire == _utc(2024, 2, 5, 12, 0)


def test_spring_forward_gap_moves_to_first_valid_time():
    # 02:30 does not exist in New York on 2024-03-10; 03:00 EDT is 07:00 UTC.
    fire = next_fire_time("30 2 * * *", "America/New_York", _utc(2024, 3, 9, 12, 0))
    assert fire == _utc(2024, 3, 10, 7, 0)


def test_fall_back_repeated_time_fires_once():
    # 01:30 happens twice in New York on 2024-11-03; only the first (EDT) fires.
    first = next_fire_time("30 1 * * *", "America/New_York", _utc(2024, 11, 3, 4, 0))
    assert first == _utc(2024, 11, 3, 5, 30)
    second = next_fire_time("30 1 * * *", "America/New_York", first)
    assert second == _utc(2024, 11, 4, 6, 30)


def test_reference_inside_second_pass_skips_repeat():
    # 06:00 UTC is 01:00 EST, after the first 01:30 already happened.
    fire = next_fire_time("30 1 * * *", "America/New_York", _utc(2024, 11, 3, 6, 0))
    assert fire == _utc(2024, 11, 4, 6, 30)


def test_validate_cron_normalizes_whitespace():
    assert validate_cron("  0  8 *  * * ") == "0 8 * * *"


@pytest.mark.parametrize(
    "expression",
    ["", "* * * *", "* * * * * *", "61 * * * *", "0 25 * * *", "0 8 * * 8", "0 8 * * funday"],
)
def test_invalid_expressions_raise(expression):
    with pytest.raises(CronError):
        validate_cron(expression)


def test_unknown_timezone_raises():
    with pytest.raises(CronError):
        resolve_timezone("Mars/Olympus_Mons")
    with pytest.raises(CronError):
        next_fire_time("0 8 * * *", "Mars/Olympus_Mons", _utc(2024, 1, 1))
