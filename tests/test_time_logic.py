import pytest
from datetime import datetime, time
from sleep_well.utils.time import (
    format_clock,
    format_duration_seconds,
    next_occurrence,
    parse_time_string,
)


def test_parse_time_string():
    # Test various formats
    assert parse_time_string("7am") == time(7, 0)
    assert parse_time_string("7:30am") == time(7, 30)
    assert parse_time_string("7:30 a.m.") == time(7, 30)
    assert parse_time_string("19:00") == time(19, 0)
    assert parse_time_string("06:45") == time(6, 45)

    with pytest.raises(ValueError):
        parse_time_string("invalid")


@pytest.mark.parametrize(
    "now, expected",
    [
        (datetime(2024, 5, 6, 6, 0), datetime(2024, 5, 6, 7, 0)),  # later today
        (datetime(2024, 5, 6, 8, 0), datetime(2024, 5, 7, 7, 0)),  # already past
        (datetime(2024, 5, 6, 7, 0), datetime(2024, 5, 7, 7, 0)),  # exactly now
        (datetime(2024, 5, 6, 6, 59, 59, 999), datetime(2024, 5, 6, 7, 0)),
        (datetime(2024, 12, 31, 23, 0), datetime(2025, 1, 1, 7, 0)),  # year end
    ],
)
def test_next_occurrence(now, expected):
    assert next_occurrence(7, 0, now) == expected


def test_next_occurrence_zeroes_seconds():
    result = next_occurrence(9, 15, datetime(2024, 5, 6, 8, 10, 42, 123))
    assert result == datetime(2024, 5, 6, 9, 15)


def test_format_clock():
    assert format_clock(datetime(2024, 5, 6, 7, 5)) == "7:05 AM"
    assert format_clock(time(19, 30)) == "7:30 PM"


@pytest.mark.parametrize(
    "seconds, expected",
    [(30, "<1m"), (45 * 60, "45m"), (150 * 60, "2h 30m")],
)
def test_format_duration_seconds(seconds, expected):
    assert format_duration_seconds(seconds) == expected
