from datetime import date, datetime, timedelta

import pytest

from app.core.streaks import completion_rate, streak

TODAY = date(2026, 3, 11)


def _days_ago(n: int) -> date:
    return TODAY - timedelta(days=n)


def test_streak_empty_is_zero() -> None:
    assert streak([], today=TODAY) == 0


def test_streak_today_only() -> None:
    assert streak([TODAY], today=TODAY) == 1


def test_streak_three_consecutive_days() -> None:
    assert streak([TODAY, _days_ago(1), _days_ago(2)], today=TODAY) == 3


def test_streak_stops_at_first_gap() -> None:
    assert streak([TODAY, _days_ago(3)], today=TODAY) == 1


def test_streak_may_end_yesterday() -> None:
    assert streak([_days_ago(1), _days_ago(2)], today=TODAY) == 2


def test_streak_is_zero_when_latest_is_older_than_yesterday() -> None:
    assert streak([_days_ago(2), _days_ago(3), _days_ago(4)], today=TODAY) == 0


def test_streak_ignores_duplicates_and_time_of_day() -> None:
    records = [
        datetime(2026, 3, 11, 0, 5),
        datetime(2026, 3, 11, 23, 55),
        "2026-03-10",
        "2026-03-09T08:00:00",
    ]
    assert streak(records, today=TODAY) == 3


def test_completion_rate_five_of_seven_rounds_to_71() -> None:
    start = _days_ago(6)
    records = [_days_ago(n) for n in range(5)]
    assert completion_rate(records, start, TODAY, range(7)) == 71


def test_completion_rate_only_counts_scheduled_weekdays() -> None:
    # 2026-03-09 is a Monday.
    monday = date(2026, 3, 9)
    sunday = monday + timedelta(days=6)
    records = [monday, monday + timedelta(days=1), monday + timedelta(days=2)]
    assert completion_rate(records, monday, sunday, {0, 2, 4}) == 67


def test_completion_rate_rounds_half_up() -> None:
    monday = date(2026, 3, 9)
    records = [monday]
    # One hit out of eight scheduled days is 12.5%.
    assert completion_rate(records, monday, monday + timedelta(days=7), range(7)) == 13


@pytest.mark.parametrize(
    "start,end,days",
    [
        (TODAY, _days_ago(1), range(7)),
        (_days_ago(6), TODAY, []),
        (date(2026, 3, 10), date(2026, 3, 10), {0}),
    ],
)
def test_completion_rate_empty_denominator_is_zero(start, end, days) -> None:
    assert completion_rate([TODAY, _days_ago(1)], start, end, days) == 0


def test_completion_rate_empty_records_is_zero() -> None:
    assert completion_rate([], _days_ago(6), TODAY, range(7)) == 0
