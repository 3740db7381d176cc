from datetime import date, datetime, timedelta, timezone

import pytest

from errors import ValidationFailed
from models import RecurringSpend, ScheduleFrequency, SpendCategory
from recurrence import describe_schedule, expand, ordinal, rule_weekday, to_local_date


def _rule(
    frequency: ScheduleFrequency,
    *,
    day_of_week=None,
    day_of_month=None,
    start_date=date(2025, 1, 1),
    active=True,
    amount_cents=4500,
) -> RecurringSpend:
    return RecurringSpend(
        id=1,
        account_id=1,
        description="Gym",
        amount_cents=amount_cents,
        category=SpendCategory.need,
        start_date=start_date,
        frequency=frequency,
        day_of_week=day_of_week,
        day_of_month=day_of_month,
        active=active,
    )


def test_monthly_rule_yields_one_occurrence_in_january():
    rule = _rule(ScheduleFrequency.monthly, day_of_month=5)
    assert expand(rule, date(2025, 1, 1), date(2025, 1, 31)) == [date(2025, 1, 5)]


def test_monthly_day_31_clamps_to_end_of_february():
    rule = _rule(ScheduleFrequency.monthly, day_of_month=31)
    assert expand(rule, date(2025, 2, 1), date(2025, 2, 28)) == [date(2025, 2, 28)]
    leap = _rule(
        ScheduleFrequency.monthly, day_of_month=31, start_date=date(2024, 1, 1)
    )
    assert expand(leap, date(2024, 2, 1), date(2024, 2, 29)) == [date(2024, 2, 29)]


def test_monthly_rule_covers_each_month_once():
    rule = _rule(ScheduleFrequency.monthly, day_of_month=30)
    result = expand(rule, date(2025, 1, 1), date(2025, 4, 30))
    assert result == [
        date(2025, 1, 30),
        date(2025, 2, 28),
        date(2025, 3, 30),
        date(2025, 4, 30),
    ]


def test_weekly_monday_over_fourteen_days_gives_two_mondays():
    rule = _rule(ScheduleFrequency.weekly, day_of_week=1)
    start = date(2025, 1, 1)
    result = expand(rule, start, start + timedelta(days=13))
    assert len(result) == 2
    assert all(day.weekday() == 0 for day in result)


def test_inactive_rule_yields_nothing():
    rule = _rule(ScheduleFrequency.daily, active=False)
    assert expand(rule, date(2025, 1, 1), date(2025, 12, 31)) == []


def test_daily_rule_is_bounded_by_window_and_rule_start():
    rule = _rule(ScheduleFrequency.daily, start_date=date(2025, 1, 10))
    result = expand(rule, date(2025, 1, 1), date(2025, 1, 12))
    assert result == [date(2025, 1, 10), date(2025, 1, 11), date(2025, 1, 12)]


def test_rule_starting_after_window_yields_nothing():
    rule = _rule(ScheduleFrequency.monthly, day_of_month=1, start_date=date(2025, 3, 1))
    assert expand(rule, date(2025, 1, 1), date(2025, 1, 31)) == []


def test_inverted_window_yields_nothing():
    rule = _rule(ScheduleFrequency.daily)
    assert expand(rule, date(2025, 1, 31), date(2025, 1, 1)) == []


def test_fortnightly_cadence_is_anchored_to_rule_start():
    rule = _rule(
        ScheduleFrequency.fortnightly, day_of_week=1, start_date=date(2026, 1, 1)
    )
    assert expand(rule, date(2026, 1, 1), date(2026, 1, 31)) == [
        date(2026, 1, 5),
        date(2026, 1, 19),
    ]
    # A later window keeps the same two-week rhythm.
    assert expand(rule, date(2026, 1, 20), date(2026, 2, 28)) == [
        date(2026, 2, 2),
        date(2026, 2, 16),
    ]


@pytest.mark.parametrize(
    "frequency,day_of_week,day_of_month",
    [
        (ScheduleFrequency.weekly, None, None),
        (ScheduleFrequency.weekly, 7, None),
        (ScheduleFrequency.monthly, None, None),
        (ScheduleFrequency.monthly, None, 32),
        (ScheduleFrequency.monthly, 1, 5),
        (ScheduleFrequency.daily, 2, None),
    ],
)
def test_malformed_anchor_is_rejected(frequency, day_of_week, day_of_month):
    rule = _rule(frequency, day_of_week=day_of_week, day_of_month=day_of_month)
    with pytest.raises(ValidationFailed):
        expand(rule, date(2025, 1, 1), date(2025, 1, 31))


def test_non_positive_amount_is_rejected():
    rule = _rule(ScheduleFrequency.daily, amount_cents=0)
    with pytest.raises(ValidationFailed):
        expand(rule, date(2025, 1, 1), date(2025, 1, 31))


def test_every_occurrence_lies_inside_window():
    rules = [
        _rule(ScheduleFrequency.daily),
        _rule(ScheduleFrequency.weekly, day_of_week=0),
        _rule(ScheduleFrequency.fortnightly, day_of_week=6),
        _rule(ScheduleFrequency.monthly, day_of_month=31),
    ]
    start = date(2025, 1, 1)
    for length in (0, 6, 27, 59, 120):
        end = start + timedelta(days=length)
        for rule in rules:
            assert all(start <= day <= end for day in expand(rule, start, end))


def test_aware_datetimes_are_normalized_to_configured_timezone():
    value = datetime(2025, 1, 31, 23, 30, tzinfo=timezone(timedelta(hours=-2)))
    # Default timezone is UTC, which is already the next day.
    assert to_local_date(value) == date(2025, 2, 1)


def test_rule_weekday_counts_from_sunday():
    assert rule_weekday(date(2025, 1, 5)) == 0
    assert rule_weekday(date(2025, 1, 6)) == 1
    assert rule_weekday(date(2025, 1, 11)) == 6


def test_describe_schedule():
    assert describe_schedule(_rule(ScheduleFrequency.daily)) == "Every day"
    assert (
        describe_schedule(_rule(ScheduleFrequency.weekly, day_of_week=1))
        == "Every week on Monday"
    )
    assert (
        describe_schedule(_rule(ScheduleFrequency.fortnightly, day_of_week=5))
        == "Every 2 weeks on Friday"
    )
    assert (
        describe_schedule(_rule(ScheduleFrequency.monthly, day_of_month=22))
        == "Monthly on the 22nd"
    )
    assert ordinal(11) == "11th"
