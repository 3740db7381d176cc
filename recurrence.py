"""Recurrence rules and their expansion into concrete occurrence dates.

Month-length policy: a monthly rule whose ``day_of_month`` does not exist in
a given month (31 in April, 29-31 in February) is clamped to that month's
last day. It is never skipped, so a monthly rule always yields exactly one
occurrence per calendar month it is active in.

Weekdays use the ``0 = Sunday ... 6 = Saturday`` numbering stored on rules,
not Python's ``date.weekday()`` numbering.
"""

from datetime import date, datetime, timedelta
from typing import Union
from zoneinfo import ZoneInfo

from config import get_settings
from errors import ValidationFailed
from models import RecurringSpend, ScheduleFrequency

DateLike = Union[date, datetime]

WEEKDAY_LABELS = (
    "Sunday",
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
)


def to_local_date(value: DateLike) -> date:
    """Normalize a date or datetime to a calendar day in the local timezone."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            tz = ZoneInfo(get_settings().timezone)
            return value.astimezone(tz).date()
        return value.date()
    return value


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def rule_weekday(day: date) -> int:
    return (day.weekday() + 1) % 7


def _next_weekday_on_or_after(day: date, day_of_week: int) -> date:
    return day + timedelta(days=(day_of_week - rule_weekday(day)) % 7)


def validate_rule(rule: RecurringSpend) -> None:
    if rule.amount_cents is None or rule.amount_cents <= 0:
        raise ValidationFailed("Amount must be greater than zero")
    try:
        frequency = ScheduleFrequency(rule.frequency)
    except ValueError as exc:
        raise ValidationFailed(f"Unknown frequency: {rule.frequency}") from exc

    if frequency in (ScheduleFrequency.weekly, ScheduleFrequency.fortnightly):
        if rule.day_of_week is None or rule.day_of_month is not None:
            raise ValidationFailed(f"{frequency.value} rules need only day_of_week")
        if not 0 <= rule.day_of_week <= 6:
            raise ValidationFailed("day_of_week must be between 0 and 6")
    elif frequency == ScheduleFrequency.monthly:
        if rule.day_of_month is None or rule.day_of_week is not None:
            raise ValidationFailed("monthly rules need only day_of_month")
        if not 1 <= rule.day_of_month <= 31:
            raise ValidationFailed("day_of_month must be between 1 and 31")
    elif rule.day_of_week is not None or rule.day_of_month is not None:
        raise ValidationFailed("daily rules take no anchor")


def expand(
    rule: RecurringSpend, window_start: DateLike, window_end: DateLike
) -> list[date]:
    """Return every occurrence of ``rule`` inside ``[window_start, window_end]``.

    Both ends are inclusive and the result is sorted. Inactive rules and
    inverted windows expand to nothing.
    """
    if not rule.active:
        return []
    start = to_local_date(window_start)
    end = to_local_date(window_end)
    if end < start:
        return []
    validate_rule(rule)

    rule_start = to_local_date(rule.start_date)
    first = max(rule_start, start)
    if first > end:
        return []

    frequency = ScheduleFrequency(rule.frequency)
    if frequency == ScheduleFrequency.daily:
        return _stepped(first, end, 1)
    if frequency == ScheduleFrequency.weekly:
        return _stepped(_next_weekday_on_or_after(first, rule.day_of_week), end, 7)
    if frequency == ScheduleFrequency.fortnightly:
        # The cadence is pinned to the rule's start, not to the window.
        anchor = _next_weekday_on_or_after(rule_start, rule.day_of_week)
        if anchor < first:
            periods_behind = -(-(first - anchor).days // 14)
            anchor += timedelta(days=14 * periods_behind)
        return _stepped(anchor, end, 14)
    return _monthly(rule.day_of_month, first, end)


def _stepped(first: date, end: date, step_days: int) -> list[date]:
    occurrences: list[date] = []
    current = first
    step = timedelta(days=step_days)
    while current <= end:
        occurrences.append(current)
        current += step
    return occurrences


def _monthly(day_of_month: int, first: date, end: date) -> list[date]:
    occurrences: list[date] = []
    year, month = first.year, first.month
    while (year, month) <= (end.year, end.month):
        day = min(day_of_month, days_in_month(year, month))
        candidate = date(year, month, day)
        if first <= candidate <= end:
            occurrences.append(candidate)
        if month == 12:
            year, month = year + 1, 1
        else:
            month += 1
    return occurrences


def ordinal(day: int) -> str:
    if day in (1, 21, 31):
        return f"{day}st"
    if day in (2, 22):
        return f"{day}nd"
    if day in (3, 23):
        return f"{day}rd"
    return f"{day}th"


def describe_schedule(rule: RecurringSpend) -> str:
    frequency = ScheduleFrequency(rule.frequency)
    if frequency == ScheduleFrequency.daily:
        return "Every day"
    if frequency == ScheduleFrequency.weekly:
        return f"Every week on {WEEKDAY_LABELS[rule.day_of_week or 0]}"
    if frequency == ScheduleFrequency.fortnightly:
        return f"Every 2 weeks on {WEEKDAY_LABELS[rule.day_of_week or 0]}"
    return f"Monthly on the {ordinal(rule.day_of_month or 1)}"
