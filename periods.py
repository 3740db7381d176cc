from dataclasses import dataclass
from datetime import date, timedelta

from errors import ValidationFailed


@dataclass(frozen=True)
class Window:
    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValidationFailed("End date must not be before start date")

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def offset_of(self, day: date) -> int:
        return (day - self.start).days

    def at_offset(self, offset_days: int) -> date:
        return self.start + timedelta(days=offset_days)


def window_of(period) -> Window:
    return Window(period.start_date, period.end_date)


def translate_date(day: date, source: Window, destination: Window) -> date:
    """Move ``day`` to the same position inside ``destination``.

    The result keeps the day offset from the window start, not the calendar
    date, and may land outside ``destination`` when it is the shorter window.
    """
    return destination.at_offset(source.offset_of(day))

