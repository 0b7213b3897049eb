"""Booking time ranges that may cross midnight."""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta


@dataclass(frozen=True, order=True)
class TimeRange:
    """
    A ``(day, start, end)`` slot on the facility calendar.

    An ``end`` at or before ``start`` means the range runs past midnight into
    the following day, so ``20:00-00:00`` is four hours and ``22:00-01:00`` is
    three. Comparisons between ranges happen on absolute datetimes, which puts
    two consecutive days on one 48-hour timeline.
    """

    day: date
    start: time
    end: time

    @property
    def crosses_midnight(self) -> bool:
        return self.end <= self.start

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.day, self.start)

    @property
    def ends_at(self) -> datetime:
        end_day = self.day + timedelta(days=1) if self.crosses_midnight else self.day
        return datetime.combine(end_day, self.end)

    @property
    def duration(self) -> timedelta:
        return self.ends_at - self.starts_at

    def overlaps(self, other: "TimeRange") -> bool:
        """Half-open overlap: touching ranges do not overlap."""
        return self.starts_at < other.ends_at and other.starts_at < self.ends_at

    def is_followed_by(self, other: "TimeRange") -> bool:
        """True if ``other`` starts exactly when this range ends on the same day."""
        return other.day == self.day and not self.crosses_midnight and other.start == self.end

    def merge(self, other: "TimeRange") -> "TimeRange":
        if not self.is_followed_by(other):
            raise ValueError("Only back-to-back ranges on the same day can be merged")
        return TimeRange(self.day, self.start, other.end)

    def window_days(self) -> list[date]:
        """
        Calendar days whose records can overlap this range.

        A record stored on the previous day may run past midnight into this
        range, and a midnight-crossing range reaches into the next day.
        """
        return [self.day - timedelta(days=1), self.day, self.day + timedelta(days=1)]

    def __str__(self) -> str:
        return f"{self.day.isoformat()} {self.start.strftime('%H:%M')}-{self.end.strftime('%H:%M')}"
