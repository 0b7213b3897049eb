"""Business-hours aware deadlines for waitlist payment windows."""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from functools import lru_cache

from ..core.config import Settings, settings

# Upper bound on the day-by-day search for the next business day
_MAX_DAYS_SEARCHED = 400


@dataclass(frozen=True)
class OfficeHours:
    """Office hours, weekly off-days and holiday calendar."""

    open_time: time = time(8, 0)
    close_time: time = time(17, 0)
    weekly_off_days: frozenset[int] = frozenset({6})
    holidays: frozenset[date] = frozenset()
    recurring_holidays: frozenset[tuple[int, int]] = field(default_factory=frozenset)

    @classmethod
    def from_settings(cls, config: Settings) -> "OfficeHours":
        recurring = frozenset(
            tuple(int(part) for part in value.split("-"))
            for value in config.recurring_holidays
        )
        return cls(
            open_time=config.office_open,
            close_time=config.office_close,
            weekly_off_days=frozenset(config.weekly_off_days),
            holidays=frozenset(config.holidays),
            recurring_holidays=recurring,
        )

    def is_holiday(self, day: date) -> bool:
        return day in self.holidays or (day.month, day.day) in self.recurring_holidays


class BusinessHoursCalculator:
    """
    Computes payment deadlines for promoted waitlist entries.

    While the office is open the deadline is a short fuse after ``now``.
    Outside office hours, on an off-day or on a holiday, the deadline is the
    opening instant of the next business day, so a user notified overnight
    is not timed out before staff can review their payment.
    """

    def __init__(self, office_hours: OfficeHours, fuse: timedelta = timedelta(hours=1)):
        self.office_hours = office_hours
        self.fuse = fuse

    def is_business_day(self, day: date) -> bool:
        return day.weekday() not in self.office_hours.weekly_off_days and not self.office_hours.is_holiday(day)

    def is_within_business_hours(self, instant: datetime) -> bool:
        return (
            self.is_business_day(instant.date())
            and self.office_hours.open_time <= instant.time() < self.office_hours.close_time
        )

    def next_business_opening(self, instant: datetime) -> datetime:
        """Opening instant of the first business day whose opening is at or after ``instant``."""
        day = instant.date()
        if instant.time() > self.office_hours.open_time:
            day += timedelta(days=1)

        for _ in range(_MAX_DAYS_SEARCHED):
            if self.is_business_day(day):
                return datetime.combine(day, self.office_hours.open_time)
            day += timedelta(days=1)

        raise ValueError("No business day found; check weekly off-days and holidays")

    def next_business_deadline(self, now: datetime) -> datetime:
        if self.is_within_business_hours(now):
            return now + self.fuse
        return self.next_business_opening(now)


@lru_cache(maxsize=1)
def get_business_hours_calculator() -> BusinessHoursCalculator:
    """Calculator built from the application settings."""
    return BusinessHoursCalculator(OfficeHours.from_settings(settings))
