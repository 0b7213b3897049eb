"""Property-based tests for time-range and deadline invariants."""

from datetime import date, datetime, time, timedelta

from hypothesis import assume, given
from hypothesis import strategies as st

from courtslot.core.time_range import TimeRange
from courtslot.services.business_hours import BusinessHoursCalculator, OfficeHours

# Strategies for generating test data
days = st.dates(min_value=date(2030, 1, 1), max_value=date(2030, 12, 31))
whole_hours = st.integers(min_value=0, max_value=23).map(lambda h: time(h))
instants = st.datetimes(min_value=datetime(2030, 1, 1), max_value=datetime(2030, 12, 31, 23, 59))
off_days = st.frozensets(st.integers(min_value=0, max_value=6), max_size=5)
holiday_sets = st.frozensets(days, max_size=20)


@st.composite
def time_ranges(draw):
    start = draw(whole_hours)
    end = draw(whole_hours)
    assume(start != end)
    return TimeRange(draw(days), start, end)


@given(first=time_ranges(), second=time_ranges())
def test_overlap_is_symmetric(first, second):
    """Test that overlap does not depend on argument order."""
    assert first.overlaps(second) == second.overlaps(first)


@given(time_range=time_ranges())
def test_range_overlaps_itself(time_range):
    assert time_range.overlaps(time_range)


@given(time_range=time_ranges())
def test_duration_is_positive_and_under_a_day(time_range):
    """Test that every range, midnight-crossing or not, lasts between 1 and 23 hours."""
    assert timedelta(hours=1) <= time_range.duration <= timedelta(hours=23)


@given(first=time_ranges(), second=time_ranges())
def test_overlap_matches_absolute_interval_intersection(first, second):
    """Test overlap against a direct comparison of absolute instants."""
    latest_start = max(first.starts_at, second.starts_at)
    earliest_end = min(first.ends_at, second.ends_at)

    assert first.overlaps(second) == (latest_start < earliest_end)


@given(first=time_ranges(), second=time_ranges())
def test_overlapping_records_fall_in_window(first, second):
    """Test that the three-day window always finds an overlapping record's day."""
    assume(first.overlaps(second))

    assert second.day in first.window_days()


@given(now=instants, weekly_off_days=off_days, holidays=holiday_sets)
def test_deadline_is_never_before_now(now, weekly_off_days, holidays):
    calculator = BusinessHoursCalculator(OfficeHours(weekly_off_days=weekly_off_days, holidays=holidays))

    assert calculator.next_business_deadline(now) >= now


@given(now=instants, weekly_off_days=off_days, holidays=holiday_sets)
def test_deadline_is_fuse_or_business_opening(now, weekly_off_days, holidays):
    """Test that a deadline is either a one hour fuse or the opening of a business day."""
    office_hours = OfficeHours(weekly_off_days=weekly_off_days, holidays=holidays)
    calculator = BusinessHoursCalculator(office_hours)

    deadline = calculator.next_business_deadline(now)

    if calculator.is_within_business_hours(now):
        assert deadline == now + timedelta(hours=1)
    else:
        assert deadline.time() == office_hours.open_time
        assert calculator.is_business_day(deadline.date())
        # No business opening was skipped between now and the deadline
        day = now.date()
        while datetime.combine(day, office_hours.open_time) < deadline:
            opening = datetime.combine(day, office_hours.open_time)
            assert opening < now or not calculator.is_business_day(day)
            day += timedelta(days=1)


@given(now=instants)
def test_deadline_is_deterministic(now):
    calculator = BusinessHoursCalculator(OfficeHours())

    assert calculator.next_business_deadline(now) == calculator.next_business_deadline(now)
