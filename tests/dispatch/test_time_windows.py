import pytest
from datetime import date, datetime, timedelta, timezone
from pydantic import ValidationError

from dispatch.models import OperatingHours, TimeWindow
from dispatch.time_windows import (
    REASON_CLOSED, REASON_OUTSIDE_HOURS, REASON_SPANS_DAYS, available_windows,
    can_complete_in_window, is_expired, is_within_operating_hours, next_available_window, overlap,
    sla_compliance, validate, window_duration_minutes,
)

MONDAY = date(2024, 1, 1)


def utc(hour, minute=0, day=MONDAY):
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


def window(start_hour, end_hour, day=MONDAY):
    return TimeWindow(start=utc(start_hour, day=day), end=utc(end_hour, day=day))


# --- Tests for TimeWindow model ---

def test_window_requires_start_before_end():
    with pytest.raises(ValidationError):
        TimeWindow(start=utc(10), end=utc(10))
    with pytest.raises(ValidationError):
        TimeWindow(start=utc(11), end=utc(10))

def test_operating_hours_rejects_malformed_range():
    with pytest.raises(ValidationError):
        OperatingHours(schedule={"mon": ["17:00-08:00"]})
    with pytest.raises(ValidationError):
        OperatingHours(schedule={"mon": ["8am-5pm"]})


# --- Tests for validate ---

def test_validate_window_inside_range(clinic_hours):
    assert validate(window(9, 10), clinic_hours).valid

def test_validate_window_matching_range_exactly(clinic_hours):
    assert validate(window(13, 17), clinic_hours).valid

def test_validate_window_spanning_lunch(clinic_hours):
    """A window bridging the lunch closure is invalid even though each half is open."""
    result = validate(window(11, 14), clinic_hours)
    assert not result.valid
    assert result.reason == REASON_OUTSIDE_HOURS
    assert result.suggestion == "08:00-12:00"

    assert validate(window(11, 12), clinic_hours).valid
    assert validate(window(13, 14), clinic_hours).valid

def test_validate_closed_days(clinic_hours):
    saturday = date(2024, 1, 6)  # listed with no ranges
    sunday = date(2024, 1, 7)  # not listed at all
    assert validate(window(9, 10, saturday), clinic_hours).reason == REASON_CLOSED
    assert validate(window(9, 10, sunday), clinic_hours).reason == REASON_CLOSED

def test_validate_window_crossing_midnight():
    hours = OperatingHours(schedule={"mon": ["00:00-24:00"], "tue": ["00:00-24:00"]})
    overnight = TimeWindow(start=utc(22), end=utc(2, day=date(2024, 1, 2)))
    result = validate(overnight, hours)
    assert not result.valid
    assert result.reason == REASON_SPANS_DAYS

def test_validate_window_ending_at_midnight():
    hours = OperatingHours(schedule={"mon": ["18:00-24:00"]})
    late = TimeWindow(start=utc(22), end=utc(0, day=date(2024, 1, 2)))
    assert validate(late, hours).valid

def test_validate_converts_into_clinic_timezone():
    """14:00 UTC in January is 09:00 in New York."""
    hours = OperatingHours(timezone="America/New_York", schedule={"mon": ["08:00-12:00"]})
    assert validate(window(14, 15), hours).valid
    assert not validate(window(9, 10), hours).valid  # 04:00 local

def test_validate_naive_window_is_clinic_local():
    hours = OperatingHours(timezone="America/New_York", schedule={"mon": ["08:00-12:00"]})
    naive = TimeWindow(start=datetime(2024, 1, 1, 9), end=datetime(2024, 1, 1, 10))
    assert validate(naive, hours).valid


# --- Tests for overlap and helpers ---

def test_overlap():
    assert overlap(window(9, 11), window(10, 12))
    assert overlap(window(9, 12), window(10, 11))
    assert not overlap(window(9, 10), window(10, 11))  # touching
    assert not overlap(window(9, 10), window(14, 15))

def test_window_duration_and_expiry():
    assert window_duration_minutes(window(9, 11)) == 120
    assert is_expired(window(9, 10), utc(10, 1))
    assert not is_expired(window(9, 10), utc(10))

def test_is_within_operating_hours(clinic_hours):
    assert is_within_operating_hours(utc(8), clinic_hours)
    assert is_within_operating_hours(utc(12), clinic_hours)  # inclusive close
    assert not is_within_operating_hours(utc(12, 30), clinic_hours)
    assert not is_within_operating_hours(utc(9, day=date(2024, 1, 7)), clinic_hours)


# --- Tests for available_windows ---

def test_available_windows_two_hour_slots(clinic_hours):
    windows = available_windows(MONDAY, clinic_hours, 120)
    assert [(w.start, w.end) for w in windows] == [
        (utc(8), utc(10)),
        (utc(10), utc(12)),
        (utc(13), utc(15)),
        (utc(15), utc(17)),
    ]

def test_available_windows_drop_partial_slot(clinic_hours):
    """A 90 minute slot at 11:00 would run past noon, so it is not offered."""
    windows = available_windows(MONDAY, clinic_hours, 90)
    assert len(windows) == 4
    assert windows[1].end == utc(11)
    assert windows[-1].end == utc(16)

def test_available_windows_closed_day(clinic_hours):
    assert available_windows(date(2024, 1, 7), clinic_hours) == []

def test_available_windows_all_validate(clinic_hours):
    for w in available_windows(MONDAY, clinic_hours, 45):
        assert validate(w, clinic_hours).valid

def test_available_windows_rejects_non_positive_duration(clinic_hours):
    with pytest.raises(ValueError):
        available_windows(MONDAY, clinic_hours, 0)

def test_next_available_window(clinic_hours):
    after_lunch = next_available_window(clinic_hours, utc(12, 30))
    assert after_lunch.start == utc(13)

    # Friday evening rolls over the weekend to Monday
    friday_evening = utc(18, day=date(2024, 1, 5))
    monday = next_available_window(clinic_hours, friday_evening)
    assert monday.start == utc(8, day=date(2024, 1, 8))

def test_next_available_window_none_when_always_closed():
    assert next_available_window(OperatingHours(), utc(9)) is None


# --- Tests for SLA ---

def test_sla_within_grace_period():
    result = sla_compliance(utc(10), utc(10, 15))
    assert result.compliant
    assert result.variance_minutes == 15

def test_sla_past_grace_period():
    result = sla_compliance(utc(10), utc(10, 16))
    assert not result.compliant
    assert result.variance_minutes == 16

def test_sla_early_arrival():
    result = sla_compliance(utc(10), utc(9, 50))
    assert result.compliant
    assert result.variance_minutes == -10

def test_sla_missing_actual():
    result = sla_compliance(utc(10), None)
    assert not result.compliant
    assert result.variance_minutes == 0

def test_sla_variance_rounds_down():
    result = sla_compliance(utc(10), utc(10) + timedelta(minutes=5, seconds=59))
    assert result.variance_minutes == 5


# --- Tests for can_complete_in_window ---

def test_can_complete_in_window():
    result = can_complete_in_window(utc(9), window(9, 10), travel_min=30)
    assert result.can_complete
    assert result.arrival_time == utc(9, 30)

def test_cannot_complete_in_window():
    result = can_complete_in_window(utc(9, 30), window(9, 10), travel_min=25)
    assert not result.can_complete
    assert "Cannot complete before window closes" in result.reason
