"""
Time window validation module.

Checks pickup/delivery windows against a clinic's weekly operating hours,
tiles open hours into bookable windows and measures SLA compliance.

Operating hours are wall-clock ranges in the clinic's timezone. Aware
datetimes are converted into that timezone before comparison; naive
datetimes are taken to already be clinic-local.
"""

import math
from datetime import date, datetime, time, timedelta, tzinfo
from typing import List, Optional
from zoneinfo import ZoneInfo

from .models import OperatingHours, SlaResult, TimeWindow, Weekday, WindowFeasibility, WindowValidation
from .utils import format_clock

REASON_CLOSED = "closed"
REASON_OUTSIDE_HOURS = "outside operating hours"
REASON_SPANS_DAYS = "spans multiple days"

SLA_GRACE_PERIOD = timedelta(minutes=15)
DEFAULT_WINDOW_MINUTES = 120
DEFAULT_SERVICE_MINUTES = 10


def _clinic_tz(hours: OperatingHours) -> tzinfo:
    return ZoneInfo(hours.timezone)


def _localize(moment: datetime, tz: tzinfo) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(tz)


def _seconds_of_day(moment: datetime) -> int:
    return moment.hour * 3600 + moment.minute * 60 + moment.second


def validate(window: TimeWindow, operating_hours: OperatingHours) -> WindowValidation:
    """
    Checks that a window lies inside the clinic's opening hours.

    A window is valid only when a single listed range contains it
    completely. A window that spans a closure between two ranges (e.g. a
    lunch break) is invalid even if each half falls inside a range.

    Returns:
        WindowValidation with reason "closed" when the clinic has no hours
        that day, "spans multiple days" when the window crosses midnight,
        or "outside operating hours" (with the day's first range as a
        suggestion) otherwise.
    """
    tz = _clinic_tz(operating_hours)
    start = _localize(window.start, tz)
    end = _localize(window.end, tz)

    ranges = operating_hours.ranges_for(Weekday.of(start))
    if not ranges:
        return WindowValidation(valid=False, reason=REASON_CLOSED)

    start_seconds = _seconds_of_day(start)
    if end.date() == start.date():
        end_seconds = _seconds_of_day(end)
    elif end.date() == start.date() + timedelta(days=1) and _seconds_of_day(end) == 0:
        end_seconds = 24 * 3600  # ends exactly at midnight
    else:
        return WindowValidation(valid=False, reason=REASON_SPANS_DAYS)

    for open_minutes, close_minutes in ranges:
        if open_minutes * 60 <= start_seconds and end_seconds <= close_minutes * 60:
            return WindowValidation(valid=True)

    first_open, first_close = ranges[0]
    return WindowValidation(
        valid=False,
        reason=REASON_OUTSIDE_HOURS,
        suggestion=f"{format_clock(first_open)}-{format_clock(first_close)}",
    )


def overlap(first: TimeWindow, second: TimeWindow) -> bool:
    """True when the half-open intervals intersect; touching windows do not overlap."""
    return first.start < second.end and second.start < first.end


def available_windows(
    day: date,
    operating_hours: OperatingHours,
    duration_min: int = DEFAULT_WINDOW_MINUTES,
) -> List[TimeWindow]:
    """
    Tiles each open range of the given day into consecutive windows.

    Tiling starts at each range's opening time. A window that would run past
    the range's closing time is dropped rather than truncated.

    Raises:
        ValueError: If duration_min is not positive.
    """
    if duration_min <= 0:
        raise ValueError("Window duration must be positive")

    tz = _clinic_tz(operating_hours)
    midnight = datetime.combine(day, time(0, 0), tzinfo=tz)
    windows: List[TimeWindow] = []

    for open_minutes, close_minutes in operating_hours.ranges_for(Weekday.of(midnight)):
        current = open_minutes
        while current + duration_min <= close_minutes:
            start = midnight + timedelta(minutes=current)
            windows.append(TimeWindow(start=start, end=start + timedelta(minutes=duration_min)))
            current += duration_min

    return windows


def sla_compliance(expected: datetime, actual: Optional[datetime]) -> SlaResult:
    """
    Compares an actual event time against its expected time.

    Compliant when actual is no later than expected plus a 15-minute grace
    period. A missing actual time is never compliant. Variance is reported
    in whole minutes, rounded down.
    """
    if actual is None:
        return SlaResult(compliant=False, variance_minutes=0)

    variance = actual - expected
    return SlaResult(
        compliant=actual <= expected + SLA_GRACE_PERIOD,
        variance_minutes=math.floor(variance.total_seconds() / 60),
    )


def is_within_operating_hours(moment: datetime, operating_hours: OperatingHours) -> bool:
    """True when the instant falls inside any range for its day (both ends inclusive)."""
    local = _localize(moment, _clinic_tz(operating_hours))
    seconds = _seconds_of_day(local)
    return any(
        open_minutes * 60 <= seconds <= close_minutes * 60
        for open_minutes, close_minutes in operating_hours.ranges_for(Weekday.of(local))
    )


def window_duration_minutes(window: TimeWindow) -> int:
    return math.floor((window.end - window.start).total_seconds() / 60)


def is_expired(window: TimeWindow, now: datetime) -> bool:
    return window.end < now


def next_available_window(
    operating_hours: OperatingHours,
    now: datetime,
    duration_min: int = DEFAULT_WINDOW_MINUTES,
    days_ahead: int = 7,
) -> Optional[TimeWindow]:
    """First tiled window starting at or after now within the next days_ahead days."""
    today = _localize(now, _clinic_tz(operating_hours)).date()
    for offset in range(days_ahead):
        for window in available_windows(today + timedelta(days=offset), operating_hours, duration_min):
            start = window.start if now.tzinfo else window.start.replace(tzinfo=None)
            if start >= now:
                return window
    return None


def can_complete_in_window(
    now: datetime,
    window: TimeWindow,
    travel_min: float,
    service_min: float = DEFAULT_SERVICE_MINUTES,
) -> WindowFeasibility:
    """Checks whether a driver leaving now can arrive and finish service before the window closes."""
    arrival = now + timedelta(minutes=travel_min)
    completion = arrival + timedelta(minutes=service_min)

    if completion > window.end:
        return WindowFeasibility(
            can_complete=False,
            reason=(
                f"Cannot complete before window closes at {window.end.isoformat()}. "
                f"Estimated completion: {completion.isoformat()}"
            ),
        )
    return WindowFeasibility(can_complete=True, arrival_time=arrival)
