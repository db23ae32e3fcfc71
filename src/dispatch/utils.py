from datetime import datetime, timezone
from typing import Tuple


def parse_clock(text: str) -> int:
    """
    Parses an "HH:MM" clock reading into minutes since midnight.

    "24:00" is accepted so a range can close at the end of the day.

    Raises:
        ValueError: If the text is not a valid clock reading.
    """
    try:
        hour_text, minute_text = text.strip().split(':')
        hour, minute = int(hour_text), int(minute_text)
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"Invalid clock time: {text!r}") from exc
    if not (0 <= minute < 60) or not (0 <= hour <= 24) or (hour == 24 and minute != 0):
        raise ValueError(f"Invalid clock time: {text!r}")
    return hour * 60 + minute


def parse_time_range(text: str) -> Tuple[int, int]:
    """
    Parses an "HH:MM-HH:MM" operating range into (open, close) minutes.

    Raises:
        ValueError: If either side is malformed or the range does not open
                    before it closes.
    """
    if not isinstance(text, str) or text.count('-') != 1:
        raise ValueError(f"Invalid time range: {text!r}")
    open_text, close_text = text.split('-')
    open_minutes, close_minutes = parse_clock(open_text), parse_clock(close_text)
    if open_minutes >= close_minutes:
        raise ValueError(f"Time range must open before it closes: {text!r}")
    return open_minutes, close_minutes


def format_clock(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_millis(moment: datetime) -> int:
    """Converts a datetime to epoch milliseconds. Naive values are taken as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)
