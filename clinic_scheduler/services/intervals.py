# clinic_scheduler/services/intervals.py
"""
Half-open time intervals anchored to a calendar date.

All dates and times are naive local values as entered at the front desk
(``YYYY-MM-DD`` and 24-hour ``HH:MM``). No timezone conversion happens here.
"""
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional

DEFAULT_DURATION_MINUTES = 30
MINUTES_PER_DAY = 24 * 60


def parse_date(value: str) -> date:
    """Parse a ``YYYY-MM-DD`` string. Raises ValueError if malformed."""
    if not isinstance(value, str) or len(value) != 10:
        raise ValueError(f"Invalid date '{value}', expected YYYY-MM-DD")
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise ValueError(f"Invalid date '{value}', expected YYYY-MM-DD") from None


def parse_time(value: str) -> time:
    """Parse a 24-hour ``HH:MM`` string. Raises ValueError if malformed."""
    if not isinstance(value, str) or len(value) != 5 or value[2] != ":":
        raise ValueError(f"Invalid time '{value}', expected HH:MM")
    try:
        return datetime.strptime(value, "%H:%M").time()
    except ValueError:
        raise ValueError(f"Invalid time '{value}', expected HH:MM") from None


def format_date(value: date) -> str:
    return value.strftime("%Y-%m-%d")


def minutes_since_midnight(value: str) -> int:
    parsed = parse_time(value)
    return parsed.hour * 60 + parsed.minute


def resolve_duration(duration: Optional[int], default: int = DEFAULT_DURATION_MINUTES) -> int:
    """Apply the default duration and reject non-positive values."""
    if duration is None:
        return default
    if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
        raise ValueError(f"Invalid duration '{duration}', expected a positive number of minutes")
    return duration


@dataclass(frozen=True)
class Interval:
    """``[start, start + duration)`` on a single calendar day."""

    day: date
    start_time: time
    duration: int = DEFAULT_DURATION_MINUTES

    def __post_init__(self):
        resolve_duration(self.duration)

    @classmethod
    def from_strings(cls, date_str: str, time_str: str, duration: Optional[int] = None) -> "Interval":
        return cls(parse_date(date_str), parse_time(time_str), resolve_duration(duration))

    @property
    def start(self) -> datetime:
        return datetime.combine(self.day, self.start_time)

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.duration)

    def overlaps(self, other: "Interval") -> bool:
        # Multi-day appointments are not modelled
        if self.day != other.day:
            return False
        return self.start < other.end and other.start < self.end
