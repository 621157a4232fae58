"""
Weekly full-backup trigger specification.

A ScheduleSpec names a weekday and a wall-clock time of day. The next fire
time is the next occurrence of that weekday and time strictly after now:
today if the weekday matches and the time is still ahead, otherwise a later
day (up to seven days ahead).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta

from ..upload.keys import WEEKDAY_NAMES

_WEEKDAYS = {name.lower(): index for index, name in enumerate(WEEKDAY_NAMES)}
_WEEKDAYS.update({name[:3].lower(): index for index, name in enumerate(WEEKDAY_NAMES)})


class ScheduleError(ValueError):
    """Invalid weekday or time of day."""

    pass


def parse_weekday(value: str) -> int:
    """Parse a weekday name into Python's weekday number (Monday is 0).

    Accepts full names and three-letter abbreviations in any case.

    Raises:
        ScheduleError: If the name is not a weekday
    """
    try:
        return _WEEKDAYS[value.strip().lower()]
    except KeyError:
        raise ScheduleError(f"invalid weekday: {value}") from None


def parse_time_of_day(value: str) -> time:
    """Parse an "HH:MM" string.

    Raises:
        ScheduleError: If the value is not a valid 24-hour time
    """
    try:
        parsed = datetime.strptime(value.strip(), "%H:%M")
    except ValueError:
        raise ScheduleError(f"invalid hour: {value} (expected HH:MM)") from None
    return parsed.time()


@dataclass(frozen=True)
class ScheduleSpec:
    """Weekday and time of day of the weekly full backup.

    Attributes:
        weekday: 0 (Monday) through 6 (Sunday)
        time_of_day: Wall-clock time, minute precision
    """

    weekday: int
    time_of_day: time

    def __post_init__(self) -> None:
        if not 0 <= self.weekday <= 6:
            raise ScheduleError(f"weekday must be between 0 and 6, got {self.weekday}")

    @classmethod
    def parse(cls, weekday: str, time_of_day: str) -> ScheduleSpec:
        """Build a spec from CLI strings such as ("Mon", "00:00")."""
        return cls(parse_weekday(weekday), parse_time_of_day(time_of_day))

    @property
    def weekday_name(self) -> str:
        return WEEKDAY_NAMES[self.weekday]

    def __str__(self) -> str:
        return f"{self.weekday_name} {self.time_of_day.strftime('%H:%M')}"


def next_fire_time(spec: ScheduleSpec, now: datetime) -> datetime:
    """Next occurrence of the spec strictly after `now`.

    The result carries `now`'s tzinfo.
    """
    candidate = now.replace(
        hour=spec.time_of_day.hour,
        minute=spec.time_of_day.minute,
        second=0,
        microsecond=0,
    )
    days_ahead = (spec.weekday - now.weekday()) % 7
    if days_ahead == 0 and candidate <= now:
        days_ahead = 7
    return candidate + timedelta(days=days_ahead)
