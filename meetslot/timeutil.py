from __future__ import annotations

import datetime as dt
import re
from typing import Iterator

from meetslot.errors import MalformedTimeInput

MINUTES_PER_DAY = 24 * 60

# Wall-clock times of a schedule are always read in one fixed offset (Tokyo),
# never in the server's local zone.
DEFAULT_OFFSET = dt.timezone(dt.timedelta(hours=9))

_TIME_RE = re.compile(r"^([0-1][0-9]|2[0-3]):[0-5][0-9]$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_OFFSET_RE = re.compile(r"^([+-])([0-1][0-9]|2[0-3]):([0-5][0-9])$")


def to_minutes(value: str) -> int:
    if not isinstance(value, str) or not _TIME_RE.fullmatch(value):
        raise MalformedTimeInput(f"Invalid time format (HH:MM): {value!r}")
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def to_time_string(minutes: int) -> str:
    if not 0 <= minutes < MINUTES_PER_DAY:
        raise ValueError(f"Minute of day out of range: {minutes}")
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def snap_to_half_hour(minutes: int) -> int:
    # Round half up, same as Math.round(minutes / 30) * 30.
    return ((minutes + 15) // 30) * 30


def parse_offset(value: str) -> dt.timezone:
    m = _OFFSET_RE.fullmatch(value.strip())
    if not m:
        raise MalformedTimeInput(f"Invalid UTC offset (+HH:MM): {value!r}")
    sign = -1 if m.group(1) == "-" else 1
    delta = dt.timedelta(hours=int(m.group(2)), minutes=int(m.group(3)))
    return dt.timezone(sign * delta)


def parse_date(value: str) -> dt.date:
    if not isinstance(value, str) or not _DATE_RE.fullmatch(value):
        raise MalformedTimeInput(f"Invalid date format (YYYY-MM-DD): {value!r}")
    try:
        return dt.date.fromisoformat(value)
    except ValueError as e:
        raise MalformedTimeInput(f"Invalid date: {value!r}") from e


def at_offset(day: dt.date, minutes: int, offset: dt.tzinfo) -> dt.datetime:
    """Absolute instant of a wall-clock minute on ``day`` read in ``offset``.

    ``minutes`` may be 1440 (end of day), which lands on the next midnight.
    """
    if not 0 <= minutes <= MINUTES_PER_DAY:
        raise ValueError(f"Minute of day out of range: {minutes}")
    midnight = dt.datetime(day.year, day.month, day.day, tzinfo=offset)
    return midnight + dt.timedelta(minutes=minutes)


def day_window(day: dt.date, offset: dt.tzinfo) -> tuple[dt.datetime, dt.datetime]:
    # [00:00:00, 23:59:59] of the day in the fixed offset
    start = at_offset(day, 0, offset)
    return start, start + dt.timedelta(hours=23, minutes=59, seconds=59)


def iter_dates(start: dt.date, end: dt.date) -> Iterator[dt.date]:
    day = start
    while day <= end:
        yield day
        day += dt.timedelta(days=1)


def sunday_based_weekday(day: dt.date) -> int:
    """0=Sunday ... 6=Saturday."""
    return (day.weekday() + 1) % 7
