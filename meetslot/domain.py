from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from meetslot.errors import MalformedTimeInput
from meetslot.timeutil import DEFAULT_OFFSET, at_offset, parse_date, to_minutes, to_time_string

DEFAULT_WORKING_START = "09:00"
DEFAULT_WORKING_END = "18:00"
# 0=Sunday ... 6=Saturday; Monday to Friday unless the schedule says otherwise.
DEFAULT_WEEKDAYS = frozenset({1, 2, 3, 4, 5})


@dataclass(frozen=True)
class BusyInterval:
    """One occupied period on a calendar, in absolute time."""

    start: dt.datetime
    end: dt.datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("BusyInterval needs timezone-aware datetimes")

    @classmethod
    def from_iso(cls, start: str, end: str) -> BusyInterval:
        return cls(
            start=dt.datetime.fromisoformat(start.replace("Z", "+00:00")),
            end=dt.datetime.fromisoformat(end.replace("Z", "+00:00")),
        )


@dataclass(frozen=True)
class SlotConfig:
    working_start: int
    working_end: int
    break_start: int | None = None
    break_end: int | None = None
    slot_duration_minutes: int = 30
    timezone_offset: dt.tzinfo = DEFAULT_OFFSET
    # None disables weekday filtering
    weekdays: frozenset[int] | None = None

    def __post_init__(self) -> None:
        if not self.working_start < self.working_end:
            raise ValueError("working_start must be before working_end")
        if (self.break_start is None) != (self.break_end is None):
            raise ValueError("break_start and break_end must be given together")
        if self.break_start is not None and not self.break_start < self.break_end:
            raise ValueError("break_start must be before break_end")
        if self.slot_duration_minutes <= 0:
            raise ValueError("slot_duration_minutes must be > 0")
        if self.weekdays is not None:
            bad = [d for d in self.weekdays if d not in range(7)]
            if bad:
                raise ValueError(f"weekdays must be in 0..6 (0=Sunday), got {bad}")

    @property
    def has_break(self) -> bool:
        return self.break_start is not None

    @classmethod
    def from_strings(
        cls,
        working_start: str,
        working_end: str,
        break_start: str | None = None,
        break_end: str | None = None,
        *,
        slot_duration_minutes: int = 30,
        timezone_offset: dt.tzinfo = DEFAULT_OFFSET,
        weekdays: Iterable[int] | None = None,
    ) -> SlotConfig:
        return cls(
            working_start=to_minutes(working_start),
            working_end=to_minutes(working_end),
            break_start=to_minutes(break_start) if break_start is not None else None,
            break_end=to_minutes(break_end) if break_end is not None else None,
            slot_duration_minutes=slot_duration_minutes,
            timezone_offset=timezone_offset,
            weekdays=frozenset(weekdays) if weekdays is not None else None,
        )


@dataclass(frozen=True, order=True)
class Slot:
    """A candidate meeting interval on one calendar date.

    Times are minutes of the day. Two slots are the same slot only if date,
    start and end all match.
    """

    date: dt.date
    start_time: int
    end_time: int

    @property
    def key(self) -> tuple[dt.date, int, int]:
        return (self.date, self.start_time, self.end_time)

    def interval(self, offset: dt.tzinfo = DEFAULT_OFFSET) -> tuple[dt.datetime, dt.datetime]:
        return at_offset(self.date, self.start_time, offset), at_offset(self.date, self.end_time, offset)

    def to_dict(self) -> dict[str, str]:
        return {
            "date": self.date.isoformat(),
            "startTime": to_time_string(self.start_time),
            "endTime": to_time_string(self.end_time),
        }

    @classmethod
    def from_strings(cls, date: str, start_time: str, end_time: str) -> Slot:
        return cls(date=parse_date(date), start_time=to_minutes(start_time), end_time=to_minutes(end_time))


@dataclass(frozen=True)
class TeamMember:
    id: str
    joined_at: dt.datetime
    email: str | None = None


def order_members(members: Iterable[TeamMember]) -> list[TeamMember]:
    """The round-robin ring: join time ascending."""
    return sorted(members, key=lambda m: m.joined_at)


@dataclass(frozen=True)
class RoundRobinCursor:
    schedule_id: str
    last_assigned_member_id: str | None = None


def _row_time(value: Any) -> int:
    # SQL time columns come back as HH:MM:SS
    if isinstance(value, dt.time):
        if value.second or value.microsecond:
            raise MalformedTimeInput(f"Booking time has seconds: {value!r}")
        return value.hour * 60 + value.minute
    raw = str(value)
    if len(raw) == 8 and raw.endswith(":00"):
        raw = raw[:5]
    return to_minutes(raw)


@dataclass(frozen=True)
class Booking:
    date: dt.date
    start_time: int
    end_time: int
    status: str = "confirmed"

    @property
    def key(self) -> tuple[dt.date, int, int]:
        return (self.date, self.start_time, self.end_time)

    @property
    def is_confirmed(self) -> bool:
        return self.status == "confirmed"

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Booking:
        raw_date = row["booking_date"]
        day = raw_date if isinstance(raw_date, dt.date) else parse_date(str(raw_date))
        return cls(
            date=day,
            start_time=_row_time(row["start_time"]),
            end_time=_row_time(row["end_time"]),
            status=str(row.get("status", "confirmed")),
        )


@dataclass(frozen=True)
class Schedule:
    """Schedule settings as stored by the surrounding application.

    Either ``host_account`` (solo schedule) or ``team`` is set. Time fields are
    ``HH:MM`` strings and fall back to 09:00-18:00 when empty.
    """

    id: str
    date_range_start: dt.date
    date_range_end: dt.date
    slot_duration_minutes: int = 30
    host_account: str | None = None
    team: tuple[TeamMember, ...] = ()
    working_hours_start: str | None = None
    working_hours_end: str | None = None
    is_interview_mode: bool = False
    interview_time_start: str | None = None
    interview_time_end: str | None = None
    interview_break_start: str | None = None
    interview_break_end: str | None = None
    available_weekdays: tuple[int, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.host_account is None and not self.team:
            raise ValueError("Schedule needs a host_account or a team")

    @property
    def is_team(self) -> bool:
        return bool(self.team)

    def slot_config(
        self,
        offset: dt.tzinfo = DEFAULT_OFFSET,
        *,
        default_start: str = DEFAULT_WORKING_START,
        default_end: str = DEFAULT_WORKING_END,
    ) -> SlotConfig:
        if self.is_interview_mode:
            start = self.interview_time_start or default_start
            end = self.interview_time_end or default_end
            # Break only counts when both ends are configured.
            if self.interview_break_start and self.interview_break_end:
                break_start, break_end = self.interview_break_start, self.interview_break_end
            else:
                break_start = break_end = None
        else:
            start = self.working_hours_start or default_start
            end = self.working_hours_end or default_end
            break_start = break_end = None

        return SlotConfig.from_strings(
            start,
            end,
            break_start,
            break_end,
            slot_duration_minutes=self.slot_duration_minutes,
            timezone_offset=offset,
            weekdays=self.available_weekdays or DEFAULT_WEEKDAYS,
        )
