from __future__ import annotations

import datetime as dt
import logging
from typing import Iterable, Sequence

from meetslot.domain import Booking, BusyInterval, Slot, SlotConfig
from meetslot.slots import generate_day_slots
from meetslot.timeutil import DEFAULT_OFFSET, day_window, iter_dates, sunday_based_weekday

logger = logging.getLogger(__name__)


def busy_overlaps_day(busy: BusyInterval, day_start: dt.datetime, day_end: dt.datetime) -> bool:
    return (
        (day_start <= busy.start < day_end)
        or (day_start < busy.end <= day_end)
        or (busy.start < day_start and busy.end > day_end)
    )


def slot_overlaps(slot_start: dt.datetime, slot_end: dt.datetime, busy: BusyInterval) -> bool:
    return (
        (busy.start <= slot_start < busy.end)
        or (busy.start < slot_end <= busy.end)
        or (slot_start <= busy.start and slot_end >= busy.end)
    )


def calculate_available_slots(
    busy_intervals: Sequence[BusyInterval],
    date_range_start: dt.date,
    date_range_end: dt.date,
    config: SlotConfig,
) -> list[Slot]:
    """Free slots for one party over an inclusive date range.

    Each day is expanded into candidate slots and every slot touching a busy
    interval of that day is dropped. Output is ordered by date, then time.
    """
    offset = config.timezone_offset
    available: list[Slot] = []

    for day in iter_dates(date_range_start, date_range_end):
        day_start, day_end = day_window(day, offset)
        day_busy = [b for b in busy_intervals if busy_overlaps_day(b, day_start, day_end)]

        candidates = generate_day_slots(day, config)
        for slot in candidates:
            slot_start, slot_end = slot.interval(offset)
            if any(slot_overlaps(slot_start, slot_end, b) for b in day_busy):
                continue
            available.append(slot)

        logger.debug(
            "%s: busy=%d candidates=%d",
            day.isoformat(),
            len(day_busy),
            len(candidates),
        )

    return available


def is_interval_free(
    busy_intervals: Iterable[BusyInterval],
    requested: Slot,
    offset: dt.tzinfo = DEFAULT_OFFSET,
) -> bool:
    start, end = requested.interval(offset)
    return not any(slot_overlaps(start, end, b) for b in busy_intervals)


def subtract_bookings(slots: Iterable[Slot], bookings: Iterable[Booking]) -> list[Slot]:
    """Drop slots that exactly match a confirmed booking. Neighbours stay."""
    booked = {b.key for b in bookings if b.is_confirmed}
    return [s for s in slots if s.key not in booked]


def filter_weekdays(slots: Iterable[Slot], weekdays: Iterable[int] | None) -> list[Slot]:
    if weekdays is None:
        return list(slots)
    allowed = set(weekdays)
    return [s for s in slots if sunday_based_weekday(s.date) in allowed]


def compute_available_slots(
    config: SlotConfig,
    date_range: tuple[dt.date, dt.date],
    busy_intervals: Sequence[BusyInterval],
    confirmed_bookings: Iterable[Booking] = (),
) -> list[Slot]:
    date_start, date_end = date_range
    slots = calculate_available_slots(busy_intervals, date_start, date_end, config)
    slots = subtract_bookings(slots, confirmed_bookings)
    return filter_weekdays(slots, config.weekdays)
