from __future__ import annotations

import datetime as dt

from meetslot.domain import Slot, SlotConfig


def generate_slots(
    date: dt.date,
    working_start: int,
    working_end: int,
    break_start: int | None,
    break_end: int | None,
    duration: int,
) -> list[Slot]:
    """Candidate slots for one day, packed back to back from ``working_start``.

    A slot that would cut into the break is not emitted; the cursor jumps to
    the end of the break instead. Slots touching the break edge are fine.
    """
    if duration <= 0:
        raise ValueError("duration must be > 0")

    slots: list[Slot] = []
    cursor = working_start

    while cursor + duration <= working_end:
        slot_end = cursor + duration

        hits_break = (
            break_start is not None
            and break_end is not None
            and cursor < break_end
            and slot_end > break_start
        )

        if hits_break:
            cursor = break_end
            continue

        slots.append(Slot(date=date, start_time=cursor, end_time=slot_end))
        cursor = slot_end

    return slots


def generate_day_slots(date: dt.date, config: SlotConfig) -> list[Slot]:
    return generate_slots(
        date,
        config.working_start,
        config.working_end,
        config.break_start,
        config.break_end,
        config.slot_duration_minutes,
    )
