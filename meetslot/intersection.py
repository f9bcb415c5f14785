from __future__ import annotations

import datetime as dt
import logging
from typing import Iterable, Mapping, Sequence

from meetslot.availability import calculate_available_slots, filter_weekdays, subtract_bookings
from meetslot.domain import Booking, BusyInterval, Slot, SlotConfig
from meetslot.errors import AvailabilityUnavailable, PartyUnavailable

logger = logging.getLogger(__name__)


def intersect_slots(slot_lists: Sequence[Iterable[Slot]]) -> list[Slot]:
    """Slots present in every list, matched on (date, start, end).

    All parties must share one slot duration, so exact matching is enough. The
    result is sorted, which makes the operation order independent.
    """
    if not slot_lists:
        raise ValueError("intersect_slots needs at least one slot list")

    common = {s.key: s for s in slot_lists[0]}
    for step, other in enumerate(slot_lists[1:], start=1):
        before = len(common)
        other_keys = {s.key for s in other}
        common = {k: s for k, s in common.items() if k in other_keys}
        logger.debug("Intersection step %d: %d -> %d slots", step, before, len(common))

    return sorted(common.values())


def combine_party_results(results: Mapping[str, Sequence[Slot] | PartyUnavailable]) -> list[Slot]:
    """Intersect per-party slot lists, failing closed if any party failed."""
    if not results:
        raise AvailabilityUnavailable(message="No parties to combine")

    failed = [party for party, r in results.items() if isinstance(r, PartyUnavailable)]
    if failed:
        logger.warning("Availability incomplete: %d of %d parties failed", len(failed), len(results))
        raise AvailabilityUnavailable(failed)

    return intersect_slots([r for r in results.values() if not isinstance(r, PartyUnavailable)])


def compute_team_available_slots(
    config: SlotConfig,
    date_range: tuple[dt.date, dt.date],
    per_member_busy: Mapping[str, Sequence[BusyInterval] | None],
    confirmed_bookings: Iterable[Booking] = (),
) -> list[Slot]:
    """Slots where every member is free.

    A ``None`` entry means the member's calendar could not be read, which makes
    the whole team result unavailable.
    """
    date_start, date_end = date_range
    results: dict[str, Sequence[Slot] | PartyUnavailable] = {}
    for member_id, busy in per_member_busy.items():
        if busy is None:
            results[member_id] = PartyUnavailable(member_id, "busy intervals missing")
        else:
            results[member_id] = calculate_available_slots(busy, date_start, date_end, config)

    common = combine_party_results(results)
    common = subtract_bookings(common, confirmed_bookings)
    return filter_weekdays(common, config.weekdays)
