from __future__ import annotations

import datetime as dt
import logging
from typing import Mapping, Sequence

from tenacity import RetryCallState, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from meetslot.availability import is_interval_free
from meetslot.cursor_store import CursorStore
from meetslot.domain import BusyInterval, RoundRobinCursor, Slot, TeamMember
from meetslot.errors import CursorConflict
from meetslot.timeutil import DEFAULT_OFFSET

logger = logging.getLogger(__name__)


def start_index(members: Sequence[TeamMember], cursor: RoundRobinCursor | None) -> int:
    if not members or cursor is None or cursor.last_assigned_member_id is None:
        return 0
    for i, member in enumerate(members):
        if member.id == cursor.last_assigned_member_id:
            return (i + 1) % len(members)
    # Last assignee left the team.
    return 0


def select_next_available_member(
    members: Sequence[TeamMember],
    cursor: RoundRobinCursor | None,
    requested: Slot,
    member_busy: Mapping[str, Sequence[BusyInterval] | None],
    offset: dt.tzinfo = DEFAULT_OFFSET,
) -> TeamMember | None:
    """First member after the cursor who is free for ``requested``.

    ``members`` must already be in join order. A member without busy data
    (calendar not readable) is treated as busy.
    """
    n = len(members)
    first = start_index(members, cursor)

    for step in range(n):
        member = members[(first + step) % n]
        busy = member_busy.get(member.id)
        if busy is None:
            logger.info("Member %s skipped: calendar unavailable", member.id)
            continue
        if is_interval_free(busy, requested, offset):
            return member
        logger.debug("Member %s busy for %s", member.id, requested.to_dict())

    return None


def _log_before_sleep(retry_state: RetryCallState) -> None:
    logger.info("Round-robin cursor changed concurrently, retrying (attempt %s)", retry_state.attempt_number + 1)


def assign_round_robin(
    schedule_id: str,
    members: Sequence[TeamMember],
    requested: Slot,
    member_busy: Mapping[str, Sequence[BusyInterval] | None],
    store: CursorStore,
    *,
    offset: dt.tzinfo = DEFAULT_OFFSET,
    max_attempts: int = 5,
) -> TeamMember | None:
    """Read cursor, pick the next free member and move the cursor, atomically.

    The cursor write is a compare-and-set against the value that was read; if
    another booking moved it in between, the whole step is redone with the new
    cursor. Returns ``None`` when nobody is free; the cursor is left alone then.
    """

    def _attempt() -> TeamMember | None:
        cursor = store.get(schedule_id)
        member = select_next_available_member(members, cursor, requested, member_busy, offset)
        if member is None:
            return None

        expected = cursor.last_assigned_member_id if cursor is not None else None
        if not store.compare_and_set(schedule_id, expected, member.id):
            raise CursorConflict(f"Cursor of schedule {schedule_id} moved from {expected!r}")

        logger.info("Schedule %s assigned to member %s", schedule_id, member.id)
        return member

    decorated = retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=0.01, max=0.2),
        retry=retry_if_exception_type(CursorConflict),
        before_sleep=_log_before_sleep,
        reraise=True,
    )(_attempt)

    return decorated()
