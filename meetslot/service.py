from __future__ import annotations

import datetime as dt
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Protocol, Sequence

import httpx

from meetslot.availability import calculate_available_slots, filter_weekdays, subtract_bookings
from meetslot.config import Settings, load_settings
from meetslot.cursor_store import CursorStore, JsonFileCursorStore
from meetslot.domain import Booking, BusyInterval, Schedule, Slot, TeamMember, order_members
from meetslot.errors import CalendarFetchError, MissingCredential, NoAssignableMember, PartyUnavailable
from meetslot.google_calendar import GoogleCalendarClient, TokenStore, resolve_access_token
from meetslot.intersection import combine_party_results
from meetslot.round_robin import assign_round_robin
from meetslot.timeutil import at_offset, day_window

logger = logging.getLogger(__name__)


class BookingSource(Protocol):
    def confirmed_bookings(self, schedule_id: str) -> list[Booking]: ...


class AvailabilityService:
    """Entry point for the API layer.

    Owns every I/O call: calendar tokens, calendar events, bookings and the
    round-robin cursor. The slot arithmetic it delegates to is pure.
    """

    def __init__(
        self,
        settings: Settings,
        calendar: GoogleCalendarClient,
        tokens: TokenStore,
        bookings: BookingSource,
        cursors: CursorStore,
    ) -> None:
        self.settings = settings
        self.calendar = calendar
        self.tokens = tokens
        self.bookings = bookings
        self.cursors = cursors

    @property
    def offset(self) -> dt.tzinfo:
        return self.settings.timezone_offset

    def party_busy_intervals(
        self,
        account_ref: str,
        time_min: dt.datetime,
        time_max: dt.datetime,
    ) -> list[BusyInterval]:
        try:
            access_token = resolve_access_token(self.calendar, self.tokens, account_ref)
            return self.calendar.fetch_busy_intervals(access_token, time_min, time_max)
        except (MissingCredential, CalendarFetchError, httpx.HTTPError) as e:
            # Account refs are user ids; keep them out of warnings.
            logger.warning("Calendar unavailable for a party (%s: %s)", type(e).__name__, e)
            raise PartyUnavailable(account_ref, f"{type(e).__name__}: {e}") from e

    def fetch_all(
        self,
        account_refs: Sequence[str],
        time_min: dt.datetime,
        time_max: dt.datetime,
    ) -> dict[str, list[BusyInterval] | PartyUnavailable]:
        """Fetch every party in parallel and wait for all of them."""
        results: dict[str, list[BusyInterval] | PartyUnavailable] = {}
        if not account_refs:
            return results

        workers = min(self.settings.fetch_max_workers, len(account_refs))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {ref: pool.submit(self.party_busy_intervals, ref, time_min, time_max) for ref in account_refs}
            for ref, future in futures.items():
                try:
                    results[ref] = future.result()
                except PartyUnavailable as e:
                    results[ref] = e

        return results

    def _range_window(self, date_start: dt.date, date_end: dt.date) -> tuple[dt.datetime, dt.datetime]:
        return at_offset(date_start, 0, self.offset), day_window(date_end, self.offset)[1]

    def available_slots(
        self,
        schedule: Schedule,
        guest_account: str | None = None,
        date_start: dt.date | None = None,
        date_end: dt.date | None = None,
    ) -> list[Slot]:
        """Bookable slots of a schedule, optionally restricted to a guest's free time.

        Raises AvailabilityUnavailable if any host, team member or guest
        calendar could not be read. An empty list is a real answer.
        """
        started = time.monotonic()
        date_start = date_start or schedule.date_range_start
        date_end = date_end or schedule.date_range_end
        config = schedule.slot_config(
            self.offset,
            default_start=self.settings.default_working_start,
            default_end=self.settings.default_working_end,
        )

        if schedule.is_team:
            parties = [m.id for m in order_members(schedule.team)]
        else:
            parties = [schedule.host_account]
        if guest_account and guest_account not in parties:
            parties.append(guest_account)

        time_min, time_max = self._range_window(date_start, date_end)

        with ThreadPoolExecutor(max_workers=1) as pool:
            # Bookings are read while calendars are fetched.
            bookings_future = pool.submit(self.bookings.confirmed_bookings, schedule.id)
            busy_by_party = self.fetch_all(parties, time_min, time_max)
            bookings = bookings_future.result()

        per_party: dict[str, list[Slot] | PartyUnavailable] = {}
        for party, busy in busy_by_party.items():
            if isinstance(busy, PartyUnavailable):
                per_party[party] = busy
            else:
                per_party[party] = calculate_available_slots(busy, date_start, date_end, config)
        common = combine_party_results(per_party)
        slots = filter_weekdays(subtract_bookings(common, bookings), config.weekdays)

        logger.info(
            "Schedule %s: parties=%d common=%d bookings=%d final=%d (%.0f ms)",
            schedule.id,
            len(parties),
            len(common),
            len(bookings),
            len(slots),
            (time.monotonic() - started) * 1000,
        )
        return slots

    def assign_team_member(self, schedule: Schedule, requested: Slot) -> TeamMember:
        """Pick the team member for a booking by round robin and move the cursor."""
        if not schedule.is_team:
            raise ValueError(f"Schedule {schedule.id} is not a team schedule")

        members = order_members(schedule.team)
        time_min, time_max = requested.interval(self.offset)
        fetched = self.fetch_all([m.id for m in members], time_min, time_max)
        member_busy = {ref: None if isinstance(busy, PartyUnavailable) else busy for ref, busy in fetched.items()}

        member = assign_round_robin(
            schedule.id,
            members,
            requested,
            member_busy,
            self.cursors,
            offset=self.offset,
            max_attempts=self.settings.round_robin_max_attempts,
        )
        if member is None:
            logger.info("Schedule %s: no team member free for %s", schedule.id, requested.to_dict())
            raise NoAssignableMember(f"No team member of schedule {schedule.id} is free for the requested time")
        return member


def build_service(
    tokens: TokenStore,
    bookings: BookingSource,
    *,
    dotenv_path: str | None = None,
    http: httpx.Client | None = None,
) -> AvailabilityService:
    """Wire the service from environment settings.

    Needs the Google OAuth client; round-robin cursors go to ``CURSOR_STATE_FILE``.
    """
    settings = load_settings(dotenv_path, require_google=True)
    return AvailabilityService(
        settings,
        GoogleCalendarClient.from_settings(settings, http),
        tokens,
        bookings,
        JsonFileCursorStore(settings.cursor_state_file),
    )
