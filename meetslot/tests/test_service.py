from __future__ import annotations

import datetime as dt

import httpx
import pytest

from meetslot.config import Settings
from meetslot.cursor_store import InMemoryCursorStore, load_cursors
from meetslot.domain import Booking, BusyInterval, Schedule, Slot, TeamMember
from meetslot.errors import AvailabilityUnavailable, CalendarFetchError, NoAssignableMember
from meetslot.google_calendar import CalendarToken, GoogleCalendarClient, InMemoryTokenStore
from meetslot.service import AvailabilityService, build_service
from meetslot.timeutil import DEFAULT_OFFSET, at_offset, to_minutes, to_time_string

FRIDAY = dt.date(2025, 1, 10)
SATURDAY = dt.date(2025, 1, 11)
FAR_FUTURE = dt.datetime(2100, 1, 1, tzinfo=dt.timezone.utc)


def _busy(start: str, end: str, day: dt.date = FRIDAY) -> BusyInterval:
    return BusyInterval(
        start=at_offset(day, to_minutes(start), DEFAULT_OFFSET),
        end=at_offset(day, to_minutes(end), DEFAULT_OFFSET),
    )


class _FakeCalendar:
    """Calendar client stand-in: busy intervals per access token, no network."""

    def __init__(self, busy_by_token: dict[str, list[BusyInterval]], failing: set[str] | None = None):
        self.busy_by_token = busy_by_token
        self.failing = failing or set()
        self.calls: list[tuple[str, dt.datetime, dt.datetime]] = []

    def fetch_busy_intervals(self, access_token, time_min, time_max, calendar_id="primary"):
        self.calls.append((access_token, time_min, time_max))
        if access_token in self.failing:
            raise CalendarFetchError("Calendar API error 500 for primary")
        if access_token == "tok-timeout":
            raise httpx.ReadTimeout("timed out")
        return [
            b for b in self.busy_by_token.get(access_token, [])
            if b.end > time_min and b.start < time_max
        ]

    def refresh_access_token(self, refresh_token):
        raise AssertionError("tokens in these tests never expire")


class _Bookings:
    def __init__(self, bookings: list[Booking] | None = None):
        self.bookings = bookings or []

    def confirmed_bookings(self, schedule_id: str) -> list[Booking]:
        return [b for b in self.bookings if b.is_confirmed]


def _service(
    busy_by_account: dict[str, list[BusyInterval]],
    *,
    accounts_without_token: tuple[str, ...] = (),
    failing_accounts: tuple[str, ...] = (),
    bookings: list[Booking] | None = None,
) -> tuple[AvailabilityService, _FakeCalendar, InMemoryCursorStore]:
    accounts = set(busy_by_account) | set(failing_accounts)
    tokens = InMemoryTokenStore(
        {
            ref: CalendarToken(f"tok-{ref}", "rt", FAR_FUTURE)
            for ref in accounts
            if ref not in accounts_without_token
        }
    )
    calendar = _FakeCalendar(
        {f"tok-{ref}": busy for ref, busy in busy_by_account.items()},
        failing={f"tok-{ref}" for ref in failing_accounts},
    )
    cursors = InMemoryCursorStore()
    service = AvailabilityService(Settings(), calendar, tokens, _Bookings(bookings), cursors)  # type: ignore[arg-type]
    return service, calendar, cursors


def _member(member_id: str, month: int) -> TeamMember:
    return TeamMember(id=member_id, joined_at=dt.datetime(2024, month, 1, tzinfo=dt.timezone.utc))


TEAM = (_member("carol", 3), _member("alice", 1), _member("bob", 2))


def _starts(slots: list[Slot]) -> list[str]:
    return [f"{s.date.day}@{to_time_string(s.start_time)}" for s in slots]


def test_host_slots_skip_busy_time_bookings_and_weekend() -> None:
    schedule = Schedule(
        id="s1",
        date_range_start=FRIDAY,
        date_range_end=SATURDAY,
        slot_duration_minutes=60,
        host_account="host",
        working_hours_start="09:00",
        working_hours_end="12:00",
    )
    service, calendar, _ = _service(
        {"host": [_busy("10:00", "11:00")]},
        bookings=[
            Booking(date=FRIDAY, start_time=to_minutes("11:00"), end_time=to_minutes("12:00")),
            Booking(date=FRIDAY, start_time=to_minutes("09:00"), end_time=to_minutes("10:00"), status="cancelled"),
        ],
    )

    slots = service.available_slots(schedule)

    assert _starts(slots) == ["10@09:00"]
    _, time_min, time_max = calendar.calls[0]
    assert time_min.isoformat() == "2025-01-10T00:00:00+09:00"
    assert time_max.isoformat() == "2025-01-11T23:59:59+09:00"


def test_team_slots_need_every_member_free() -> None:
    schedule = Schedule(
        id="s1",
        date_range_start=FRIDAY,
        date_range_end=FRIDAY,
        slot_duration_minutes=60,
        team=TEAM,
    )
    service, calendar, _ = _service(
        {
            "alice": [_busy("09:00", "12:00")],
            "bob": [_busy("14:00", "15:00")],
            "carol": [_busy("16:30", "17:00")],
        }
    )

    slots = service.available_slots(schedule)

    assert _starts(slots) == ["10@12:00", "10@13:00", "10@15:00", "10@17:00"]
    assert len(calendar.calls) == 3


def test_guest_calendar_is_intersected_with_host() -> None:
    schedule = Schedule(
        id="s1",
        date_range_start=FRIDAY,
        date_range_end=FRIDAY,
        slot_duration_minutes=60,
        host_account="host",
        working_hours_end="12:00",
    )
    service, _, _ = _service({"host": [], "guest": [_busy("09:30", "10:30")]})

    assert _starts(service.available_slots(schedule, guest_account="guest")) == ["10@11:00"]
    assert _starts(service.available_slots(schedule)) == ["10@09:00", "10@10:00", "10@11:00"]


def test_date_range_override() -> None:
    schedule = Schedule(
        id="s1",
        date_range_start=dt.date(2025, 1, 6),
        date_range_end=dt.date(2025, 1, 31),
        slot_duration_minutes=180,
        host_account="host",
    )
    service, _, _ = _service({"host": []})

    slots = service.available_slots(schedule, date_start=FRIDAY, date_end=FRIDAY)

    assert _starts(slots) == ["10@09:00", "10@12:00", "10@15:00"]


def test_interview_mode_uses_interview_hours_and_break() -> None:
    schedule = Schedule(
        id="s1",
        date_range_start=FRIDAY,
        date_range_end=FRIDAY,
        slot_duration_minutes=60,
        host_account="host",
        working_hours_start="07:00",
        is_interview_mode=True,
        interview_time_start="10:00",
        interview_time_end="15:00",
        interview_break_start="12:00",
        interview_break_end="13:00",
    )
    service, _, _ = _service({"host": []})

    assert _starts(service.available_slots(schedule)) == ["10@10:00", "10@11:00", "10@13:00", "10@14:00"]


@pytest.mark.parametrize(
    "kwargs, failed",
    [
        ({"accounts_without_token": ("bob",)}, ("bob",)),
        ({"failing_accounts": ("carol",)}, ("carol",)),
        ({"accounts_without_token": ("alice", "carol")}, ("alice", "carol")),
    ],
)
def test_any_failed_member_makes_team_availability_unavailable(kwargs, failed) -> None:
    schedule = Schedule(id="s1", date_range_start=FRIDAY, date_range_end=FRIDAY, team=TEAM)
    service, _, _ = _service({"alice": [], "bob": [], "carol": []}, **kwargs)

    with pytest.raises(AvailabilityUnavailable) as exc_info:
        service.available_slots(schedule)

    assert set(exc_info.value.parties) == set(failed)


def test_failed_guest_is_not_treated_as_free() -> None:
    schedule = Schedule(id="s1", date_range_start=FRIDAY, date_range_end=FRIDAY, host_account="host")
    service, _, _ = _service({"host": []}, accounts_without_token=("guest",))

    with pytest.raises(AvailabilityUnavailable) as exc_info:
        service.available_slots(schedule, guest_account="guest")

    assert exc_info.value.parties == ("guest",)


def test_http_errors_become_party_unavailable() -> None:
    schedule = Schedule(id="s1", date_range_start=FRIDAY, date_range_end=FRIDAY, host_account="timeout")
    service, _, _ = _service({"timeout": []})

    with pytest.raises(AvailabilityUnavailable):
        service.available_slots(schedule)


def test_fully_booked_host_is_an_empty_result() -> None:
    schedule = Schedule(id="s1", date_range_start=FRIDAY, date_range_end=FRIDAY, host_account="host")
    service, _, _ = _service({"host": [_busy("00:00", "23:59")]})

    assert service.available_slots(schedule) == []


def test_round_robin_assignment_rotates_and_skips_busy_members() -> None:
    schedule = Schedule(id="s1", date_range_start=FRIDAY, date_range_end=FRIDAY, team=TEAM)
    service, calendar, cursors = _service({"alice": [], "bob": [_busy("14:00", "15:00")], "carol": []})
    requested = Slot.from_strings("2025-01-10", "14:00", "15:00")

    first = service.assign_team_member(schedule, requested)
    second = service.assign_team_member(schedule, requested)
    third = service.assign_team_member(schedule, requested)

    assert [first.id, second.id, third.id] == ["alice", "carol", "alice"]
    assert cursors.get("s1").last_assigned_member_id == "alice"  # type: ignore[union-attr]
    # Only the requested window is fetched.
    _, time_min, time_max = calendar.calls[0]
    assert (time_min, time_max) == requested.interval(DEFAULT_OFFSET)


def test_member_without_token_is_skipped_by_round_robin() -> None:
    schedule = Schedule(id="s1", date_range_start=FRIDAY, date_range_end=FRIDAY, team=TEAM)
    service, _, _ = _service({"alice": [], "bob": [], "carol": []}, accounts_without_token=("alice",))

    member = service.assign_team_member(schedule, Slot.from_strings("2025-01-10", "14:00", "15:00"))

    assert member.id == "bob"


def test_no_free_member_raises() -> None:
    schedule = Schedule(id="s1", date_range_start=FRIDAY, date_range_end=FRIDAY, team=TEAM)
    busy = [_busy("13:00", "16:00")]
    service, _, cursors = _service({"alice": busy, "bob": busy, "carol": busy})

    with pytest.raises(NoAssignableMember):
        service.assign_team_member(schedule, Slot.from_strings("2025-01-10", "14:00", "15:00"))

    assert cursors.get("s1") is None


def test_round_robin_needs_a_team_schedule() -> None:
    schedule = Schedule(id="s1", date_range_start=FRIDAY, date_range_end=FRIDAY, host_account="host")
    service, _, _ = _service({"host": []})

    with pytest.raises(ValueError, match=r"not a team schedule"):
        service.assign_team_member(schedule, Slot.from_strings("2025-01-10", "14:00", "15:00"))


def _html_for_bad_token(request: httpx.Request) -> httpx.Response:
    if request.headers["Authorization"] == "Bearer tok-bad":
        return httpx.Response(200, text="<html>proxy error</html>")
    return httpx.Response(200, json={"items": []})


def _http_service(tokens: dict[str, str]) -> tuple[AvailabilityService, InMemoryCursorStore]:
    calendar = GoogleCalendarClient(httpx.Client(transport=httpx.MockTransport(_html_for_bad_token)), retry_attempts=1)
    store = InMemoryTokenStore({ref: CalendarToken(tok, "rt", FAR_FUTURE) for ref, tok in tokens.items()})
    cursors = InMemoryCursorStore()
    return AvailabilityService(Settings(), calendar, store, _Bookings(), cursors), cursors


def test_non_json_calendar_response_makes_guest_unavailable() -> None:
    schedule = Schedule(id="s1", date_range_start=FRIDAY, date_range_end=FRIDAY, host_account="host")
    service, _ = _http_service({"host": "tok-host", "bad": "tok-bad"})

    with pytest.raises(AvailabilityUnavailable) as exc_info:
        service.available_slots(schedule, guest_account="bad")

    assert exc_info.value.parties == ("bad",)


def test_non_json_calendar_response_skips_member_in_round_robin() -> None:
    team = (_member("bad", 1), _member("good", 2))
    schedule = Schedule(id="s1", date_range_start=FRIDAY, date_range_end=FRIDAY, team=team)
    service, cursors = _http_service({"bad": "tok-bad", "good": "tok-good"})

    member = service.assign_team_member(schedule, Slot.from_strings("2025-01-10", "14:00", "15:00"))

    assert member.id == "good"
    assert cursors.get("s1").last_assigned_member_id == "good"  # type: ignore[union-attr]


def test_build_service_reads_oauth_client_and_cursor_file(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    state_file = tmp_path / "rr.json"
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "cid")
    monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "secret")
    monkeypatch.setenv("CURSOR_STATE_FILE", str(state_file))
    http = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"items": []})))
    tokens = InMemoryTokenStore({m.id: CalendarToken(f"tok-{m.id}", "rt", FAR_FUTURE) for m in TEAM})

    service = build_service(tokens, _Bookings(), dotenv_path=str(tmp_path / "missing.env"), http=http)
    schedule = Schedule(id="s1", date_range_start=FRIDAY, date_range_end=FRIDAY, team=TEAM)
    member = service.assign_team_member(schedule, Slot.from_strings("2025-01-10", "14:00", "15:00"))

    assert service.calendar.client_id == "cid"
    assert member.id == "alice"
    assert load_cursors(str(state_file)) == {"s1": "alice"}


def test_build_service_needs_oauth_client(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.delenv("GOOGLE_CLIENT_ID", raising=False)
    monkeypatch.delenv("GOOGLE_CLIENT_SECRET", raising=False)

    with pytest.raises(RuntimeError, match=r"GOOGLE_CLIENT_ID"):
        build_service(InMemoryTokenStore(), _Bookings(), dotenv_path=str(tmp_path / "missing.env"))
