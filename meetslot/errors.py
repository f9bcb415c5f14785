from __future__ import annotations

from typing import Iterable


class MalformedTimeInput(ValueError):
    """A wall-clock or date string does not match the expected format.

    This is a caller bug: inputs must be validated before they reach slot
    generation.
    """


class MissingCredential(RuntimeError):
    """A party's calendar access token is absent or cannot be refreshed."""


class CalendarFetchError(RuntimeError):
    """The calendar API answered with an error or could not be reached."""


class PartyUnavailable(RuntimeError):
    """Availability for one party could not be computed.

    Raised at the I/O boundary in place of the underlying credential or fetch
    error, so that callers only have to handle one kind of party failure.
    """

    def __init__(self, party: str, reason: str = "") -> None:
        self.party = party
        self.reason = reason
        super().__init__(f"{party}: {reason}" if reason else party)


class AvailabilityUnavailable(RuntimeError):
    """The combined availability cannot be trusted because a party failed.

    Never an empty result: an empty slot list means everybody was checked and
    nothing is free.
    """

    def __init__(self, parties: Iterable[str] = (), message: str | None = None) -> None:
        self.parties = tuple(parties)
        if message is None:
            message = "Availability unavailable for: " + (", ".join(self.parties) or "-")
        super().__init__(message)


class NoAssignableMember(RuntimeError):
    """Round robin went through the whole team and nobody is free."""


class CursorConflict(RuntimeError):
    """The round-robin cursor changed between read and write."""
