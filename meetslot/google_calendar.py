from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from tenacity import RetryCallState, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from meetslot.config import Settings
from meetslot.domain import BusyInterval
from meetslot.errors import CalendarFetchError, MissingCredential

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"

# Refreshed Google access tokens are valid for an hour.
ACCESS_TOKEN_LIFETIME = dt.timedelta(seconds=3600)


@dataclass(frozen=True)
class CalendarToken:
    access_token: str
    refresh_token: str | None
    expires_at: dt.datetime

    def is_expired(self, now: dt.datetime) -> bool:
        return self.expires_at < now


class TokenStore(Protocol):
    def load(self, account_ref: str) -> CalendarToken | None: ...

    def save(self, account_ref: str, token: CalendarToken) -> None: ...


class InMemoryTokenStore:
    def __init__(self, tokens: dict[str, CalendarToken] | None = None) -> None:
        self._tokens = dict(tokens or {})
        self._lock = threading.Lock()

    def load(self, account_ref: str) -> CalendarToken | None:
        with self._lock:
            return self._tokens.get(account_ref)

    def save(self, account_ref: str, token: CalendarToken) -> None:
        with self._lock:
            self._tokens[account_ref] = token


def parse_event(item: dict[str, Any]) -> BusyInterval | None:
    """Busy interval of one calendar event, or None if it does not block time.

    All-day events only carry ``start.date`` and never block a slot.
    """
    if item.get("status") == "cancelled":
        return None

    start = item.get("start") or {}
    end = item.get("end") or {}
    if not start.get("dateTime") or not end.get("dateTime"):
        logger.debug("Skipping all-day event on %s", start.get("date"))
        return None

    return BusyInterval.from_iso(start["dateTime"], end["dateTime"])


def _json_object(r: httpx.Response) -> dict[str, Any]:
    # Proxies and captive portals answer 200 with HTML.
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _log_transport_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome is not None else None
    logger.warning(
        "Calendar request attempt %s failed (%s), retrying",
        retry_state.attempt_number,
        type(exc).__name__ if exc is not None else "unknown",
    )


class GoogleCalendarClient:
    def __init__(
        self,
        http: httpx.Client,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
        max_pages: int = 10,
        page_size: int = 250,
        retry_attempts: int = 2,
    ) -> None:
        self.http = http
        self.client_id = client_id
        self.client_secret = client_secret
        self.max_pages = max_pages
        self.page_size = page_size
        self.retry_attempts = retry_attempts

    @classmethod
    def from_settings(cls, settings: Settings, http: httpx.Client | None = None) -> GoogleCalendarClient:
        if not settings.google_client_id or not settings.google_client_secret:
            raise RuntimeError("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET are required for calendar access")
        return cls(
            http or httpx.Client(timeout=settings.http_timeout_seconds),
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            max_pages=settings.calendar_max_pages,
            retry_attempts=settings.fetch_retry_attempts,
        )

    def _send(self, request: httpx.Request) -> httpx.Response:
        decorated = retry(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=4),
            retry=retry_if_exception_type(httpx.TransportError),
            before_sleep=_log_transport_retry,
            reraise=True,
        )(self.http.send)

        try:
            return decorated(request)
        except httpx.TransportError as e:
            raise CalendarFetchError(f"Calendar API unreachable ({type(e).__name__}: {e})") from e

    def fetch_busy_intervals(
        self,
        access_token: str,
        time_min: dt.datetime,
        time_max: dt.datetime,
        calendar_id: str = "primary",
    ) -> list[BusyInterval]:
        """Timed events of one calendar between ``time_min`` and ``time_max``.

        Only the given calendar is read (primary by default), never the other
        calendars of the account.
        """
        url = f"{GOOGLE_CALENDAR_API}/calendars/{calendar_id}/events"
        headers = {"Authorization": f"Bearer {access_token}"}
        busy: list[BusyInterval] = []
        page_token: str | None = None

        for page in range(1, self.max_pages + 1):
            params: dict[str, Any] = {
                "timeMin": time_min.isoformat(),
                "timeMax": time_max.isoformat(),
                "singleEvents": "true",
                "orderBy": "startTime",
                "maxResults": self.page_size,
            }
            if page_token:
                params["pageToken"] = page_token

            r = self._send(self.http.build_request("GET", url, params=params, headers=headers))
            if r.status_code != 200:
                raise CalendarFetchError(f"Calendar API error {r.status_code} for {calendar_id}")

            try:
                data = _json_object(r)
                items = data.get("items") or []
                parsed = [parse_event(item) for item in items]
            except (ValueError, TypeError, AttributeError) as e:
                raise CalendarFetchError(
                    f"Malformed calendar response for {calendar_id} ({type(e).__name__}: {e})"
                ) from e
            busy.extend(interval for interval in parsed if interval is not None)
            logger.debug("Calendar %s page %d: %d events", calendar_id, page, len(items))

            page_token = data.get("nextPageToken")
            if not page_token:
                break
        else:
            logger.warning("Reached max pages (%d) for calendar %s", self.max_pages, calendar_id)

        return busy

    def refresh_access_token(self, refresh_token: str) -> str:
        if not self.client_id or not self.client_secret:
            raise MissingCredential("OAuth client is not configured, cannot refresh token")

        request = self.http.build_request(
            "POST",
            GOOGLE_TOKEN_URL,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        try:
            r = self._send(request)
        except CalendarFetchError as e:
            raise MissingCredential(f"Token refresh failed: {e}") from e

        if r.status_code != 200:
            raise MissingCredential(f"Token refresh failed with status {r.status_code}")

        try:
            access_token = _json_object(r).get("access_token")
        except ValueError as e:
            raise MissingCredential(f"Malformed token refresh response ({e})") from e
        if not access_token:
            raise MissingCredential("No access token in refresh response")
        return access_token


def resolve_access_token(
    client: GoogleCalendarClient,
    tokens: TokenStore,
    account_ref: str,
    now: dt.datetime | None = None,
) -> str:
    now = now or dt.datetime.now(dt.timezone.utc)
    token = tokens.load(account_ref)
    if token is None:
        raise MissingCredential(f"No calendar token for {account_ref}")

    if not token.is_expired(now):
        return token.access_token

    if not token.refresh_token:
        raise MissingCredential(f"Token of {account_ref} expired and has no refresh token")

    logger.info("Calendar token expired, refreshing")
    access_token = client.refresh_access_token(token.refresh_token)
    tokens.save(
        account_ref,
        CalendarToken(
            access_token=access_token,
            refresh_token=token.refresh_token,
            expires_at=now + ACCESS_TOKEN_LIFETIME,
        ),
    )
    return access_token
