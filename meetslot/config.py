from __future__ import annotations

import datetime as dt
import os
from dataclasses import dataclass

from dotenv import load_dotenv

from meetslot.errors import MalformedTimeInput
from meetslot.timeutil import DEFAULT_OFFSET, parse_offset, to_minutes


def _parse_offset_env(raw: str) -> dt.timezone:
    # SLOT_TIMEZONE_OFFSET=+09:00
    try:
        return parse_offset(raw)
    except MalformedTimeInput as e:
        raise RuntimeError(f"Invalid SLOT_TIMEZONE_OFFSET value: {raw!r}. Expected +HH:MM.") from e


def _parse_time_env(name: str, default: str) -> str:
    raw = os.getenv(name, default).strip()
    try:
        to_minutes(raw)
    except MalformedTimeInput as e:
        raise RuntimeError(f"Invalid {name} value: {raw!r}. Expected HH:MM.") from e
    return raw


def _int_env(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError as e:
        raise RuntimeError(f"Invalid {name} value: {raw!r}. Expected integer.") from e
    if value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}")
    return value


@dataclass(frozen=True)
class Settings:
    timezone_offset: dt.tzinfo = DEFAULT_OFFSET

    default_working_start: str = "09:00"
    default_working_end: str = "18:00"
    default_slot_duration_minutes: int = 30

    # Google OAuth client, only needed to refresh expired calendar tokens.
    google_client_id: str | None = None
    google_client_secret: str | None = None

    # Calendar fetch tuning
    fetch_retry_attempts: int = 2
    fetch_max_workers: int = 8
    http_timeout_seconds: float = 20.0
    calendar_max_pages: int = 10

    # How many times a round-robin assignment is redone after losing a cursor race.
    round_robin_max_attempts: int = 5

    # Where round-robin cursors are stored
    cursor_state_file: str = "round_robin_state.json"


def _require(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def load_settings(dotenv_path: str | None = None, *, require_google: bool = False) -> Settings:
    # Prefer .env in repo root; dotenv_path allows overriding in tests.
    load_dotenv(dotenv_path=dotenv_path, override=False)

    if require_google:
        google_client_id: str | None = _require("GOOGLE_CLIENT_ID")
        google_client_secret: str | None = _require("GOOGLE_CLIENT_SECRET")
    else:
        google_client_id = os.getenv("GOOGLE_CLIENT_ID") or None
        google_client_secret = os.getenv("GOOGLE_CLIENT_SECRET") or None

    working_start = _parse_time_env("DEFAULT_WORKING_HOURS_START", "09:00")
    working_end = _parse_time_env("DEFAULT_WORKING_HOURS_END", "18:00")
    if to_minutes(working_start) >= to_minutes(working_end):
        raise RuntimeError("DEFAULT_WORKING_HOURS_START must be before DEFAULT_WORKING_HOURS_END")

    timeout_raw = os.getenv("HTTP_TIMEOUT_SECONDS", "20")
    try:
        http_timeout_seconds = float(timeout_raw)
    except ValueError as e:
        raise RuntimeError(f"Invalid HTTP_TIMEOUT_SECONDS value: {timeout_raw!r}") from e

    return Settings(
        timezone_offset=_parse_offset_env(os.getenv("SLOT_TIMEZONE_OFFSET", "+09:00")),
        default_working_start=working_start,
        default_working_end=working_end,
        default_slot_duration_minutes=_int_env("DEFAULT_SLOT_DURATION_MINUTES", 30),
        google_client_id=google_client_id,
        google_client_secret=google_client_secret,
        fetch_retry_attempts=_int_env("FETCH_RETRY_ATTEMPTS", 2),
        fetch_max_workers=_int_env("FETCH_MAX_WORKERS", 8),
        http_timeout_seconds=http_timeout_seconds,
        calendar_max_pages=_int_env("CALENDAR_MAX_PAGES", 10),
        round_robin_max_attempts=_int_env("ROUND_ROBIN_MAX_ATTEMPTS", 5),
        cursor_state_file=os.getenv("CURSOR_STATE_FILE", "round_robin_state.json"),
    )
