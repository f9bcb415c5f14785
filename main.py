import argparse
import json
import logging
import sys

from meetslot.availability import compute_available_slots
from meetslot.config import load_settings
from meetslot.domain import Booking, BusyInterval, SlotConfig
from meetslot.intersection import compute_team_available_slots
from meetslot.timeutil import parse_date

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        stream=sys.stderr,
    )


def _load_json(path: str):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _load_busy(path: str) -> list[BusyInterval]:
    # [{"start": "2025-01-10T09:30:00+09:00", "end": "..."}]
    return [BusyInterval.from_iso(item["start"], item["end"]) for item in _load_json(path)]


def _parse_weekdays(raw: str | None) -> list[int] | None:
    if raw is None:
        return None
    return [int(p) for p in raw.split(",") if p.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="meetslot: free meeting slots from busy calendar intervals")
    parser.add_argument("--from", dest="date_from", required=True, help="First date, YYYY-MM-DD")
    parser.add_argument("--to", dest="date_to", required=True, help="Last date (inclusive), YYYY-MM-DD")
    parser.add_argument(
        "--busy",
        action="append",
        default=[],
        help="JSON file with busy intervals of one party; repeat for a team",
    )
    parser.add_argument("--bookings", help="JSON file with booking rows to subtract")
    parser.add_argument("--start", dest="working_start", help="Working hours start, HH:MM")
    parser.add_argument("--end", dest="working_end", help="Working hours end, HH:MM")
    parser.add_argument("--break-start")
    parser.add_argument("--break-end")
    parser.add_argument("--duration", type=int, help="Slot duration in minutes")
    parser.add_argument("--weekdays", help="Allowed weekdays, 0=Sunday, e.g. 1,2,3,4,5")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    _setup_logging(args.verbose)
    settings = load_settings()

    try:
        config = SlotConfig.from_strings(
            args.working_start if args.working_start is not None else settings.default_working_start,
            args.working_end if args.working_end is not None else settings.default_working_end,
            args.break_start,
            args.break_end,
            slot_duration_minutes=args.duration if args.duration is not None else settings.default_slot_duration_minutes,
            timezone_offset=settings.timezone_offset,
            weekdays=_parse_weekdays(args.weekdays),
        )
        date_range = (parse_date(args.date_from), parse_date(args.date_to))
        bookings = [Booking.from_row(row) for row in _load_json(args.bookings)] if args.bookings else []
        busy_by_party = {path: _load_busy(path) for path in args.busy}
    except (ValueError, KeyError, OSError) as e:
        logger.error("Invalid input (%s: %s)", type(e).__name__, e)
        return 2

    if len(busy_by_party) > 1:
        slots = compute_team_available_slots(config, date_range, busy_by_party, bookings)
    else:
        busy = next(iter(busy_by_party.values()), [])
        slots = compute_available_slots(config, date_range, busy, bookings)

    logger.info("Free slots: %d", len(slots))
    print(json.dumps([s.to_dict() for s in slots], ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
