"""
Time rules for worked hours.
Handles per-pair minute counting, hour rounding, and timezone display conversions.
"""
from datetime import datetime, time
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Protocol
import pytz

from ..config import settings
from ..models.models import MAX_TIME_ENTRIES

TWO_PLACES = Decimal("0.01")


class ClockPair(Protocol):
    entry_number: int
    clock_in: Optional[datetime]
    clock_out: Optional[datetime]


class MalformedTimeEntry(ValueError):
    pass


def _as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes; they are stored as UTC
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def entry_minutes(clock_in: Optional[datetime], clock_out: Optional[datetime]) -> int:
    """
    Whole minutes worked for one clock pair.

    A pair that is still open (no clock-out) or was never started counts as zero.
    A clock-out earlier than its clock-in is malformed.
    """
    if clock_in is None or clock_out is None:
        return 0
    seconds = (_as_utc(clock_out) - _as_utc(clock_in)).total_seconds()
    if seconds < 0:
        raise MalformedTimeEntry("clock_out is earlier than clock_in")
    return int(seconds // 60)


def validate_entries(entries: Iterable[ClockPair]) -> None:
    seen = set()
    for entry in entries:
        number = entry.entry_number
        if number is None or not 1 <= int(number) <= MAX_TIME_ENTRIES:
            raise MalformedTimeEntry(f"entry_number {number!r} outside 1..{MAX_TIME_ENTRIES}")
        if number in seen:
            raise MalformedTimeEntry(f"duplicate entry_number {number}")
        seen.add(number)
        entry_minutes(entry.clock_in, entry.clock_out)


def total_minutes(entries: Iterable[ClockPair]) -> int:
    return sum(entry_minutes(e.clock_in, e.clock_out) for e in entries)


def minutes_to_hours(minutes: int) -> Decimal:
    return (Decimal(minutes) / Decimal(60)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def total_hours(entries: Iterable[ClockPair]) -> Decimal:
    """Sum of worked minutes over all pairs, in hours rounded to two decimals."""
    return minutes_to_hours(total_minutes(entries))


def utc_to_local(dt: datetime, timezone_str: Optional[str] = None) -> datetime:
    tz = pytz.timezone(timezone_str or settings.tz_default)
    return _as_utc(dt).astimezone(tz)


def format_clock(dt: Optional[datetime], timezone_str: Optional[str] = None) -> str:
    """Render a clock timestamp as local 12-hour time, e.g. 09:05 AM."""
    if dt is None:
        return ""
    return utc_to_local(dt, timezone_str).strftime("%I:%M %p")


def format_wall_time(t: Optional[time]) -> str:
    if t is None:
        return ""
    return t.strftime("%I:%M %p")
