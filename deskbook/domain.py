from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from typing import Iterable, NamedTuple

from deskbook.constants import WEEKDAY_NAMES

_SLOT_RE = re.compile(r"^(\d{2}):?(\d{2})-(\d{2}):?(\d{2})$")


class SlotBounds(NamedTuple):
    start_minutes: int
    end_minutes: int


def generate_booking_window(today: date, days: int = 8) -> list[date]:
    """Consecutive calendar dates starting with ``today``."""
    return [today + timedelta(days=offset) for offset in range(days)]


def in_booking_window(value: date, today: date, days: int = 8) -> bool:
    return today <= value <= (today + timedelta(days=days - 1))


def to_iso_date(value: date) -> str:
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


def from_iso_date(raw: str) -> date:
    return date.fromisoformat(raw.strip()[:10])


def weekday_key(value: date) -> str:
    # date.weekday() is Mon=0; templates are keyed sunday..saturday.
    return WEEKDAY_NAMES[(value.weekday() + 1) % 7]


def minutes_of_day(value: datetime) -> int:
    return value.hour * 60 + value.minute


def _clock_minutes(hours: str, minutes: str) -> int:
    h, m = int(hours), int(minutes)
    if m >= 60 or h > 24 or (h == 24 and m != 0):
        raise ValueError(f"Invalid time of day: {hours}{minutes}")
    return h * 60 + m


def parse_slot(slot: str) -> SlotBounds:
    """Parse ``"HHMM-HHMM"`` (or ``"HH:MM-HH:MM"``) into minute offsets."""
    match = _SLOT_RE.match(slot.strip()) if isinstance(slot, str) else None
    if not match:
        raise ValueError(f"Unsupported timeslot: {slot!r}")
    start = _clock_minutes(match.group(1), match.group(2))
    end = _clock_minutes(match.group(3), match.group(4))
    if end <= start:
        raise ValueError(f"Timeslot ends before it starts: {slot!r}")
    return SlotBounds(start, end)


def format_time(raw: str) -> str:
    if len(raw) == 4:
        return f"{raw[:2]}:{raw[2:]}"
    return raw


def format_slot(slot: str) -> str:
    """``"0800-0830"`` -> ``"08:00-08:30"``."""
    start, end = slot.split("-")
    return f"{format_time(start)}-{format_time(end)}"


def unformat_slot(slot: str) -> str:
    """``"08:00-08:30"`` -> ``"0800-0830"``."""
    return slot.replace(":", "")


def normalize_slot(slot: str) -> str:
    parse_slot(slot)
    return unformat_slot(slot.strip())


def sort_slots(slots: Iterable[str]) -> list[str]:
    return sorted(slots, key=lambda item: parse_slot(item).start_minutes)


def slots_are_consecutive(slots: Iterable[str]) -> bool:
    ordered = sort_slots(set(slots))
    for current, following in zip(ordered, ordered[1:]):
        if parse_slot(current).end_minutes != parse_slot(following).start_minutes:
            return False
    return True


def time_range(slots: Iterable[str]) -> str:
    """Display span of a consecutive selection, e.g. ``"08:00-09:30"``."""
    ordered = sort_slots(slots)
    if not ordered:
        return ""
    start = unformat_slot(ordered[0]).split("-")[0]
    end = unformat_slot(ordered[-1]).split("-")[1]
    return f"{format_time(start)}-{format_time(end)}"


def first_slot_start(slots: Iterable[str]) -> int:
    ordered = sort_slots(slots)
    if not ordered:
        raise ValueError("Reservation has no timeslots")
    return parse_slot(ordered[0]).start_minutes


def at_minutes(value_date: date, minutes: int) -> datetime:
    return datetime.combine(value_date, datetime.min.time()) + timedelta(minutes=minutes)


def normalize_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y"}
    return False
