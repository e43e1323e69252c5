from __future__ import annotations

import json
import logging
from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Iterable

from deskbook.constants import WEEKDAY_NAMES
from deskbook.domain import minutes_of_day, normalize_slot, parse_slot, sort_slots, weekday_key

if TYPE_CHECKING:
    from deskbook.models import ResourceRecord

logger = logging.getLogger(__name__)

DEFAULT_GRACE_MINUTES = 15


def parse_availability(raw: Any) -> dict[str, list[str]]:
    """Decode a weekly template into ``{weekday: [compact slot, ...]}``.

    Accepts the structured mapping or its JSON serialization. Anything
    unreadable degrades to an empty template; availability absence is a
    displayable state, not a failure.
    """
    if raw is None or raw == "":
        return {}
    try:
        payload = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        if not isinstance(payload, dict):
            raise ValueError(f"expected an object, got {type(payload).__name__}")
        template: dict[str, list[str]] = {}
        for key, slots in payload.items():
            weekday = str(key).strip().lower()
            if weekday not in WEEKDAY_NAMES:
                logger.warning("Ignoring unknown weekday %r in availability", key)
                continue
            if isinstance(slots, str) or not isinstance(slots, Iterable):
                raise ValueError(f"slots for {weekday} must be a list")
            template[weekday] = [normalize_slot(str(slot)) for slot in slots]
        return template
    except (TypeError, ValueError) as exc:
        logger.warning("Malformed availability payload, treating as empty: %s", exc)
        return {}


def template_slots(resource: ResourceRecord, value_date: date) -> list[str]:
    return list(resource.availability.get(weekday_key(value_date), []))


def available_timeslots(
    resource: ResourceRecord,
    value_date: date,
    now: datetime,
    grace_minutes: int = DEFAULT_GRACE_MINUTES,
) -> list[str]:
    """Bookable slots of ``resource`` on ``value_date`` in template order.

    Today's slots are offered only while they have not started and still
    end at least ``grace_minutes`` from now, so a check-in can happen.
    """
    today = now.date()
    if value_date < today:
        return []
    slots = template_slots(resource, value_date)
    if value_date != today:
        return slots

    current = minutes_of_day(now)
    offered = []
    for slot in slots:
        bounds = parse_slot(slot)
        if bounds.start_minutes < current:
            continue
        if bounds.end_minutes < current + grace_minutes:
            continue
        offered.append(slot)
    return offered


def union_timeslots(
    desks: Iterable[ResourceRecord],
    value_date: date,
    now: datetime,
    grace_minutes: int = DEFAULT_GRACE_MINUTES,
) -> list[str]:
    combined: set[str] = set()
    for desk in desks:
        combined.update(available_timeslots(desk, value_date, now, grace_minutes))
    return sort_slots(combined)


def desk_covers(
    desk: ResourceRecord,
    value_date: date,
    slots: Iterable[str],
    now: datetime,
    grace_minutes: int = DEFAULT_GRACE_MINUTES,
) -> bool:
    offered = set(available_timeslots(desk, value_date, now, grace_minutes))
    return set(slots) <= offered


def template_covers(resource: ResourceRecord, value_date: date, slots: Iterable[str]) -> bool:
    return set(slots) <= set(template_slots(resource, value_date))
