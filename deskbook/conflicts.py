from __future__ import annotations

from datetime import date
from typing import Iterable

from deskbook.constants import STATUS_CANCELLED
from deskbook.models import ReservationRecord


def is_active(reservation: ReservationRecord) -> bool:
    return reservation.status != STATUS_CANCELLED


def _overlapping(
    reservations: Iterable[ReservationRecord],
    value_date: date,
    slots: Iterable[str],
) -> Iterable[ReservationRecord]:
    wanted = set(slots)
    for reservation in reservations:
        if not is_active(reservation) or reservation.date != value_date:
            continue
        if wanted.intersection(reservation.timeslots):
            yield reservation


def conflicting_reservation(
    desk_id: str,
    value_date: date,
    slots: Iterable[str],
    reservations: Iterable[ReservationRecord],
) -> ReservationRecord | None:
    """First active reservation of ``desk_id`` on ``value_date`` sharing a slot."""
    same_desk = (item for item in reservations if item.resource_id == desk_id)
    return next(iter(_overlapping(same_desk, value_date, slots)), None)


def user_conflict(
    user_id: str,
    value_date: date,
    slots: Iterable[str],
    reservations: Iterable[ReservationRecord],
) -> ReservationRecord | None:
    """First active reservation held by ``user_id`` at the same time, any desk."""
    own = (item for item in reservations if item.user_id == user_id)
    return next(iter(_overlapping(own, value_date, slots)), None)


def reserved_slots_for_desk(
    desk_id: str,
    value_date: date,
    reservations: Iterable[ReservationRecord],
) -> set[str]:
    taken: set[str] = set()
    for item in reservations:
        if item.resource_id == desk_id and item.date == value_date and is_active(item):
            taken.update(item.timeslots)
    return taken


def desk_is_reserved(
    desk_id: str,
    value_date: date,
    slots: Iterable[str],
    reservations: Iterable[ReservationRecord],
) -> bool:
    return conflicting_reservation(desk_id, value_date, slots, reservations) is not None
