from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta

import pytest

from deskbook.constants import STATUS_CANCELLED, STATUS_RESERVED, WEEKDAY_NAMES
from deskbook.models import ReservationRecord, ResourceRecord, UserRecord
from deskbook.services import BookingPolicy, ReservationService
from deskbook.store import StaleWrite, StoreError, UniqueViolation, WriteError

# Monday
TODAY = date(2026, 10, 19)

SLOTS = ["0800-0830", "0830-0900", "0900-0930", "0930-1000", "1430-1500", "1500-1530"]


def weekly(slots: list[str]) -> dict[str, list[str]]:
    return {day: list(slots) for day in WEEKDAY_NAMES}


@dataclass
class FixedClock:
    current: datetime

    def now(self) -> datetime:
        return self.current

    def set(self, hour: int, minute: int = 0, value_date: date | None = None) -> None:
        day = value_date or self.current.date()
        self.current = datetime.combine(day, datetime.min.time()).replace(hour=hour, minute=minute)

    def advance(self, minutes: int) -> None:
        self.current += timedelta(minutes=minutes)


class FakeStore:
    """In-memory store with switches for simulating backend failures."""

    def __init__(self) -> None:
        self.users: dict[str, UserRecord] = {}
        self.resources: dict[str, ResourceRecord] = {}
        self.reservations: dict[str, ReservationRecord] = {}
        self.fail_index_writes = False
        self.fail_reservation_reads = False
        self.fail_status_writes = False
        self.availability_writes_left: int | None = None

    # users

    def list_users(self) -> list[UserRecord]:
        return list(self.users.values())

    def get_user(self, user_id: str) -> UserRecord | None:
        return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> UserRecord | None:
        return next((u for u in self.users.values() if u.email and u.email.lower() == email.lower()), None)

    def upsert_user(self, name, enabled=True, is_admin=False, email=None) -> UserRecord:
        existing = self.get_user_by_email(email) if email else None
        user = UserRecord(
            user_id=existing.user_id if existing else uuid.uuid4().hex,
            name=name,
            email=email,
            enabled=enabled,
            is_admin=is_admin,
            reservation_ids=existing.reservation_ids if existing else [],
            created_at=datetime(2026, 1, 1),
        )
        self.users[user.user_id] = user
        return user

    def update_user_reservation_index(self, user_id: str, reservation_ids: list[str]) -> None:
        if self.fail_index_writes:
            raise WriteError("index sheet unavailable")
        if user_id not in self.users:
            raise WriteError(f"User {user_id} not found")
        self.users[user_id] = self.users[user_id].model_copy(update={"reservation_ids": list(reservation_ids)})

    # resources

    def list_resources(self) -> list[ResourceRecord]:
        return list(self.resources.values())

    def get_resource(self, resource_id: str) -> ResourceRecord | None:
        return self.resources.get(resource_id)

    def upsert_resource(self, resource: ResourceRecord) -> ResourceRecord:
        self.resources[resource.resource_id] = resource
        return resource

    def update_resource_availability(self, resource_id: str, availability: dict[str, list[str]]) -> None:
        if self.availability_writes_left is not None:
            if self.availability_writes_left <= 0:
                raise WriteError("resources sheet unavailable")
            self.availability_writes_left -= 1
        resource = self.resources[resource_id]
        self.resources[resource_id] = resource.model_copy(update={"availability": availability})

    # reservations

    def list_reservations(self, start_date=None, end_date=None) -> list[ReservationRecord]:
        if self.fail_reservation_reads:
            raise StoreError("reservations sheet unavailable")
        return [
            item
            for item in self.reservations.values()
            if (start_date is None or item.date >= start_date) and (end_date is None or item.date <= end_date)
        ]

    def list_reservations_for_desk(self, desk_id, since=None) -> list[ReservationRecord]:
        return [item for item in self.list_reservations(start_date=since) if item.resource_id == desk_id]

    def list_reservations_for_user(self, user_id, since=None, exclude_status=(STATUS_CANCELLED,)):
        excluded = set(exclude_status)
        return [
            item
            for item in self.list_reservations(start_date=since)
            if item.user_id == user_id and item.status not in excluded
        ]

    def get_reservation(self, reservation_id: str) -> ReservationRecord | None:
        return self.reservations.get(reservation_id)

    def insert_reservation(self, resource_id, user_id, value_date, slots) -> ReservationRecord:
        for existing in self.reservations.values():
            if existing.status == STATUS_CANCELLED or existing.date != value_date:
                continue
            if not set(slots) & set(existing.timeslots):
                continue
            if existing.resource_id == resource_id or existing.user_id == user_id:
                raise UniqueViolation("duplicate reservation", existing.reservation_id)
        record = ReservationRecord(
            reservation_id=uuid.uuid4().hex,
            user_id=user_id,
            resource_id=resource_id,
            date=value_date,
            timeslots=list(slots),
            status=STATUS_RESERVED,
            created_at=datetime(2026, 1, 1),
            updated_at=datetime(2026, 1, 1),
        )
        self.reservations[record.reservation_id] = record
        return record

    def update_reservation_status(self, reservation_id, status, expected=None) -> ReservationRecord:
        if self.fail_status_writes:
            raise WriteError("reservations sheet unavailable")
        current = self.reservations.get(reservation_id)
        if current is None:
            raise StaleWrite("Reservation no longer exists")
        if expected is not None and current.status != expected:
            raise StaleWrite(f"Reservation is {current.status}, expected {expected}")
        updated = current.model_copy(update={"status": status})
        self.reservations[reservation_id] = updated
        return updated

    def delete_reservation(self, reservation_id: str) -> bool:
        return self.reservations.pop(reservation_id, None) is not None


@pytest.fixture()
def clock():
    return FixedClock(datetime.combine(TODAY, datetime.min.time()).replace(hour=7))


@pytest.fixture()
def store():
    return FakeStore()


@pytest.fixture()
def office(store):
    """Room r1 holding desks d1 and d2, plus a regular user pair and an admin."""
    template = weekly(SLOTS)
    store.upsert_resource(ResourceRecord(resource_id="d1", type="Desk", name="Desk 1", availability=template))
    store.upsert_resource(ResourceRecord(resource_id="d2", type="Desk", name="Desk 2", availability=template))
    store.upsert_resource(
        ResourceRecord(resource_id="d3", type="Desk", name="Desk 3", availability=template, enabled=False)
    )
    store.upsert_resource(
        ResourceRecord(resource_id="r1", type="Room", name="Open space", sub_resources=["d2", "d1", "d3"])
    )
    return {
        "alice": store.upsert_user("alice", email="alice@example.com"),
        "bob": store.upsert_user("bob", email="bob@example.com"),
        "admin": store.upsert_user("admin", email="admin@example.com", is_admin=True),
    }


@pytest.fixture()
def service(store, clock, office):
    return ReservationService(repo=store, clock=clock, policy=BookingPolicy())
