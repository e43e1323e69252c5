from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Protocol
from zoneinfo import ZoneInfo

from deskbook.models import ReservationRecord, ResourceRecord, UserRecord


class StoreError(Exception):
    """The backing store could not be read or written."""


class WriteError(StoreError):
    pass


class UniqueViolation(WriteError):
    """A guarded insert collided with an existing active reservation."""

    def __init__(self, message: str, reservation_id: str | None = None) -> None:
        super().__init__(message)
        self.reservation_id = reservation_id


class StaleWrite(WriteError):
    """A conditional update found the row in an unexpected state."""


class ReservationStore(Protocol):
    def list_users(self) -> list[UserRecord]: ...

    def get_user(self, user_id: str) -> UserRecord | None: ...

    def get_user_by_email(self, email: str) -> UserRecord | None: ...

    def upsert_user(
        self,
        name: str,
        enabled: bool = True,
        is_admin: bool = False,
        email: str | None = None,
    ) -> UserRecord: ...

    def update_user_reservation_index(self, user_id: str, reservation_ids: list[str]) -> None: ...

    def list_resources(self) -> list[ResourceRecord]: ...

    def get_resource(self, resource_id: str) -> ResourceRecord | None: ...

    def upsert_resource(self, resource: ResourceRecord) -> ResourceRecord: ...

    def update_resource_availability(self, resource_id: str, availability: dict[str, list[str]]) -> None: ...

    def list_reservations(
        self,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[ReservationRecord]: ...

    def list_reservations_for_desk(
        self,
        desk_id: str,
        since: date | None = None,
    ) -> list[ReservationRecord]: ...

    def list_reservations_for_user(
        self,
        user_id: str,
        since: date | None = None,
        exclude_status: Iterable[str] = ("Cancelled",),
    ) -> list[ReservationRecord]: ...

    def get_reservation(self, reservation_id: str) -> ReservationRecord | None: ...

    def insert_reservation(
        self,
        resource_id: str,
        user_id: str,
        value_date: date,
        slots: list[str],
    ) -> ReservationRecord: ...

    def update_reservation_status(
        self,
        reservation_id: str,
        status: str,
        expected: str | None = None,
    ) -> ReservationRecord: ...

    def delete_reservation(self, reservation_id: str) -> bool: ...


class Clock(Protocol):
    def now(self) -> datetime: ...


@dataclass(frozen=True)
class SystemClock:
    """Local wall clock, naive; reservation dates carry no timezone."""

    timezone: str | None = None

    def now(self) -> datetime:
        if self.timezone:
            return datetime.now(ZoneInfo(self.timezone)).replace(tzinfo=None)
        return datetime.now()
