from __future__ import annotations

import json
from datetime import date as DateType, datetime
from typing import Any, Literal

from pydantic import BaseModel, EmailStr, Field, field_validator

from deskbook.availability import parse_availability
from deskbook.domain import normalize_slot, sort_slots


ResourceType = Literal["Room", "Desk"]
StatusType = Literal["Reserved", "Cancelled", "Completed"]
PhaseType = Literal["upcoming", "active", "expired"]


def decode_json_list(raw: Any) -> list[Any]:
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        raw = json.loads(raw)
    if not isinstance(raw, (list, tuple, set)):
        raise ValueError(f"Expected a list, got {type(raw).__name__}")
    return list(raw)


class UserRecord(BaseModel):
    user_id: str
    name: str
    email: EmailStr | None = None
    enabled: bool = True
    is_admin: bool = False
    reservation_ids: list[str] = Field(default_factory=list)
    created_at: datetime

    @field_validator("reservation_ids", mode="before")
    @classmethod
    def _decode_ids(cls, value: Any) -> list[str]:
        return [str(item) for item in decode_json_list(value)]


class ResourceRecord(BaseModel):
    resource_id: str
    type: ResourceType
    name: str
    sub_resources: list[str] = Field(default_factory=list)
    availability: dict[str, list[str]] = Field(default_factory=dict)
    capacity: int | None = None
    capacity_limit: int | None = None
    enabled: bool = True

    @field_validator("sub_resources", mode="before")
    @classmethod
    def _decode_sub_resources(cls, value: Any) -> list[str]:
        return [str(item) for item in decode_json_list(value)]

    @field_validator("availability", mode="before")
    @classmethod
    def _decode_availability(cls, value: Any) -> dict[str, list[str]]:
        return parse_availability(value)


class ReservationRecord(BaseModel):
    reservation_id: str
    user_id: str
    resource_id: str
    date: DateType
    timeslots: list[str]
    status: StatusType = "Reserved"
    created_at: datetime
    updated_at: datetime

    @field_validator("date", mode="before")
    @classmethod
    def _decode_date(cls, value: Any) -> Any:
        # Stores may hand back a timestamp; only the calendar day matters.
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str) and len(value) > 10:
            return value[:10]
        return value

    @field_validator("timeslots", mode="before")
    @classmethod
    def _decode_timeslots(cls, value: Any) -> list[str]:
        return sort_slots(normalize_slot(str(item)) for item in decode_json_list(value))


class Position(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class BookingOutcome(BaseModel):
    reservation: ReservationRecord | None = None
    reservation_id: str
    index_synced: bool = True
    warning: str | None = None


class UpcomingReservation(BaseModel):
    reservation: ReservationRecord
    resource_name: str | None = None
    phase: PhaseType
    can_check_in: bool
    time_range: str


class DayReservations(BaseModel):
    date: DateType
    reservations: list[UpcomingReservation]


class RoomOption(BaseModel):
    room_id: str
    name: str
    reserved: int
    total: int
    selected: bool = False


class DeskOption(BaseModel):
    desk_id: str
    name: str
    reserved: bool
    available: bool
    selected: bool = False


class SlotOption(BaseModel):
    slot: str
    label: str
    selected: bool = False


class DateOption(BaseModel):
    date: DateType
    weekday: str
    selected: bool = False


class WizardState(BaseModel):
    selected_date: DateType | None = None
    selected_slots: list[str] = Field(default_factory=list)
    selected_room_id: str | None = None
    selected_desk_id: str | None = None
    dates: list[DateOption]
    timeslots: list[SlotOption]
    rooms: list[RoomOption]
    desks: list[DeskOption]
    can_confirm: bool


class OTPRequest(BaseModel):
    email: EmailStr


class OTPVerify(BaseModel):
    email: EmailStr
    code: str = Field(min_length=4, max_length=12)


class AuthToken(BaseModel):
    token: str
    user: UserRecord


class ReservationCreate(BaseModel):
    desk_id: str
    date: DateType
    timeslots: list[str] = Field(min_length=1)


class CheckInRequest(BaseModel):
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    # Set by the browser when the geolocation request failed.
    location_error: Literal["permission_denied", "unavailable"] | None = None


class CancelRequest(BaseModel):
    confirm: bool = False


class WizardDateSelect(BaseModel):
    date: DateType


class WizardSlotToggle(BaseModel):
    slot: str


class WizardRoomSelect(BaseModel):
    room_id: str


class WizardDeskSelect(BaseModel):
    desk_id: str


class AdminUserUpsert(BaseModel):
    email: EmailStr
    name: str | None = None
    enabled: bool = True
    is_admin: bool = False


class AdminResourceUpsert(BaseModel):
    resource_id: str | None = None
    type: ResourceType
    name: str
    sub_resources: list[str] = Field(default_factory=list)
    availability: dict[str, list[str]] | str | None = None
    capacity: int | None = None
    capacity_limit: int | None = None
    enabled: bool = True


class AvailabilityUpdate(BaseModel):
    availability: dict[str, list[str]] | str


class ForceCancelRequest(BaseModel):
    reservation_id: str


class SweepResponse(BaseModel):
    expired: list[str]


class StatsResponse(BaseModel):
    total_reservations: int
    active_reservations: int
    active_users: int
    enabled_desks: int
    enabled_rooms: int
