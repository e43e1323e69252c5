from __future__ import annotations

WEEKDAY_NAMES = [
    "sunday",
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
]

RESOURCE_ROOM = "Room"
RESOURCE_DESK = "Desk"

STATUS_RESERVED = "Reserved"
STATUS_CANCELLED = "Cancelled"
STATUS_COMPLETED = "Completed"

CANCEL_MODE_MARK = "mark"
CANCEL_MODE_DELETE = "delete"

PHASE_UPCOMING = "upcoming"
PHASE_ACTIVE = "active"
PHASE_EXPIRED = "expired"

EARTH_RADIUS_KM = 6371.0

USERS_HEADERS = [
    "user_id",
    "name",
    "email",
    "enabled",
    "is_admin",
    "reservation_ids",
    "created_at",
]
RESOURCES_HEADERS = [
    "resource_id",
    "type",
    "name",
    "sub_resources",
    "availability",
    "capacity",
    "capacity_limit",
    "enabled",
]
RESERVATIONS_HEADERS = [
    "reservation_id",
    "user_id",
    "resource_id",
    "date",
    "timeslots",
    "status",
    "created_at",
    "updated_at",
]
META_HEADERS = ["key", "value"]
