from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Protocol

from deskbook.constants import EARTH_RADIUS_KM
from deskbook.errors import LocationPermissionDeniedError, LocationUnavailableError
from deskbook.models import Position

LOCATION_HINT = "Please enable location services and try again."


def haversine_km(origin: Position, target: Position) -> float:
    """Great-circle distance in kilometers."""
    lat1, lat2 = math.radians(origin.latitude), math.radians(target.latitude)
    d_lat = lat2 - lat1
    d_lon = math.radians(target.longitude - origin.longitude)
    a = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def within_radius(origin: Position, target: Position, radius_km: float) -> bool:
    return haversine_km(origin, target) <= radius_km


class LocationProvider(Protocol):
    def current_position(self) -> Position: ...


@dataclass
class ReportedLocation:
    """Position as reported by the caller's device for a single request."""

    position: Position | None = None
    error: str | None = None

    def current_position(self) -> Position:
        if self.error == "permission_denied":
            raise LocationPermissionDeniedError(f"Location permission denied. {LOCATION_HINT}")
        if self.position is None:
            raise LocationUnavailableError(f"Failed to get your location. {LOCATION_HINT}")
        return self.position

    @classmethod
    def from_payload(
        cls,
        latitude: float | None,
        longitude: float | None,
        error: str | None = None,
    ) -> "ReportedLocation":
        if error or latitude is None or longitude is None:
            return cls(position=None, error=error or "unavailable")
        return cls(position=Position(latitude=latitude, longitude=longitude))
