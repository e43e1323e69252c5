from __future__ import annotations

from fastapi import HTTPException, status

from deskbook.models import ReservationRecord


class BookingError(HTTPException):
    status_code_default = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str, status_code: int | None = None) -> None:
        super().__init__(status_code=status_code or self.status_code_default, detail=detail)


class ValidationError(BookingError):
    status_code_default = status.HTTP_400_BAD_REQUEST


class NotFoundError(BookingError):
    status_code_default = status.HTTP_404_NOT_FOUND


class ForbiddenError(BookingError):
    status_code_default = status.HTTP_403_FORBIDDEN


class ConflictError(BookingError):
    status_code_default = status.HTTP_409_CONFLICT

    def __init__(self, detail: str, reservation: ReservationRecord | None = None) -> None:
        super().__init__(detail)
        self.reservation = reservation


class InvalidTransitionError(BookingError):
    status_code_default = status.HTTP_409_CONFLICT


class CheckInWindowClosedError(BookingError):
    status_code_default = status.HTTP_409_CONFLICT


class TooFarAwayError(BookingError):
    status_code_default = status.HTTP_403_FORBIDDEN

    def __init__(self, distance_km: float, max_distance_km: float) -> None:
        super().__init__(
            f"You are too far from the location. You are {distance_km:.2f} km away. "
            f"Please be within {max_distance_km:g} km to check in."
        )
        self.distance_km = distance_km
        self.max_distance_km = max_distance_km


class LocationPermissionDeniedError(BookingError):
    status_code_default = status.HTTP_403_FORBIDDEN


class LocationUnavailableError(BookingError):
    status_code_default = status.HTTP_503_SERVICE_UNAVAILABLE


class TransportError(BookingError):
    status_code_default = status.HTTP_503_SERVICE_UNAVAILABLE


class AvailabilityRevertError(BookingError):
    status_code_default = status.HTTP_500_INTERNAL_SERVER_ERROR
