from __future__ import annotations

import pytest

from deskbook.errors import (
    CheckInWindowClosedError,
    ForbiddenError,
    InvalidTransitionError,
    LocationPermissionDeniedError,
    LocationUnavailableError,
    TooFarAwayError,
)
from deskbook.geo import ReportedLocation, haversine_km, within_radius
from deskbook.models import Position
from deskbook.services import BookingPolicy, ReservationService

from conftest import TODAY

SITE = Position(latitude=32.0853, longitude=34.7818)


@pytest.fixture()
def booked(service, office):
    return service.create_reservation(office["alice"], "d1", TODAY, ["0900-0930", "0930-1000"])


@pytest.mark.parametrize(("hour", "minute"), [(8, 55), (8, 56), (9, 0), (9, 14), (9, 15)])
def test_check_in_inside_window(service, clock, office, booked, hour, minute):
    clock.set(hour, minute)
    updated = service.check_in(office["alice"], booked.reservation_id)
    assert updated.status == "Completed"


@pytest.mark.parametrize(("hour", "minute"), [(8, 54), (9, 16), (9, 45)])
def test_check_in_outside_window(service, clock, office, booked, hour, minute):
    clock.set(hour, minute)
    with pytest.raises(CheckInWindowClosedError):
        service.check_in(office["alice"], booked.reservation_id)


def test_check_in_twice_is_rejected(service, clock, office, booked):
    clock.set(9, 0)
    service.check_in(office["alice"], booked.reservation_id)
    with pytest.raises(InvalidTransitionError):
        service.check_in(office["alice"], booked.reservation_id)


def test_check_in_by_someone_else_is_forbidden(service, clock, office, booked):
    clock.set(9, 0)
    with pytest.raises(ForbiddenError):
        service.check_in(office["bob"], booked.reservation_id)


def test_phase_follows_the_window(service, clock, booked):
    reservation = booked.reservation
    clock.set(8, 54)
    assert service.reservation_phase(reservation) == "upcoming"
    clock.set(9, 5)
    assert service.reservation_phase(reservation) == "active"
    clock.set(9, 16)
    assert service.reservation_phase(reservation) == "expired"


def test_haversine_distance():
    assert haversine_km(SITE, SITE) == 0
    jerusalem = Position(latitude=31.7683, longitude=35.2137)
    assert 53 < haversine_km(SITE, jerusalem) < 55
    nearby = Position(latitude=32.0890, longitude=34.7818)
    assert within_radius(nearby, SITE, 1.0)


@pytest.fixture()
def onsite(store, clock, office, booked):
    svc = ReservationService(repo=store, clock=clock, policy=BookingPolicy(site=SITE, radius_km=1.0))
    clock.set(9, 0)
    return svc


def test_check_in_near_site(onsite, office, booked):
    location = ReportedLocation.from_payload(32.0890, 34.7818)
    assert onsite.check_in(office["alice"], booked.reservation_id, location).status == "Completed"


def test_check_in_too_far_away(onsite, store, office, booked):
    location = ReportedLocation.from_payload(31.7683, 35.2137)
    with pytest.raises(TooFarAwayError) as exc:
        onsite.check_in(office["alice"], booked.reservation_id, location)
    assert exc.value.distance_km > 50
    assert "You are too far from the location" in exc.value.detail
    assert store.reservations[booked.reservation_id].status == "Reserved"


def test_check_in_without_location_permission(onsite, office, booked):
    location = ReportedLocation.from_payload(None, None, "permission_denied")
    with pytest.raises(LocationPermissionDeniedError):
        onsite.check_in(office["alice"], booked.reservation_id, location)


def test_check_in_with_unavailable_location(onsite, office, booked):
    with pytest.raises(LocationUnavailableError):
        onsite.check_in(office["alice"], booked.reservation_id, ReportedLocation.from_payload(None, None))
    with pytest.raises(LocationUnavailableError):
        onsite.check_in(office["alice"], booked.reservation_id, None)
