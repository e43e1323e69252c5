from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from deskbook.deps import get_auth_store, get_service, get_wizards
from deskbook.main import app
from deskbook.security import AuthStore
from deskbook.wizard import WizardRegistry

from conftest import TODAY


@pytest.fixture()
def auth():
    return AuthStore(allowed_domain="example.com")


@pytest.fixture()
def client(service, auth):
    registry = WizardRegistry(service)
    app.dependency_overrides[get_service] = lambda: service
    app.dependency_overrides[get_auth_store] = lambda: auth
    app.dependency_overrides[get_wizards] = lambda: registry
    yield TestClient(app)
    app.dependency_overrides.clear()


def _headers(auth, user):
    return {"Authorization": f"Bearer {auth.create_session(user.user_id)}"}


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_requires_session(client):
    assert client.get("/api/me").status_code == 401
    assert client.get("/api/me", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_otp_login_flow(client, auth, office):
    code = auth.issue_otp("alice@example.com")
    response = client.post("/api/auth/verify-otp", json={"email": "alice@example.com", "code": code})
    assert response.status_code == 200
    token = response.json()["token"]

    me = client.get("/api/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["user_id"] == office["alice"].user_id


def test_otp_rejects_foreign_domain(client):
    response = client.post("/api/auth/request-otp", json={"email": "mallory@example.org"})
    assert response.status_code == 400


def test_availability_endpoint(client, auth, office):
    response = client.get(
        "/api/availability",
        params={"date": TODAY.isoformat()},
        headers=_headers(auth, office["alice"]),
    )
    assert response.status_code == 200
    assert response.json()[0] == {"slot": "0800-0830", "label": "08:00-08:30", "selected": False}


def test_room_desks_endpoint(client, auth, office):
    headers = _headers(auth, office["alice"])
    desks = client.get("/api/rooms/r1/desks", headers=headers).json()
    assert [desk["resource_id"] for desk in desks] == ["d1", "d2"]
    assert client.get("/api/rooms/missing/desks", headers=headers).status_code == 404


def test_reservation_lifecycle(client, auth, office):
    headers = _headers(auth, office["alice"])
    created = client.post(
        "/api/reservations",
        json={"desk_id": "d1", "date": TODAY.isoformat(), "timeslots": ["08:00-08:30"]},
        headers=headers,
    )
    assert created.status_code == 201
    reservation_id = created.json()["reservation_id"]

    days = client.get("/api/reservations/me", headers=headers).json()
    assert days[0]["reservations"][0]["time_range"] == "08:00-08:30"

    refused = client.post(f"/api/reservations/{reservation_id}/cancel", json={}, headers=headers)
    assert refused.status_code == 400

    cancelled = client.post(
        f"/api/reservations/{reservation_id}/cancel", json={"confirm": True}, headers=headers
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["reservation"]["status"] == "Cancelled"


def test_conflict_response_names_the_blocking_reservation(client, auth, office):
    payload = {"desk_id": "d1", "date": TODAY.isoformat(), "timeslots": ["0800-0830"]}
    first = client.post("/api/reservations", json=payload, headers=_headers(auth, office["alice"]))
    second = client.post("/api/reservations", json=payload, headers=_headers(auth, office["bob"]))

    assert second.status_code == 409
    assert second.json()["conflict"]["reservation_id"] == first.json()["reservation_id"]


def test_check_in_reports_window(client, auth, clock, office):
    headers = _headers(auth, office["alice"])
    created = client.post(
        "/api/reservations",
        json={"desk_id": "d1", "date": TODAY.isoformat(), "timeslots": ["0900-0930"]},
        headers=headers,
    ).json()

    early = client.post(f"/api/reservations/{created['reservation_id']}/check-in", json={}, headers=headers)
    assert early.status_code == 409

    clock.set(9, 0)
    done = client.post(f"/api/reservations/{created['reservation_id']}/check-in", json={}, headers=headers)
    assert done.status_code == 200
    assert done.json()["status"] == "Completed"


def test_wizard_endpoints(client, auth, office):
    headers = _headers(auth, office["alice"])
    client.post("/api/wizard/date", json={"date": TODAY.isoformat()}, headers=headers)
    client.post("/api/wizard/timeslots", json={"slot": "0800-0830"}, headers=headers)
    client.post("/api/wizard/room", json={"room_id": "r1"}, headers=headers)
    state = client.post("/api/wizard/desk", json={"desk_id": "d2"}, headers=headers).json()
    assert state["can_confirm"]

    booked = client.post("/api/wizard/confirm", headers=headers)
    assert booked.status_code == 200
    assert client.get("/api/wizard", headers=headers).json()["selected_date"] is None


def test_admin_routes_require_admin(client, auth, office):
    assert client.get("/api/admin/stats", headers=_headers(auth, office["alice"])).status_code == 403
    stats = client.get("/api/admin/stats", headers=_headers(auth, office["admin"]))
    assert stats.json()["enabled_desks"] == 2


def test_admin_sweep(client, auth, clock, office):
    client.post(
        "/api/reservations",
        json={"desk_id": "d1", "date": TODAY.isoformat(), "timeslots": ["0800-0830"]},
        headers=_headers(auth, office["alice"]),
    )
    clock.set(10, 0)
    response = client.post("/api/admin/sweep", headers=_headers(auth, office["admin"]))
    assert len(response.json()["expired"]) == 1
