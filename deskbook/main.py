from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from datetime import date

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from deskbook.config import settings
from deskbook.deps import (
    Session,
    get_auth_store,
    get_service,
    get_wizards,
    repo,
    require_session,
    require_user,
    require_wizard,
)
from deskbook.domain import format_slot
from deskbook.errors import ConflictError, TransportError
from deskbook.geo import ReportedLocation
from deskbook.models import (
    AdminResourceUpsert,
    AdminUserUpsert,
    AuthToken,
    AvailabilityUpdate,
    BookingOutcome,
    CancelRequest,
    CheckInRequest,
    DayReservations,
    ForceCancelRequest,
    OTPRequest,
    OTPVerify,
    ReservationCreate,
    ReservationRecord,
    ResourceRecord,
    SlotOption,
    StatsResponse,
    SweepResponse,
    UserRecord,
    WizardDateSelect,
    WizardDeskSelect,
    WizardRoomSelect,
    WizardSlotToggle,
    WizardState,
)
from deskbook.availability import union_timeslots
from deskbook.security import AuthStore, send_otp_email
from deskbook.services import ReservationService
from deskbook.wizard import BookingWizard, WizardRegistry

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


async def _expiry_sweeper(
    svc: ReservationService,
    interval: float,
    sessions: AuthStore | None = None,
) -> None:
    while True:
        await asyncio.sleep(interval)
        if sessions is not None:
            sessions.purge_expired()
        try:
            expired = await run_in_threadpool(svc.sweep_expired)
        except TransportError as exc:
            logger.error("Expiry sweep failed: %s", exc.detail)
            continue
        except Exception:
            # The loop must outlive any single bad pass.
            logger.exception("Expiry sweep failed")
            continue
        if expired:
            logger.info("Expiry sweep cancelled %d reservation(s)", len(expired))


@asynccontextmanager
async def lifespan(_: FastAPI):
    "init storage and run the missed check-in sweeper"
    repo.init_storage()
    task = asyncio.create_task(
        _expiry_sweeper(get_service(), settings.expiry_sweep_seconds, get_auth_store())
    )
    yield
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


app = FastAPI(lifespan=lifespan, title="Desk Booking API", version="0.1.0")


@app.exception_handler(ConflictError)
async def conflict_handler(_: Request, exc: ConflictError) -> JSONResponse:
    body: dict = {"detail": exc.detail}
    if exc.reservation is not None:
        body["conflict"] = {
            "reservation_id": exc.reservation.reservation_id,
            "resource_id": exc.reservation.resource_id,
            "date": exc.reservation.date.isoformat(),
            "timeslots": exc.reservation.timeslots,
        }
    return JSONResponse(status_code=exc.status_code, content=body)


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/me", response_model=UserRecord)
def me(user: UserRecord = Depends(require_user)) -> UserRecord:
    return user


@app.post("/api/auth/request-otp")
def request_otp(payload: OTPRequest, store: AuthStore = Depends(get_auth_store)) -> dict[str, str]:
    try:
        code = store.issue_otp(str(payload.email))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    send_otp_email(str(payload.email), code)
    return {"status": "ok"}


@app.post("/api/auth/verify-otp", response_model=AuthToken)
def verify_otp(
    payload: OTPVerify,
    store: AuthStore = Depends(get_auth_store),
    svc: ReservationService = Depends(get_service),
) -> AuthToken:
    try:
        ok = store.verify_otp(str(payload.email), payload.code)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not ok:
        raise HTTPException(status_code=401, detail="Invalid OTP")

    user = svc.ensure_user_for_email(str(payload.email))
    token = store.create_session(user.user_id)
    return AuthToken(token=token, user=user)


@app.post("/api/auth/logout")
def logout(
    session: Session = Depends(require_session),
    store: AuthStore = Depends(get_auth_store),
    registry: WizardRegistry = Depends(get_wizards),
) -> dict[str, str]:
    registry.discard(session.token)
    store.logout(session.token)
    return {"status": "ok"}


@app.get("/api/resources", response_model=list[ResourceRecord])
def list_resources(
    user: UserRecord = Depends(require_user),
    svc: ReservationService = Depends(get_service),
) -> list[ResourceRecord]:
    _ = user
    return svc.list_resources()


@app.get("/api/rooms/{room_id}/desks", response_model=list[ResourceRecord])
def list_room_desks(
    room_id: str,
    user: UserRecord = Depends(require_user),
    svc: ReservationService = Depends(get_service),
) -> list[ResourceRecord]:
    _ = user
    resources = svc.list_resources()
    room = next((item for item in svc.list_rooms(resources) if item.resource_id == room_id), None)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    return svc.desks_for_room(room, resources)


@app.get("/api/availability", response_model=list[SlotOption])
def availability(
    value_date: date = Query(alias="date"),
    user: UserRecord = Depends(require_user),
    svc: ReservationService = Depends(get_service),
) -> list[SlotOption]:
    _ = user
    slots = union_timeslots(
        svc.list_desks(),
        value_date,
        svc.now(),
        svc.policy.availability_grace_minutes,
    )
    return [SlotOption(slot=slot, label=format_slot(slot)) for slot in slots]


@app.get("/api/reservations/me", response_model=list[DayReservations])
def my_reservations(
    user: UserRecord = Depends(require_user),
    svc: ReservationService = Depends(get_service),
) -> list[DayReservations]:
    return svc.list_upcoming(user)


@app.post("/api/reservations", response_model=BookingOutcome, status_code=201)
def create_reservation(
    payload: ReservationCreate,
    user: UserRecord = Depends(require_user),
    svc: ReservationService = Depends(get_service),
) -> BookingOutcome:
    return svc.create_reservation(
        user=user,
        desk_id=payload.desk_id,
        value_date=payload.date,
        slots=payload.timeslots,
    )


@app.post("/api/reservations/{reservation_id}/check-in", response_model=ReservationRecord)
def check_in(
    reservation_id: str,
    payload: CheckInRequest,
    user: UserRecord = Depends(require_user),
    svc: ReservationService = Depends(get_service),
) -> ReservationRecord:
    location = ReportedLocation.from_payload(payload.latitude, payload.longitude, payload.location_error)
    return svc.check_in(user, reservation_id, location)


@app.post("/api/reservations/{reservation_id}/cancel", response_model=BookingOutcome)
def cancel_reservation(
    reservation_id: str,
    payload: CancelRequest,
    user: UserRecord = Depends(require_user),
    svc: ReservationService = Depends(get_service),
) -> BookingOutcome:
    return svc.cancel_reservation(user, reservation_id, confirmed=payload.confirm)


@app.post("/api/reservations/sweep", response_model=SweepResponse)
def sweep_my_reservations(
    user: UserRecord = Depends(require_user),
    svc: ReservationService = Depends(get_service),
) -> SweepResponse:
    return SweepResponse(expired=svc.sweep_expired(user.user_id))


@app.get("/api/wizard", response_model=WizardState)
def wizard_state(wizard: BookingWizard = Depends(require_wizard)) -> WizardState:
    return wizard.state()


@app.delete("/api/wizard", response_model=WizardState)
def wizard_reset(wizard: BookingWizard = Depends(require_wizard)) -> WizardState:
    wizard.reset()
    return wizard.state()


@app.post("/api/wizard/date", response_model=WizardState)
def wizard_date(payload: WizardDateSelect, wizard: BookingWizard = Depends(require_wizard)) -> WizardState:
    wizard.select_date(payload.date)
    return wizard.state()


@app.post("/api/wizard/timeslots", response_model=WizardState)
def wizard_timeslot(payload: WizardSlotToggle, wizard: BookingWizard = Depends(require_wizard)) -> WizardState:
    wizard.toggle_timeslot(payload.slot)
    return wizard.state()


@app.post("/api/wizard/room", response_model=WizardState)
def wizard_room(payload: WizardRoomSelect, wizard: BookingWizard = Depends(require_wizard)) -> WizardState:
    wizard.select_room(payload.room_id)
    return wizard.state()


@app.post("/api/wizard/desk", response_model=WizardState)
def wizard_desk(payload: WizardDeskSelect, wizard: BookingWizard = Depends(require_wizard)) -> WizardState:
    wizard.select_desk(payload.desk_id)
    return wizard.state()


@app.post("/api/wizard/confirm", response_model=BookingOutcome)
def wizard_confirm(wizard: BookingWizard = Depends(require_wizard)) -> BookingOutcome:
    return wizard.confirm()


@app.post("/api/admin/users", response_model=UserRecord)
def admin_upsert_user(
    payload: AdminUserUpsert,
    user: UserRecord = Depends(require_user),
    svc: ReservationService = Depends(get_service),
) -> UserRecord:
    return svc.admin_upsert_user(
        actor=user,
        email=str(payload.email),
        name=payload.name,
        enabled=payload.enabled,
        is_admin=payload.is_admin,
    )


@app.post("/api/admin/resources", response_model=ResourceRecord)
def admin_upsert_resource(
    payload: AdminResourceUpsert,
    user: UserRecord = Depends(require_user),
    svc: ReservationService = Depends(get_service),
) -> ResourceRecord:
    return svc.admin_upsert_resource(actor=user, payload=payload)


@app.put("/api/admin/resources/{resource_id}/availability", response_model=ResourceRecord)
def admin_set_availability(
    resource_id: str,
    payload: AvailabilityUpdate,
    user: UserRecord = Depends(require_user),
    svc: ReservationService = Depends(get_service),
) -> ResourceRecord:
    return svc.admin_set_availability(actor=user, resource_id=resource_id, raw=payload.availability)


@app.post("/api/admin/force-cancel", response_model=BookingOutcome)
def admin_force_cancel(
    payload: ForceCancelRequest,
    user: UserRecord = Depends(require_user),
    svc: ReservationService = Depends(get_service),
) -> BookingOutcome:
    return svc.admin_force_cancel(actor=user, reservation_id=payload.reservation_id)


@app.post("/api/admin/users/{user_id}/reconcile")
def admin_reconcile_index(
    user_id: str,
    user: UserRecord = Depends(require_user),
    svc: ReservationService = Depends(get_service),
) -> dict[str, list[str]]:
    return {"reservation_ids": svc.admin_reconcile_index(actor=user, user_id=user_id)}


@app.post("/api/admin/sweep", response_model=SweepResponse)
def admin_sweep(
    user: UserRecord = Depends(require_user),
    svc: ReservationService = Depends(get_service),
) -> SweepResponse:
    return SweepResponse(expired=svc.admin_sweep(actor=user))


@app.get("/api/admin/stats", response_model=StatsResponse)
def admin_stats(
    user: UserRecord = Depends(require_user),
    svc: ReservationService = Depends(get_service),
) -> StatsResponse:
    return StatsResponse(**svc.admin_stats(actor=user))
