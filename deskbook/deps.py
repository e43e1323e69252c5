from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException

from deskbook.config import settings
from deskbook.models import UserRecord
from deskbook.repository import ExcelRepository
from deskbook.security import AuthStore
from deskbook.services import BookingPolicy, ReservationService
from deskbook.store import SystemClock
from deskbook.wizard import BookingWizard, WizardRegistry

repo = ExcelRepository()
auth_store = AuthStore()
service = ReservationService(
    repo=repo,
    clock=SystemClock(timezone=settings.timezone),
    policy=BookingPolicy.from_settings(settings),
)
wizards = WizardRegistry(service, is_live=auth_store.is_active)
auth_store.on_session_end = wizards.discard


def get_service() -> ReservationService:
    return service


def get_auth_store() -> AuthStore:
    return auth_store


def get_wizards() -> WizardRegistry:
    return wizards


@dataclass
class Session:
    token: str
    user: UserRecord


def require_session(
    token: str | None = Header(default=None, alias="Authorization"),
    store: AuthStore = Depends(get_auth_store),
    svc: ReservationService = Depends(get_service),
) -> Session:
    if not token:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    parts = token.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid Authorization header")
    session_token = parts[1].strip()
    user_id = store.get_session_user(session_token)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or expired session")
    return Session(token=session_token, user=svc.get_user_or_404(user_id))


def require_user(session: Session = Depends(require_session)) -> UserRecord:
    return session.user


def require_wizard(
    session: Session = Depends(require_session),
    registry: WizardRegistry = Depends(get_wizards),
) -> BookingWizard:
    return registry.get(session.token, session.user)
