from __future__ import annotations

import logging
import threading
from datetime import date
from typing import Callable

from deskbook.availability import desk_covers, template_covers, union_timeslots
from deskbook.conflicts import desk_is_reserved
from deskbook.domain import (
    format_slot,
    generate_booking_window,
    in_booking_window,
    normalize_slot,
    slots_are_consecutive,
    sort_slots,
    weekday_key,
)
from deskbook.errors import ConflictError, ValidationError
from deskbook.models import (
    BookingOutcome,
    DateOption,
    DeskOption,
    ReservationRecord,
    ResourceRecord,
    RoomOption,
    SlotOption,
    UserRecord,
    WizardState,
)
from deskbook.services import ReservationService

logger = logging.getLogger(__name__)

OnCreated = Callable[[BookingOutcome], None]


class BookingWizard:
    """Date -> timeslot(s) -> room -> desk funnel for one user.

    Each stage's candidates are computed from the earlier selections, and
    changing a stage clears every stage after it.
    """

    def __init__(
        self,
        service: ReservationService,
        user: UserRecord,
        on_created: OnCreated | None = None,
    ) -> None:
        self.service = service
        self.user = user
        self.on_created = on_created
        self.selected_date: date | None = None
        self.selected_slots: list[str] = []
        self.selected_room_id: str | None = None
        self.selected_desk_id: str | None = None
        self.resources: list[ResourceRecord] = []
        self.reservations: list[ReservationRecord] = []
        self._stale = False
        self.refresh()

    def refresh(self) -> None:
        self.resources = self.service.list_resources()
        self._refresh_reservations()
        self._stale = False

    def invalidate(self) -> None:
        """Mark cached catalog and reservations as out of date."""
        self._stale = True

    def _refresh_reservations(self) -> None:
        if self.selected_date is None:
            self.reservations = []
            return
        self.reservations = self.service.snapshot_reservations(self.selected_date)

    def reset(self) -> None:
        self.selected_date = None
        self.selected_slots = []
        self.selected_room_id = None
        self.selected_desk_id = None
        self.reservations = []

    # date

    def date_options(self) -> list[DateOption]:
        window = generate_booking_window(self.service.today(), self.service.policy.booking_window_days)
        return [
            DateOption(date=value, weekday=weekday_key(value), selected=value == self.selected_date)
            for value in window
        ]

    def select_date(self, value: date) -> None:
        if value == self.selected_date:
            self.reset()
            return
        today = self.service.today()
        if not in_booking_window(value, today, self.service.policy.booking_window_days):
            raise ValidationError("Date outside booking window")
        self.selected_date = value
        self.selected_slots = []
        self.selected_room_id = None
        self.selected_desk_id = None
        self._refresh_reservations()

    # timeslots

    def timeslot_options(self) -> list[str]:
        if self.selected_date is None:
            return []
        return union_timeslots(
            self.service.list_desks(self.resources),
            self.selected_date,
            self.service.now(),
            self.service.policy.availability_grace_minutes,
        )

    def toggle_timeslot(self, slot: str) -> None:
        if self.selected_date is None:
            raise ValidationError("Please select a date first.")
        try:
            slot = normalize_slot(slot)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        if slot in self.selected_slots:
            candidate = [item for item in self.selected_slots if item != slot]
            if not slots_are_consecutive(candidate):
                raise ValidationError(
                    "Removing this timeslot would result in a non-consecutive selection. "
                    "Please remove timeslots from the beginning or end of the selection."
                )
        else:
            if slot not in self.timeslot_options():
                raise ValidationError("This timeslot is not available.")
            candidate = self.selected_slots + [slot]
            if not slots_are_consecutive(candidate):
                raise ValidationError("You can only select consecutive timeslots.")

        self.selected_slots = sort_slots(candidate)
        self.selected_room_id = None
        self.selected_desk_id = None

    # rooms

    def _covers(self, desk: ResourceRecord) -> bool:
        return desk_covers(
            desk,
            self.selected_date,
            self.selected_slots,
            self.service.now(),
            self.service.policy.availability_grace_minutes,
        )

    def _reserved(self, desk: ResourceRecord) -> bool:
        return desk_is_reserved(desk.resource_id, self.selected_date, self.selected_slots, self.reservations)

    def room_options(self) -> list[RoomOption]:
        if self.selected_date is None or not self.selected_slots:
            return []
        options = []
        for room in self.service.list_rooms(self.resources):
            desks = self.service.desks_for_room(room, self.resources)
            if not any(self._covers(desk) for desk in desks):
                continue
            options.append(
                RoomOption(
                    room_id=room.resource_id,
                    name=room.name,
                    reserved=len([desk for desk in desks if self._reserved(desk)]),
                    total=len(desks),
                    selected=room.resource_id == self.selected_room_id,
                )
            )
        return options

    def select_room(self, room_id: str) -> None:
        if self.selected_date is None or not self.selected_slots:
            raise ValidationError("Please select a date and timeslots first.")
        if room_id == self.selected_room_id:
            self.selected_room_id = None
            self.selected_desk_id = None
            return
        if room_id not in {option.room_id for option in self.room_options()}:
            raise ValidationError("No desks available in this room for the selected timeslots.")
        self.selected_room_id = room_id
        self.selected_desk_id = None

    # desks

    def _selected_room(self) -> ResourceRecord | None:
        for room in self.service.list_rooms(self.resources):
            if room.resource_id == self.selected_room_id:
                return room
        return None

    def desk_options(self) -> list[DeskOption]:
        room = self._selected_room()
        if room is None or self.selected_date is None or not self.selected_slots:
            return []
        options = []
        for desk in self.service.desks_for_room(room, self.resources):
            # Template coverage only; reserved desks stay listed but disabled.
            if not template_covers(desk, self.selected_date, self.selected_slots):
                continue
            reserved = self._reserved(desk)
            options.append(
                DeskOption(
                    desk_id=desk.resource_id,
                    name=desk.name,
                    reserved=reserved,
                    available=not reserved,
                    selected=desk.resource_id == self.selected_desk_id,
                )
            )
        return options

    def select_desk(self, desk_id: str) -> None:
        if self.selected_room_id is None:
            raise ValidationError("Please select a room first.")
        if desk_id == self.selected_desk_id:
            self.selected_desk_id = None
            return
        option = next((item for item in self.desk_options() if item.desk_id == desk_id), None)
        if option is None:
            raise ValidationError("This desk is not available for the selected timeslots.")
        if not option.available:
            raise ValidationError("This desk is already reserved for the selected timeslots.")
        self.selected_desk_id = desk_id

    # confirmation

    @property
    def can_confirm(self) -> bool:
        return bool(self.selected_date and self.selected_slots and self.selected_desk_id)

    def confirm(self) -> BookingOutcome:
        if not self.can_confirm:
            raise ValidationError("Please make sure you have selected a date, timeslots, and a desk.")
        try:
            outcome = self.service.create_reservation(
                user=self.user,
                desk_id=self.selected_desk_id,
                value_date=self.selected_date,
                slots=self.selected_slots,
            )
        except ConflictError:
            self._refresh_reservations()
            self.selected_desk_id = None
            raise
        self.reset()
        if self.on_created is not None:
            self.on_created(outcome)
        return outcome

    def state(self) -> WizardState:
        if self._stale:
            self.refresh()
        return WizardState(
            selected_date=self.selected_date,
            selected_slots=list(self.selected_slots),
            selected_room_id=self.selected_room_id,
            selected_desk_id=self.selected_desk_id,
            dates=self.date_options(),
            timeslots=[
                SlotOption(slot=slot, label=format_slot(slot), selected=slot in self.selected_slots)
                for slot in self.timeslot_options()
            ],
            rooms=self.room_options(),
            desks=self.desk_options(),
            can_confirm=self.can_confirm,
        )


class WizardRegistry:
    """One wizard per login session.

    ``is_live`` reports whether a session token is still valid; wizards of
    ended sessions are evicted whenever the registry is touched.
    """

    def __init__(
        self,
        service: ReservationService,
        is_live: Callable[[str], bool] | None = None,
    ) -> None:
        self.service = service
        self.is_live = is_live
        self._wizards: dict[str, BookingWizard] = {}
        self._lock = threading.Lock()

    def sessions(self) -> list[str]:
        with self._lock:
            return list(self._wizards)

    def get(self, session_token: str, user: UserRecord) -> BookingWizard:
        self.evict_ended()
        with self._lock:
            wizard = self._wizards.get(session_token)
            if wizard is not None and wizard.user.user_id == user.user_id:
                return wizard
        # Built outside the lock; construction reads the store.
        wizard = BookingWizard(self.service, user, on_created=self._broadcast)
        with self._lock:
            self._wizards[session_token] = wizard
        return wizard

    def discard(self, session_token: str) -> None:
        with self._lock:
            self._wizards.pop(session_token, None)

    def evict_ended(self) -> list[str]:
        if self.is_live is None:
            return []
        ended = [token for token in self.sessions() if not self.is_live(token)]
        for token in ended:
            self.discard(token)
        return ended

    def _broadcast(self, outcome: BookingOutcome) -> None:
        logger.info("Wizard booked reservation %s", outcome.reservation_id)
        self.evict_ended()
        with self._lock:
            wizards = list(self._wizards.values())
        for wizard in wizards:
            wizard.invalidate()
