from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from itertools import groupby
from typing import Any, Iterator

from deskbook.availability import desk_covers, parse_availability
from deskbook.config import Settings
from deskbook.conflicts import conflicting_reservation, user_conflict
from deskbook.constants import (
    CANCEL_MODE_DELETE,
    CANCEL_MODE_MARK,
    PHASE_ACTIVE,
    PHASE_EXPIRED,
    PHASE_UPCOMING,
    RESOURCE_DESK,
    RESOURCE_ROOM,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_RESERVED,
)
from deskbook.domain import (
    at_minutes,
    first_slot_start,
    in_booking_window,
    normalize_slot,
    slots_are_consecutive,
    sort_slots,
    time_range,
    weekday_key,
)
from deskbook.errors import (
    AvailabilityRevertError,
    CheckInWindowClosedError,
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    LocationUnavailableError,
    NotFoundError,
    TooFarAwayError,
    TransportError,
    ValidationError,
)
from deskbook.geo import LocationProvider, haversine_km
from deskbook.models import (
    AdminResourceUpsert,
    BookingOutcome,
    DayReservations,
    Position,
    ReservationRecord,
    ResourceRecord,
    UpcomingReservation,
    UserRecord,
)
from deskbook.store import (
    Clock,
    ReservationStore,
    StaleWrite,
    StoreError,
    SystemClock,
    UniqueViolation,
    WriteError,
)

logger = logging.getLogger(__name__)

INDEX_WARNING = (
    "Your reservation list could not be updated; it will be repaired on the next sync."
)


def _chronological(reservation: ReservationRecord) -> tuple[date, list[str]]:
    # Compact HHMM slots sort lexicographically in time order.
    return reservation.date, reservation.timeslots[:1]


@contextmanager
def _transport(action: str) -> Iterator[None]:
    try:
        yield
    except StoreError as exc:
        logger.error("%s failed: %s", action, exc)
        raise TransportError(f"{action} failed: {exc}") from exc


@dataclass(frozen=True)
class BookingPolicy:
    booking_window_days: int = 8
    availability_grace_minutes: int = 15
    checkin_early_minutes: int = 5
    checkin_late_minutes: int = 15
    cancel_mode: str = CANCEL_MODE_MARK
    site: Position | None = None
    radius_km: float = 1.0

    @classmethod
    def from_settings(cls, config: Settings) -> "BookingPolicy":
        site = None
        if config.site_latitude is not None and config.site_longitude is not None:
            site = Position(latitude=config.site_latitude, longitude=config.site_longitude)
        if config.cancel_mode not in {CANCEL_MODE_MARK, CANCEL_MODE_DELETE}:
            raise ValueError(f"Unsupported cancel mode: {config.cancel_mode}")
        return cls(
            booking_window_days=config.booking_window_days,
            availability_grace_minutes=config.availability_grace_minutes,
            checkin_early_minutes=config.checkin_early_minutes,
            checkin_late_minutes=config.checkin_late_minutes,
            cancel_mode=config.cancel_mode,
            site=site,
            radius_km=config.proximity_threshold_meters / 1000,
        )


@dataclass
class ReservationService:
    repo: ReservationStore
    clock: Clock = field(default_factory=SystemClock)
    policy: BookingPolicy = field(default_factory=BookingPolicy)

    def now(self) -> datetime:
        return self.clock.now()

    def today(self) -> date:
        return self.now().date()

    # users

    def list_users(self) -> list[UserRecord]:
        with _transport("Loading users"):
            return [user for user in self.repo.list_users() if user.enabled]

    def ensure_user_for_email(self, email: str) -> UserRecord:
        with _transport("Loading user"):
            user = self.repo.get_user_by_email(email)
            if user:
                if not user.enabled:
                    raise ForbiddenError("User disabled")
                return user
            return self.repo.upsert_user(name=email.split("@", 1)[0], email=email)

    def get_user_or_404(self, user_id: str) -> UserRecord:
        with _transport("Loading user"):
            user = self.repo.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        if not user.enabled:
            raise ForbiddenError("User disabled")
        return user

    # catalog

    def list_resources(self) -> list[ResourceRecord]:
        with _transport("Loading resources"):
            return [item for item in self.repo.list_resources() if item.enabled]

    def list_rooms(self, resources: list[ResourceRecord] | None = None) -> list[ResourceRecord]:
        catalog = self.list_resources() if resources is None else resources
        return [item for item in catalog if item.type == RESOURCE_ROOM]

    def list_desks(self, resources: list[ResourceRecord] | None = None) -> list[ResourceRecord]:
        catalog = self.list_resources() if resources is None else resources
        return [item for item in catalog if item.type == RESOURCE_DESK]

    def desks_for_room(
        self,
        room: ResourceRecord,
        resources: list[ResourceRecord] | None = None,
    ) -> list[ResourceRecord]:
        if not room.sub_resources:
            return []
        members = set(room.sub_resources)
        desks = [item for item in self.list_desks(resources) if item.resource_id in members]
        return sorted(desks, key=lambda item: item.name)

    def snapshot_reservations(self, value_date: date) -> list[ReservationRecord]:
        with _transport("Loading reservations"):
            return self.repo.list_reservations(start_date=value_date, end_date=value_date)

    # reservation lifecycle

    def create_reservation(
        self,
        user: UserRecord,
        desk_id: str,
        value_date: date,
        slots: list[str],
    ) -> BookingOutcome:
        normalized = self._validate_slots(slots)
        desk = self._get_desk_or_404(desk_id)
        self._validate_date(value_date)
        if not desk_covers(desk, value_date, normalized, self.now(), self.policy.availability_grace_minutes):
            raise ValidationError("The selected timeslots are not available for this desk")

        # Cached lists in the caller may be stale; this read is authoritative.
        with _transport("Checking reservations"):
            desk_rows = self.repo.list_reservations_for_desk(desk_id, since=value_date)
            user_rows = self.repo.list_reservations_for_user(user.user_id, since=value_date)
        blocking = conflicting_reservation(desk_id, value_date, normalized, desk_rows)
        if blocking:
            raise ConflictError(
                "Sorry, this desk has already been reserved for one or more of the selected "
                "timeslots. Please choose a different desk or timeslots.",
                blocking,
            )
        own = user_conflict(user.user_id, value_date, normalized, user_rows)
        if own:
            raise ConflictError("You already have a reservation at this time.", own)

        with _transport("Creating reservation"):
            try:
                reservation = self.repo.insert_reservation(
                    resource_id=desk_id,
                    user_id=user.user_id,
                    value_date=value_date,
                    slots=normalized,
                )
            except UniqueViolation as exc:
                existing = self.repo.get_reservation(exc.reservation_id) if exc.reservation_id else None
                raise ConflictError(str(exc), existing) from exc
        logger.info(
            "Reservation %s created for user %s on desk %s %s %s",
            reservation.reservation_id,
            user.user_id,
            desk_id,
            value_date.isoformat(),
            time_range(normalized),
        )

        synced = self._index_add(user.user_id, reservation.reservation_id)
        return BookingOutcome(
            reservation=reservation,
            reservation_id=reservation.reservation_id,
            index_synced=synced,
            warning=None if synced else INDEX_WARNING,
        )

    def checkin_window(self, reservation: ReservationRecord) -> tuple[datetime, datetime]:
        start = at_minutes(reservation.date, first_slot_start(reservation.timeslots))
        return (
            start - timedelta(minutes=self.policy.checkin_early_minutes),
            start + timedelta(minutes=self.policy.checkin_late_minutes),
        )

    def reservation_phase(self, reservation: ReservationRecord, now: datetime | None = None) -> str:
        current = now or self.now()
        if reservation.date > current.date():
            return PHASE_UPCOMING
        if reservation.date < current.date() or not reservation.timeslots:
            return PHASE_EXPIRED
        opens, closes = self.checkin_window(reservation)
        if opens <= current <= closes:
            return PHASE_ACTIVE
        if current > closes:
            return PHASE_EXPIRED
        return PHASE_UPCOMING

    def check_in(
        self,
        user: UserRecord,
        reservation_id: str,
        location: LocationProvider | None = None,
    ) -> ReservationRecord:
        reservation = self._get_reservation_or_404(reservation_id)
        self._require_owner(user, reservation)
        if reservation.status != STATUS_RESERVED:
            raise InvalidTransitionError(f"Reservation is already {reservation.status}")
        if not reservation.timeslots:
            raise ValidationError("Invalid reservation: no timeslots found.")

        opens, closes = self.checkin_window(reservation)
        if not opens <= self.now() <= closes:
            raise CheckInWindowClosedError(
                f"You can only check in from {self.policy.checkin_early_minutes} minutes before "
                f"until {self.policy.checkin_late_minutes} minutes after the start of your reservation."
            )

        if self.policy.site is not None:
            if location is None:
                raise LocationUnavailableError("Location is required to check in.")
            distance = haversine_km(location.current_position(), self.policy.site)
            if distance > self.policy.radius_km:
                raise TooFarAwayError(distance, self.policy.radius_km)

        with _transport("Check-in"):
            try:
                updated = self.repo.update_reservation_status(
                    reservation_id, STATUS_COMPLETED, expected=STATUS_RESERVED
                )
            except StaleWrite as exc:
                raise InvalidTransitionError(str(exc)) from exc
        logger.info("Reservation %s checked in by user %s", reservation_id, user.user_id)
        return updated

    def cancel_reservation(
        self,
        actor: UserRecord,
        reservation_id: str,
        confirmed: bool,
    ) -> BookingOutcome:
        if not confirmed:
            raise ValidationError("Please confirm the cancellation.")
        reservation = self._get_reservation_or_404(reservation_id)
        self._require_owner(actor, reservation)
        return self._cancel(reservation, reason=f"cancelled by {actor.user_id}")

    def auto_expire(self, reservation: ReservationRecord) -> bool:
        """Cancel ``reservation`` if its check-in window elapsed unused."""
        if reservation.status != STATUS_RESERVED or not reservation.timeslots:
            return False
        _, closes = self.checkin_window(reservation)
        if self.now() <= closes:
            return False
        try:
            self._cancel(reservation, reason="missed check-in")
        except InvalidTransitionError:
            # Checked in or cancelled between our read and the write.
            logger.info("Reservation %s changed before it could expire", reservation.reservation_id)
            return False
        return True

    def sweep_expired(self, user_id: str | None = None) -> list[str]:
        with _transport("Expiry sweep"):
            if user_id:
                candidates = self.repo.list_reservations_for_user(
                    user_id, exclude_status=(STATUS_CANCELLED, STATUS_COMPLETED)
                )
            else:
                candidates = [
                    item for item in self.repo.list_reservations() if item.status == STATUS_RESERVED
                ]

        expired: list[str] = []
        affected: set[str] = set()
        for reservation in candidates:
            try:
                if self.auto_expire(reservation):
                    expired.append(reservation.reservation_id)
                    affected.add(reservation.user_id)
                    logger.info("Reservation %s automatically cancelled", reservation.reservation_id)
            except TransportError as exc:
                logger.error("Failed to auto-cancel reservation %s: %s", reservation.reservation_id, exc.detail)

        for owner in sorted(affected):
            try:
                self.reconcile_user_index(owner)
            except (TransportError, NotFoundError) as exc:
                logger.warning("Could not reconcile reservation index for %s: %s", owner, exc.detail)
        return expired

    def reconcile_user_index(self, user_id: str) -> list[str]:
        """Rebuild the user's reservation-id cache from the reservation table."""
        with _transport("Rebuilding reservation index"):
            user = self.repo.get_user(user_id)
            if user is None:
                raise NotFoundError("User not found")
            rows = self.repo.list_reservations_for_user(user_id)
            rows.sort(key=_chronological)
            ids = [item.reservation_id for item in rows]
            if user.reservation_ids != ids:
                logger.info("Reservation index for user %s drifted, rebuilding", user_id)
                self.repo.update_user_reservation_index(user_id, ids)
        return ids

    def list_upcoming(self, user: UserRecord) -> list[DayReservations]:
        now = self.now()
        with _transport("Loading reservations"):
            rows = self.repo.list_reservations_for_user(user.user_id, since=now.date())
        names = {item.resource_id: item.name for item in self.list_resources()}
        rows.sort(key=_chronological)

        grouped: list[DayReservations] = []
        for value_date, items in groupby(rows, key=lambda item: item.date):
            entries = []
            for item in items:
                phase = self.reservation_phase(item, now)
                entries.append(
                    UpcomingReservation(
                        reservation=item,
                        resource_name=names.get(item.resource_id),
                        phase=phase,
                        can_check_in=phase == PHASE_ACTIVE and item.status == STATUS_RESERVED,
                        time_range=time_range(item.timeslots),
                    )
                )
            grouped.append(DayReservations(date=value_date, reservations=entries))
        return grouped

    # admin

    def admin_upsert_user(
        self,
        actor: UserRecord,
        email: str,
        name: str | None,
        enabled: bool,
        is_admin: bool,
    ) -> UserRecord:
        self._require_admin(actor)
        with _transport("Saving user"):
            return self.repo.upsert_user(
                name=name or email.split("@", 1)[0],
                enabled=enabled,
                is_admin=is_admin,
                email=email,
            )

    def admin_upsert_resource(self, actor: UserRecord, payload: AdminResourceUpsert) -> ResourceRecord:
        self._require_admin(actor)
        availability = self._parse_admin_availability(payload.availability)
        if payload.type == RESOURCE_DESK and payload.sub_resources:
            raise ValidationError("Desks cannot contain other resources")
        if payload.sub_resources:
            with _transport("Loading resources"):
                known = {item.resource_id: item for item in self.repo.list_resources()}
            for child_id in payload.sub_resources:
                child = known.get(child_id)
                if child is None or child.type != RESOURCE_DESK:
                    raise ValidationError(f"Room members must be desks: {child_id}")
        resource = ResourceRecord(
            resource_id=payload.resource_id or uuid.uuid4().hex,
            type=payload.type,
            name=payload.name,
            sub_resources=payload.sub_resources,
            availability=availability,
            capacity=payload.capacity,
            capacity_limit=payload.capacity_limit,
            enabled=payload.enabled,
        )
        with _transport("Saving resource"):
            return self.repo.upsert_resource(resource)

    def admin_set_availability(self, actor: UserRecord, resource_id: str, raw: Any) -> ResourceRecord:
        """Replace a template, reverting if active bookings would fall outside it."""
        self._require_admin(actor)
        resource = self._get_resource_or_404(resource_id)
        template = self._parse_admin_availability(raw)
        original = resource.availability

        with _transport("Updating availability"):
            self.repo.update_resource_availability(resource_id, template)

        try:
            with _transport("Verifying reservations"):
                rows = self.repo.list_reservations_for_desk(resource_id, since=self.today())
        except TransportError:
            self._revert_availability(resource_id, original)
            raise
        stranded = [
            item
            for item in rows
            if item.status == STATUS_RESERVED
            and not set(item.timeslots) <= set(template.get(weekday_key(item.date), []))
        ]
        if stranded:
            self._revert_availability(resource_id, original)
            raise ConflictError(
                f"{len(stranded)} active reservation(s) fall outside the new availability; change reverted",
                stranded[0],
            )
        logger.info("Availability of resource %s updated", resource_id)
        return resource.model_copy(update={"availability": template})

    def admin_force_cancel(self, actor: UserRecord, reservation_id: str) -> BookingOutcome:
        self._require_admin(actor)
        reservation = self._get_reservation_or_404(reservation_id)
        return self._cancel(reservation, reason=f"force-cancelled by {actor.user_id}")

    def admin_reconcile_index(self, actor: UserRecord, user_id: str) -> list[str]:
        self._require_admin(actor)
        return self.reconcile_user_index(user_id)

    def admin_sweep(self, actor: UserRecord) -> list[str]:
        self._require_admin(actor)
        return self.sweep_expired()

    def admin_stats(self, actor: UserRecord) -> dict[str, int]:
        self._require_admin(actor)
        with _transport("Loading statistics"):
            users = self.repo.list_users()
            resources = self.repo.list_resources()
            reservations = self.repo.list_reservations()
        return {
            "total_reservations": len(reservations),
            "active_reservations": len([r for r in reservations if r.status == STATUS_RESERVED]),
            "active_users": len([u for u in users if u.enabled]),
            "enabled_desks": len([d for d in resources if d.enabled and d.type == RESOURCE_DESK]),
            "enabled_rooms": len([d for d in resources if d.enabled and d.type == RESOURCE_ROOM]),
        }

    # helpers

    def _cancel(self, reservation: ReservationRecord, reason: str) -> BookingOutcome:
        if reservation.status != STATUS_RESERVED:
            raise InvalidTransitionError(
                f"Cannot cancel a reservation that is already {reservation.status}"
            )
        record: ReservationRecord | None = None
        with _transport("Cancelling reservation"):
            if self.policy.cancel_mode == CANCEL_MODE_DELETE:
                if not self.repo.delete_reservation(reservation.reservation_id):
                    raise InvalidTransitionError("Reservation was already removed")
            else:
                try:
                    record = self.repo.update_reservation_status(
                        reservation.reservation_id, STATUS_CANCELLED, expected=STATUS_RESERVED
                    )
                except StaleWrite as exc:
                    raise InvalidTransitionError(str(exc)) from exc
        logger.info("Reservation %s %s", reservation.reservation_id, reason)

        synced = self._index_remove(reservation.user_id, reservation.reservation_id)
        return BookingOutcome(
            reservation=record,
            reservation_id=reservation.reservation_id,
            index_synced=synced,
            warning=None if synced else INDEX_WARNING,
        )

    def _index_add(self, user_id: str, reservation_id: str) -> bool:
        try:
            user = self.repo.get_user(user_id)
            if user is None:
                raise WriteError(f"User {user_id} not found")
            ids = [item for item in user.reservation_ids if item != reservation_id]
            self.repo.update_user_reservation_index(user_id, ids + [reservation_id])
        except StoreError as exc:
            logger.warning("Reservation %s saved but index of user %s not updated: %s", reservation_id, user_id, exc)
            return False
        return True

    def _index_remove(self, user_id: str, reservation_id: str) -> bool:
        try:
            user = self.repo.get_user(user_id)
            if user is None:
                raise WriteError(f"User {user_id} not found")
            ids = [item for item in user.reservation_ids if item != reservation_id]
            if ids != user.reservation_ids:
                self.repo.update_user_reservation_index(user_id, ids)
        except StoreError as exc:
            logger.warning("Reservation %s removed but index of user %s not updated: %s", reservation_id, user_id, exc)
            return False
        return True

    def _revert_availability(self, resource_id: str, original: dict[str, list[str]]) -> None:
        try:
            self.repo.update_resource_availability(resource_id, original)
        except StoreError as exc:
            message = (
                f"CRITICAL: Failed to revert availability change for resource {resource_id}. "
                f"Please check resource availability manually. Error: {exc}"
            )
            logger.critical(message)
            raise AvailabilityRevertError(message) from exc
        logger.warning("Availability change for resource %s reverted", resource_id)

    def _parse_admin_availability(self, raw: Any) -> dict[str, list[str]]:
        template = parse_availability(raw)
        if raw and not template:
            raise ValidationError("Availability payload is malformed")
        for weekday, slots in template.items():
            if sort_slots(slots) != slots:
                raise ValidationError(f"Availability for {weekday} must be listed chronologically")
        return template

    def _validate_slots(self, slots: list[str]) -> list[str]:
        if not slots:
            raise ValidationError("Please select at least one timeslot.")
        try:
            normalized = sort_slots({normalize_slot(slot) for slot in slots})
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if not slots_are_consecutive(normalized):
            raise ValidationError("You can only select consecutive timeslots.")
        return normalized

    def _validate_date(self, value_date: date) -> None:
        if not in_booking_window(value_date, self.today(), self.policy.booking_window_days):
            raise ValidationError("Date outside booking window")

    def _get_resource_or_404(self, resource_id: str) -> ResourceRecord:
        with _transport("Loading resource"):
            resource = self.repo.get_resource(resource_id)
        if not resource:
            raise NotFoundError("Resource not found")
        return resource

    def _get_desk_or_404(self, desk_id: str) -> ResourceRecord:
        desk = self._get_resource_or_404(desk_id)
        if desk.type != RESOURCE_DESK:
            raise ValidationError("Only desks can be reserved")
        if not desk.enabled:
            raise ValidationError("Desk disabled")
        return desk

    def _get_reservation_or_404(self, reservation_id: str) -> ReservationRecord:
        with _transport("Loading reservation"):
            reservation = self.repo.get_reservation(reservation_id)
        if not reservation:
            raise NotFoundError("Reservation not found")
        return reservation

    def _require_owner(self, user: UserRecord, reservation: ReservationRecord) -> None:
        if reservation.user_id != user.user_id and not user.is_admin:
            raise ForbiddenError("Cannot change other users reservations")

    def _require_admin(self, user: UserRecord) -> None:
        if not user.is_admin:
            raise ForbiddenError("Admin required")
