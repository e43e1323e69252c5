from __future__ import annotations

import json
import logging
import shutil
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Callable, Iterable, Iterator
from zipfile import BadZipFile

from filelock import FileLock, Timeout
from openpyxl import Workbook, load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from deskbook.config import settings
from deskbook.constants import (
    META_HEADERS,
    RESERVATIONS_HEADERS,
    RESOURCES_HEADERS,
    STATUS_CANCELLED,
    STATUS_RESERVED,
    USERS_HEADERS,
)
from deskbook.domain import from_iso_date, normalize_bool, sort_slots, to_iso_date
from deskbook.models import ReservationRecord, ResourceRecord, UserRecord
from deskbook.store import StaleWrite, StoreError, UniqueViolation, WriteError

logger = logging.getLogger(__name__)

_STORAGE_ERRORS = (OSError, InvalidFileException, BadZipFile, Timeout)
# Hand-edited cells that no longer decode into records.
_ROW_ERRORS = (KeyError, TypeError, ValueError)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@contextmanager
def _decoding(sheet: str) -> Iterator[None]:
    try:
        yield
    except _ROW_ERRORS as exc:
        logger.error("Malformed row in %s sheet: %s", sheet, exc)
        raise StoreError(f"Malformed row in {sheet} sheet: {exc}") from exc


@dataclass
class Tables:
    users: list[dict[str, Any]]
    resources: list[dict[str, Any]]
    reservations: list[dict[str, Any]]
    meta: list[dict[str, Any]]


class ExcelRepository:
    """Workbook-backed store; every mutation runs under one file lock."""

    def __init__(
        self,
        data_file: Path | None = None,
        backup_dir: Path | None = None,
        lock_file: Path | None = None,
    ) -> None:
        self.data_file = data_file or settings.data_file
        self.backup_dir = backup_dir or settings.backup_dir
        self.lock_file = lock_file or settings.lock_file
        self.lock = FileLock(str(self.lock_file), timeout=settings.lock_timeout_seconds)

    def init_storage(self) -> None:
        self.data_file.parent.mkdir(parents=True, exist_ok=True)
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        if self.data_file.exists():
            return

        wb = Workbook()
        default = wb.active
        wb.remove(default)
        for sheet_name, headers in self._sheet_headers().items():
            ws = wb.create_sheet(sheet_name)
            ws.append(headers)
        wb.save(self.data_file)

    # users

    def list_users(self) -> list[UserRecord]:
        tables = self._read_tables()
        with _decoding("users"):
            return [self._user_from_row(row) for row in tables.users if row.get("user_id")]

    def get_user(self, user_id: str) -> UserRecord | None:
        for user in self.list_users():
            if user.user_id == user_id:
                return user
        return None

    def get_user_by_email(self, email: str) -> UserRecord | None:
        normalized = email.lower()
        for user in self.list_users():
            if user.email and user.email.lower() == normalized:
                return user
        return None

    def upsert_user(
        self,
        name: str,
        enabled: bool = True,
        is_admin: bool = False,
        email: str | None = None,
    ) -> UserRecord:
        now = _utcnow().isoformat()
        normalized_name = name.strip()
        normalized_email = email.lower().strip() if email else None

        def mutate(tables: Tables) -> dict[str, Any]:
            for row in tables.users:
                same_email = normalized_email and str(row.get("email") or "").lower() == normalized_email
                same_name = not normalized_email and self._normalize_user_name(row).lower() == normalized_name.lower()
                if same_email or same_name:
                    row["name"] = normalized_name
                    if normalized_email is not None:
                        row["email"] = normalized_email
                    row["enabled"] = enabled
                    row["is_admin"] = is_admin
                    return row
            row = {
                "user_id": uuid.uuid4().hex,
                "name": normalized_name,
                "email": normalized_email,
                "enabled": enabled,
                "is_admin": is_admin,
                "reservation_ids": "[]",
                "created_at": now,
            }
            tables.users.append(row)
            return row

        row = self._write_tables(mutate)
        with _decoding("users"):
            return self._user_from_row(row)

    def update_user_reservation_index(self, user_id: str, reservation_ids: list[str]) -> None:
        def mutate(tables: Tables) -> None:
            for row in tables.users:
                if row.get("user_id") == user_id:
                    row["reservation_ids"] = json.dumps(list(reservation_ids))
                    return
            raise WriteError(f"User {user_id} not found")

        self._write_tables(mutate)

    # resources

    def list_resources(self) -> list[ResourceRecord]:
        tables = self._read_tables()
        with _decoding("resources"):
            return [self._resource_from_row(row) for row in tables.resources if row.get("resource_id")]

    def get_resource(self, resource_id: str) -> ResourceRecord | None:
        for resource in self.list_resources():
            if resource.resource_id == resource_id:
                return resource
        return None

    def upsert_resource(self, resource: ResourceRecord) -> ResourceRecord:
        payload = self._resource_to_row(resource)

        def mutate(tables: Tables) -> dict[str, Any]:
            for row in tables.resources:
                if row.get("resource_id") == resource.resource_id:
                    row.update(payload)
                    return row
            tables.resources.append(payload)
            return payload

        row = self._write_tables(mutate)
        with _decoding("resources"):
            return self._resource_from_row(row)

    def update_resource_availability(self, resource_id: str, availability: dict[str, list[str]]) -> None:
        def mutate(tables: Tables) -> None:
            for row in tables.resources:
                if row.get("resource_id") == resource_id:
                    row["availability"] = json.dumps(availability)
                    return
            raise WriteError(f"Resource {resource_id} not found")

        self._write_tables(mutate)

    # reservations

    def list_reservations(
        self,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[ReservationRecord]:
        tables = self._read_tables()
        rows: list[ReservationRecord] = []
        with _decoding("reservations"):
            for row in tables.reservations:
                if not row.get("reservation_id"):
                    continue
                value_date = self._parse_date(row["date"])
                if start_date and value_date < start_date:
                    continue
                if end_date and value_date > end_date:
                    continue
                rows.append(self._reservation_from_row(row))
        return rows

    def list_reservations_for_desk(self, desk_id: str, since: date | None = None) -> list[ReservationRecord]:
        return [item for item in self.list_reservations(start_date=since) if item.resource_id == desk_id]

    def list_reservations_for_user(
        self,
        user_id: str,
        since: date | None = None,
        exclude_status: Iterable[str] = (STATUS_CANCELLED,),
    ) -> list[ReservationRecord]:
        excluded = set(exclude_status)
        return [
            item
            for item in self.list_reservations(start_date=since)
            if item.user_id == user_id and item.status not in excluded
        ]

    def get_reservation(self, reservation_id: str) -> ReservationRecord | None:
        for item in self.list_reservations():
            if item.reservation_id == reservation_id:
                return item
        return None

    def insert_reservation(
        self,
        resource_id: str,
        user_id: str,
        value_date: date,
        slots: list[str],
    ) -> ReservationRecord:
        now = _utcnow().isoformat()
        wanted = set(slots)

        def mutate(tables: Tables) -> dict[str, Any]:
            # Uniqueness on (resource, date, slot) and (user, date, slot),
            # checked under the lock so concurrent writers cannot both pass.
            for existing in tables.reservations:
                if (existing.get("status") or STATUS_RESERVED) == STATUS_CANCELLED:
                    continue
                if self._parse_date(existing["date"]) != value_date:
                    continue
                if not wanted.intersection(self._decode_list(existing.get("timeslots"))):
                    continue
                if existing.get("resource_id") == resource_id:
                    raise UniqueViolation("Desk already reserved", existing.get("reservation_id"))
                if existing.get("user_id") == user_id:
                    raise UniqueViolation("User already has a desk in this slot", existing.get("reservation_id"))
            row = {
                "reservation_id": uuid.uuid4().hex,
                "user_id": user_id,
                "resource_id": resource_id,
                "date": to_iso_date(value_date),
                "timeslots": json.dumps(sort_slots(wanted)),
                "status": STATUS_RESERVED,
                "created_at": now,
                "updated_at": now,
            }
            tables.reservations.append(row)
            return row

        row = self._write_tables(mutate)
        with _decoding("reservations"):
            return self._reservation_from_row(row)

    def update_reservation_status(
        self,
        reservation_id: str,
        status: str,
        expected: str | None = None,
    ) -> ReservationRecord:
        now = _utcnow().isoformat()

        def mutate(tables: Tables) -> dict[str, Any]:
            for row in tables.reservations:
                if row.get("reservation_id") != reservation_id:
                    continue
                current = row.get("status") or STATUS_RESERVED
                if expected is not None and current != expected:
                    raise StaleWrite(f"Reservation is {current}, expected {expected}")
                row["status"] = status
                row["updated_at"] = now
                return row
            raise StaleWrite("Reservation no longer exists")

        row = self._write_tables(mutate)
        with _decoding("reservations"):
            return self._reservation_from_row(row)

    def delete_reservation(self, reservation_id: str) -> bool:
        def mutate(tables: Tables) -> bool:
            initial = len(tables.reservations)
            tables.reservations = [
                row for row in tables.reservations if row.get("reservation_id") != reservation_id
            ]
            return len(tables.reservations) != initial

        return bool(self._write_tables(mutate))

    # workbook plumbing

    def _sheet_headers(self) -> dict[str, list[str]]:
        return {
            "users": USERS_HEADERS,
            "resources": RESOURCES_HEADERS,
            "reservations": RESERVATIONS_HEADERS,
            "meta": META_HEADERS,
        }

    def _load_tables(self, wb: Workbook) -> Tables:
        return Tables(
            users=self._read_sheet(wb, "users", USERS_HEADERS),
            resources=self._read_sheet(wb, "resources", RESOURCES_HEADERS),
            reservations=self._read_sheet(wb, "reservations", RESERVATIONS_HEADERS),
            meta=self._read_sheet(wb, "meta", META_HEADERS),
        )

    def _read_tables(self) -> Tables:
        try:
            self.init_storage()
            wb = load_workbook(self.data_file)
        except _STORAGE_ERRORS as exc:
            raise StoreError(f"Could not read {self.data_file}: {exc}") from exc
        try:
            return self._load_tables(wb)
        finally:
            wb.close()

    def _write_tables(self, mutator: Callable[[Tables], Any]) -> Any:
        try:
            self.init_storage()
            with self.lock:
                wb = load_workbook(self.data_file)
                try:
                    tables = self._load_tables(wb)
                    result = mutator(tables)
                    self._write_sheet(wb, "users", USERS_HEADERS, tables.users)
                    self._write_sheet(wb, "resources", RESOURCES_HEADERS, tables.resources)
                    self._write_sheet(wb, "reservations", RESERVATIONS_HEADERS, tables.reservations)
                    self._write_sheet(wb, "meta", META_HEADERS, tables.meta)
                    self._persist_workbook(wb)
                    return result
                finally:
                    wb.close()
        except _STORAGE_ERRORS as exc:
            raise WriteError(f"Could not write {self.data_file}: {exc}") from exc
        except _ROW_ERRORS as exc:
            logger.error("Malformed row while writing %s: %s", self.data_file, exc)
            raise WriteError(f"Malformed row in {self.data_file}: {exc}") from exc

    def _persist_workbook(self, workbook: Workbook) -> None:
        # Same directory as the data file so the final swap is an atomic rename.
        with NamedTemporaryFile(
            dir=self.data_file.parent,
            prefix=".deskbook-",
            suffix=".xlsx",
            delete=False,
        ) as tmp:
            temp_path = Path(tmp.name)
        try:
            workbook.save(temp_path)
            if self.data_file.exists():
                stamp = _utcnow().strftime("%Y%m%d%H%M%S%f")
                backup_path = self.backup_dir / f"deskbook-{stamp}.xlsx"
                shutil.copy2(self.data_file, backup_path)
            temp_path.replace(self.data_file)
        finally:
            if temp_path.exists():
                temp_path.unlink(missing_ok=True)

    def _read_sheet(self, workbook: Workbook, name: str, headers: list[str]) -> list[dict[str, Any]]:
        if name not in workbook.sheetnames:
            return []
        ws = workbook[name]
        rows: list[dict[str, Any]] = []
        for row in ws.iter_rows(min_row=2, values_only=True):
            if all(item is None for item in row):
                continue
            payload: dict[str, Any] = {}
            for index, header in enumerate(headers):
                payload[header] = row[index] if index < len(row) else None
            rows.append(payload)
        return rows

    def _write_sheet(
        self,
        workbook: Workbook,
        name: str,
        headers: list[str],
        rows: list[dict[str, Any]],
    ) -> None:
        if name not in workbook.sheetnames:
            workbook.create_sheet(name)
        ws = workbook[name]
        ws.delete_rows(1, ws.max_row)
        ws.append(headers)
        for row in rows:
            ws.append([row.get(header) for header in headers])

    # row conversion

    def _user_from_row(self, row: dict[str, Any]) -> UserRecord:
        return UserRecord(
            user_id=row["user_id"],
            name=self._normalize_user_name(row),
            email=row.get("email") or None,
            enabled=normalize_bool(row["enabled"]),
            is_admin=normalize_bool(row["is_admin"]),
            reservation_ids=row.get("reservation_ids") or [],
            created_at=self._parse_datetime(row["created_at"]),
        )

    def _resource_from_row(self, row: dict[str, Any]) -> ResourceRecord:
        return ResourceRecord(
            resource_id=str(row["resource_id"]),
            type=row["type"],
            name=row.get("name") or str(row["resource_id"]),
            sub_resources=row.get("sub_resources") or [],
            availability=row.get("availability"),
            capacity=row.get("capacity"),
            capacity_limit=row.get("capacity_limit"),
            enabled=normalize_bool(row["enabled"]) if row.get("enabled") is not None else True,
        )

    def _resource_to_row(self, resource: ResourceRecord) -> dict[str, Any]:
        return {
            "resource_id": resource.resource_id,
            "type": resource.type,
            "name": resource.name,
            "sub_resources": json.dumps(resource.sub_resources),
            "availability": json.dumps(resource.availability),
            "capacity": resource.capacity,
            "capacity_limit": resource.capacity_limit,
            "enabled": resource.enabled,
        }

    def _reservation_from_row(self, row: dict[str, Any]) -> ReservationRecord:
        return ReservationRecord(
            reservation_id=row["reservation_id"],
            user_id=row["user_id"],
            resource_id=row["resource_id"],
            date=self._parse_date(row["date"]),
            timeslots=row.get("timeslots") or [],
            status=row.get("status") or STATUS_RESERVED,
            created_at=self._parse_datetime(row["created_at"]),
            updated_at=self._parse_datetime(row["updated_at"]),
        )

    def _decode_list(self, raw: Any) -> list[str]:
        if not raw:
            return []
        if isinstance(raw, str):
            return [item.replace(":", "") for item in json.loads(raw)]
        return list(raw)

    def _parse_date(self, raw: Any) -> date:
        if isinstance(raw, date) and not isinstance(raw, datetime):
            return raw
        if isinstance(raw, datetime):
            return raw.date()
        return from_iso_date(str(raw))

    def _parse_datetime(self, raw: Any) -> datetime:
        if isinstance(raw, datetime):
            return raw
        return datetime.fromisoformat(str(raw))

    def _normalize_user_name(self, row: dict[str, Any]) -> str:
        name = str(row.get("name") or "").strip()
        if name:
            return name
        email = str(row.get("email") or "").strip()
        if "@" in email:
            return email.split("@", 1)[0]
        return email or "user"
