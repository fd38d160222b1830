"""
Flat-file storage: one JSON document, read whole and rewritten whole.

Single-process, development-only fallback. Every read-modify-write runs
under one process-local lock and the file is replaced atomically, so
writers inside this process cannot lose updates; separate processes
sharing the file still can.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple, TypeVar

from pydantic import BaseModel

from .errors import DuplicateKeyError, SeatConflict
from .schemas import Admin, Booking, Bus, Passenger, Payment
from .storage import StorageGateway

log = logging.getLogger("busline.storage")

COLLECTIONS = ("vehicles", "bookings", "passengers", "payments", "admins")

M = TypeVar("M", bound=BaseModel)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _doc(record: BaseModel) -> dict[str, Any]:
    return record.model_dump(mode="json")


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class FileStorage(StorageGateway):
    name = "file"

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.RLock()
        with self._lock:
            if not self.path.exists():
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._write({name: [] for name in COLLECTIONS})
                log.info("created data file", extra={"path": str(self.path)})

    def reset(self) -> None:
        with self._lock:
            self._write({name: [] for name in COLLECTIONS})

    # ---- raw document ----
    def _read(self) -> dict[str, list]:
        with self.path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
        for name in COLLECTIONS:
            data.setdefault(name, [])
        return data

    def _write(self, data: dict[str, list]) -> None:
        fd, tmp = tempfile.mkstemp(prefix=self.path.name, suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def _mutate(self, fn: Callable[[dict[str, list]], Any]) -> Any:
        with self._lock:
            data = self._read()
            result = fn(data)
            self._write(data)
            return result

    def _all(self, collection: str, model: type[M]) -> List[M]:
        with self._lock:
            docs = self._read()[collection]
        return [model.model_validate(d) for d in docs]

    def _find(self, collection: str, model: type[M], pred: Callable[[dict], bool]) -> Optional[M]:
        with self._lock:
            docs = self._read()[collection]
        for d in docs:
            if pred(d):
                return model.model_validate(d)
        return None

    # ---- buses ----
    def find_buses(self, origin=None, destination=None, active_only=True) -> List[Bus]:
        buses = self._all("vehicles", Bus)
        if active_only:
            buses = [b for b in buses if b.is_active]
        if origin:
            buses = [b for b in buses if b.origin.lower() == origin.strip().lower()]
        if destination:
            buses = [b for b in buses if b.destination.lower() == destination.strip().lower()]
        return sorted(buses, key=lambda b: (b.departure_time, b.bus_number))

    def get_bus(self, bus_id: str) -> Optional[Bus]:
        return self._find("vehicles", Bus, lambda d: d.get("id") == bus_id)

    def create_bus(self, bus: Bus) -> Bus:
        now = _utcnow()
        stored = bus.model_copy(update={"created_at": bus.created_at or now, "updated_at": now})

        def _do(data):
            if any(d.get("bus_number") == bus.bus_number for d in data["vehicles"]):
                raise DuplicateKeyError("bus_number", bus.bus_number)
            data["vehicles"].append(_doc(stored))

        self._mutate(_do)
        return stored

    def update_bus(self, bus: Bus) -> Bus:
        stored = bus.model_copy(update={"updated_at": _utcnow()})

        def _do(data):
            docs = data["vehicles"]
            if any(d.get("bus_number") == bus.bus_number and d.get("id") != bus.id for d in docs):
                raise DuplicateKeyError("bus_number", bus.bus_number)
            for i, d in enumerate(docs):
                if d.get("id") == bus.id:
                    docs[i] = _doc(stored)
                    return
            raise KeyError(bus.id)

        self._mutate(_do)
        return stored

    def delete_bus(self, bus_id: str) -> None:
        def _do(data):
            data["vehicles"] = [d for d in data["vehicles"] if d.get("id") != bus_id]

        self._mutate(_do)

    # ---- bookings ----
    def find_bookings_for_bus_date(self, bus_id: str, travel_date: date) -> List[Booking]:
        day = travel_date.isoformat()
        with self._lock:
            docs = self._read()["bookings"]
        return [Booking.model_validate(d) for d in docs if d.get("bus_id") == bus_id and d.get("travel_date") == day]

    def find_bookings_for_bus(self, bus_id: str) -> List[Booking]:
        with self._lock:
            docs = self._read()["bookings"]
        return [Booking.model_validate(d) for d in docs if d.get("bus_id") == bus_id]

    def create_booking(self, booking: Booking) -> Booking:
        now = _utcnow()
        stored = booking.model_copy(update={"created_at": booking.created_at or now, "updated_at": now})
        day = booking.travel_date.isoformat()

        def _do(data):
            taken: set[str] = set()
            for d in data["bookings"]:
                if d.get("ticket_number") == booking.ticket_number:
                    raise DuplicateKeyError("ticket_number", booking.ticket_number)
                if d.get("bus_id") == booking.bus_id and d.get("travel_date") == day and d.get("booking_status") != "cancelled":
                    taken.update(d.get("seats") or [])
            conflicting = [s for s in booking.seats if s in taken]
            if conflicting:
                raise SeatConflict(conflicting)
            data["bookings"].append(_doc(stored))

        self._mutate(_do)
        return stored

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        return self._find("bookings", Booking, lambda d: d.get("id") == booking_id)

    def get_booking_by_ticket(self, ticket_number: str) -> Optional[Booking]:
        return self._find("bookings", Booking, lambda d: d.get("ticket_number") == ticket_number)

    def update_booking(self, booking: Booking) -> Booking:
        stored = booking.model_copy(update={"updated_at": _utcnow()})

        def _do(data):
            docs = data["bookings"]
            for i, d in enumerate(docs):
                if d.get("id") == booking.id:
                    docs[i] = _doc(stored)
                    return
            raise KeyError(booking.id)

        self._mutate(_do)
        return stored

    def _matching(self, booking_status=None, payment_status=None, created_from=None, created_to=None) -> List[Booking]:
        out = []
        lo, hi = _utc(created_from), _utc(created_to)
        for b in self._all("bookings", Booking):
            if booking_status and b.booking_status != booking_status:
                continue
            if payment_status and b.payment_status != payment_status:
                continue
            created = _utc(b.created_at)
            if lo is not None and (created is None or created < lo):
                continue
            if hi is not None and (created is None or created >= hi):
                continue
            out.append(b)
        return out

    def list_bookings(self, booking_status=None, payment_status=None, offset=0, limit=10) -> Tuple[List[Booking], int]:
        rows = self._matching(booking_status, payment_status)
        rows.sort(key=lambda b: _utc(b.created_at) or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        offset = max(0, offset)
        return rows[offset : offset + max(1, limit)], len(rows)

    def count_bookings(self, booking_status=None, payment_status=None, created_from=None, created_to=None) -> int:
        return len(self._matching(booking_status, payment_status, created_from, created_to))

    def total_revenue(self) -> float:
        return float(sum(b.total_fare for b in self._matching(payment_status="completed")))

    # ---- passengers ----
    def find_passenger_by_email(self, email: str) -> Optional[Passenger]:
        key = email.strip().lower()
        return self._find("passengers", Passenger, lambda d: (d.get("email") or "").lower() == key)

    def create_passenger(self, passenger: Passenger) -> Passenger:
        stored = passenger.model_copy(
            update={"email": passenger.email.strip().lower(), "created_at": passenger.created_at or _utcnow()}
        )

        def _do(data):
            if any((d.get("email") or "").lower() == stored.email for d in data["passengers"]):
                raise DuplicateKeyError("email", stored.email)
            data["passengers"].append(_doc(stored))

        self._mutate(_do)
        return stored

    # ---- payments ----
    def create_payment(self, payment: Payment) -> Payment:
        stored = payment.model_copy(update={"created_at": payment.created_at or _utcnow()})
        self._mutate(lambda data: data["payments"].append(_doc(stored)))
        return stored

    def get_payment_for_booking(self, booking_id: str) -> Optional[Payment]:
        return self._find("payments", Payment, lambda d: d.get("booking_id") == booking_id)

    def update_payment_for_booking(self, booking_id: str, changes: dict[str, Any]) -> Optional[Payment]:
        def _do(data):
            docs = data["payments"]
            for i, d in enumerate(docs):
                if d.get("booking_id") == booking_id:
                    updated = Payment.model_validate(d).model_copy(update=changes)
                    docs[i] = _doc(updated)
                    return updated
            return None

        return self._mutate(_do)

    # ---- admins ----
    def find_admin_by_email(self, email: str) -> Optional[Admin]:
        key = email.strip().lower()
        return self._find("admins", Admin, lambda d: (d.get("email") or "").lower() == key)

    def get_admin(self, admin_id: str) -> Optional[Admin]:
        return self._find("admins", Admin, lambda d: d.get("id") == admin_id)

    def create_admin(self, admin: Admin) -> Admin:
        stored = admin.model_copy(update={"email": admin.email.strip().lower(), "created_at": admin.created_at or _utcnow()})

        def _do(data):
            if any((d.get("email") or "").lower() == stored.email for d in data["admins"]):
                raise DuplicateKeyError("email", stored.email)
            data["admins"].append(_doc(stored))

        self._mutate(_do)
        return stored
