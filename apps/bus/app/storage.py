"""
Storage gateway contract.

Two variants implement it: `SqlStorage` (SQLAlchemy, the primary store)
and `FileStorage` (one JSON document, development fallback). The variant is
picked once at startup by `select_storage()`; nothing re-probes per call.

Both variants must make `create_booking` fail atomically with
`SeatConflict` when a seat of the same bus and travel date is already held
by a non-cancelled booking, and with `DuplicateKeyError("ticket_number")`
on a ticket number collision.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, List, Optional, Tuple

from . import settings
from .schemas import Admin, Booking, Bus, Passenger, Payment

log = logging.getLogger("busline.storage")


class StorageGateway(ABC):
    name: str = "abstract"

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        """Release connections held by the variant."""

    @abstractmethod
    def reset(self) -> None:
        """Drop every record (seeding with --reset)."""

    # ---- buses ----
    @abstractmethod
    def find_buses(self, origin: Optional[str] = None, destination: Optional[str] = None, active_only: bool = True) -> List[Bus]:
        """Buses on a route (case-insensitive exact match), ordered by departure time."""

    @abstractmethod
    def get_bus(self, bus_id: str) -> Optional[Bus]: ...

    @abstractmethod
    def create_bus(self, bus: Bus) -> Bus: ...

    @abstractmethod
    def update_bus(self, bus: Bus) -> Bus: ...

    @abstractmethod
    def delete_bus(self, bus_id: str) -> None: ...

    # ---- bookings ----
    @abstractmethod
    def find_bookings_for_bus_date(self, bus_id: str, travel_date: date) -> List[Booking]:
        """Every booking (cancelled ones included) for a bus on a calendar day."""

    @abstractmethod
    def find_bookings_for_bus(self, bus_id: str) -> List[Booking]: ...

    @abstractmethod
    def create_booking(self, booking: Booking) -> Booking: ...

    @abstractmethod
    def get_booking(self, booking_id: str) -> Optional[Booking]: ...

    @abstractmethod
    def get_booking_by_ticket(self, ticket_number: str) -> Optional[Booking]: ...

    @abstractmethod
    def update_booking(self, booking: Booking) -> Booking:
        """Persist a changed booking; a cancelled booking releases its seats."""

    @abstractmethod
    def list_bookings(
        self,
        booking_status: Optional[str] = None,
        payment_status: Optional[str] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> Tuple[List[Booking], int]:
        """Newest first; returns (page, total matching)."""

    @abstractmethod
    def count_bookings(
        self,
        booking_status: Optional[str] = None,
        payment_status: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
    ) -> int: ...

    @abstractmethod
    def total_revenue(self) -> float:
        """Sum of total_fare over bookings whose payment completed."""

    # ---- passengers ----
    @abstractmethod
    def find_passenger_by_email(self, email: str) -> Optional[Passenger]: ...

    @abstractmethod
    def create_passenger(self, passenger: Passenger) -> Passenger: ...

    # ---- payments ----
    @abstractmethod
    def create_payment(self, payment: Payment) -> Payment: ...

    @abstractmethod
    def get_payment_for_booking(self, booking_id: str) -> Optional[Payment]: ...

    @abstractmethod
    def update_payment_for_booking(self, booking_id: str, changes: dict[str, Any]) -> Optional[Payment]: ...

    # ---- admins ----
    @abstractmethod
    def find_admin_by_email(self, email: str) -> Optional[Admin]: ...

    @abstractmethod
    def get_admin(self, admin_id: str) -> Optional[Admin]: ...

    @abstractmethod
    def create_admin(self, admin: Admin) -> Admin: ...


def select_storage(mode: Optional[str] = None, db_url: Optional[str] = None, data_file: Optional[str] = None) -> StorageGateway:
    """
    Pick the storage variant once.

    `auto` probes the database with a trivial query and falls back to the
    JSON file when it is unreachable.
    """
    from .storage_file import FileStorage
    from .storage_sql import SqlStorage

    mode = (mode or settings.STORAGE_MODE or "auto").strip().lower()
    db_url = db_url or settings.DB_URL
    data_file = data_file or settings.DATA_FILE

    if mode == "file":
        log.info("using flat-file storage", extra={"path": data_file})
        return FileStorage(data_file)
    if mode not in ("sql", "auto"):
        raise RuntimeError(f"unknown BUS_STORAGE mode: {mode}")

    try:
        store = SqlStorage.from_url(db_url)
        store.create_schema()
        if store.ping():
            log.info("using database storage", extra={"dialect": store.engine.dialect.name})
            return store
        raise RuntimeError("database ping failed")
    except Exception as e:
        if mode == "sql":
            raise
        log.warning("database unreachable (%s); falling back to flat-file storage", e, extra={"path": data_file})
        return FileStorage(data_file)
