from __future__ import annotations

import string
import threading
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Sequence, Tuple

from .errors import InvalidSeat, NotFound, ValidationError
from .schemas import Booking, Bus, SeatLayout
from .storage import StorageGateway


def seat_ids(layout: SeatLayout) -> List[str]:
    """All seat ids of a layout, row-major: 1A, 1B, ..., {rows}{last letter}."""
    letters = string.ascii_uppercase[: layout.seats_per_row]
    return [f"{row}{col}" for row in range(1, layout.rows + 1) for col in letters]


def normalize_seat_id(raw: str) -> str:
    return (raw or "").strip().upper()


def is_valid_seat(layout: SeatLayout, seat_id: str) -> bool:
    sid = normalize_seat_id(seat_id)
    if len(sid) < 2 or not sid[-1].isalpha():
        return False
    row, col = sid[:-1], sid[-1]
    # "03B" is not a cell name, only "3B" is
    if not row.isdigit() or row.startswith("0"):
        return False
    return 1 <= int(row) <= layout.rows and col in string.ascii_uppercase[: layout.seats_per_row]


def quote_fare(fare: float, seat_count: int) -> float:
    if seat_count < 1:
        raise ValidationError("At least one seat must be selected")
    return fare * seat_count


def taken_seats(bookings: Iterable[Booking]) -> List[str]:
    """Seats held by non-cancelled bookings, in booking order."""
    out: List[str] = []
    for b in bookings:
        if b.booking_status == "cancelled":
            continue
        out.extend(b.seats)
    return out


@dataclass
class Availability:
    ok: bool
    conflicting_seats: List[str] = field(default_factory=list)


class ConflictResolver:
    """
    Seat availability for one bus on one calendar day.

    A bus departs once per date, so every booking for (bus, date) draws
    from the same seat pool regardless of when it was made.
    """

    def __init__(self, storage: StorageGateway):
        self.storage = storage

    def validate_request(self, bus: Bus, requested: Sequence[str]) -> List[str]:
        seats = [normalize_seat_id(s) for s in requested]
        if not seats:
            raise ValidationError(
                "At least one seat must be selected",
                errors=[{"field": "seats", "message": "At least one seat must be selected"}],
            )
        if len(set(seats)) != len(seats):
            raise ValidationError(
                "Seat numbers must be unique",
                errors=[{"field": "seats", "message": "duplicate seat number"}],
            )
        invalid = [s for s in seats if not is_valid_seat(bus.seat_layout, s)]
        if invalid:
            raise InvalidSeat(invalid)
        return seats

    def booked_seats(self, bus_id: str, travel_date: date) -> List[str]:
        return taken_seats(self.storage.find_bookings_for_bus_date(bus_id, travel_date))

    def conflicts(self, bus: Bus, travel_date: date, seats: Sequence[str]) -> List[str]:
        taken = set(self.booked_seats(bus.id, travel_date))
        return [s for s in seats if s in taken]

    def check_availability(self, bus_id: str, travel_date: date, requested: Sequence[str]) -> Availability:
        bus = self.storage.get_bus(bus_id)
        if not bus:
            raise NotFound("Bus not found")
        seats = self.validate_request(bus, requested)
        conflicting = self.conflicts(bus, travel_date, seats)
        return Availability(ok=not conflicting, conflicting_seats=conflicting)


@dataclass
class SlotLocks:
    """One lock per (bus, travel date); created on first use."""

    locks: Dict[Tuple[str, date], threading.Lock] = field(default_factory=dict)
    guard: threading.Lock = field(default_factory=threading.Lock)

    def get(self, bus_id: str, travel_date: date) -> threading.Lock:
        key = (bus_id, travel_date)
        with self.guard:
            lk = self.locks.get(key)
            if lk is None:
                lk = self.locks[key] = threading.Lock()
            return lk
