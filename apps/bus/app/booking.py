from __future__ import annotations

import logging
import math
import secrets
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time as dtime, timedelta, timezone
from typing import Any, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo

from .errors import CancellationWindowClosed, DuplicateKeyError, NotFound, SeatConflict, ValidationError
from .payments import PaymentGatewayClient
from .schemas import Booking, BookingIn, Bus, BusIn, OnlinePaymentOrder, Passenger, PassengerDetails, PassengerSnapshot, Payment
from .seats import ConflictResolver, SlotLocks, is_valid_seat, quote_fare, seat_ids, taken_seats
from .storage import StorageGateway

log = logging.getLogger("busline.bookings")

CANCELLATION_WINDOW = timedelta(hours=2)
MAX_TICKET_ATTEMPTS = 5
MAX_PAGE_SIZE = 100

_B36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_B36[r])
    return "".join(reversed(out))


class TicketNumberGenerator:
    """
    BKT + base-36 milliseconds + 4 random base-36 characters.

    The time component never repeats within a process (it is bumped past
    the last value handed out); the storage layer's unique constraint
    covers collisions across processes.
    """

    prefix = "BKT"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_ms = 0

    def __call__(self) -> str:
        with self._lock:
            ms = int(time.time() * 1000)
            if ms <= self._last_ms:
                ms = self._last_ms + 1
            self._last_ms = ms
        suffix = "".join(secrets.choice(_B36) for _ in range(4))
        return f"{self.prefix}{_base36(ms)}{suffix}"


@dataclass
class BookingResult:
    booking: Booking
    online_payment_order: Optional[OnlinePaymentOrder] = None

    def to_wire(self) -> dict[str, Any]:
        return {
            "booking": self.booking.to_wire(),
            "onlinePaymentOrder": self.online_payment_order.to_wire() if self.online_payment_order else None,
        }


@dataclass
class BookingPage:
    bookings: List[Booking]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass
class BusAvailability:
    bus: Bus
    booked_seats: Optional[List[str]] = None

    def to_wire(self) -> dict[str, Any]:
        out = self.bus.to_wire()
        if self.booked_seats is not None:
            out["bookedSeats"] = self.booked_seats
            out["availableSeats"] = (self.bus.total_seats or 0) - len(self.booked_seats)
        return out


class BookingService:
    """
    Booking lifecycle: creation, payment orders, cancellation, statistics,
    plus the vehicle catalog operations that depend on booking state.

    Seat check-and-write is serialised per (bus, travel date) inside this
    process; the storage backends reject a double allocation on their own
    as well.
    """

    def __init__(
        self,
        storage: StorageGateway,
        gateway: PaymentGatewayClient,
        tz: Union[str, ZoneInfo] = "Asia/Colombo",
        tickets: Optional[TicketNumberGenerator] = None,
    ):
        self.storage = storage
        self.gateway = gateway
        self.tz = ZoneInfo(tz) if isinstance(tz, str) else tz
        self.tickets = tickets or TicketNumberGenerator()
        self.resolver = ConflictResolver(storage)
        self.slots = SlotLocks()

    # ---- clock helpers ----
    def _now(self, now: Optional[datetime] = None) -> datetime:
        now = now or datetime.now(self.tz)
        if now.tzinfo is None:
            now = now.replace(tzinfo=self.tz)
        return now.astimezone(self.tz)

    def today(self, now: Optional[datetime] = None) -> date:
        return self._now(now).date()

    def departure_at(self, bus: Bus, travel_date: date) -> datetime:
        hh, mm = bus.departure_time.split(":")
        return datetime.combine(travel_date, dtime(int(hh), int(mm)), tzinfo=self.tz)

    def _day_bounds_utc(self, day: date) -> Tuple[datetime, datetime]:
        start = datetime.combine(day, dtime(0, 0), tzinfo=self.tz)
        end = datetime.combine(day + timedelta(days=1), dtime(0, 0), tzinfo=self.tz)
        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)

    # ---- bookings ----
    def create_booking(self, body: BookingIn, now: Optional[datetime] = None) -> BookingResult:
        if body.travel_date < self.today(now):
            raise ValidationError(
                "Travel date cannot be in the past",
                errors=[{"field": "travelDate", "message": "Travel date cannot be in the past"}],
            )
        if body.payment_method == "online" and not self.gateway.configured:
            raise ValidationError("Online payment is not configured. Please use cash payment.")

        bus = self.storage.get_bus(body.vehicle_id)
        if not bus:
            raise NotFound("Bus not found")
        if not bus.is_active:
            raise ValidationError("Bus is not available for booking")
        seats = self.resolver.validate_request(bus, body.seat_numbers)

        with self.slots.get(bus.id, body.travel_date):
            conflicting = self.resolver.conflicts(bus, body.travel_date, seats)
            if conflicting:
                log.info(
                    "seat conflict",
                    extra={"bus_id": bus.id, "travel_date": body.travel_date.isoformat(), "seats": conflicting},
                )
                raise SeatConflict(conflicting)
            passenger = self._passenger_for(body.passenger_details)
            booking = self._persist_booking(bus, body, seats, passenger)
            self.storage.create_payment(
                Payment(
                    id=str(uuid.uuid4()),
                    booking_id=booking.id,
                    amount=booking.total_fare,
                    payment_method=booking.payment_method,
                    payment_status="pending",
                    gateway="payhere" if booking.payment_method == "online" else None,
                )
            )
        log.info(
            "booking created",
            extra={
                "ticket_number": booking.ticket_number,
                "bus_id": bus.id,
                "travel_date": booking.travel_date.isoformat(),
                "seats": booking.seats,
                "payment_method": booking.payment_method,
            },
        )

        order: Optional[OnlinePaymentOrder] = None
        if booking.payment_method == "online":
            # booking stays pending if this raises; the ticket can retry later
            order = self.gateway.create_order(booking, bus)
        return BookingResult(booking=booking, online_payment_order=order)

    def _passenger_for(self, details: PassengerDetails) -> Passenger:
        for _ in range(2):
            found = self.storage.find_passenger_by_email(details.email)
            if found:
                return found
            try:
                return self.storage.create_passenger(
                    Passenger(id=str(uuid.uuid4()), name=details.name, email=details.email, phone=details.phone)
                )
            except DuplicateKeyError:
                # created concurrently by another request
                continue
        found = self.storage.find_passenger_by_email(details.email)
        if not found:
            raise RuntimeError(f"passenger {details.email} vanished after a uniqueness collision")
        return found

    def _persist_booking(self, bus: Bus, body: BookingIn, seats: List[str], passenger: Passenger) -> Booking:
        snapshot = PassengerSnapshot(
            name=body.passenger_details.name,
            email=body.passenger_details.email,
            phone=body.passenger_details.phone,
        )
        booking_id = str(uuid.uuid4())
        for attempt in range(1, MAX_TICKET_ATTEMPTS + 1):
            candidate = Booking(
                id=booking_id,
                ticket_number=self.tickets(),
                bus_id=bus.id,
                user_id=passenger.id,
                travel_date=body.travel_date,
                seats=seats,
                total_seats=len(seats),
                total_fare=quote_fare(bus.fare, len(seats)),
                payment_method=body.payment_method,
                payment_status="pending",
                booking_status="confirmed",
                passenger_details=snapshot,
            )
            try:
                return self.storage.create_booking(candidate)
            except DuplicateKeyError as e:
                if e.field != "ticket_number":
                    raise
                log.warning("ticket number collision, regenerating", extra={"attempt": attempt})
        raise RuntimeError("could not allocate a unique ticket number")

    def retry_online_payment(self, ticket_number: str) -> BookingResult:
        booking = self.get_booking_by_ticket(ticket_number)
        if booking.payment_method != "online":
            raise ValidationError("Booking is not an online payment booking")
        if booking.booking_status == "cancelled":
            raise ValidationError("Booking is cancelled")
        if booking.payment_status != "pending":
            raise ValidationError(f"Payment is already {booking.payment_status}")
        bus = self.storage.get_bus(booking.bus_id)
        if not bus:
            raise NotFound("Bus not found")
        return BookingResult(booking=booking, online_payment_order=self.gateway.create_order(booking, bus))

    def get_booking(self, booking_id: str) -> Booking:
        booking = self.storage.get_booking(booking_id)
        if not booking:
            raise NotFound("Booking not found")
        return booking

    def get_booking_by_ticket(self, ticket_number: str) -> Booking:
        booking = self.storage.get_booking_by_ticket((ticket_number or "").strip().upper())
        if not booking:
            raise NotFound("Booking not found")
        return booking

    def cancel_booking(self, booking_id: str, now: Optional[datetime] = None) -> Booking:
        booking = self.get_booking(booking_id)
        if booking.booking_status == "cancelled":
            raise ValidationError("Booking is already cancelled")
        bus = self.storage.get_bus(booking.bus_id)
        if not bus:
            raise NotFound("Bus not found")
        departure = self.departure_at(bus, booking.travel_date)
        if departure - self._now(now) <= CANCELLATION_WINDOW:
            raise CancellationWindowClosed()

        with self.slots.get(booking.bus_id, booking.travel_date):
            # payment confirmations write under the same lock; act on the current row
            booking = self.get_booking(booking_id)
            if booking.booking_status == "cancelled":
                raise ValidationError("Booking is already cancelled")
            changes: dict[str, Any] = {"booking_status": "cancelled"}
            refund = booking.payment_method == "online" and booking.payment_status == "completed"
            if refund:
                changes["payment_status"] = "refunded"
            updated = self.storage.update_booking(booking.model_copy(update=changes))
            if refund:
                self.storage.update_payment_for_booking(
                    booking.id,
                    {
                        "payment_status": "refunded",
                        "refunded_at": datetime.now(timezone.utc),
                        "refund_amount": booking.total_fare,
                    },
                )
        log.info(
            "booking cancelled",
            extra={"ticket_number": booking.ticket_number, "refunded": refund, "seats": booking.seats},
        )
        return updated

    def list_bookings(
        self,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
    ) -> BookingPage:
        page = max(1, page)
        limit = min(max(1, limit), MAX_PAGE_SIZE)
        rows, total = self.storage.list_bookings(
            booking_status=status or None,
            payment_status=payment_status or None,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return BookingPage(bookings=rows, total=total, page=page, limit=limit)

    def get_statistics(self, now: Optional[datetime] = None) -> dict[str, Any]:
        start, end = self._day_bounds_utc(self.today(now))
        return {
            "totalBookings": self.storage.count_bookings(),
            "confirmedCount": self.storage.count_bookings(booking_status="confirmed"),
            "cancelledCount": self.storage.count_bookings(booking_status="cancelled"),
            "completedPaymentCount": self.storage.count_bookings(payment_status="completed"),
            "totalRevenue": self.storage.total_revenue(),
            "todayBookingCount": self.storage.count_bookings(created_from=start, created_to=end),
        }

    # ---- vehicles ----
    def search_buses(
        self,
        origin: Optional[str] = None,
        destination: Optional[str] = None,
        travel_date: Optional[date] = None,
    ) -> List[BusAvailability]:
        buses = self.storage.find_buses(origin=origin, destination=destination, active_only=True)
        if travel_date is None:
            return [BusAvailability(bus=b) for b in buses]
        return [BusAvailability(bus=b, booked_seats=self.resolver.booked_seats(b.id, travel_date)) for b in buses]

    def get_bus(self, bus_id: str) -> Bus:
        bus = self.storage.get_bus(bus_id)
        if not bus:
            raise NotFound("Bus not found")
        return bus

    def seat_map(self, bus_id: str, travel_date: Optional[date] = None) -> dict[str, Any]:
        """Without a travel date every seat is reported free."""
        bus = self.get_bus(bus_id)
        booked = self.resolver.booked_seats(bus.id, travel_date) if travel_date else []
        taken = set(booked)
        return {
            "vehicle": {
                "id": bus.id,
                "busNumber": bus.bus_number,
                "busName": bus.bus_name,
                "totalSeats": bus.total_seats,
                "seatLayout": bus.seat_layout.to_wire(),
                "fare": bus.fare,
            },
            "travelDate": travel_date.isoformat() if travel_date else None,
            "bookedSeats": booked,
            "availableSeats": (bus.total_seats or 0) - len(booked),
            "seats": [{"seatNumber": s, "isBooked": s in taken} for s in seat_ids(bus.seat_layout)],
        }

    def create_bus(self, body: BusIn) -> Bus:
        bus = Bus.model_validate({**body.model_dump(), "id": str(uuid.uuid4())})
        try:
            created = self.storage.create_bus(bus)
        except DuplicateKeyError:
            raise ValidationError("Bus number already exists")
        log.info("bus created", extra={"bus_id": created.id, "bus_number": created.bus_number})
        return created

    def update_bus(self, bus_id: str, body: BusIn, now: Optional[datetime] = None) -> Bus:
        current = self.get_bus(bus_id)
        if body.seat_layout != current.seat_layout:
            # upcoming reservations must still name real seats
            held = taken_seats(b for b in self._upcoming_bookings(bus_id, now))
            orphaned = sorted({s for s in held if not is_valid_seat(body.seat_layout, s)})
            if orphaned:
                raise ValidationError(
                    f"Seat layout change would drop booked seats: {', '.join(orphaned)}",
                    errors=[{"field": "seatLayout", "message": "layout excludes booked seats"}],
                )
        bus = Bus.model_validate({**body.model_dump(), "id": current.id, "created_at": current.created_at})
        try:
            updated = self.storage.update_bus(bus)
        except DuplicateKeyError:
            raise ValidationError("Bus number already exists")
        log.info("bus updated", extra={"bus_id": bus_id})
        return updated

    def _upcoming_bookings(self, bus_id: str, now: Optional[datetime] = None) -> List[Booking]:
        today = self.today(now)
        return [
            b
            for b in self.storage.find_bookings_for_bus(bus_id)
            if b.booking_status != "cancelled" and b.travel_date >= today
        ]

    def delete_bus(self, bus_id: str, now: Optional[datetime] = None) -> str:
        """Returns "deleted" or "deactivated"."""
        bus = self.get_bus(bus_id)
        if self._upcoming_bookings(bus_id, now):
            raise ValidationError("Cannot delete bus with active future bookings")
        if self.storage.find_bookings_for_bus(bus_id):
            self.storage.update_bus(bus.model_copy(update={"is_active": False}))
            log.info("bus deactivated", extra={"bus_id": bus_id})
            return "deactivated"
        self.storage.delete_bus(bus_id)
        log.info("bus deleted", extra={"bus_id": bus_id})
        return "deleted"
