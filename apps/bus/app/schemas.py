"""
Records and request bodies for the bus service.

Every record is a pydantic model; both storage backends hand these out and
take them back, so the rest of the service never sees ORM rows or raw
JSON. Wire format is camelCase, Python attributes are snake_case.
"""
from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

BusType = Literal["AC", "Non-AC", "Sleeper", "Semi-Sleeper", "Luxury"]
PaymentMethod = Literal["online", "cash"]
PaymentStatus = Literal["pending", "completed", "failed", "refunded"]
BookingStatus = Literal["confirmed", "cancelled", "completed"]
AdminRole = Literal["admin", "superadmin"]

MAX_BUS_SEATS = 60
TIME_RE = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")
# Sri Lankan mobile numbers, e.g. +94771234567 or 0771234567
PHONE_RE = re.compile(r"^(\+94|0)?[1-9]\d{8}$")


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self, **kwargs: Any) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, **kwargs)


# ---- Buses ----
class SeatLayout(_Model):
    rows: int = Field(..., ge=1)
    # Columns are lettered A..Z
    seats_per_row: int = Field(..., ge=1, le=26)

    @property
    def capacity(self) -> int:
        return self.rows * self.seats_per_row


class BusIn(_Model):
    bus_number: str = Field(..., min_length=1)
    bus_name: str = Field(..., min_length=1)
    bus_type: BusType
    origin: str = Field(..., min_length=1, alias="from")
    destination: str = Field(..., min_length=1, alias="to")
    departure_time: str
    arrival_time: str
    duration: Optional[str] = None
    total_seats: Optional[int] = Field(default=None, ge=1, le=MAX_BUS_SEATS)
    fare: float = Field(..., ge=0)
    amenities: List[str] = Field(default_factory=list)
    seat_layout: SeatLayout
    is_active: bool = True

    @field_validator("bus_number", "bus_name", "origin", "destination")
    @classmethod
    def _strip(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("departure_time", "arrival_time")
    @classmethod
    def _hhmm(cls, v: str) -> str:
        v = (v or "").strip()
        if not TIME_RE.match(v):
            raise ValueError("invalid time format (HH:MM)")
        hh, mm = v.split(":")
        return f"{int(hh):02d}:{mm}"

    @model_validator(mode="after")
    def _seats_match_layout(self):
        capacity = self.seat_layout.capacity
        if self.total_seats is None:
            self.total_seats = capacity
        if self.total_seats != capacity:
            raise ValueError("totalSeats must equal seatLayout.rows * seatLayout.seatsPerRow")
        if capacity > MAX_BUS_SEATS:
            raise ValueError(f"a bus has at most {MAX_BUS_SEATS} seats")
        return self


class Bus(BusIn):
    id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ---- Passengers ----
class PassengerSnapshot(_Model):
    name: str
    email: str
    phone: str


class PassengerDetails(PassengerSnapshot):
    name: str = Field(..., min_length=2)
    email: EmailStr

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Passenger name must be at least 2 characters")
        return v

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("phone")
    @classmethod
    def _phone(cls, v: str) -> str:
        v = (v or "").strip()
        if not PHONE_RE.match(v):
            raise ValueError("Valid Sri Lankan phone number is required (e.g., +94771234567 or 0771234567)")
        return v


class Passenger(_Model):
    id: str
    name: str
    email: str
    phone: str
    age: Optional[int] = Field(default=None, ge=1)
    gender: Optional[Literal["Male", "Female", "Other"]] = None
    created_at: Optional[datetime] = None


# ---- Bookings ----
class SeatIn(_Model):
    seat_number: str = Field(..., min_length=1)


class BookingIn(_Model):
    vehicle_id: str = Field(..., min_length=1, validation_alias=AliasChoices("vehicleId", "busId", "vehicle_id"))
    travel_date: date
    seats: List[SeatIn] = Field(..., min_length=1)
    passenger_details: PassengerDetails
    payment_method: PaymentMethod

    @field_validator("travel_date", mode="before")
    @classmethod
    def _calendar_day(cls, v: Any) -> Any:
        # "2026-10-20T09:30:00Z" and "2026-10-20" name the same inventory pool.
        if isinstance(v, datetime):
            return v.date()
        if isinstance(v, str) and len(v) > 10 and v[10] in ("T", " "):
            return v[:10]
        return v

    @field_validator("seats", mode="before")
    @classmethod
    def _bare_seat_ids(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [{"seatNumber": s} if isinstance(s, str) else s for s in v]
        return v

    @property
    def seat_numbers(self) -> List[str]:
        return [s.seat_number.strip().upper() for s in self.seats]


class PaymentDetails(_Model):
    gateway: Optional[str] = None
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    signature: Optional[str] = None
    paid_at: Optional[datetime] = None


class Booking(_Model):
    id: str
    ticket_number: str
    bus_id: str
    user_id: str
    travel_date: date
    seats: List[str]
    total_seats: int
    total_fare: float
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "pending"
    booking_status: BookingStatus = "confirmed"
    passenger_details: PassengerSnapshot
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Payment(_Model):
    id: str
    booking_id: str
    amount: float
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "pending"
    gateway: Optional[str] = None
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    gateway_signature: Optional[str] = None
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    refund_amount: Optional[float] = None
    created_at: Optional[datetime] = None


class OnlinePaymentOrder(_Model):
    payment_url: Optional[str] = None
    order_id: str


# ---- Payment callbacks (gateway field names are fixed by the gateways) ----
class VerifyPaymentIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    razorpay_order_id: str = Field(..., min_length=1)
    razorpay_payment_id: str = Field(..., min_length=1)
    razorpay_signature: str = Field(..., min_length=1)
    booking_id: str = Field(..., min_length=1, alias="bookingId")


class PayHereNotifyIn(BaseModel):
    order_id: str = Field(..., min_length=1)
    payment_id: Optional[str] = None
    status_code: Union[int, str]
    status_message: Optional[str] = None


# ---- Admins ----
class Admin(_Model):
    id: str
    name: str
    email: str
    password_hash: str
    role: AdminRole = "admin"
    is_active: bool = True
    created_at: Optional[datetime] = None

    def public(self) -> dict[str, Any]:
        return self.to_wire(exclude={"password_hash"})


class LoginIn(_Model):
    email: EmailStr
    password: str = Field(..., min_length=6)


class AdminCreateIn(_Model):
    name: str = Field(..., min_length=2)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: AdminRole = "admin"
