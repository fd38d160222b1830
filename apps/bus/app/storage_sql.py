from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, List, Optional, Tuple

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column
from sqlalchemy.pool import StaticPool

from .errors import DuplicateKeyError, SeatConflict
from .schemas import Admin, Booking, Bus, Passenger, PassengerSnapshot, Payment, PaymentDetails, SeatLayout
from .storage import StorageGateway

log = logging.getLogger("busline.storage")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class BusRow(Base):
    __tablename__ = "buses"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    bus_number: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    bus_name: Mapped[str] = mapped_column(String(120))
    bus_type: Mapped[str] = mapped_column(String(16))
    origin: Mapped[str] = mapped_column(String(120), index=True)
    destination: Mapped[str] = mapped_column(String(120), index=True)
    departure_time: Mapped[str] = mapped_column(String(5))
    arrival_time: Mapped[str] = mapped_column(String(5))
    duration: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    total_seats: Mapped[int] = mapped_column(Integer)
    fare: Mapped[float] = mapped_column(Float)
    amenities: Mapped[list] = mapped_column(JSON, default=list)
    seat_rows: Mapped[int] = mapped_column(Integer)
    seats_per_row: Mapped[int] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=_utcnow)


class PassengerRow(Base):
    __tablename__ = "passengers"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(120))
    # Unique so that two concurrent first bookings cannot create twins.
    email: Mapped[str] = mapped_column(String(254), unique=True, index=True)
    phone: Mapped[str] = mapped_column(String(32))
    age: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    gender: Mapped[Optional[str]] = mapped_column(String(8), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=_utcnow)


class BookingRow(Base):
    __tablename__ = "bookings"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    ticket_number: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    bus_id: Mapped[str] = mapped_column(String(36), index=True)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    travel_date: Mapped[date] = mapped_column(Date, index=True)
    seats: Mapped[list] = mapped_column(JSON)
    total_seats: Mapped[int] = mapped_column(Integer)
    total_fare: Mapped[float] = mapped_column(Float)
    payment_method: Mapped[str] = mapped_column(String(8))
    payment_status: Mapped[str] = mapped_column(String(16), default="pending")  # pending|completed|failed|refunded
    booking_status: Mapped[str] = mapped_column(String(16), default="confirmed")  # confirmed|cancelled|completed
    passenger: Mapped[dict] = mapped_column(JSON)
    payment_details: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=_utcnow)


class BookingSeatRow(Base):
    """
    Seat inventory index: one row per seat held by a live booking.

    The unique constraint is what makes a concurrent double-booking fail
    atomically, even across processes. Rows are removed on cancellation.
    """

    __tablename__ = "booking_seats"
    __table_args__ = (UniqueConstraint("bus_id", "travel_date", "seat_number", name="uq_booking_seats_bus_date_seat"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[str] = mapped_column(String(36), ForeignKey("bookings.id"), index=True)
    bus_id: Mapped[str] = mapped_column(String(36))
    travel_date: Mapped[date] = mapped_column(Date)
    seat_number: Mapped[str] = mapped_column(String(8))


class PaymentRow(Base):
    __tablename__ = "payments"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    booking_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    amount: Mapped[float] = mapped_column(Float)
    payment_method: Mapped[str] = mapped_column(String(8))
    payment_status: Mapped[str] = mapped_column(String(16), default="pending")
    gateway: Mapped[Optional[str]] = mapped_column(String(16), default=None)
    gateway_order_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    gateway_signature: Mapped[Optional[str]] = mapped_column(String(256), default=None)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_amount: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=_utcnow)


class AdminRow(Base):
    __tablename__ = "admins"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(120))
    email: Mapped[str] = mapped_column(String(254), unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(256))
    role: Mapped[str] = mapped_column(String(16), default="admin")  # admin|superadmin
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ---- row <-> record ----
def _bus_from_row(r: BusRow) -> Bus:
    return Bus(
        id=r.id,
        bus_number=r.bus_number,
        bus_name=r.bus_name,
        bus_type=r.bus_type,
        origin=r.origin,
        destination=r.destination,
        departure_time=r.departure_time,
        arrival_time=r.arrival_time,
        duration=r.duration,
        total_seats=r.total_seats,
        fare=r.fare,
        amenities=list(r.amenities or []),
        seat_layout=SeatLayout(rows=r.seat_rows, seats_per_row=r.seats_per_row),
        is_active=bool(r.is_active),
        created_at=_aware(r.created_at),
        updated_at=_aware(r.updated_at),
    )


def _apply_bus(r: BusRow, b: Bus) -> None:
    r.bus_number = b.bus_number
    r.bus_name = b.bus_name
    r.bus_type = b.bus_type
    r.origin = b.origin
    r.destination = b.destination
    r.departure_time = b.departure_time
    r.arrival_time = b.arrival_time
    r.duration = b.duration
    r.total_seats = b.total_seats or b.seat_layout.capacity
    r.fare = b.fare
    r.amenities = list(b.amenities)
    r.seat_rows = b.seat_layout.rows
    r.seats_per_row = b.seat_layout.seats_per_row
    r.is_active = b.is_active
    r.updated_at = _utcnow()


def _booking_from_row(r: BookingRow) -> Booking:
    return Booking(
        id=r.id,
        ticket_number=r.ticket_number,
        bus_id=r.bus_id,
        user_id=r.user_id,
        travel_date=r.travel_date,
        seats=list(r.seats or []),
        total_seats=r.total_seats,
        total_fare=r.total_fare,
        payment_method=r.payment_method,
        payment_status=r.payment_status,
        booking_status=r.booking_status,
        passenger_details=PassengerSnapshot.model_validate(r.passenger or {}),
        payment_details=PaymentDetails.model_validate(r.payment_details or {}),
        created_at=_aware(r.created_at),
        updated_at=_aware(r.updated_at),
    )


def _apply_booking(r: BookingRow, b: Booking) -> None:
    r.ticket_number = b.ticket_number
    r.bus_id = b.bus_id
    r.user_id = b.user_id
    r.travel_date = b.travel_date
    r.seats = list(b.seats)
    r.total_seats = b.total_seats
    r.total_fare = b.total_fare
    r.payment_method = b.payment_method
    r.payment_status = b.payment_status
    r.booking_status = b.booking_status
    r.passenger = b.passenger_details.model_dump(mode="json")
    r.payment_details = b.payment_details.model_dump(mode="json")
    r.updated_at = _utcnow()


def _passenger_from_row(r: PassengerRow) -> Passenger:
    return Passenger(
        id=r.id, name=r.name, email=r.email, phone=r.phone, age=r.age, gender=r.gender, created_at=_aware(r.created_at)
    )


_PAYMENT_FIELDS = (
    "amount",
    "payment_method",
    "payment_status",
    "gateway",
    "gateway_order_id",
    "gateway_payment_id",
    "gateway_signature",
    "paid_at",
    "refunded_at",
    "refund_amount",
)


def _payment_from_row(r: PaymentRow) -> Payment:
    return Payment(
        id=r.id,
        booking_id=r.booking_id,
        amount=r.amount,
        payment_method=r.payment_method,
        payment_status=r.payment_status,
        gateway=r.gateway,
        gateway_order_id=r.gateway_order_id,
        gateway_payment_id=r.gateway_payment_id,
        gateway_signature=r.gateway_signature,
        paid_at=_aware(r.paid_at),
        refunded_at=_aware(r.refunded_at),
        refund_amount=r.refund_amount,
        created_at=_aware(r.created_at),
    )


def _admin_from_row(r: AdminRow) -> Admin:
    return Admin(
        id=r.id,
        name=r.name,
        email=r.email,
        password_hash=r.password_hash,
        role=r.role,
        is_active=bool(r.is_active),
        created_at=_aware(r.created_at),
    )


class SqlStorage(StorageGateway):
    name = "sql"

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_url(cls, url: str) -> "SqlStorage":
        if url.startswith("sqlite"):
            kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
            if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
                # One shared connection, otherwise every checkout sees an empty DB.
                kwargs["poolclass"] = StaticPool
            else:
                kwargs["pool_pre_ping"] = True
            engine = create_engine(url, **kwargs)
        else:
            engine = create_engine(url, pool_pre_ping=True)
        return cls(engine)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def reset(self) -> None:
        Base.metadata.drop_all(self.engine)
        Base.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            log.warning("database ping failed: %s", e)
            return False

    # ---- buses ----
    def find_buses(self, origin=None, destination=None, active_only=True) -> List[Bus]:
        stmt = select(BusRow)
        if active_only:
            stmt = stmt.where(BusRow.is_active.is_(True))
        if origin:
            stmt = stmt.where(func.lower(BusRow.origin) == origin.strip().lower())
        if destination:
            stmt = stmt.where(func.lower(BusRow.destination) == destination.strip().lower())
        stmt = stmt.order_by(BusRow.departure_time.asc(), BusRow.bus_number.asc())
        with Session(self.engine) as s:
            return [_bus_from_row(r) for r in s.execute(stmt).scalars().all()]

    def get_bus(self, bus_id: str) -> Optional[Bus]:
        with Session(self.engine) as s:
            r = s.get(BusRow, bus_id)
            return _bus_from_row(r) if r else None

    def create_bus(self, bus: Bus) -> Bus:
        with Session(self.engine) as s:
            r = BusRow(id=bus.id, created_at=_utc(bus.created_at) or _utcnow())
            _apply_bus(r, bus)
            s.add(r)
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                raise DuplicateKeyError("bus_number", bus.bus_number)
            s.refresh(r)
            return _bus_from_row(r)

    def update_bus(self, bus: Bus) -> Bus:
        with Session(self.engine) as s:
            r = s.get(BusRow, bus.id)
            if r is None:
                raise KeyError(bus.id)
            _apply_bus(r, bus)
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                raise DuplicateKeyError("bus_number", bus.bus_number)
            s.refresh(r)
            return _bus_from_row(r)

    def delete_bus(self, bus_id: str) -> None:
        with Session(self.engine) as s:
            s.execute(delete(BusRow).where(BusRow.id == bus_id))
            s.commit()

    # ---- bookings ----
    def find_bookings_for_bus_date(self, bus_id: str, travel_date: date) -> List[Booking]:
        stmt = (
            select(BookingRow)
            .where(BookingRow.bus_id == bus_id, BookingRow.travel_date == travel_date)
            .order_by(BookingRow.created_at.asc())
        )
        with Session(self.engine) as s:
            return [_booking_from_row(r) for r in s.execute(stmt).scalars().all()]

    def find_bookings_for_bus(self, bus_id: str) -> List[Booking]:
        stmt = select(BookingRow).where(BookingRow.bus_id == bus_id).order_by(BookingRow.created_at.asc())
        with Session(self.engine) as s:
            return [_booking_from_row(r) for r in s.execute(stmt).scalars().all()]

    def create_booking(self, booking: Booking) -> Booking:
        with Session(self.engine) as s:
            r = BookingRow(id=booking.id, created_at=_utc(booking.created_at) or _utcnow())
            _apply_booking(r, booking)
            s.add(r)
            for seat in booking.seats:
                s.add(BookingSeatRow(booking_id=booking.id, bus_id=booking.bus_id, travel_date=booking.travel_date, seat_number=seat))
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                taken = set(
                    s.execute(
                        select(BookingSeatRow.seat_number).where(
                            BookingSeatRow.bus_id == booking.bus_id,
                            BookingSeatRow.travel_date == booking.travel_date,
                        )
                    ).scalars().all()
                )
                conflicting = [seat for seat in booking.seats if seat in taken]
                if conflicting:
                    raise SeatConflict(conflicting)
                clash = s.execute(select(BookingRow.id).where(BookingRow.ticket_number == booking.ticket_number)).first()
                if clash:
                    raise DuplicateKeyError("ticket_number", booking.ticket_number)
                raise
            s.refresh(r)
            return _booking_from_row(r)

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        with Session(self.engine) as s:
            r = s.get(BookingRow, booking_id)
            return _booking_from_row(r) if r else None

    def get_booking_by_ticket(self, ticket_number: str) -> Optional[Booking]:
        with Session(self.engine) as s:
            r = s.execute(select(BookingRow).where(BookingRow.ticket_number == ticket_number)).scalars().first()
            return _booking_from_row(r) if r else None

    def update_booking(self, booking: Booking) -> Booking:
        with Session(self.engine) as s:
            r = s.get(BookingRow, booking.id)
            if r is None:
                raise KeyError(booking.id)
            _apply_booking(r, booking)
            if booking.booking_status == "cancelled":
                s.execute(delete(BookingSeatRow).where(BookingSeatRow.booking_id == booking.id))
            s.commit()
            s.refresh(r)
            return _booking_from_row(r)

    def _booking_filters(self, stmt, booking_status=None, payment_status=None, created_from=None, created_to=None):
        if booking_status:
            stmt = stmt.where(BookingRow.booking_status == booking_status)
        if payment_status:
            stmt = stmt.where(BookingRow.payment_status == payment_status)
        if created_from is not None:
            stmt = stmt.where(BookingRow.created_at >= _utc(created_from))
        if created_to is not None:
            stmt = stmt.where(BookingRow.created_at < _utc(created_to))
        return stmt

    def list_bookings(self, booking_status=None, payment_status=None, offset=0, limit=10) -> Tuple[List[Booking], int]:
        q = self._booking_filters(select(BookingRow), booking_status, payment_status)
        q = q.order_by(BookingRow.created_at.desc()).offset(max(0, offset)).limit(max(1, limit))
        with Session(self.engine) as s:
            rows = s.execute(q).scalars().all()
            total = s.execute(
                self._booking_filters(select(func.count(BookingRow.id)), booking_status, payment_status)
            ).scalar() or 0
            return [_booking_from_row(r) for r in rows], int(total)

    def count_bookings(self, booking_status=None, payment_status=None, created_from=None, created_to=None) -> int:
        q = self._booking_filters(select(func.count(BookingRow.id)), booking_status, payment_status, created_from, created_to)
        with Session(self.engine) as s:
            return int(s.execute(q).scalar() or 0)

    def total_revenue(self) -> float:
        q = select(func.coalesce(func.sum(BookingRow.total_fare), 0)).where(BookingRow.payment_status == "completed")
        with Session(self.engine) as s:
            return float(s.execute(q).scalar() or 0)

    # ---- passengers ----
    def find_passenger_by_email(self, email: str) -> Optional[Passenger]:
        with Session(self.engine) as s:
            r = s.execute(select(PassengerRow).where(PassengerRow.email == email.strip().lower())).scalars().first()
            return _passenger_from_row(r) if r else None

    def create_passenger(self, passenger: Passenger) -> Passenger:
        with Session(self.engine) as s:
            r = PassengerRow(
                id=passenger.id,
                name=passenger.name,
                email=passenger.email.strip().lower(),
                phone=passenger.phone,
                age=passenger.age,
                gender=passenger.gender,
                created_at=_utc(passenger.created_at) or _utcnow(),
            )
            s.add(r)
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                raise DuplicateKeyError("email", passenger.email)
            s.refresh(r)
            return _passenger_from_row(r)

    # ---- payments ----
    def create_payment(self, payment: Payment) -> Payment:
        with Session(self.engine) as s:
            r = PaymentRow(id=payment.id, booking_id=payment.booking_id, created_at=_utc(payment.created_at) or _utcnow())
            for key in _PAYMENT_FIELDS:
                setattr(r, key, getattr(payment, key))
            s.add(r)
            s.commit()
            s.refresh(r)
            return _payment_from_row(r)

    def get_payment_for_booking(self, booking_id: str) -> Optional[Payment]:
        with Session(self.engine) as s:
            r = s.execute(select(PaymentRow).where(PaymentRow.booking_id == booking_id)).scalars().first()
            return _payment_from_row(r) if r else None

    def update_payment_for_booking(self, booking_id: str, changes: dict[str, Any]) -> Optional[Payment]:
        with Session(self.engine) as s:
            r = s.execute(select(PaymentRow).where(PaymentRow.booking_id == booking_id)).scalars().first()
            if r is None:
                return None
            for key, value in changes.items():
                if key not in _PAYMENT_FIELDS:
                    raise KeyError(key)
                setattr(r, key, _utc(value) if isinstance(value, datetime) else value)
            s.commit()
            s.refresh(r)
            return _payment_from_row(r)

    # ---- admins ----
    def find_admin_by_email(self, email: str) -> Optional[Admin]:
        with Session(self.engine) as s:
            r = s.execute(select(AdminRow).where(AdminRow.email == email.strip().lower())).scalars().first()
            return _admin_from_row(r) if r else None

    def get_admin(self, admin_id: str) -> Optional[Admin]:
        with Session(self.engine) as s:
            r = s.get(AdminRow, admin_id)
            return _admin_from_row(r) if r else None

    def create_admin(self, admin: Admin) -> Admin:
        with Session(self.engine) as s:
            r = AdminRow(
                id=admin.id,
                name=admin.name,
                email=admin.email.strip().lower(),
                password_hash=admin.password_hash,
                role=admin.role,
                is_active=admin.is_active,
                created_at=_utc(admin.created_at) or _utcnow(),
            )
            s.add(r)
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                raise DuplicateKeyError("email", admin.email)
            s.refresh(r)
            return _admin_from_row(r)
