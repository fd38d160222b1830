from __future__ import annotations

from datetime import timedelta

import pytest

from apps.bus.app.errors import InvalidSeat, NotFound, ValidationError
from apps.bus.app.schemas import SeatLayout
from apps.bus.app.seats import ConflictResolver, is_valid_seat, quote_fare, seat_ids, taken_seats

from conftest import booking_body, colombo_today


def test_seat_ids_are_row_major():
    assert seat_ids(SeatLayout(rows=2, seats_per_row=3)) == ["1A", "1B", "1C", "2A", "2B", "2C"]
    ids = seat_ids(SeatLayout(rows=10, seats_per_row=4))
    assert len(ids) == 40
    assert ids[-1] == "10D"


@pytest.mark.parametrize(
    "seat,ok",
    [
        ("3b", True),
        (" 10D ", True),
        ("99Z", False),
        ("11A", False),
        ("1E", False),
        ("03B", False),
        ("0A", False),
        ("A1", False),
        ("", False),
    ],
)
def test_is_valid_seat_on_10x4(seat, ok):
    assert is_valid_seat(SeatLayout(rows=10, seats_per_row=4), seat) is ok


def test_quote_fare():
    assert quote_fare(1200, 3) == 3600
    with pytest.raises(ValidationError):
        quote_fare(1200, 0)


def test_invalid_seat_rejected_before_any_booking_is_read(svc, bus, monkeypatch):
    resolver = ConflictResolver(svc.storage)

    def _boom(*a, **kw):
        raise AssertionError("bookings must not be read for an invalid seat request")

    monkeypatch.setattr(svc.storage, "find_bookings_for_bus_date", _boom)
    with pytest.raises(InvalidSeat) as ei:
        resolver.check_availability(bus.id, colombo_today() + timedelta(days=3), ["1A", "99Z"])
    assert ei.value.invalid_seats == ["99Z"]
    assert ei.value.status_code == 400


def test_empty_and_duplicate_requests(svc, bus):
    resolver = ConflictResolver(svc.storage)
    day = colombo_today() + timedelta(days=3)
    with pytest.raises(ValidationError):
        resolver.check_availability(bus.id, day, [])
    with pytest.raises(ValidationError):
        resolver.check_availability(bus.id, day, ["1A", "1a"])


def test_unknown_bus(svc):
    with pytest.raises(NotFound):
        ConflictResolver(svc.storage).check_availability("nope", colombo_today(), ["1A"])


def test_conflicts_reported_in_request_order_and_scoped_to_date(svc, bus):
    day = colombo_today() + timedelta(days=5)
    svc.create_booking(booking_body(bus.id, ["2C", "1A"], travel_date=day))

    resolver = ConflictResolver(svc.storage)
    res = resolver.check_availability(bus.id, day, ["1A", "1B", "2C"])
    assert not res.ok
    assert res.conflicting_seats == ["1A", "2C"]

    other_day = resolver.check_availability(bus.id, day + timedelta(days=1), ["1A", "2C"])
    assert other_day.ok
    assert other_day.conflicting_seats == []


def test_cancelled_bookings_do_not_hold_seats(svc, bus):
    day = colombo_today() + timedelta(days=5)
    first = svc.create_booking(booking_body(bus.id, ["4A"], travel_date=day)).booking
    assert taken_seats(svc.storage.find_bookings_for_bus_date(bus.id, day)) == ["4A"]

    svc.cancel_booking(first.id)
    assert taken_seats(svc.storage.find_bookings_for_bus_date(bus.id, day)) == []
    assert ConflictResolver(svc.storage).check_availability(bus.id, day, ["4A"]).ok
