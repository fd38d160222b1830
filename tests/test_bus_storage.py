from __future__ import annotations

import json
from datetime import timedelta

import pytest

from apps.bus.app import storage as storage_mod
from apps.bus.app.errors import DuplicateKeyError
from apps.bus.app.schemas import Admin, Passenger
from apps.bus.app.seed import SAMPLE_BUSES, seed_demo
from apps.bus.app.storage_file import FileStorage
from apps.bus.app.storage_sql import SqlStorage

from conftest import booking_body, bus_body, colombo_today


def test_passenger_email_is_unique(storage):
    storage.create_passenger(Passenger(id="p1", name="Nimal", email="Nimal@Example.com", phone="0771234567"))
    with pytest.raises(DuplicateKeyError) as ei:
        storage.create_passenger(Passenger(id="p2", name="Other", email="nimal@example.com", phone="0771234568"))
    assert ei.value.field == "email"
    assert storage.find_passenger_by_email(" NIMAL@example.com ").id == "p1"


def test_admin_email_is_unique(storage):
    storage.create_admin(Admin(id="a1", name="A", email="a@busticket.com", password_hash="x"))
    with pytest.raises(DuplicateKeyError):
        storage.create_admin(Admin(id="a2", name="B", email="A@busticket.com", password_hash="y"))
    assert storage.get_admin("a1").email == "a@busticket.com"


def test_route_search_is_case_insensitive_and_ordered(svc, bus):
    svc.create_bus(bus_body(busNumber="NB-0600", departureTime="6:00"))
    hidden = svc.create_bus(bus_body(busNumber="NB-0700", departureTime="07:00"))
    svc.storage.update_bus(hidden.model_copy(update={"is_active": False}))

    found = svc.storage.find_buses("COLOMBO", "galle")
    assert [b.bus_number for b in found] == ["NB-0600", "NB-1234"]
    assert found[0].departure_time == "06:00"
    assert len(svc.storage.find_buses(active_only=False)) == 3


def test_cancel_releases_seats_in_storage(svc, bus):
    day = colombo_today() + timedelta(days=3)
    b = svc.create_booking(booking_body(bus.id, ["1A"], travel_date=day)).booking
    svc.cancel_booking(b.id)
    again = svc.create_booking(booking_body(bus.id, ["1A"], travel_date=day, email="x@example.com")).booking
    assert again.seats == ["1A"]
    assert len(svc.storage.find_bookings_for_bus_date(bus.id, day)) == 2


def test_update_payment_for_unknown_booking_returns_none(storage):
    assert storage.update_payment_for_booking("missing", {"payment_status": "completed"}) is None


def test_file_layout_has_named_collections(tmp_path, svc, bus):
    path = tmp_path / "layout.json"
    store = FileStorage(path)
    store.create_bus(bus)
    doc = json.loads(path.read_text())
    assert set(doc) == {"vehicles", "bookings", "passengers", "payments", "admins"}
    assert doc["vehicles"][0]["bus_number"] == bus.bus_number


def test_select_storage_modes(tmp_path):
    data_file = str(tmp_path / "fallback.json")
    assert storage_mod.select_storage("file", data_file=data_file).name == "file"

    sql = storage_mod.select_storage("sql", db_url=f"sqlite+pysqlite:///{tmp_path / 'ok.db'}", data_file=data_file)
    assert isinstance(sql, SqlStorage)

    # an unreachable database falls back to the flat file in auto mode only
    bad_url = f"sqlite+pysqlite:///{tmp_path / 'missing-dir' / 'nope.db'}"
    assert isinstance(storage_mod.select_storage("auto", db_url=bad_url, data_file=data_file), FileStorage)
    with pytest.raises(Exception):
        storage_mod.select_storage("sql", db_url=bad_url, data_file=data_file)
    with pytest.raises(RuntimeError):
        storage_mod.select_storage("mongo", data_file=data_file)


def test_seed_is_idempotent(svc):
    seed_demo(svc=svc)
    seed_demo(svc=svc)
    buses = svc.storage.find_buses(active_only=False)
    assert len(buses) == len(SAMPLE_BUSES)
    assert all(b.total_seats <= 60 for b in buses)

    seed_demo(reset=True, svc=svc)
    assert len(svc.storage.find_buses(active_only=False)) == len(SAMPLE_BUSES)


def test_close_releases_connections_and_storage_reopens(storage):
    storage.create_passenger(Passenger(id="p1", name="Nimal", email="nimal@example.com", phone="0771234567"))
    storage.close()
    assert storage.ping()
    assert storage.find_passenger_by_email("nimal@example.com").id == "p1"
