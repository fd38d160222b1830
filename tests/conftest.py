from __future__ import annotations

import os

os.environ.setdefault("ENV", "test")
os.environ.setdefault("BUS_STORAGE", "file")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

import httpx
import pytest

from apps.bus.app.booking import BookingService
from apps.bus.app.payments import PaymentGatewayClient
from apps.bus.app.schemas import BookingIn, BusIn
from apps.bus.app.storage_file import FileStorage
from apps.bus.app.storage_sql import SqlStorage

COLOMBO = ZoneInfo("Asia/Colombo")
MERCHANT_SECRET = "merchant-secret"


def colombo_today() -> date:
    return datetime.now(COLOMBO).date()


def bus_body(**overrides) -> BusIn:
    raw = {
        "busNumber": "NB-1234",
        "busName": "Southern Express",
        "busType": "AC",
        "from": "Colombo",
        "to": "Galle",
        "departureTime": "10:00",
        "arrivalTime": "12:30",
        "duration": "2h 30m",
        "fare": 1200,
        "amenities": ["AC", "WiFi"],
        "seatLayout": {"rows": 10, "seatsPerRow": 4},
    }
    raw.update(overrides)
    return BusIn.model_validate(raw)


def booking_body(bus_id: str, seats, travel_date: date | None = None, method: str = "cash", email: str = "nimal@example.com") -> BookingIn:
    return BookingIn.model_validate(
        {
            "vehicleId": bus_id,
            "travelDate": (travel_date or colombo_today() + timedelta(days=7)).isoformat(),
            "seats": [{"seatNumber": s} for s in seats],
            "passengerDetails": {"name": "Nimal Perera", "email": email, "phone": "0771234567"},
            "paymentMethod": method,
        }
    )


class FakeCheckout:
    """Stands in for the hosted checkout; records every posted order."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail:
            return httpx.Response(500, json={"status": -1, "msg": "gateway down"})
        return httpx.Response(200, json={"status": 1, "data": {"payment_url": "https://sandbox.payhere.lk/pay/o42"}})


def make_gateway(checkout: FakeCheckout | None = None, configured: bool = True) -> PaymentGatewayClient:
    return PaymentGatewayClient(
        merchant_id="1221149" if configured else "",
        secret=MERCHANT_SECRET if configured else "",
        checkout_url="https://sandbox.payhere.lk/pay/checkout",
        return_url="http://localhost:3000/payment-success",
        cancel_url="http://localhost:3000/payment-cancel",
        notify_url="http://localhost:8000/bookings/payhere-notify",
        http=httpx.Client(transport=httpx.MockTransport(checkout or FakeCheckout())),
    )


@pytest.fixture(params=["sql", "file"])
def storage(request, tmp_path):
    """
    Both storage variants. The SQL one is file-backed SQLite so that
    worker threads get their own connections.
    """
    if request.param == "sql":
        store = SqlStorage.from_url(f"sqlite+pysqlite:///{tmp_path / 'bus.db'}")
        store.create_schema()
        yield store
        store.engine.dispose()
    else:
        yield FileStorage(tmp_path / "bus-data.json")


@pytest.fixture()
def checkout():
    return FakeCheckout()


@pytest.fixture()
def svc(storage, checkout):
    return BookingService(storage, make_gateway(checkout), tz="Asia/Colombo")


@pytest.fixture()
def bus(svc):
    return svc.create_bus(bus_body())
