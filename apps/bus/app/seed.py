import argparse
import logging
import uuid
from typing import Optional

from busline_shared import setup_json_logging

from . import settings
from .auth import hash_password
from .booking import BookingService
from .main import build_service
from .schemas import Admin, BusIn

log = logging.getLogger("busline.seed")

SAMPLE_BUSES = [
    {
        "busNumber": "NB-1234",
        "busName": "Southern Express",
        "busType": "AC",
        "from": "Colombo",
        "to": "Galle",
        "departureTime": "06:30",
        "arrivalTime": "09:00",
        "duration": "2h 30m",
        "fare": 1200,
        "amenities": ["AC", "WiFi", "Charging Point", "Water Bottle"],
        "seatLayout": {"rows": 10, "seatsPerRow": 4},
    },
    {
        "busNumber": "NC-5678",
        "busName": "Hill Country Luxury",
        "busType": "Luxury",
        "from": "Colombo",
        "to": "Kandy",
        "departureTime": "07:15",
        "arrivalTime": "10:30",
        "duration": "3h 15m",
        "fare": 1500,
        "amenities": ["AC", "Recliner Seats", "Entertainment", "Snacks"],
        "seatLayout": {"rows": 8, "seatsPerRow": 4},
    },
    {
        "busNumber": "NP-9012",
        "busName": "Northern Sleeper",
        "busType": "Sleeper",
        "from": "Colombo",
        "to": "Jaffna",
        "departureTime": "21:30",
        "arrivalTime": "05:30",
        "duration": "8h 00m",
        "fare": 2800,
        "amenities": ["AC", "Sleeper Berths", "Reading Light", "Curtains"],
        "seatLayout": {"rows": 12, "seatsPerRow": 3},
    },
    {
        "busNumber": "WP-3456",
        "busName": "Coastal Semi-Sleeper",
        "busType": "Semi-Sleeper",
        "from": "Kandy",
        "to": "Colombo",
        "departureTime": "14:00",
        "arrivalTime": "17:15",
        "duration": "3h 15m",
        "fare": 1100,
        "amenities": ["AC", "Push Back Seats", "Water Bottle"],
        "seatLayout": {"rows": 11, "seatsPerRow": 4},
    },
    {
        "busNumber": "SG-7890",
        "busName": "Ruhuna Non-AC",
        "busType": "Non-AC",
        "from": "Galle",
        "to": "Matara",
        "departureTime": "08:00",
        "arrivalTime": "09:10",
        "duration": "1h 10m",
        "fare": 280,
        "amenities": ["Fan", "Music System"],
        "seatLayout": {"rows": 13, "seatsPerRow": 4},
    },
]


def seed_demo(reset: bool = False, svc: Optional[BookingService] = None) -> BookingService:
    svc = svc or build_service()
    storage = svc.storage
    if reset:
        storage.reset()

    if not storage.find_admin_by_email(settings.ADMIN_EMAIL):
        storage.create_admin(
            Admin(
                id=str(uuid.uuid4()),
                name="Super Admin",
                email=settings.ADMIN_EMAIL,
                password_hash=hash_password(settings.ADMIN_PASSWORD),
                role="superadmin",
            )
        )
        log.info("default admin created", extra={"email": settings.ADMIN_EMAIL})

    existing = {b.bus_number for b in storage.find_buses(active_only=False)}
    created = 0
    for raw in SAMPLE_BUSES:
        body = BusIn.model_validate(raw)
        if body.bus_number in existing:
            continue
        svc.create_bus(body)
        created += 1
    log.info("sample buses seeded", extra={"buses_created": created, "storage": storage.name})
    return svc


def main():
    p = argparse.ArgumentParser(description="Seed the bus service with an admin and sample buses")
    p.add_argument("--reset", action="store_true", help="drop all existing records first")
    args = p.parse_args()
    setup_json_logging()
    seed_demo(reset=args.reset)


if __name__ == "__main__":
    main()
