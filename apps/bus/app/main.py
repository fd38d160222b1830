import logging
import os
import threading
from datetime import date
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.trustedhost import TrustedHostMiddleware

from busline_shared import (
    RequestIDMiddleware,
    add_standard_health,
    configure_cors,
    get_request_id,
    register_shutdown,
    register_startup,
    setup_json_logging,
)

from . import settings
from .auth import authenticate, create_admin as _create_admin, login as _login
from .booking import BookingService
from .errors import BookingError, Forbidden, ValidationError
from .payments import PaymentConfirmer, PaymentGatewayClient
from .schemas import Admin, AdminCreateIn, BookingIn, BusIn, LoginIn, PayHereNotifyIn, VerifyPaymentIn
from .storage import StorageGateway, select_storage

log = logging.getLogger("busline.api")

settings.enforce_jwt_secret_baseline()

app = FastAPI(
    title="Bus API",
    version="0.1.0",
    docs_url="/docs" if settings.ENABLE_DOCS else None,
    redoc_url="/redoc" if settings.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if settings.ENABLE_DOCS else None,
)
setup_json_logging()
app.add_middleware(RequestIDMiddleware)
configure_cors(app, os.getenv("ALLOWED_ORIGINS", settings.FRONTEND_URL))

# Trusted hosts: mitigate Host header attacks and misrouting.
_allowed_hosts_raw = (os.getenv("ALLOWED_HOSTS") or "").strip()
if _allowed_hosts_raw:
    _allowed_hosts = [h.strip() for h in _allowed_hosts_raw.split(",") if h.strip()]
    # Keep local health checks working even if ALLOWED_HOSTS is minimal.
    for _extra in ("localhost", "127.0.0.1"):
        if _extra not in _allowed_hosts:
            _allowed_hosts.append(_extra)
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=_allowed_hosts)


# ---- service wiring ----
_service: Optional[BookingService] = None
_service_lock = threading.Lock()


def build_service(storage: Optional[StorageGateway] = None, gateway: Optional[PaymentGatewayClient] = None) -> BookingService:
    storage = storage or select_storage()
    gateway = gateway or PaymentGatewayClient(
        merchant_id=settings.PAYHERE_MERCHANT_ID,
        secret=settings.PAYHERE_MERCHANT_SECRET,
        checkout_url=settings.PAYHERE_CHECKOUT_URL,
        return_url=f"{settings.FRONTEND_URL}/payment-success",
        cancel_url=f"{settings.FRONTEND_URL}/payment-cancel",
        notify_url=f"{settings.BACKEND_URL}/bookings/payhere-notify",
        currency=settings.PAYHERE_CURRENCY,
        timeout=settings.PAYHERE_TIMEOUT_SECS,
    )
    return BookingService(storage, gateway, tz=settings.OPERATING_TZ)


def get_service() -> BookingService:
    global _service
    if _service is None:
        with _service_lock:
            if _service is None:
                _service = build_service()
    return _service


def use_service(svc: Optional[BookingService]) -> None:
    """Install a prebuilt service (tests, embedding); None rebuilds lazily."""
    global _service
    with _service_lock:
        _service = svc


def get_confirmer(svc: BookingService = Depends(get_service)) -> PaymentConfirmer:
    return PaymentConfirmer(svc.storage, settings.RAZORPAY_KEY_SECRET, slots=svc.slots)


@register_startup(app)
def _startup() -> None:
    svc = get_service()
    log.info("bus service ready", extra={"storage": svc.storage.name, "timezone": settings.OPERATING_TZ})


@register_shutdown(app)
def _shutdown() -> None:
    if _service is not None:
        _service.storage.close()
        log.info("bus service stopped", extra={"storage": _service.storage.name})


def _readiness() -> dict[str, Any]:
    svc = _service
    if svc is None:
        return {"ready": False, "storage": None}
    try:
        ok = svc.storage.ping()
    except Exception:
        log.warning("storage ping failed", exc_info=True)
        ok = False
    return {"ready": ok, "storage": svc.storage.name}


add_standard_health(app, readiness=_readiness)


def require_admin(
    authorization: Optional[str] = Header(default=None),
    svc: BookingService = Depends(get_service),
) -> Admin:
    return authenticate(svc.storage, authorization)


def require_superadmin(admin: Admin = Depends(require_admin)) -> Admin:
    if admin.role != "superadmin":
        raise Forbidden("Access denied - superadmin role required")
    return admin


# ---- error envelope ----
@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    if isinstance(exc, BookingError):
        payload: dict[str, Any] = {"success": False, "message": exc.message, **exc.extra}
        if exc.errors:
            payload["errors"] = exc.errors
        return JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers)
    # Scrub server-side error details in prod/staging.
    if settings.is_prod_env() and exc.status_code >= 500:
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": "Server error", "request_id": get_request_id()},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def _validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        errors.append({"field": ".".join(loc), "message": err.get("msg", "invalid")})
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Validation failed", "errors": errors},
    )


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    rid = get_request_id()
    logging.getLogger("busline.errors").exception("unhandled exception", extra={"path": request.url.path})
    payload: dict[str, Any] = {"success": False, "message": "Server error", "request_id": rid}
    if not settings.is_prod_env():
        # dev/test: keep a useful error message for debugging.
        payload["error"] = str(exc)
    return JSONResponse(status_code=500, content=payload)


# ---- vehicles ----
vehicles = APIRouter(prefix="/vehicles", tags=["vehicles"])


@vehicles.get("")
def search_vehicles(
    origin: Optional[str] = Query(default=None, alias="from"),
    destination: Optional[str] = Query(default=None, alias="to"),
    travel_date: Optional[date] = Query(default=None, alias="date"),
    svc: BookingService = Depends(get_service),
):
    rows = svc.search_buses(origin, destination, travel_date)
    return {"success": True, "count": len(rows), "data": [r.to_wire() for r in rows]}


@vehicles.get("/{bus_id}")
def get_vehicle(bus_id: str, svc: BookingService = Depends(get_service)):
    return {"success": True, "data": svc.get_bus(bus_id).to_wire()}


@vehicles.get("/{bus_id}/seats")
def vehicle_seats(
    bus_id: str,
    travel_date: Optional[date] = Query(default=None, alias="date"),
    svc: BookingService = Depends(get_service),
):
    return {"success": True, "data": svc.seat_map(bus_id, travel_date)}


@vehicles.post("", status_code=201)
def create_vehicle(body: BusIn, admin: Admin = Depends(require_admin), svc: BookingService = Depends(get_service)):
    bus = svc.create_bus(body)
    return {"success": True, "message": "Bus created successfully", "data": bus.to_wire()}


@vehicles.put("/{bus_id}")
def update_vehicle(bus_id: str, body: BusIn, admin: Admin = Depends(require_admin), svc: BookingService = Depends(get_service)):
    bus = svc.update_bus(bus_id, body)
    return {"success": True, "message": "Bus updated successfully", "data": bus.to_wire()}


@vehicles.delete("/{bus_id}")
def delete_vehicle(bus_id: str, admin: Admin = Depends(require_admin), svc: BookingService = Depends(get_service)):
    outcome = svc.delete_bus(bus_id)
    message = "Bus deleted successfully" if outcome == "deleted" else "Bus deactivated (historical bookings exist)"
    return {"success": True, "message": message, "data": {"id": bus_id, "result": outcome}}


# ---- bookings ----
bookings = APIRouter(prefix="/bookings", tags=["bookings"])


@bookings.post("", status_code=201)
def create_booking(body: BookingIn, svc: BookingService = Depends(get_service)):
    result = svc.create_booking(body)
    return {"success": True, "message": "Booking created successfully", "data": result.to_wire()}


@bookings.post("/verify-payment")
def verify_payment(body: VerifyPaymentIn, confirmer: PaymentConfirmer = Depends(get_confirmer)):
    booking = confirmer.verify_signature(
        body.razorpay_order_id, body.razorpay_payment_id, body.razorpay_signature, body.booking_id
    )
    return {"success": True, "message": "Payment verified successfully", "data": booking.to_wire()}


@bookings.post("/payhere-notify")
async def payhere_notify(request: Request, confirmer: PaymentConfirmer = Depends(get_confirmer)):
    ctype = (request.headers.get("content-type") or "").lower()
    try:
        if "application/json" in ctype:
            raw: Any = await request.json()
        else:
            raw = dict(await request.form())
    except ValueError:
        raise ValidationError("Invalid payment notification")
    try:
        note = PayHereNotifyIn.model_validate(raw)
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid payment notification",
            errors=[{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in e.errors()],
        )
    await run_in_threadpool(
        confirmer.handle_notification, note.order_id, note.payment_id, note.status_code, note.status_message
    )
    return {"success": True, "message": "Payment verified"}


@bookings.get("/stats")
def booking_stats(admin: Admin = Depends(require_admin), svc: BookingService = Depends(get_service)):
    return {"success": True, "data": svc.get_statistics()}


@bookings.get("/ticket/{ticket_number}")
def booking_by_ticket(ticket_number: str, svc: BookingService = Depends(get_service)):
    return {"success": True, "data": svc.get_booking_by_ticket(ticket_number).to_wire()}


@bookings.post("/ticket/{ticket_number}/payment-order")
def retry_payment_order(ticket_number: str, svc: BookingService = Depends(get_service)):
    result = svc.retry_online_payment(ticket_number)
    return {"success": True, "data": result.to_wire()}


@bookings.get("")
def list_bookings(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    status: Optional[str] = Query(default=None),
    payment_status: Optional[str] = Query(default=None, alias="paymentStatus"),
    admin: Admin = Depends(require_admin),
    svc: BookingService = Depends(get_service),
):
    result = svc.list_bookings(page=page, limit=limit, status=status, payment_status=payment_status)
    return {
        "success": True,
        "count": len(result.bookings),
        "total": result.total,
        "page": result.page,
        "totalPages": result.total_pages,
        "data": [b.to_wire() for b in result.bookings],
    }


@bookings.put("/{booking_id}/cancel")
def cancel_booking(booking_id: str, svc: BookingService = Depends(get_service)):
    booking = svc.cancel_booking(booking_id)
    return {"success": True, "message": "Booking cancelled successfully", "data": booking.to_wire()}


# ---- admin auth ----
auth = APIRouter(prefix="/auth", tags=["auth"])


@auth.post("/login")
def login(body: LoginIn, svc: BookingService = Depends(get_service)):
    admin, token = _login(svc.storage, body.email, body.password)
    return {"success": True, "message": "Login successful", "data": {"admin": admin.public(), "token": token}}


@auth.get("/profile")
def profile(admin: Admin = Depends(require_admin)):
    return {"success": True, "data": {"admin": admin.public()}}


@auth.post("/create-admin", status_code=201)
def create_admin(
    body: AdminCreateIn,
    admin: Admin = Depends(require_superadmin),
    svc: BookingService = Depends(get_service),
):
    created = _create_admin(svc.storage, body)
    return {"success": True, "message": "Admin created successfully", "data": {"admin": created.public()}}


app.include_router(vehicles)
app.include_router(bookings)
app.include_router(auth)
