"""
Online payment integration.

Two gateways are involved: PayHere (Sri Lanka) builds the hosted checkout
for new online bookings and calls back on /bookings/payhere-notify;
Razorpay-style client verification arrives on /bookings/verify-payment
with an HMAC proof over "order_id|payment_id".
"""
from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

import httpx

from .errors import NotFound, PaymentVerificationFailed, UpstreamGatewayError, ValidationError
from .schemas import Booking, Bus, OnlinePaymentOrder, PaymentDetails
from .seats import SlotLocks
from .storage import StorageGateway

log = logging.getLogger("busline.payments")

PAYHERE_SUCCESS = "2"


def amount_minor(total: float) -> int:
    """Rupees to cents; the gateway expects integral minor units."""
    return int(round(total * 100))


class PaymentGatewayClient:
    """
    Outbound client for the hosted checkout.

    Constructed once at startup and injected; pass `http` to reuse a
    configured `httpx.Client` (tests hand in one backed by a MockTransport).
    """

    def __init__(
        self,
        merchant_id: str,
        secret: str,
        checkout_url: str,
        return_url: str = "",
        cancel_url: str = "",
        notify_url: str = "",
        currency: str = "LKR",
        timeout: float = 15.0,
        http: Optional[httpx.Client] = None,
    ):
        self.merchant_id = merchant_id
        self.secret = secret
        self.checkout_url = checkout_url
        self.return_url = return_url
        self.cancel_url = cancel_url
        self.notify_url = notify_url
        self.currency = currency
        self.timeout = timeout
        self._http = http

    @property
    def configured(self) -> bool:
        return bool(self.merchant_id and self.secret and self.checkout_url)

    def signature(self, order_id: str, minor: int, currency: Optional[str] = None) -> str:
        raw = f"{self.secret}{order_id}{minor}{currency or self.currency}"
        return hashlib.md5(raw.encode()).hexdigest()

    def order_payload(self, booking: Booking, bus: Bus) -> dict[str, Any]:
        minor = amount_minor(booking.total_fare)
        first, _, last = booking.passenger_details.name.strip().partition(" ")
        return {
            "merchant_id": self.merchant_id,
            "return_url": self.return_url,
            "cancel_url": self.cancel_url,
            "notify_url": self.notify_url,
            "first_name": first,
            "last_name": last.strip(),
            "email": booking.passenger_details.email,
            "phone": booking.passenger_details.phone,
            "address": "Sri Lanka",
            "city": "Colombo",
            "country": "Sri Lanka",
            "order_id": booking.ticket_number,
            "items": f"Bus Ticket - {bus.bus_name}",
            "currency": self.currency,
            "amount": minor,
            "hash": self.signature(booking.ticket_number, minor),
        }

    def _post(self, payload: dict[str, Any]) -> httpx.Response:
        if self._http is not None:
            return self._http.post(self.checkout_url, json=payload, timeout=self.timeout)
        return httpx.post(self.checkout_url, json=payload, timeout=self.timeout)

    def create_order(self, booking: Booking, bus: Bus) -> OnlinePaymentOrder:
        if not self.configured:
            raise ValidationError("Online payment is not configured. Please use cash payment.")
        try:
            r = self._post(self.order_payload(booking, bus))
            r.raise_for_status()
            body = r.json()
            payment_url = body["data"]["payment_url"]
            if not isinstance(payment_url, str) or not payment_url:
                raise ValueError("empty payment_url")
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            log.warning(
                "payment order creation failed",
                extra={"ticket_number": booking.ticket_number, "error": str(e)},
            )
            raise UpstreamGatewayError(extra={"ticketNumber": booking.ticket_number})
        log.info("payment order created", extra={"ticket_number": booking.ticket_number})
        return OnlinePaymentOrder(payment_url=payment_url, order_id=booking.ticket_number)


class PaymentConfirmer:
    """
    Maps gateway confirmations onto booking and payment record state.

    Writes happen under the (bus, travel date) lock shared with the
    booking service, against a fresh read of the booking.
    """

    def __init__(self, storage: StorageGateway, razorpay_secret: str, slots: Optional[SlotLocks] = None):
        self.storage = storage
        self.razorpay_secret = razorpay_secret
        self.slots = slots or SlotLocks()

    def expected_signature(self, order_id: str, payment_id: str) -> str:
        msg = f"{order_id}|{payment_id}".encode()
        return hmac.new(self.razorpay_secret.encode(), msg, hashlib.sha256).hexdigest()

    def _mark_completed(self, booking: Booking, details: PaymentDetails, payment_changes: dict[str, Any]) -> Booking:
        with self.slots.get(booking.bus_id, booking.travel_date):
            current = self.storage.get_booking(booking.id)
            if current is None:
                raise NotFound("Booking not found")
            if current.booking_status == "cancelled":
                raise ValidationError("Booking is cancelled")
            updated = self.storage.update_booking(
                current.model_copy(update={"payment_status": "completed", "payment_details": details})
            )
            self.storage.update_payment_for_booking(
                current.id, {"payment_status": "completed", "paid_at": details.paid_at, **payment_changes}
            )
        log.info(
            "payment completed",
            extra={"booking_id": current.id, "ticket_number": current.ticket_number, "gateway": details.gateway},
        )
        return updated

    def verify_signature(self, order_id: str, payment_id: str, signature: str, booking_id: str) -> Booking:
        if not self.razorpay_secret:
            log.warning("payment verification attempted without RAZORPAY_KEY_SECRET")
            raise PaymentVerificationFailed()
        expected = self.expected_signature(order_id, payment_id)
        if not hmac.compare_digest(expected.encode(), (signature or "").encode("utf-8")):
            log.warning("payment signature mismatch", extra={"booking_id": booking_id})
            raise PaymentVerificationFailed()
        booking = self.storage.get_booking(booking_id)
        if not booking:
            raise NotFound("Booking not found")
        paid_at = datetime.now(timezone.utc)
        details = PaymentDetails(
            gateway="razorpay", order_id=order_id, payment_id=payment_id, signature=signature, paid_at=paid_at
        )
        return self._mark_completed(
            booking,
            details,
            {
                "gateway": "razorpay",
                "gateway_order_id": order_id,
                "gateway_payment_id": payment_id,
                "gateway_signature": signature,
            },
        )

    def handle_notification(
        self,
        order_id: str,
        payment_id: Optional[str],
        status_code: Union[int, str],
        status_message: Optional[str] = None,
    ) -> Booking:
        if str(status_code).strip() != PAYHERE_SUCCESS:
            log.info("payment notification not successful", extra={"order_id": order_id, "status_code": str(status_code)})
            raise PaymentVerificationFailed(status_message or "Payment was not successful")
        booking = self.storage.get_booking_by_ticket(order_id)
        if not booking:
            raise NotFound("Booking not found")
        paid_at = datetime.now(timezone.utc)
        details = PaymentDetails(gateway="payhere", order_id=order_id, payment_id=payment_id, paid_at=paid_at)
        return self._mark_completed(
            booking,
            details,
            {"gateway": "payhere", "gateway_order_id": order_id, "gateway_payment_id": payment_id},
        )
