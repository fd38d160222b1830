from __future__ import annotations

import hashlib
import hmac

import pytest

from apps.bus.app.errors import NotFound, PaymentVerificationFailed, ValidationError
from apps.bus.app.payments import PaymentConfirmer, amount_minor

from conftest import MERCHANT_SECRET, booking_body, make_gateway

RZP_SECRET = "rzp_test_secret"


def _proof(order_id: str, payment_id: str, secret: str = RZP_SECRET) -> str:
    return hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


@pytest.fixture()
def confirmer(svc):
    return PaymentConfirmer(svc.storage, RZP_SECRET, slots=svc.slots)


def test_amount_minor_rounds_to_cents():
    assert amount_minor(1200) == 120000
    assert amount_minor(0.1 + 0.2) == 30
    assert amount_minor(1999.995) in (199999, 200000)


def test_checkout_signature_formula():
    gw = make_gateway()
    raw = f"{MERCHANT_SECRET}BKTABC123456000LKR"
    assert gw.signature("BKTABC1234", 56000) == hashlib.md5(raw.encode()).hexdigest()


def test_verify_signature_marks_booking_and_payment_completed(svc, bus, confirmer):
    b = svc.create_booking(booking_body(bus.id, ["1A"], method="online")).booking
    sig = _proof("order_9", "pay_7")

    out = confirmer.verify_signature("order_9", "pay_7", sig, b.id)
    assert out.payment_status == "completed"
    assert out.payment_details.payment_id == "pay_7"
    assert out.payment_details.signature == sig
    assert out.payment_details.paid_at is not None

    payment = svc.storage.get_payment_for_booking(b.id)
    assert payment.payment_status == "completed"
    assert payment.gateway_payment_id == "pay_7"
    assert payment.paid_at is not None


def test_any_single_character_mutation_fails(svc, bus, confirmer):
    b = svc.create_booking(booking_body(bus.id, ["1B"], method="online")).booking
    sig = _proof("order_1", "pay_1")
    for i in range(len(sig)):
        flipped = "0" if sig[i] != "0" else "1"
        mutated = sig[:i] + flipped + sig[i + 1 :]
        with pytest.raises(PaymentVerificationFailed):
            confirmer.verify_signature("order_1", "pay_1", mutated, b.id)
    with pytest.raises(PaymentVerificationFailed):
        confirmer.verify_signature("order_1", "pay_1", sig.upper(), b.id)
    with pytest.raises(PaymentVerificationFailed):
        confirmer.verify_signature("order_1", "pay_2", sig, b.id)
    assert svc.get_booking(b.id).payment_status == "pending"


def test_verify_unknown_booking_and_missing_secret(svc, bus):
    with pytest.raises(NotFound):
        PaymentConfirmer(svc.storage, RZP_SECRET).verify_signature("o", "p", _proof("o", "p"), "missing")
    with pytest.raises(PaymentVerificationFailed):
        PaymentConfirmer(svc.storage, "").verify_signature("o", "p", _proof("o", "p", ""), "missing")


def test_notification_success_by_ticket(svc, bus, confirmer):
    b = svc.create_booking(booking_body(bus.id, ["2A"], method="online")).booking
    out = confirmer.handle_notification(b.ticket_number, "320025071278", "2", "Successfully completed")
    assert out.payment_status == "completed"
    assert out.payment_details.gateway == "payhere"
    payment = svc.storage.get_payment_for_booking(b.id)
    assert payment.payment_status == "completed"
    assert payment.gateway_payment_id == "320025071278"


def test_notification_failure_changes_nothing(svc, bus, confirmer):
    b = svc.create_booking(booking_body(bus.id, ["2B"], method="online")).booking
    with pytest.raises(PaymentVerificationFailed) as ei:
        confirmer.handle_notification(b.ticket_number, "1", -2, "Card declined")
    assert ei.value.message == "Card declined"
    assert svc.get_booking(b.id).payment_status == "pending"


def test_notification_unknown_ticket(confirmer):
    with pytest.raises(NotFound):
        confirmer.handle_notification("BKTNOPE", "1", 2)


def test_cancelled_booking_cannot_be_paid(svc, bus, confirmer):
    b = svc.create_booking(booking_body(bus.id, ["2C"], method="online")).booking
    svc.cancel_booking(b.id)
    with pytest.raises(ValidationError):
        confirmer.handle_notification(b.ticket_number, "1", "2")


def test_non_ascii_proof_is_rejected(svc, bus, confirmer):
    b = svc.create_booking(booking_body(bus.id, ["3A"], method="online")).booking
    sig = _proof("order_3", "pay_3")
    with pytest.raises(PaymentVerificationFailed):
        confirmer.verify_signature("order_3", "pay_3", sig[:-1] + "é", b.id)
    assert svc.get_booking(b.id).payment_status == "pending"


def test_confirmation_after_concurrent_cancel_does_not_revive_booking(svc, bus, confirmer, monkeypatch):
    b = svc.create_booking(booking_body(bus.id, ["3B"], method="online")).booking
    real = confirmer._mark_completed

    def cancel_and_resell_first(booking, details, changes):
        svc.cancel_booking(booking.id)
        svc.create_booking(booking_body(bus.id, ["3B"], email="second@example.com"))
        return real(booking, details, changes)

    monkeypatch.setattr(confirmer, "_mark_completed", cancel_and_resell_first)
    with pytest.raises(ValidationError):
        confirmer.verify_signature("order_4", "pay_4", _proof("order_4", "pay_4"), b.id)

    assert svc.get_booking(b.id).booking_status == "cancelled"
    holders = [
        x for x in svc.storage.find_bookings_for_bus_date(bus.id, b.travel_date)
        if x.booking_status != "cancelled" and "3B" in x.seats
    ]
    assert len(holders) == 1
    assert svc.storage.get_payment_for_booking(b.id).payment_status == "pending"


def test_cancel_sees_payment_completed_after_its_first_read(svc, bus, confirmer, monkeypatch):
    b = svc.create_booking(booking_body(bus.id, ["3C"], method="online")).booking
    real = svc.departure_at

    def pay_first(bus_, travel_date):
        confirmer.verify_signature("order_5", "pay_5", _proof("order_5", "pay_5"), b.id)
        return real(bus_, travel_date)

    monkeypatch.setattr(svc, "departure_at", pay_first)
    out = svc.cancel_booking(b.id)
    assert out.booking_status == "cancelled"
    assert out.payment_status == "refunded"
    assert svc.storage.get_payment_for_booking(b.id).payment_status == "refunded"
