"""
Tests for webhook signature verification and event parsing.

Signatures are produced the way Stripe documents them:
``t=<timestamp>,v1=HMAC_SHA256(secret, "<timestamp>.<payload>")``.
"""

import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest

from buildledger.errors import InvalidSignatureError, ValidationError
from buildledger.events import (
    CheckoutCompleted,
    PaymentFailed,
    PaymentSucceeded,
    UnhandledEvent,
    parse_event,
    verify_and_parse,
)

SECRET = "whsec_test"


def sign(payload: str, secret: str = SECRET, timestamp=None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def checkout_event(payment_status="paid"):
    return {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_test_1",
                "payment_intent": "pi_123",
                "amount_total": 325500,
                "payment_status": payment_status,
                "metadata": {"invoice_id": "inv-1", "owner_id": "owner-1"},
            }
        },
    }


def test_valid_signature_parses_checkout():
    payload = json.dumps(checkout_event())
    event = verify_and_parse(payload.encode(), sign(payload), SECRET)
    assert event == CheckoutCompleted(
        event_id="evt_1", external_id="pi_123", amount=Decimal("3255.00"), invoice_id="inv-1", owner_id="owner-1"
    )


def test_wrong_secret_rejected():
    payload = json.dumps(checkout_event())
    with pytest.raises(InvalidSignatureError):
        verify_and_parse(payload.encode(), sign(payload, secret="whsec_other"), SECRET)


def test_tampered_body_rejected():
    payload = json.dumps(checkout_event())
    tampered = payload.replace("325500", "1")
    with pytest.raises(InvalidSignatureError):
        verify_and_parse(tampered.encode(), sign(payload), SECRET)


def test_stale_timestamp_rejected():
    payload = json.dumps(checkout_event())
    header = sign(payload, timestamp=int(time.time()) - 3600)
    with pytest.raises(InvalidSignatureError):
        verify_and_parse(payload.encode(), header, SECRET, tolerance=300)


def test_missing_signature_rejected():
    with pytest.raises(InvalidSignatureError):
        verify_and_parse(b"{}", None, SECRET)


def test_signed_garbage_is_a_validation_error():
    payload = "not json"
    with pytest.raises(ValidationError):
        verify_and_parse(payload.encode(), sign(payload), SECRET)


def test_unpaid_checkout_is_not_paid():
    event = parse_event(checkout_event(payment_status="unpaid"))
    assert isinstance(event, CheckoutCompleted)
    assert event.paid is False


def test_expanded_payment_intent():
    data = checkout_event()
    data["data"]["object"]["payment_intent"] = {"id": "pi_999", "object": "payment_intent"}
    assert parse_event(data).external_id == "pi_999"


def test_payment_intent_events():
    succeeded = {
        "id": "evt_2",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_123", "amount": 325500, "amount_received": 100000, "metadata": {"invoice_id": "inv-1", "user_id": "owner-1"}}},
    }
    event = parse_event(succeeded)
    assert isinstance(event, PaymentSucceeded)
    assert event.amount == Decimal("1000.00")
    # Older links tag the owner as user_id.
    assert event.owner_id == "owner-1"

    failed = {
        "id": "evt_3",
        "type": "payment_intent.payment_failed",
        "data": {"object": {"id": "pi_123", "amount": 325500, "metadata": {}, "last_payment_error": {"message": "card declined"}}},
    }
    event = parse_event(failed)
    assert isinstance(event, PaymentFailed)
    assert event.invoice_id is None
    assert event.failure_message == "card declined"
    # No charge on the error: the event itself identifies the attempt.
    assert (event.external_id, event.payment_intent) == ("evt_3", "pi_123")

    failed["data"]["object"]["last_payment_error"]["charge"] = "ch_9"
    assert parse_event(failed).external_id == "ch_9"


def test_async_checkout_outcomes():
    session = {"id": "cs_1", "payment_intent": "pi_7", "amount_total": 5000, "payment_status": "paid", "metadata": {}}
    event = parse_event({"id": "evt_5", "type": "checkout.session.async_payment_succeeded", "data": {"object": session}})
    assert isinstance(event, CheckoutCompleted)
    assert (event.external_id, event.paid) == ("pi_7", True)

    session = dict(session, payment_status="unpaid")
    event = parse_event({"id": "evt_6", "type": "checkout.session.async_payment_failed", "data": {"object": session}})
    assert isinstance(event, PaymentFailed)
    assert event.external_id == "pi_7"
    assert event.amount == Decimal("50.00")


def test_other_types_are_unhandled():
    event = parse_event({"id": "evt_4", "type": "customer.created", "data": {"object": {}}})
    assert event == UnhandledEvent(event_id="evt_4", type="customer.created")


def test_event_without_object_is_invalid():
    with pytest.raises(ValidationError):
        parse_event({"id": "evt_5", "type": "payment_intent.succeeded"})
