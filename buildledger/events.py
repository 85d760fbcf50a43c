"""
Payment-processor webhook events.

Raw Stripe payloads are verified and then parsed into a closed set of event
types.  The reconciliation engine dispatches on these types and must handle
each one or explicitly ignore it; nothing downstream reads the raw dict.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Optional, Union

import stripe

from .errors import InvalidSignatureError, ValidationError
from .money import from_cents

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
CHECKOUT_ASYNC_SUCCEEDED = "checkout.session.async_payment_succeeded"
CHECKOUT_ASYNC_FAILED = "checkout.session.async_payment_failed"


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str
    external_id: Optional[str]
    amount: Optional[Decimal]
    invoice_id: Optional[str]
    owner_id: Optional[str]
    # False for asynchronous methods (bank debits) that settle later.
    paid: bool = True


@dataclass(frozen=True)
class PaymentSucceeded:
    event_id: str
    external_id: Optional[str]
    amount: Optional[Decimal]
    invoice_id: Optional[str]
    owner_id: Optional[str]


@dataclass(frozen=True)
class PaymentFailed:
    event_id: str
    external_id: Optional[str]
    amount: Optional[Decimal]
    invoice_id: Optional[str]
    owner_id: Optional[str]
    failure_message: Optional[str] = None
    payment_intent: Optional[str] = None


@dataclass(frozen=True)
class UnhandledEvent:
    event_id: str
    type: str


PaymentEvent = Union[CheckoutCompleted, PaymentSucceeded, PaymentFailed, UnhandledEvent]


def _amount(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return from_cents(value)


def _object_id(value: Any) -> Optional[str]:
    # Expandable fields arrive either as an id string or as the full object.
    if isinstance(value, Mapping):
        return value.get("id")
    return value or None


def parse_event(data: Any) -> PaymentEvent:
    """Map a decoded Stripe event to one of the typed events above."""
    if not isinstance(data, Mapping):
        raise ValidationError("event body must be a JSON object")
    event_type = data.get("type")
    event_id = data.get("id") or ""
    obj = (data.get("data") or {}).get("object")
    if not event_type or not isinstance(obj, Mapping):
        raise ValidationError("event is missing type or data.object")

    metadata = obj.get("metadata") or {}
    invoice_id = metadata.get("invoice_id")
    owner_id = metadata.get("owner_id") or metadata.get("user_id")

    if event_type in (CHECKOUT_COMPLETED, CHECKOUT_ASYNC_SUCCEEDED):
        return CheckoutCompleted(
            event_id=event_id,
            external_id=_object_id(obj.get("payment_intent")),
            amount=_amount(obj.get("amount_total")),
            invoice_id=invoice_id,
            owner_id=owner_id,
            paid=obj.get("payment_status", "paid") == "paid",
        )
    if event_type == CHECKOUT_ASYNC_FAILED:
        # The session is finished; a new attempt needs a new session and intent.
        intent = _object_id(obj.get("payment_intent"))
        return PaymentFailed(
            event_id=event_id,
            external_id=intent,
            amount=_amount(obj.get("amount_total")),
            invoice_id=invoice_id,
            owner_id=owner_id,
            payment_intent=intent,
        )
    if event_type == PAYMENT_SUCCEEDED:
        received = obj.get("amount_received")
        return PaymentSucceeded(
            event_id=event_id,
            external_id=obj.get("id"),
            amount=_amount(received if received is not None else obj.get("amount")),
            invoice_id=invoice_id,
            owner_id=owner_id,
        )
    if event_type == PAYMENT_FAILED:
        error = obj.get("last_payment_error")
        error = error if isinstance(error, Mapping) else {}
        # The intent stays open after a decline and the payer may retry it, so
        # the declined attempt is keyed by its charge (or by this event).
        return PaymentFailed(
            event_id=event_id,
            external_id=_object_id(error.get("charge")) or event_id or None,
            amount=_amount(obj.get("amount")),
            invoice_id=invoice_id,
            owner_id=owner_id,
            failure_message=error.get("message"),
            payment_intent=obj.get("id"),
        )
    return UnhandledEvent(event_id=event_id, type=event_type)


def verify_and_parse(
    payload: bytes,
    signature: Optional[str],
    secret: str,
    tolerance: int = 300,
) -> PaymentEvent:
    """Check the ``Stripe-Signature`` header against ``secret``, then parse.

    Raises ``InvalidSignatureError`` before the body is decoded when the
    signature is absent, stale or wrong.
    """
    if not signature or not secret:
        raise InvalidSignatureError("missing signature or webhook secret")
    try:
        text = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(text, signature, secret, tolerance)
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
        raise InvalidSignatureError("signature verification failed") from exc
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise ValidationError("event body is not valid JSON") from exc
    return parse_event(data)
