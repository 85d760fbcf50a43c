"""
Stripe client for BuildLedger.

Creates hosted checkout sessions for invoice balances.  The invoice and owner
ids are attached as metadata to both the session and the underlying payment
intent so every webhook the reconciliation engine receives can be routed back
to its invoice.  Sessions expire, 24 hours after creation by default, so the
expiry is returned along with the URL.
"""

from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

import stripe

from .errors import BuildLedgerError, TransientNetworkError
from .money import to_cents


class PaymentProcessorError(BuildLedgerError):
    code = "payment_processor_error"
    status_code = 502


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str
    expires_at: Optional[_dt.datetime] = None


class StripeGateway:
    def __init__(self, api_key: str, *, currency: str = "usd") -> None:
        self.api_key = api_key
        self.currency = currency

    def create_checkout_session(
        self,
        *,
        amount: Decimal,
        description: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> CheckoutSession:
        if not self.api_key:
            raise PaymentProcessorError("STRIPE_SECRET_KEY is not configured")
        params = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {"name": description},
                        "unit_amount": to_cents(amount),
                    },
                    "quantity": 1,
                }
            ],
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if customer_email:
            params["customer_email"] = customer_email
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            session = stripe.checkout.Session.create(api_key=self.api_key, **params)
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            raise TransientNetworkError("payment processor unavailable") from exc
        except stripe.StripeError as exc:
            raise PaymentProcessorError(f"checkout session failed: {exc.user_message or exc}") from exc
        expires_at = getattr(session, "expires_at", None)
        return CheckoutSession(
            id=session.id,
            url=session.url,
            expires_at=_dt.datetime.fromtimestamp(expires_at, _dt.timezone.utc) if expires_at else None,
        )


__all__ = ["CheckoutSession", "PaymentProcessorError", "StripeGateway"]
