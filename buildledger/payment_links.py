"""
Hosted checkout links for invoices.

A link is priced for the invoice's ``balance_due`` at the time it is issued
and cached on the invoice together with the session's expiry.  Applying a
payment or editing the totals clears the cache, so the next request asks the
processor for the remainder only.  A cached link close to its expiry is
replaced with a fresh session.
"""

from __future__ import annotations

import datetime as _dt
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from .errors import ConcurrentModificationError, ValidationError
from .lifecycle import DocumentKind
from .models import utcnow
from .money import ZERO
from .repository import DocumentRepository

logger = logging.getLogger(__name__)

# A link this close to expiry is not handed out.
EXPIRY_MARGIN = _dt.timedelta(minutes=10)


class PaymentLinkIssuer:
    def __init__(
        self,
        repository: DocumentRepository,
        gateway: Any,
        *,
        app_url: str,
        clock: Callable[[], _dt.datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.gateway = gateway
        self.app_url = app_url.rstrip("/")
        self.clock = clock

    def _live_link(self, invoice: Any) -> Optional[str]:
        if not invoice.payment_link:
            return None
        expires_at = invoice.payment_link_expires_at
        if expires_at is not None:
            if expires_at.tzinfo is None:
                # SQLite hands back naive UTC.
                expires_at = expires_at.replace(tzinfo=_dt.timezone.utc)
            if expires_at <= self.clock() + EXPIRY_MARGIN:
                return None
        return invoice.payment_link

    def get_or_create(self, invoice_id: str, owner_id: str) -> str:
        """Return the cached checkout URL, creating a session when there is none or it expired."""
        invoice = self.repository.require_document(DocumentKind.INVOICE, invoice_id, owner_id)
        cached = self._live_link(invoice)
        if cached:
            return cached
        if invoice.payment_link:
            logger.info(
                "cached checkout session expired, issuing a new one",
                extra={"invoice_id": invoice.id, "session_id": invoice.payment_session_id},
            )
        balance = Decimal(invoice.balance_due)
        if invoice.status == "paid" or balance <= ZERO:
            raise ValidationError("invoice is already paid")

        session = self.gateway.create_checkout_session(
            amount=balance,
            description=f"Invoice {invoice.number}",
            metadata={"invoice_id": invoice.id, "owner_id": invoice.owner_id},
            success_url=f"{self.app_url}/invoices/{invoice.id}?payment=success",
            cancel_url=f"{self.app_url}/invoices/{invoice.id}?payment=cancelled",
            customer_email=invoice.client_email,
            # Same invoice version, same session.  Caching a link bumps the
            # version, so a replacement for an expired link gets a new key.
            idempotency_key=f"checkout-{invoice.id}-{invoice.version}",
        )
        logger.info(
            "checkout session created",
            extra={"invoice_id": invoice.id, "owner_id": owner_id, "session_id": session.id, "amount": str(balance)},
        )
        return self._cache(invoice_id, owner_id, balance, session)

    def _cache(self, invoice_id: str, owner_id: str, balance: Decimal, session: Any) -> str:
        result: Dict[str, str] = {"url": session.url}

        def store(document: Any) -> None:
            cached = self._live_link(document)
            if cached:
                # Another request cached a link first; hand out that one.
                result["url"] = cached
                return
            if Decimal(document.balance_due) != balance:
                logger.info(
                    "balance changed while creating checkout session, link not cached",
                    extra={"invoice_id": invoice_id, "session_id": session.id},
                )
                return
            document.payment_link = session.url
            document.payment_session_id = session.id
            document.payment_link_expires_at = session.expires_at

        try:
            self.repository.modify_document(DocumentKind.INVOICE, invoice_id, owner_id, store)
        except ConcurrentModificationError:
            logger.warning(
                "invoice changed while caching payment link, returning uncached link",
                extra={"invoice_id": invoice_id, "session_id": session.id},
            )
        return result["url"]


__all__ = ["PaymentLinkIssuer"]
