"""
Payment reconciliation.

Turns payment-processor events into ledger rows and invoice balance changes.
Deliveries may be duplicated, reordered or concurrent, so each event is
processed as one transaction that:

1. looks the processor transaction id up in the ledger and, when it is
   already there, only moves the ledger status forward;
2. otherwise loads the invoice, checks its stored owner against the owner in
   the event metadata, records the payment and applies it to the balance.

Money moves exactly once per transaction id: when a row is inserted as
``completed`` or when a ``pending`` row becomes ``completed``.  Invoice writes
are guarded by the version column; a lost race rolls the whole transaction
back and the event is replayed from step 1.
"""

from __future__ import annotations

import datetime as _dt
import enum
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from .errors import (
    AuthorizationError,
    BuildLedgerError,
    ConcurrentModificationError,
    DuplicateExternalIdError,
    NotFoundError,
    ValidationError,
)
from .events import CheckoutCompleted, PaymentEvent, PaymentFailed, PaymentSucceeded, UnhandledEvent
from .ledger import MANUAL_METHODS, PaymentLedger, PaymentMethod, PaymentStatus, can_transition, is_stale
from .lifecycle import DocumentKind, apply_payment
from .mailer import build_payment_receipt
from .models import Invoice, Payment, utcnow
from .money import ZERO, quantize, to_decimal
from .repository import DocumentRepository

logger = logging.getLogger(__name__)


class Outcome(str, enum.Enum):
    APPLIED = "applied"
    RECORDED = "recorded"
    STATUS_UPDATED = "status_updated"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"
    IGNORED = "ignored"
    DROPPED = "dropped"


@dataclass(frozen=True)
class ReconciliationResult:
    outcome: Outcome
    invoice_id: Optional[str] = None
    payment_id: Optional[str] = None
    balance_due: Optional[Decimal] = None
    status: Optional[str] = None
    invoice: Any = field(default=None, repr=False, compare=False)


def _ledger_status(event: PaymentEvent) -> PaymentStatus:
    if isinstance(event, CheckoutCompleted):
        return PaymentStatus.COMPLETED if event.paid else PaymentStatus.PENDING
    if isinstance(event, PaymentSucceeded):
        return PaymentStatus.COMPLETED
    if isinstance(event, PaymentFailed):
        return PaymentStatus.FAILED
    raise TypeError(f"no ledger status for {type(event).__name__}")


class ReconciliationEngine:
    def __init__(
        self,
        repository: DocumentRepository,
        ledger: PaymentLedger,
        *,
        mailer: Any = None,
        currency: str = "usd",
        max_attempts: int = 5,
        clock: Callable[[], _dt.datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.mailer = mailer
        self.currency = currency
        self.max_attempts = max_attempts
        self.clock = clock

    # -- entry points --------------------------------------------------

    def handle(self, event: PaymentEvent) -> ReconciliationResult:
        """Apply one verified processor event.

        Raises ``AuthorizationError`` when the event's owner does not own the
        invoice, and a ``TransientError`` when the store could not be updated
        (the processor should redeliver).  Everything else is reported through
        the result's outcome.
        """
        if isinstance(event, UnhandledEvent):
            logger.info("ignoring unhandled event type", extra={"event_id": event.event_id, "event_type": event.type})
            return ReconciliationResult(Outcome.IGNORED)
        if not isinstance(event, (CheckoutCompleted, PaymentSucceeded, PaymentFailed)):
            raise TypeError(f"unsupported event {type(event).__name__}")

        context = {
            "event_id": event.event_id,
            "external_id": event.external_id,
            "invoice_id": event.invoice_id,
            "owner_id": event.owner_id,
        }
        missing = [name for name in ("external_id", "invoice_id", "owner_id") if not getattr(event, name)]
        if event.amount is None or event.amount <= ZERO:
            missing.append("amount")
        if missing:
            logger.error("dropping payment event with missing fields", extra={**context, "missing": missing})
            return ReconciliationResult(Outcome.DROPPED, invoice_id=event.invoice_id)

        status = _ledger_status(event)
        try:
            result = self._run(lambda session: self._reconcile(session, event, status), context)
        except AuthorizationError as exc:
            logger.critical("payment event owner does not match invoice owner", extra={**context, **exc.context})
            self.repository.write_audit(
                "owner_mismatch",
                owner_id=exc.context.get("stored_owner_id"),
                kind=DocumentKind.INVOICE,
                document_id=event.invoice_id,
                details={**context, "claimed_owner_id": event.owner_id},
            )
            raise
        if result.outcome is Outcome.APPLIED:
            self._send_receipt(result.invoice, event.amount)
        return result

    def record_manual_payment(
        self,
        invoice_id: str,
        owner_id: str,
        amount: Any,
        method: str,
        reference: Optional[str] = None,
    ) -> ReconciliationResult:
        """Record money the owner received outside the processor (cash, Zelle...)."""
        try:
            method = PaymentMethod(method)
        except ValueError:
            raise ValidationError(f"unknown payment method {method!r}") from None
        if method not in MANUAL_METHODS:
            raise ValidationError("processor payments are recorded from webhook events")
        amount = quantize(to_decimal(amount, "amount"))
        if amount <= ZERO:
            raise ValidationError("payment amount must be positive")
        external_id = f"{method.value}:{reference.strip()}" if reference and reference.strip() else None
        context = {"invoice_id": invoice_id, "owner_id": owner_id, "external_id": external_id, "method": method.value}

        def work(session: Session) -> ReconciliationResult:
            invoice = self.repository.find_owned(session, DocumentKind.INVOICE, invoice_id, owner_id)
            if invoice is None:
                raise NotFoundError("invoice not found")
            if external_id is not None:
                existing = self.ledger.find_by_external_id(session, external_id)
                if existing is not None:
                    return ReconciliationResult(Outcome.DUPLICATE, invoice_id=invoice_id, payment_id=existing.id)
            if invoice.status == "paid":
                raise ValidationError("invoice is already paid")
            payment = self.ledger.record_payment(
                session,
                owner_id=owner_id,
                invoice_id=invoice_id,
                amount=amount,
                method=method.value,
                status=PaymentStatus.COMPLETED.value,
                external_id=external_id,
            )
            return self._settle(session, invoice, payment, amount)

        result = self._run(work, context)
        if result.outcome is Outcome.APPLIED:
            self._send_receipt(result.invoice, amount)
        return result

    # -- internals -----------------------------------------------------

    def _run(self, work: Callable[[Session], ReconciliationResult], context: Dict[str, Any]) -> ReconciliationResult:
        for attempt in range(1, self.max_attempts + 1):
            try:
                with self.repository.transaction() as session:
                    return work(session)
            except ConcurrentModificationError:
                logger.warning("invoice changed underneath reconciliation, retrying", extra={**context, "attempt": attempt})
            except DuplicateExternalIdError:
                # A concurrent delivery inserted the row first; the next pass sees it.
                logger.info("payment recorded by a concurrent delivery, retrying", extra={**context, "attempt": attempt})
        raise ConcurrentModificationError(f"gave up after {self.max_attempts} attempts")

    def _check_owner(self, invoice: Invoice, owner_id: str, event: PaymentEvent) -> None:
        if invoice.owner_id != owner_id:
            raise AuthorizationError(
                f"event {event.event_id} claims invoice {invoice.id} for another owner",
                stored_owner_id=invoice.owner_id,
            )

    def _reconcile(self, session: Session, event: PaymentEvent, status: PaymentStatus) -> ReconciliationResult:
        existing = self.ledger.find_by_external_id(session, event.external_id)
        if existing is not None:
            return self._reconcile_existing(session, existing, event, status)

        invoice = self.repository.load_invoice_for_reconciliation(session, event.invoice_id)
        if invoice is None:
            logger.error(
                "dropping payment event for unknown invoice",
                extra={"event_id": event.event_id, "invoice_id": event.invoice_id},
            )
            return ReconciliationResult(Outcome.DROPPED, invoice_id=event.invoice_id)
        self._check_owner(invoice, event.owner_id, event)

        payment = self.ledger.record_payment(
            session,
            owner_id=invoice.owner_id,
            invoice_id=invoice.id,
            amount=event.amount,
            method=PaymentMethod.STRIPE.value,
            status=status.value,
            external_id=event.external_id,
        )
        if status is not PaymentStatus.COMPLETED:
            details = {"external_id": event.external_id, "amount": str(event.amount), "event_id": event.event_id}
            if isinstance(event, PaymentFailed):
                details.update(payment_intent=event.payment_intent, failure_message=event.failure_message)
            self.repository.add_audit(
                session,
                f"payment_{status.value}",
                owner_id=invoice.owner_id,
                kind=DocumentKind.INVOICE,
                document_id=invoice.id,
                details=details,
            )
            return ReconciliationResult(
                Outcome.RECORDED,
                invoice_id=invoice.id,
                payment_id=payment.id,
                balance_due=invoice.balance_due,
                status=invoice.status,
            )
        return self._settle(session, invoice, payment, event.amount)

    def _reconcile_existing(
        self,
        session: Session,
        existing: Payment,
        event: PaymentEvent,
        status: PaymentStatus,
    ) -> ReconciliationResult:
        context = {
            "event_id": event.event_id,
            "external_id": existing.external_id,
            "payment_id": existing.id,
            "recorded_status": existing.status,
            "incoming_status": status.value,
        }
        if existing.status == status.value or is_stale(existing.status, status.value):
            # Same lifecycle point, or an earlier one arriving late.
            logger.info("payment already processed", extra=context)
            return ReconciliationResult(Outcome.DUPLICATE, invoice_id=existing.invoice_id, payment_id=existing.id)

        if not can_transition(existing.status, status.value):
            logger.warning("conflicting payment event not applied", extra=context)
            self.repository.add_audit(
                session,
                "payment_conflict",
                owner_id=existing.owner_id,
                kind=DocumentKind.INVOICE,
                document_id=existing.invoice_id,
                details=context,
            )
            return ReconciliationResult(Outcome.CONFLICT, invoice_id=existing.invoice_id, payment_id=existing.id)

        if status is PaymentStatus.FAILED:
            logger.warning("pending payment failed", extra=context)
            self.ledger.update_status(session, existing.id, status.value)
            self.repository.add_audit(
                session,
                "payment_failed",
                owner_id=existing.owner_id,
                kind=DocumentKind.INVOICE,
                document_id=existing.invoice_id,
                details=context,
            )
            return ReconciliationResult(Outcome.STATUS_UPDATED, invoice_id=existing.invoice_id, payment_id=existing.id)

        # pending -> completed: the money arrives now.
        invoice = self.repository.load_invoice_for_reconciliation(session, existing.invoice_id)
        self._check_owner(invoice, event.owner_id, event)
        if event.amount != Decimal(existing.amount):
            logger.warning("settled amount differs from pending amount", extra={**context, "amount": str(event.amount)})
        payment = self.ledger.update_status(session, existing.id, status.value)
        return self._settle(session, invoice, payment, Decimal(existing.amount))

    def _settle(self, session: Session, invoice: Invoice, payment: Payment, amount: Decimal) -> ReconciliationResult:
        applied = apply_payment(invoice, amount, self.clock())
        if not applied:
            logger.warning(
                "payment received for an invoice that is already paid",
                extra={"invoice_id": invoice.id, "payment_id": payment.id, "amount": str(amount)},
            )
        self.repository.add_audit(
            session,
            "payment_applied" if applied else "payment_unallocated",
            owner_id=invoice.owner_id,
            kind=DocumentKind.INVOICE,
            document_id=invoice.id,
            details={
                "payment_id": payment.id,
                "external_id": payment.external_id,
                "amount": str(amount),
                "balance_due": str(invoice.balance_due),
                "status": invoice.status,
            },
        )
        logger.info(
            "payment applied",
            extra={"invoice_id": invoice.id, "payment_id": payment.id, "balance_due": str(invoice.balance_due), "status": invoice.status},
        )
        return ReconciliationResult(
            Outcome.APPLIED,
            invoice_id=invoice.id,
            payment_id=payment.id,
            balance_due=invoice.balance_due,
            status=invoice.status,
            invoice=invoice,
        )

    def _send_receipt(self, invoice: Optional[Invoice], amount: Decimal) -> None:
        if self.mailer is None or invoice is None:
            return
        message = build_payment_receipt(invoice, amount, self.currency)
        try:
            self.mailer.send_email(to=invoice.client_email, subject=message["subject"], html_body=message["html"])
        except BuildLedgerError:
            logger.warning("payment receipt not sent", extra={"invoice_id": invoice.id}, exc_info=True)
