"""
Append-only payment ledger.

Rows are keyed by the processor's transaction id (``external_id``), which is
UNIQUE in the database.  A second insert for the same id raises
``DuplicateExternalIdError`` and the caller takes the status-update path
instead.  Status only moves forward:

    pending -> completed | failed
    completed -> refunded

A failed attempt never becomes completed; a retry by the payer arrives under a
new external id.
"""

from __future__ import annotations

import enum
import logging
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import DuplicateExternalIdError, InvalidTransitionError, NotFoundError, ValidationError
from .models import Payment
from .money import ZERO, quantize, to_decimal

logger = logging.getLogger(__name__)


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    STRIPE = "stripe"
    ZELLE = "zelle"
    VENMO = "venmo"
    PAYPAL = "paypal"
    CASHAPP = "cashapp"
    CASH = "cash"
    CHECK = "check"


MANUAL_METHODS = frozenset(m for m in PaymentMethod if m is not PaymentMethod.STRIPE)

STATUS_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


# Position in the payment lifecycle; completed and failed are alternative outcomes.
STATUS_RANK: Dict[PaymentStatus, int] = {
    PaymentStatus.PENDING: 0,
    PaymentStatus.COMPLETED: 1,
    PaymentStatus.FAILED: 1,
    PaymentStatus.REFUNDED: 2,
}


def can_transition(current: str, target: str) -> bool:
    return PaymentStatus(target) in STATUS_TRANSITIONS[PaymentStatus(current)]


def is_stale(current: str, incoming: str) -> bool:
    """True when ``incoming`` describes an earlier lifecycle point than ``current``."""
    return STATUS_RANK[PaymentStatus(incoming)] < STATUS_RANK[PaymentStatus(current)]


class PaymentLedger:
    """Ledger operations.  Each call joins the caller's session/transaction."""

    def find_by_external_id(self, session: Session, external_id: str) -> Optional[Payment]:
        return session.scalar(select(Payment).where(Payment.external_id == external_id))

    def record_payment(
        self,
        session: Session,
        *,
        owner_id: str,
        invoice_id: str,
        amount: Decimal,
        method: str,
        status: str,
        external_id: Optional[str] = None,
    ) -> Payment:
        amount = quantize(to_decimal(amount, "amount"))
        if amount <= ZERO:
            raise ValidationError("payment amount must be positive")
        method = PaymentMethod(method).value
        status = PaymentStatus(status).value
        if external_id is not None and self.find_by_external_id(session, external_id) is not None:
            raise DuplicateExternalIdError(external_id)
        payment = Payment(
            owner_id=owner_id,
            invoice_id=invoice_id,
            amount=amount,
            method=method,
            external_id=external_id,
            status=status,
        )
        session.add(payment)
        try:
            session.flush()
        except IntegrityError as exc:
            # Lost an insert race against a concurrent delivery of the same id.
            if external_id is None:
                raise
            raise DuplicateExternalIdError(external_id) from exc
        logger.info(
            "payment recorded",
            extra={
                "payment_id": payment.id,
                "invoice_id": invoice_id,
                "external_id": external_id,
                "amount": str(amount),
                "status": status,
            },
        )
        return payment

    def update_status(self, session: Session, payment_id: str, status: str) -> Payment:
        payment = session.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError("payment not found")
        if payment.status == status:
            return payment
        if not can_transition(payment.status, status):
            raise InvalidTransitionError("payment", payment.status, status)
        logger.info(
            "payment status updated",
            extra={"payment_id": payment.id, "external_id": payment.external_id, "from": payment.status, "to": status},
        )
        payment.status = PaymentStatus(status).value
        session.flush()
        return payment

    def list_for_invoice(self, session: Session, invoice_id: str, owner_id: str) -> List[Payment]:
        rows = session.scalars(
            select(Payment)
            .where(Payment.invoice_id == invoice_id, Payment.owner_id == owner_id)
            .order_by(Payment.created_at.desc())
        )
        return list(rows)
