"""
Document status lifecycle.

Quotes move ``draft -> sent -> viewed -> accepted | rejected``.  Invoices move
``draft -> sent -> viewed`` through user actions and into ``partial`` or
``paid`` only through payment reconciliation.  ``overdue`` is never stored; it
is computed at read time by :func:`effective_status`.

The functions here are pure with respect to storage: they check and mutate the
document object they are given and leave persistence to the caller, who holds
the row's version guard while calling them.
"""

from __future__ import annotations

import datetime as _dt
import enum
import re
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Optional

from .errors import InvalidTransitionError, ValidationError
from .money import ZERO, quantize


class DocumentKind(str, enum.Enum):
    QUOTE = "quote"
    INVOICE = "invoice"


class Actor(str, enum.Enum):
    USER = "user"
    RECONCILIATION = "reconciliation"


QUOTE_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "draft": frozenset({"sent"}),
    "sent": frozenset({"viewed"}),
    "viewed": frozenset({"accepted", "rejected"}),
    "accepted": frozenset(),
    "rejected": frozenset(),
}

INVOICE_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "draft": frozenset({"sent", "partial", "paid"}),
    "sent": frozenset({"viewed", "partial", "paid"}),
    "viewed": frozenset({"partial", "paid"}),
    "partial": frozenset({"partial", "paid"}),
    "paid": frozenset(),
}

# Targets only payment reconciliation may reach.
RECONCILIATION_ONLY = frozenset({"partial", "paid"})

OPEN_INVOICE_STATUSES = frozenset({"sent", "viewed", "partial"})

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def transitions_for(kind: DocumentKind) -> Dict[str, FrozenSet[str]]:
    return QUOTE_TRANSITIONS if DocumentKind(kind) is DocumentKind.QUOTE else INVOICE_TRANSITIONS


def check_transition(kind: DocumentKind, current: str, target: str, actor: Actor = Actor.USER) -> None:
    """Raise ``InvalidTransitionError`` unless ``current -> target`` is legal for ``actor``."""
    kind = DocumentKind(kind)
    allowed = transitions_for(kind).get(current, frozenset())
    if target not in allowed:
        raise InvalidTransitionError(kind.value, current, target)
    if kind is DocumentKind.INVOICE and target in RECONCILIATION_ONLY and actor is not Actor.RECONCILIATION:
        raise InvalidTransitionError(kind.value, current, target)


def transition(kind: DocumentKind, document: Any, target: str, actor: Actor = Actor.USER) -> None:
    check_transition(kind, document.status, target, actor)
    document.status = target


def validate_recipient(recipient: Optional[str]) -> str:
    recipient = (recipient or "").strip()
    if not _EMAIL_RE.match(recipient):
        raise ValidationError("a valid recipient email is required")
    return recipient


def mark_sent(kind: DocumentKind, document: Any, recipient: str, now: _dt.datetime) -> None:
    recipient = validate_recipient(recipient)
    transition(kind, document, "sent")
    document.sent_at = now
    document.sent_to = recipient


def record_view(kind: DocumentKind, document: Any, now: _dt.datetime) -> bool:
    """Stamp the first view and move ``sent -> viewed``.

    Returns True when the document changed.  Views after the document has
    moved past ``sent`` are not transitions and change nothing.
    """
    if document.status == "draft":
        raise InvalidTransitionError(DocumentKind(kind).value, "draft", "viewed")
    changed = False
    if document.viewed_at is None:
        document.viewed_at = now
        changed = True
    if document.status == "sent":
        transition(kind, document, "viewed")
        changed = True
    return changed


def decide_quote(quote: Any, accepted: bool, now: _dt.datetime) -> None:
    transition(DocumentKind.QUOTE, quote, "accepted" if accepted else "rejected")
    quote.decided_at = now


def status_for_balance(balance_due: Decimal) -> str:
    """The one place invoice payment status is derived from the balance."""
    return "paid" if balance_due <= ZERO else "partial"


def apply_payment(invoice: Any, amount: Decimal, now: _dt.datetime) -> bool:
    """Reduce the balance by ``amount`` and move status along with it.

    Balance and status are always written together.  The balance never drops
    below zero; money beyond the balance is recorded in the ledger but not
    reconciled here.  Returns False when the invoice was already paid.
    """
    if invoice.status == "paid":
        return False
    new_balance = max(ZERO, quantize(Decimal(invoice.balance_due) - amount))
    target = status_for_balance(new_balance)
    check_transition(DocumentKind.INVOICE, invoice.status, target, Actor.RECONCILIATION)
    invoice.balance_due = new_balance
    invoice.status = target
    # The cached checkout was priced for the old balance.
    invoice.payment_link = None
    invoice.payment_session_id = None
    invoice.payment_link_expires_at = None
    if target == "paid":
        invoice.paid_at = now
    return True


def is_overdue(invoice: Any, today: _dt.date) -> bool:
    return (
        invoice.status in OPEN_INVOICE_STATUSES
        and invoice.due_date is not None
        and invoice.due_date < today
        and Decimal(invoice.balance_due) > ZERO
    )


def effective_status(kind: DocumentKind, document: Any, today: Optional[_dt.date] = None) -> str:
    """Status as shown to users, with ``overdue`` derived from the due date."""
    if DocumentKind(kind) is DocumentKind.INVOICE and is_overdue(document, today or _dt.date.today()):
        return "overdue"
    return document.status
