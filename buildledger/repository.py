"""
Owner-scoped persistence for quotes and invoices.

Every public read and write takes the owner id and filters on it; a document
that belongs to someone else is indistinguishable from one that does not
exist.  Derived money fields are recomputed here on every write that touches
items or the tax rate, and the line-item set is always replaced as a whole.

Writes run inside :meth:`DocumentRepository.transaction`.  The version column
on quotes and invoices turns each UPDATE into a compare-and-swap; losing that
race surfaces as ``ConcurrentModificationError``.
"""

from __future__ import annotations

import datetime as _dt
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Type

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from .errors import (
    ConcurrentModificationError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from .lifecycle import DocumentKind, validate_recipient
from .models import (
    AuditLog,
    DocumentCounter,
    Invoice,
    InvoiceItem,
    Payment,
    Quote,
    QuoteItem,
)
from .money import compute_totals, line_total, validate_quantity, validate_tax_rate, validate_unit_price

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _KindLayout:
    model: Type[Any]
    item_model: Type[Any]
    date_field: str
    prefix: str
    extra_fields: frozenset


_LAYOUTS: Dict[DocumentKind, _KindLayout] = {
    DocumentKind.QUOTE: _KindLayout(Quote, QuoteItem, "expiry_date", "QT", frozenset({"terms"})),
    DocumentKind.INVOICE: _KindLayout(Invoice, InvoiceItem, "due_date", "INV", frozenset({"payment_methods"})),
}

_COMMON_FIELDS = frozenset({"client_name", "client_email", "issue_date", "notes", "items", "tax_rate"})

PROTECTED_FIELDS = frozenset({
    "id", "number", "owner_id", "status", "subtotal", "tax_amount", "total", "balance_due",
    "payment_link", "payment_session_id", "payment_link_expires_at", "pdf_url", "sent_at", "sent_to",
    "viewed_at", "paid_at", "decided_at", "version", "created_at", "updated_at",
})


def _layout(kind: DocumentKind) -> _KindLayout:
    return _LAYOUTS[DocumentKind(kind)]


def _as_date(value: Any, field: str) -> Optional[_dt.date]:
    if value is None or value == "":
        return None
    if isinstance(value, _dt.datetime):
        return value.date()
    if isinstance(value, _dt.date):
        return value
    if isinstance(value, str):
        try:
            return _dt.date.fromisoformat(value)
        except ValueError:
            pass
    raise ValidationError(f"{field} must be an ISO date")


def _build_items(item_model: Type[Any], items: List[Mapping[str, Any]]) -> list:
    built = []
    for position, item in enumerate(items):
        quantity = validate_quantity(item.get("quantity"))
        unit_price = validate_unit_price(item.get("unit_price"))
        built.append(
            item_model(
                position=position,
                description=(item.get("description") or "").strip(),
                quantity=quantity,
                unit_price=unit_price,
                line_total=line_total(quantity, unit_price),
            )
        )
    return built


def _items_as_dicts(document: Any) -> List[Dict[str, Any]]:
    return [
        {"description": i.description, "quantity": i.quantity, "unit_price": i.unit_price}
        for i in document.items
    ]


class DocumentRepository:
    """SQLAlchemy-backed store for quotes and invoices."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Yield a session whose work commits on exit and rolls back on error."""
        try:
            with self._session_factory.begin() as session:
                yield session
        except StaleDataError as exc:
            raise ConcurrentModificationError("row was modified by another writer") from exc
        except OperationalError as exc:
            raise TransientStoreError("document store unavailable") from exc

    # -- reads ---------------------------------------------------------

    @staticmethod
    def find_owned(session: Session, kind: DocumentKind, document_id: str, owner_id: str) -> Any:
        model = _layout(kind).model
        return session.scalar(select(model).where(model.id == document_id, model.owner_id == owner_id))

    def get_document(self, kind: DocumentKind, document_id: str, owner_id: str) -> Any:
        with self.transaction() as session:
            return self.find_owned(session, kind, document_id, owner_id)

    def require_document(self, kind: DocumentKind, document_id: str, owner_id: str) -> Any:
        document = self.get_document(kind, document_id, owner_id)
        if document is None:
            raise NotFoundError(f"{DocumentKind(kind).value} not found")
        return document

    def list_documents(self, kind: DocumentKind, owner_id: str) -> List[Any]:
        model = _layout(kind).model
        with self.transaction() as session:
            rows = session.scalars(
                select(model).where(model.owner_id == owner_id).order_by(model.created_at.desc())
            )
            return list(rows)

    @staticmethod
    def load_invoice_for_reconciliation(session: Session, invoice_id: str) -> Optional[Invoice]:
        """Unscoped invoice lookup for the reconciliation engine only.

        The caller must compare ``invoice.owner_id`` with the owner it was told
        about before touching the row.
        """
        return session.get(Invoice, invoice_id)

    # -- writes --------------------------------------------------------

    def _counter_exists(self, key: tuple) -> bool:
        with self.transaction() as session:
            return session.get(DocumentCounter, key) is not None

    def _ensure_counter(self, owner_id: str, kind: DocumentKind) -> None:
        """Create the owner's counter row in its own transaction if it is missing."""
        key = (owner_id, kind.value)
        if self._counter_exists(key):
            return
        try:
            with self.transaction() as session:
                session.add(DocumentCounter(owner_id=owner_id, kind=kind.value, value=0))
        except IntegrityError:
            # A concurrent first create for this owner got there first.
            logger.info("document counter created concurrently", extra={"owner_id": owner_id, "kind": kind.value})

    def _next_number(self, session: Session, owner_id: str, kind: DocumentKind) -> str:
        layout = _layout(kind)
        counter = session.get(DocumentCounter, (owner_id, kind.value))
        if counter is None:
            raise ConcurrentModificationError("document counter is missing")
        # Evaluated in the UPDATE, so concurrent creates serialise on the row.
        counter.value = DocumentCounter.value + 1
        session.flush()
        return f"{layout.prefix}-{counter.value:04d}"

    def create_document(self, kind: DocumentKind, data: Mapping[str, Any], owner_id: str) -> Any:
        kind = DocumentKind(kind)
        layout = _layout(kind)
        unknown = set(data) - _COMMON_FIELDS - layout.extra_fields - {layout.date_field}
        if unknown:
            raise ValidationError(f"unexpected fields: {', '.join(sorted(unknown))}")
        client_name = (data.get("client_name") or "").strip()
        if not client_name:
            raise ValidationError("client_name is required")
        client_email = validate_recipient(data.get("client_email"))
        items = list(data.get("items") or [])
        tax_rate = data.get("tax_rate", 0)
        totals = compute_totals(items, tax_rate)

        document = layout.model(
            owner_id=owner_id,
            client_name=client_name,
            client_email=client_email,
            issue_date=_as_date(data.get("issue_date"), "issue_date") or _dt.date.today(),
            status="draft",
            tax_rate=validate_tax_rate(tax_rate),
            subtotal=totals.subtotal,
            tax_amount=totals.tax_amount,
            total=totals.total,
            notes=data.get("notes"),
        )
        setattr(document, layout.date_field, _as_date(data.get(layout.date_field), layout.date_field))
        for field in layout.extra_fields:
            if field in data:
                setattr(document, field, data[field])
        if kind is DocumentKind.INVOICE:
            document.balance_due = totals.total
        document.items = _build_items(layout.item_model, items)

        self._ensure_counter(owner_id, kind)
        with self.transaction() as session:
            document.number = self._next_number(session, owner_id, kind)
            session.add(document)
            session.flush()
        logger.info(
            "document created",
            extra={"kind": kind.value, "document_id": document.id, "owner_id": owner_id, "number": document.number},
        )
        return document

    def _check_totals_editable(self, kind: DocumentKind, document: Any) -> None:
        if kind is DocumentKind.INVOICE:
            if document.status in ("partial", "paid") or document.balance_due != document.total:
                raise ValidationError("invoice has payments applied; items and tax rate are locked")
        elif document.status in ("accepted", "rejected"):
            raise ValidationError(f"quote is {document.status}; items and tax rate are locked")

    def update_document(self, kind: DocumentKind, document_id: str, patch: Mapping[str, Any], owner_id: str) -> Any:
        kind = DocumentKind(kind)
        layout = _layout(kind)
        protected = set(patch) & PROTECTED_FIELDS
        if protected:
            raise ValidationError(f"fields cannot be changed directly: {', '.join(sorted(protected))}")
        unknown = set(patch) - _COMMON_FIELDS - layout.extra_fields - {layout.date_field}
        if unknown:
            raise ValidationError(f"unexpected fields: {', '.join(sorted(unknown))}")

        with self.transaction() as session:
            document = self.find_owned(session, kind, document_id, owner_id)
            if document is None:
                raise NotFoundError(f"{kind.value} not found")

            if "items" in patch or "tax_rate" in patch:
                self._check_totals_editable(kind, document)
                items = list(patch["items"] or []) if "items" in patch else _items_as_dicts(document)
                tax_rate = patch["tax_rate"] if "tax_rate" in patch else document.tax_rate
                totals = compute_totals(items, tax_rate)
                if "items" in patch:
                    document.items = _build_items(layout.item_model, items)
                document.tax_rate = validate_tax_rate(tax_rate)
                document.subtotal = totals.subtotal
                document.tax_amount = totals.tax_amount
                document.total = totals.total
                if kind is DocumentKind.INVOICE:
                    document.balance_due = totals.total
                    document.payment_link = None
                    document.payment_session_id = None
                    document.payment_link_expires_at = None

            if "client_name" in patch:
                name = (patch["client_name"] or "").strip()
                if not name:
                    raise ValidationError("client_name is required")
                document.client_name = name
            if "client_email" in patch:
                document.client_email = validate_recipient(patch["client_email"])
            if "issue_date" in patch:
                document.issue_date = _as_date(patch["issue_date"], "issue_date") or document.issue_date
            if layout.date_field in patch:
                setattr(document, layout.date_field, _as_date(patch[layout.date_field], layout.date_field))
            if "notes" in patch:
                document.notes = patch["notes"]
            for field in layout.extra_fields & set(patch):
                setattr(document, field, patch[field])

            # Rendered copy no longer matches.
            document.pdf_url = None
        logger.info(
            "document updated",
            extra={"kind": kind.value, "document_id": document_id, "owner_id": owner_id, "fields": sorted(patch)},
        )
        return document

    def modify_document(
        self,
        kind: DocumentKind,
        document_id: str,
        owner_id: str,
        mutate: Callable[[Any], Any],
    ) -> Any:
        """Load an owned document, apply ``mutate`` and commit under the version guard."""
        with self.transaction() as session:
            document = self.find_owned(session, kind, document_id, owner_id)
            if document is None:
                raise NotFoundError(f"{DocumentKind(kind).value} not found")
            mutate(document)
        return document

    def delete_document(self, kind: DocumentKind, document_id: str, owner_id: str) -> None:
        kind = DocumentKind(kind)
        with self.transaction() as session:
            document = self.find_owned(session, kind, document_id, owner_id)
            if document is None:
                raise NotFoundError(f"{kind.value} not found")
            if kind is DocumentKind.INVOICE:
                recorded = session.scalar(
                    select(func.count()).select_from(Payment).where(Payment.invoice_id == document_id)
                )
                if recorded:
                    raise ValidationError("invoice has recorded payments and cannot be deleted")
            session.delete(document)
        logger.info("document deleted", extra={"kind": kind.value, "document_id": document_id, "owner_id": owner_id})

    # -- audit ---------------------------------------------------------

    @staticmethod
    def add_audit(
        session: Session,
        event_type: str,
        *,
        owner_id: Optional[str] = None,
        kind: Optional[DocumentKind] = None,
        document_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        session.add(
            AuditLog(
                owner_id=owner_id,
                document_kind=DocumentKind(kind).value if kind else None,
                document_id=document_id,
                event_type=event_type,
                details=details,
            )
        )

    def write_audit(self, event_type: str, **kwargs: Any) -> None:
        with self.transaction() as session:
            self.add_audit(session, event_type, **kwargs)

    def audit_entries(self, document_id: str) -> List[AuditLog]:
        with self.transaction() as session:
            rows = session.scalars(
                select(AuditLog).where(AuditLog.document_id == document_id).order_by(AuditLog.id)
            )
            return list(rows)
