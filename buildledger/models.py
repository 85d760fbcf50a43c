"""
Database models for BuildLedger.

These SQLAlchemy models define the schema for quotes, invoices, their line
items, the payment ledger and the audit trail.  Quotes and invoices carry a
``version`` column that SQLAlchemy uses as an optimistic-concurrency token:
every UPDATE is issued as ``... WHERE id = :id AND version = :seen`` and fails
with ``StaleDataError`` when another writer got there first.
"""

from __future__ import annotations

import datetime as _dt
import uuid

from sqlalchemy import (
    Column,
    Integer,
    String,
    Date,
    DateTime,
    Numeric,
    ForeignKey,
    JSON,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


class Quote(Base):
    """A priced proposal sent to a client before work starts."""

    __tablename__ = "quotes"
    __table_args__ = (UniqueConstraint("owner_id", "number", name="uq_quotes_owner_number"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    number = Column(String, nullable=False)
    owner_id = Column(String, nullable=False, index=True)
    client_name = Column(String, nullable=False)
    client_email = Column(String, nullable=False)
    issue_date = Column(Date, nullable=False)
    expiry_date = Column(Date, nullable=True)
    status = Column(
        String,
        nullable=False,
        default="draft",  # draft, sent, viewed, accepted, rejected
    )
    tax_rate = Column(Numeric(5, 2), nullable=False, default=0)
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False, default=0)
    notes = Column(Text, nullable=True)
    terms = Column(Text, nullable=True)
    pdf_url = Column(String, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    sent_to = Column(String, nullable=True)
    viewed_at = Column(DateTime, nullable=True)
    decided_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    items = relationship(
        "QuoteItem",
        back_populates="quote",
        cascade="all, delete-orphan",
        order_by="QuoteItem.position",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Quote id={self.id} number={self.number} status={self.status}>"


class QuoteItem(Base):
    __tablename__ = "quote_items"

    id = Column(Integer, primary_key=True)
    quote_id = Column(String(36), ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    description = Column(String, nullable=False, default="")
    quantity = Column(Numeric(12, 3), nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    line_total = Column(Numeric(12, 2), nullable=False)

    quote = relationship("Quote", back_populates="items")

    def __repr__(self) -> str:
        return f"<QuoteItem id={self.id} quote_id={self.quote_id} qty={self.quantity} price={self.unit_price}>"


class Invoice(Base):
    """An invoice issued to a client.

    ``balance_due`` starts at ``total`` and only decreases as payments are
    reconciled.  ``status`` is never patched directly; see ``lifecycle``.
    """

    __tablename__ = "invoices"
    __table_args__ = (UniqueConstraint("owner_id", "number", name="uq_invoices_owner_number"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    number = Column(String, nullable=False)
    owner_id = Column(String, nullable=False, index=True)
    client_name = Column(String, nullable=False)
    client_email = Column(String, nullable=False)
    issue_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=True)
    status = Column(
        String,
        nullable=False,
        default="draft",  # draft, sent, viewed, partial, paid (overdue is derived at read time)
    )
    tax_rate = Column(Numeric(5, 2), nullable=False, default=0)
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False, default=0)
    balance_due = Column(Numeric(12, 2), nullable=False, default=0)
    notes = Column(Text, nullable=True)
    payment_methods = Column(JSON, nullable=True)
    payment_link = Column(String, nullable=True)
    payment_session_id = Column(String, nullable=True)
    payment_link_expires_at = Column(DateTime, nullable=True)
    pdf_url = Column(String, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    sent_to = Column(String, nullable=True)
    viewed_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    items = relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.position",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Invoice id={self.id} number={self.number} status={self.status} balance_due={self.balance_due}>"


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id = Column(Integer, primary_key=True)
    invoice_id = Column(String(36), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    description = Column(String, nullable=False, default="")
    quantity = Column(Numeric(12, 3), nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    line_total = Column(Numeric(12, 2), nullable=False)

    invoice = relationship("Invoice", back_populates="items")

    def __repr__(self) -> str:
        return f"<InvoiceItem id={self.id} invoice_id={self.invoice_id} qty={self.quantity} price={self.unit_price}>"


class Payment(Base):
    """One row per payment attempt, keyed by the processor's transaction id."""

    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=_uuid)
    owner_id = Column(String, nullable=False, index=True)
    invoice_id = Column(String(36), ForeignKey("invoices.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    method = Column(String, nullable=False)  # stripe, zelle, venmo, paypal, cashapp, cash, check
    external_id = Column(String, nullable=True, unique=True)
    status = Column(String, nullable=False, default="pending")  # pending, completed, failed, refunded
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Payment id={self.id} external_id={self.external_id} amount={self.amount} status={self.status}>"


class AuditLog(Base):
    """Audit log capturing events across the document lifecycle."""

    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String, nullable=True, index=True)
    document_kind = Column(String, nullable=True)
    document_id = Column(String(36), nullable=True, index=True)
    event_type = Column(String, nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<AuditLog id={self.id} document_id={self.document_id} event={self.event_type}>"


class DocumentCounter(Base):
    """Per-owner sequence backing quote and invoice numbers."""

    __tablename__ = "document_counters"

    owner_id = Column(String, primary_key=True)
    kind = Column(String, primary_key=True)
    value = Column(Integer, nullable=False, default=0)
