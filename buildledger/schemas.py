"""
Request bodies and response shaping for the HTTP API.

Request models forbid unknown keys, so attempts to set derived or
workflow-owned fields (status, totals, balance) are rejected up front.
Amounts leave the API as strings to keep their exact decimal value.
"""

from __future__ import annotations

import datetime as _dt
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel

from .lifecycle import DocumentKind, effective_status


class _Strict(BaseModel):
    model_config = {"extra": "forbid"}


class LineItemIn(_Strict):
    description: str = ""
    quantity: Decimal
    unit_price: Decimal


class QuoteCreate(_Strict):
    client_name: str
    client_email: str
    issue_date: Optional[_dt.date] = None
    expiry_date: Optional[_dt.date] = None
    tax_rate: Decimal = Decimal(0)
    items: List[LineItemIn] = []
    notes: Optional[str] = None
    terms: Optional[str] = None


class QuoteUpdate(_Strict):
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    issue_date: Optional[_dt.date] = None
    expiry_date: Optional[_dt.date] = None
    tax_rate: Optional[Decimal] = None
    items: Optional[List[LineItemIn]] = None
    notes: Optional[str] = None
    terms: Optional[str] = None


class InvoiceCreate(_Strict):
    client_name: str
    client_email: str
    issue_date: Optional[_dt.date] = None
    due_date: Optional[_dt.date] = None
    tax_rate: Decimal = Decimal(0)
    items: List[LineItemIn] = []
    notes: Optional[str] = None
    payment_methods: Optional[List[str]] = None


class InvoiceUpdate(_Strict):
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    issue_date: Optional[_dt.date] = None
    due_date: Optional[_dt.date] = None
    tax_rate: Optional[Decimal] = None
    items: Optional[List[LineItemIn]] = None
    notes: Optional[str] = None
    payment_methods: Optional[List[str]] = None


class PaymentLinkRequest(_Strict):
    invoice_id: str


class SendRequest(_Strict):
    type: Literal["quote", "invoice"]
    id: str
    recipient: Optional[str] = None


class ManualPaymentIn(_Strict):
    amount: Decimal
    method: str
    reference: Optional[str] = None


def _iso(value: Any) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _amount(value: Any) -> Optional[str]:
    return str(Decimal(value).quantize(Decimal("0.01"))) if value is not None else None


def document_out(kind: DocumentKind, document: Any, today: Optional[_dt.date] = None) -> Dict[str, Any]:
    kind = DocumentKind(kind)
    out: Dict[str, Any] = {
        "id": document.id,
        "kind": kind.value,
        "number": document.number,
        "status": effective_status(kind, document, today),
        "client_name": document.client_name,
        "client_email": document.client_email,
        "issue_date": _iso(document.issue_date),
        "tax_rate": str(Decimal(document.tax_rate).normalize()),
        "subtotal": _amount(document.subtotal),
        "tax_amount": _amount(document.tax_amount),
        "total": _amount(document.total),
        "notes": document.notes,
        "items": [
            {
                "description": item.description,
                "quantity": str(Decimal(item.quantity).normalize()),
                "unit_price": _amount(item.unit_price),
                "line_total": _amount(item.line_total),
            }
            for item in document.items
        ],
        "pdf_url": document.pdf_url,
        "sent_at": _iso(document.sent_at),
        "sent_to": document.sent_to,
        "viewed_at": _iso(document.viewed_at),
        "version": document.version,
        "created_at": _iso(document.created_at),
        "updated_at": _iso(document.updated_at),
    }
    if kind is DocumentKind.INVOICE:
        out.update(
            due_date=_iso(document.due_date),
            balance_due=_amount(document.balance_due),
            payment_methods=document.payment_methods,
            payment_link=document.payment_link,
            payment_link_expires_at=_iso(document.payment_link_expires_at),
            paid_at=_iso(document.paid_at),
        )
    else:
        out.update(
            expiry_date=_iso(document.expiry_date),
            terms=document.terms,
            decided_at=_iso(document.decided_at),
        )
    return out


def payment_out(payment: Any) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "invoice_id": payment.invoice_id,
        "amount": _amount(payment.amount),
        "method": payment.method,
        "external_id": payment.external_id,
        "status": payment.status,
        "created_at": _iso(payment.created_at),
        "updated_at": _iso(payment.updated_at),
    }
