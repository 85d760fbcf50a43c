"""Dashboard figures computed from an owner's documents."""

from __future__ import annotations

import datetime as _dt
from collections import Counter
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from .lifecycle import OPEN_INVOICE_STATUSES, DocumentKind, effective_status
from .money import ZERO, quantize


def summarize(
    invoices: Iterable[Any],
    quotes: Iterable[Any],
    today: Optional[_dt.date] = None,
) -> Dict[str, Any]:
    today = today or _dt.date.today()
    outstanding = ZERO
    overdue_amount = ZERO
    collected = ZERO
    invoice_counts: Counter = Counter()
    for invoice in invoices:
        status = effective_status(DocumentKind.INVOICE, invoice, today)
        invoice_counts[status] += 1
        balance = Decimal(invoice.balance_due)
        collected += Decimal(invoice.total) - balance
        if invoice.status in OPEN_INVOICE_STATUSES:
            outstanding += balance
        if status == "overdue":
            overdue_amount += balance

    quote_counts: Counter = Counter()
    accepted_value = ZERO
    for quote in quotes:
        quote_counts[quote.status] += 1
        if quote.status == "accepted":
            accepted_value += Decimal(quote.total)

    return {
        "outstanding": quantize(outstanding),
        "overdue_count": invoice_counts["overdue"],
        "overdue_amount": quantize(overdue_amount),
        "collected": quantize(collected),
        "accepted_quote_value": quantize(accepted_value),
        "invoices_by_status": dict(invoice_counts),
        "quotes_by_status": dict(quote_counts),
    }
