"""
PDF rendering for quotes and invoices using reportlab.
"""

from __future__ import annotations

import io
from decimal import Decimal
from typing import Any

from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
from xml.sax.saxutils import escape


def _fmt(amount: Any) -> str:
    return f"${Decimal(amount):,.2f}"


class ReportLabRenderer:
    """Renders a document (header plus line items) to PDF bytes."""

    def render(self, kind: str, document: Any) -> bytes:
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(buffer, pagesize=letter, topMargin=0.5 * inch, bottomMargin=0.5 * inch)
        styles = getSampleStyleSheet()
        title_style = ParagraphStyle("Title", parent=styles["Heading1"], fontSize=24, textColor=colors.HexColor("#0f172a"))
        header_style = ParagraphStyle("Header", parent=styles["Normal"], fontSize=10, textColor=colors.HexColor("#64748b"))
        value_style = ParagraphStyle("Value", parent=styles["Normal"], fontSize=12, textColor=colors.HexColor("#0f172a"))

        elements = [
            Paragraph(kind.upper(), title_style),
            Spacer(1, 6),
            Paragraph(f"#{escape(document.number)}", header_style),
            Spacer(1, 20),
            Paragraph("<b>Bill To:</b>", header_style),
            Paragraph(escape(document.client_name), value_style),
            Paragraph(escape(document.client_email), header_style),
            Spacer(1, 12),
        ]
        dates = [f"Issued: {document.issue_date.isoformat()}"]
        due = getattr(document, "due_date", None) if kind == "invoice" else getattr(document, "expiry_date", None)
        if due:
            dates.append(f"{'Due' if kind == 'invoice' else 'Valid until'}: {due.isoformat()}")
        elements.append(Paragraph(" &nbsp; ".join(dates), header_style))
        elements.append(Spacer(1, 20))

        data = [["Description", "Qty", "Unit price", "Amount"]]
        for item in document.items:
            data.append([item.description, f"{Decimal(item.quantity).normalize():f}", _fmt(item.unit_price), _fmt(item.line_total)])
        data.append(["", "", "Subtotal", _fmt(document.subtotal)])
        data.append(["", "", f"Tax ({Decimal(document.tax_rate).normalize():f}%)", _fmt(document.tax_amount)])
        data.append(["", "", "Total", _fmt(document.total)])
        if kind == "invoice":
            data.append(["", "", "Balance due", _fmt(document.balance_due)])

        table = Table(data, colWidths=[3.4 * inch, 0.8 * inch, 1.4 * inch, 1.4 * inch])
        table.setStyle(
            TableStyle(
                [
                    ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#f1f5f9")),
                    ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                    ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
                    ("LINEBELOW", (0, 0), (-1, 0), 0.5, colors.HexColor("#cbd5e1")),
                    ("FONTNAME", (2, -1), (-1, -1), "Helvetica-Bold"),
                ]
            )
        )
        elements.append(table)
        if document.notes:
            elements.append(Spacer(1, 20))
            elements.append(Paragraph("<b>Notes</b>", header_style))
            elements.append(Paragraph(escape(document.notes), value_style))

        doc.build(elements)
        return buffer.getvalue()
