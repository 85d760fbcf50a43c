"""
Transactional email through the Resend HTTP API.

``ResendMailer._request`` retries rate limiting (429), server errors and
connection failures with exponential backoff; anything else in the 4xx range
is a permanent ``MailerError``.  Message bodies are built by the small
``build_*`` helpers so they can be tested without a network.
"""

from __future__ import annotations

import html
import os
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional

import requests

from .errors import BuildLedgerError, TransientNetworkError


class MailerError(BuildLedgerError):
    code = "email_delivery_failed"
    status_code = 502


class ResendMailer:
    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        from_address: Optional[str] = None,
        base_url: str = "https://api.resend.com",
        timeout: float = 10.0,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else os.getenv("RESEND_API_KEY", "")
        self.from_address = from_address or os.getenv("EMAIL_FROM", "BuildLedger <invoices@buildledger.local>")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries if max_retries is not None else int(os.getenv("MAILER_MAX_RETRIES", "3"))
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None else float(os.getenv("MAILER_RETRY_BACKOFF", "0.5"))
        )

    def _sleep(self, attempt: int) -> None:
        time.sleep(self.backoff_seconds * (2 ** attempt))

    def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict] = None,
        *,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        if not self.api_key:
            raise MailerError("RESEND_API_KEY is not configured")
        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        retries = self.max_retries if max_retries is None else max_retries
        timeout = self.timeout if timeout is None else timeout
        for attempt in range(retries + 1):
            try:
                resp = requests.request(method.upper(), url, headers=headers, json=json, timeout=timeout)
            except (requests.ConnectionError, requests.Timeout) as exc:
                if attempt == retries:
                    raise TransientNetworkError("email service unreachable") from exc
                self._sleep(attempt)
                continue
            if resp.status_code == 429 or resp.status_code >= 500:
                if attempt == retries:
                    raise TransientNetworkError(f"email service returned HTTP {resp.status_code} after retries")
                self._sleep(attempt)
                continue
            if resp.status_code >= 400:
                raise MailerError(f"HTTP {resp.status_code}: {resp.text}")
            try:
                return resp.json()
            except ValueError:
                return {"text": resp.text}
        raise TransientNetworkError("email service retries exhausted")

    def send_email(
        self,
        *,
        to: str,
        subject: str,
        html_body: str,
        reply_to: Optional[str] = None,
        attachments: Optional[List[Dict[str, str]]] = None,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Send one message and return the provider's message id.

        ``max_retries`` and ``timeout`` override the client defaults for
        callers that hold a database lock while sending.
        """
        payload: Dict[str, Any] = {
            "from": self.from_address,
            "to": [to],
            "subject": subject,
            "html": html_body,
        }
        if reply_to:
            payload["reply_to"] = reply_to
        if attachments:
            payload["attachments"] = attachments
        result = self._request("POST", "emails", json=payload, max_retries=max_retries, timeout=timeout)
        return result.get("id", "")


def _money(amount: Any, currency: str) -> str:
    return f"{currency.upper()} {Decimal(amount):,.2f}"


def build_document_email(kind: str, document: Any, pdf_url: Optional[str] = None, currency: str = "usd") -> Dict[str, str]:
    """Subject and HTML body for a quote or invoice delivery."""
    label = "Invoice" if kind == "invoice" else "Quote"
    date_label, date_value = (
        ("Due date", getattr(document, "due_date", None))
        if kind == "invoice"
        else ("Valid until", getattr(document, "expiry_date", None))
    )
    lines = [
        f"<h2>{label} {html.escape(document.number)}</h2>",
        f"<p><strong>Client:</strong> {html.escape(document.client_name)}</p>",
        f"<p><strong>Total:</strong> {_money(document.total, currency)}</p>",
    ]
    if date_value:
        lines.append(f"<p><strong>{date_label}:</strong> {date_value.isoformat()}</p>")
    if document.notes:
        lines.append(f"<p>{html.escape(document.notes)}</p>")
    if pdf_url:
        lines.append(f'<p><a href="{html.escape(pdf_url, quote=True)}">View {label.lower()} (PDF)</a></p>')
    else:
        lines.append(f"<p>The {label.lower()} is attached as a PDF.</p>")
    if kind == "invoice" and getattr(document, "payment_link", None):
        lines.append(f'<p><a href="{html.escape(document.payment_link, quote=True)}">Pay online</a></p>')
    lines.append("<p>Thank you for your business!</p>")
    return {"subject": f"{label} {document.number}", "html": "\n".join(lines)}


def build_payment_receipt(invoice: Any, amount: Decimal, currency: str = "usd") -> Dict[str, str]:
    remaining = Decimal(invoice.balance_due)
    body = [
        f"<h2>Payment received for invoice {html.escape(invoice.number)}</h2>",
        f"<p>We received {_money(amount, currency)}.</p>",
    ]
    if remaining > 0:
        body.append(f"<p>Remaining balance: {_money(remaining, currency)}</p>")
    else:
        body.append("<p>This invoice is now paid in full.</p>")
    return {"subject": f"Payment received: invoice {invoice.number}", "html": "\n".join(body)}


__all__ = ["MailerError", "ResendMailer", "build_document_email", "build_payment_receipt"]
