"""
Delivering quotes and invoices by email.

Sending is all-or-nothing: the ``-> sent`` transition is flushed under the
document's version guard, the email goes out, and only then does the
transaction commit.  A failed delivery rolls the status back, so a document
is never marked sent without having been delivered.
"""

from __future__ import annotations

import base64
import datetime as _dt
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .errors import NotFoundError, ValidationError
from .lifecycle import DocumentKind, check_transition, mark_sent, validate_recipient
from .mailer import build_document_email
from .models import utcnow
from .repository import DocumentRepository
from .storage import document_pdf_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendResult:
    document: Any
    email_id: str
    pdf_url: Optional[str]


class DocumentSender:
    def __init__(
        self,
        repository: DocumentRepository,
        renderer: Any,
        storage: Any,
        mailer: Any,
        *,
        currency: str = "usd",
        clock: Callable[[], _dt.datetime] = utcnow,
        delivery_retries: int = 1,
        delivery_timeout: float = 5.0,
    ) -> None:
        self.repository = repository
        self.renderer = renderer
        # Optional; without a blob store the PDF travels as an attachment.
        self.storage = storage
        self.mailer = mailer
        self.currency = currency
        self.clock = clock
        # The row stays locked while the email goes out; keep that short.
        self.delivery_retries = delivery_retries
        self.delivery_timeout = delivery_timeout

    def render_pdf(self, kind: DocumentKind, document_id: str, owner_id: str) -> bytes:
        kind = DocumentKind(kind)
        document = self.repository.require_document(kind, document_id, owner_id)
        return self.renderer.render(kind.value, document)

    def publish_pdf(self, kind: DocumentKind, document_id: str, owner_id: str) -> str:
        """Render, upload and cache the document's PDF, returning its URL."""
        kind = DocumentKind(kind)
        if self.storage is None:
            raise ValidationError("PDF storage is not configured")
        document = self.repository.require_document(kind, document_id, owner_id)
        if document.pdf_url:
            return document.pdf_url
        url = self._upload(kind, document)

        def cache(doc: Any) -> None:
            doc.pdf_url = url

        self.repository.modify_document(kind, document_id, owner_id, cache)
        return url

    def _upload(self, kind: DocumentKind, document: Any) -> str:
        content = self.renderer.render(kind.value, document)
        key = document_pdf_key(document.owner_id, kind.value, document.number)
        url = self.storage.put(key, content, content_type="application/pdf")
        logger.info("pdf uploaded", extra={"kind": kind.value, "document_id": document.id, "key": key})
        return url

    def send(
        self,
        kind: DocumentKind,
        document_id: str,
        owner_id: str,
        recipient: Optional[str] = None,
    ) -> SendResult:
        kind = DocumentKind(kind)
        document = self.repository.require_document(kind, document_id, owner_id)
        recipient = validate_recipient(recipient or document.client_email)
        # Fail before rendering or uploading anything.
        check_transition(kind, document.status, "sent")

        pdf_url = document.pdf_url
        attachments: Optional[List[Dict[str, str]]] = None
        if not pdf_url:
            if self.storage is not None:
                pdf_url = self._upload(kind, document)
            else:
                content = self.renderer.render(kind.value, document)
                attachments = [
                    {"filename": f"{document.number}.pdf", "content": base64.b64encode(content).decode("ascii")}
                ]
        message = build_document_email(kind.value, document, pdf_url, self.currency)

        with self.repository.transaction() as session:
            current = self.repository.find_owned(session, kind, document_id, owner_id)
            if current is None:
                raise NotFoundError(f"{kind.value} not found")
            mark_sent(kind, current, recipient, self.clock())
            if pdf_url:
                current.pdf_url = pdf_url
            # Take the version guard now so a lost race fails before delivery.
            session.flush()
            email_id = self.mailer.send_email(
                to=recipient,
                subject=message["subject"],
                html_body=message["html"],
                attachments=attachments,
                max_retries=self.delivery_retries,
                timeout=self.delivery_timeout,
            )
            self.repository.add_audit(
                session,
                f"{kind.value}_sent",
                owner_id=owner_id,
                kind=kind,
                document_id=document_id,
                details={"recipient": recipient, "email_id": email_id},
            )
        logger.info(
            "document sent",
            extra={"kind": kind.value, "document_id": document_id, "owner_id": owner_id, "email_id": email_id},
        )
        return SendResult(document=current, email_id=email_id, pdf_url=pdf_url)


__all__ = ["DocumentSender", "SendResult"]
