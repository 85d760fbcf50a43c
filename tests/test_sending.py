import base64

import pytest

from buildledger.errors import InvalidTransitionError, TransientNetworkError, ValidationError
from buildledger.lifecycle import DocumentKind
from buildledger.mailer import MailerError
from buildledger.sending import DocumentSender

from conftest import OWNER, FakeMailer, FakeRenderer, FakeStorage


def _sender(repository, mailer, storage=None):
    return DocumentSender(repository, FakeRenderer(), storage, mailer)


def test_send_uploads_pdf_emails_and_marks_sent(repository, invoice, mailer):
    storage = FakeStorage()
    result = _sender(repository, mailer, storage).send(DocumentKind.INVOICE, invoice.id, OWNER)

    key = f"pdfs/{OWNER}/invoice-INV-0001.pdf"
    assert storage.objects[key].startswith(b"%PDF")
    assert result.pdf_url == f"https://files.test/{key}?sig=abc"
    assert mailer.sent[0]["to"] == "billing@harbor.test"
    assert result.pdf_url in mailer.sent[0]["html"]

    stored = repository.require_document(DocumentKind.INVOICE, invoice.id, OWNER)
    assert stored.status == "sent"
    assert stored.sent_to == "billing@harbor.test"
    assert stored.sent_at is not None
    assert stored.pdf_url == result.pdf_url
    assert [e.event_type for e in repository.audit_entries(invoice.id)] == ["invoice_sent"]


def test_send_without_storage_attaches_pdf(repository, invoice, mailer):
    _sender(repository, mailer).send(DocumentKind.INVOICE, invoice.id, OWNER, "owner@harbor.test")
    message = mailer.sent[0]
    assert message["to"] == "owner@harbor.test"
    attachment = message["attachments"][0]
    assert attachment["filename"] == "INV-0001.pdf"
    assert base64.b64decode(attachment["content"]).startswith(b"%PDF")


@pytest.mark.parametrize("error", [MailerError("rejected"), TransientNetworkError("timeout")])
def test_failed_email_leaves_document_unsent(repository, invoice, error):
    sender = _sender(repository, FakeMailer(fail_with=error), FakeStorage())
    with pytest.raises(type(error)):
        sender.send(DocumentKind.INVOICE, invoice.id, OWNER)
    stored = repository.require_document(DocumentKind.INVOICE, invoice.id, OWNER)
    assert stored.status == "draft"
    assert stored.sent_at is None
    assert stored.version == invoice.version
    assert repository.audit_entries(invoice.id) == []


def test_invalid_recipient_sends_nothing(repository, invoice, mailer):
    with pytest.raises(ValidationError):
        _sender(repository, mailer).send(DocumentKind.INVOICE, invoice.id, OWNER, "nobody")
    assert mailer.sent == []


def test_delivery_under_row_lock_uses_short_retry_budget(repository, invoice, mailer):
    _sender(repository, mailer).send(DocumentKind.INVOICE, invoice.id, OWNER)
    assert (mailer.sent[0]["max_retries"], mailer.sent[0]["timeout"]) == (1, 5.0)

    quote = repository.create_document(DocumentKind.QUOTE, {"client_name": "Q", "client_email": "q@example.com"}, OWNER)
    sender = DocumentSender(repository, FakeRenderer(), None, mailer, delivery_retries=0, delivery_timeout=2.0)
    sender.send(DocumentKind.QUOTE, quote.id, OWNER)
    assert (mailer.sent[1]["max_retries"], mailer.sent[1]["timeout"]) == (0, 2.0)


def test_already_sent_quote_is_not_resent(repository, mailer):
    quote = repository.create_document(
        DocumentKind.QUOTE,
        {"client_name": "Lakeside HOA", "client_email": "board@lakeside.test", "items": [{"quantity": 1, "unit_price": 900}]},
        OWNER,
    )
    sender = _sender(repository, mailer)
    sender.send(DocumentKind.QUOTE, quote.id, OWNER)
    with pytest.raises(InvalidTransitionError):
        sender.send(DocumentKind.QUOTE, quote.id, OWNER)
    assert len(mailer.sent) == 1


def test_publish_pdf_caches_url(repository, invoice, mailer):
    storage = FakeStorage()
    sender = _sender(repository, mailer, storage)
    url = sender.publish_pdf(DocumentKind.INVOICE, invoice.id, OWNER)
    assert sender.publish_pdf(DocumentKind.INVOICE, invoice.id, OWNER) == url
    assert len(storage.objects) == 1
    assert repository.require_document(DocumentKind.INVOICE, invoice.id, OWNER).pdf_url == url


def test_render_pdf_is_owner_scoped(repository, invoice, mailer):
    from buildledger.errors import NotFoundError

    sender = _sender(repository, mailer)
    assert sender.render_pdf(DocumentKind.INVOICE, invoice.id, OWNER).startswith(b"%PDF")
    with pytest.raises(NotFoundError):
        sender.render_pdf(DocumentKind.INVOICE, invoice.id, "owner-2")
