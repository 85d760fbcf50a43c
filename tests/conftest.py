"""
Pytest configuration for BuildLedger tests.

The repository root is added to ``sys.path`` so ``buildledger`` imports
without an install.  Shared fixtures give each test its own SQLite file
database plus small hand-written stand-ins for the external services.
"""

import datetime as dt
import os
import sys

import pytest

# Compute the repository root relative to this file (tests directory is one level deep)
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))

# Prepend the root directory to sys.path if it's not already present
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from buildledger.db import init_db, make_engine, make_session_factory  # noqa: E402
from buildledger.lifecycle import DocumentKind  # noqa: E402
from buildledger.repository import DocumentRepository  # noqa: E402
from buildledger.stripe_client import CheckoutSession  # noqa: E402

OWNER = "owner-1"

INVOICE_DATA = {
    "client_name": "Harbor Renovations",
    "client_email": "billing@harbor.test",
    "issue_date": "2025-03-01",
    "due_date": "2099-04-01",
    "tax_rate": "8.5",
    "items": [
        {"description": "Kitchen cabinets", "quantity": 1, "unit_price": 2400},
        {"description": "Install labour (hours)", "quantity": 5, "unit_price": 120},
    ],
}


@pytest.fixture
def db_engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def repository(db_engine):
    return DocumentRepository(make_session_factory(db_engine))


@pytest.fixture
def invoice(repository):
    return repository.create_document(DocumentKind.INVOICE, INVOICE_DATA, OWNER)


class FakeGateway:
    def __init__(self) -> None:
        self.calls = []
        self.expires_at = None

    def create_checkout_session(self, **kwargs):
        self.calls.append(kwargs)
        n = len(self.calls)
        return CheckoutSession(
            id=f"cs_test_{n}", url=f"https://checkout.stripe.test/pay/cs_test_{n}", expires_at=self.expires_at
        )


class FakeMailer:
    def __init__(self, fail_with=None) -> None:
        self.sent = []
        self.fail_with = fail_with

    def send_email(self, *, to, subject, html_body, reply_to=None, attachments=None, max_retries=None, timeout=None):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(
            {
                "to": to,
                "subject": subject,
                "html": html_body,
                "attachments": attachments,
                "max_retries": max_retries,
                "timeout": timeout,
            }
        )
        return f"email-{len(self.sent)}"


class FakeRenderer:
    def render(self, kind, document):
        return f"%PDF-1.4 {kind} {document.number}".encode()


class FakeStorage:
    def __init__(self) -> None:
        self.objects = {}

    def put(self, key, content, *, content_type="application/pdf"):
        self.objects[key] = content
        return f"https://files.test/{key}?sig=abc"


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def today():
    return dt.date(2025, 3, 15)
