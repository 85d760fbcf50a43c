"""
Process-wide wiring.

Clients are built once at start-up from :class:`~buildledger.config.Settings`
and passed explicitly to whatever needs them; nothing in the package creates
a client at import time.  Tests build a :class:`Services` by hand with fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.engine import Engine

from .config import Settings, load_settings
from .db import init_db, make_engine, make_session_factory
from .ledger import PaymentLedger
from .mailer import ResendMailer
from .payment_links import PaymentLinkIssuer
from .pdf import ReportLabRenderer
from .reconciliation import ReconciliationEngine
from .repository import DocumentRepository
from .sending import DocumentSender
from .storage import S3BlobStore
from .stripe_client import StripeGateway


@dataclass
class Services:
    settings: Settings
    repository: DocumentRepository
    ledger: PaymentLedger
    reconciliation: ReconciliationEngine
    payment_links: PaymentLinkIssuer
    sender: DocumentSender
    engine: Optional[Engine] = None


def build_services(
    settings: Optional[Settings] = None,
    *,
    gateway: Any = None,
    mailer: Any = None,
    storage: Any = None,
    renderer: Any = None,
    create_schema: bool = False,
) -> Services:
    """Construct every collaborator from ``settings``.

    Any of the external clients may be passed in to replace the real one.
    """
    settings = settings or load_settings()
    engine = make_engine(settings.database_url, echo=settings.sql_echo)
    if create_schema:
        init_db(engine)
    repository = DocumentRepository(make_session_factory(engine))
    ledger = PaymentLedger()

    if gateway is None:
        gateway = StripeGateway(settings.stripe_secret_key, currency=settings.currency)
    if mailer is None:
        mailer = ResendMailer(
            api_key=settings.resend_api_key,
            from_address=settings.email_from,
            max_retries=settings.mailer_max_retries,
            backoff_seconds=settings.mailer_retry_backoff,
        )
    if storage is None and settings.pdf_bucket:
        storage = S3BlobStore(settings.pdf_bucket, url_ttl=settings.pdf_url_ttl)
    renderer = renderer or ReportLabRenderer()

    return Services(
        settings=settings,
        repository=repository,
        ledger=ledger,
        reconciliation=ReconciliationEngine(
            repository,
            ledger,
            mailer=mailer,
            currency=settings.currency,
            max_attempts=settings.reconcile_max_attempts,
        ),
        payment_links=PaymentLinkIssuer(repository, gateway, app_url=settings.app_url),
        sender=DocumentSender(
            repository,
            renderer,
            storage,
            mailer,
            currency=settings.currency,
            delivery_retries=settings.send_email_max_retries,
            delivery_timeout=settings.send_email_timeout,
        ),
        engine=engine,
    )
