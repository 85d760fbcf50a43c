"""
FastAPI application for BuildLedger.

``create_app`` takes a fully wired :class:`~buildledger.services.Services`
(or builds one from the environment) and exposes:

* the Stripe webhook, which verifies the ``Stripe-Signature`` header before
  the body is parsed and answers 5xx only when redelivery could help;
* owner-scoped CRUD and status actions for quotes and invoices;
* payment links, document sending, manual payments and the dashboard.

Every route except the webhook requires a bearer token whose ``sub`` claim is
the owner id.  Plain ``def`` handlers run in FastAPI's threadpool, which is
where the blocking store and network calls belong.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Type

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from .auth import owner_from_header
from .errors import (
    AuthorizationError,
    BuildLedgerError,
    InvalidSignatureError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from .events import verify_and_parse
from .lifecycle import DocumentKind, decide_quote, record_view
from .logging_utils import configure_logging
from .models import utcnow
from .reporting import summarize
from .schemas import (
    InvoiceCreate,
    InvoiceUpdate,
    ManualPaymentIn,
    PaymentLinkRequest,
    QuoteCreate,
    QuoteUpdate,
    SendRequest,
    document_out,
    payment_out,
)
from .services import Services, build_services

logger = logging.getLogger(__name__)


def _error(code: str, message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": {"code": code, "message": message}}, status_code=status_code)


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_owner(
    authorization: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> str:
    return owner_from_header(
        authorization,
        services.settings.auth_jwt_secret,
        algorithm=services.settings.auth_jwt_algorithm,
    )


def _document_router(
    kind: DocumentKind,
    prefix: str,
    create_model: Type[BaseModel],
    update_model: Type[BaseModel],
) -> APIRouter:
    """CRUD and view routes shared by quotes and invoices."""
    router = APIRouter(prefix=prefix)

    @router.get("")
    def list_documents(
        owner_id: str = Depends(current_owner),
        services: Services = Depends(get_services),
    ) -> List[Dict[str, Any]]:
        return [document_out(kind, doc) for doc in services.repository.list_documents(kind, owner_id)]

    @router.post("", status_code=201)
    def create_document(
        body: create_model,  # type: ignore[valid-type]
        owner_id: str = Depends(current_owner),
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        document = services.repository.create_document(kind, body.model_dump(exclude_none=True), owner_id)
        return document_out(kind, document)

    @router.get("/{document_id}")
    def get_document(
        document_id: str,
        owner_id: str = Depends(current_owner),
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        return document_out(kind, services.repository.require_document(kind, document_id, owner_id))

    @router.patch("/{document_id}")
    def update_document(
        document_id: str,
        body: update_model,  # type: ignore[valid-type]
        owner_id: str = Depends(current_owner),
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        patch = body.model_dump(exclude_unset=True)
        document = services.repository.update_document(kind, document_id, patch, owner_id)
        return document_out(kind, document)

    @router.delete("/{document_id}", status_code=204)
    def delete_document(
        document_id: str,
        owner_id: str = Depends(current_owner),
        services: Services = Depends(get_services),
    ) -> Response:
        services.repository.delete_document(kind, document_id, owner_id)
        return Response(status_code=204)

    @router.post("/{document_id}/viewed")
    def mark_viewed(
        document_id: str,
        owner_id: str = Depends(current_owner),
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        document = services.repository.modify_document(
            kind, document_id, owner_id, lambda doc: record_view(kind, doc, utcnow())
        )
        return document_out(kind, document)

    @router.get("/{document_id}/pdf")
    def download_pdf(
        document_id: str,
        owner_id: str = Depends(current_owner),
        services: Services = Depends(get_services),
    ) -> Response:
        content = services.sender.render_pdf(kind, document_id, owner_id)
        return Response(content, media_type="application/pdf")

    return router


def _decide(accepted: bool) -> Callable[..., Dict[str, Any]]:
    def decide(
        quote_id: str,
        owner_id: str = Depends(current_owner),
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        quote = services.repository.modify_document(
            DocumentKind.QUOTE, quote_id, owner_id, lambda doc: decide_quote(doc, accepted, utcnow())
        )
        services.repository.write_audit(
            "quote_accepted" if accepted else "quote_rejected",
            owner_id=owner_id,
            kind=DocumentKind.QUOTE,
            document_id=quote_id,
        )
        logger.info("quote decided", extra={"quote_id": quote_id, "owner_id": owner_id, "status": quote.status})
        return document_out(DocumentKind.QUOTE, quote)

    return decide


def create_app(services: Optional[Services] = None) -> FastAPI:
    if services is None:
        services = build_services()
    configure_logging(services.settings.log_level)

    app = FastAPI(title="BuildLedger")
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[services.settings.app_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BuildLedgerError)
    async def handle_domain_error(request: Request, exc: BuildLedgerError) -> JSONResponse:
        if isinstance(exc, AuthorizationError):
            logger.warning("access denied", extra={"path": request.url.path, **exc.context})
            return _error(exc.code, exc.public_message, exc.status_code)
        if exc.status_code >= 500:
            logger.error("request failed", extra={"path": request.url.path, "code": exc.code}, exc_info=exc)
        return _error(exc.code, exc.message, exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg', 'invalid request')}" if location else "invalid request"
        return _error(ValidationError.code, message, 400)

    @app.post("/webhooks/stripe")
    async def stripe_webhook(request: Request) -> JSONResponse:
        payload = await request.body()
        settings = services.settings
        try:
            event = verify_and_parse(
                payload,
                request.headers.get("stripe-signature"),
                settings.stripe_webhook_secret,
                settings.stripe_webhook_tolerance,
            )
        except (InvalidSignatureError, ValidationError) as exc:
            logger.warning("webhook rejected", extra={"code": exc.code})
            return JSONResponse({"error": "invalid request"}, status_code=400)
        try:
            result = await run_in_threadpool(services.reconciliation.handle, event)
        except AuthorizationError:
            return JSONResponse({"error": "forbidden"}, status_code=403)
        except TransientError as exc:
            logger.warning("webhook processing failed, asking for redelivery", extra={"code": exc.code})
            return JSONResponse({"error": "temporarily unavailable"}, status_code=503)
        logger.info("webhook processed", extra={"event_id": getattr(event, "event_id", None), "outcome": result.outcome.value})
        return JSONResponse({"received": True})

    app.include_router(_document_router(DocumentKind.QUOTE, "/quotes", QuoteCreate, QuoteUpdate))

    @app.post("/invoices/payment-link")
    def payment_link(
        body: PaymentLinkRequest,
        owner_id: str = Depends(current_owner),
        services: Services = Depends(get_services),
    ) -> Dict[str, str]:
        return {"payment_link": services.payment_links.get_or_create(body.invoice_id, owner_id)}

    app.include_router(_document_router(DocumentKind.INVOICE, "/invoices", InvoiceCreate, InvoiceUpdate))
    app.post("/quotes/{quote_id}/accept")(_decide(True))
    app.post("/quotes/{quote_id}/reject")(_decide(False))

    @app.get("/invoices/{invoice_id}/payments")
    def list_payments(
        invoice_id: str,
        owner_id: str = Depends(current_owner),
        services: Services = Depends(get_services),
    ) -> List[Dict[str, Any]]:
        with services.repository.transaction() as session:
            if services.repository.find_owned(session, DocumentKind.INVOICE, invoice_id, owner_id) is None:
                raise NotFoundError("invoice not found")
            payments = services.ledger.list_for_invoice(session, invoice_id, owner_id)
            return [payment_out(p) for p in payments]

    @app.post("/invoices/{invoice_id}/payments", status_code=201)
    def record_payment(
        invoice_id: str,
        body: ManualPaymentIn,
        owner_id: str = Depends(current_owner),
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        result = services.reconciliation.record_manual_payment(
            invoice_id, owner_id, body.amount, body.method, body.reference
        )
        return {
            "outcome": result.outcome.value,
            "payment_id": result.payment_id,
            "balance_due": str(result.balance_due) if result.balance_due is not None else None,
            "status": result.status,
        }

    @app.post("/send")
    def send_document(
        body: SendRequest,
        owner_id: str = Depends(current_owner),
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        kind = DocumentKind(body.type)
        sent = services.sender.send(kind, body.id, owner_id, body.recipient)
        return {
            "success": True,
            "email_id": sent.email_id,
            "pdf_url": sent.pdf_url,
            "document": document_out(kind, sent.document),
        }

    @app.get("/dashboard")
    def dashboard(
        owner_id: str = Depends(current_owner),
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        summary = summarize(
            services.repository.list_documents(DocumentKind.INVOICE, owner_id),
            services.repository.list_documents(DocumentKind.QUOTE, owner_id),
        )
        return {key: str(value) if not isinstance(value, (int, dict)) else value for key, value in summary.items()}

    return app
