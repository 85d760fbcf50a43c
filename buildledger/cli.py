"""
Command-line interface for BuildLedger.

``init-db`` creates the schema, ``replay`` feeds exported processor events
through the reconciliation engine (for recovering from missed webhook
deliveries; the file is trusted, no signatures are checked) and ``overdue``
lists an owner's overdue invoices.  ``serve`` runs the API under uvicorn.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date
from pathlib import Path
from typing import Any, List, Optional

from .config import load_settings
from .db import init_db, make_engine
from .errors import BuildLedgerError
from .events import parse_event
from .lifecycle import DocumentKind, is_overdue
from .logging_utils import configure_logging
from .services import build_services

logger = logging.getLogger(__name__)


def _load_events(path: Path) -> List[Any]:
    data = json.loads(path.read_text())
    # A single event, a list of events, or a Stripe list export.
    if isinstance(data, dict) and isinstance(data.get("data"), list):
        return data["data"]
    if isinstance(data, list):
        return data
    return [data]


def cmd_init_db(args: argparse.Namespace) -> int:
    engine = make_engine(args.database_url)
    init_db(engine)
    print(f"schema created at {args.database_url}")
    return 0


def cmd_replay(args: argparse.Namespace) -> int:
    settings = load_settings()
    services = build_services(settings)
    if not args.send_receipts:
        services.reconciliation.mailer = None
    failures = 0
    for raw in _load_events(Path(args.file)):
        try:
            event = parse_event(raw)
            result = services.reconciliation.handle(event)
        except BuildLedgerError as exc:
            failures += 1
            event_id = raw.get("id") if isinstance(raw, dict) else None
            logger.error("replay of event failed", extra={"event_id": event_id, "code": exc.code})
            print(json.dumps({"event_id": event_id, "error": exc.code}))
            continue
        print(
            json.dumps(
                {
                    "event_id": getattr(event, "event_id", None),
                    "outcome": result.outcome.value,
                    "invoice_id": result.invoice_id,
                    "balance_due": str(result.balance_due) if result.balance_due is not None else None,
                    "status": result.status,
                }
            )
        )
    return 1 if failures else 0


def cmd_overdue(args: argparse.Namespace) -> int:
    services = build_services(load_settings())
    today = date.fromisoformat(args.today) if args.today else date.today()
    invoices = services.repository.list_documents(DocumentKind.INVOICE, args.owner)
    for invoice in sorted((i for i in invoices if is_overdue(i, today)), key=lambda i: i.due_date):
        print(f"{invoice.number}\t{invoice.client_name}\t{invoice.due_date.isoformat()}\t{invoice.balance_due}")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from .api import create_app

    uvicorn.run(create_app(), host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="buildledger", description="BuildLedger administration commands")
    sub = parser.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init-db", help="Create database tables")
    init.add_argument("--database-url", default=load_settings().database_url, help="SQLAlchemy database URL")
    init.set_defaults(func=cmd_init_db)

    replay = sub.add_parser("replay", help="Reconcile payment events exported from Stripe")
    replay.add_argument("file", help="JSON file with one event, a list of events, or a list export")
    replay.add_argument("--send-receipts", action="store_true", help="Email payment receipts for applied payments")
    replay.set_defaults(func=cmd_replay)

    overdue = sub.add_parser("overdue", help="List overdue invoices for an owner")
    overdue.add_argument("--owner", required=True, help="Owner (account) id")
    overdue.add_argument("--today", help="Reference date, YYYY-MM-DD (default: today)")
    overdue.set_defaults(func=cmd_overdue)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.set_defaults(func=cmd_serve)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    configure_logging(load_settings().log_level)
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
