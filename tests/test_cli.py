import json

from buildledger.cli import main
from buildledger.db import make_engine, make_session_factory
from buildledger.lifecycle import DocumentKind
from buildledger.repository import DocumentRepository

from conftest import INVOICE_DATA, OWNER


def _setup(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    assert main(["init-db", "--database-url", url]) == 0
    repository = DocumentRepository(make_session_factory(make_engine(url)))
    return repository


def test_replay_applies_exported_events_once(tmp_path, monkeypatch, capsys):
    repository = _setup(tmp_path, monkeypatch)
    invoice = repository.create_document(DocumentKind.INVOICE, INVOICE_DATA, OWNER)
    event = {
        "id": "evt_1",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_1", "amount_received": 100000, "metadata": {"invoice_id": invoice.id, "owner_id": OWNER}}},
    }
    export = tmp_path / "events.json"
    export.write_text(json.dumps({"object": "list", "data": [event, event]}))
    capsys.readouterr()

    assert main(["replay", str(export)]) == 0
    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    lines = [line for line in lines if "outcome" in line]
    assert [line["outcome"] for line in lines] == ["applied", "duplicate"]
    stored = repository.require_document(DocumentKind.INVOICE, invoice.id, OWNER)
    assert str(stored.balance_due) == "2255.00"


def test_replay_reports_bad_events(tmp_path, monkeypatch, capsys):
    _setup(tmp_path, monkeypatch)
    export = tmp_path / "events.json"
    export.write_text(json.dumps([{"id": "evt_bad", "type": "payment_intent.succeeded"}]))
    capsys.readouterr()
    assert main(["replay", str(export)]) == 1
    results = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert [r for r in results if "level" not in r] == [{"event_id": "evt_bad", "error": "validation_error"}]


def test_overdue_lists_only_late_open_invoices(tmp_path, monkeypatch, capsys):
    repository = _setup(tmp_path, monkeypatch)
    late = repository.create_document(DocumentKind.INVOICE, dict(INVOICE_DATA, due_date="2025-01-31"), OWNER)
    repository.create_document(DocumentKind.INVOICE, INVOICE_DATA, OWNER)
    repository.modify_document(DocumentKind.INVOICE, late.id, OWNER, lambda doc: setattr(doc, "status", "sent"))
    capsys.readouterr()

    assert main(["overdue", "--owner", OWNER, "--today", "2025-03-01"]) == 0
    out = [line for line in capsys.readouterr().out.splitlines() if "\t" in line]
    assert out == ["INV-0001\tHarbor Renovations\t2025-01-31\t3255.00"]
