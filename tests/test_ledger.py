from decimal import Decimal

import pytest

from buildledger.errors import DuplicateExternalIdError, InvalidTransitionError, NotFoundError, ValidationError
from buildledger.ledger import PaymentLedger, can_transition, is_stale

from conftest import OWNER


@pytest.fixture
def ledger():
    return PaymentLedger()


def _record(repository, ledger, invoice, external_id="pi_123", status="pending", amount="3255.00"):
    with repository.transaction() as session:
        return ledger.record_payment(
            session,
            owner_id=OWNER,
            invoice_id=invoice.id,
            amount=amount,
            method="stripe",
            status=status,
            external_id=external_id,
        )


def test_record_and_find(repository, ledger, invoice):
    payment = _record(repository, ledger, invoice)
    assert payment.amount == Decimal("3255.00")
    with repository.transaction() as session:
        found = ledger.find_by_external_id(session, "pi_123")
        assert found.id == payment.id
        assert ledger.find_by_external_id(session, "pi_missing") is None


def test_duplicate_external_id_raises(repository, ledger, invoice):
    _record(repository, ledger, invoice)
    with pytest.raises(DuplicateExternalIdError):
        _record(repository, ledger, invoice, status="completed")
    with repository.transaction() as session:
        assert len(ledger.list_for_invoice(session, invoice.id, OWNER)) == 1


def test_manual_payments_without_reference_do_not_collide(repository, ledger, invoice):
    _record(repository, ledger, invoice, external_id=None, status="completed", amount="5")
    _record(repository, ledger, invoice, external_id=None, status="completed", amount="5")
    with repository.transaction() as session:
        assert len(ledger.list_for_invoice(session, invoice.id, OWNER)) == 2


def test_amount_must_be_positive(repository, ledger, invoice):
    with pytest.raises(ValidationError):
        _record(repository, ledger, invoice, amount="0")


def test_status_moves_forward(repository, ledger, invoice):
    payment = _record(repository, ledger, invoice)
    with repository.transaction() as session:
        assert ledger.update_status(session, payment.id, "completed").status == "completed"
    with repository.transaction() as session:
        assert ledger.update_status(session, payment.id, "refunded").status == "refunded"


def test_failed_never_becomes_completed(repository, ledger, invoice):
    payment = _record(repository, ledger, invoice, status="failed")
    with pytest.raises(InvalidTransitionError):
        with repository.transaction() as session:
            ledger.update_status(session, payment.id, "completed")


def test_update_unknown_payment(repository, ledger):
    with pytest.raises(NotFoundError):
        with repository.transaction() as session:
            ledger.update_status(session, "no-such-id", "completed")


def test_transition_table():
    assert can_transition("pending", "completed")
    assert can_transition("pending", "failed")
    assert can_transition("completed", "refunded")
    assert not can_transition("failed", "completed")
    assert not can_transition("completed", "pending")
    assert is_stale("completed", "pending")
    assert not is_stale("failed", "completed")
