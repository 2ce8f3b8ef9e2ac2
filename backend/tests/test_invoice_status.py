"""Tests for invoice status transitions."""
import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from ap_recon.core.exceptions import InvalidStateError, NotFoundError
from ap_recon.models.invoice import InvoiceStatusTimeline
from ap_recon.services import audit as audit_svc
from ap_recon.services.invoice_status import update_status


def test_transition_writes_timeline_and_audit(db, tenant_id, make_invoice):
    invoice = make_invoice(1000)

    update_status(db, invoice.id, "under_review", actor_id="ap-clerk", tenant_id=tenant_id, notes="Checking PO")

    assert invoice.status == "under_review"
    assert invoice.status_changed_at is not None
    assert invoice.expected_next_step == "Waiting for approval or additional documents"

    [entry] = db.execute(select(InvoiceStatusTimeline)).scalars().all()
    assert (entry.from_status, entry.to_status, entry.changed_by) == ("received", "under_review", "ap-clerk")

    [record] = audit_svc.get_by_entity(db, "invoice", invoice.id)
    assert record.action == "status_change"
    assert record.changes == {"status": {"from": "received", "to": "under_review"}}
    assert record.workflow_stage == "under_review"


def test_same_status_is_a_noop(db, tenant_id, make_invoice):
    invoice = make_invoice(1000)
    update_status(db, invoice.id, "received", tenant_id=tenant_id)
    assert audit_svc.get_by_entity(db, "invoice", invoice.id) == []


def test_approval_sets_expected_payment_date(db, tenant_id, make_invoice):
    due = datetime(2026, 11, 30, tzinfo=timezone.utc)
    invoice = make_invoice(1000, due_date=due)
    update_status(db, invoice.id, "approved_for_payment", tenant_id=tenant_id)
    assert invoice.expected_payment_date == due


def test_terminal_status_cannot_change(db, tenant_id, make_invoice):
    invoice = make_invoice(1000, status="paid")
    with pytest.raises(InvalidStateError):
        update_status(db, invoice.id, "under_review", tenant_id=tenant_id)


def test_unknown_status_is_rejected(db, tenant_id, make_invoice):
    invoice = make_invoice(1000)
    with pytest.raises(ValueError):
        update_status(db, invoice.id, "archived", tenant_id=tenant_id)


def test_unknown_invoice(db, tenant_id):
    with pytest.raises(NotFoundError):
        update_status(db, uuid.uuid4(), "under_review", tenant_id=tenant_id)
