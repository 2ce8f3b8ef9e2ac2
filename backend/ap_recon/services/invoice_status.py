"""Invoice status transitions with timeline and audit trail."""
import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from ap_recon.core.clock import as_utc, utcnow
from ap_recon.core.config import settings
from ap_recon.core.exceptions import InvalidStateError, NotFoundError
from ap_recon.db.upsert import row_snapshot
from ap_recon.models.invoice import (
    INVOICE_STATUSES,
    TERMINAL_INVOICE_STATUSES,
    Invoice,
    InvoiceStatusTimeline,
)
from ap_recon.services import audit as audit_svc

logger = logging.getLogger(__name__)


EXPECTED_NEXT_STEPS = {
    "received": "Invoice will be reviewed for 3-way matching",
    "under_review": "Waiting for approval or additional documents",
    "approved_for_payment": "Payment will be processed in next payment cycle",
}
DEFAULT_NEXT_STEP = "Please check with AP team for next steps"


def expected_next_step_for(status: str) -> str:
    return EXPECTED_NEXT_STEPS.get(status, DEFAULT_NEXT_STEP)


def expected_payment_date_for(invoice: Invoice, now: datetime) -> datetime:
    """Due date if known, otherwise invoice date (or now) plus standard terms."""
    if invoice.due_date is not None:
        return as_utc(invoice.due_date)
    base = as_utc(invoice.invoice_date) or now
    return base + timedelta(days=settings.DEFAULT_PAYMENT_TERMS_DAYS)


def get_invoice(db: Session, invoice_id: uuid.UUID, tenant_id: uuid.UUID | None = None) -> Invoice:
    stmt = select(Invoice).where(Invoice.id == invoice_id)
    if tenant_id is not None:
        stmt = stmt.where(Invoice.tenant_id == tenant_id)
    invoice = db.execute(stmt).scalars().first()
    if invoice is None:
        raise NotFoundError("Invoice", invoice_id)
    return invoice


def update_status(
    db: Session,
    invoice_id: uuid.UUID,
    new_status: str,
    *,
    actor_id: str | None = None,
    tenant_id: uuid.UUID | None = None,
    notes: str | None = None,
    expected_next_step: str | None = None,
    request_meta: audit_svc.RequestMeta | None = None,
    now: datetime | None = None,
) -> Invoice:
    """Move an invoice to ``new_status``.

    Writes an InvoiceStatusTimeline row and an audit record, and closes any
    open staleness episode for the invoice. Moving to the current status is
    a no-op. Paid and rejected invoices cannot change status.
    """
    from ap_recon.models.staleness import InvoiceStaleness

    if new_status not in INVOICE_STATUSES:
        raise ValueError(f"Unknown invoice status: {new_status!r}")

    invoice = get_invoice(db, invoice_id, tenant_id)
    old_status = invoice.status
    if old_status == new_status:
        logger.debug("Invoice %s already %s; nothing to do", invoice_id, new_status)
        return invoice
    if old_status in TERMINAL_INVOICE_STATUSES:
        raise InvalidStateError("Invoice", invoice_id, old_status, f"move to {new_status}")

    now = now or utcnow()
    actor = actor_id or settings.SYSTEM_ACTOR
    before = row_snapshot(invoice)

    invoice.status = new_status
    invoice.status_changed_at = now
    invoice.expected_next_step = expected_next_step or expected_next_step_for(new_status)
    if new_status == "approved_for_payment":
        invoice.expected_payment_date = expected_payment_date_for(invoice, now)

    db.add(InvoiceStatusTimeline(
        invoice_id=invoice.id,
        tenant_id=invoice.tenant_id,
        from_status=old_status,
        to_status=new_status,
        changed_by=actor,
        notes=notes,
        changed_at=now,
    ))
    db.flush()

    audit_svc.append(
        db,
        entity_type="invoice",
        entity_id=invoice.id,
        action="status_change",
        actor_id=actor,
        tenant_id=invoice.tenant_id,
        old_state=before,
        new_state=row_snapshot(invoice),
        changes={"status": {"from": old_status, "to": new_status}},
        workflow_stage=new_status,
        workflow_state={"notes": notes, "expected_next_step": invoice.expected_next_step},
        request_meta=request_meta,
    )

    staleness = db.execute(
        select(InvoiceStaleness).where(
            InvoiceStaleness.invoice_id == invoice.id,
            InvoiceStaleness.is_resolved.is_(False),
        )
    ).scalars().first()
    if staleness is not None:
        stale_before = row_snapshot(staleness)
        staleness.is_resolved = True
        staleness.resolved_at = now
        staleness.resolved_by = actor
        staleness.resolution_notes = f"Invoice moved to {new_status}"
        staleness.notification_sent = False
        staleness.notification_sent_at = None
        db.flush()
        audit_svc.append(
            db,
            entity_type="invoice_staleness",
            entity_id=staleness.id,
            action="resolve",
            actor_id=actor,
            tenant_id=staleness.tenant_id,
            old_state=stale_before,
            new_state=row_snapshot(staleness),
            changes={"is_resolved": {"from": False, "to": True}},
            workflow_stage="resolved",
            workflow_state={"invoice_id": str(invoice.id), "notes": staleness.resolution_notes},
            request_meta=request_meta,
        )

    logger.info("Invoice %s status %s -> %s by %s", invoice.id, old_status, new_status, actor)
    return invoice
