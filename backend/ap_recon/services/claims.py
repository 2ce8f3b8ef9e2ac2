"""Employee claim submission: policy gate first, then claim + invoice + audit."""
import logging
import uuid
from dataclasses import dataclass

from sqlalchemy.orm import Session

from ap_recon.core.clock import as_utc, utcnow
from ap_recon.db.upsert import row_snapshot
from ap_recon.models.claim import EmployeeClaim
from ap_recon.models.invoice import Invoice, InvoiceStatusTimeline
from ap_recon.rules.policy_gate import (
    ClaimSubmission,
    PolicyContext,
    PolicyValidationResult,
    billing_tenant,
    validate_claim,
)
from ap_recon.services import audit as audit_svc
from ap_recon.services.invoice_status import expected_next_step_for, expected_payment_date_for

logger = logging.getLogger(__name__)


@dataclass
class ClaimSubmissionResult:
    claim: EmployeeClaim | None
    invoice: Invoice | None
    validation: PolicyValidationResult

    @property
    def accepted(self) -> bool:
        return self.claim is not None


def claim_invoice_number(claim_id: uuid.UUID) -> str:
    return f"CLAIM-{claim_id.hex[:8].upper()}"


def submit_claim(
    db: Session,
    claim: ClaimSubmission,
    *,
    context: PolicyContext,
    request_meta: audit_svc.RequestMeta | None = None,
) -> ClaimSubmissionResult:
    """Validate and, only if every gate passes, persist a claim.

    Accepted claims are stored as ``approved`` when auto-approvable and
    ``submitted`` otherwise, and are mirrored as an invoice on the billing
    tenant so they flow through the same reconciliation and detection.
    A blocked claim writes nothing.
    """
    validation = validate_claim(db, claim, context)
    if not validation.passed:
        logger.info(
            "Claim for employee %s blocked by %d gate(s)", claim.employee_id, len(validation.errors)
        )
        return ClaimSubmissionResult(claim=None, invoice=None, validation=validation)

    now = utcnow()
    actor = str(context.user_id or claim.employee_id)
    status = "approved" if validation.auto_approve else "submitted"
    tenant = billing_tenant(claim, context)

    record = EmployeeClaim(
        tenant_id=context.home_tenant_id,
        employee_id=claim.employee_id,
        charge_to_tenant_id=claim.charge_to_tenant_id,
        category=claim.category,
        amount=claim.amount,
        merchant_name=claim.merchant_name,
        claim_date=claim.claim_date,
        description=claim.description,
        receipt_url=claim.receipt_url,
        receipt_file_id=claim.receipt_file_id,
        claim_metadata=dict(claim.metadata or {}),
        status=status,
        auto_approved=validation.auto_approve,
    )
    db.add(record)
    db.flush()

    invoice_status = "approved_for_payment" if validation.auto_approve else "received"
    invoice = Invoice(
        tenant_id=tenant,
        invoice_number=claim_invoice_number(record.id),
        invoice_date=as_utc(claim.claim_date),
        amount=claim.amount,
        currency=(claim.metadata or {}).get("currency_code") or "USD",
        status=invoice_status,
        source="employee_claim",
        status_changed_at=now,
        expected_next_step=expected_next_step_for(invoice_status),
        notes=f"{claim.category} claim from employee {claim.employee_id}",
    )
    if validation.auto_approve:
        invoice.expected_payment_date = expected_payment_date_for(invoice, now)
    db.add(invoice)
    db.flush()

    record.invoice_id = invoice.id
    db.add(InvoiceStatusTimeline(
        invoice_id=invoice.id,
        tenant_id=tenant,
        from_status=None,
        to_status=invoice_status,
        changed_by=actor,
        notes="Created from employee claim",
        changed_at=now,
    ))
    db.flush()

    audit_svc.append(
        db,
        entity_type="employee_claim",
        entity_id=record.id,
        action="create",
        actor_id=actor,
        tenant_id=context.home_tenant_id,
        new_state=row_snapshot(record),
        workflow_stage=status,
        workflow_state={"warnings": validation.warnings, "auto_approve": validation.auto_approve},
        request_meta=request_meta,
    )
    audit_svc.append(
        db,
        entity_type="invoice",
        entity_id=invoice.id,
        action="create",
        actor_id=actor,
        tenant_id=tenant,
        new_state=row_snapshot(invoice),
        workflow_stage=invoice_status,
        workflow_state={"claim_id": str(record.id)},
        request_meta=request_meta,
    )

    logger.info(
        "Claim %s accepted (%s) for employee %s; invoice %s on tenant %s",
        record.id, status, claim.employee_id, invoice.invoice_number, tenant,
    )
    return ClaimSubmissionResult(claim=record, invoice=invoice, validation=validation)
