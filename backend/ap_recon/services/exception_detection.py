"""Invoice exception detection — severity-tagged defect records per invoice.

Detection is split in two:
- ``detect_exceptions`` runs eight read-only checks and returns findings.
- ``detect_and_record`` persists new findings, skipping any (invoice, type)
  that already has an active exception, and audits each created record.

Thresholds come from the tenant's configuration layers with the settings
values as defaults.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from ap_recon.core.clock import as_utc, days_between, utcnow
from ap_recon.core.config import settings
from ap_recon.core.exceptions import InvalidStateError, NotFoundError
from ap_recon.db.upsert import insert_or_get, row_snapshot
from ap_recon.models.exception_record import EXCEPTION_TYPES, SEVERITIES, InvoiceException
from ap_recon.models.invoice import Invoice
from ap_recon.models.matching import ThreeWayMatch
from ap_recon.rules.match_engine import latest_match_for_invoice
from ap_recon.services import audit as audit_svc
from ap_recon.services.config_resolver import DetectionThresholds, detection_thresholds
from ap_recon.services.invoice_status import get_invoice

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("open", "in_progress")
SEVERITY_RANK = {"critical": 0, "high": 1, "medium": 2, "low": 3}


@dataclass
class DetectedException:
    exception_type: str
    severity: str
    title: str
    description: str
    exception_data: dict = field(default_factory=dict)


# ─── Checks (read-only; zero or one finding each, invalid_data may yield several) ───

def check_missing_document(invoice: Invoice, match: ThreeWayMatch | None) -> DetectedException | None:
    if invoice.status == "paid" or invoice.source == "employee_claim":
        return None

    has_po = invoice.purchase_order_id is not None or match is not None
    has_grn = invoice.goods_receipt_id is not None or match is not None

    if not has_po:
        return DetectedException(
            exception_type="missing_document",
            severity="high",
            title="Missing Purchase Order",
            description="Invoice has no purchase order reference and cannot be 3-way matched.",
            exception_data={"missing_document": "PO"},
        )
    if not has_grn:
        return DetectedException(
            exception_type="missing_document",
            severity="high",
            title="Missing Goods Receipt Note",
            description="Invoice references a purchase order but no goods receipt has been recorded.",
            exception_data={"missing_document": "GRN", "purchase_order_id": str(invoice.purchase_order_id)},
        )
    return None


def check_variance_breach(
    match: ThreeWayMatch | None, thresholds: DetectionThresholds
) -> DetectedException | None:
    if match is None:
        return None
    variance = float(match.variance_amount or 0)
    magnitude = abs(variance)
    if magnitude <= thresholds.variance_threshold:
        return None

    if magnitude > thresholds.variance_critical_amount:
        severity = "critical"
    elif magnitude > thresholds.variance_high_amount:
        severity = "high"
    else:
        severity = "medium"

    return DetectedException(
        exception_type="variance_breach",
        severity=severity,
        title="Amount Variance Exceeds Threshold",
        description=(
            f"Invoice amount differs from the purchase order by {variance:,.2f} "
            f"(threshold {thresholds.variance_threshold:,.2f})."
        ),
        exception_data={
            "match_id": str(match.id),
            "variance_amount": variance,
            "threshold": thresholds.variance_threshold,
            "po_amount": float(match.po_amount or 0),
            "invoice_amount": float(match.invoice_amount or 0),
        },
    )


def check_aging(invoice: Invoice, thresholds: DetectionThresholds, now: datetime) -> DetectedException | None:
    if invoice.status == "paid" or invoice.invoice_date is None:
        return None

    age = days_between(invoice.invoice_date, now)
    if age > thresholds.aging_critical_days:
        severity, title, limit = "critical", "Invoice Aging Critical", thresholds.aging_critical_days
    elif age > thresholds.aging_warning_days:
        severity, title, limit = "medium", "Invoice Aging Warning", thresholds.aging_warning_days
    else:
        return None

    return DetectedException(
        exception_type="aging_threshold",
        severity=severity,
        title=title,
        description=f"Invoice is {age} days old and still unpaid (threshold {limit} days).",
        exception_data={"age_days": age, "threshold_days": limit},
    )


def check_matching_failure(
    match: ThreeWayMatch | None, thresholds: DetectionThresholds
) -> DetectedException | None:
    if match is None or match.matching_status != "mismatch":
        return None

    score = float(match.matching_score or 0)
    severity = "critical" if score < thresholds.match_failure_critical_score else "high"
    return DetectedException(
        exception_type="matching_failure",
        severity=severity,
        title="3-Way Matching Failure",
        description=f"Purchase order, goods receipt and invoice do not reconcile (score {score:.2f}).",
        exception_data={"match_id": str(match.id), "matching_score": score},
    )


def check_approval_overdue(
    invoice: Invoice, thresholds: DetectionThresholds, now: datetime
) -> DetectedException | None:
    if invoice.status != "under_review":
        return None

    days = days_between(invoice.status_changed_at or invoice.updated_at, now)
    if days > thresholds.approval_critical_days:
        severity = "critical"
    elif days > thresholds.approval_overdue_days:
        severity = "high"
    else:
        return None

    return DetectedException(
        exception_type="approval_overdue",
        severity=severity,
        title="Approval Overdue",
        description=f"Invoice has been under review for {days} days.",
        exception_data={"days_in_review": days, "threshold_days": thresholds.approval_overdue_days},
    )


def check_payment_delayed(
    invoice: Invoice, thresholds: DetectionThresholds, now: datetime
) -> DetectedException | None:
    if invoice.status != "approved_for_payment" or invoice.expected_payment_date is None:
        return None

    expected = as_utc(invoice.expected_payment_date)
    if expected >= now:
        return None

    days_overdue = days_between(expected, now)
    if days_overdue > thresholds.payment_delay_critical_days:
        severity = "critical"
    elif days_overdue > thresholds.payment_delay_high_days:
        severity = "high"
    else:
        severity = "medium"

    return DetectedException(
        exception_type="payment_delayed",
        severity=severity,
        title="Payment Delayed",
        description=(
            f"Payment was expected on {expected.date().isoformat()} "
            f"and is {days_overdue} day(s) overdue."
        ),
        exception_data={"expected_payment_date": expected.isoformat(), "days_overdue": days_overdue},
    )


def check_invalid_data(invoice: Invoice) -> list[DetectedException]:
    findings: list[DetectedException] = []
    if not (invoice.invoice_number or "").strip():
        findings.append(DetectedException(
            exception_type="invalid_data",
            severity="high",
            title="Missing Invoice Number",
            description="Invoice has no invoice number.",
            exception_data={"field": "invoice_number"},
        ))
    if invoice.invoice_date is None:
        findings.append(DetectedException(
            exception_type="invalid_data",
            severity="high",
            title="Missing Invoice Date",
            description="Invoice has no invoice date.",
            exception_data={"field": "invoice_date"},
        ))
    if invoice.amount is None or float(invoice.amount) <= 0:
        findings.append(DetectedException(
            exception_type="invalid_data",
            severity="high",
            title="Invalid Invoice Amount",
            description="Invoice amount is missing or not positive.",
            exception_data={
                "field": "amount",
                "value": float(invoice.amount) if invoice.amount is not None else None,
            },
        ))
    return findings


def check_duplicate(db: Session, invoice: Invoice) -> DetectedException | None:
    number = (invoice.invoice_number or "").strip()
    if not number or invoice.vendor_id is None:
        return None

    stmt = (
        select(Invoice.id)
        .where(
            Invoice.tenant_id == invoice.tenant_id,
            Invoice.vendor_id == invoice.vendor_id,
            func.lower(Invoice.invoice_number) == number.lower(),
            Invoice.id != invoice.id,
            Invoice.status != "rejected",
        )
        .order_by(Invoice.created_at)
    )
    duplicate_ids = [str(i) for i in db.execute(stmt).scalars().all()]
    if not duplicate_ids:
        return None

    return DetectedException(
        exception_type="duplicate_detected",
        severity="high",
        title="Possible Duplicate Invoice",
        description=(
            f"Invoice number {number} from this vendor also appears on "
            f"{len(duplicate_ids)} other invoice(s)."
        ),
        exception_data={"invoice_number": number, "duplicate_invoice_ids": duplicate_ids},
    )


# ─── Detection ───

def detect_exceptions(
    db: Session,
    invoice_id: uuid.UUID,
    tenant_id: uuid.UUID,
    *,
    now: datetime | None = None,
    thresholds: DetectionThresholds | None = None,
) -> list[DetectedException]:
    """Run every check against an invoice and its latest match. Read-only."""
    now = as_utc(now) if now else utcnow()
    invoice = get_invoice(db, invoice_id, tenant_id)
    match = latest_match_for_invoice(db, invoice.id, tenant_id)
    thresholds = thresholds or detection_thresholds(db, tenant_id)

    findings: list[DetectedException | None] = [
        check_missing_document(invoice, match),
        check_variance_breach(match, thresholds),
        check_aging(invoice, thresholds, now),
        check_matching_failure(match, thresholds),
        check_approval_overdue(invoice, thresholds, now),
        check_payment_delayed(invoice, thresholds, now),
        *check_invalid_data(invoice),
        check_duplicate(db, invoice),
    ]
    return [f for f in findings if f is not None]


def _collapse_by_type(findings: list[DetectedException]) -> list[DetectedException]:
    """Fold same-type findings into one record; only one may be open per type."""
    grouped: dict[str, list[DetectedException]] = {}
    for finding in findings:
        grouped.setdefault(finding.exception_type, []).append(finding)

    collapsed: list[DetectedException] = []
    for exception_type, group in grouped.items():
        if len(group) == 1:
            collapsed.append(group[0])
            continue
        collapsed.append(DetectedException(
            exception_type=exception_type,
            severity=min((f.severity for f in group), key=lambda s: SEVERITY_RANK[s]),
            title="; ".join(f.title for f in group),
            description=" ".join(f.description for f in group),
            exception_data={"issues": [{"title": f.title, **f.exception_data} for f in group]},
        ))
    return collapsed


def _active_exception(db: Session, invoice_id: uuid.UUID, exception_type: str) -> InvoiceException | None:
    return db.execute(
        select(InvoiceException).where(
            InvoiceException.invoice_id == invoice_id,
            InvoiceException.exception_type == exception_type,
            InvoiceException.status.in_(ACTIVE_STATUSES),
        )
    ).scalars().first()


def detect_and_record(
    db: Session,
    invoice_id: uuid.UUID,
    tenant_id: uuid.UUID,
    *,
    actor_id: str | None = None,
    request_meta: audit_svc.RequestMeta | None = None,
    now: datetime | None = None,
) -> list[InvoiceException]:
    """Detect and persist new exceptions; returns only the ones created."""
    now = as_utc(now) if now else utcnow()
    actor = actor_id or settings.SYSTEM_ACTOR
    created: list[InvoiceException] = []

    for finding in _collapse_by_type(detect_exceptions(db, invoice_id, tenant_id, now=now)):
        if _active_exception(db, invoice_id, finding.exception_type) is not None:
            logger.debug("Exception %s already active for invoice %s; skipping", finding.exception_type, invoice_id)
            continue

        record, is_new = insert_or_get(
            db,
            InvoiceException,
            lookup={"invoice_id": invoice_id, "exception_type": finding.exception_type, "status": "open"},
            values={
                "tenant_id": tenant_id,
                "severity": finding.severity,
                "title": finding.title,
                "description": finding.description,
                "exception_data": finding.exception_data,
                "detected_at": now,
            },
        )
        if not is_new:
            continue

        audit_svc.append(
            db,
            entity_type="invoice_exception",
            entity_id=record.id,
            action="detect",
            actor_id=actor,
            tenant_id=tenant_id,
            new_state=row_snapshot(record),
            workflow_stage="open",
            workflow_state={"invoice_id": str(invoice_id), "severity": record.severity},
            request_meta=request_meta,
        )
        created.append(record)
        logger.info(
            "Exception detected: invoice=%s type=%s severity=%s",
            invoice_id, record.exception_type, record.severity,
        )

    return created


# ─── Reviewer actions ───

def get_exception(db: Session, exception_id: uuid.UUID, tenant_id: uuid.UUID | None = None) -> InvoiceException:
    stmt = select(InvoiceException).where(InvoiceException.id == exception_id)
    if tenant_id is not None:
        stmt = stmt.where(InvoiceException.tenant_id == tenant_id)
    record = db.execute(stmt).scalars().first()
    if record is None:
        raise NotFoundError("InvoiceException", exception_id)
    return record


def _transition(
    db: Session,
    exception_id: uuid.UUID,
    *,
    to_status: str,
    action: str,
    allowed_from: tuple[str, ...],
    actor_id: str,
    notes: str | None,
    tenant_id: uuid.UUID | None,
    request_meta: audit_svc.RequestMeta | None,
) -> InvoiceException:
    record = get_exception(db, exception_id, tenant_id)
    if record.status not in allowed_from:
        raise InvalidStateError("InvoiceException", exception_id, record.status, action)

    before = row_snapshot(record)
    old_status = record.status
    record.status = to_status
    if to_status in ("resolved", "ignored"):
        record.resolved_by = actor_id
        record.resolved_at = utcnow()
        record.resolution_notes = notes
    db.flush()

    audit_svc.append(
        db,
        entity_type="invoice_exception",
        entity_id=record.id,
        action=action,
        actor_id=actor_id,
        tenant_id=record.tenant_id,
        old_state=before,
        new_state=row_snapshot(record),
        changes={"status": {"from": old_status, "to": to_status}},
        workflow_stage=to_status,
        workflow_state={"invoice_id": str(record.invoice_id), "notes": notes},
        request_meta=request_meta,
    )
    logger.info("Exception %s %s -> %s by %s", record.id, old_status, to_status, actor_id)
    return record


def resolve_exception(
    db: Session,
    exception_id: uuid.UUID,
    resolved_by: str,
    notes: str | None = None,
    *,
    tenant_id: uuid.UUID | None = None,
    request_meta: audit_svc.RequestMeta | None = None,
) -> InvoiceException:
    return _transition(
        db, exception_id, to_status="resolved", action="resolve", allowed_from=ACTIVE_STATUSES,
        actor_id=resolved_by, notes=notes, tenant_id=tenant_id, request_meta=request_meta,
    )


def ignore_exception(
    db: Session,
    exception_id: uuid.UUID,
    ignored_by: str,
    notes: str | None = None,
    *,
    tenant_id: uuid.UUID | None = None,
    request_meta: audit_svc.RequestMeta | None = None,
) -> InvoiceException:
    return _transition(
        db, exception_id, to_status="ignored", action="ignore", allowed_from=ACTIVE_STATUSES,
        actor_id=ignored_by, notes=notes, tenant_id=tenant_id, request_meta=request_meta,
    )


def mark_in_progress(
    db: Session,
    exception_id: uuid.UUID,
    reviewer_id: str,
    *,
    tenant_id: uuid.UUID | None = None,
    request_meta: audit_svc.RequestMeta | None = None,
) -> InvoiceException:
    return _transition(
        db, exception_id, to_status="in_progress", action="start_review", allowed_from=("open",),
        actor_id=reviewer_id, notes=None, tenant_id=tenant_id, request_meta=request_meta,
    )


# ─── Reads ───

def list_exceptions(
    db: Session,
    tenant_id: uuid.UUID,
    *,
    status: str | None = "open",
    invoice_id: uuid.UUID | None = None,
    severity: str | None = None,
    exception_type: str | None = None,
    limit: int = 100,
) -> list[InvoiceException]:
    """Exceptions for a tenant, most severe first, then newest first."""
    stmt = select(InvoiceException).where(InvoiceException.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(InvoiceException.status == status)
    if invoice_id:
        stmt = stmt.where(InvoiceException.invoice_id == invoice_id)
    if severity:
        stmt = stmt.where(InvoiceException.severity == severity)
    if exception_type:
        stmt = stmt.where(InvoiceException.exception_type == exception_type)

    severity_order = case(SEVERITY_RANK, value=InvoiceException.severity, else_=len(SEVERITY_RANK))
    stmt = stmt.order_by(severity_order, InvoiceException.detected_at.desc()).limit(limit)
    return list(db.execute(stmt).scalars().all())


def exception_summary(db: Session, tenant_id: uuid.UUID) -> dict:
    """Open-exception counts: blocking (critical+high), needs_action (medium), safe (low)."""
    rows = db.execute(
        select(InvoiceException.exception_type, InvoiceException.severity, func.count(InvoiceException.id))
        .where(InvoiceException.tenant_id == tenant_id, InvoiceException.status == "open")
        .group_by(InvoiceException.exception_type, InvoiceException.severity)
    ).all()

    by_type = {t: 0 for t in EXCEPTION_TYPES}
    by_severity = {s: 0 for s in SEVERITIES}
    for exception_type, severity, count in rows:
        by_type[exception_type] = by_type.get(exception_type, 0) + count
        by_severity[severity] = by_severity.get(severity, 0) + count

    return {
        "total_open": sum(by_severity.values()),
        "blocking": by_severity["critical"] + by_severity["high"],
        "needs_action": by_severity["medium"],
        "safe": by_severity["low"],
        "by_type": by_type,
        "by_severity": by_severity,
    }
