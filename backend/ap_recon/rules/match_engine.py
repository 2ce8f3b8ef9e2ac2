"""3-Way Match Engine — deterministic PO vs goods receipt vs invoice scoring.

Scoring is a pure function of the three document amounts; the persisted
match row and its audit trail are derived from it. Approval decisions are
explicit calls (reviewer or auto-approval rule), never a side effect of
scoring.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_DOWN, Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from ap_recon.core.clock import utcnow
from ap_recon.core.config import settings
from ap_recon.core.exceptions import InvalidStateError, NotFoundError
from ap_recon.db.upsert import row_snapshot, upsert
from ap_recon.models.matching import ThreeWayMatch
from ap_recon.services import audit as audit_svc
from ap_recon.services.config_resolver import DetectionThresholds, default_thresholds, detection_thresholds

logger = logging.getLogger(__name__)

# Denominator floor when every amount is zero.
EPSILON = Decimal("1e-9")
SCORE_PLACES = Decimal("0.01")


# ─── Result dataclasses ───

@dataclass
class MatchOutcome:
    match: ThreeWayMatch
    created: bool
    matching_score: float
    matching_status: str
    variance_amount: float

    @property
    def payment_eligible(self) -> bool:
        return self.match.payment_eligible


# ─── Scoring ───

def _amount(value) -> float:
    return float(value) if value is not None else 0.0


def _decimal(value) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal(0)


def calculate_matching_score(po_amount, grn_amount, invoice_amount) -> float:
    """Confidence score 0-100 from the invoice vs PO variance.

    score = max(0, 100 - |invoice - po| / max(po, grn, invoice) * 100),
    truncated (never rounded up) to 2 places; 0 when every amount is 0.
    """
    po = _decimal(po_amount)
    grn = _decimal(grn_amount)
    inv = _decimal(invoice_amount)

    denominator = max(po, grn, inv)
    if denominator <= EPSILON:
        return 0.0

    variance = abs(inv - po)
    score = Decimal(100) - (variance / denominator) * Decimal(100)
    return float(max(Decimal(0), score).quantize(SCORE_PLACES, rounding=ROUND_DOWN))


def classify_score(score: float, thresholds: DetectionThresholds | None = None) -> str:
    thresholds = thresholds or default_thresholds()
    if score >= thresholds.match_score_matched_min:
        return "matched"
    if score >= thresholds.match_score_partial_min:
        return "partial"
    return "mismatch"


# ─── Document loading ───

def _load(db: Session, model, entity: str, doc_id: uuid.UUID, tenant_id: uuid.UUID):
    doc = db.execute(
        select(model).where(model.id == doc_id, model.tenant_id == tenant_id)
    ).scalars().first()
    if doc is None:
        raise NotFoundError(entity, doc_id)
    return doc


def get_match(db: Session, match_id: uuid.UUID, tenant_id: uuid.UUID | None = None) -> ThreeWayMatch:
    stmt = select(ThreeWayMatch).where(ThreeWayMatch.id == match_id)
    if tenant_id is not None:
        stmt = stmt.where(ThreeWayMatch.tenant_id == tenant_id)
    match = db.execute(stmt).scalars().first()
    if match is None:
        raise NotFoundError("ThreeWayMatch", match_id)
    return match


def latest_match_for_invoice(
    db: Session, invoice_id: uuid.UUID, tenant_id: uuid.UUID
) -> ThreeWayMatch | None:
    stmt = (
        select(ThreeWayMatch)
        .where(ThreeWayMatch.invoice_id == invoice_id, ThreeWayMatch.tenant_id == tenant_id)
        .order_by(ThreeWayMatch.updated_at.desc(), ThreeWayMatch.id)
    )
    return db.execute(stmt).scalars().first()


# ─── Core match logic ───

def match_documents(
    db: Session,
    *,
    po_id: uuid.UUID,
    grn_id: uuid.UUID,
    invoice_id: uuid.UUID,
    tenant_id: uuid.UUID,
    actor_id: str | None = None,
    request_meta: audit_svc.RequestMeta | None = None,
) -> MatchOutcome:
    """Score a PO / goods receipt / invoice triple and persist the result.

    Steps:
    1. Load all three documents (NotFoundError if any is missing)
    2. Score and classify
    3. Upsert the match row on its (po, grn, invoice, tenant) key
    4. Audit the match, then a lightweight "match" entry on each document

    Re-matching an existing triple updates the row in place; the approval
    decision, if any, is kept.
    """
    from ap_recon.models.goods_receipt import GoodsReceipt
    from ap_recon.models.invoice import Invoice
    from ap_recon.models.purchase_order import PurchaseOrder

    actor = actor_id or settings.SYSTEM_ACTOR

    # ── 1. Load documents ──
    po = _load(db, PurchaseOrder, "PurchaseOrder", po_id, tenant_id)
    grn = _load(db, GoodsReceipt, "GoodsReceipt", grn_id, tenant_id)
    invoice = _load(db, Invoice, "Invoice", invoice_id, tenant_id)

    # ── 2. Score ──
    po_amount = _amount(po.total_amount)
    grn_amount = _amount(grn.total_amount)
    invoice_amount = _amount(invoice.amount)
    variance = round(invoice_amount - po_amount, 4)
    score = calculate_matching_score(po_amount, grn_amount, invoice_amount)
    status = classify_score(score, detection_thresholds(db, tenant_id))

    # ── 3. Upsert ──
    match, created, previous = upsert(
        db,
        ThreeWayMatch,
        lookup={
            "purchase_order_id": po.id,
            "goods_receipt_id": grn.id,
            "invoice_id": invoice.id,
            "tenant_id": tenant_id,
        },
        values={
            "po_amount": po_amount,
            "grn_amount": grn_amount,
            "invoice_amount": invoice_amount,
            "variance_amount": variance,
            "matching_score": score,
            "matching_status": status,
            "payment_eligible": status == "matched",
        },
    )

    # ── 4. Audit ──
    amounts = {
        "po_amount": po_amount,
        "grn_amount": grn_amount,
        "invoice_amount": invoice_amount,
        "variance_amount": variance,
    }
    audit_svc.append(
        db,
        entity_type="three_way_match",
        entity_id=match.id,
        action="create_match" if created else "update_match",
        actor_id=actor,
        tenant_id=tenant_id,
        old_state=previous,
        new_state=row_snapshot(match),
        changes={
            "matching_status": {"from": previous["matching_status"] if previous else None, "to": status},
            "matching_score": {"from": previous["matching_score"] if previous else None, "to": score},
        },
        workflow_stage=status,
        workflow_state=amounts,
        request_meta=request_meta,
    )
    for entity_type, doc in (
        ("purchase_order", po),
        ("goods_receipt", grn),
        ("invoice", invoice),
    ):
        audit_svc.append(
            db,
            entity_type=entity_type,
            entity_id=doc.id,
            action="match",
            actor_id=actor,
            tenant_id=tenant_id,
            new_state={"match_id": str(match.id), "matching_status": status, "matching_score": score},
            workflow_stage="matching",
            request_meta=request_meta,
        )

    logger.info(
        "3-way match %s (%s): invoice=%s po=%s grn=%s score=%.2f status=%s variance=%.2f",
        match.id, "created" if created else "updated", invoice.id, po.id, grn.id,
        score, status, variance,
    )
    return MatchOutcome(
        match=match,
        created=created,
        matching_score=score,
        matching_status=status,
        variance_amount=variance,
    )


# ─── Review decisions ───

def _decide(
    db: Session,
    match_id: uuid.UUID,
    decision: str,
    actor_id: str,
    reason: str | None,
    tenant_id: uuid.UUID | None,
    request_meta: audit_svc.RequestMeta | None,
    now: datetime | None,
) -> ThreeWayMatch:
    action = "approve" if decision == "approved" else "reject"
    match = get_match(db, match_id, tenant_id)
    if match.approval_status not in (None, "pending"):
        raise InvalidStateError("ThreeWayMatch", match_id, match.approval_status, action)

    now = now or utcnow()
    before = row_snapshot(match)
    old_status = match.approval_status

    if decision == "approved":
        match.approval_status = "approved"
        match.approved_by = actor_id
        match.approved_at = now
    else:
        match.approval_status = "rejected"
        match.rejected_by = actor_id
        match.rejected_at = now
        match.rejection_reason = reason
    db.flush()

    audit_svc.append(
        db,
        entity_type="three_way_match",
        entity_id=match.id,
        action=action,
        actor_id=actor_id,
        tenant_id=match.tenant_id,
        old_state=before,
        new_state=row_snapshot(match),
        changes={"approval_status": {"from": old_status, "to": match.approval_status}},
        workflow_stage=match.approval_status,
        workflow_state={"reason": reason} if reason else None,
        request_meta=request_meta,
    )
    logger.info("Match %s %s by %s", match.id, match.approval_status, actor_id)
    return match


def approve_match(
    db: Session,
    match_id: uuid.UUID,
    approver_id: str,
    *,
    tenant_id: uuid.UUID | None = None,
    request_meta: audit_svc.RequestMeta | None = None,
    now: datetime | None = None,
) -> ThreeWayMatch:
    """Approve a pending match. Scoring is not re-run."""
    return _decide(db, match_id, "approved", approver_id, None, tenant_id, request_meta, now)


def reject_match(
    db: Session,
    match_id: uuid.UUID,
    rejector_id: str,
    reason: str,
    *,
    tenant_id: uuid.UUID | None = None,
    request_meta: audit_svc.RequestMeta | None = None,
    now: datetime | None = None,
) -> ThreeWayMatch:
    """Reject a pending match; a non-empty reason is required."""
    if not reason or not reason.strip():
        raise ValueError("A rejection reason is required.")
    return _decide(db, match_id, "rejected", rejector_id, reason.strip(), tenant_id, request_meta, now)
