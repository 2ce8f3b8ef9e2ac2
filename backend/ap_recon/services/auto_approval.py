"""Rule-based auto-approval of reconciled invoices.

Only the first active rule for the tenant (oldest first) is applied, and
only all-criteria-met passes approve. Anything short of that leaves the
match pending for manual review.
"""
import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from ap_recon.core.config import settings
from ap_recon.models.matching import ThreeWayMatch
from ap_recon.models.rule import AutoApprovalLog, AutoApprovalRule
from ap_recon.rules.match_engine import approve_match
from ap_recon.services import audit as audit_svc
from ap_recon.services.config_resolver import as_bool, get_value

logger = logging.getLogger(__name__)

AUTO_PAYMENT_CONFIG_KEY = "auto_payment_on_approval"

REASON_NO_RULES = "No auto-approval rules configured"
REASON_NO_MATCH = "No matching found"
REASON_NOT_PENDING = "Match already reviewed"
REASON_APPROVED = "All criteria met - auto-approved"
REASON_NOT_MET = "Criteria not met - requires manual review"
REASON_RULE_DISABLED = "Criteria met but rule does not auto-approve - requires manual review"


@dataclass
class AutoApprovalResult:
    approved: bool
    reason: str
    rule_id: uuid.UUID | None = None
    match_id: uuid.UUID | None = None
    matching_score: float | None = None
    variance_amount: float | None = None
    criteria: dict[str, bool] = field(default_factory=dict)

    @property
    def criteria_met(self) -> bool:
        return bool(self.criteria) and all(self.criteria.values())


def get_first_active_rule(db: Session, tenant_id: uuid.UUID) -> AutoApprovalRule | None:
    stmt = (
        select(AutoApprovalRule)
        .where(
            AutoApprovalRule.tenant_id == tenant_id,
            AutoApprovalRule.rule_type == "three_way_match",
            AutoApprovalRule.is_active.is_(True),
        )
        .order_by(AutoApprovalRule.created_at.asc(), AutoApprovalRule.id.asc())
    )
    return db.execute(stmt).scalars().first()


def _latest_pending_match(db: Session, invoice_id: uuid.UUID, tenant_id: uuid.UUID) -> ThreeWayMatch | None:
    stmt = (
        select(ThreeWayMatch)
        .where(ThreeWayMatch.invoice_id == invoice_id, ThreeWayMatch.tenant_id == tenant_id)
        .order_by(ThreeWayMatch.updated_at.desc(), ThreeWayMatch.id)
    )
    matches = db.execute(stmt).scalars().all()
    if not matches:
        return None
    for match in matches:
        if match.approval_status in (None, "pending"):
            return match
    return matches[0]


def evaluate_criteria(rule: AutoApprovalRule, match: ThreeWayMatch) -> dict[str, bool]:
    score = float(match.matching_score or 0)
    variance = abs(float(match.variance_amount or 0))
    return {
        "score_meets_threshold": score >= float(rule.matching_score_threshold),
        "variance_within_tolerance": variance <= float(rule.variance_threshold),
        "status_matched": match.matching_status == "matched",
    }


def check_auto_approval(
    db: Session,
    invoice_id: uuid.UUID,
    tenant_id: uuid.UUID,
    *,
    request_meta: audit_svc.RequestMeta | None = None,
) -> AutoApprovalResult:
    """Decide whether an invoice's match can be approved without a reviewer.

    Missing rules or match are expected "not yet eligible" states and come
    back as approved=False with a reason, never as an error.
    """
    from ap_recon.services.invoice_status import update_status

    rule = get_first_active_rule(db, tenant_id)
    if rule is None:
        return AutoApprovalResult(approved=False, reason=REASON_NO_RULES)

    match = _latest_pending_match(db, invoice_id, tenant_id)
    if match is None:
        return AutoApprovalResult(approved=False, reason=REASON_NO_MATCH, rule_id=rule.id)

    result = AutoApprovalResult(
        approved=False,
        reason=REASON_NOT_MET,
        rule_id=rule.id,
        match_id=match.id,
        matching_score=float(match.matching_score or 0),
        variance_amount=float(match.variance_amount or 0),
        criteria=evaluate_criteria(rule, match),
    )

    if match.approval_status not in (None, "pending"):
        result.reason = REASON_NOT_PENDING
        return result
    if not result.criteria_met:
        logger.info(
            "Auto-approval withheld for invoice %s (rule %s): %s",
            invoice_id, rule.id, {k: v for k, v in result.criteria.items() if not v},
        )
        return result
    if not rule.auto_approve:
        result.reason = REASON_RULE_DISABLED
        return result

    approver = rule.auto_approve_by or settings.SYSTEM_ACTOR
    approve_match(db, match.id, approver, tenant_id=tenant_id, request_meta=request_meta)
    approval_record = audit_svc.get_by_entity(db, "three_way_match", match.id)[-1]

    db.add(AutoApprovalLog(
        tenant_id=tenant_id,
        rule_id=rule.id,
        invoice_id=invoice_id,
        match_id=match.id,
        matching_score=result.matching_score,
        variance_amount=result.variance_amount,
        criteria_met={
            **result.criteria,
            "score_threshold": float(rule.matching_score_threshold),
            "variance_threshold": float(rule.variance_threshold),
        },
        approved_by=approver,
        audit_record_id=approval_record.id,
    ))
    db.flush()

    auto_payment = get_value(
        db, tenant_id, None, AUTO_PAYMENT_CONFIG_KEY, settings.AUTO_PAYMENT_ON_APPROVAL
    )
    if as_bool(auto_payment):
        update_status(
            db,
            invoice_id,
            "approved_for_payment",
            actor_id=approver,
            tenant_id=tenant_id,
            notes=f"Auto-approved by rule {rule.name}",
            request_meta=request_meta,
        )

    result.approved = True
    result.reason = REASON_APPROVED
    logger.info(
        "Invoice %s auto-approved by rule %s (score=%.2f variance=%.2f)",
        invoice_id, rule.id, result.matching_score, result.variance_amount,
    )
    return result
