"""Claim policy gate — sequential, fail-closed validation before persistence.

Every gate runs and errors accumulate, so a submitter sees every violation
in one round trip. The only early return is an unknown category, since no
per-category rule can be evaluated without one. Blocking messages carry the
``GATE_BLOCK:`` prefix; warnings never block.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ap_recon.services.config_resolver import DetectionThresholds, detection_thresholds

logger = logging.getLogger(__name__)

BLOCK_PREFIX = "GATE_BLOCK: "

# Prior claims in these statuses count towards duplicates.
DUPLICATE_CHECK_STATUSES = ("submitted", "pending_approval", "approved", "paid")
# Prior claims in these statuses count towards the annual cap.
ANNUAL_TOTAL_STATUSES = ("approved", "paid")


# ─── Category policy ───

@dataclass(frozen=True)
class CategoryPolicy:
    max_amount: float
    max_per_year: float | None = None
    auto_approve: bool = False
    requires_attendees: bool = False
    requires_odometer: bool = False
    max_per_day: float | None = None
    max_per_night: float | None = None
    requires_approval: bool = False


CLAIM_POLICY_LIMITS: dict[str, CategoryPolicy] = {
    "MEDICAL": CategoryPolicy(max_amount=500, max_per_year=2000),
    "TRAVEL": CategoryPolicy(max_amount=5000, max_per_year=20000),
    "ENTERTAINMENT": CategoryPolicy(max_amount=200, max_per_year=1000, requires_attendees=True),
    "OFFICE_SUPPLIES": CategoryPolicy(max_amount=50, auto_approve=True),
    "FUEL": CategoryPolicy(max_amount=200, requires_odometer=True),
    "MEALS": CategoryPolicy(max_amount=100, max_per_day=50),
    "ACCOMMODATION": CategoryPolicy(max_amount=300, max_per_night=150),
    "OTHER": CategoryPolicy(max_amount=500, requires_approval=True),
}


# ─── Inputs / result ───

@dataclass
class ClaimSubmission:
    employee_id: uuid.UUID
    category: str
    amount: float
    claim_date: date
    merchant_name: str | None = None
    description: str | None = None
    receipt_url: str | None = None
    receipt_file_id: str | None = None
    charge_to_tenant_id: uuid.UUID | None = None
    # attendees, odometer_start, odometer_end, odometer_photo_url, destination, purpose, currency_code
    metadata: dict = field(default_factory=dict)


@dataclass
class PolicyContext:
    home_tenant_id: uuid.UUID
    user_id: uuid.UUID | None = None  # defaults to the claim's employee


@dataclass
class PolicyValidationResult:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    auto_approve: bool = False

    @property
    def passed(self) -> bool:
        return not self.errors

    def block(self, message: str) -> None:
        self.errors.append(f"{BLOCK_PREFIX}{message}")


def _money(value: float) -> str:
    return f"${value:,.0f}" if float(value).is_integer() else f"${value:,.2f}"


def billing_tenant(claim: ClaimSubmission, context: PolicyContext) -> uuid.UUID:
    return claim.charge_to_tenant_id or context.home_tenant_id


# ─── Gates ───

def _gate_category_limit(claim: ClaimSubmission, policy: CategoryPolicy, result: PolicyValidationResult) -> None:
    amount = float(claim.amount)
    if amount <= 0:
        result.block("Claim amount must be greater than zero.")
    elif amount > policy.max_amount:
        result.block(
            f"Claim exceeds {_money(policy.max_amount)} limit for {claim.category}. Request rejected."
        )


def _gate_auto_approve(claim: ClaimSubmission, policy: CategoryPolicy, thresholds: DetectionThresholds) -> bool:
    return policy.auto_approve and 0 < float(claim.amount) <= thresholds.claim_auto_approve_max_amount


def _gate_annual_limit(
    db: Session,
    claim: ClaimSubmission,
    context: PolicyContext,
    policy: CategoryPolicy,
    result: PolicyValidationResult,
) -> None:
    from ap_recon.models.claim import EmployeeClaim

    if policy.max_per_year is None:
        return

    year = claim.claim_date.year
    tenant = billing_tenant(claim, context)
    stmt = select(func.coalesce(func.sum(EmployeeClaim.amount), 0)).where(
        EmployeeClaim.employee_id == claim.employee_id,
        EmployeeClaim.category == claim.category,
        EmployeeClaim.status.in_(ANNUAL_TOTAL_STATUSES),
        EmployeeClaim.claim_date >= date(year, 1, 1),
        EmployeeClaim.claim_date <= date(year, 12, 31),
        func.coalesce(EmployeeClaim.charge_to_tenant_id, EmployeeClaim.tenant_id) == tenant,
    )
    already_claimed = float(db.execute(stmt).scalar() or 0)

    if already_claimed + float(claim.amount) > policy.max_per_year:
        remaining = max(0.0, policy.max_per_year - already_claimed)
        result.block(
            f"Annual limit of {_money(policy.max_per_year)} for {claim.category} would be exceeded "
            f"({_money(already_claimed)} already claimed in {year}, {_money(remaining)} remaining). "
            "Request rejected."
        )


def _gate_evidence(claim: ClaimSubmission, policy: CategoryPolicy, result: PolicyValidationResult) -> None:
    meta = claim.metadata or {}
    label = claim.category.replace("_", " ").title()

    if policy.requires_attendees and not meta.get("attendees"):
        result.block(f"{label} claims require a list of attendees.")

    if policy.requires_odometer:
        start = meta.get("odometer_start")
        end = meta.get("odometer_end")
        if start is None or end is None:
            result.block(f"{label} claims require odometer start and end readings.")
        else:
            try:
                start_km, end_km = float(start), float(end)
            except (TypeError, ValueError):
                result.block("Odometer readings must be numeric.")
            else:
                if end_km <= start_km:
                    result.block("Odometer end reading must be greater than the start reading.")
        if not meta.get("odometer_photo_url"):
            result.block(f"{label} claims require a photo of the odometer.")

    amount = float(claim.amount)
    if policy.max_per_day is not None and amount > policy.max_per_day:
        result.warnings.append(
            f"{label} claim exceeds the {_money(policy.max_per_day)} per-day guideline; approver review required."
        )
    if policy.max_per_night is not None and amount > policy.max_per_night:
        result.warnings.append(
            f"{label} claim exceeds the {_money(policy.max_per_night)} per-night guideline; approver review required."
        )
    if policy.requires_approval:
        result.warnings.append(f"{label} claims always require manual approval.")


def _gate_duplicate(db: Session, claim: ClaimSubmission, result: PolicyValidationResult) -> None:
    from ap_recon.models.claim import EmployeeClaim

    merchant = (claim.merchant_name or "").strip().lower()
    stmt = select(EmployeeClaim.id).where(
        EmployeeClaim.employee_id == claim.employee_id,
        EmployeeClaim.amount == claim.amount,
        func.lower(func.coalesce(EmployeeClaim.merchant_name, "")) == merchant,
        EmployeeClaim.claim_date == claim.claim_date,
        EmployeeClaim.status.in_(DUPLICATE_CHECK_STATUSES),
    ).limit(1)
    existing_id = db.execute(stmt).scalar()
    if existing_id is not None:
        result.block(
            f"Duplicate claim detected: a claim for {_money(float(claim.amount))} at "
            f"{claim.merchant_name or 'the same merchant'} on {claim.claim_date.isoformat()} already exists."
        )


def _gate_receipt(claim: ClaimSubmission, result: PolicyValidationResult) -> None:
    if not claim.receipt_url and not claim.receipt_file_id:
        result.block("A receipt must be attached to every claim.")


def _gate_cross_tenant(
    db: Session, claim: ClaimSubmission, context: PolicyContext, result: PolicyValidationResult
) -> None:
    from ap_recon.models.claim import TenantAccess

    if not claim.charge_to_tenant_id or claim.charge_to_tenant_id == context.home_tenant_id:
        return

    user_id = context.user_id or claim.employee_id
    grant = db.execute(
        select(TenantAccess.id).where(
            TenantAccess.user_id == user_id,
            TenantAccess.tenant_id == claim.charge_to_tenant_id,
            TenantAccess.is_active.is_(True),
        ).limit(1)
    ).scalar()
    if grant is None:
        result.block(
            f"You are not authorized to charge expenses to tenant {claim.charge_to_tenant_id}."
        )


# ─── Pipeline ───

def validate_claim(db: Session, claim: ClaimSubmission, context: PolicyContext) -> PolicyValidationResult:
    """Run every gate in order and collect the verdict.

    Gate order: category limit, auto-approve eligibility, annual aggregate,
    evidence, duplicate, receipt, cross-tenant authorisation. Datastore
    errors propagate; they are never turned into a pass.
    """
    result = PolicyValidationResult()

    policy = CLAIM_POLICY_LIMITS.get(claim.category)
    if policy is None:
        result.block(f"Invalid claim category: {claim.category}")
        logger.info("Claim policy gate: unknown category %r for employee %s", claim.category, claim.employee_id)
        return result

    _gate_category_limit(claim, policy, result)
    thresholds = detection_thresholds(db, billing_tenant(claim, context))
    auto_approve = _gate_auto_approve(claim, policy, thresholds)
    _gate_annual_limit(db, claim, context, policy, result)
    _gate_evidence(claim, policy, result)
    _gate_duplicate(db, claim, result)
    _gate_receipt(claim, result)
    _gate_cross_tenant(db, claim, context, result)

    result.auto_approve = auto_approve and result.passed
    logger.info(
        "Claim policy gate: employee=%s category=%s amount=%.2f passed=%s errors=%d warnings=%d auto_approve=%s",
        claim.employee_id, claim.category, float(claim.amount), result.passed,
        len(result.errors), len(result.warnings), result.auto_approve,
    )
    return result
