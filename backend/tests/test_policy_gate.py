"""Tests for the employee claim policy gate and claim submission."""
import uuid
from datetime import date

import pytest
from sqlalchemy import func, select

from ap_recon.models.audit import AuditRecord
from ap_recon.models.claim import EmployeeClaim, TenantAccess
from ap_recon.models.config_layer import ConfigLayer
from ap_recon.models.invoice import Invoice
from ap_recon.rules.policy_gate import (
    BLOCK_PREFIX,
    ClaimSubmission,
    PolicyContext,
    validate_claim,
)
from ap_recon.services.claims import submit_claim


# ─── Helpers ──────────────────────────────────────────────────────────────────

EMPLOYEE = uuid.UUID("00000000-0000-0000-0000-0000000000e1")


def _claim(category: str = "MEDICAL", amount: float = 120.0, **kwargs) -> ClaimSubmission:
    kwargs.setdefault("employee_id", EMPLOYEE)
    kwargs.setdefault("claim_date", date(2026, 3, 14))
    kwargs.setdefault("merchant_name", "City Clinic")
    kwargs.setdefault("receipt_url", "https://files.example.com/receipt.pdf")
    return ClaimSubmission(category=category, amount=amount, **kwargs)


def _prior_claim(db, tenant_id, amount: float, status: str = "approved", **kwargs) -> EmployeeClaim:
    kwargs.setdefault("category", "MEDICAL")
    kwargs.setdefault("claim_date", date(2026, 2, 1))
    kwargs.setdefault("merchant_name", "Other Clinic")
    claim = EmployeeClaim(tenant_id=tenant_id, employee_id=EMPLOYEE, amount=amount, status=status, **kwargs)
    db.add(claim)
    db.flush()
    return claim


@pytest.fixture
def context(tenant_id) -> PolicyContext:
    return PolicyContext(home_tenant_id=tenant_id)


# ─── Category limits ──────────────────────────────────────────────────────────

def test_valid_claim_passes(db, context):
    result = validate_claim(db, _claim(amount=120), context)
    assert result.passed
    assert result.errors == []
    assert not result.auto_approve


def test_amount_over_category_limit_is_blocked(db, context):
    result = validate_claim(db, _claim(amount=510), context)
    assert not result.passed
    assert len(result.errors) == 1
    assert result.errors[0].startswith(BLOCK_PREFIX)
    assert "$500" in result.errors[0]
    assert "MEDICAL" in result.errors[0]


def test_non_positive_amount_is_blocked(db, context):
    result = validate_claim(db, _claim(amount=0), context)
    assert not result.passed
    assert "greater than zero" in result.errors[0]


def test_unknown_category_stops_early(db, context):
    result = validate_claim(db, _claim(category="YACHTS", receipt_url=None), context)
    assert result.errors == [f"{BLOCK_PREFIX}Invalid claim category: YACHTS"]


# ─── Receipt and evidence ─────────────────────────────────────────────────────

def test_missing_receipt_is_blocked_even_for_small_amounts(db, context):
    result = validate_claim(db, _claim(category="OFFICE_SUPPLIES", amount=10, receipt_url=None), context)
    assert not result.passed
    assert any("receipt" in e for e in result.errors)
    assert not result.auto_approve


def test_receipt_file_id_is_enough(db, context):
    result = validate_claim(db, _claim(receipt_url=None, receipt_file_id="file-123"), context)
    assert result.passed


def test_entertainment_requires_attendees(db, context):
    result = validate_claim(db, _claim(category="ENTERTAINMENT", amount=80), context)
    assert any("attendees" in e for e in result.errors)

    ok = validate_claim(
        db, _claim(category="ENTERTAINMENT", amount=80, metadata={"attendees": ["A", "B"]}), context
    )
    assert ok.passed


def test_fuel_requires_odometer_readings_and_photo(db, context):
    result = validate_claim(db, _claim(category="FUEL", amount=60), context)
    assert any("odometer start and end" in e for e in result.errors)
    assert any("photo" in e for e in result.errors)

    backwards = validate_claim(
        db,
        _claim(category="FUEL", amount=60, metadata={
            "odometer_start": 1200, "odometer_end": 1100, "odometer_photo_url": "https://x/p.jpg",
        }),
        context,
    )
    assert backwards.errors == [f"{BLOCK_PREFIX}Odometer end reading must be greater than the start reading."]


def test_non_numeric_odometer_readings_are_blocked_not_raised(db, context):
    result = validate_claim(
        db,
        _claim(category="FUEL", amount=60, metadata={
            "odometer_start": "12k", "odometer_end": "13k", "odometer_photo_url": "https://x/p.jpg",
        }),
        context,
    )
    assert not result.passed
    assert result.errors == [f"{BLOCK_PREFIX}Odometer readings must be numeric."]


def test_guideline_overruns_only_warn(db, context):
    result = validate_claim(db, _claim(category="MEALS", amount=80), context)
    assert result.passed
    assert any("per-day" in w for w in result.warnings)

    other = validate_claim(db, _claim(category="OTHER", amount=40), context)
    assert other.passed
    assert any("manual approval" in w for w in other.warnings)


def test_all_violations_are_reported_together(db, context):
    result = validate_claim(db, _claim(category="ENTERTAINMENT", amount=900, receipt_url=None), context)
    assert len(result.errors) == 3


# ─── Auto-approve ─────────────────────────────────────────────────────────────

def test_small_office_supplies_auto_approve(db, context):
    result = validate_claim(db, _claim(category="OFFICE_SUPPLIES", amount=25), context)
    assert result.passed
    assert result.auto_approve


def test_auto_approve_never_set_on_failed_claim(db, context):
    result = validate_claim(db, _claim(category="OFFICE_SUPPLIES", amount=60), context)
    assert not result.passed
    assert not result.auto_approve


def test_auto_approve_ceiling_follows_tenant_config(db, tenant_id, context):
    db.add(ConfigLayer(scope="tenant", tenant_id=tenant_id, key="claim_auto_approve_max_amount", value=10))
    db.flush()

    result = validate_claim(db, _claim(category="OFFICE_SUPPLIES", amount=25), context)
    assert result.passed
    assert not result.auto_approve


# ─── Aggregates ───────────────────────────────────────────────────────────────

def test_annual_limit_counts_approved_claims_in_same_year(db, tenant_id, context):
    _prior_claim(db, tenant_id, 450)
    _prior_claim(db, tenant_id, 450, claim_date=date(2026, 5, 1))
    _prior_claim(db, tenant_id, 450, claim_date=date(2026, 6, 1))
    _prior_claim(db, tenant_id, 450, claim_date=date(2026, 7, 1))
    _prior_claim(db, tenant_id, 450, claim_date=date(2025, 7, 1))  # previous year
    _prior_claim(db, tenant_id, 450, status="rejected")

    result = validate_claim(db, _claim(amount=300), context)
    assert not result.passed
    assert any("Annual limit of $2,000" in e for e in result.errors)

    assert validate_claim(db, _claim(amount=200), context).passed


def test_duplicate_claim_is_blocked(db, tenant_id, context):
    _prior_claim(db, tenant_id, 120, status="submitted", claim_date=date(2026, 3, 14), merchant_name="city clinic")
    result = validate_claim(db, _claim(amount=120), context)
    assert any("Duplicate claim" in e for e in result.errors)


def test_rejected_prior_claim_is_not_a_duplicate(db, tenant_id, context):
    _prior_claim(db, tenant_id, 120, status="rejected", claim_date=date(2026, 3, 14), merchant_name="City Clinic")
    assert validate_claim(db, _claim(amount=120), context).passed


# ─── Cross-tenant ─────────────────────────────────────────────────────────────

def test_cross_tenant_charge_requires_grant(db, context):
    other_tenant = uuid.uuid4()
    result = validate_claim(db, _claim(charge_to_tenant_id=other_tenant), context)
    assert any("not authorized" in e for e in result.errors)

    db.add(TenantAccess(user_id=EMPLOYEE, tenant_id=other_tenant))
    db.flush()
    assert validate_claim(db, _claim(charge_to_tenant_id=other_tenant), context).passed


def test_revoked_grant_does_not_authorise(db, context):
    other_tenant = uuid.uuid4()
    db.add(TenantAccess(user_id=EMPLOYEE, tenant_id=other_tenant, is_active=False))
    db.flush()
    assert not validate_claim(db, _claim(charge_to_tenant_id=other_tenant), context).passed


# ─── Submission ───────────────────────────────────────────────────────────────

def test_blocked_submission_writes_nothing(db, context):
    result = submit_claim(db, _claim(amount=510), context=context)
    assert not result.accepted
    assert result.claim is None
    assert db.execute(select(func.count(EmployeeClaim.id))).scalar() == 0
    assert db.execute(select(func.count(Invoice.id))).scalar() == 0
    assert db.execute(select(func.count(AuditRecord.id))).scalar() == 0


def test_accepted_submission_creates_claim_invoice_and_audit(db, tenant_id, context):
    result = submit_claim(db, _claim(amount=120), context=context)
    assert result.accepted
    assert result.claim.status == "submitted"
    assert result.invoice.status == "received"
    assert result.invoice.source == "employee_claim"
    assert result.invoice.tenant_id == tenant_id
    assert result.invoice.invoice_number.startswith("CLAIM-")
    assert result.claim.invoice_id == result.invoice.id

    actions = db.execute(select(AuditRecord.entity_type, AuditRecord.action)).all()
    assert set(actions) == {("employee_claim", "create"), ("invoice", "create")}


def test_auto_approved_submission_is_ready_for_payment(db, context):
    result = submit_claim(db, _claim(category="OFFICE_SUPPLIES", amount=25), context=context)
    assert result.claim.status == "approved"
    assert result.claim.auto_approved
    assert result.invoice.status == "approved_for_payment"
    assert result.invoice.expected_payment_date is not None


def test_cross_tenant_submission_bills_target_tenant(db, context):
    other_tenant = uuid.uuid4()
    db.add(TenantAccess(user_id=EMPLOYEE, tenant_id=other_tenant))
    db.flush()
    result = submit_claim(db, _claim(charge_to_tenant_id=other_tenant), context=context)
    assert result.invoice.tenant_id == other_tenant
    assert result.claim.tenant_id == context.home_tenant_id
